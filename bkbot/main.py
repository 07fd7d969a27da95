import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from .agent import AGENT_PROMPT, ToolCallingAgent, ToolExecutor
from .catalog import CatalogIndex, CsvCatalogSource, OdooCatalogSource
from .config import Settings, load_settings
from .conversation import ConversationEngine
from .erp_client import OdooClient
from .intent_classifier import CLASSIFIER_PROMPT, IntentClassifier
from .llm_client import OpenAIChatModel, load_prompt
from .middleware import RequestLoggingMiddleware
from .resolver import ProductResolver
from .session_store import ConversationStore, DedupCache
from .vision_client import VISION_PROMPT, VisionIdentifier
from .whatsapp_client import WhatsAppClient, parse_webhook, verify_signature


log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
logging.getLogger("bkbot").setLevel(log_level)
logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> ConversationEngine:
    """Wire collaborators from settings; anything unconfigured is left out."""
    llm = None
    if settings.llm_configured:
        llm = OpenAIChatModel(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            vision_model=settings.openai_vision_model,
        )

    erp = None
    if settings.odoo_configured:
        erp = OdooClient(
            settings.odoo_url,
            settings.odoo_db,
            settings.odoo_user,
            settings.odoo_password,
            session_ttl=settings.odoo_session_ttl,
        )
        source = OdooCatalogSource(erp)
    elif settings.catalog_csv_url:
        source = CsvCatalogSource(settings.catalog_csv_url)
    else:
        source = None
        logger.warning("No catalog source configured (set ODOO_* or CATALOG_CSV_URL)")

    catalog = CatalogIndex(
        source,
        refresh_seconds=settings.catalog_refresh_seconds,
        max_stale_seconds=settings.catalog_max_stale_seconds,
        threshold=settings.match_threshold,
    )
    resolver = ProductResolver(max_options=settings.max_options)

    agent = None
    if llm is not None:
        executor = ToolExecutor(
            catalog,
            erp=erp,
            resolver=resolver,
            search_limit=settings.search_limit,
            preview_limit=settings.tool_preview_limit,
            checkout_instructions=settings.checkout_instructions,
        )
        agent = ToolCallingAgent(
            llm,
            executor,
            max_iterations=settings.max_tool_iterations,
            transcript_limit=settings.transcript_limit,
            checkout_instructions=settings.checkout_instructions,
            prompt=load_prompt("agent", AGENT_PROMPT, settings.prompt_base),
        )

    transport = None
    if settings.whatsapp_access_token and settings.whatsapp_phone_number_id:
        transport = WhatsAppClient(
            settings.whatsapp_access_token,
            settings.whatsapp_phone_number_id,
            api_version=settings.whatsapp_api_version,
            chunk_limit=settings.message_chunk_limit,
        )
    else:
        logger.warning("WhatsApp credentials missing; replies will not be delivered")

    return ConversationEngine(
        catalog,
        ConversationStore(ttl_seconds=settings.session_ttl_seconds),
        IntentClassifier(llm, prompt=load_prompt("intent_classifier", CLASSIFIER_PROMPT, settings.prompt_base)),
        resolver=resolver,
        agent=agent,
        vision=VisionIdentifier(llm, prompt=load_prompt("vision", VISION_PROMPT, settings.prompt_base)),
        transport=transport,
        reply_mode=settings.reply_mode,
        search_limit=settings.search_limit,
    )


settings = load_settings()
engine = build_engine(settings)
dedup = DedupCache(ttl_seconds=settings.dedup_ttl_seconds)


async def maintenance_loop() -> None:
    """Refresh the catalog snapshot and sweep idle sessions on a fixed interval."""
    while True:
        try:
            await run_in_threadpool(engine.catalog.refresh)
            engine.store.sweep()
        except Exception:
            logger.exception("Maintenance cycle failed")
        await asyncio.sleep(settings.catalog_refresh_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(maintenance_loop())
    try:
        yield
    finally:
        task.cancel()


app = FastAPI(title="bkglobal-whatsapp-bot", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)


@app.get("/api/health")
def health():
    catalog = engine.catalog
    return {
        "status": "ok",
        "service": "bkglobal-whatsapp-bot",
        "reply_mode": "agent" if engine.agent_mode else "guided",
        "catalog_items": len(catalog.items()),
        "catalog_loaded_at": catalog.loaded_at,
        "sessions": len(engine.store),
    }


@app.get("/webhook")
def verify_webhook(request: Request):
    params = request.query_params
    mode = params.get("hub.mode") or params.get("mode")
    token = params.get("hub.verify_token") or params.get("verify_token")
    challenge = params.get("hub.challenge") or params.get("challenge") or ""
    if mode == "subscribe" and token == settings.whatsapp_verify_token:
        logger.info("Webhook verified")
        return PlainTextResponse(challenge, status_code=200)
    logger.warning("Webhook verification rejected (mode=%s)", mode)
    return PlainTextResponse("Forbidden", status_code=403)


@app.post("/webhook")
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    """Acknowledge at once; each new message is processed after the response."""
    try:
        raw = await request.body()
        if settings.whatsapp_app_secret and not verify_signature(
            raw, request.headers.get("X-Hub-Signature-256"), settings.whatsapp_app_secret
        ):
            logger.warning("Webhook signature mismatch")
            return JSONResponse({"status": "forbidden"}, status_code=403)
        body = json.loads(raw or b"{}")
        for message in parse_webhook(body):
            if dedup.seen(message.message_id):
                logger.info("Duplicate delivery %s ignored", message.message_id)
                continue
            background_tasks.add_task(engine.process, message)
    except Exception:
        logger.exception("Webhook delivery could not be handled")
    return {"status": "ok"}
