import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the webhook, catalog, ERP and model clients."""
    whatsapp_verify_token: str
    whatsapp_access_token: str
    whatsapp_phone_number_id: str
    whatsapp_app_secret: str
    whatsapp_api_version: str
    message_chunk_limit: int

    catalog_csv_url: str
    odoo_url: str
    odoo_db: str
    odoo_user: str
    odoo_password: str
    odoo_session_ttl: int
    catalog_refresh_seconds: int
    catalog_max_stale_seconds: int
    match_threshold: float

    openai_api_key: str
    openai_base_url: Optional[str]
    openai_model: str
    openai_vision_model: str
    prompt_base: str

    reply_mode: str
    search_limit: int
    max_options: int
    max_tool_iterations: int
    transcript_limit: int
    tool_preview_limit: int
    session_ttl_seconds: int
    dedup_ttl_seconds: int
    checkout_instructions: str

    @property
    def odoo_configured(self) -> bool:
        return bool(self.odoo_url and self.odoo_db and self.odoo_user and self.odoo_password)

    @property
    def llm_configured(self) -> bool:
        return bool(self.openai_api_key)


DEFAULT_CHECKOUT = (
    "Para finalizar tu compra envíanos tu nombre completo, dirección de envío "
    "y forma de pago (transferencia o depósito). Un asesor confirmará tu pedido."
)


def load_settings() -> Settings:
    """Build Settings from environment variables (a local .env is honoured).

    Invalid numeric values raise ValueError so a misconfigured deploy fails at startup.
    """
    load_dotenv()
    model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    reply_mode = os.getenv("REPLY_MODE", "agent").strip().lower()
    if reply_mode not in {"agent", "guided"}:
        raise ValueError(f"REPLY_MODE must be 'agent' or 'guided', got {reply_mode!r}")
    return Settings(
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", "bkglobal_token"),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        whatsapp_api_version=os.getenv("WHATSAPP_API_VERSION", "v20.0"),
        message_chunk_limit=int(os.getenv("MESSAGE_CHUNK_LIMIT", "1500")),
        catalog_csv_url=os.getenv("CATALOG_CSV_URL", ""),
        odoo_url=os.getenv("ODOO_URL", ""),
        odoo_db=os.getenv("ODOO_DB", ""),
        odoo_user=os.getenv("ODOO_USER", ""),
        odoo_password=os.getenv("ODOO_PASSWORD", ""),
        odoo_session_ttl=int(os.getenv("ODOO_SESSION_TTL_SECONDS", "600")),
        catalog_refresh_seconds=int(os.getenv("CATALOG_REFRESH_SECONDS", "300")),
        catalog_max_stale_seconds=int(os.getenv("CATALOG_MAX_STALE_SECONDS", "3600")),
        match_threshold=float(os.getenv("MATCH_THRESHOLD", "0.6")),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        openai_model=model,
        openai_vision_model=os.getenv("OPENAI_VISION_MODEL", model),
        prompt_base=os.getenv("PROMPT_BASE", "config/prompts"),
        reply_mode=reply_mode,
        search_limit=int(os.getenv("SEARCH_LIMIT", "8")),
        max_options=int(os.getenv("MAX_OPTIONS", "3")),
        max_tool_iterations=int(os.getenv("MAX_TOOL_ITERATIONS", "5")),
        transcript_limit=int(os.getenv("TRANSCRIPT_LIMIT", "12")),
        tool_preview_limit=int(os.getenv("TOOL_PREVIEW_LIMIT", "8")),
        session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", "7200")),
        dedup_ttl_seconds=int(os.getenv("DEDUP_TTL_SECONDS", "600")),
        checkout_instructions=os.getenv("CHECKOUT_INSTRUCTIONS", DEFAULT_CHECKOUT),
    )
