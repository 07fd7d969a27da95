import logging
from typing import Optional

from starlette.concurrency import run_in_threadpool

from . import formatter
from .intent_classifier import IntentClassifier
from .models import (
    ConversationSession,
    InboundMessage,
    Intent,
    IntentKind,
    PendingDisambiguation,
)
from .resolver import ProductResolver, Resolution, ResolutionStatus
from .session_store import ConversationStore
from .text import mask_phone
from .whatsapp_client import WhatsAppError


logger = logging.getLogger(__name__)


class ConversationEngine:
    """Turns one inbound message into one reply for that customer.

    Guided mode runs the intent classifier and the disambiguation state
    machine over the catalog. Agent mode hands each turn to the
    tool-calling agent; greetings and resets are still handled locally, and
    without an agent the guided flow is used.
    """

    def __init__(
        self,
        catalog,
        store: ConversationStore,
        classifier: IntentClassifier,
        resolver: Optional[ProductResolver] = None,
        agent=None,
        vision=None,
        transport=None,
        reply_mode: str = "agent",
        search_limit: int = 8,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.classifier = classifier
        self.resolver = resolver or ProductResolver()
        self.agent = agent
        self.vision = vision
        self.transport = transport
        self.reply_mode = reply_mode
        self.search_limit = search_limit

    @property
    def agent_mode(self) -> bool:
        return self.reply_mode == "agent" and self.agent is not None

    async def process(self, message: InboundMessage) -> Optional[str]:
        """Handle and answer one delivery. Never raises."""
        try:
            async with self.store.lock(message.customer_id):
                reply = await self.reply_to(message)
            if reply and self.transport is not None:
                await run_in_threadpool(self.transport.send_text, message.customer_id, reply)
            return reply
        except WhatsAppError as e:
            logger.warning("Reply to %s not delivered: %s", mask_phone(message.customer_id), e)
        except Exception:
            logger.exception("Failed to process message %s", message.message_id)
        return None

    async def reply_to(self, message: InboundMessage) -> str:
        if message.type == "text":
            return await run_in_threadpool(self.handle_text, message.customer_id, message.text)
        if message.type == "image":
            return await self._reply_to_image(message)
        return formatter.UNSUPPORTED_MESSAGE

    async def _reply_to_image(self, message: InboundMessage) -> str:
        if self.transport is None or not message.media_id:
            return formatter.IMAGE_NOT_IDENTIFIED
        try:
            image, mime_type = await run_in_threadpool(self.transport.fetch_media, message.media_id)
        except WhatsAppError as e:
            logger.warning("Could not download media %s: %s", message.media_id, e)
            return formatter.IMAGE_NOT_IDENTIFIED
        return await run_in_threadpool(
            self.handle_image, message.customer_id, image, message.mime_type or mime_type, message.text
        )

    def handle_text(self, customer_id: str, text: str) -> str:
        session = self.store.get(customer_id)
        if self.agent_mode:
            intent = self.classifier.classify_local(text, session)
            if intent is not None and intent.kind in (IntentKind.GREETING, IntentKind.RESET):
                self.store.clear(customer_id)
                return formatter.GREETING
            reply = self.agent.run(session, text)
        else:
            intent = self.classifier.classify(text, session)
            logger.info("Customer %s intent=%s pending=%s", mask_phone(customer_id), intent.kind.value, session.pending.value)
            if intent.kind in (IntentKind.GREETING, IntentKind.RESET):
                self.store.clear(customer_id)
                return formatter.GREETING
            reply = self.guided_reply(session, text, intent)
        self.store.set(customer_id, session)
        return reply

    def handle_image(self, customer_id: str, image: bytes, mime_type: str, caption: str = "") -> str:
        session = self.store.get(customer_id)
        if self.agent_mode:
            reply = self.agent.run(session, caption, image=image, mime_type=mime_type)
            self.store.set(customer_id, session)
            return reply
        if self.vision is None:
            return formatter.IMAGE_NOT_IDENTIFIED
        hints = self.vision.identify(image, mime_type, caption)
        query = self.vision.to_query(hints, caption)
        if not query:
            return formatter.IMAGE_NOT_IDENTIFIED
        # a photo names a new product, so any open question is dropped
        session.reset_disambiguation()
        reply = self._search(session, query, query)
        self.store.set(customer_id, session)
        return reply

    def guided_reply(self, session: ConversationSession, text: str, intent: Intent) -> str:
        if intent.kind == IntentKind.CODE_LOOKUP:
            return self._code_lookup(session, intent.code or text)

        pending = session.pending
        if pending == PendingDisambiguation.VARIANT:
            if intent.kind == IntentKind.VARIANT and intent.key:
                return self._answer(session, intent.key, variant=intent.key)
            return self._reask(session)
        if pending == PendingDisambiguation.COLOR:
            if intent.kind == IntentKind.COLOR and intent.value:
                return self._answer(session, intent.value, color=intent.value)
            return self._reask(session)
        if pending == PendingDisambiguation.OPTION:
            if intent.kind == IntentKind.PICK_OPTION and intent.index is not None:
                return self._pick(session, intent.index)
            return self._reask(session)

        if intent.kind == IntentKind.PICK_OPTION:
            if not session.last_shown:
                return formatter.CLARIFY
            return self._pick(session, intent.index or 0)
        if intent.kind == IntentKind.PRICES_FOR_ALL_LISTED:
            return self._prices_for_listed(session)
        if intent.kind == IntentKind.ASK_CLARIFY:
            return formatter.CLARIFY
        query = intent.hint if intent.kind == IntentKind.SEARCH and intent.hint else text
        return self._search(session, query, text)

    def _answer(self, session: ConversationSession, answer: str, variant=None, color=None) -> str:
        query = f"{session.last_query} {answer}".strip()
        res = self.resolver.resolve(query, session.candidates, variant=variant, color=color)
        if res.status != ResolutionStatus.EMPTY:
            # later stages read earlier answers from the accumulated query
            session.last_query = query
        return self._apply(session, res)

    def _search(self, session: ConversationSession, query: str, utterance: str) -> str:
        if not self.catalog.available:
            return formatter.CATALOG_UNAVAILABLE
        items = self.catalog.search(query, self.search_limit)
        if not items:
            return formatter.NOT_FOUND
        if items[0].group:
            session.last_topic_key = items[0].group
        context = utterance if query.lower() in utterance.lower() else f"{utterance} {query}"
        session.last_query = context
        return self._apply(session, self.resolver.resolve(context, items))

    def _apply(self, session: ConversationSession, res: Resolution) -> str:
        if res.status == ResolutionStatus.DEFINITIVE:
            session.reset_disambiguation()
            session.last_shown = [res.item]
            if res.item.group:
                session.last_topic_key = res.item.group
            return formatter.product_detail(res.item)
        if res.status == ResolutionStatus.ASK_VARIANT:
            session.pending = PendingDisambiguation.VARIANT
            session.candidates = res.candidates
            session.variant_menu = res.variants
            return formatter.variant_question(res.variants)
        if res.status == ResolutionStatus.ASK_COLOR:
            session.pending = PendingDisambiguation.COLOR
            session.candidates = res.candidates
            session.variant_menu = []
            return formatter.color_question()
        if res.status == ResolutionStatus.PICK:
            session.pending = PendingDisambiguation.OPTION
            session.candidates = res.candidates
            session.last_shown = res.options
            return formatter.option_menu(res.options)
        if res.status == ResolutionStatus.EMPTY:
            return self._combination_unavailable(session, res)
        session.reset_disambiguation()
        return formatter.NOT_FOUND

    def _combination_unavailable(self, session: ConversationSession, res: Resolution) -> str:
        if res.failed_stage == ResolutionStatus.ASK_VARIANT and len(res.variants) >= 2:
            session.pending = PendingDisambiguation.VARIANT
            session.candidates = res.candidates
            session.variant_menu = res.variants
            return formatter.combination_unavailable(formatter.variant_question(res.variants))
        if res.failed_stage == ResolutionStatus.ASK_COLOR:
            session.pending = PendingDisambiguation.COLOR
            session.candidates = res.candidates
            return formatter.combination_unavailable(formatter.color_question())
        # nothing left to ask: offer what exists instead
        fallback = self.resolver.finish(res.candidates)
        if fallback.status == ResolutionStatus.DEFINITIVE:
            session.reset_disambiguation()
            session.last_shown = [fallback.item]
            return formatter.combination_unavailable("Lo más cercano que tengo es:\n" + formatter.product_detail(fallback.item))
        session.pending = PendingDisambiguation.OPTION
        session.candidates = fallback.candidates
        session.last_shown = fallback.options
        return formatter.combination_unavailable(formatter.option_menu(fallback.options))

    def _reask(self, session: ConversationSession) -> str:
        if session.pending == PendingDisambiguation.VARIANT:
            return formatter.variant_question(session.variant_menu)
        if session.pending == PendingDisambiguation.COLOR:
            return formatter.color_question()
        return formatter.option_menu(session.last_shown)

    def _pick(self, session: ConversationSession, index: int) -> str:
        item = self.resolver.pick(session.last_shown, index)
        if item is None:
            return formatter.invalid_pick(len(session.last_shown))
        session.reset_disambiguation()
        if item.group:
            session.last_topic_key = item.group
        return formatter.product_detail(item)

    def _code_lookup(self, session: ConversationSession, code: str) -> str:
        item = None
        if session.pending == PendingDisambiguation.OPTION:
            item = self.resolver.pick_by_code(session.last_shown, code)
        if item is None:
            item = self.catalog.find_by_code(code)
        if item is not None:
            session.reset_disambiguation()
            session.last_shown = [item]
            if item.group:
                session.last_topic_key = item.group
            return formatter.product_detail(item)
        if not self.catalog.available:
            return formatter.CATALOG_UNAVAILABLE
        if session.pending != PendingDisambiguation.NONE:
            return "No encontré ese código.\n" + self._reask(session)
        return self._search(session, code, code)

    def _prices_for_listed(self, session: ConversationSession) -> str:
        if session.last_shown and len(session.last_shown) > 1:
            return formatter.price_list(session.last_shown)
        if session.last_topic_key:
            items = self.catalog.items_in_group(session.last_topic_key, limit=self.search_limit)
            if items:
                session.last_shown = items
                return formatter.price_list(items, session.last_topic_key)
        if session.last_shown:
            return formatter.price_list(session.last_shown)
        return formatter.CLARIFY
