import asyncio

from bkbot import formatter
from bkbot.catalog import CatalogIndex
from bkbot.conversation import ConversationEngine
from bkbot.intent_classifier import IntentClassifier
from bkbot.models import InboundMessage, PendingDisambiguation
from bkbot.session_store import ConversationStore

from conftest import FakeClock, FakeTransport

CUSTOMER = "5215550000001"
OTHER = "5215550000002"


class StubModel:
    def __init__(self, payload):
        self.payload = payload

    def complete_json(self, system, user):
        return self.payload


def _text(customer, text, mid):
    return InboundMessage(message_id=mid, customer_id=customer, type="text", text=text)


def test_phone_query_asks_variant_then_answers(engine, store):
    reply = engine.handle_text(CUSTOMER, "precio iphone 11")
    assert reply == "¿Pro Max o normal?"
    assert store.get(CUSTOMER).pending == PendingDisambiguation.VARIANT

    reply = engine.handle_text(CUSTOMER, "normal")
    assert "*DISPLAY IPHONE 11*" in reply
    assert "Código: 103317" in reply
    assert "Precio: $850.00" in reply
    assert "✅ Hay existencia" in reply
    assert store.get(CUSTOMER).pending == PendingDisambiguation.NONE


def test_code_lookup_is_definitive(engine):
    reply = engine.handle_text(CUSTOMER, "103318")
    assert "DISPLAY IPHONE 11 PRO MAX" in reply
    assert "Precio: $1,450.00" in reply
    assert "❌ Sin existencia" in reply


def test_code_lookup_overrides_pending_question(engine, store):
    engine.handle_text(CUSTOMER, "precio iphone 11")
    reply = engine.handle_text(CUSTOMER, "204002")
    assert "TAPA TRASERA SAMSUNG A10 NEGRO" in reply
    assert store.get(CUSTOMER).pending == PendingDisambiguation.NONE


def test_option_menu_and_pick(engine, store):
    reply = engine.handle_text(CUSTOMER, "gps rastreador")
    assert reply.startswith("Encontré estas opciones:")
    assert "1. GPS RASTREADOR MASCOTA (401003)" in reply
    assert "Responde con el número (1-3) o con el código." in reply
    assert store.get(CUSTOMER).pending == PendingDisambiguation.OPTION

    reply = engine.handle_text(CUSTOMER, "2")
    assert "*GPS RASTREADOR VEHICULAR*" in reply
    assert store.get(CUSTOMER).pending == PendingDisambiguation.NONE


def test_out_of_range_pick_keeps_menu_open(engine, store):
    engine.handle_text(CUSTOMER, "gps rastreador")
    reply = engine.handle_text(CUSTOMER, "9")
    assert reply == formatter.invalid_pick(3)
    session = store.get(CUSTOMER)
    assert session.pending == PendingDisambiguation.OPTION
    assert len(session.last_shown) == 3


def test_non_phone_products_get_menu_not_variant_question(engine):
    reply = engine.handle_text(CUSTOMER, "cerradura digital")
    assert "¿" not in reply
    assert "CERRADURA DIGITAL MINI" in reply
    assert "CERRADURA DIGITAL PRO" in reply


def test_color_question_then_answer(engine):
    assert engine.handle_text(CUSTOMER, "tapa samsung a10") == formatter.color_question()
    reply = engine.handle_text(CUSTOMER, "negro")
    assert "TAPA TRASERA SAMSUNG A10 NEGRO" in reply
    assert "❌ Sin existencia" in reply


def test_unrelated_text_while_pending_reasks_without_progress(engine, store):
    engine.handle_text(CUSTOMER, "precio iphone 11")
    before = store.get(CUSTOMER).candidates
    reply = engine.handle_text(CUSTOMER, "precio samsung a10")
    assert reply == "¿Pro Max o normal?"
    session = store.get(CUSTOMER)
    assert session.pending == PendingDisambiguation.VARIANT
    assert session.candidates == before


def test_requested_variant_not_in_catalog_reoffers_menu(engine, store):
    reply = engine.handle_text(CUSTOMER, "display iphone 11 pro")
    assert reply == formatter.combination_unavailable("¿Pro Max o normal?")
    assert store.get(CUSTOMER).pending == PendingDisambiguation.VARIANT

    reply = engine.handle_text(CUSTOMER, "pro max")
    assert "DISPLAY IPHONE 11 PRO MAX" in reply


def test_answer_with_no_matching_item_keeps_state(catalog, store):
    model = StubModel({"intent": "variant", "key": "mini"})
    engine = ConversationEngine(catalog, store, IntentClassifier(model), reply_mode="guided")
    engine.handle_text(CUSTOMER, "precio iphone 11")
    before = store.get(CUSTOMER).last_query

    reply = engine.handle_text(CUSTOMER, "el chiquito")
    assert reply.startswith("Ese producto no está disponible en esa combinación.")
    session = store.get(CUSTOMER)
    assert session.pending == PendingDisambiguation.VARIANT
    assert session.last_query == before
    assert len(session.candidates) == 2


def test_greeting_resets_conversation(engine, store):
    engine.handle_text(CUSTOMER, "gps rastreador")
    assert engine.handle_text(CUSTOMER, "hola") == formatter.GREETING
    assert store.get(CUSTOMER).pending == PendingDisambiguation.NONE
    assert store.get(CUSTOMER).last_shown == []


def test_prices_for_everything_in_topic(engine):
    engine.handle_text(CUSTOMER, "103317")
    reply = engine.handle_text(CUSTOMER, "y los demás?")
    assert reply.startswith("Precios de DISPLAYS CELULAR:")
    assert "DISPLAY IPHONE 12" in reply
    assert "$1,100.00" in reply


def test_unknown_product_and_bare_number(engine):
    assert engine.handle_text(CUSTOMER, "bicicleta de montaña") == formatter.NOT_FOUND
    assert engine.handle_text(OTHER, "3") == formatter.CLARIFY


def test_catalog_down_answers_unavailable(store):
    class Down:
        def fetch(self):
            raise ValueError("bad csv")

    catalog = CatalogIndex(Down(), clock=FakeClock())
    engine = ConversationEngine(catalog, store, IntentClassifier(None), reply_mode="guided")
    assert engine.handle_text(CUSTOMER, "precio iphone 11") == formatter.CATALOG_UNAVAILABLE
    assert engine.handle_text(CUSTOMER, "103317") == formatter.CATALOG_UNAVAILABLE


def test_two_customers_do_not_share_state(engine, store, transport):
    async def run():
        await asyncio.gather(
            engine.process(_text(CUSTOMER, "gps rastreador", "m1")),
            engine.process(_text(OTHER, "precio iphone 11", "m2")),
        )

    asyncio.run(run())
    assert store.get(CUSTOMER).pending == PendingDisambiguation.OPTION
    assert store.get(OTHER).pending == PendingDisambiguation.VARIANT
    assert sorted(to for to, _ in transport.sent) == [CUSTOMER, OTHER]


def test_same_customer_messages_are_handled_in_order(engine, transport):
    async def run():
        await asyncio.gather(
            engine.process(_text(CUSTOMER, "precio iphone 11", "m1")),
            engine.process(_text(CUSTOMER, "normal", "m2")),
        )

    asyncio.run(run())
    replies = [body for _, body in transport.sent]
    assert replies[0] == "¿Pro Max o normal?"
    assert "DISPLAY IPHONE 11" in replies[1]


def test_unsupported_message_type_gets_a_reply(engine, transport):
    message = InboundMessage(message_id="m9", customer_id=CUSTOMER, type="audio")
    assert asyncio.run(engine.process(message)) == formatter.UNSUPPORTED_MESSAGE
    assert transport.sent == [(CUSTOMER, formatter.UNSUPPORTED_MESSAGE)]


def test_process_never_raises(catalog):
    class ExplodingStore(ConversationStore):
        def get(self, customer_id):
            raise RuntimeError("boom")

    transport = FakeTransport()
    engine = ConversationEngine(catalog, ExplodingStore(), IntentClassifier(None), transport=transport, reply_mode="guided")
    assert asyncio.run(engine.process(_text(CUSTOMER, "hola", "m1"))) is None
    assert transport.sent == []
