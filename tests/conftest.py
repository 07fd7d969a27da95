from typing import List

import pytest

from bkbot.catalog import CatalogIndex
from bkbot.conversation import ConversationEngine
from bkbot.intent_classifier import IntentClassifier
from bkbot.models import CatalogItem
from bkbot.resolver import ProductResolver
from bkbot.session_store import ConversationStore


def make_items() -> List[CatalogItem]:
    rows = [
        ("103317", "DISPLAY IPHONE 11", 850.0, 4, "DISPLAYS CELULAR"),
        ("103318", "DISPLAY IPHONE 11 PRO MAX", 1450.0, 0, "DISPLAYS CELULAR"),
        ("103320", "DISPLAY IPHONE 12", 1100.0, 2, "DISPLAYS CELULAR"),
        ("204001", "TAPA TRASERA SAMSUNG A10 BLANCO", 150.0, 3, "TAPAS CELULAR"),
        ("204002", "TAPA TRASERA SAMSUNG A10 NEGRO", 150.0, 0, "TAPAS CELULAR"),
        ("305010", "CERRADURA DIGITAL PRO", 2300.0, 1, "CERRADURAS"),
        ("305011", "CERRADURA DIGITAL MINI", 1800.0, 5, "CERRADURAS"),
        ("401001", "GPS RASTREADOR VEHICULAR", 990.0, 7, "GPS"),
        ("401002", "GPS RASTREADOR PERSONAL", 790.0, 0, "GPS"),
        ("401003", "GPS RASTREADOR MASCOTA", 890.0, 2, "GPS"),
    ]
    return [
        CatalogItem(code=code, name=name, price=price, stock_quantity=qty, group=group)
        for code, name, price, qty, group in rows
    ]


class StaticSource:
    def __init__(self, items):
        self.items = list(items)
        self.calls = 0

    def fetch(self):
        self.calls += 1
        return list(self.items)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    def __init__(self, media: bytes = b"", mime_type: str = "image/jpeg"):
        self.sent = []
        self.media = media
        self.mime_type = mime_type

    def send_text(self, to, body):
        self.sent.append((to, body))
        return 1

    def fetch_media(self, media_id):
        return self.media, self.mime_type


@pytest.fixture
def items():
    return make_items()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog(items, clock):
    index = CatalogIndex(StaticSource(items), clock=clock)
    index.refresh()
    return index


@pytest.fixture
def store(clock):
    return ConversationStore(ttl_seconds=3600, clock=clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def engine(catalog, store, transport):
    return ConversationEngine(
        catalog,
        store,
        IntentClassifier(None),
        resolver=ProductResolver(max_options=3),
        transport=transport,
        reply_mode="guided",
    )
