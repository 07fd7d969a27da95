import pytest

from bkbot import cart
from bkbot.cart import CartError
from bkbot.models import CatalogItem, ConversationSession


def _session():
    return ConversationSession(customer_id="5215550000001")


def test_same_code_adds_up(catalog):
    session = _session()
    cart.add_by_code(session, catalog, "103317")
    cart.add_by_code(session, catalog, "103317", 2)
    assert len(session.cart) == 1
    assert session.cart[0].quantity == 3
    assert session.cart[0].subtotal == 2550.0


def test_position_refers_to_last_shown(catalog):
    session = _session()
    session.last_shown = catalog.search("gps rastreador", limit=3)
    line = cart.add_by_position(session, 3)
    assert line.code == "401002"
    with pytest.raises(CartError):
        cart.add_by_position(session, 0)


def test_unknown_code_and_bad_quantity(catalog):
    session = _session()
    with pytest.raises(CartError):
        cart.add_by_code(session, catalog, "000000")
    with pytest.raises(CartError):
        cart.add_item(session, CatalogItem(code="1", name="X"), 0)


def test_summary_flags_unpriced_lines(catalog):
    session = _session()
    cart.add_item(session, CatalogItem(code="900", name="FUNDA", price=None, stock_quantity=1))
    cart.add_by_code(session, catalog, "204001")
    result = cart.summary(session)
    assert result["total"] == 150.0
    assert result["all_prices_known"] is False
    assert [line["availability"] for line in result["lines"]] == ["available", "available"]
    cart.clear(session)
    assert cart.summary(session)["lines"] == []
