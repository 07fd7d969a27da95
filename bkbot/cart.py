from typing import Dict, Optional

from .models import CartLine, CatalogItem, ConversationSession


class CartError(ValueError):
    """A cart operation referenced a position or code that does not exist."""


def add_item(session: ConversationSession, item: CatalogItem, quantity: int = 1) -> CartLine:
    """Add `item` to the session cart; the product code is the dedup key."""
    if quantity < 1:
        raise CartError("quantity must be at least 1")
    for line in session.cart:
        if line.code == item.key:
            line.quantity += quantity
            line.price = item.price
            line.in_stock = item.in_stock
            return line
    line = CartLine(code=item.key, name=item.name, quantity=quantity, price=item.price, in_stock=item.in_stock)
    session.cart.append(line)
    return line


def add_by_position(session: ConversationSession, position: int, quantity: int = 1) -> CartLine:
    if not 1 <= position <= len(session.last_shown):
        raise CartError(f"no listed product at position {position}")
    return add_item(session, session.last_shown[position - 1], quantity)


def add_by_code(session: ConversationSession, catalog, code: str, quantity: int = 1) -> CartLine:
    item: Optional[CatalogItem] = catalog.find_by_code(code)
    if item is None:
        raise CartError(f"unknown product code {code}")
    return add_item(session, item, quantity)


def summary(session: ConversationSession) -> Dict[str, object]:
    lines = []
    total = 0.0
    complete = True
    for line in session.cart:
        subtotal = line.subtotal
        if subtotal is None:
            complete = False
        else:
            total += subtotal
        lines.append({
            "code": line.code,
            "name": line.name,
            "quantity": line.quantity,
            "price": line.price,
            "subtotal": subtotal,
            "availability": "available" if line.in_stock else "unavailable",
        })
    return {"lines": lines, "total": round(total, 2), "all_prices_known": complete}


def clear(session: ConversationSession) -> None:
    session.cart = []
