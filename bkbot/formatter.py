from typing import List, Optional, Sequence

from .models import CartLine, CatalogItem
from .resolver import NORMAL_VARIANT, variant_label
from .text import format_price, stock_label


BRAND = "BK GLOBAL"

GREETING = (
    f"¡Hola! 👋 Bienvenido a {BRAND}.\n"
    "Escríbeme el producto que buscas (por ejemplo: *display iphone 11*) o su código y te doy precio y existencia."
)
NOT_FOUND = "No encontré ese producto en el catálogo. ¿Me compartes el código o el nombre exacto?"
CATALOG_UNAVAILABLE = (
    "En este momento no puedo consultar el catálogo. "
    "¿Me compartes el código o el nombre exacto del producto para revisarlo en cuanto se restablezca?"
)
CLARIFY = "¿Me ayudas con el modelo o el código del producto que buscas?"
TECHNICAL_DIFFICULTY = "Una disculpa, tuvimos una dificultad técnica. ¿Podrías repetir tu mensaje, por favor?"
AGENT_FALLBACK = "Para ayudarte mejor, ¿me confirmas el modelo exacto o el código del producto?"
UNSUPPORTED_MESSAGE = "Por ahora solo puedo leer mensajes de texto o fotos. ¿Me escribes qué producto buscas?"
IMAGE_NOT_IDENTIFIED = "No logré identificar el producto de la foto. ¿Me escribes el modelo o el código?"


def product_detail(item: CatalogItem) -> str:
    lines = [f"*{item.name}*"]
    if item.code:
        lines.append(f"Código: {item.code}")
    lines.append(f"Precio: {format_price(item.price)}")
    lines.append(stock_label(item))
    return "\n".join(lines)


def variant_question(keys: Sequence[str]) -> str:
    labels = [variant_label(k) if k != NORMAL_VARIANT else "normal" for k in keys]
    if len(labels) == 2:
        return f"¿{labels[0]} o {labels[1]}?"
    return "¿Qué versión buscas? " + ", ".join(labels[:-1]) + f" o {labels[-1]}"


def color_question() -> str:
    return "¿Lo buscas en blanco o en negro?"


def option_lines(options: Sequence[CatalogItem]) -> List[str]:
    lines = []
    for i, item in enumerate(options, start=1):
        code = f" ({item.code})" if item.code else ""
        lines.append(f"{i}. {item.name}{code} — {format_price(item.price)} — {stock_label(item)}")
    return lines


def option_menu(options: Sequence[CatalogItem]) -> str:
    lines = ["Encontré estas opciones:"]
    lines.extend(option_lines(options))
    lines.append(f"Responde con el número (1-{len(options)}) o con el código.")
    return "\n".join(lines)


def invalid_pick(count: int) -> str:
    return f"Esa opción no está en la lista. Elige un número del 1 al {count} o escribe el código."


def combination_unavailable(question: str) -> str:
    return "Ese producto no está disponible en esa combinación.\n" + question


def price_list(items: Sequence[CatalogItem], topic: Optional[str] = None) -> str:
    header = f"Precios de {topic}:" if topic else "Estos son los precios:"
    return "\n".join([header] + option_lines(items))


def cart_summary(lines: Sequence[CartLine], checkout: Optional[str] = None) -> str:
    if not lines:
        return "Tu carrito está vacío."
    out = ["🛒 Tu carrito:"]
    total = 0.0
    priced = True
    for line in lines:
        subtotal = line.subtotal
        if subtotal is None:
            priced = False
        else:
            total += subtotal
        status = "✅" if line.in_stock else "❌"
        out.append(f"- {line.quantity} x {line.name} — {format_price(line.price)} {status}")
    out.append(f"Total: {format_price(round(total, 2))}" + ("" if priced else " (algunos precios por confirmar)"))
    if checkout:
        out.append("")
        out.append(checkout)
    return "\n".join(out)
