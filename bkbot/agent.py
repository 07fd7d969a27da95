import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from . import cart
from .formatter import AGENT_FALLBACK, TECHNICAL_DIFFICULTY, cart_summary
from .llm_client import image_content, load_prompt
from .models import CatalogItem, ConversationSession
from .resolver import ProductResolver, ResolutionStatus, variant_label
from .text import format_price, mask_phone


logger = logging.getLogger(__name__)

AGENT_PROMPT = """Eres el asesor de ventas de BK GLOBAL por WhatsApp. Respondes en español, breve y amable.
Reglas obligatorias:
- Nunca inventes precios, existencias ni productos. Solo menciona lo que devolvieron las herramientas en esta conversación.
- La existencia se comunica solo como "✅ Hay existencia" o "❌ Sin existencia". Nunca des cantidades.
- Para buscar usa searchProducts; para ver una línea de productos usa listProductsByCategory con el nombre de categoría del propio catálogo.
- Si searchProducts indica "needs": "variant" o "color", pregunta eso antes de dar un precio.
- Cuando muestres opciones, numéralas 1, 2, 3 en el mismo orden que las devolvió la herramienta.
- Si el cliente quiere comprar, agrega al carrito con cartAddByPosition o cartAddByCode y muestra el resumen con cartGetSummary.
- Si algo falla o no hay datos, pide un solo dato concreto (código, modelo o color).
Cuando el cliente quiera finalizar su compra, comparte estas instrucciones: {checkout}
"""

TOOL_SCHEMAS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "listProductsByCategory",
            "description": "Lista productos de una categoría del catálogo (por ejemplo 'Displays', 'Baterías').",
            "parameters": {
                "type": "object",
                "properties": {
                    "category": {"type": "string"},
                    "limit": {"type": "integer", "minimum": 1},
                },
                "required": ["category"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "searchProducts",
            "description": "Busca productos por nombre, modelo o código. Devuelve precio y disponibilidad.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "limit": {"type": "integer", "minimum": 1},
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "getProductDetails",
            "description": "Detalle actualizado de un producto por código.",
            "parameters": {
                "type": "object",
                "properties": {"code": {"type": "string"}},
                "required": ["code"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "getRestockEta",
            "description": "Fecha estimada de reabastecimiento de un producto sin existencia.",
            "parameters": {
                "type": "object",
                "properties": {"code": {"type": "string"}},
                "required": ["code"],
            },
        },
    },
]

CART_TOOL_SCHEMAS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "cartAddByPosition",
            "description": "Agrega al carrito el producto en la posición indicada (1-based) de la última lista mostrada.",
            "parameters": {
                "type": "object",
                "properties": {
                    "position": {"type": "integer", "minimum": 1},
                    "quantity": {"type": "integer", "minimum": 1},
                },
                "required": ["position"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "cartAddByCode",
            "description": "Agrega al carrito un producto por código.",
            "parameters": {
                "type": "object",
                "properties": {
                    "code": {"type": "string"},
                    "quantity": {"type": "integer", "minimum": 1},
                },
                "required": ["code"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "cartGetSummary",
            "description": "Resumen del carrito con total.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "cartClear",
            "description": "Vacía el carrito.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
]

PRICE_RE = re.compile(r"\$\s?(\d[\d,]*(?:\.\d{1,2})?)")
NUMBER_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?")


def serialize_item(item: CatalogItem, position: Optional[int] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "code": item.code,
        "name": item.name,
        "price": item.price,
        "price_text": format_price(item.price),
        "availability": item.availability,
        "group": item.group,
    }
    if position is not None:
        data["position"] = position
    return data


class ToolExecutor:
    """Runs the agent's tool calls against the catalog, ERP and session cart.

    `run` never raises: failures come back as {"error": ...} so the model
    can react to them.
    """

    def __init__(
        self,
        catalog,
        erp=None,
        resolver: Optional[ProductResolver] = None,
        search_limit: int = 8,
        preview_limit: int = 8,
        cart_enabled: bool = True,
        checkout_instructions: str = "",
    ) -> None:
        self.catalog = catalog
        self.checkout_instructions = checkout_instructions
        self.erp = erp
        self.resolver = resolver or ProductResolver()
        self.search_limit = search_limit
        self.preview_limit = preview_limit
        self.cart_enabled = cart_enabled
        self._handlers: Dict[str, Callable[..., Dict[str, Any]]] = {
            "listProductsByCategory": self.list_products_by_category,
            "searchProducts": self.search_products,
            "getProductDetails": self.get_product_details,
            "getRestockEta": self.get_restock_eta,
        }
        if cart_enabled:
            self._handlers.update({
                "cartAddByPosition": self.cart_add_by_position,
                "cartAddByCode": self.cart_add_by_code,
                "cartGetSummary": self.cart_get_summary,
                "cartClear": self.cart_clear,
            })

    @property
    def schemas(self) -> List[Dict[str, Any]]:
        return TOOL_SCHEMAS + (CART_TOOL_SCHEMAS if self.cart_enabled else [])

    def run(self, session: ConversationSession, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            return {"error": f"unknown tool {name}"}
        try:
            return handler(session, **(arguments or {}))
        except TypeError as e:
            return {"error": f"bad arguments for {name}: {e}"}
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return {"error": str(e) or e.__class__.__name__}

    def _preview(self, items: Sequence[CatalogItem]) -> Dict[str, Any]:
        shown = list(items[: self.preview_limit])
        return {
            "total": len(items),
            "items": [serialize_item(item, i) for i, item in enumerate(shown, start=1)],
            "truncated": len(items) > len(shown),
        }

    def list_products_by_category(self, session: ConversationSession, category: str, limit: Optional[int] = None) -> Dict[str, Any]:
        if not self.catalog.available:
            return {"error": "catalog_unavailable"}
        group = self.catalog.resolve_group(category)
        if group is None:
            return {"error": "category_not_found", "categories": self.catalog.groups()[: self.preview_limit]}
        items = self.catalog.items_in_group(group, limit=limit)
        session.last_topic_key = group
        session.last_shown = items[: self.preview_limit]
        result = self._preview(items)
        result["category"] = group
        return result

    def search_products(self, session: ConversationSession, query: str, limit: Optional[int] = None) -> Dict[str, Any]:
        if not self.catalog.available:
            return {"error": "catalog_unavailable"}
        items = self.catalog.search(query, limit or self.search_limit)
        session.last_shown = items[: self.preview_limit]
        if items and items[0].group:
            session.last_topic_key = items[0].group
        result = self._preview(items)
        resolution = self.resolver.resolve(query, items)
        if resolution.status == ResolutionStatus.ASK_VARIANT:
            result["needs"] = "variant"
            result["variants"] = [variant_label(k) for k in resolution.variants]
        elif resolution.status == ResolutionStatus.ASK_COLOR:
            result["needs"] = "color"
            result["colors"] = ["blanco", "negro"]
        return result

    def get_product_details(self, session: ConversationSession, code: str) -> Dict[str, Any]:
        item = None
        if self.erp is not None:
            try:
                item = self.erp.get_product(code)
            except Exception as e:
                logger.warning("ERP detail lookup failed for %s, using catalog snapshot: %s", code, e)
        if item is None:
            item = self.catalog.find_by_code(code)
        if item is None:
            return {"error": "not_found", "code": code}
        return serialize_item(item)

    def get_restock_eta(self, session: ConversationSession, code: str) -> Dict[str, Any]:
        if self.erp is None:
            return {"code": code, "eta": None, "note": "sin fecha registrada"}
        eta = self.erp.restock_eta(code)
        return {"code": code, "eta": eta, "note": None if eta else "sin fecha registrada"}

    def cart_add_by_position(self, session: ConversationSession, position: int, quantity: int = 1) -> Dict[str, Any]:
        line = cart.add_by_position(session, int(position), int(quantity))
        return {"added": line.dict(), "cart": cart.summary(session)}

    def cart_add_by_code(self, session: ConversationSession, code: str, quantity: int = 1) -> Dict[str, Any]:
        line = cart.add_by_code(session, self.catalog, str(code), int(quantity))
        return {"added": line.dict(), "cart": cart.summary(session)}

    def cart_get_summary(self, session: ConversationSession) -> Dict[str, Any]:
        result = cart.summary(session)
        result["text"] = cart_summary(session.cart, self.checkout_instructions or None)
        return result

    def cart_clear(self, session: ConversationSession) -> Dict[str, Any]:
        cart.clear(session)
        return {"cleared": True}


class ToolCallingAgent:
    """Bounded model/tool loop producing one reply per customer turn."""

    def __init__(
        self,
        model,
        executor: ToolExecutor,
        max_iterations: int = 5,
        transcript_limit: int = 12,
        checkout_instructions: str = "",
        prompt: Optional[str] = None,
    ) -> None:
        self.model = model
        self.executor = executor
        self.max_iterations = max_iterations
        self.transcript_limit = transcript_limit
        template = prompt or load_prompt("agent", AGENT_PROMPT)
        self.system_prompt = template.replace("{checkout}", checkout_instructions)

    def run(
        self,
        session: ConversationSession,
        utterance: str,
        image: Optional[bytes] = None,
        mime_type: str = "image/jpeg",
    ) -> str:
        transcript = session.transcript
        if image:
            user_entry: Dict[str, Any] = {"role": "user", "content": image_content(utterance, image, mime_type)}
        else:
            user_entry = {"role": "user", "content": utterance}
        transcript.append(user_entry)
        self._trim(transcript)
        try:
            return self._loop(session)
        finally:
            if image:
                # keep the transcript small: the photo is only sent on its own turn
                user_entry["content"] = "[foto] " + (utterance or "")
            self._trim(transcript)

    def _loop(self, session: ConversationSession) -> str:
        transcript = session.transcript
        # prices must come from tools called for this message, not earlier ones
        turn_start = len(transcript)
        for _ in range(self.max_iterations):
            try:
                turn = self.model.step(self.system_prompt, list(transcript), self.executor.schemas)
            except Exception:
                logger.exception("Model call failed for %s", mask_phone(session.customer_id))
                return TECHNICAL_DIFFICULTY

            if turn.tool_calls:
                transcript.append({
                    "role": "assistant",
                    "content": turn.text,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                        }
                        for call in turn.tool_calls
                    ],
                })
                for call in turn.tool_calls:
                    result = self.executor.run(session, call.name, call.arguments)
                    transcript.append({
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result, ensure_ascii=False),
                    })
                continue

            text = (turn.text or "").strip()
            if not text:
                break
            unverified = unverified_prices(text, tool_outputs(transcript[turn_start:]))
            if unverified:
                logger.warning("Reply quoted prices not backed by tools %s; using fallback", unverified)
                text = AGENT_FALLBACK
            transcript.append({"role": "assistant", "content": text})
            return text

        transcript.append({"role": "assistant", "content": AGENT_FALLBACK})
        return AGENT_FALLBACK

    def _trim(self, transcript: List[Dict[str, Any]]) -> None:
        overflow = len(transcript) - self.transcript_limit
        if overflow > 0:
            del transcript[:overflow]
        # a tool result without its assistant call is rejected by the API
        while transcript and transcript[0].get("role") != "user":
            del transcript[0]


def tool_outputs(transcript: Sequence[Dict[str, Any]]) -> List[str]:
    return [str(entry.get("content") or "") for entry in transcript if entry.get("role") == "tool"]


def _as_amount(raw: str) -> Optional[float]:
    try:
        return round(float(raw.replace(",", "")), 2)
    except ValueError:
        return None


def unverified_prices(reply: str, outputs: Sequence[str]) -> Set[float]:
    """Currency amounts in `reply` that appear in none of the tool outputs."""
    quoted = {amount for amount in (_as_amount(m) for m in PRICE_RE.findall(reply)) if amount is not None}
    if not quoted:
        return set()
    known: Set[float] = set()
    for out in outputs:
        for m in NUMBER_RE.findall(out):
            amount = _as_amount(m)
            if amount is not None:
                known.add(amount)
    return quoted - known
