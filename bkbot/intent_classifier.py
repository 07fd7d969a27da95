import json
import logging
import re
from typing import Any, Dict, Optional

from .llm_client import load_prompt
from .models import ConversationSession, Intent, IntentKind, PendingDisambiguation
from .resolver import color_in_text, variant_in_text
from .text import normalize_text


logger = logging.getLogger(__name__)

GREETINGS = {
    "hola", "holi", "buenas", "buenos dias", "buenas tardes", "buenas noches", "que tal",
    "hola buenas", "hola buenos dias", "hola buenas tardes", "hola buenas noches", "hi", "hello", "hey",
}
RESET_RE = re.compile(
    r"\b(?:reiniciar|reinicia|reset|empezar de nuevo|nueva busqueda|borrar todo|cancelar|olvidalo|menu)\b"
)
PRICES_ALL_RE = re.compile(
    r"\b(?:precios? de (?:todos|todas|los demas|las demas|los otros|las otras)"
    r"|todos los precios|cuanto cuestan (?:todos|todas)|y (?:los|las) (?:demas|otros|otras)"
    r"|(?:los|las) (?:demas|otros|otras))\b"
)
ORDINALS = {
    "primero": 1, "primera": 1, "1ro": 1, "1ra": 1,
    "segundo": 2, "segunda": 2, "2do": 2, "2da": 2,
    "tercero": 3, "tercera": 3, "3ro": 3, "3ra": 3,
    "cuarto": 4, "cuarta": 4, "quinto": 5, "quinta": 5,
}
PICK_RE = re.compile(r"^(?:opcion|la|el|numero|no|num|#)?\s*(\d{1,2})$")
EMBEDDED_CODE_RE = re.compile(r"\b(\d{4,})\b")

CLASSIFIER_PROMPT = """Eres el clasificador de intención del bot de WhatsApp de BK GLOBAL (refacciones y accesorios).
Recibes un JSON con el mensaje del cliente y el estado de la conversación.
Responde SOLO con un objeto JSON con la forma:
{"intent": "<greeting|reset|pick_option|code_lookup|search|ask_clarify|variant|color|prices_for_all_listed>",
 "index": <entero o null>, "code": <texto o null>, "hint": <texto o null>, "key": <texto o null>, "value": <texto o null>}
Reglas:
- pick_option: el cliente elige una opción numerada; index es 1-based.
- code_lookup: el cliente da un código de producto; code es el código.
- search: el cliente busca un producto; hint son las palabras del producto sin relleno.
- variant: responde a la pregunta de versión (pro max, pro, mini, plus, max, ultra, lite, se o normal); key es la versión.
- color: responde a la pregunta de color; value es el color.
- prices_for_all_listed: pide precios de todo lo que se le mostró.
- ask_clarify: el mensaje no permite saber qué producto quiere.
"""


class IntentClassifier:
    """Maps an utterance plus session state to an Intent.

    Unambiguous shapes (greetings, bare numbers, codes, answers that match the
    pending question) are decided locally; everything else goes to the model.
    Any model failure or malformed answer degrades to Search{hint: utterance}.
    """

    def __init__(self, model=None, prompt: Optional[str] = None) -> None:
        self.model = model
        self.prompt = prompt or load_prompt("intent_classifier", CLASSIFIER_PROMPT)

    def classify(self, utterance: str, session: ConversationSession) -> Intent:
        local = self.classify_local(utterance, session)
        if local is not None:
            return local
        if self.model is not None:
            payload = self.model.complete_json(self.prompt, json.dumps(_state_view(utterance, session), ensure_ascii=False))
            intent = intent_from_payload(payload, utterance)
            if intent is not None:
                return intent
            logger.warning("Classifier output unusable, falling back to search: %r", payload)
        return Intent(kind=IntentKind.SEARCH, hint=utterance)

    def classify_local(self, utterance: str, session: ConversationSession) -> Optional[Intent]:
        t = normalize_text(utterance)
        if not t:
            return Intent(kind=IntentKind.ASK_CLARIFY)
        if t in GREETINGS:
            return Intent(kind=IntentKind.GREETING)
        if RESET_RE.search(t):
            return Intent(kind=IntentKind.RESET)

        compact = t.replace(" ", "")
        if compact.isdigit():
            if len(compact) >= 4:
                return Intent(kind=IntentKind.CODE_LOOKUP, code=compact)
            if session.pending == PendingDisambiguation.VARIANT and 1 <= int(compact) <= len(session.variant_menu):
                return Intent(kind=IntentKind.VARIANT, key=session.variant_menu[int(compact) - 1])
            if session.last_shown or session.pending == PendingDisambiguation.OPTION:
                return Intent(kind=IntentKind.PICK_OPTION, index=int(compact))
            return Intent(kind=IntentKind.ASK_CLARIFY)

        if session.last_shown:
            m = PICK_RE.match(t)
            if m:
                return Intent(kind=IntentKind.PICK_OPTION, index=int(m.group(1)))
            words = t.split(" ")
            if len(words) <= 3:
                for word in words:
                    if word in ORDINALS:
                        return Intent(kind=IntentKind.PICK_OPTION, index=ORDINALS[word])

        if session.pending == PendingDisambiguation.VARIANT:
            key = variant_in_text(t, session.variant_menu)
            if key is not None:
                return Intent(kind=IntentKind.VARIANT, key=key)
        if session.pending == PendingDisambiguation.COLOR:
            color = color_in_text(t)
            if color is not None:
                return Intent(kind=IntentKind.COLOR, value=color)

        if (session.last_shown or session.last_topic_key) and PRICES_ALL_RE.search(t):
            return Intent(kind=IntentKind.PRICES_FOR_ALL_LISTED)

        m = EMBEDDED_CODE_RE.search(t)
        if m and len(t.split(" ")) <= 3:
            return Intent(kind=IntentKind.CODE_LOOKUP, code=m.group(1))
        return None


def _state_view(utterance: str, session: ConversationSession) -> Dict[str, Any]:
    return {
        "message": utterance,
        "pending": session.pending.value,
        "options_shown": len(session.last_shown),
        "variant_menu": session.variant_menu,
        "last_topic": session.last_topic_key,
    }


def intent_from_payload(payload: Optional[Dict[str, Any]], utterance: str) -> Optional[Intent]:
    """Validate a model answer into an Intent; None when it does not fit the contract."""
    if not isinstance(payload, dict):
        return None
    raw_kind = str(payload.get("intent") or payload.get("kind") or "").strip().lower()
    try:
        kind = IntentKind(raw_kind)
    except ValueError:
        return None

    def text_slot(name: str) -> Optional[str]:
        value = payload.get(name)
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    if kind == IntentKind.PICK_OPTION:
        try:
            index = int(payload.get("index"))
        except (TypeError, ValueError):
            return None
        return Intent(kind=kind, index=index)
    if kind == IntentKind.CODE_LOOKUP:
        code = text_slot("code")
        return Intent(kind=kind, code=code) if code else None
    if kind == IntentKind.VARIANT:
        key = text_slot("key")
        key = variant_in_text(key) if key else None
        return Intent(kind=kind, key=key) if key else None
    if kind == IntentKind.COLOR:
        value = text_slot("value")
        return Intent(kind=kind, value=normalize_text(value)) if value else None
    if kind == IntentKind.SEARCH:
        return Intent(kind=kind, hint=text_slot("hint") or utterance)
    return Intent(kind=kind)
