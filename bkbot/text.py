import re
import unicodedata
from typing import List, Optional

from .models import CatalogItem


# Multi-word fillers first so "por favor" goes before "por".
STOPWORDS = [
    "do you have", "por favor", "cuanto cuesta", "cuanto vale", "me regalas",
    "tienes", "tienen", "tiene", "hay", "manejas", "manejan", "venden", "vendes",
    "precio", "precios", "costo", "cuanto", "cuesta", "vale", "favor", "porfa", "please", "price",
    "quiero", "busco", "buscando", "necesito", "ocupo", "me", "das", "dame", "pasame",
    "info", "informacion", "de", "del", "la", "el", "los", "las", "un", "una", "unos", "unas",
    "para", "por", "con", "que", "y", "en", "a", "hola", "buenas", "buen", "dia",
]

_STOP_RE = re.compile(r"\b(?:" + "|".join(re.escape(w) for w in STOPWORDS) + r")\b")

AVAILABLE_LABEL = "✅ Hay existencia"
UNAVAILABLE_LABEL = "❌ Sin existencia"


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(text: str) -> str:
    """Lowercase, drop diacritics and punctuation, collapse whitespace."""
    t = strip_accents(text).lower()
    t = re.sub(r"[^a-z0-9ñ\s\-/]", " ", t)
    t = t.replace("-", " ").replace("/", " ")
    return re.sub(r"\s+", " ", t).strip()


def normalize_query(text: str) -> str:
    """normalize_text plus removal of conversational filler words."""
    t = _STOP_RE.sub(" ", normalize_text(text))
    return re.sub(r"\s+", " ", t).strip()


def normalize_code(code: str) -> str:
    return re.sub(r"[^\w\-./]", "", strip_accents(code or "").lower())


_ALNUM_RE = re.compile(r"(?<=[a-z])(?=\d)|(?<=\d)(?=[a-z])")


def split_alnum(text: str) -> str:
    """Separate letters from digits: "iphone11" -> "iphone 11"."""
    return _ALNUM_RE.sub(" ", text)


def tokens(text: str) -> List[str]:
    return [tok for tok in split_alnum(normalize_text(text)).split(" ") if tok]


def contains_phrase(text: str, phrase: str) -> bool:
    """Word-boundary containment on already-normalized strings."""
    return re.search(r"(?<![a-z0-9])" + re.escape(phrase) + r"(?![a-z0-9])", text) is not None


def stock_label(item: CatalogItem) -> str:
    return AVAILABLE_LABEL if item.in_stock else UNAVAILABLE_LABEL


def format_price(price: Optional[float]) -> str:
    if price is None:
        return "Precio por confirmar"
    return f"${price:,.2f}"


def parse_price(raw) -> Optional[float]:
    """Parse '$1,234.50', '1234.5' or a number into a float; None when unparseable."""
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    cleaned = re.sub(r"[^0-9.,\-]", "", str(raw))
    if not cleaned:
        return None
    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(",", "")
    elif cleaned.count(",") == 1 and len(cleaned.split(",")[1]) == 2:
        cleaned = cleaned.replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def chunk_message(body: str, limit: int = 1500) -> List[str]:
    """Split an outbound body into chunks of at most `limit` chars.

    Breaks on line boundaries; a single over-long line is split on spaces,
    and as a last resort hard-cut.
    """
    body = (body or "").strip()
    if not body:
        return []
    if len(body) <= limit:
        return [body]
    chunks: List[str] = []
    current = ""
    for line in body.split("\n"):
        pieces = [line] if len(line) <= limit else _split_long_line(line, limit)
        for piece in pieces:
            candidate = piece if not current else current + "\n" + piece
            if len(candidate) <= limit:
                current = candidate
            else:
                if current.strip():
                    chunks.append(current.rstrip())
                current = piece
    if current.strip():
        chunks.append(current.rstrip())
    return chunks


def _split_long_line(line: str, limit: int) -> List[str]:
    out: List[str] = []
    rest = line
    while len(rest) > limit:
        cut = rest.rfind(" ", 0, limit)
        if cut <= 0:
            cut = limit
        out.append(rest[:cut].rstrip())
        rest = rest[cut:].lstrip()
    if rest:
        out.append(rest)
    return out


def mask_phone(customer_id: str) -> str:
    digits = customer_id or ""
    return ("*" * max(len(digits) - 4, 0)) + digits[-4:]
