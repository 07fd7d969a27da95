import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .models import CatalogItem
from .text import contains_phrase, normalize_text, split_alnum


NORMAL_VARIANT = "normal"

# (key, label, pattern) in priority order: the first match names the variant.
VARIANT_MARKERS: List[Tuple[str, str, str]] = [
    ("pro max", "Pro Max", r"\bpro ?max\b"),
    ("pro", "Pro", r"\bpro\b"),
    ("mini", "Mini", r"\bmini\b"),
    ("plus", "Plus", r"\bplus\b"),
    ("max", "Max", r"\bmax\b"),
    ("ultra", "Ultra", r"\bultra\b"),
    ("lite", "Lite", r"\blite\b"),
    ("se", "SE", r"\b(?:iphone|galaxy|s\d{1,2}|a\d{1,2}) ?se\b|^se$"),
]
NORMAL_ALIASES = r"\b(?:normal|base|basico|estandar|sencillo|regular|clasico)\b"

COLOR_MARKERS: List[Tuple[str, str]] = [
    ("blanco", r"\b(?:blanco|blanca|blancos|blancas|white)\b"),
    ("negro", r"\b(?:negro|negra|negros|negras|black)\b"),
]

PHONE_BRANDS = {
    "iphone", "apple", "samsung", "galaxy", "xiaomi", "redmi", "poco", "motorola", "moto",
    "huawei", "honor", "oppo", "vivo", "realme", "nokia", "lg", "pixel", "zte", "alcatel",
    "tecno", "infinix", "oneplus",
}
PHONE_GROUP_HINTS = (
    "celular", "telefon", "movil", "display", "pantalla", "lcd", "touch", "bateria",
    "flex", "centro de carga", "tapa", "refaccion", "smartphone",
)

_VARIANT_RE = [(key, label, re.compile(pattern)) for key, label, pattern in VARIANT_MARKERS]
_NORMAL_RE = re.compile(NORMAL_ALIASES)
_COLOR_RE = [(key, re.compile(pattern)) for key, pattern in COLOR_MARKERS]
_PRIORITY = {key: i for i, (key, _, _) in enumerate(VARIANT_MARKERS)}


class ResolutionStatus(str, Enum):
    DEFINITIVE = "definitive"
    ASK_VARIANT = "ask_variant"
    ASK_COLOR = "ask_color"
    PICK = "pick"
    EMPTY = "empty"  # filters left nothing for that combination
    NOT_FOUND = "not_found"


@dataclass
class Resolution:
    status: ResolutionStatus
    item: Optional[CatalogItem] = None
    candidates: List[CatalogItem] = field(default_factory=list)
    options: List[CatalogItem] = field(default_factory=list)
    variants: List[str] = field(default_factory=list)
    failed_stage: Optional[ResolutionStatus] = None  # set on EMPTY: which question to re-ask


def variant_of(name: str) -> str:
    text = normalize_text(name)
    for key, _, regex in _VARIANT_RE:
        if regex.search(text):
            return key
    return NORMAL_VARIANT


def variant_label(key: str) -> str:
    for k, label, _ in VARIANT_MARKERS:
        if k == key:
            return label
    return key


def variant_in_text(text: str, allowed: Optional[Sequence[str]] = None) -> Optional[str]:
    t = normalize_text(text)
    for key, _, regex in _VARIANT_RE:
        if (allowed is None or key in allowed) and regex.search(t):
            return key
    if _NORMAL_RE.search(t) and (allowed is None or NORMAL_VARIANT in allowed):
        return NORMAL_VARIANT
    return None


def color_of(name: str) -> Optional[str]:
    text = normalize_text(name)
    for key, regex in _COLOR_RE:
        if regex.search(text):
            return key
    return None


def color_in_text(text: str) -> Optional[str]:
    return color_of(text)


def variant_keys(items: Sequence[CatalogItem]) -> List[str]:
    keys = {variant_of(item.name) for item in items}
    return sorted(keys, key=lambda k: _PRIORITY.get(k, len(_PRIORITY)))


def filter_variant(items: Sequence[CatalogItem], key: str) -> List[CatalogItem]:
    return [item for item in items if variant_of(item.name) == key]


def filter_color(items: Sequence[CatalogItem], color: str) -> List[CatalogItem]:
    wanted = color_in_text(color) or normalize_text(color)
    return [item for item in items if color_of(item.name) == wanted]


def is_phone_domain(utterance: str, items: Sequence[CatalogItem]) -> bool:
    words = set(split_alnum(normalize_text(utterance)).split(" "))
    if words & PHONE_BRANDS:
        return True
    return any(_phone_group(normalize_text(item.group)) for item in items if item.group)


def _phone_group(group: str) -> bool:
    # hints match whole words or word stems ("displays", "telefonia"), never word interiors
    words = group.split(" ")
    for hint in PHONE_GROUP_HINTS:
        if " " in hint:
            if contains_phrase(group, hint):
                return True
        elif any(word.startswith(hint) for word in words):
            return True
    return False


class ProductResolver:
    """Narrows a best-first candidate list to one item, a question, or a short menu.

    Variant questions only fire in the phone-parts domain; color questions
    fire when the pool mixes white and black items. Explicit `variant` and
    `color` arguments are answers to a previous question and take precedence
    over whatever the utterance says.
    """

    def __init__(self, max_options: int = 3) -> None:
        self.max_options = max_options

    def resolve(
        self,
        utterance: str,
        candidates: Sequence[CatalogItem],
        variant: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Resolution:
        pool = list(candidates)
        if not pool:
            return Resolution(status=ResolutionStatus.NOT_FOUND)

        if variant is not None or is_phone_domain(utterance, pool):
            keys = variant_keys(pool)
            chosen = variant if variant is not None else variant_in_text(utterance, keys)
            if chosen is None:
                requested = variant_in_text(utterance)
                if requested is not None and requested != NORMAL_VARIANT:
                    return Resolution(
                        status=ResolutionStatus.EMPTY,
                        candidates=pool,
                        variants=keys,
                        failed_stage=ResolutionStatus.ASK_VARIANT,
                    )
            if chosen is None and len(keys) >= 2:
                return Resolution(status=ResolutionStatus.ASK_VARIANT, candidates=pool, variants=keys)
            if chosen is not None:
                narrowed = filter_variant(pool, chosen)
                if not narrowed:
                    return Resolution(
                        status=ResolutionStatus.EMPTY,
                        candidates=pool,
                        variants=keys,
                        failed_stage=ResolutionStatus.ASK_VARIANT,
                    )
                pool = narrowed

        colors = {color_of(item.name) for item in pool}
        if color is not None or {"blanco", "negro"} <= colors:
            chosen_color = color if color is not None else color_in_text(utterance)
            if chosen_color is None:
                return Resolution(status=ResolutionStatus.ASK_COLOR, candidates=pool)
            narrowed = filter_color(pool, chosen_color)
            if not narrowed:
                return Resolution(
                    status=ResolutionStatus.EMPTY,
                    candidates=pool,
                    failed_stage=ResolutionStatus.ASK_COLOR,
                )
            pool = narrowed

        return self.finish(pool)

    def finish(self, pool: Sequence[CatalogItem]) -> Resolution:
        if len(pool) == 1:
            return Resolution(status=ResolutionStatus.DEFINITIVE, item=pool[0], candidates=list(pool))
        # pool is already best-first with in-stock items ahead on ties
        options = list(pool[: self.max_options])
        return Resolution(status=ResolutionStatus.PICK, candidates=list(pool), options=options)

    @staticmethod
    def pick(options: Sequence[CatalogItem], index: int) -> Optional[CatalogItem]:
        if 1 <= index <= len(options):
            return options[index - 1]
        return None

    @staticmethod
    def pick_by_code(options: Sequence[CatalogItem], code: str) -> Optional[CatalogItem]:
        wanted = normalize_text(code).replace(" ", "")
        for item in options:
            if item.code and normalize_text(item.code).replace(" ", "") == wanted:
                return item
        return None
