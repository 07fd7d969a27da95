import csv
import io
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import requests
from rapidfuzz import fuzz, process

from .erp_client import ErpError, OdooClient
from .models import CatalogItem
from .text import normalize_code, normalize_query, normalize_text, parse_price, split_alnum, tokens


logger = logging.getLogger(__name__)

# Header spellings seen in exported price lists.
CSV_COLUMNS = {
    "code": ["codigo", "código", "code", "clave", "sku", "default_code"],
    "name": ["nombre", "name", "descripcion", "descripción", "producto"],
    "price": ["precio", "price", "precio publico", "precio_publico", "list_price"],
    "stock": ["existencia", "existencias", "stock", "cantidad", "qty_available"],
    "group": ["grupo", "group", "categoria", "categoría", "linea", "línea"],
}

RETRY_AFTER_FAILURE_SECONDS = 30
TYPO_TOKEN_RATIO = 85


class CsvCatalogSource:
    """Price list published as CSV at a URL (e.g. a shared spreadsheet export)."""

    def __init__(self, url: str, timeout: float = 15.0, http=None) -> None:
        self.url = url
        self.timeout = timeout
        self._http = http or requests

    def fetch(self) -> List[CatalogItem]:
        resp = self._http.get(self.url, timeout=self.timeout)
        resp.raise_for_status()
        resp.encoding = resp.encoding or "utf-8"
        return parse_catalog_csv(resp.text)


class OdooCatalogSource:
    def __init__(self, client: OdooClient) -> None:
        self.client = client

    def fetch(self) -> List[CatalogItem]:
        return self.client.fetch_products()


def parse_catalog_csv(text: str) -> List[CatalogItem]:
    reader = csv.DictReader(io.StringIO(text))
    columns: Dict[str, Optional[str]] = {}
    header = {(h or "").strip().lower(): h for h in (reader.fieldnames or [])}
    for field, aliases in CSV_COLUMNS.items():
        columns[field] = next((header[a] for a in aliases if a in header), None)
    if not columns["name"]:
        raise ValueError("catalog CSV has no name column")
    items: List[CatalogItem] = []
    for row in reader:
        name = (row.get(columns["name"]) or "").strip()
        if not name:
            continue
        stock = parse_price(row.get(columns["stock"])) if columns["stock"] else None
        items.append(
            CatalogItem(
                code=(row.get(columns["code"]) or "").strip() if columns["code"] else "",
                name=name,
                price=parse_price(row.get(columns["price"])) if columns["price"] else None,
                stock_quantity=stock or 0,
                group=(row.get(columns["group"]) or "").strip() if columns["group"] else "",
            )
        )
    return items


@dataclass(frozen=True)
class _Entry:
    item: CatalogItem
    name_norm: str
    token_set: FrozenSet[str]


@dataclass(frozen=True)
class _Snapshot:
    entries: Tuple[_Entry, ...]
    by_code: Dict[str, CatalogItem]
    loaded_at: float


class CatalogIndex:
    """Read-only search view over the last successfully loaded catalog.

    The snapshot is replaced wholesale on refresh, never mutated in place.
    When the source fails, the previous snapshot keeps serving until it is
    older than `max_stale_seconds`; past that, searches come back empty.
    """

    def __init__(
        self,
        source,
        refresh_seconds: int = 300,
        max_stale_seconds: int = 3600,
        threshold: float = 0.6,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.source = source
        self.refresh_seconds = refresh_seconds
        self.max_stale_seconds = max_stale_seconds
        self.threshold = threshold
        self._clock = clock
        self._snapshot: Optional[_Snapshot] = None
        self._last_attempt = 0.0

    def refresh(self) -> bool:
        self._last_attempt = self._clock()
        if self.source is None:
            return False
        try:
            items = self.source.fetch()
        except (requests.RequestException, ErpError, ValueError, csv.Error) as e:
            logger.warning("Catalog refresh failed: %s", e)
            return False
        self.load(items)
        logger.info("Catalog refreshed: %d items", len(items))
        return True

    def load(self, items: Sequence[CatalogItem]) -> None:
        entries = []
        by_code: Dict[str, CatalogItem] = {}
        for item in items:
            name_norm = split_alnum(normalize_text(item.name))
            token_set = frozenset(tokens(" ".join([item.name, item.group, item.code])))
            entries.append(_Entry(item=item, name_norm=name_norm, token_set=token_set))
            if item.code:
                by_code.setdefault(normalize_code(item.code), item)
        self._snapshot = _Snapshot(entries=tuple(entries), by_code=by_code, loaded_at=self._clock())

    @property
    def loaded_at(self) -> Optional[float]:
        return self._snapshot.loaded_at if self._snapshot else None

    def _current(self) -> Optional[_Snapshot]:
        now = self._clock()
        snap = self._snapshot
        stale = snap is None or now - snap.loaded_at >= self.refresh_seconds
        if stale and now - self._last_attempt >= RETRY_AFTER_FAILURE_SECONDS:
            self.refresh()
            snap = self._snapshot
        if snap is None or now - snap.loaded_at > self.max_stale_seconds:
            return None
        return snap

    @property
    def available(self) -> bool:
        return self._current() is not None

    def items(self) -> List[CatalogItem]:
        snap = self._current()
        return [e.item for e in snap.entries] if snap else []

    def find_by_code(self, code: str) -> Optional[CatalogItem]:
        snap = self._current()
        if snap is None:
            return None
        return snap.by_code.get(normalize_code(code))

    def search(self, query: str, limit: int = 5) -> List[CatalogItem]:
        return [item for item, _ in self.search_scored(query, limit)]

    def search_scored(self, query: str, limit: int = 5) -> List[Tuple[CatalogItem, float]]:
        """Best-first (item, score) pairs, score in 0..1.

        A query equal to an item code returns only that item. Otherwise items
        are scored by query-token overlap against name/group/code, blended with
        rapidfuzz's token_set_ratio; every numeric query token must be present.
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        snap = self._current()
        if snap is None:
            return []
        exact = _exact_code(snap, query)
        if exact is not None:
            return [(exact, 1.0)]
        q = split_alnum(normalize_query(query))
        q_tokens = [t for t in q.split(" ") if t]
        if not q_tokens:
            return []

        scored: List[Tuple[CatalogItem, float]] = []
        for entry in snap.entries:
            score = _score(q, q_tokens, entry)
            if score >= self.threshold:
                scored.append((entry.item, score))
        scored.sort(key=lambda pair: (-round(pair[1], 4), not pair[0].in_stock, pair[0].name))
        return scored[:limit]

    def groups(self) -> List[str]:
        snap = self._current()
        if snap is None:
            return []
        seen: Dict[str, None] = {}
        for e in snap.entries:
            if e.item.group:
                seen.setdefault(e.item.group, None)
        return list(seen)

    def resolve_group(self, category: str) -> Optional[str]:
        names = self.groups()
        if not names or not category:
            return None
        match = process.extractOne(
            normalize_query(category), names, scorer=fuzz.token_set_ratio, processor=normalize_text
        )
        if match and match[1] >= self.threshold * 100:
            return match[0]
        return None

    def items_in_group(self, group: str, limit: Optional[int] = None) -> List[CatalogItem]:
        found = [item for item in self.items() if item.group == group]
        found.sort(key=lambda item: (not item.in_stock, item.name))
        return found[:limit] if limit else found


def _exact_code(snap: _Snapshot, query: str) -> Optional[CatalogItem]:
    # the query as typed wins over any filler-stripped form of it
    words = [w for w in query.split() if normalize_query(w)]
    for candidate in (query, "".join(words), normalize_query(query)):
        item = snap.by_code.get(normalize_code(candidate))
        if item is not None:
            return item
    return None


def _token_hit(token: str, token_set: FrozenSet[str]) -> bool:
    if token in token_set:
        return True
    if len(token) < 4 or any(ch.isdigit() for ch in token):
        return False
    return any(fuzz.ratio(token, other) >= TYPO_TOKEN_RATIO for other in token_set)


def _score(q: str, q_tokens: List[str], entry: _Entry) -> float:
    for tok in q_tokens:
        if any(ch.isdigit() for ch in tok) and tok not in entry.token_set:
            return 0.0
    hits = sum(1 for tok in q_tokens if _token_hit(tok, entry.token_set))
    overlap = hits / len(q_tokens)
    if not hits:
        return 0.0
    return 0.7 * overlap + 0.3 * (fuzz.token_set_ratio(q, entry.name_norm) / 100.0)
