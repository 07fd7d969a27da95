import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from .models import CatalogItem
from .text import parse_price


logger = logging.getLogger(__name__)

PRODUCT_FIELDS = ["default_code", "name", "list_price", "qty_available", "categ_id"]


class ErpError(Exception):
    """The ERP was unreachable or answered with an RPC fault."""


class OdooClient:
    """Minimal Odoo JSON-RPC client.

    Every call is a (service, method, args) triple posted to /jsonrpc. The uid
    returned by `common.login` is cached for `session_ttl` seconds and
    refreshed transparently; an access fault triggers one re-login and retry.
    """

    def __init__(
        self,
        url: str,
        db: str,
        user: str,
        password: str,
        session_ttl: int = 600,
        timeout: float = 15.0,
        clock: Callable[[], float] = time.time,
        http=None,
    ) -> None:
        self.url = url.rstrip("/")
        self.db = db
        self.user = user
        self.password = password
        self.session_ttl = session_ttl
        self.timeout = timeout
        self._clock = clock
        self._http = http or requests
        self._uid: Optional[int] = None
        self._uid_expires_at = 0.0
        self._ids = itertools.count(1)

    def call(self, service: str, method: str, *args: Any) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": list(args)},
            "id": next(self._ids),
        }
        try:
            resp = self._http.post(f"{self.url}/jsonrpc", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise ErpError(f"ERP unreachable: {e}") from e
        if resp.status_code != 200:
            raise ErpError(f"ERP HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise ErpError("ERP returned non-JSON body") from e
        if not isinstance(body, dict):
            raise ErpError("ERP returned unexpected payload")
        if body.get("error"):
            err = body["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            data = err.get("data") if isinstance(err, dict) else None
            if isinstance(data, dict) and data.get("message"):
                message = f"{message}: {data['message']}"
            raise ErpError(message or "ERP fault")
        return body.get("result")

    def authenticate(self, force: bool = False) -> int:
        now = self._clock()
        if not force and self._uid is not None and now < self._uid_expires_at:
            return self._uid
        uid = self.call("common", "login", self.db, self.user, self.password)
        if not uid:
            self._uid = None
            raise ErpError("ERP rejected credentials")
        self._uid = int(uid)
        self._uid_expires_at = now + self.session_ttl
        logger.info("Authenticated against ERP db=%s uid=%s", self.db, self._uid)
        return self._uid

    def execute_kw(self, model: str, method: str, args: List[Any], kwargs: Optional[Dict[str, Any]] = None) -> Any:
        uid = self.authenticate()
        try:
            return self.call("object", "execute_kw", self.db, uid, self.password, model, method, args, kwargs or {})
        except ErpError as e:
            if "access" not in str(e).lower() and "session" not in str(e).lower():
                raise
            logger.warning("ERP call rejected (%s); re-authenticating once", e)
            uid = self.authenticate(force=True)
            return self.call("object", "execute_kw", self.db, uid, self.password, model, method, args, kwargs or {})

    def fetch_products(self, limit: Optional[int] = None) -> List[CatalogItem]:
        kwargs: Dict[str, Any] = {"fields": PRODUCT_FIELDS}
        if limit:
            kwargs["limit"] = limit
        rows = self.execute_kw("product.product", "search_read", [[["sale_ok", "=", True]]], kwargs)
        return [item_from_odoo(row) for row in rows or []]

    def get_product(self, code: str) -> Optional[CatalogItem]:
        rows = self.execute_kw(
            "product.product",
            "search_read",
            [[["default_code", "=", code]]],
            {"fields": PRODUCT_FIELDS, "limit": 1},
        )
        if not rows:
            return None
        return item_from_odoo(rows[0])

    def restock_eta(self, code: str) -> Optional[str]:
        """Planned date of the earliest pending incoming move for a product code."""
        rows = self.execute_kw(
            "stock.move",
            "search_read",
            [[
                ["product_id.default_code", "=", code],
                ["picking_code", "=", "incoming"],
                ["state", "not in", ["done", "cancel"]],
            ]],
            {"fields": ["date"], "order": "date asc", "limit": 1},
        )
        if not rows:
            return None
        date = rows[0].get("date")
        return str(date)[:10] if date else None


def item_from_odoo(row: Dict[str, Any]) -> CatalogItem:
    categ = row.get("categ_id")
    # many2one fields come back as [id, display_name]
    group = categ[1] if isinstance(categ, (list, tuple)) and len(categ) > 1 else ""
    code = row.get("default_code")
    return CatalogItem(
        code=str(code) if code else "",
        name=str(row.get("name") or "").strip(),
        price=parse_price(row.get("list_price")),
        stock_quantity=float(row.get("qty_available") or 0),
        group=str(group),
    )
