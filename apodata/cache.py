"""
Result cache: stable request keys and a cache-aside controller over a
redis-py style client (only ``get`` / ``setex`` are used).
"""

import hashlib
import json
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from apodata.config import CACHE_ENABLED, CACHE_TTL_REFERENCE, CACHE_TTL_SALES, REDIS_URL
from apodata.filters import FilterSet, RANGE_FIELDS
from apodata.logger import log

# ── Namespaces ───────────────────────────────────────────────────────
COMPETITIVE_ANALYSIS = ("competitive:analysis:", CACHE_TTL_REFERENCE)
PRODUCTS_LIST = ("products:list:", CACHE_TTL_REFERENCE)
PHARMACIES_ANALYTICS = ("pharmacies:analytics:v2:", CACHE_TTL_REFERENCE)
SALES_PRODUCTS = ("sales:products:", CACHE_TTL_SALES)
LABORATORY_MARKET_SHARE = ("laboratory:market-share:", CACHE_TTL_REFERENCE)
RUPTURES_PRODUCTS = ("ruptures:products:", CACHE_TTL_SALES)


def _filter_signature(filters: FilterSet) -> Dict[str, Any]:
    """Non-default condition filters, canonicalised; empty for plain requests."""
    sig: Dict[str, Any] = {}
    if filters.laboratories:
        sig["laboratories"] = sorted(filters.laboratories)
    if filters.categories:
        sig["categories"] = sorted(f"{c.type}:{c.code}" for c in filters.categories)
    if filters.tva_rates:
        sig["tvaRates"] = sorted(filters.tva_rates)
    if filters.generic_status != "ALL":
        sig["genericStatus"] = filters.generic_status
    if filters.reimbursement_status != "ALL":
        sig["reimbursementStatus"] = filters.reimbursement_status
    for name in RANGE_FIELDS:
        if filters.is_group_active(name):
            rng = getattr(filters, name)
            sig[name] = [rng.min, rng.max]
    for key, values in (
        ("excludedPharmacyIds", filters.excluded_pharmacy_ids),
        ("excludedLaboratories", filters.excluded_laboratories),
        ("excludedProductCodes", filters.excluded_product_codes),
        ("excludedCategories", [f"{c.type}:{c.code}" for c in filters.excluded_categories]),
    ):
        if values:
            sig[key] = sorted(values)
    if sig or "OR" in filters.filter_operators:
        # Operators are positional, never sorted.
        sig["filterOperators"] = list(filters.filter_operators)
    return sig


def derive_cache_key(namespace: str, filters: FilterSet, role: Optional[str],
                     has_product_filter: bool, **extra: Any) -> str:
    """
    md5 of a canonical JSON view of the request, prefixed with ``namespace``.

    Only fields that change the result are included, in a fixed order, with
    lists sorted, so equivalent requests share one entry.
    """
    canonical: Dict[str, Any] = {"dateRange": filters.date_range.as_dict()}
    if filters.comparison_date_range is not None:
        canonical["comparisonDateRange"] = filters.comparison_date_range.as_dict()
    canonical["productCodes"] = sorted(filters.all_product_codes) if has_product_filter else []
    canonical["pharmacyIds"] = sorted(filters.pharmacy_ids)
    if role is not None:
        canonical["role"] = role
    canonical["hasProductFilter"] = has_product_filter
    canonical.update(extra)
    signature = _filter_signature(filters)
    if signature:
        canonical["conditions"] = signature

    blob = json.dumps(canonical, separators=(",", ":"), ensure_ascii=False)
    return namespace + hashlib.md5(blob.encode("utf-8")).hexdigest()


# ── Cache-aside controller ───────────────────────────────────────────

class _Flight:
    def __init__(self):
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None


class ResultCache:
    """
    JSON cache-aside around a redis client. Any cache failure is logged and
    behaves as a miss (reads) or a no-op (writes).

    ``fetch`` also collapses concurrent misses on the same key inside this
    process: one thread computes, the others wait for its result.
    """

    def __init__(self, client=None, enabled: bool = CACHE_ENABLED, log=log):
        self._client = client
        self.enabled = bool(enabled and client is not None)
        self._log = log
        self._lock = threading.Lock()
        self._inflight: Dict[str, _Flight] = {}

    def get_json(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            raw = self._client.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            self._log.bind(key=key, error=str(e)).warning("Cache read error")
            return None

    def set_json(self, key: str, ttl: int, payload: Any) -> None:
        if not self.enabled:
            return
        try:
            self._client.setex(key, ttl, json.dumps(payload, ensure_ascii=False))
        except Exception as e:
            self._log.bind(key=key, error=str(e)).warning("Cache write error")

    def fetch(self, key: str, ttl: int, compute: Callable[[], Any]) -> Tuple[Any, bool]:
        """Return ``(payload, cached)``; ``compute`` runs only on a miss."""
        payload = self.get_json(key)
        if payload is not None:
            self._log.bind(key=key).debug("Cache hit")
            return payload, True

        with self._lock:
            flight = self._inflight.get(key)
            leader = flight is None
            if leader:
                flight = self._inflight[key] = _Flight()

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result, False

        try:
            flight.result = compute()
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            flight.done.set()

        self.set_json(key, ttl, flight.result)
        return flight.result, False


def init_cache() -> ResultCache:
    """Build the service cache from configuration (disabled without REDIS_URL)."""
    if not CACHE_ENABLED:
        log.info("Result cache disabled")
        return ResultCache(None, enabled=False)
    client = redis.Redis.from_url(REDIS_URL, socket_timeout=2, socket_connect_timeout=2)
    log.bind(url=REDIS_URL.split("@")[-1]).info("Result cache enabled")
    return ResultCache(client, enabled=True)
