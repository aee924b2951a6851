"""
Analytics request pipeline shared by every endpoint:

    validate -> enforce scope -> cache key -> (miss) build + run query
    -> derive metrics -> cache store -> response payload
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from apodata import cache as cache_ns
from apodata import queries
from apodata.cache import ResultCache, derive_cache_key
from apodata.database import run_query
from apodata.errors import Forbidden, Unauthorized
from apodata.filters import FilterSet, parse_filter_payload
from apodata.logger import log
from apodata.metrics import (
    finalize_competitive,
    finalize_laboratories,
    finalize_pharmacies,
    finalize_products,
    finalize_ruptures,
    finalize_sales,
)
from apodata.models import SecurityContext
from apodata.rbac import ScopeBinding, enforce_pharmacy_scope, scope_binding


@dataclass(frozen=True)
class Endpoint:
    """One analytics route: its template, post-processing and cache slot."""
    name: str
    result_field: str
    namespace: str
    ttl: int
    build: Callable[[FilterSet, ScopeBinding], queries.PreparedQuery]
    finalize: Callable[[pd.DataFrame, FilterSet, ScopeBinding], List[dict]]
    admin_only: bool = False
    # The pharmacies key is role independent and records the pharmacy filter flag.
    key_by_role: bool = True


COMPETITIVE_ANALYSIS = Endpoint(
    name="competitive-analysis",
    result_field="products",
    namespace=cache_ns.COMPETITIVE_ANALYSIS[0],
    ttl=cache_ns.COMPETITIVE_ANALYSIS[1],
    build=queries.competitive_analysis,
    finalize=lambda df, filters, binding: finalize_competitive(df, binding.mode),
)

PRODUCTS_LIST = Endpoint(
    name="products-list",
    result_field="products",
    namespace=cache_ns.PRODUCTS_LIST[0],
    ttl=cache_ns.PRODUCTS_LIST[1],
    build=queries.products_list,
    finalize=lambda df, filters, binding: finalize_products(df),
)

SALES_PRODUCTS = Endpoint(
    name="sales-products",
    result_field="salesData",
    namespace=cache_ns.SALES_PRODUCTS[0],
    ttl=cache_ns.SALES_PRODUCTS[1],
    build=queries.sales_products,
    finalize=lambda df, filters, binding: finalize_sales(
        df, queries.period_bucket(filters.date_range), filters.comparison_date_range is not None),
)

PHARMACIES_ANALYTICS = Endpoint(
    name="pharmacies-analytics",
    result_field="pharmacies",
    namespace=cache_ns.PHARMACIES_ANALYTICS[0],
    ttl=cache_ns.PHARMACIES_ANALYTICS[1],
    build=queries.pharmacies_analytics,
    finalize=lambda df, filters, binding: finalize_pharmacies(df, filters.comparison_date_range is not None),
    admin_only=True,
    key_by_role=False,
)

LABORATORY_MARKET_SHARE = Endpoint(
    name="laboratory-market-share",
    result_field="laboratories",
    namespace=cache_ns.LABORATORY_MARKET_SHARE[0],
    ttl=cache_ns.LABORATORY_MARKET_SHARE[1],
    build=queries.laboratory_market_share,
    finalize=lambda df, filters, binding: finalize_laboratories(
        df, binding.mode, filters.comparison_date_range is not None),
)

RUPTURES_PRODUCTS = Endpoint(
    name="ruptures-products",
    result_field="rupturesData",
    namespace=cache_ns.RUPTURES_PRODUCTS[0],
    ttl=cache_ns.RUPTURES_PRODUCTS[1],
    build=queries.ruptures_products,
    finalize=lambda df, filters, binding: finalize_ruptures(df, queries.period_bucket(filters.date_range)),
)

ENDPOINTS = (COMPETITIVE_ANALYSIS, PRODUCTS_LIST, SALES_PRODUCTS, PHARMACIES_ANALYTICS,
             LABORATORY_MARKET_SHARE, RUPTURES_PRODUCTS)


class AnalyticsService:
    """Runs analytics endpoints against an engine, behind a ResultCache."""

    def __init__(self, engine, cache: ResultCache, log=log):
        self._engine = engine
        self._cache = cache
        self._log = log

    @property
    def cache_enabled(self) -> bool:
        return self._cache.enabled

    def run(self, endpoint: Endpoint, body: Any, ctx: Optional[SecurityContext]) -> Dict[str, Any]:
        started = time.perf_counter()

        if ctx is None:
            raise Unauthorized("Unauthorized")
        if endpoint.admin_only and not ctx.is_admin:
            raise Forbidden("Unauthorized - Admin only")

        filters = enforce_pharmacy_scope(parse_filter_payload(body), ctx)
        binding = scope_binding(ctx, filters)
        has_product_filter = filters.has_product_filter

        if endpoint.key_by_role:
            key = derive_cache_key(endpoint.namespace, filters, ctx.role, has_product_filter)
        else:
            key = derive_cache_key(endpoint.namespace, filters, None, has_product_filter,
                                   hasPharmacyFilter=bool(filters.pharmacy_ids))

        req_log = self._log.bind(endpoint=endpoint.name, user=ctx.user_id, mode=binding.mode.value)

        def compute() -> Dict[str, Any]:
            query = endpoint.build(filters, binding)
            df = run_query(self._engine, query.sql, query.params)
            rows = endpoint.finalize(df, filters, binding)
            req_log.bind(rows=len(rows)).info("Query completed")
            return {endpoint.result_field: rows, "count": len(rows)}

        payload, cached = self._cache.fetch(key, endpoint.ttl, compute)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        req_log.bind(cached=cached, query_time_ms=elapsed_ms).debug("Request served")
        return {**payload, "queryTime": elapsed_ms, "cached": cached}

    # ── Endpoint shortcuts ───────────────────────────────────────────

    def competitive_analysis(self, body, ctx):
        return self.run(COMPETITIVE_ANALYSIS, body, ctx)

    def products_list(self, body, ctx):
        return self.run(PRODUCTS_LIST, body, ctx)

    def sales_products(self, body, ctx):
        return self.run(SALES_PRODUCTS, body, ctx)

    def pharmacies_analytics(self, body, ctx):
        return self.run(PHARMACIES_ANALYTICS, body, ctx)

    def laboratory_market_share(self, body, ctx):
        return self.run(LABORATORY_MARKET_SHARE, body, ctx)

    def ruptures_products(self, body, ctx):
        return self.run(RUPTURES_PRODUCTS, body, ctx)
