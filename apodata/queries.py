"""
Mode-parameterised SQL templates, one per result shape.

Templates return raw aggregates only (sums, averages, counts); ratios,
evolutions, ranks and rounding are derived afterwards in ``apodata.metrics``.
Inventory snapshot rows are aliased ``lp`` everywhere so the range filters of
``ColumnMapping`` resolve the same way in every CTE.
"""

from dataclasses import dataclass
from typing import Any, Dict

from apodata.config import MAX_RESULT_ROWS, MONTHLY_GROUPING_THRESHOLD_DAYS
from apodata.filters import FilterSet, build_conditions
from apodata.models import DateRange
from apodata.rbac import ScopeBinding


@dataclass(frozen=True)
class PreparedQuery:
    sql: str
    params: Dict[str, Any]


# ── Shared fragments ─────────────────────────────────────────────────

TVA = "COALESCE(gp.tva_percentage, gp.bcb_tva_rate, 0)"

SALES_SOURCE = """
        FROM data_sales s
        JOIN data_inventorysnapshot lp ON s.product_id = lp.id
        JOIN data_internalproduct ip ON lp.product_id = ip.id
        LEFT JOIN data_globalproduct gp ON ip.code_13_ref_id = gp.code_13_ref"""

# Purchases are valued at the last snapshot on or before delivery.
PURCHASE_SOURCE = """
        FROM data_productorder po
        JOIN data_order o ON po.order_id = o.id
        JOIN data_internalproduct ip ON po.product_id = ip.id
        LEFT JOIN data_globalproduct gp ON ip.code_13_ref_id = gp.code_13_ref
        LEFT JOIN LATERAL (
            SELECT ins.stock, ins.weighted_average_price, ins.price_with_tax,
                   ins.discount_percentage, ins.margin_percentage
            FROM data_inventorysnapshot ins
            WHERE ins.product_id = ip.id AND ins.date <= o.delivery_date
            ORDER BY ins.date DESC
            LIMIT 1
        ) lp ON true"""

STOCK_SOURCE = """
        FROM data_internalproduct ip
        LEFT JOIN data_globalproduct gp ON ip.code_13_ref_id = gp.code_13_ref
        JOIN LATERAL (
            SELECT ins.stock, ins.weighted_average_price, ins.price_with_tax,
                   ins.discount_percentage, ins.margin_percentage
            FROM data_inventorysnapshot ins
            WHERE ins.product_id = ip.id AND ins.date <= :end_date
            ORDER BY ins.date DESC
            LIMIT 1
        ) lp ON true"""

PRICE_HT = f"(s.unit_price_ttc / (1 + {TVA} / 100.0))"
WITH_COST = "FILTER (WHERE lp.weighted_average_price > 0)"


def _base_params(date_range: DateRange) -> Dict[str, Any]:
    return {
        "start_date": date_range.start,
        "end_date": date_range.end,
        "row_limit": MAX_RESULT_ROWS,
    }


def _merge(*parts: Dict[str, Any]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for part in parts:
        params.update(part)
    return params


# ── Competitive analysis ─────────────────────────────────────────────

_PRICE_AGGREGATES = """
            code_ean,
            MIN(price_with_tax) AS price_min,
            MAX(price_with_tax) AS price_max,
            AVG(price_with_tax) AS price_avg,
            COUNT(DISTINCT pharmacy_id) AS pharmacy_count,
            AVG(weighted_average_price) FILTER (WHERE weighted_average_price > 0) AS buy_price_avg_ht,
            SUM(quantity) AS quantity_sold,
            SUM(quantity * (price_ht - weighted_average_price)) FILTER (WHERE weighted_average_price > 0) AS margin_ht,
            SUM(quantity * price_ht) FILTER (WHERE weighted_average_price > 0) AS sales_ht"""


def competitive_analysis(filters: FilterSet, binding: ScopeBinding) -> PreparedQuery:
    """Price positioning of the selection against the rest of the market, per product."""
    cond = build_conditions(filters, include_pharmacies=False)

    if binding.has_selection:
        selection_cte = f"""
        SELECT {_PRICE_AGGREGATES}
        FROM scoped_sales
        WHERE weighted_average_price > 0 {binding.selection_predicate("pharmacy_id")}
        GROUP BY code_ean"""
    else:
        selection_cte = "SELECT * FROM market_stats"

    sql = f"""
    WITH scoped_sales AS (
        SELECT ip.pharmacy_id,
               ip.code_13_ref_id AS code_ean,
               s.quantity,
               lp.price_with_tax,
               lp.weighted_average_price,
               lp.price_with_tax / (1 + {TVA} / 100.0) AS price_ht
        {SALES_SOURCE}
        WHERE s.date >= :start_date
          AND s.date <= :end_date
          AND lp.price_with_tax > 0
          {cond.sql}
    ),
    market_stats AS (
        SELECT {_PRICE_AGGREGATES}
        FROM scoped_sales
        WHERE true {binding.market_predicate("pharmacy_id")}
        GROUP BY code_ean
    ),
    selection_stats AS (
        {selection_cte}
    )
    SELECT gp.name AS product_name,
           k.code_ean,
           m.price_min AS market_price_min,
           m.price_max AS market_price_max,
           m.price_avg AS market_price_avg,
           m.pharmacy_count AS market_pharmacy_count,
           sel.price_avg AS selection_price_avg,
           sel.buy_price_avg_ht AS selection_buy_price_ht,
           sel.quantity_sold AS selection_quantity,
           sel.margin_ht AS selection_margin_ht,
           sel.sales_ht AS selection_sales_ht
    FROM (SELECT code_ean FROM market_stats UNION SELECT code_ean FROM selection_stats) k
    JOIN data_globalproduct gp ON gp.code_13_ref = k.code_ean
    LEFT JOIN market_stats m ON m.code_ean = k.code_ean
    LEFT JOIN selection_stats sel ON sel.code_ean = k.code_ean
    ORDER BY gp.name
    LIMIT :row_limit
    """
    return PreparedQuery(sql, _merge(_base_params(filters.date_range), binding.params, cond.params))


# ── Products list ────────────────────────────────────────────────────

def products_list(filters: FilterSet, binding: ScopeBinding) -> PreparedQuery:
    """Sales, purchases, stock and margin per product inside the selection."""
    cond = build_conditions(filters, include_pharmacies=False)
    scope = binding.selection_predicate("ip.pharmacy_id")

    sql = f"""
    WITH sales AS (
        SELECT ip.code_13_ref_id AS code_ean,
               AVG(lp.price_with_tax) AS avg_sell_price_ttc,
               AVG(lp.weighted_average_price) {WITH_COST} AS avg_buy_price_ht,
               SUM(s.quantity) AS quantity_sold,
               SUM(s.quantity * s.unit_price_ttc) AS ca_ttc,
               SUM(s.quantity * {PRICE_HT}) {WITH_COST} AS sales_ht,
               SUM(s.quantity * ({PRICE_HT} - lp.weighted_average_price)) {WITH_COST} AS margin_ht
        {SALES_SOURCE}
        WHERE s.date >= :start_date
          AND s.date <= :end_date
          AND s.unit_price_ttc > 0
          {scope}
          {cond.sql}
        GROUP BY ip.code_13_ref_id
    ),
    purchases AS (
        SELECT ip.code_13_ref_id AS code_ean,
               SUM(po.qte_r) AS quantity_bought,
               SUM(po.qte_r * COALESCE(lp.weighted_average_price, 0)) AS purchase_amount
        {PURCHASE_SOURCE}
        WHERE o.delivery_date >= :start_date
          AND o.delivery_date <= :end_date
          AND po.qte_r > 0
          {scope}
          {cond.sql}
        GROUP BY ip.code_13_ref_id
    ),
    stock AS (
        SELECT ip.code_13_ref_id AS code_ean,
               SUM(lp.stock) AS current_stock
        {STOCK_SOURCE}
        WHERE true
          {scope}
          {cond.sql}
        GROUP BY ip.code_13_ref_id
    )
    SELECT gp.name AS product_name,
           sa.code_ean,
           {TVA} AS tva_rate,
           sa.avg_sell_price_ttc,
           sa.avg_buy_price_ht,
           sa.quantity_sold,
           sa.ca_ttc,
           sa.sales_ht,
           sa.margin_ht,
           COALESCE(st.current_stock, 0) AS current_stock,
           COALESCE(pu.quantity_bought, 0) AS quantity_bought,
           COALESCE(pu.purchase_amount, 0) AS purchase_amount
    FROM sales sa
    JOIN data_globalproduct gp ON gp.code_13_ref = sa.code_ean
    LEFT JOIN purchases pu ON pu.code_ean = sa.code_ean
    LEFT JOIN stock st ON st.code_ean = sa.code_ean
    ORDER BY sa.quantity_sold DESC NULLS LAST
    LIMIT :row_limit
    """
    return PreparedQuery(sql, _merge(_base_params(filters.date_range), binding.params, cond.params))


# ── Sales per product and period ─────────────────────────────────────

def period_bucket(date_range: DateRange) -> str:
    """Monthly buckets past the grouping threshold, daily otherwise."""
    return "month" if date_range.days > MONTHLY_GROUPING_THRESHOLD_DAYS else "day"


def sales_products(filters: FilterSet, binding: ScopeBinding) -> PreparedQuery:
    """
    Per product and period sales / purchases inside the selection, plus the
    comparison-period totals per product when a comparison range is set.

    The row cap applies to products (the best sellers), so every returned
    product carries all of its periods. Market-share denominators come from
    ``selection_totals``, computed before the cap.
    """
    cond = build_conditions(filters, include_pharmacies=False)
    scope = binding.selection_predicate("ip.pharmacy_id")
    bucket = period_bucket(filters.date_range)
    params = _merge(_base_params(filters.date_range), binding.params, cond.params)

    comparison_ctes = ""
    comparison_cols = "NULL AS quantity_sold_comparison, NULL AS quantity_bought_comparison"
    comparison_joins = ""
    if filters.comparison_date_range is not None:
        params["cmp_start_date"] = filters.comparison_date_range.start
        params["cmp_end_date"] = filters.comparison_date_range.end
        comparison_ctes = f""",
    sales_comparison AS (
        SELECT ip.code_13_ref_id AS code_ean,
               SUM(s.quantity) AS quantity_sold_comparison
        {SALES_SOURCE}
        WHERE s.date >= :cmp_start_date
          AND s.date <= :cmp_end_date
          AND s.unit_price_ttc > 0
          {scope}
          {cond.sql}
        GROUP BY ip.code_13_ref_id
    ),
    purchases_comparison AS (
        SELECT ip.code_13_ref_id AS code_ean,
               SUM(po.qte_r) AS quantity_bought_comparison
        {PURCHASE_SOURCE}
        WHERE o.delivery_date >= :cmp_start_date
          AND o.delivery_date <= :cmp_end_date
          AND po.qte_r > 0
          {scope}
          {cond.sql}
        GROUP BY ip.code_13_ref_id
    )"""
        comparison_cols = (
            "COALESCE(sc.quantity_sold_comparison, 0) AS quantity_sold_comparison, "
            "COALESCE(pc.quantity_bought_comparison, 0) AS quantity_bought_comparison"
        )
        comparison_joins = """
    LEFT JOIN sales_comparison sc ON sc.code_ean = d.code_ean
    LEFT JOIN purchases_comparison pc ON pc.code_ean = d.code_ean"""

    sql = f"""
    WITH sales AS (
        SELECT ip.code_13_ref_id AS code_ean,
               CAST(DATE_TRUNC('{bucket}', s.date) AS date) AS period_start,
               SUM(s.quantity) AS quantity_sold,
               AVG(s.unit_price_ttc) AS avg_sell_price_ttc,
               AVG(lp.weighted_average_price) {WITH_COST} AS avg_buy_price_ht,
               SUM(s.quantity * s.unit_price_ttc) AS sales_ttc,
               SUM(s.quantity * {PRICE_HT}) {WITH_COST} AS sales_ht,
               SUM(s.quantity * ({PRICE_HT} - lp.weighted_average_price)) {WITH_COST} AS margin_ht
        {SALES_SOURCE}
        WHERE s.date >= :start_date
          AND s.date <= :end_date
          AND s.unit_price_ttc > 0
          {scope}
          {cond.sql}
        GROUP BY 1, 2
    ),
    purchases AS (
        SELECT ip.code_13_ref_id AS code_ean,
               CAST(DATE_TRUNC('{bucket}', o.delivery_date) AS date) AS period_start,
               SUM(po.qte_r) AS quantity_bought
        {PURCHASE_SOURCE}
        WHERE o.delivery_date >= :start_date
          AND o.delivery_date <= :end_date
          AND po.qte_r > 0
          {scope}
          {cond.sql}
        GROUP BY 1, 2
    ),
    selection_totals AS (
        SELECT SUM(quantity_sold) AS total_quantite_selection,
               SUM(margin_ht) AS total_marge_selection
        FROM sales
    ),
    top_products AS (
        SELECT code_ean
        FROM sales
        GROUP BY code_ean
        ORDER BY SUM(quantity_sold) DESC
        LIMIT :row_limit
    ),
    detail AS (
        SELECT sa.*, COALESCE(pu.quantity_bought, 0) AS quantity_bought
        FROM sales sa
        JOIN top_products tp ON tp.code_ean = sa.code_ean
        LEFT JOIN purchases pu ON pu.code_ean = sa.code_ean AND pu.period_start = sa.period_start
    ){comparison_ctes}
    SELECT gp.name AS nom,
           d.code_ean,
           gp.bcb_lab,
           d.period_start,
           d.quantity_sold,
           d.quantity_bought,
           d.avg_sell_price_ttc,
           d.avg_buy_price_ht,
           d.sales_ttc,
           d.sales_ht,
           d.margin_ht,
           t.total_quantite_selection,
           t.total_marge_selection,
           {comparison_cols}
    FROM detail d
    JOIN data_globalproduct gp ON gp.code_13_ref = d.code_ean
    CROSS JOIN selection_totals t{comparison_joins}
    ORDER BY gp.name, d.code_ean, d.period_start
    """
    return PreparedQuery(sql, params)


# ── Pharmacies analytics ─────────────────────────────────────────────

def _pharmacy_period_ctes(suffix: str, start: str, end: str, conditions: str) -> str:
    return f"""
    sales{suffix} AS (
        SELECT ip.pharmacy_id,
               SUM(s.quantity * s.unit_price_ttc) AS ca_ventes,
               SUM(s.quantity) AS quantite_vendue,
               SUM(s.quantity * {PRICE_HT}) {WITH_COST} AS sales_ht,
               SUM(s.quantity * ({PRICE_HT} - lp.weighted_average_price)) {WITH_COST} AS margin_ht
        {SALES_SOURCE}
        WHERE s.date >= :{start}
          AND s.date <= :{end}
          AND s.unit_price_ttc > 0
          {conditions}
        GROUP BY ip.pharmacy_id
    ),
    purchases{suffix} AS (
        SELECT ip.pharmacy_id,
               SUM(po.qte_r * COALESCE(lp.weighted_average_price, 0)) AS ca_achats
        {PURCHASE_SOURCE}
        WHERE o.delivery_date >= :{start}
          AND o.delivery_date <= :{end}
          AND po.qte_r > 0
          {conditions}
        GROUP BY ip.pharmacy_id
    )"""


def pharmacies_analytics(filters: FilterSet, binding: ScopeBinding) -> PreparedQuery:
    """
    Purchases, sales, margin and stock value per pharmacy, with the
    comparison period alongside when one is requested. Admin only, so the
    pharmacy selection is a plain filter group here.
    """
    cond = build_conditions(filters, include_pharmacies=True)
    params = _merge(_base_params(filters.date_range), cond.params)

    ctes = [_pharmacy_period_ctes("", "start_date", "end_date", cond.sql)]
    comparison_cols = "NULL AS ca_ventes_comparison, NULL AS ca_achats_comparison"
    comparison_joins = ""
    if filters.comparison_date_range is not None:
        params["cmp_start_date"] = filters.comparison_date_range.start
        params["cmp_end_date"] = filters.comparison_date_range.end
        ctes.append(_pharmacy_period_ctes("_comparison", "cmp_start_date", "cmp_end_date", cond.sql))
        comparison_cols = (
            "COALESCE(sac.ca_ventes, 0) AS ca_ventes_comparison, "
            "COALESCE(puc.ca_achats, 0) AS ca_achats_comparison"
        )
        comparison_joins = """
    LEFT JOIN sales_comparison sac ON sac.pharmacy_id = dp.id
    LEFT JOIN purchases_comparison puc ON puc.pharmacy_id = dp.id"""

    sql = f"""
    WITH {",".join(ctes)},
    stock AS (
        SELECT ip.pharmacy_id,
               SUM(lp.stock * lp.weighted_average_price) AS valeur_stock_ht
        {STOCK_SOURCE}
        WHERE lp.stock > 0
          {cond.sql}
        GROUP BY ip.pharmacy_id
    )
    SELECT dp.id AS pharmacy_id,
           dp.name AS pharmacy_name,
           COALESCE(pu.ca_achats, 0) AS ca_achats,
           COALESCE(sa.ca_ventes, 0) AS ca_ventes,
           COALESCE(sa.quantite_vendue, 0) AS quantite_vendue,
           sa.sales_ht,
           sa.margin_ht,
           COALESCE(st.valeur_stock_ht, 0) AS valeur_stock_ht,
           {comparison_cols}
    FROM data_pharmacy dp
    LEFT JOIN sales sa ON sa.pharmacy_id = dp.id
    LEFT JOIN purchases pu ON pu.pharmacy_id = dp.id
    LEFT JOIN stock st ON st.pharmacy_id = dp.id{comparison_joins}
    WHERE sa.pharmacy_id IS NOT NULL
       OR pu.pharmacy_id IS NOT NULL
       OR st.pharmacy_id IS NOT NULL
    ORDER BY ca_ventes DESC
    LIMIT :row_limit
    """
    return PreparedQuery(sql, params)


# ── Laboratory market share ──────────────────────────────────────────

def _laboratory_period_cte(suffix: str, start: str, end: str, binding: ScopeBinding, conditions: str) -> str:
    selection = binding.selection_predicate()
    market = binding.market_predicate()
    return f"""
    labs{suffix} AS (
        SELECT gp.bcb_lab AS laboratory_name,
               SUM(s.quantity * s.unit_price_ttc) FILTER (WHERE true {selection}) AS selection_sales_ttc,
               SUM(s.quantity) FILTER (WHERE true {selection}) AS selection_quantity,
               SUM(s.quantity * {PRICE_HT}) FILTER (WHERE lp.weighted_average_price > 0 {selection}) AS selection_sales_ht,
               SUM(s.quantity * ({PRICE_HT} - lp.weighted_average_price))
                   FILTER (WHERE lp.weighted_average_price > 0 {selection}) AS selection_margin_ht,
               COUNT(DISTINCT ip.code_13_ref_id) FILTER (WHERE true {selection}) AS selection_product_count,
               SUM(s.quantity * s.unit_price_ttc) FILTER (WHERE true {market}) AS market_sales_ttc,
               SUM(s.quantity) FILTER (WHERE true {market}) AS market_quantity
        {SALES_SOURCE}
        WHERE s.date >= :{start}
          AND s.date <= :{end}
          AND s.unit_price_ttc > 0
          AND gp.bcb_lab IS NOT NULL
          {conditions}
        GROUP BY gp.bcb_lab
    ),
    labs{suffix}_totals AS (
        SELECT SUM(selection_sales_ttc) AS total_selection_sales_ttc,
               SUM(market_sales_ttc) AS total_market_sales_ttc
        FROM labs{suffix}
    )"""


def laboratory_market_share(filters: FilterSet, binding: ScopeBinding) -> PreparedQuery:
    """
    Sales per laboratory for the selection and for the market, with the
    laboratory's share of each and the comparison period alongside.

    Share denominators (``labs_totals``) cover every laboratory, not only the
    rows kept by the row cap.
    """
    cond = build_conditions(filters, include_pharmacies=False)
    params = _merge(_base_params(filters.date_range), binding.params, cond.params)

    ctes = [_laboratory_period_cte("", "start_date", "end_date", binding, cond.sql)]
    comparison_cols = """
           NULL AS selection_sales_ttc_comparison,
           NULL AS market_sales_ttc_comparison,
           NULL AS total_selection_sales_ttc_comparison,
           NULL AS total_market_sales_ttc_comparison"""
    comparison_joins = ""
    if filters.comparison_date_range is not None:
        params["cmp_start_date"] = filters.comparison_date_range.start
        params["cmp_end_date"] = filters.comparison_date_range.end
        ctes.append(_laboratory_period_cte("_comparison", "cmp_start_date", "cmp_end_date", binding, cond.sql))
        comparison_cols = """
           COALESCE(lc.selection_sales_ttc, 0) AS selection_sales_ttc_comparison,
           COALESCE(lc.market_sales_ttc, 0) AS market_sales_ttc_comparison,
           tc.total_selection_sales_ttc AS total_selection_sales_ttc_comparison,
           tc.total_market_sales_ttc AS total_market_sales_ttc_comparison"""
        comparison_joins = """
    LEFT JOIN labs_comparison lc ON lc.laboratory_name = l.laboratory_name
    CROSS JOIN labs_comparison_totals tc"""

    sql = f"""
    WITH {",".join(ctes)}
    SELECT l.laboratory_name,
           l.selection_sales_ttc,
           l.selection_quantity,
           l.selection_sales_ht,
           l.selection_margin_ht,
           l.selection_product_count,
           l.market_sales_ttc,
           l.market_quantity,
           t.total_selection_sales_ttc,
           t.total_market_sales_ttc,{comparison_cols}
    FROM labs l
    CROSS JOIN labs_totals t{comparison_joins}
    ORDER BY l.selection_sales_ttc DESC NULLS LAST, l.laboratory_name
    LIMIT :row_limit
    """
    return PreparedQuery(sql, params)


# ── Ruptures (orders vs receptions) ──────────────────────────────────

def ruptures_products(filters: FilterSet, binding: ScopeBinding) -> PreparedQuery:
    """
    Ordered, received, sold and stocked quantities per product and period
    inside the selection. Products with the largest undelivered quantity
    come first under the row cap, and every kept product carries all of its
    periods.
    """
    cond = build_conditions(filters, include_pharmacies=False)
    scope = binding.selection_predicate("ip.pharmacy_id")
    bucket = period_bucket(filters.date_range)

    sql = f"""
    WITH sales AS (
        SELECT ip.code_13_ref_id AS code_ean,
               CAST(DATE_TRUNC('{bucket}', s.date) AS date) AS period_start,
               SUM(s.quantity) AS quantity_sold
        {SALES_SOURCE}
        WHERE s.date >= :start_date
          AND s.date <= :end_date
          {scope}
          {cond.sql}
        GROUP BY 1, 2
    ),
    orders AS (
        SELECT ip.code_13_ref_id AS code_ean,
               CAST(DATE_TRUNC('{bucket}', o.delivery_date) AS date) AS period_start,
               SUM(po.qte) AS quantity_ordered,
               SUM(po.qte_r) AS quantity_received,
               AVG(lp.weighted_average_price) {WITH_COST} AS avg_buy_price_ht
        {PURCHASE_SOURCE}
        WHERE o.delivery_date >= :start_date
          AND o.delivery_date <= :end_date
          {scope}
          {cond.sql}
        GROUP BY 1, 2
    ),
    stock AS (
        SELECT code_ean, period_start, SUM(stock) AS quantity_stock
        FROM (
            SELECT DISTINCT ON (ip.id, DATE_TRUNC('{bucket}', lp.date))
                   ip.code_13_ref_id AS code_ean,
                   CAST(DATE_TRUNC('{bucket}', lp.date) AS date) AS period_start,
                   lp.stock
            FROM data_inventorysnapshot lp
            JOIN data_internalproduct ip ON lp.product_id = ip.id
            LEFT JOIN data_globalproduct gp ON ip.code_13_ref_id = gp.code_13_ref
            WHERE lp.date >= :start_date
              AND lp.date <= :end_date
              {scope}
              {cond.sql}
            ORDER BY ip.id, DATE_TRUNC('{bucket}', lp.date), lp.date DESC
        ) last_snapshots
        GROUP BY 1, 2
    ),
    periods AS (
        SELECT code_ean, period_start FROM sales
        UNION
        SELECT code_ean, period_start FROM orders
    ),
    top_products AS (
        SELECT p.code_ean
        FROM periods p
        LEFT JOIN orders o ON o.code_ean = p.code_ean AND o.period_start = p.period_start
        GROUP BY p.code_ean
        ORDER BY SUM(COALESCE(o.quantity_ordered, 0) - COALESCE(o.quantity_received, 0)) DESC, p.code_ean
        LIMIT :row_limit
    )
    SELECT gp.name AS nom,
           p.code_ean,
           p.period_start,
           COALESCE(sa.quantity_sold, 0) AS quantity_sold,
           COALESCE(o.quantity_ordered, 0) AS quantity_ordered,
           COALESCE(o.quantity_received, 0) AS quantity_received,
           st.quantity_stock,
           o.avg_buy_price_ht
    FROM periods p
    JOIN top_products tp ON tp.code_ean = p.code_ean
    JOIN data_globalproduct gp ON gp.code_13_ref = p.code_ean
    LEFT JOIN sales sa ON sa.code_ean = p.code_ean AND sa.period_start = p.period_start
    LEFT JOIN orders o ON o.code_ean = p.code_ean AND o.period_start = p.period_start
    LEFT JOIN stock st ON st.code_ean = p.code_ean AND st.period_start = p.period_start
    ORDER BY gp.name, p.code_ean, p.period_start
    """
    return PreparedQuery(sql, _merge(_base_params(filters.date_range), binding.params, cond.params))
