"""
Derived metrics: margins, market shares, price gaps, period-over-period
evolutions and pharmacy ranks.

Scalar helpers are used directly by callers and tests; the ``finalize_*``
functions apply the same rules to whole result frames and produce the JSON
rows returned by the API. Rounding happens last, once every derived field
has been computed from unrounded inputs.
"""

import json
import math
from typing import Any, List, Optional, Sequence

import pandas as pd

from apodata.config import EVOLUTION_BAND
from apodata.models import QueryMode

UNRANKED = 999999


# ── Scalar helpers ───────────────────────────────────────────────────

def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def safe_ratio(numerator, denominator) -> float:
    """numerator / denominator, or 0.0 when the denominator is 0 or missing."""
    if _missing(numerator) or _missing(denominator) or float(denominator) == 0:
        return 0.0
    return float(numerator) / float(denominator)


def evolution_pct(current, previous) -> float:
    """Percentage change from ``previous`` to ``current``; 0.0 on a zero baseline."""
    if _missing(current):
        current = 0.0
    if _missing(previous):
        return 0.0
    return safe_ratio(float(current) - float(previous), previous) * 100


def margin_rate(margin_ht, sales_ht) -> float:
    return safe_ratio(margin_ht, sales_ht) * 100


def market_share_pct(value, total) -> float:
    return safe_ratio(value, total) * 100


def price_gap_pct(selection_avg, market_avg, mode: QueryMode) -> float:
    """Selection price vs market price; always 0 when selection and market coincide."""
    if mode is QueryMode.ADMIN_WITHOUT_SELECTION or _missing(selection_avg):
        return 0.0
    return safe_ratio(float(selection_avg) - float(market_avg or 0), market_avg) * 100


def relative_evolutions(evolutions: Sequence[Optional[float]],
                        baselines: Sequence[Optional[float]]) -> List[Optional[float]]:
    """
    Each evolution minus the median evolution.

    Only entries with a positive baseline and an evolution inside
    ``EVOLUTION_BAND`` feed the median and receive a relative value; the
    others get ``None``.
    """
    low, high = EVOLUTION_BAND
    eligible = [
        not _missing(evo) and not _missing(base) and float(base) > 0 and low <= float(evo) <= high
        for evo, base in zip(evolutions, baselines)
    ]
    values = [float(evo) for evo, ok in zip(evolutions, eligible) if ok]
    if not values:
        return [None] * len(eligible)
    median = float(pd.Series(values).median())
    return [float(evo) - median if ok else None for evo, ok in zip(evolutions, eligible)]


def round_money(value, digits: int = 2, default: Optional[float] = 0.0) -> Optional[float]:
    if _missing(value):
        return default
    return round(float(value), digits)


# ── Frame helpers ────────────────────────────────────────────────────

def _num(df: pd.DataFrame, column: str) -> pd.Series:
    """Column as float (Decimal / None from the driver become float / NaN)."""
    if column not in df:
        return pd.Series(float("nan"), index=df.index)
    return pd.to_numeric(df[column].astype(float), errors="coerce")


def _ratio(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    return numerator.div(denominator.where(denominator != 0)).fillna(0.0)


def _records(df: pd.DataFrame) -> List[dict]:
    """JSON-ready rows: numpy scalars become Python numbers, NaN becomes None."""
    return json.loads(df.to_json(orient="records", force_ascii=False))


def _rank_desc(values: pd.Series) -> pd.Series:
    ranks = values.where(values > 0).rank(method="min", ascending=False)
    return ranks.fillna(UNRANKED).astype(int)


# ── Competitive analysis ─────────────────────────────────────────────

def finalize_competitive(df: pd.DataFrame, mode: QueryMode) -> List[dict]:
    if df.empty:
        return []

    market_avg = _num(df, "market_price_avg")
    selection_avg = _num(df, "selection_price_avg")
    if mode is QueryMode.ADMIN_WITHOUT_SELECTION:
        gap = pd.Series(0.0, index=df.index)
    else:
        gap = _ratio(selection_avg - market_avg, market_avg).where(selection_avg.notna(), 0.0) * 100

    out = pd.DataFrame({
        "product_name": df["product_name"],
        "code_ean": df["code_ean"],
        "prix_vente_min_global": _num(df, "market_price_min").fillna(0.0),
        "prix_vente_max_global": _num(df, "market_price_max").fillna(0.0),
        "prix_vente_moyen_global": market_avg.fillna(0.0),
        "nb_pharmacies_vendant": _num(df, "market_pharmacy_count").fillna(0).astype(int),
        "prix_vente_moyen_selection": selection_avg.fillna(0.0),
        "prix_achat_moyen_ht": _num(df, "selection_buy_price_ht").fillna(0.0),
        "quantite_vendue_selection": _num(df, "selection_quantity").fillna(0).astype(int),
        "taux_marge_moyen_selection": _ratio(_num(df, "selection_margin_ht"), _num(df, "selection_sales_ht")) * 100,
        "ecart_prix_vs_marche_pct": gap,
    })
    return _records(out.round(2))


# ── Products list ────────────────────────────────────────────────────

def finalize_products(df: pd.DataFrame) -> List[dict]:
    if df.empty:
        return []

    tva = _num(df, "tva_rate").fillna(0.0)
    sell_ttc = _num(df, "avg_sell_price_ttc").fillna(0.0)
    buy_ht = _num(df, "avg_buy_price_ht").fillna(0.0)
    sell_ht = sell_ttc / (1 + tva / 100)

    out = pd.DataFrame({
        "product_name": df["product_name"],
        "code_ean": df["code_ean"],
        "avg_sell_price_ttc": sell_ttc,
        "avg_buy_price_ht": buy_ht,
        "tva_rate": tva,
        "avg_sell_price_ht": sell_ht,
        "margin_rate_percent": _ratio(_num(df, "margin_ht"), _num(df, "sales_ht")) * 100,
        "unit_margin_ht": (sell_ht - buy_ht).where(buy_ht > 0, 0.0),
        "total_margin_ht": _num(df, "margin_ht").fillna(0.0),
        "current_stock": _num(df, "current_stock").fillna(0).astype(int),
        "quantity_sold": _num(df, "quantity_sold").fillna(0).astype(int),
        "ca_ttc": _num(df, "ca_ttc").fillna(0.0),
        "quantity_bought": _num(df, "quantity_bought").fillna(0).astype(int),
        "purchase_amount": _num(df, "purchase_amount").fillna(0.0),
    })
    return _records(out.round(2))


# ── Sales per product and period ─────────────────────────────────────

PERIOD_FORMATS = {
    "month": ("%Y-%m", "%B %Y"),
    "day": ("%Y-%m-%d", "%d/%m/%Y"),
}


def _selection_total(df: pd.DataFrame, total_column: str, column: str) -> float:
    """Selection-wide total carried by the query, else the sum of the rows at hand."""
    totals = _num(df, total_column).dropna()
    if not totals.empty:
        return float(totals.iloc[0])
    return float(df[column].sum())


def finalize_sales(df: pd.DataFrame, bucket: str, has_comparison: bool) -> List[dict]:
    """
    DETAIL rows per product and period followed by one SYNTHESE row per
    product. Market shares are the product's part of the whole selection.
    """
    if df.empty:
        return []

    df = df.copy()
    for column in ("quantity_sold", "quantity_bought", "avg_sell_price_ttc", "avg_buy_price_ht",
                   "sales_ttc", "sales_ht", "margin_ht",
                   "quantity_sold_comparison", "quantity_bought_comparison"):
        df[column] = _num(df, column)

    total_quantity = _selection_total(df, "total_quantite_selection", "quantity_sold")
    total_margin = _selection_total(df, "total_marge_selection", "margin_ht")
    value_fmt, label_fmt = PERIOD_FORMATS[bucket]
    periods = pd.to_datetime(df["period_start"])

    detail = pd.DataFrame({
        "nom": df["nom"],
        "code_ean": df["code_ean"],
        "bcb_lab": df["bcb_lab"],
        "periode": periods.dt.strftime(value_fmt),
        "periode_libelle": periods.dt.strftime(label_fmt),
        "type_ligne": "DETAIL",
        "quantity_bought": df["quantity_bought"].fillna(0),
        "quantite_vendue": df["quantity_sold"].fillna(0),
        "prix_achat_moyen": df["avg_buy_price_ht"].fillna(0.0),
        "prix_vente_moyen": df["avg_sell_price_ttc"].fillna(0.0),
        "taux_marge_moyen": _ratio(df["margin_ht"], df["sales_ht"]) * 100,
        "part_marche_quantite_pct": df["quantity_sold"].apply(lambda q: market_share_pct(q, total_quantity)),
        "part_marche_marge_pct": df["margin_ht"].apply(lambda m: market_share_pct(m, total_margin)),
        "montant_ventes_ttc": df["sales_ttc"].fillna(0.0),
        "montant_marge_total": df["margin_ht"].fillna(0.0),
        "quantite_vendue_comparison": None,
        "quantity_bought_comparison": None,
        "_order": 0,
        "_period": periods,
    })

    grouped = df.groupby(["code_ean", "nom", "bcb_lab"], dropna=False, sort=False).agg(
        quantity_sold=("quantity_sold", "sum"),
        quantity_bought=("quantity_bought", "sum"),
        avg_sell_price_ttc=("avg_sell_price_ttc", "mean"),
        avg_buy_price_ht=("avg_buy_price_ht", "mean"),
        sales_ttc=("sales_ttc", "sum"),
        sales_ht=("sales_ht", "sum"),
        margin_ht=("margin_ht", "sum"),
        quantity_sold_comparison=("quantity_sold_comparison", "first"),
        quantity_bought_comparison=("quantity_bought_comparison", "first"),
    ).reset_index()
    grouped = grouped[grouped["quantity_sold"] > 0]

    synthesis = pd.DataFrame({
        "nom": grouped["nom"],
        "code_ean": grouped["code_ean"],
        "bcb_lab": grouped["bcb_lab"],
        "periode": "TOTAL",
        "periode_libelle": "SYNTHÈSE PÉRIODE",
        "type_ligne": "SYNTHESE",
        "quantity_bought": grouped["quantity_bought"].fillna(0),
        "quantite_vendue": grouped["quantity_sold"],
        "prix_achat_moyen": grouped["avg_buy_price_ht"].fillna(0.0),
        "prix_vente_moyen": grouped["avg_sell_price_ttc"].fillna(0.0),
        "taux_marge_moyen": _ratio(grouped["margin_ht"], grouped["sales_ht"]) * 100,
        "part_marche_quantite_pct": grouped["quantity_sold"].apply(lambda q: market_share_pct(q, total_quantity)),
        "part_marche_marge_pct": grouped["margin_ht"].apply(lambda m: market_share_pct(m, total_margin)),
        "montant_ventes_ttc": grouped["sales_ttc"].fillna(0.0),
        "montant_marge_total": grouped["margin_ht"].fillna(0.0),
        "quantite_vendue_comparison": grouped["quantity_sold_comparison"].fillna(0) if has_comparison else None,
        "quantity_bought_comparison": grouped["quantity_bought_comparison"].fillna(0) if has_comparison else None,
        "_order": 1,
        "_period": pd.NaT,
    })

    rows = pd.concat([detail, synthesis], ignore_index=True)
    rows = rows.sort_values(["nom", "code_ean", "_order", "_period"], kind="stable", na_position="last")
    rows = rows.drop(columns=["_order", "_period"])
    return _records(rows.round(2))


# ── Pharmacies analytics ─────────────────────────────────────────────

def finalize_pharmacies(df: pd.DataFrame, has_comparison: bool) -> List[dict]:
    """
    Per-pharmacy KPIs with ranks, evolutions and market share.

    Without a comparison period every comparison field is None. With one, a
    zero baseline yields a 0.0 evolution, and the relative evolution is only
    set for pharmacies that fed the median.
    """
    if df.empty:
        return []

    ca_ventes = _num(df, "ca_ventes").fillna(0.0)
    ca_achats = _num(df, "ca_achats").fillna(0.0)
    total_ventes = ca_ventes[ca_ventes > 0].sum()

    out = pd.DataFrame({
        "pharmacy_id": df["pharmacy_id"].astype(str),
        "pharmacy_name": df["pharmacy_name"],
        "rang_ventes_actuel": _rank_desc(ca_ventes),
        "rang_ventes_precedent": None,
        "gain_rang_ventes": None,
        "ca_achats": ca_achats,
        "ca_achats_comparison": None,
        "evol_achats_pct": None,
        "evol_relative_achats_pct": None,
        "ca_ventes": ca_ventes,
        "ca_ventes_comparison": None,
        "evol_ventes_pct": None,
        "evol_relative_ventes_pct": None,
        "pourcentage_marge": _ratio(_num(df, "margin_ht"), _num(df, "sales_ht")) * 100,
        "quantite_vendue": _num(df, "quantite_vendue").fillna(0).astype(int),
        "valeur_stock_ht": _num(df, "valeur_stock_ht").fillna(0.0),
        "part_marche_pct": ca_ventes.apply(lambda v: market_share_pct(v, total_ventes)),
    })

    if has_comparison:
        ventes_cmp = _num(df, "ca_ventes_comparison").fillna(0.0)
        achats_cmp = _num(df, "ca_achats_comparison").fillna(0.0)
        evol_ventes = _ratio(ca_ventes - ventes_cmp, ventes_cmp) * 100
        evol_achats = _ratio(ca_achats - achats_cmp, achats_cmp) * 100
        previous_rank = _rank_desc(ventes_cmp)
        ranked = (out["rang_ventes_actuel"] != UNRANKED) & (previous_rank != UNRANKED)

        out["rang_ventes_precedent"] = previous_rank
        out["gain_rang_ventes"] = (previous_rank - out["rang_ventes_actuel"]).where(ranked, 0)
        out["ca_ventes_comparison"] = ventes_cmp
        out["ca_achats_comparison"] = achats_cmp
        out["evol_ventes_pct"] = evol_ventes
        out["evol_achats_pct"] = evol_achats
        out["evol_relative_ventes_pct"] = pd.Series(
            relative_evolutions(evol_ventes.tolist(), ventes_cmp.tolist()), index=out.index, dtype=object)
        out["evol_relative_achats_pct"] = pd.Series(
            relative_evolutions(evol_achats.tolist(), achats_cmp.tolist()), index=out.index, dtype=object)

    out = out.sort_values("ca_ventes", ascending=False, kind="stable")
    return [_round_row(row) for row in _records(out)]


def _round_row(row: dict) -> dict:
    return {k: round(v, 2) if isinstance(v, float) else v for k, v in row.items()}


# ── Laboratory market share ──────────────────────────────────────────

def finalize_laboratories(df: pd.DataFrame, mode: QueryMode, has_comparison: bool) -> List[dict]:
    """
    Per-laboratory sales with the laboratory's share of the selection and of
    the market. The share gap is 0 when selection and market coincide.
    """
    if df.empty:
        return []

    selection_ttc = _num(df, "selection_sales_ttc").fillna(0.0)
    market_ttc = _num(df, "market_sales_ttc").fillna(0.0)
    share_selection = _ratio(selection_ttc, _num(df, "total_selection_sales_ttc")) * 100
    share_market = _ratio(market_ttc, _num(df, "total_market_sales_ttc")) * 100
    if mode is QueryMode.ADMIN_WITHOUT_SELECTION:
        gap = pd.Series(0.0, index=df.index)
    else:
        gap = share_selection - share_market

    out = pd.DataFrame({
        "laboratory_name": df["laboratory_name"],
        "rang_selection": _rank_desc(selection_ttc),
        "rang_marche": _rank_desc(market_ttc),
        "ca_selection_ttc": selection_ttc,
        "quantite_selection": _num(df, "selection_quantity").fillna(0).astype(int),
        "marge_selection_ht": _num(df, "selection_margin_ht").fillna(0.0),
        "taux_marge_selection": _ratio(_num(df, "selection_margin_ht"), _num(df, "selection_sales_ht")) * 100,
        "nb_produits": _num(df, "selection_product_count").fillna(0).astype(int),
        "part_marche_selection_pct": share_selection,
        "ca_marche_ttc": market_ttc,
        "part_marche_marche_pct": share_market,
        "ecart_part_marche_pts": gap,
        "ca_selection_ttc_comparison": None,
        "evol_ca_selection_pct": None,
        "part_marche_selection_comparison_pct": None,
        "evol_part_marche_pts": None,
        "evol_ca_marche_pct": None,
    })

    if has_comparison:
        selection_cmp = _num(df, "selection_sales_ttc_comparison").fillna(0.0)
        market_cmp = _num(df, "market_sales_ttc_comparison").fillna(0.0)
        share_cmp = _ratio(selection_cmp, _num(df, "total_selection_sales_ttc_comparison")) * 100
        out["ca_selection_ttc_comparison"] = selection_cmp
        out["evol_ca_selection_pct"] = _ratio(selection_ttc - selection_cmp, selection_cmp) * 100
        out["part_marche_selection_comparison_pct"] = share_cmp
        out["evol_part_marche_pts"] = share_selection - share_cmp
        out["evol_ca_marche_pct"] = _ratio(market_ttc - market_cmp, market_cmp) * 100

    out = out.sort_values(["rang_selection", "laboratory_name"], kind="stable")
    return [_round_row(row) for row in _records(out)]


# ── Ruptures ─────────────────────────────────────────────────────────

def finalize_ruptures(df: pd.DataFrame, bucket: str) -> List[dict]:
    """
    One SYNTHESE row per product followed by its DETAIL rows per period.

    The reception rate is received / ordered, or 100 when nothing was
    ordered. Periods with no sale, order or reception are dropped.
    """
    if df.empty:
        return []

    df = df.copy()
    for column in ("quantity_sold", "quantity_ordered", "quantity_received",
                   "quantity_stock", "avg_buy_price_ht"):
        df[column] = _num(df, column)
    df[["quantity_sold", "quantity_ordered", "quantity_received"]] = (
        df[["quantity_sold", "quantity_ordered", "quantity_received"]].fillna(0))
    df = df[(df["quantity_sold"] > 0) | (df["quantity_ordered"] > 0) | (df["quantity_received"] > 0)]
    if df.empty:
        return []

    value_fmt, label_fmt = PERIOD_FORMATS[bucket]
    periods = pd.to_datetime(df["period_start"])
    delta = df["quantity_ordered"] - df["quantity_received"]
    price = df["avg_buy_price_ht"].fillna(0.0)

    detail = pd.DataFrame({
        "nom": df["nom"],
        "code_ean": df["code_ean"],
        "periode": periods.dt.strftime(value_fmt),
        "periode_libelle": periods.dt.strftime(label_fmt),
        "type_ligne": "DETAIL",
        "quantite_vendue": df["quantity_sold"],
        "quantite_commandee": df["quantity_ordered"],
        "quantite_receptionnee": df["quantity_received"],
        "quantite_stock": df["quantity_stock"].fillna(0).round(0),
        "delta_quantite": delta,
        "taux_reception": _ratio(df["quantity_received"], df["quantity_ordered"]).where(
            df["quantity_ordered"] > 0, 1.0) * 100,
        "prix_achat_moyen": price,
        "montant_delta": delta * price,
        "_order": 1,
        "_period": periods,
    })

    df = df.assign(_price=df["avg_buy_price_ht"].where(df["avg_buy_price_ht"] > 0))
    grouped = df.groupby(["code_ean", "nom"], dropna=False, sort=False).agg(
        quantity_sold=("quantity_sold", "sum"),
        quantity_ordered=("quantity_ordered", "sum"),
        quantity_received=("quantity_received", "sum"),
        quantity_stock=("quantity_stock", "mean"),
        avg_buy_price_ht=("_price", "mean"),
    ).reset_index()
    grouped_delta = grouped["quantity_ordered"] - grouped["quantity_received"]
    grouped_price = grouped["avg_buy_price_ht"].fillna(0.0)

    synthesis = pd.DataFrame({
        "nom": grouped["nom"],
        "code_ean": grouped["code_ean"],
        "periode": "TOTAL",
        "periode_libelle": "SYNTHÈSE PÉRIODE",
        "type_ligne": "SYNTHESE",
        "quantite_vendue": grouped["quantity_sold"],
        "quantite_commandee": grouped["quantity_ordered"],
        "quantite_receptionnee": grouped["quantity_received"],
        "quantite_stock": grouped["quantity_stock"].fillna(0).round(0),
        "delta_quantite": grouped_delta,
        "taux_reception": _ratio(grouped["quantity_received"], grouped["quantity_ordered"]).where(
            grouped["quantity_ordered"] > 0, 1.0) * 100,
        "prix_achat_moyen": grouped_price,
        "montant_delta": grouped_delta * grouped_price,
        "_order": 0,
        "_period": pd.NaT,
    })

    rows = pd.concat([synthesis, detail], ignore_index=True)
    rows = rows.sort_values(["nom", "code_ean", "_order", "_period"], kind="stable", na_position="first")
    rows = rows.drop(columns=["_order", "_period"])
    for column in ("quantite_vendue", "quantite_commandee", "quantite_receptionnee",
                   "quantite_stock", "delta_quantite"):
        rows[column] = rows[column].astype(int)
    return _records(rows.round(2))
