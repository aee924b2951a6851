"""
Unit tests for derived metrics and result finalisation.
"""

import math

import pandas as pd
import pytest

from apodata.metrics import (
    UNRANKED,
    evolution_pct,
    finalize_competitive,
    finalize_laboratories,
    finalize_pharmacies,
    finalize_products,
    finalize_ruptures,
    finalize_sales,
    margin_rate,
    market_share_pct,
    price_gap_pct,
    relative_evolutions,
    round_money,
    safe_ratio,
)
from apodata.models import QueryMode


# ── Tests: scalar helpers ────────────────────────────────────────────

def test_safe_ratio():
    assert safe_ratio(1, 2) == 0.5
    assert safe_ratio(1, 0) == 0.0
    assert safe_ratio(None, 2) == 0.0
    assert safe_ratio(1, float("nan")) == 0.0


def test_evolution_pct():
    assert evolution_pct(150, 100) == 50.0
    assert evolution_pct(10, 0) == 0.0
    assert evolution_pct(None, 100) == -100.0


def test_margin_and_market_share():
    assert margin_rate(25, 100) == 25.0
    assert market_share_pct(30, 0) == 0.0
    assert market_share_pct(30, 120) == 25.0


def test_price_gap_is_zero_without_selection():
    assert price_gap_pct(110, 100, QueryMode.ADMIN_WITH_SELECTION) == pytest.approx(10.0)
    assert price_gap_pct(110, 100, QueryMode.ADMIN_WITHOUT_SELECTION) == 0.0
    assert price_gap_pct(None, 100, QueryMode.USER_SCOPED) == 0.0


def test_relative_evolutions_excludes_outliers_from_median():
    assert relative_evolutions([-150, 10, 20, 30], [100, 100, 100, 100]) == [None, -10.0, 0.0, 10.0]


def test_relative_evolutions_excludes_zero_baseline():
    assert relative_evolutions([10, 50], [0, 100]) == [None, 0.0]
    assert relative_evolutions([500], [10]) == [None]


def test_round_money():
    assert round_money(2.345678) == 2.35
    assert round_money(None) == 0.0
    assert round_money(float("nan"), default=None) is None


# ── Tests: finalize_competitive ──────────────────────────────────────

def competitive_row(**overrides):
    row = {
        "product_name": "DOLIPRANE 1000MG", "code_ean": "3400930000001",
        "market_price_min": 2.0, "market_price_max": 3.0, "market_price_avg": 2.5,
        "market_pharmacy_count": 4,
        "selection_price_avg": 2.5, "selection_buy_price_ht": 1.2,
        "selection_quantity": 10, "selection_margin_ht": 5.0, "selection_sales_ht": 20.0,
    }
    row.update(overrides)
    return row


def test_finalize_competitive_market_only_has_zero_gap():
    rows = finalize_competitive(pd.DataFrame([competitive_row()]), QueryMode.ADMIN_WITHOUT_SELECTION)
    assert rows == [{
        "product_name": "DOLIPRANE 1000MG",
        "code_ean": "3400930000001",
        "prix_vente_min_global": 2.0,
        "prix_vente_max_global": 3.0,
        "prix_vente_moyen_global": 2.5,
        "nb_pharmacies_vendant": 4,
        "prix_vente_moyen_selection": 2.5,
        "prix_achat_moyen_ht": 1.2,
        "quantite_vendue_selection": 10,
        "taux_marge_moyen_selection": 25.0,
        "ecart_prix_vs_marche_pct": 0.0,
    }]


def test_finalize_competitive_selection_gap():
    df = pd.DataFrame([
        competitive_row(selection_price_avg=2.75),
        competitive_row(code_ean="3400930000002", selection_price_avg=None,
                        selection_quantity=None, selection_margin_ht=None, selection_sales_ht=None),
    ])
    rows = finalize_competitive(df, QueryMode.ADMIN_WITH_SELECTION)
    assert rows[0]["ecart_prix_vs_marche_pct"] == 10.0
    assert rows[1]["ecart_prix_vs_marche_pct"] == 0.0
    assert rows[1]["prix_vente_moyen_selection"] == 0.0
    assert rows[1]["quantite_vendue_selection"] == 0


def test_finalize_empty_frames():
    assert finalize_competitive(pd.DataFrame(), QueryMode.USER_SCOPED) == []
    assert finalize_products(pd.DataFrame()) == []
    assert finalize_sales(pd.DataFrame(), "day", False) == []
    assert finalize_pharmacies(pd.DataFrame(), True) == []
    assert finalize_laboratories(pd.DataFrame(), QueryMode.USER_SCOPED, False) == []
    assert finalize_ruptures(pd.DataFrame(), "day") == []


# ── Tests: finalize_products ─────────────────────────────────────────

def test_finalize_products_derives_ht_prices_and_margins():
    df = pd.DataFrame([{
        "product_name": "SPASFON", "code_ean": "340", "tva_rate": 20.0,
        "avg_sell_price_ttc": 12.0, "avg_buy_price_ht": 6.0,
        "quantity_sold": 5, "ca_ttc": 60.0, "sales_ht": 50.0, "margin_ht": 20.0,
        "current_stock": 7, "quantity_bought": 4, "purchase_amount": 24.0,
    }])
    (row,) = finalize_products(df)
    assert row["avg_sell_price_ht"] == 10.0
    assert row["unit_margin_ht"] == 4.0
    assert row["margin_rate_percent"] == 40.0
    assert row["total_margin_ht"] == 20.0
    assert row["current_stock"] == 7


# ── Tests: finalize_sales ────────────────────────────────────────────

def sales_frame(with_comparison=False):
    rows = [
        ("Alpha", "A", "LAB1", "2024-01-01", 10, 20.0, 5.0),
        ("Alpha", "A", "LAB1", "2024-02-01", 30, 60.0, 15.0),
        ("Beta", "B", "LAB2", "2024-01-01", 60, 120.0, 30.0),
    ]
    return pd.DataFrame([{
        "nom": nom, "code_ean": ean, "bcb_lab": lab, "period_start": pd.Timestamp(period),
        "quantity_sold": qty, "quantity_bought": 0, "avg_sell_price_ttc": 2.4, "avg_buy_price_ht": 1.0,
        "sales_ttc": sales_ht * 1.2, "sales_ht": sales_ht, "margin_ht": margin,
        "quantity_sold_comparison": 25 if with_comparison else None,
        "quantity_bought_comparison": 5 if with_comparison else None,
    } for nom, ean, lab, period, qty, sales_ht, margin in rows])


def test_finalize_sales_detail_and_synthesis_rows():
    rows = finalize_sales(sales_frame(), "month", has_comparison=False)

    assert [(r["code_ean"], r["type_ligne"], r["periode"]) for r in rows] == [
        ("A", "DETAIL", "2024-01"),
        ("A", "DETAIL", "2024-02"),
        ("A", "SYNTHESE", "TOTAL"),
        ("B", "DETAIL", "2024-01"),
        ("B", "SYNTHESE", "TOTAL"),
    ]
    details = [r for r in rows if r["type_ligne"] == "DETAIL"]
    assert [r["part_marche_quantite_pct"] for r in details] == [10.0, 30.0, 60.0]
    assert math.isclose(sum(r["part_marche_marge_pct"] for r in details), 100.0)

    synth_a = rows[2]
    assert synth_a["quantite_vendue"] == 40
    assert synth_a["part_marche_quantite_pct"] == 40.0
    assert synth_a["taux_marge_moyen"] == 25.0
    assert synth_a["quantite_vendue_comparison"] is None


def test_finalize_sales_shares_use_uncapped_selection_totals():
    # the frame holds only the capped products; the selection is wider
    df = sales_frame().assign(total_quantite_selection=400, total_marge_selection=200.0)
    rows = finalize_sales(df, "month", has_comparison=False)

    details = [r for r in rows if r["type_ligne"] == "DETAIL"]
    assert [r["part_marche_quantite_pct"] for r in details] == [2.5, 7.5, 15.0]
    assert [r["part_marche_marge_pct"] for r in details] == [2.5, 7.5, 15.0]
    synth_a = next(r for r in rows if r["type_ligne"] == "SYNTHESE" and r["code_ean"] == "A")
    assert synth_a["part_marche_quantite_pct"] == 10.0
    assert synth_a["part_marche_marge_pct"] == 10.0
    assert "total_quantite_selection" not in synth_a


def test_finalize_sales_comparison_only_on_synthesis():
    rows = finalize_sales(sales_frame(with_comparison=True), "day", has_comparison=True)
    for row in rows:
        if row["type_ligne"] == "SYNTHESE":
            assert row["quantite_vendue_comparison"] == 25
            assert row["quantity_bought_comparison"] == 5
        else:
            assert row["quantite_vendue_comparison"] is None
            assert row["periode"] == "2024-01-01" or row["periode"] == "2024-02-01"


# ── Tests: finalize_pharmacies ───────────────────────────────────────

def pharmacies_frame():
    return pd.DataFrame([
        {"pharmacy_id": "P1", "pharmacy_name": "Centrale", "ca_achats": 80.0, "ca_ventes": 200.0,
         "quantite_vendue": 20, "sales_ht": 100.0, "margin_ht": 30.0, "valeur_stock_ht": 500.0,
         "ca_ventes_comparison": 100.0, "ca_achats_comparison": 40.0},
        {"pharmacy_id": "P2", "pharmacy_name": "Gare", "ca_achats": 50.0, "ca_ventes": 100.0,
         "quantite_vendue": 10, "sales_ht": 50.0, "margin_ht": 10.0, "valeur_stock_ht": 200.0,
         "ca_ventes_comparison": 100.0, "ca_achats_comparison": 50.0},
        {"pharmacy_id": "P3", "pharmacy_name": "Port", "ca_achats": 0.0, "ca_ventes": 0.0,
         "quantite_vendue": 0, "sales_ht": None, "margin_ht": None, "valeur_stock_ht": 0.0,
         "ca_ventes_comparison": 50.0, "ca_achats_comparison": 0.0},
        {"pharmacy_id": "P4", "pharmacy_name": "Neuve", "ca_achats": 10.0, "ca_ventes": 50.0,
         "quantite_vendue": 5, "sales_ht": 40.0, "margin_ht": 8.0, "valeur_stock_ht": 10.0,
         "ca_ventes_comparison": 0.0, "ca_achats_comparison": 0.0},
    ])


def test_finalize_pharmacies_with_comparison():
    rows = {r["pharmacy_id"]: r for r in finalize_pharmacies(pharmacies_frame(), has_comparison=True)}

    assert rows["P1"]["rang_ventes_actuel"] == 1
    assert rows["P2"]["rang_ventes_actuel"] == 2
    assert rows["P4"]["rang_ventes_actuel"] == 3
    assert rows["P3"]["rang_ventes_actuel"] == UNRANKED

    assert rows["P1"]["evol_ventes_pct"] == 100.0
    assert rows["P3"]["evol_ventes_pct"] == -100.0
    # median of [100, 0, -100] is 0
    assert rows["P1"]["evol_relative_ventes_pct"] == 100.0
    assert rows["P2"]["evol_relative_ventes_pct"] == 0.0

    # zero baseline: evolution 0, left out of the median
    assert rows["P4"]["evol_ventes_pct"] == 0.0
    assert rows["P4"]["evol_relative_ventes_pct"] is None
    assert rows["P4"]["rang_ventes_precedent"] == UNRANKED
    assert rows["P4"]["gain_rang_ventes"] == 0

    assert rows["P1"]["pourcentage_marge"] == 30.0
    assert rows["P1"]["part_marche_pct"] == 57.14


def test_finalize_pharmacies_sorted_by_sales():
    rows = finalize_pharmacies(pharmacies_frame(), has_comparison=True)
    assert [r["pharmacy_id"] for r in rows] == ["P1", "P2", "P4", "P3"]


def test_finalize_pharmacies_without_comparison():
    rows = finalize_pharmacies(pharmacies_frame(), has_comparison=False)
    for row in rows:
        assert row["evol_ventes_pct"] is None
        assert row["evol_relative_achats_pct"] is None
        assert row["rang_ventes_precedent"] is None
        assert row["ca_ventes_comparison"] is None


# ── Tests: finalize_laboratories ─────────────────────────────────────

def laboratories_frame():
    # totals cover laboratories beyond the rows returned
    return pd.DataFrame([
        {"laboratory_name": "SANOFI", "selection_sales_ttc": 300.0, "selection_quantity": 30,
         "selection_sales_ht": 200.0, "selection_margin_ht": 50.0, "selection_product_count": 4,
         "market_sales_ttc": 1000.0, "market_quantity": 100,
         "total_selection_sales_ttc": 1000.0, "total_market_sales_ttc": 4000.0,
         "selection_sales_ttc_comparison": 200.0, "market_sales_ttc_comparison": 1250.0,
         "total_selection_sales_ttc_comparison": 1000.0, "total_market_sales_ttc_comparison": 5000.0},
        {"laboratory_name": "BIOGARAN", "selection_sales_ttc": 500.0, "selection_quantity": 80,
         "selection_sales_ht": 400.0, "selection_margin_ht": 120.0, "selection_product_count": 9,
         "market_sales_ttc": 800.0, "market_quantity": 90,
         "total_selection_sales_ttc": 1000.0, "total_market_sales_ttc": 4000.0,
         "selection_sales_ttc_comparison": 0.0, "market_sales_ttc_comparison": 0.0,
         "total_selection_sales_ttc_comparison": 1000.0, "total_market_sales_ttc_comparison": 5000.0},
    ])


def test_finalize_laboratories_shares_and_ranks():
    rows = finalize_laboratories(laboratories_frame(), QueryMode.ADMIN_WITH_SELECTION, has_comparison=False)

    assert [r["laboratory_name"] for r in rows] == ["BIOGARAN", "SANOFI"]
    biogaran, sanofi = rows
    assert biogaran["rang_selection"] == 1
    assert biogaran["rang_marche"] == 2
    assert sanofi["rang_marche"] == 1
    assert sanofi["part_marche_selection_pct"] == 30.0
    assert sanofi["part_marche_marche_pct"] == 25.0
    assert sanofi["ecart_part_marche_pts"] == 5.0
    assert sanofi["taux_marge_selection"] == 25.0
    assert biogaran["nb_produits"] == 9
    assert sanofi["evol_ca_selection_pct"] is None
    assert sanofi["ca_selection_ttc_comparison"] is None


def test_finalize_laboratories_gap_is_zero_without_selection():
    rows = finalize_laboratories(laboratories_frame(), QueryMode.ADMIN_WITHOUT_SELECTION, has_comparison=False)
    assert all(r["ecart_part_marche_pts"] == 0.0 for r in rows)


def test_finalize_laboratories_with_comparison():
    rows = {r["laboratory_name"]: r for r in finalize_laboratories(
        laboratories_frame(), QueryMode.USER_SCOPED, has_comparison=True)}

    sanofi = rows["SANOFI"]
    assert sanofi["ca_selection_ttc_comparison"] == 200.0
    assert sanofi["evol_ca_selection_pct"] == 50.0
    assert sanofi["part_marche_selection_comparison_pct"] == 20.0
    assert sanofi["evol_part_marche_pts"] == 10.0
    assert sanofi["evol_ca_marche_pct"] == -20.0
    # zero baseline
    assert rows["BIOGARAN"]["evol_ca_selection_pct"] == 0.0
    assert rows["BIOGARAN"]["evol_ca_marche_pct"] == 0.0


# ── Tests: finalize_ruptures ─────────────────────────────────────────

def ruptures_frame():
    rows = [
        ("Doliprane", "A", "2024-01-01", 12, 10, 6, 40.2, 2.0),
        ("Doliprane", "A", "2024-02-01", 8, 10, 10, 30.0, 4.0),
        ("Doliprane", "A", "2024-03-01", 0, 0, 0, 28.0, None),
        ("Efferalgan", "B", "2024-01-01", 5, 0, 0, None, None),
    ]
    return pd.DataFrame([{
        "nom": nom, "code_ean": ean, "period_start": pd.Timestamp(period),
        "quantity_sold": sold, "quantity_ordered": ordered, "quantity_received": received,
        "quantity_stock": stock, "avg_buy_price_ht": price,
    } for nom, ean, period, sold, ordered, received, stock, price in rows])


def test_finalize_ruptures_synthesis_leads_each_product():
    rows = finalize_ruptures(ruptures_frame(), "month")

    assert [(r["code_ean"], r["type_ligne"], r["periode"]) for r in rows] == [
        ("A", "SYNTHESE", "TOTAL"),
        ("A", "DETAIL", "2024-01"),
        ("A", "DETAIL", "2024-02"),
        ("B", "SYNTHESE", "TOTAL"),
        ("B", "DETAIL", "2024-01"),
    ]
    assert rows[0]["periode_libelle"] == "SYNTHÈSE PÉRIODE"


def test_finalize_ruptures_detail_deltas_and_rates():
    rows = finalize_ruptures(ruptures_frame(), "month")
    january, february = rows[1], rows[2]

    assert january["delta_quantite"] == 4
    assert january["taux_reception"] == 60.0
    assert january["montant_delta"] == 8.0
    assert january["quantite_stock"] == 40
    assert february["taux_reception"] == 100.0
    assert february["montant_delta"] == 0.0
    # nothing ordered
    assert rows[4]["taux_reception"] == 100.0
    assert rows[4]["prix_achat_moyen"] == 0.0


def test_finalize_ruptures_synthesis_aggregates_kept_periods():
    synth = finalize_ruptures(ruptures_frame(), "month")[0]

    assert synth["quantite_vendue"] == 20
    assert synth["quantite_commandee"] == 20
    assert synth["quantite_receptionnee"] == 16
    assert synth["delta_quantite"] == 4
    assert synth["taux_reception"] == 80.0
    assert synth["quantite_stock"] == 35
    assert synth["prix_achat_moyen"] == 3.0
    assert synth["montant_delta"] == 12.0
