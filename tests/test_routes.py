"""
API tests for the Flask routes, using fake engine / cache / security resolver.
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError

from apodata.api.app import create_app
from apodata.api.auth import generate_token
from apodata.cache import ResultCache
from apodata.errors import Unauthorized
from apodata.models import SecurityContext


# ── Helpers / Fakes ──────────────────────────────────────────────────

class FakeResult:
    """Mimic SQLAlchemy Result with .mappings().all()."""
    def __init__(self, rows):
        self._rows = rows

    def mappings(self):
        return self

    def all(self):
        return self._rows

    def first(self):
        return self._rows[0] if self._rows else None


class FakeConn:
    def __init__(self, engine):
        self._engine = engine

    def execute(self, sql, params=None):
        if self._engine.error is not None:
            raise self._engine.error
        self._engine.executed.append((str(sql), params))
        return FakeResult(self._engine.rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeEngine:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.executed = []

    def connect(self):
        return FakeConn(self)


class FakeRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value


USERS = {
    "u-admin": SecurityContext(user_id="u-admin", role="admin", pharmacy_id=None, email="admin@apodata.fr"),
    "u-1": SecurityContext(user_id="u-1", role="user", pharmacy_id="P1", email="pharma@apodata.fr"),
}


def resolve(user_id):
    if user_id == "u-broken":
        raise Unauthorized("Pharmacy user must have pharmacy_id set in data_user.")
    if user_id == "u-dbdown":
        raise SQLAlchemyError("could not connect to server")
    return USERS.get(user_id)


COMPETITIVE_ROW = {
    "product_name": "DOLIPRANE 1000MG", "code_ean": "3400930000001",
    "market_price_min": 2.0, "market_price_max": 3.0, "market_price_avg": 2.5,
    "market_pharmacy_count": 4,
    "selection_price_avg": 2.75, "selection_buy_price_ht": 1.2,
    "selection_quantity": 10, "selection_margin_ht": 5.0, "selection_sales_ht": 20.0,
}

BODY = {"dateRange": {"start": "2024-01-01", "end": "2024-01-31"}}


def make_client(engine, cache_enabled=True):
    cache = ResultCache(FakeRedis(), enabled=cache_enabled)
    app = create_app(engine=engine, cache=cache, config={"TESTING": True, "SECURITY_RESOLVER": resolve})
    return app.test_client()


def auth(user_id):
    return {"Authorization": f"Bearer {generate_token(user_id)}"}


# ── Tests: authentication ────────────────────────────────────────────

def test_missing_token_is_401():
    client = make_client(FakeEngine())
    resp = client.post("/api/competitive-analysis", json=BODY)
    assert resp.status_code == 401


def test_invalid_token_is_401():
    client = make_client(FakeEngine())
    resp = client.post("/api/competitive-analysis", json=BODY, headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "Invalid or expired token"


def test_unknown_or_unscoped_user_is_401():
    client = make_client(FakeEngine())
    assert client.post("/api/products/list", json=BODY, headers=auth("ghost")).status_code == 401
    resp = client.post("/api/products/list", json=BODY, headers=auth("u-broken"))
    assert resp.status_code == 401
    assert "pharmacy_id" in resp.get_json()["error"]


# ── Tests: validation ────────────────────────────────────────────────

def test_invalid_json_is_400():
    client = make_client(FakeEngine())
    resp = client.post("/api/competitive-analysis", data="{oops",
                       content_type="application/json", headers=auth("u-admin"))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid JSON body"


def test_missing_date_range_is_400():
    engine = FakeEngine()
    client = make_client(engine)
    resp = client.post("/api/sales-products", json={"productCodes": ["A"]}, headers=auth("u-1"))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Date range required"
    assert engine.executed == []


def test_pharmacies_analytics_is_admin_only():
    engine = FakeEngine()
    client = make_client(engine)
    resp = client.post("/api/pharmacies/analytics", json=BODY, headers=auth("u-1"))
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "Unauthorized - Admin only"
    assert engine.executed == []


# ── Tests: analytics endpoints ───────────────────────────────────────

def test_competitive_analysis_cached_on_second_call():
    engine = FakeEngine(rows=[COMPETITIVE_ROW])
    client = make_client(engine)

    first = client.post("/api/competitive-analysis", json=BODY, headers=auth("u-admin"))
    assert first.status_code == 200
    data = first.get_json()
    assert data["cached"] is False
    assert data["count"] == 1
    assert data["products"][0]["ecart_prix_vs_marche_pct"] == 0.0  # no selection: market only
    assert isinstance(data["queryTime"], int)

    second = client.post("/api/competitive-analysis", json=BODY, headers=auth("u-admin"))
    assert second.get_json()["cached"] is True
    assert second.get_json()["products"] == data["products"]
    assert len(engine.executed) == 1


def test_user_scope_is_enforced_whatever_the_request_says():
    engine = FakeEngine(rows=[COMPETITIVE_ROW])
    client = make_client(engine, cache_enabled=False)

    resp = client.post("/api/competitive-analysis",
                       json={**BODY, "pharmacyIds": ["P2", "P3"]}, headers=auth("u-1"))
    assert resp.status_code == 200
    _, params = engine.executed[0]
    assert params["scope_ids"] == ["P1"]
    assert resp.get_json()["products"][0]["ecart_prix_vs_marche_pct"] == 10.0


def test_sales_products_result_field():
    engine = FakeEngine(rows=[])
    client = make_client(engine)
    resp = client.post("/api/sales-products", json=BODY, headers=auth("u-1"))
    assert resp.status_code == 200
    assert resp.get_json()["salesData"] == []
    assert resp.get_json()["count"] == 0


def test_laboratory_market_share_result_field():
    engine = FakeEngine(rows=[{
        "laboratory_name": "SANOFI", "selection_sales_ttc": 300.0, "selection_quantity": 30,
        "selection_sales_ht": 200.0, "selection_margin_ht": 50.0, "selection_product_count": 4,
        "market_sales_ttc": 1000.0, "market_quantity": 100,
        "total_selection_sales_ttc": 300.0, "total_market_sales_ttc": 1000.0,
    }])
    client = make_client(engine, cache_enabled=False)
    resp = client.post("/api/laboratory/market-share", json=BODY, headers=auth("u-1"))
    assert resp.status_code == 200
    (lab,) = resp.get_json()["laboratories"]
    assert lab["part_marche_selection_pct"] == 100.0
    assert lab["evol_ca_selection_pct"] is None
    _, params = engine.executed[0]
    assert params["scope_ids"] == ["P1"]


def test_ruptures_result_field_and_user_scope():
    engine = FakeEngine(rows=[])
    client = make_client(engine)
    resp = client.post("/api/ruptures/products-analysis",
                       json={**BODY, "pharmacyIds": ["P9"]}, headers=auth("u-1"))
    assert resp.status_code == 200
    assert resp.get_json()["rupturesData"] == []
    _, params = engine.executed[0]
    assert params["scope_ids"] == ["P1"]


def test_database_failure_is_500_with_query_time():
    client = make_client(FakeEngine(error=SQLAlchemyError("connection reset")))
    resp = client.post("/api/products/list", json=BODY, headers=auth("u-admin"))
    assert resp.status_code == 500
    body = resp.get_json()
    assert body["error"] == "Internal server error"
    assert isinstance(body["queryTime"], int)
    assert body["queryTime"] >= 0


def test_user_lookup_failure_is_500_with_query_time():
    client = make_client(FakeEngine())
    resp = client.post("/api/competitive-analysis", json=BODY, headers=auth("u-dbdown"))
    assert resp.status_code == 500
    body = resp.get_json()
    assert body["error"] == "Internal server error"
    assert isinstance(body["queryTime"], int)


# ── Tests: profile / health ──────────────────────────────────────────

def test_profile_returns_resolved_context():
    client = make_client(FakeEngine())
    resp = client.get("/api/user/profile", headers=auth("u-1"))
    assert resp.status_code == 200
    user = resp.get_json()["user"]
    assert user["role"] == "user"
    assert user["pharmacy_id"] == "P1"
    assert user["is_admin"] is False


def test_health_ok():
    client = make_client(FakeEngine())
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["checks"]["database"] is True


@pytest.mark.parametrize("path", ["/api/competitive-analysis", "/api/products/list",
                                  "/api/laboratory/market-share", "/api/ruptures/products-analysis"])
def test_get_not_allowed(path):
    client = make_client(FakeEngine())
    assert client.get(path).status_code == 405
