"""
Flask route handlers for the REST API.
"""

import time

from flask import g, jsonify, request
from sqlalchemy import text

from apodata.errors import AnalyticsError
from apodata.logger import log
from apodata.rbac import load_security_context
from apodata.service import (
    COMPETITIVE_ANALYSIS,
    LABORATORY_MARKET_SHARE,
    PHARMACIES_ANALYTICS,
    PRODUCTS_LIST,
    RUPTURES_PRODUCTS,
    SALES_PRODUCTS,
    AnalyticsService,
)
from apodata.api.auth import token_required


def register_routes(app, engine, service: AnalyticsService):
    """Register all API routes on the Flask *app*."""

    app.config.setdefault("SECURITY_RESOLVER", lambda user_id: load_security_context(engine, user_id))

    def run_endpoint(endpoint):
        started = time.perf_counter()

        def elapsed_ms():
            return int((time.perf_counter() - started) * 1000)

        body = request.get_json(silent=True)
        if body is None:
            return jsonify({"error": "Invalid JSON body"}), 400

        try:
            return jsonify(service.run(endpoint, body, g.security_context)), 200
        except AnalyticsError as e:
            if e.status_code >= 500:
                return jsonify({"error": "Internal server error", "queryTime": elapsed_ms()}), e.status_code
            return jsonify({"error": e.message}), e.status_code
        except Exception:
            log.bind(endpoint=endpoint.name).exception("Analytics request failed")
            return jsonify({"error": "Internal server error", "queryTime": elapsed_ms()}), 500

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({
            "service": "Apodata Analytics API",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "competitive_analysis": "/api/competitive-analysis",
                "products_list": "/api/products/list",
                "sales_products": "/api/sales-products",
                "pharmacies_analytics": "/api/pharmacies/analytics",
                "laboratory_market_share": "/api/laboratory/market-share",
                "ruptures_products": "/api/ruptures/products-analysis",
                "profile": "/api/user/profile",
                "health": "/health",
            },
        })

    @app.route("/health", methods=["GET"])
    def health():
        checks = {"database": False}
        try:
            if engine:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                checks["database"] = True
        except Exception as e:
            log.bind(error=str(e)).warning("Health check: database unreachable")

        all_healthy = all(checks.values())
        return jsonify({
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
            "cache_enabled": service.cache_enabled,
        }), 200 if all_healthy else 503

    # ── Analytics ────────────────────────────────────────────────────

    @app.route("/api/competitive-analysis", methods=["POST"])
    @token_required
    def competitive_analysis():
        return run_endpoint(COMPETITIVE_ANALYSIS)

    @app.route("/api/products/list", methods=["POST"])
    @token_required
    def products_list():
        return run_endpoint(PRODUCTS_LIST)

    @app.route("/api/sales-products", methods=["POST"])
    @token_required
    def sales_products():
        return run_endpoint(SALES_PRODUCTS)

    @app.route("/api/pharmacies/analytics", methods=["POST"])
    @token_required
    def pharmacies_analytics():
        return run_endpoint(PHARMACIES_ANALYTICS)

    @app.route("/api/laboratory/market-share", methods=["POST"])
    @token_required
    def laboratory_market_share():
        return run_endpoint(LABORATORY_MARKET_SHARE)

    @app.route("/api/ruptures/products-analysis", methods=["POST"])
    @token_required
    def ruptures_products():
        return run_endpoint(RUPTURES_PRODUCTS)

    # ── Profile ──────────────────────────────────────────────────────

    @app.route("/api/user/profile", methods=["GET"])
    @token_required
    def get_profile():
        ctx = g.security_context
        return jsonify({
            "success": True,
            "user": {
                "id": ctx.user_id,
                "email": ctx.email,
                "role": ctx.role,
                "pharmacy_id": ctx.pharmacy_id,
                "is_admin": ctx.is_admin,
            },
        }), 200

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({"error": "Internal server error", "message": str(e)}), 500
