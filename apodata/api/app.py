"""
Flask application factory and server entry-point.
"""

import os
import sys

from flask import Flask
from flask_cors import CORS

from apodata.cache import init_cache
from apodata.config import CACHE_ENABLED, QUERY_TIMEOUT_MS, TOKEN_EXPIRY_HOURS
from apodata.database import init_engine
from apodata.logger import log
from apodata.service import AnalyticsService
from apodata.api.routes import register_routes


def create_app(engine=None, cache=None, config=None):
    """
    Build and return a fully configured Flask application.

    ``engine`` and ``cache`` are created from the environment unless given.
    """
    app = Flask(__name__)
    app.config.update(config or {})
    CORS(app)

    # ── Initialise shared resources ──────────────────────────────────
    try:
        if engine is None:
            log.info("Initializing database connection...")
            engine = init_engine()
        if cache is None:
            cache = init_cache()
        service = AnalyticsService(engine, cache, log=log)
        log.info("API server ready")
    except Exception as e:
        log.opt(exception=e).critical(f"Failed to initialize: {e}")
        sys.exit(1)

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, engine, service)

    return app


def main():
    """Run the development server."""
    print("=" * 60)
    print("Apodata Analytics – REST API Server")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print(f"[server] CORS enabled: True")
    print(f"[server] Result cache: {'on' if CACHE_ENABLED else 'off'}")
    print(f"[server] Statement timeout: {QUERY_TIMEOUT_MS} ms")
    print(f"[server] Token expiry: {TOKEN_EXPIRY_HOURS} hours")
    print("\nAPI Endpoints:")
    print(f"  - POST http://{host}:{port}/api/competitive-analysis")
    print(f"  - POST http://{host}:{port}/api/products/list")
    print(f"  - POST http://{host}:{port}/api/sales-products")
    print(f"  - POST http://{host}:{port}/api/pharmacies/analytics")
    print(f"  - GET  http://{host}:{port}/api/user/profile")
    print(f"  - GET  http://{host}:{port}/health")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
