"""
JWT authentication helpers and middleware for the Flask API.
"""

import time
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from apodata.config import SECRET_KEY, TOKEN_EXPIRY_HOURS
from apodata.errors import Unauthorized
from apodata.logger import log


def generate_token(user_id: str, secret: str = SECRET_KEY) -> str:
    """Generate a JWT token for a user id (tooling and tests; sessions are issued elsewhere)."""
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": str(user_id),
        "iat": now,
        "exp": now + timedelta(hours=TOKEN_EXPIRY_HOURS),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_token(token: str, secret: str = SECRET_KEY) -> Optional[Dict[str, Any]]:
    """Verify a JWT token and return the decoded payload (or None)."""
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def token_required(f):
    """
    Decorator that protects endpoints with JWT authentication and resolves
    the caller's SecurityContext into ``g.security_context``.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        started = time.perf_counter()
        token = None

        # Check Authorization header (Bearer token)
        if "Authorization" in request.headers:
            auth_header = request.headers["Authorization"]
            try:
                token = auth_header.split(" ")[1]
            except IndexError:
                return jsonify({"error": "Invalid authorization header format"}), 401

        if not token:
            token = request.args.get("token")

        if not token:
            return jsonify({"error": "Unauthorized"}), 401

        payload = verify_token(token, current_app.config.get("JWT_SECRET_KEY", SECRET_KEY))
        if not payload or not payload.get("user_id"):
            return jsonify({"error": "Invalid or expired token"}), 401

        resolve = current_app.config["SECURITY_RESOLVER"]
        try:
            ctx = resolve(payload["user_id"])
        except Unauthorized as e:
            return jsonify({"error": e.message}), 401
        except SQLAlchemyError as e:
            log.bind(user=payload["user_id"], error=str(e)[:300]).error("Security context lookup failed")
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            return jsonify({"error": "Internal server error", "queryTime": elapsed_ms}), 500
        if ctx is None:
            return jsonify({"error": "Unauthorized"}), 401

        g.security_context = ctx
        return f(*args, **kwargs)

    return decorated
