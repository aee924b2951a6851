"""
Database engine initialisation and query execution.
"""

import sys
from typing import Any, Dict

import pandas as pd
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from apodata.config import QUERY_TIMEOUT_MS, get_env
from apodata.errors import InternalServerError
from apodata.logger import log


def init_engine(db_uri: str = None):
    """Create a SQLAlchemy engine and verify the connection."""
    db_uri = db_uri or get_env("DB_URI")
    engine = create_engine(
        db_uri,
        echo=False,
        future=True,
        pool_pre_ping=True,
        # Server-side bound on every statement; aborts runaway analytics scans.
        connect_args={"options": f"-c statement_timeout={QUERY_TIMEOUT_MS}"},
    )
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print("ERROR: could not connect to DB:", e, file=sys.stderr)
        sys.exit(1)
    log.info("Connected to DB")
    return engine


def run_query(engine, sql: str, params: Dict[str, Any]) -> pd.DataFrame:
    """Execute a read-only analytics query and return the rows as a DataFrame."""
    try:
        with engine.connect() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
    except SQLAlchemyError as e:
        log.bind(error=str(e)[:300]).error("Analytics query failed")
        raise InternalServerError("Internal server error") from e
    return pd.DataFrame([dict(r) for r in rows])
