"""
Role-Based Access Control – resolving the caller, enforcing the pharmacy
scope and picking the query mode.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import text

from apodata.errors import Unauthorized
from apodata.filters import FilterSet
from apodata.models import ROLES, QueryMode, SecurityContext


def load_security_context(engine, user_id: str) -> Optional[SecurityContext]:
    """Look up a user by id and return their SecurityContext (None if unknown)."""
    sql = text("""
        SELECT id, email, role, pharmacy_id
        FROM data_user
        WHERE id = :uid AND is_active = true
        LIMIT 1
    """)
    with engine.connect() as conn:
        row = conn.execute(sql, {"uid": user_id}).mappings().first()

    if not row:
        return None

    role = str(row["role"]).strip().lower()
    if role not in ROLES:
        raise Unauthorized(f"Unsupported role '{row['role']}' in data_user.")

    pharmacy_id = str(row["pharmacy_id"]) if row["pharmacy_id"] is not None else None
    if role == "user" and pharmacy_id is None:
        raise Unauthorized("Pharmacy user must have pharmacy_id set in data_user.")

    return SecurityContext(
        user_id=str(row["id"]),
        role=role,
        pharmacy_id=pharmacy_id,
        email=row["email"],
    )


def enforce_pharmacy_scope(filters: FilterSet, ctx: Optional[SecurityContext]) -> FilterSet:
    """
    Return a copy of ``filters`` whose pharmacy scope the caller may see.

    A ``user`` is pinned to exactly their own pharmacy whatever the request
    asked for; an ``admin`` keeps the requested set (empty = every pharmacy).
    """
    if ctx is None:
        raise Unauthorized("Unauthorized")

    if ctx.is_admin:
        return filters.copy()

    if ctx.pharmacy_id is None:
        raise Unauthorized("Pharmacy user must have pharmacy_id set in data_user.")

    return filters.copy(pharmacy_ids=[ctx.pharmacy_id], excluded_pharmacy_ids=[])


def select_query_mode(ctx: SecurityContext, enforced_pharmacy_ids: Sequence[str]) -> QueryMode:
    if not ctx.is_admin:
        return QueryMode.USER_SCOPED
    if enforced_pharmacy_ids:
        return QueryMode.ADMIN_WITH_SELECTION
    return QueryMode.ADMIN_WITHOUT_SELECTION


# ── Scope binding ────────────────────────────────────────────────────

@dataclass(frozen=True)
class ScopeBinding:
    """
    How one query mode splits rows into "selection" and "market".

    With a selection, the market is every pharmacy outside ``scope_ids``.
    Without one, both sides are the whole dataset and templates reuse the
    market aggregate for the selection.
    """
    mode: QueryMode
    scope_ids: List[str] = field(default_factory=list)

    @property
    def has_selection(self) -> bool:
        return self.mode is not QueryMode.ADMIN_WITHOUT_SELECTION

    @property
    def params(self) -> Dict[str, List[str]]:
        return {"scope_ids": list(self.scope_ids)} if self.has_selection else {}

    def market_predicate(self, column: str = "ip.pharmacy_id") -> str:
        if not self.has_selection:
            return ""
        return f"AND {column} <> ALL(CAST(:scope_ids AS uuid[]))"

    def selection_predicate(self, column: str = "ip.pharmacy_id") -> str:
        if not self.has_selection:
            return ""
        return f"AND {column} = ANY(CAST(:scope_ids AS uuid[]))"


def scope_binding(ctx: SecurityContext, filters: FilterSet) -> ScopeBinding:
    """Bind the mode for ``filters`` (already passed through enforce_pharmacy_scope)."""
    mode = select_query_mode(ctx, filters.pharmacy_ids)
    return ScopeBinding(mode=mode, scope_ids=list(filters.pharmacy_ids))
