"""
Domain dataclasses used across the application.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

ROLES = {"admin", "user"}
GENERIC_STATUSES = {"ALL", "GENERIC", "PRINCEPS", "PRINCEPS_GENERIC"}
REIMBURSEMENT_STATUSES = {"ALL", "REIMBURSED", "NOT_REIMBURSED"}
OPERATORS = {"AND", "OR"}
CATEGORY_TYPES = (
    "bcb_segment_l0", "bcb_segment_l1", "bcb_segment_l2", "bcb_segment_l3",
    "bcb_segment_l4", "bcb_segment_l5", "bcb_family",
)


@dataclass(frozen=True)
class SecurityContext:
    """The caller's identity and data-visibility binding for one request."""
    user_id: str
    role: str                   # "admin" or "user"
    pharmacy_id: Optional[str]  # required for role "user"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar range."""
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def as_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class NumericRange:
    min: float
    max: float


@dataclass(frozen=True)
class CategorySelection:
    code: str
    type: str  # one of CATEGORY_TYPES


class QueryMode(Enum):
    """How "selection" and "market" split the dataset for a request."""
    ADMIN_WITH_SELECTION = "admin_with_selection"
    ADMIN_WITHOUT_SELECTION = "admin_without_selection"
    USER_SCOPED = "user_scoped"
