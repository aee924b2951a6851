"""
Composable filter sets and the SQL condition builder.

A ``FilterSet`` is what a dashboard user composes: product / laboratory /
category selections, pharmacies, attribute filters (TVA, generic and
reimbursement status), numeric ranges, exclusions and the AND/OR operators
placed between the active filter groups.

``build_conditions`` turns a filter set into a ``BuiltConditions`` fragment
(``"AND (...)"`` plus bound parameters) that any query template can append to
its WHERE clause.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from apodata.config import PERCENT_RANGE_DEFAULT_MAX, PRICE_RANGE_DEFAULT_MAX
from apodata.errors import BadRequest
from apodata.models import (
    CATEGORY_TYPES,
    GENERIC_STATUSES,
    OPERATORS,
    REIMBURSEMENT_STATUSES,
    CategorySelection,
    DateRange,
    NumericRange,
)

# ── Canonical filter groups ──────────────────────────────────────────

RANGE_DEFAULT_MAX = {
    "purchase_price_net": PRICE_RANGE_DEFAULT_MAX,
    "purchase_price_gross": PRICE_RANGE_DEFAULT_MAX,
    "sell_price": PRICE_RANGE_DEFAULT_MAX,
    "discount": PERCENT_RANGE_DEFAULT_MAX,
    "margin": PERCENT_RANGE_DEFAULT_MAX,
}
RANGE_FIELDS = tuple(RANGE_DEFAULT_MAX)

GROUP_ORDER = (
    "pharmacies", "laboratories", "categories", "products",
    "tva", "reimbursement", "generic",
) + RANGE_FIELDS

GENERIC_STATUS_VALUES = {
    "GENERIC": ["GÉNÉRIQUE"],
    "PRINCEPS": ["RÉFÉRENT"],
    "PRINCEPS_GENERIC": ["GÉNÉRIQUE", "RÉFÉRENT"],
}


def is_range_active(name: str, rng: Optional[NumericRange]) -> bool:
    """A range left at its default bounds filters nothing."""
    if rng is None:
        return False
    return not (rng.min == 0 and rng.max == RANGE_DEFAULT_MAX[name])


def normalize_operators(operators: Sequence[str], active_count: int) -> List[str]:
    """
    Align an operator list with ``active_count`` groups.

    Leading operators are kept, surplus ones are dropped from the end and
    missing ones are padded at the end with AND.
    """
    wanted = max(0, active_count - 1)
    ops = [op.upper() for op in operators[:wanted]]
    ops.extend("AND" for _ in range(wanted - len(ops)))
    return ops


def _slot_for(index: int) -> int:
    # Operator i sits between active group i and i + 1.
    return 0 if index == 0 else index - 1


def drop_group_slot(operators: Sequence[str], groups: Sequence[str], name: str) -> List[str]:
    """Remove ``name`` from the active groups together with the operator joining it."""
    ops = normalize_operators(operators, len(groups))
    if name not in groups or not ops:
        return ops
    del ops[_slot_for(groups.index(name))]
    return ops


def _insert_group_slot(operators: Sequence[str], groups: Sequence[str], name: str) -> List[str]:
    ops = list(operators)
    if len(groups) > 1:
        ops.insert(_slot_for(groups.index(name)), "AND")
    return ops


# ── Filter set ───────────────────────────────────────────────────────

@dataclass
class FilterSet:
    """A user's composed filters; the operator list always matches its active groups."""
    date_range: DateRange
    comparison_date_range: Optional[DateRange] = None

    product_codes: List[str] = field(default_factory=list)
    laboratory_codes: List[str] = field(default_factory=list)
    category_codes: List[str] = field(default_factory=list)

    laboratories: List[str] = field(default_factory=list)
    categories: List[CategorySelection] = field(default_factory=list)
    pharmacy_ids: List[str] = field(default_factory=list)

    tva_rates: List[float] = field(default_factory=list)
    generic_status: str = "ALL"
    reimbursement_status: str = "ALL"

    purchase_price_net: Optional[NumericRange] = None
    purchase_price_gross: Optional[NumericRange] = None
    sell_price: Optional[NumericRange] = None
    discount: Optional[NumericRange] = None
    margin: Optional[NumericRange] = None

    excluded_pharmacy_ids: List[str] = field(default_factory=list)
    excluded_laboratories: List[str] = field(default_factory=list)
    excluded_product_codes: List[str] = field(default_factory=list)
    excluded_categories: List[CategorySelection] = field(default_factory=list)

    filter_operators: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.filter_operators = normalize_operators(self.filter_operators, len(self.active_groups()))

    # ── Derived views ────────────────────────────────────────────────

    @property
    def all_product_codes(self) -> List[str]:
        """Product, laboratory and category EAN lists merged, first occurrence kept."""
        merged = self.product_codes + self.laboratory_codes + self.category_codes
        return list(dict.fromkeys(merged))

    @property
    def has_product_filter(self) -> bool:
        return bool(self.all_product_codes)

    def is_group_active(self, name: str) -> bool:
        if name == "pharmacies":
            return bool(self.pharmacy_ids)
        if name == "laboratories":
            return bool(self.laboratories)
        if name == "categories":
            return bool(self.categories)
        if name == "products":
            return self.has_product_filter
        if name == "tva":
            return bool(self.tva_rates)
        if name == "reimbursement":
            return self.reimbursement_status != "ALL"
        if name == "generic":
            return self.generic_status != "ALL"
        return is_range_active(name, getattr(self, name))

    def active_groups(self) -> List[str]:
        return [name for name in GROUP_ORDER if self.is_group_active(name)]

    # ── Mutations ────────────────────────────────────────────────────

    def _mutate(self, **changes) -> "FilterSet":
        before = self.active_groups()
        for key, value in changes.items():
            setattr(self, key, value)
        after = self.active_groups()

        ops = normalize_operators(self.filter_operators, len(before))
        for name in [g for g in before if g not in after]:
            ops = drop_group_slot(ops, before, name)
            before = [g for g in before if g != name]
        for name in [g for g in after if g not in before]:
            before = [g for g in GROUP_ORDER if g in before or g == name]
            ops = _insert_group_slot(ops, before, name)
        self.filter_operators = normalize_operators(ops, len(after))
        return self

    def set_products(self, codes: Iterable[str]) -> "FilterSet":
        return self._mutate(product_codes=list(codes))

    def set_laboratories(self, names: Iterable[str]) -> "FilterSet":
        return self._mutate(laboratories=list(names))

    def set_categories(self, categories: Iterable[CategorySelection]) -> "FilterSet":
        return self._mutate(categories=list(categories))

    def set_pharmacies(self, pharmacy_ids: Iterable[str]) -> "FilterSet":
        return self._mutate(pharmacy_ids=list(pharmacy_ids))

    def set_tva_rates(self, rates: Iterable[float]) -> "FilterSet":
        return self._mutate(tva_rates=list(rates))

    def set_generic_status(self, status: str) -> "FilterSet":
        if status not in GENERIC_STATUSES:
            raise BadRequest(f"Unknown generic status '{status}'")
        return self._mutate(generic_status=status)

    def set_reimbursement_status(self, status: str) -> "FilterSet":
        if status not in REIMBURSEMENT_STATUSES:
            raise BadRequest(f"Unknown reimbursement status '{status}'")
        return self._mutate(reimbursement_status=status)

    def set_range(self, name: str, rng: Optional[NumericRange]) -> "FilterSet":
        if name not in RANGE_DEFAULT_MAX:
            raise BadRequest(f"Unknown range filter '{name}'")
        return self._mutate(**{name: rng})

    def set_operator(self, index: int, operator: str) -> "FilterSet":
        operator = operator.upper()
        if operator not in OPERATORS:
            raise BadRequest(f"Unknown filter operator '{operator}'")
        if not 0 <= index < len(self.filter_operators):
            raise BadRequest(f"No filter operator at position {index}")
        self.filter_operators[index] = operator
        return self

    def copy(self, **changes) -> "FilterSet":
        """Copy with ``changes`` applied through the same operator bookkeeping."""
        clone = replace(self, filter_operators=list(self.filter_operators))
        return clone._mutate(**changes) if changes else clone


# ── Condition builder ────────────────────────────────────────────────

@dataclass(frozen=True)
class ColumnMapping:
    """Where each filter group points in a given query template."""
    pharmacy_id: str = "ip.pharmacy_id"
    laboratory: str = "gp.bcb_lab"
    product_code: str = "ip.code_13_ref_id"
    tva: str = "gp.tva_percentage"
    reimbursable: str = "gp.is_reimbursable"
    generic_status: str = "gp.bcb_generic_status"
    bcb_segment_l0: str = "gp.bcb_segment_l0"
    bcb_segment_l1: str = "gp.bcb_segment_l1"
    bcb_segment_l2: str = "gp.bcb_segment_l2"
    bcb_segment_l3: str = "gp.bcb_segment_l3"
    bcb_segment_l4: str = "gp.bcb_segment_l4"
    bcb_segment_l5: str = "gp.bcb_segment_l5"
    bcb_family: str = "gp.bcb_family"
    purchase_price_net: str = "lp.weighted_average_price"
    purchase_price_gross: str = "gp.prix_achat_ht_fabricant"
    sell_price: str = "lp.price_with_tax"
    discount: str = "lp.discount_percentage"
    margin: str = "lp.margin_percentage"


@dataclass(frozen=True)
class BuiltConditions:
    sql: str
    params: Dict[str, Any]
    next_index: int

    @property
    def values(self) -> List[Any]:
        return list(self.params.values())


class ConditionBuilder:
    """
    Accumulates ``(fragment, values)`` pairs and names the bind parameters
    once, in ``render()``. Fragments use ``{}`` where each value goes.
    """

    def __init__(self, operators: Sequence[str] = (), start_index: int = 1, prefix: str = "f"):
        self._operators = list(operators)
        self._start_index = start_index
        self._prefix = prefix
        self._groups: List[Tuple[str, Tuple[Any, ...]]] = []
        self._exclusions: List[Tuple[str, Tuple[Any, ...]]] = []

    def add_group(self, fragment: str, *values: Any) -> "ConditionBuilder":
        self._groups.append((fragment, values))
        return self

    def add_exclusion(self, fragment: str, *values: Any) -> "ConditionBuilder":
        self._exclusions.append((fragment, values))
        return self

    def __len__(self) -> int:
        return len(self._groups)

    def render(self) -> BuiltConditions:
        params: Dict[str, Any] = {}
        index = self._start_index

        def bind(fragment: str, values: Tuple[Any, ...]) -> str:
            nonlocal index
            names = []
            for value in values:
                name = f"{self._prefix}{index}"
                params[name] = value
                names.append(f":{name}")
                index += 1
            return fragment.format(*names)

        parts: List[str] = []
        ops = normalize_operators(self._operators, len(self._groups))
        for i, (fragment, values) in enumerate(self._groups):
            if i > 0:
                parts.append(ops[i - 1])
            parts.append(f"({bind(fragment, values)})")

        clauses = []
        if parts:
            clauses.append(f"AND ({' '.join(parts)})")
        for fragment, values in self._exclusions:
            clauses.append(f"AND ({bind(fragment, values)})")

        return BuiltConditions(sql="\n".join(clauses), params=params, next_index=index)


def _categories_by_type(categories: Sequence[CategorySelection]) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for cat in categories:
        grouped.setdefault(cat.type, []).append(cat.code)
    return grouped


def build_conditions(
    filters: FilterSet,
    mapping: ColumnMapping = ColumnMapping(),
    start_index: int = 1,
    include_pharmacies: bool = True,
) -> BuiltConditions:
    """
    Compile ``filters`` into a conditions fragment.

    Templates that bind the pharmacy scope themselves pass
    ``include_pharmacies=False``; the group and the operator joining it are
    then left out.
    """
    groups = filters.active_groups()
    ops = list(filters.filter_operators)
    if not include_pharmacies and "pharmacies" in groups:
        ops = drop_group_slot(ops, groups, "pharmacies")
        groups = [g for g in groups if g != "pharmacies"]

    qb = ConditionBuilder(ops, start_index=start_index)
    for name in groups:
        if name == "pharmacies":
            qb.add_group(f"{mapping.pharmacy_id} = ANY(CAST({{}} AS uuid[]))", list(filters.pharmacy_ids))
        elif name == "laboratories":
            qb.add_group(f"{mapping.laboratory} = ANY(CAST({{}} AS text[]))", list(filters.laboratories))
        elif name == "categories":
            grouped = _categories_by_type(filters.categories)
            fragment = " OR ".join(
                f"{getattr(mapping, cat_type)} = ANY(CAST({{}} AS text[]))" for cat_type in grouped
            )
            qb.add_group(fragment, *grouped.values())
        elif name == "products":
            qb.add_group(f"{mapping.product_code} = ANY(CAST({{}} AS text[]))", filters.all_product_codes)
        elif name == "tva":
            qb.add_group(f"{mapping.tva} = ANY(CAST({{}} AS numeric[]))", list(filters.tva_rates))
        elif name == "reimbursement":
            qb.add_group(f"{mapping.reimbursable} = {{}}", filters.reimbursement_status == "REIMBURSED")
        elif name == "generic":
            qb.add_group(
                f"{mapping.generic_status} = ANY(CAST({{}} AS text[]))",
                GENERIC_STATUS_VALUES[filters.generic_status],
            )
        else:
            rng = getattr(filters, name)
            column = getattr(mapping, name)
            qb.add_group(f"{column} >= {{}} AND {column} <= {{}}", rng.min, rng.max)

    if filters.excluded_pharmacy_ids:
        qb.add_exclusion(f"{mapping.pharmacy_id} <> ALL(CAST({{}} AS uuid[]))", list(filters.excluded_pharmacy_ids))
    if filters.excluded_laboratories:
        qb.add_exclusion(f"{mapping.laboratory} <> ALL(CAST({{}} AS text[]))", list(filters.excluded_laboratories))
    if filters.excluded_product_codes:
        qb.add_exclusion(f"{mapping.product_code} <> ALL(CAST({{}} AS text[]))", list(filters.excluded_product_codes))
    if filters.excluded_categories:
        grouped = _categories_by_type(filters.excluded_categories)
        fragment = " AND ".join(
            f"{getattr(mapping, cat_type)} <> ALL(CAST({{}} AS text[]))" for cat_type in grouped
        )
        qb.add_exclusion(fragment, *grouped.values())

    return qb.render()


# ── Request parsing ──────────────────────────────────────────────────

def _parse_date(value: Any, label: str) -> date:
    if not isinstance(value, str):
        raise BadRequest(f"{label} must be an ISO date string")
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise BadRequest(f"{label} is not a valid date: {value!r}")


def parse_date_range(raw: Any, label: str, today: date) -> DateRange:
    if not isinstance(raw, dict) or not raw.get("start") or not raw.get("end"):
        raise BadRequest("Date range required" if label == "dateRange" else f"{label} requires start and end")
    start = _parse_date(raw["start"], f"{label}.start")
    end = _parse_date(raw["end"], f"{label}.end")
    if start > end:
        raise BadRequest(f"{label}.start must not be after {label}.end")
    if start > today:
        raise BadRequest(f"{label} starts in the future")
    return DateRange(start=start, end=min(end, today))


def _string_list(body: dict, key: str) -> List[str]:
    value = body.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, (str, int)) for v in value):
        raise BadRequest(f"{key} must be a list of strings")
    return [str(v) for v in value]


def _number_list(body: dict, key: str) -> List[float]:
    value = body.get(key) or []
    if not isinstance(value, list):
        raise BadRequest(f"{key} must be a list of numbers")
    try:
        numbers = [float(v) for v in value]
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be a list of numbers")
    if not all(math.isfinite(n) for n in numbers):
        raise BadRequest(f"{key} must only contain finite numbers")
    return numbers


def _category_list(body: dict, key: str) -> List[CategorySelection]:
    value = body.get(key) or []
    if not isinstance(value, list):
        raise BadRequest(f"{key} must be a list of {{code, type}} objects")
    out = []
    for item in value:
        if not isinstance(item, dict) or item.get("type") not in CATEGORY_TYPES or not item.get("code"):
            raise BadRequest(f"{key} entries need a code and a type among {', '.join(CATEGORY_TYPES)}")
        out.append(CategorySelection(code=str(item["code"]), type=item["type"]))
    return out


def _numeric_range(body: dict, key: str) -> Optional[NumericRange]:
    raw = body.get(key)
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise BadRequest(f"{key} must be an object with min and max")
    try:
        rng = NumericRange(min=float(raw["min"]), max=float(raw["max"]))
    except (KeyError, TypeError, ValueError):
        raise BadRequest(f"{key} must be an object with numeric min and max")
    # NaN would slip through the ordering check below.
    if not (math.isfinite(rng.min) and math.isfinite(rng.max)):
        raise BadRequest(f"{key} bounds must be finite numbers")
    if rng.min > rng.max:
        raise BadRequest(f"{key}.min must not exceed {key}.max")
    return rng


_RANGE_KEYS = {
    "purchase_price_net": "purchasePriceNetRange",
    "purchase_price_gross": "purchasePriceGrossRange",
    "sell_price": "sellPriceRange",
    "discount": "discountRange",
    "margin": "marginRange",
}


def parse_filter_payload(body: Any, today: Optional[date] = None) -> FilterSet:
    """Validate a JSON request body and build a ``FilterSet`` (raises BadRequest)."""
    if not isinstance(body, dict):
        raise BadRequest("Invalid JSON body")
    today = today or date.today()

    date_range = parse_date_range(body.get("dateRange"), "dateRange", today)
    comparison = None
    raw_comparison = body.get("comparisonDateRange")
    if isinstance(raw_comparison, dict) and raw_comparison.get("start") and raw_comparison.get("end"):
        comparison = parse_date_range(raw_comparison, "comparisonDateRange", today)

    generic_status = str(body.get("genericStatus") or "ALL").upper()
    if generic_status not in GENERIC_STATUSES:
        raise BadRequest(f"Unknown generic status '{generic_status}'")
    reimbursement_status = str(body.get("reimbursementStatus") or "ALL").upper()
    if reimbursement_status not in REIMBURSEMENT_STATUSES:
        raise BadRequest(f"Unknown reimbursement status '{reimbursement_status}'")

    operators = body.get("filterOperators") or []
    if not isinstance(operators, list) or any(str(op).upper() not in OPERATORS for op in operators):
        raise BadRequest("filterOperators must only contain AND / OR")

    return FilterSet(
        date_range=date_range,
        comparison_date_range=comparison,
        product_codes=_string_list(body, "productCodes"),
        laboratory_codes=_string_list(body, "laboratoryCodes"),
        category_codes=_string_list(body, "categoryCodes"),
        laboratories=_string_list(body, "laboratories"),
        categories=_category_list(body, "categories"),
        pharmacy_ids=_string_list(body, "pharmacyIds"),
        tva_rates=_number_list(body, "tvaRates"),
        generic_status=generic_status,
        reimbursement_status=reimbursement_status,
        excluded_pharmacy_ids=_string_list(body, "excludedPharmacyIds"),
        excluded_laboratories=_string_list(body, "excludedLaboratories"),
        excluded_product_codes=_string_list(body, "excludedProductCodes"),
        excluded_categories=_category_list(body, "excludedCategories"),
        filter_operators=[str(op).upper() for op in operators],
        **{name: _numeric_range(body, key) for name, key in _RANGE_KEYS.items()},
    )
