"""Filter predicates shared by list endpoints and live reconciliation.

The same :class:`FilterPredicate` is turned into SQL by
:func:`labtrack.store.apply_filter` and evaluated in memory against raw rows
pushed over the change feed by :func:`matches`. Raw rows carry no joined data,
so a constraint on a field the row does not contain (an issue's lab, a
transfer's equipment name) is treated as satisfied: the session refreshes and
lets the store give the authoritative answer.
"""

# purpose: one filter vocabulary for SQL listing and change-feed matching
# status: active

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Callable, Mapping

UNCONSTRAINED = (None, "", "all")


def is_unconstrained(value: Any) -> bool:
    return value in UNCONSTRAINED


def _to_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return date.fromisoformat(text[:10])


@dataclass(frozen=True)
class FilterPredicate:
    search: str | None = None
    status: str | None = None
    lab_id: str | None = None
    type_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any] | None = None, **kwargs: Any) -> "FilterPredicate":
        """Build a predicate from query-string style values."""

        values = dict(params or {}, **kwargs)

        def text(name: str) -> str | None:
            value = values.get(name)
            if is_unconstrained(value):
                return None
            return str(value).strip() or None

        return cls(
            search=text("search"),
            status=text("status"),
            lab_id=text("lab_id"),
            type_id=text("type_id"),
            date_from=_to_date(text("date_from")),
            date_to=_to_date(text("date_to")),
        )

    def with_changes(self, **changes: Any) -> "FilterPredicate":
        return replace(self, **changes)

    def as_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        for name in ("search", "status", "lab_id", "type_id", "date_from", "date_to"):
            value = getattr(self, name)
            if not is_unconstrained(value):
                params[name] = value.isoformat() if isinstance(value, date) else str(value)
        return params

    @property
    def is_empty(self) -> bool:
        return not self.as_params()


def _equipment_status(status: str, row: Mapping[str, Any]) -> bool | None:
    if status == "approved":
        return bool(row.get("fully_approved"))
    if status == "pending":
        return not row.get("fully_approved")
    if status == "deleted":
        return bool(row.get("is_deleted"))
    return None


def _notification_status(status: str, row: Mapping[str, Any]) -> bool | None:
    if status == "read":
        return bool(row.get("is_read"))
    if status == "unread":
        return not row.get("is_read")
    return None


@dataclass(frozen=True)
class TableFilterSpec:
    """Which row fields each predicate component looks at for one table."""

    search_fields: tuple[str, ...] = ()
    # joined search fields exist only in SQL; raw rows never carry them
    joined_search: bool = False
    status_field: str | None = "status"
    status_rule: Callable[[str, Mapping[str, Any]], bool | None] | None = None
    lab_fields: tuple[str, ...] = ()
    type_field: str | None = None
    date_field: str | None = None


TABLE_FILTERS: dict[str, TableFilterSpec] = {
    "equipment": TableFilterSpec(
        search_fields=("name", "asset_code", "description", "invoice_number"),
        status_field=None,
        status_rule=_equipment_status,
        lab_fields=("allocated_lab",),
        type_field="asset_type_id",
        date_field="created_at",
    ),
    "transfers": TableFilterSpec(
        joined_search=True,
        lab_fields=("from_lab", "to_lab"),
        date_field="initiated_at",
    ),
    "issues": TableFilterSpec(
        search_fields=("description", "remark"),
        joined_search=True,
        lab_fields=("lab_id",),
        date_field="reported_at",
    ),
    "deleted_equipment": TableFilterSpec(
        search_fields=("name",),
        lab_fields=("allocated_lab",),
        date_field="deleted_at",
    ),
    "notifications": TableFilterSpec(
        search_fields=("message", "entity_name"),
        status_field=None,
        status_rule=_notification_status,
        date_field="created_at",
    ),
}


def _search_matches(spec: TableFilterSpec, term: str, row: Mapping[str, Any]) -> bool:
    present = [row[name] for name in spec.search_fields if name in row]
    if not present:
        return True
    needle = term.lower()
    if any(needle in str(value).lower() for value in present if value is not None):
        return True
    # a joined display field (equipment name, lab name) may still match
    return spec.joined_search


def _status_matches(spec: TableFilterSpec, status: str, row: Mapping[str, Any]) -> bool:
    if spec.status_rule is not None:
        verdict = spec.status_rule(status, row)
        if verdict is not None:
            return verdict
    if spec.status_field is None or spec.status_field not in row:
        return True
    return str(row.get(spec.status_field)) == status


def _lab_matches(spec: TableFilterSpec, lab_id: str, row: Mapping[str, Any]) -> bool:
    present = [name for name in spec.lab_fields if name in row]
    if not present:
        return True
    return any(row.get(name) is not None and str(row.get(name)) == str(lab_id) for name in present)


def _type_matches(spec: TableFilterSpec, type_id: str, row: Mapping[str, Any]) -> bool:
    if spec.type_field is None or spec.type_field not in row:
        return True
    value = row.get(spec.type_field)
    return value is not None and str(value) == str(type_id)


def _date_matches(spec: TableFilterSpec, predicate: FilterPredicate, row: Mapping[str, Any]) -> bool:
    if spec.date_field is None or spec.date_field not in row:
        return True
    try:
        value = _to_date(row.get(spec.date_field))
    except ValueError:
        return True
    if value is None:
        return False
    if predicate.date_from is not None and value < predicate.date_from:
        return False
    if predicate.date_to is not None and value > predicate.date_to:
        return False
    return True


def matches(table: str, predicate: FilterPredicate | None, row: Mapping[str, Any] | None) -> bool:
    """Evaluate ``predicate`` against one raw row of ``table``."""

    if predicate is None or predicate.is_empty:
        return True
    if row is None:
        return False
    spec = TABLE_FILTERS.get(table, TableFilterSpec())
    if predicate.search and not _search_matches(spec, predicate.search, row):
        return False
    if predicate.status and not _status_matches(spec, predicate.status, row):
        return False
    if predicate.lab_id and not _lab_matches(spec, predicate.lab_id, row):
        return False
    if predicate.type_id and not _type_matches(spec, predicate.type_id, row):
        return False
    if (predicate.date_from or predicate.date_to) and not _date_matches(spec, predicate, row):
        return False
    return True
