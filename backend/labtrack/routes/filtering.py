from typing import Optional
from uuid import UUID

from fastapi import HTTPException, Query

from ..realtime.filters import FilterPredicate


def list_filter(
    search: Optional[str] = Query(None, description="Substring match across display fields"),
    status: Optional[str] = Query(None, description="Status, or 'all'"),
    lab_id: Optional[str] = Query(None, description="Lab id, or 'all'"),
    type_id: Optional[str] = Query(None, description="Asset type id, or 'all'"),
    date_from: Optional[str] = Query(None, description="Inclusive start date (YYYY-MM-DD)"),
    date_to: Optional[str] = Query(None, description="Inclusive end date (YYYY-MM-DD)"),
) -> FilterPredicate:
    try:
        predicate = FilterPredicate.from_params(
            search=search,
            status=status,
            lab_id=lab_id,
            type_id=type_id,
            date_from=date_from,
            date_to=date_to,
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date filter")
    for name in ("lab_id", "type_id"):
        value = getattr(predicate, name)
        if value is None:
            continue
        try:
            UUID(value)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid {name} filter")
    return predicate
