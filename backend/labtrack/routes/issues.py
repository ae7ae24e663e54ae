from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_actor
from ..rbac import ActorContext
from ..realtime.filters import FilterPredicate
from ..services import transitions
from ..store import EntityStore
from ..workflow import EntityKind, TransitionKind
from .filtering import list_filter
from .. import schemas

router = APIRouter(prefix="/api/issues", tags=["issues"])


@router.post("", response_model=schemas.IssueOut, status_code=201)
async def report_issue(
    payload: schemas.IssueCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    return await transitions.report_issue(db, actor, payload.equipment_id, payload.description)


@router.get("", response_model=List[schemas.IssueOut])
async def list_issues(
    predicate: FilterPredicate = Depends(list_filter),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    # open issues first, newest first
    return EntityStore(db).read("issues", predicate)


@router.post("/{issue_id}/resolve", response_model=schemas.TransitionOut)
async def resolve_issue(
    issue_id: UUID,
    payload: schemas.IssueResolve,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    result = await transitions.request_transition(
        db,
        EntityKind.ISSUE,
        TransitionKind.RESOLVE,
        issue_id,
        actor,
        remark=payload.remark,
        cost_required=payload.cost_required,
    )
    return result.raise_for_rejection().to_dict()
