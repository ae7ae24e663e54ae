from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_actor
from ..rbac import ActorContext
from ..services import transitions
from ..workflow import TransitionKind, supported_transitions
from .. import schemas

router = APIRouter(prefix="/api/transitions", tags=["transitions"])


def _validated_params(request: schemas.TransitionRequest) -> dict:
    try:
        if request.transition == "edit":
            changes = schemas.EquipmentUpdate.model_validate(request.params.get("changes") or {})
            return {"changes": changes.model_dump(exclude_unset=True)}
        if request.transition == "resolve":
            return schemas.IssueResolve.model_validate(request.params).model_dump()
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    return {}


@router.post("", response_model=schemas.TransitionOut)
async def request_transition(
    request: schemas.TransitionRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    """Apply any transition; refusals come back with ``ok: false`` and a reason code."""

    if TransitionKind(request.transition) not in supported_transitions(request.entity_kind):
        raise HTTPException(
            status_code=400,
            detail=f"{request.transition} is not defined for {request.entity_kind}",
        )
    result = await transitions.request_transition(
        db,
        request.entity_kind,
        request.transition,
        request.entity_id,
        actor,
        **_validated_params(request),
    )
    return result.to_dict()
