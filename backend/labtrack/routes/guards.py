from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_actor
from ..exceptions import EntityNotFound
from ..rbac import ActorContext, evaluate_guard
from ..services.transitions import TABLE_FOR_KIND
from ..store import EntityStore
from ..workflow import EntityKind
from .. import schemas

router = APIRouter(prefix="/api/guards", tags=["guards"])


@router.post("/evaluate", response_model=schemas.GuardOut)
async def evaluate(
    request: schemas.GuardRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    table = TABLE_FOR_KIND[EntityKind(request.entity_kind)]
    entity = EntityStore(db).get(table, request.entity_id)
    if entity is None:
        raise EntityNotFound(table, request.entity_id)
    return schemas.GuardOut(name=request.name, allowed=evaluate_guard(request.name, actor, entity))
