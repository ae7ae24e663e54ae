from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_actor
from ..exceptions import EntityNotFound
from ..rbac import ActorContext, guard_flags
from ..realtime.filters import FilterPredicate
from ..services import transitions
from ..store import EntityStore
from ..workflow import EntityKind, TransitionKind, equipment_state
from .filtering import list_filter
from .. import schemas

router = APIRouter(prefix="/api/equipment", tags=["equipment"])


def _detail(equipment, actor: ActorContext) -> schemas.EquipmentDetail:
    base = schemas.EquipmentOut.model_validate(equipment)
    return schemas.EquipmentDetail(
        **base.model_dump(),
        state=equipment_state(equipment),
        guards=guard_flags("equipment", actor, equipment),
    )


@router.post("", response_model=schemas.EquipmentOut, status_code=201)
async def create_equipment(
    payload: schemas.EquipmentCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    return await transitions.create_equipment(db, actor, payload.model_dump(exclude_unset=True))


@router.get("", response_model=List[schemas.EquipmentOut])
async def list_equipment(
    predicate: FilterPredicate = Depends(list_filter),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    return EntityStore(db).read("equipment", predicate)


@router.get("/deleted", response_model=List[schemas.DeletedEquipmentOut])
async def list_deleted_equipment(
    status: Optional[str] = Query("pending", description="pending, purged, restored or all"),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    return EntityStore(db).read("deleted_equipment", FilterPredicate.from_params(status=status))


@router.post("/deleted/{tombstone_id}/purge", response_model=schemas.TransitionOut)
async def purge_deleted_equipment(
    tombstone_id: UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    result = await transitions.request_transition(
        db, EntityKind.DELETED_EQUIPMENT, TransitionKind.PURGE, tombstone_id, actor
    )
    return result.raise_for_rejection().to_dict()


@router.post("/deleted/{tombstone_id}/restore", response_model=schemas.TransitionOut)
async def restore_deleted_equipment(
    tombstone_id: UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    result = await transitions.request_transition(
        db, EntityKind.DELETED_EQUIPMENT, TransitionKind.RESTORE, tombstone_id, actor
    )
    return result.raise_for_rejection().to_dict()


@router.get("/{equipment_id}", response_model=schemas.EquipmentDetail)
async def get_equipment(
    equipment_id: UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    equipment = EntityStore(db).get("equipment", equipment_id)
    if equipment is None:
        raise EntityNotFound("equipment", equipment_id)
    return _detail(equipment, actor)


@router.put("/{equipment_id}", response_model=schemas.EquipmentDetail)
async def edit_equipment(
    equipment_id: UUID,
    payload: schemas.EquipmentUpdate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    result = await transitions.request_transition(
        db,
        EntityKind.EQUIPMENT,
        TransitionKind.EDIT,
        equipment_id,
        actor,
        changes=payload.model_dump(exclude_unset=True),
    )
    result.raise_for_rejection()
    return _detail(result.entity, actor)


@router.post("/{equipment_id}/approve", response_model=schemas.TransitionOut)
async def approve_equipment(
    equipment_id: UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    result = await transitions.request_transition(
        db, EntityKind.EQUIPMENT, TransitionKind.APPROVE, equipment_id, actor
    )
    return result.raise_for_rejection().to_dict()


@router.delete("/{equipment_id}", response_model=schemas.TransitionOut)
async def delete_equipment(
    equipment_id: UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    result = await transitions.request_transition(
        db, EntityKind.EQUIPMENT, TransitionKind.SOFT_DELETE, equipment_id, actor
    )
    return result.raise_for_rejection().to_dict()
