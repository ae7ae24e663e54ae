from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Response
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

router = APIRouter(prefix="/api/transfers", tags=["transfers"])


@router.post("", response_model=schemas.TransferOut, status_code=201)
async def create_transfer(
    payload: schemas.TransferCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    return await transitions.create_transfer(db, actor, payload.equipment_id, payload.to_lab)


@router.get("", response_model=List[schemas.TransferOut])
async def list_transfers(
    predicate: FilterPredicate = Depends(list_filter),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    return EntityStore(db).read("transfers", predicate)


@router.post("/{transfer_id}/receive", response_model=schemas.TransitionOut)
async def receive_transfer(
    transfer_id: UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    result = await transitions.request_transition(
        db, EntityKind.TRANSFER, TransitionKind.MARK_RECEIVED, transfer_id, actor
    )
    return result.raise_for_rejection().to_dict()


@router.delete("/{transfer_id}", status_code=204)
async def delete_transfer(
    transfer_id: UUID,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_current_actor),
):
    await transitions.delete_transfer(db, actor, transfer_id)
    return Response(status_code=204)
