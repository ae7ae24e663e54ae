from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user, require_hod
from .. import models, schemas, audit

router = APIRouter(prefix="/api/asset-types", tags=["asset-types"])


@router.post("", response_model=schemas.AssetTypeOut, status_code=201)
def create_asset_type(
    data: schemas.AssetTypeCreate,
    db: Session = Depends(get_db),
    user=Depends(require_hod),
):
    identifier = data.identifier.strip().upper()
    clash = (
        db.query(models.AssetType)
        .filter(or_(models.AssetType.name == data.name, models.AssetType.identifier == identifier))
        .first()
    )
    if clash:
        raise HTTPException(status_code=400, detail="Asset type name or identifier already in use")
    asset_type = models.AssetType(name=data.name, identifier=identifier, created_by=user.id)
    db.add(asset_type)
    db.flush()
    audit.log_action(
        db,
        user.id,
        "insert",
        "asset_type",
        asset_type.id,
        asset_type.name,
        new_values={"name": asset_type.name, "identifier": identifier},
    )
    db.commit()
    db.refresh(asset_type)
    return asset_type


@router.get("", response_model=List[schemas.AssetTypeOut])
def list_asset_types(db: Session = Depends(get_db), user=Depends(get_current_user)):
    return db.query(models.AssetType).order_by(models.AssetType.name).all()
