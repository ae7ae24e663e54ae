from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user, require_hod
from ..services.assets import code_number, code_stem
from ..store import EntityStore
from .. import models, schemas, audit

router = APIRouter(prefix="/api/labs", tags=["labs"])


@router.post("", response_model=schemas.LabOut, status_code=201)
def create_lab(
    lab: schemas.LabCreate,
    db: Session = Depends(get_db),
    user=Depends(require_hod),
):
    if db.query(models.Lab).filter(models.Lab.lab_identifier == lab.lab_identifier).first():
        raise HTTPException(status_code=400, detail="Lab identifier already in use")
    db_lab = models.Lab(**lab.model_dump())
    db.add(db_lab)
    db.flush()
    audit.log_action(db, user.id, "insert", "lab", db_lab.id, db_lab.name, new_values=lab.model_dump())
    db.commit()
    db.refresh(db_lab)
    return db_lab


@router.get("", response_model=List[schemas.LabOut])
def list_labs(db: Session = Depends(get_db), user=Depends(get_current_user)):
    return db.query(models.Lab).order_by(models.Lab.name).all()


@router.patch("/{lab_id}", response_model=schemas.LabOut)
async def update_lab(
    lab_id: UUID,
    data: schemas.LabUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_hod),
):
    lab = db.get(models.Lab, lab_id)
    if not lab:
        raise HTTPException(status_code=404, detail="Lab not found")
    changes = {
        key: value
        for key, value in data.model_dump(exclude_unset=True).items()
        if value is not None or key in ("description", "location")
    }
    identifier = changes.get("lab_identifier")
    if identifier and identifier != lab.lab_identifier and (
        db.query(models.Lab).filter(models.Lab.lab_identifier == identifier).first()
    ):
        raise HTTPException(status_code=400, detail="Lab identifier already in use")
    old = {key: getattr(lab, key) for key in changes}
    for key, value in changes.items():
        setattr(lab, key, value)
    db.flush()

    store = EntityStore(db)
    if "lab_identifier" in changes and changes["lab_identifier"] != old["lab_identifier"]:
        # asset codes embed the lab identifier; keep each item's number
        for equipment in db.query(models.Equipment).filter(models.Equipment.allocated_lab == lab.id).all():
            number = code_number(equipment.asset_code)
            if number is None:
                continue
            store.update(
                "equipment",
                equipment.id,
                {"asset_code": f"{code_stem(lab, equipment.asset_type)}{number}"},
            )
    audit.log_action(db, user.id, "update", "lab", lab.id, lab.name, old_values=old, new_values=changes)
    store.commit()
    await store.publish_pending()
    db.refresh(lab)
    return lab
