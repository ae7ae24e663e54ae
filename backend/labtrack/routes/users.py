from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from .. import models, schemas, auth, audit

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=schemas.UserOut)
async def read_profile(current_user: models.User = Depends(auth.get_current_user)):
    return current_user


@router.get("", response_model=List[schemas.UserOut])
async def list_users(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    return db.query(models.User).order_by(models.User.email).all()


@router.post("", response_model=schemas.UserOut, status_code=201)
async def create_user(
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_hod),
):
    if db.query(models.User).filter(models.User.email == user.email).first():
        raise HTTPException(status_code=400, detail="Email already registered")
    if user.lab_id is not None and db.get(models.Lab, user.lab_id) is None:
        raise HTTPException(status_code=404, detail="Lab not found")
    db_user = models.User(
        email=user.email,
        hashed_password=auth.get_password_hash(user.password),
        full_name=user.full_name,
        role=user.role,
        lab_id=user.lab_id,
    )
    db.add(db_user)
    db.flush()
    audit.log_action(
        db,
        current_user.id,
        "insert",
        "user",
        db_user.id,
        db_user.email,
        new_values={"email": db_user.email, "role": db_user.role, "lab_id": db_user.lab_id},
    )
    db.commit()
    db.refresh(db_user)
    return db_user


@router.patch("/{user_id}", response_model=schemas.UserOut)
async def update_user(
    user_id: UUID,
    update: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_hod),
):
    db_user = db.get(models.User, user_id)
    if db_user is None:
        raise HTTPException(status_code=404, detail="User not found")
    old = {"full_name": db_user.full_name, "role": db_user.role, "lab_id": db_user.lab_id, "is_active": db_user.is_active}
    changes = update.model_dump(exclude_unset=True)
    if changes.get("lab_id") is not None and db.get(models.Lab, changes["lab_id"]) is None:
        raise HTTPException(status_code=404, detail="Lab not found")
    for key, value in changes.items():
        setattr(db_user, key, value)
    audit.log_action(db, current_user.id, "update", "user", db_user.id, db_user.email, old_values=old, new_values={**old, **changes})
    db.commit()
    db.refresh(db_user)
    return db_user

