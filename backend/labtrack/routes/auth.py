import os

from fastapi import APIRouter, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from ..database import get_db
from .. import audit, models, schemas
from ..auth import authenticate_user, create_access_token

limiter = Limiter(key_func=get_remote_address)
testing = os.getenv("TESTING") == "1"


def rate_limit(limit: str):
    if testing:
        def wrapper(func):
            return func
        return wrapper
    return limiter.limit(limit)


router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login", response_model=schemas.Token)
@rate_limit("10/minute")
async def login(request: Request, user: schemas.LoginRequest, db: Session = Depends(get_db)):
    db_user = authenticate_user(db, user.email, user.password)
    if db_user is None:
        known = db.query(models.User).filter(models.User.email == user.email).first()
        audit.log_action(
            db,
            known.id if known else None,
            "login_failed",
            "user",
            known.id if known else None,
            user.email,
            severity="warning",
            success=False,
        )
        db.commit()
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": db_user.email})
    audit.log_action(db, db_user.id, "login", "user", db_user.id, db_user.email)
    db.commit()
    return schemas.Token(access_token=token)
