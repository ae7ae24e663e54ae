import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from labtrack.main import app
from labtrack.database import Base, get_db, enable_sqlite_foreign_keys
from labtrack import auth, models, pubsub
from labtrack.rbac import ActorContext

SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def fresh_redis():
    # each TestClient (and each asyncio test) runs its own event loop
    pubsub.reset_redis()
    yield
    pubsub.reset_redis()

@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def create_lab(identifier: str | None = None, name: str | None = None) -> models.Lab:
    """
    purpose: insert a lab directly so scenarios don't depend on the HOD API
    outputs: detached Lab row
    """

    identifier = identifier or f"L{uuid.uuid4().hex[:6].upper()}"
    session = TestingSessionLocal()
    lab = models.Lab(name=name or f"Lab {identifier}", lab_identifier=identifier)
    session.add(lab)
    session.commit()
    session.refresh(lab)
    session.expunge(lab)
    session.close()
    return lab


def create_user(role: str, lab_id=None, email: str | None = None, full_name: str | None = None) -> models.User:
    email = email or f"{role.lower().replace(' ', '-')}-{uuid.uuid4().hex[:8]}@example.com"
    session = TestingSessionLocal()
    user = models.User(
        email=email,
        hashed_password=auth.get_password_hash("secret"),
        full_name=full_name or role,
        role=role,
        lab_id=lab_id,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    session.expunge(user)
    session.close()
    return user


def headers_for(user: models.User) -> dict[str, str]:
    token = auth.create_access_token({"sub": user.email})
    return {"Authorization": f"Bearer {token}"}


def actor_for(user: models.User) -> ActorContext:
    return ActorContext.from_user(user)


class Staff:
    """Two labs with an assistant and an incharge each, plus one HOD."""

    def __init__(self):
        self.lab1 = create_lab()
        self.lab2 = create_lab()
        self.assistant1 = create_user("Lab Assistant", self.lab1.id)
        self.assistant2 = create_user("Lab Assistant", self.lab2.id)
        self.incharge1 = create_user("Lab Incharge", self.lab1.id)
        self.incharge2 = create_user("Lab Incharge", self.lab2.id)
        self.hod = create_user("HOD")

    def headers(self, name: str) -> dict[str, str]:
        return headers_for(getattr(self, name))


@pytest.fixture
def staff():
    return Staff()


def create_equipment(client, staff: Staff, **overrides) -> dict:
    payload = {"name": f"Oscilloscope {uuid.uuid4().hex[:4]}", "rate": "100", "quantity": 2}
    payload.update(overrides)
    resp = client.post("/api/equipment", json=payload, headers=staff.headers("assistant1"))
    assert resp.status_code == 201, resp.text
    return resp.json()


def approved_equipment(client, staff: Staff, **overrides) -> dict:
    item = create_equipment(client, staff, **overrides)
    for approver in ("hod", "incharge1"):
        resp = client.post(f"/api/equipment/{item['id']}/approve", headers=staff.headers(approver))
        assert resp.status_code == 200, resp.text
    return client.get(f"/api/equipment/{item['id']}", headers=staff.headers("hod")).json()
