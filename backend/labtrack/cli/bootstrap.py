"""CLI utilities for seeding a fresh LabTrack deployment."""

# purpose: let operators create the first labs and the first HOD before anyone can log in
# status: active
# depends_on: labtrack.database, labtrack.models, labtrack.auth

from __future__ import annotations

import json
from typing import Optional

import typer

from .. import audit, models
from ..auth import get_password_hash
from ..database import Base, SessionLocal, engine
from ..rbac import Role

app = typer.Typer(help="LabTrack bootstrap commands")


def init_db() -> list[str]:
    """Create any missing tables; returns the table names known to the metadata."""

    Base.metadata.create_all(bind=engine)
    return sorted(Base.metadata.tables)


def create_lab(name: str, lab_identifier: str, location: str | None = None) -> dict[str, str]:
    if "/" in lab_identifier:
        raise ValueError("lab identifier cannot contain '/'")
    session = SessionLocal()
    try:
        existing = (
            session.query(models.Lab)
            .filter(models.Lab.lab_identifier == lab_identifier)
            .first()
        )
        if existing is not None:
            return {"id": str(existing.id), "lab_identifier": existing.lab_identifier, "created": "false"}
        lab = models.Lab(name=name, lab_identifier=lab_identifier, location=location)
        session.add(lab)
        session.flush()
        audit.log_action(session, None, "insert", "lab", lab.id, lab.name, new_values={"name": name})
        session.commit()
        return {"id": str(lab.id), "lab_identifier": lab.lab_identifier, "created": "true"}
    finally:
        session.close()


def create_user(
    email: str,
    password: str,
    role: str = Role.HOD.value,
    full_name: str | None = None,
    lab_identifier: str | None = None,
) -> dict[str, str | None]:
    """Create a user directly in the store, bypassing the HOD-only API."""

    if Role.coerce(role) is None:
        raise ValueError(f"unknown role {role!r}")
    session = SessionLocal()
    try:
        if session.query(models.User).filter(models.User.email == email).first():
            raise ValueError("Email already registered")
        lab = None
        if lab_identifier:
            lab = (
                session.query(models.Lab)
                .filter(models.Lab.lab_identifier == lab_identifier)
                .first()
            )
            if lab is None:
                raise ValueError(f"lab {lab_identifier!r} does not exist")
        user = models.User(
            email=email,
            hashed_password=get_password_hash(password),
            full_name=full_name,
            role=Role.coerce(role).value,
            lab_id=lab.id if lab is not None else None,
        )
        session.add(user)
        session.flush()
        audit.log_action(
            session,
            None,
            "insert",
            "user",
            user.id,
            user.email,
            new_values={"email": email, "role": user.role, "lab_id": user.lab_id},
        )
        session.commit()
        return {"id": str(user.id), "email": user.email, "role": user.role, "lab_id": str(user.lab_id) if user.lab_id else None}
    finally:
        session.close()


@app.command("init-db")
def init_db_command() -> None:
    """Create tables without running migrations (development only)."""

    typer.echo(json.dumps({"tables": init_db()}))


@app.command("create-lab")
def create_lab_command(
    name: str = typer.Option(..., help="Display name of the lab"),
    identifier: str = typer.Option(..., help="Short identifier used in asset codes"),
    location: Optional[str] = typer.Option(None, help="Room or building"),
) -> None:
    try:
        summary = create_lab(name, identifier, location)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    typer.echo(json.dumps(summary))


@app.command("create-user")
def create_user_command(
    email: str = typer.Option(..., help="Login email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    role: str = typer.Option(Role.HOD.value, help="Lab Assistant, Lab Incharge or HOD"),
    full_name: Optional[str] = typer.Option(None, help="Name shown in notifications"),
    lab: Optional[str] = typer.Option(None, help="Lab identifier the user belongs to"),
) -> None:
    try:
        summary = create_user(email, password, role=role, full_name=full_name, lab_identifier=lab)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    typer.echo(json.dumps(summary))


if __name__ == "__main__":
    app()
