"""Asset code allocation: ``<prefix><lab identifier>/<type identifier>-<n>``."""

from __future__ import annotations

import os
import re
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import models

ASSET_CODE_PREFIX = os.getenv("ASSET_CODE_PREFIX", "")
DEFAULT_TYPE_IDENTIFIER = "OT"

_NUMBER = re.compile(r"-(\d+)$")


def code_stem(lab: models.Lab, asset_type: models.AssetType | None) -> str:
    identifier = asset_type.identifier if asset_type is not None else DEFAULT_TYPE_IDENTIFIER
    return f"{ASSET_CODE_PREFIX}{lab.lab_identifier}/{identifier}-"


def code_number(code: str | None) -> int | None:
    if not code:
        return None
    match = _NUMBER.search(code)
    return int(match.group(1)) if match else None


def next_asset_code(db: Session, lab: models.Lab, asset_type: models.AssetType | None, exclude_id: Any = None) -> str:
    stem = code_stem(lab, asset_type)
    query = select(models.Equipment.asset_code).where(models.Equipment.asset_code.startswith(stem, autoescape=True))
    if exclude_id is not None:
        query = query.where(models.Equipment.id != exclude_id)
    numbers = [
        number
        for number in (code_number(code) for code in db.scalars(query))
        if number is not None
    ]
    return f"{stem}{max(numbers, default=0) + 1}"


def asset_code_for(
    db: Session,
    equipment: models.Equipment | None,
    lab_id: Any,
    asset_type_id: Any,
) -> str:
    """Return the code ``equipment`` should carry in ``lab_id`` with ``asset_type_id``.

    An existing code that already fits the lab and type keeps its number.
    """

    lab = db.get(models.Lab, lab_id)
    if lab is None:
        raise ValueError(f"lab {lab_id} does not exist")
    asset_type = db.get(models.AssetType, asset_type_id) if asset_type_id is not None else None
    stem = code_stem(lab, asset_type)
    current = equipment.asset_code if equipment is not None else None
    if current and current.startswith(stem) and code_number(current) is not None:
        return current
    return next_asset_code(db, lab, asset_type, exclude_id=equipment.id if equipment is not None else None)
