import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from allergen_assistant.core.errors import DoseLogNotFoundError, ValidationError
from allergen_assistant.db.session import get_db
from allergen_assistant.services import dose_repository

router = APIRouter(prefix="/api/oit-doses", tags=["oit-doses"])
logger = logging.getLogger("uvicorn.error")

MAX_ROW_ID = 2**63 - 1


class DoseLogItem(BaseModel):
    id: int
    allergenLabel: str
    allergenCode: str
    doseMg: float
    reaction: str
    notes: Optional[str] = None
    loggedAt: Optional[str] = None
    updatedAt: Optional[str] = None


class AllergenItem(BaseModel):
    code: str
    label: str


class DoseRecord(BaseModel):
    id: int
    allergenCode: str
    doseMg: float
    reaction: str
    notes: Optional[str] = None


class DoseLogListResponse(BaseModel):
    logs: list[DoseLogItem]
    allergens: list[AllergenItem]


class DoseLogWriteResponse(BaseModel):
    record: DoseRecord
    logs: list[DoseLogItem]


class DoseLogDeleteResponse(BaseModel):
    success: bool
    logs: list[DoseLogItem]


def _parse_id(raw: Any, action: str) -> int:
    dose_id: Optional[int] = None
    if isinstance(raw, int) and not isinstance(raw, bool):
        dose_id = raw
    elif isinstance(raw, str) and raw.strip().isdigit():
        dose_id = int(raw.strip())
    # SQLite INTEGER is a signed 64-bit value.
    if dose_id is None or abs(dose_id) > MAX_ROW_ID:
        raise HTTPException(status_code=400, detail=f"Dose log id is required for {action}.")
    return dose_id


@router.get("", response_model=DoseLogListResponse)
def list_dose_logs(db: Session = Depends(get_db)) -> DoseLogListResponse:
    try:
        logs = dose_repository.list_dose_logs(db)
        allergens = dose_repository.list_allergens(db)
    except SQLAlchemyError as exc:
        logger.exception("oit_dose_list_failed detail=%s", str(exc))
        raise HTTPException(status_code=500, detail="Failed to load OIT dose logs.") from exc
    return DoseLogListResponse(logs=logs, allergens=allergens)


@router.post("", response_model=DoseLogWriteResponse, status_code=status.HTTP_201_CREATED)
def create_dose_log(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> DoseLogWriteResponse:
    try:
        record = dose_repository.create_dose_log(db, payload)
        logs = dose_repository.list_dose_logs(db)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("oit_dose_create_failed detail=%s", str(exc))
        raise HTTPException(status_code=500, detail="Failed to create OIT dose log.") from exc
    return DoseLogWriteResponse(record=record, logs=logs)


@router.put("", response_model=DoseLogWriteResponse)
def update_dose_log(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> DoseLogWriteResponse:
    fields = dict(payload)
    dose_id = _parse_id(fields.pop("id", None), "updates")
    try:
        record = dose_repository.update_dose_log(db, dose_id, fields)
        logs = dose_repository.list_dose_logs(db)
    except DoseLogNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("oit_dose_update_failed id=%s detail=%s", dose_id, str(exc))
        raise HTTPException(status_code=500, detail="Failed to update OIT dose log.") from exc
    return DoseLogWriteResponse(record=record, logs=logs)


@router.delete("", response_model=DoseLogDeleteResponse)
def delete_dose_log(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> DoseLogDeleteResponse:
    dose_id = _parse_id(payload.get("id"), "deletion")
    try:
        dose_repository.delete_dose_log(db, dose_id)
        logs = dose_repository.list_dose_logs(db)
    except DoseLogNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("oit_dose_delete_failed id=%s detail=%s", dose_id, str(exc))
        raise HTTPException(status_code=500, detail="Failed to delete OIT dose log.") from exc
    return DoseLogDeleteResponse(success=True, logs=logs)
