import math
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from allergen_assistant.core.errors import DoseLogNotFoundError, ValidationError
from allergen_assistant.core.validation import sanitize_text_input
from allergen_assistant.db.models import OitAllergen, OitDoseLog

REACTION_LEVELS = ("none", "mild", "severe")


def validate_dose_payload(payload: dict[str, Any]) -> dict[str, Any]:
    allergen_code = payload.get("allergenCode")
    dose_mg = payload.get("doseMg")
    reaction = payload.get("reaction")

    normalized_code = allergen_code.strip().lower() if isinstance(allergen_code, str) else ""
    if isinstance(dose_mg, bool):
        numeric_dose = math.nan
    elif isinstance(dose_mg, (int, float)):
        numeric_dose = float(dose_mg)
    else:
        try:
            numeric_dose = float(str(dose_mg).strip())
        except ValueError:
            numeric_dose = math.nan
    normalized_reaction = reaction.strip().lower() if isinstance(reaction, str) else ""

    if not normalized_code:
        raise ValidationError("Allergen selection is required.")
    if not math.isfinite(numeric_dose) or numeric_dose <= 0:
        raise ValidationError("Dose amount must be a positive number.")
    if normalized_reaction not in REACTION_LEVELS:
        raise ValidationError("Reaction value must be one of none, mild, or severe.")

    return {
        "allergenCode": normalized_code,
        "doseMg": numeric_dose,
        "reaction": normalized_reaction,
        "notes": sanitize_text_input(payload.get("notes"), preserve_whitespace=True).strip() or None,
    }


def _resolve_allergen(db: Session, allergen_code: str) -> OitAllergen:
    row = db.execute(select(OitAllergen).where(OitAllergen.code == allergen_code)).scalar_one_or_none()
    if row is None:
        raise ValidationError("Unknown allergen code.")
    return row


def _to_item(row: OitDoseLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "allergenLabel": row.allergen.label,
        "allergenCode": row.allergen.code,
        "doseMg": float(row.dose_mg),
        "reaction": row.reaction,
        "notes": row.notes,
        "loggedAt": row.logged_at.isoformat() if row.logged_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


def list_dose_logs(db: Session) -> list[dict[str, Any]]:
    rows = db.execute(
        select(OitDoseLog).join(OitDoseLog.allergen).order_by(OitDoseLog.logged_at.desc(), OitDoseLog.id.desc())
    ).scalars()
    return [_to_item(row) for row in rows]


def list_allergens(db: Session) -> list[dict[str, str]]:
    rows = db.execute(select(OitAllergen).order_by(OitAllergen.label.asc())).scalars()
    return [{"code": row.code, "label": row.label} for row in rows]


def create_dose_log(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    validated = validate_dose_payload(payload)
    allergen = _resolve_allergen(db, validated["allergenCode"])
    row = OitDoseLog(
        allergen_id=allergen.id,
        dose_mg=validated["doseMg"],
        reaction=validated["reaction"],
        notes=validated["notes"],
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return {"id": row.id, **validated}


def _get_dose_log(db: Session, dose_id: int) -> OitDoseLog:
    row: Optional[OitDoseLog] = db.get(OitDoseLog, dose_id)
    if row is None:
        raise DoseLogNotFoundError("Dose log not found.")
    return row


def update_dose_log(db: Session, dose_id: int, payload: dict[str, Any]) -> dict[str, Any]:
    validated = validate_dose_payload(payload)
    allergen = _resolve_allergen(db, validated["allergenCode"])
    row = _get_dose_log(db, dose_id)
    row.allergen_id = allergen.id
    row.dose_mg = validated["doseMg"]
    row.reaction = validated["reaction"]
    row.notes = validated["notes"]
    row.updated_at = datetime.utcnow()
    db.commit()
    return {"id": dose_id, **validated}


def delete_dose_log(db: Session, dose_id: int) -> None:
    row = _get_dose_log(db, dose_id)
    db.delete(row)
    db.commit()
