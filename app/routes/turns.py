"""
Per-turn coaching endpoint.
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends

import coachcore.config as config
from coachcore.errors import ValidationIssue
from coachcore.services.turn_service import TurnService
from coachcore.validators import validate_choice, validate_optional_text, validate_required_text
from app.deps import get_turn_service, validation_http_error


router = APIRouter()


def _validate_turn_payload(payload: dict) -> None:
    validate_required_text(payload.get("owner_id"), "owner_id", config.MAX_SHORT_TEXT_LENGTH)
    validate_required_text(payload.get("message"), "message", config.MAX_TEXT_LENGTH)
    validate_optional_text(payload.get("current_stage_id"), "current_stage_id", config.MAX_SHORT_TEXT_LENGTH)
    validate_optional_text(payload.get("first_name"), "first_name", config.MAX_SHORT_TEXT_LENGTH)
    validate_choice(payload.get("locale") or config.KNOWLEDGE_DEFAULT_LANGUAGE, "locale", {"de", "en"})
    history = payload.get("recent_history")
    if history is not None and not isinstance(history, list):
        raise ValidationIssue("recent_history must be a list", field="recent_history", error_type="invalid_type")
    preferences = payload.get("preferences")
    if preferences is not None and not isinstance(preferences, dict):
        raise ValidationIssue("preferences must be an object", field="preferences", error_type="invalid_type")


@router.post("/turns")
async def process_turn(
    payload: dict = Body(...),
    service: TurnService = Depends(get_turn_service),
):
    """Evaluate the stage, run tools and return the composed context for one turn."""
    try:
        _validate_turn_payload(payload)
    except ValidationIssue as exc:
        raise validation_http_error(exc) from exc

    outcome = await service.process_turn(
        payload["owner_id"],
        payload["message"],
        current_stage_id=payload.get("current_stage_id"),
        recent_history=payload.get("recent_history"),
        preferences=payload.get("preferences"),
        first_name=payload.get("first_name"),
        locale=payload.get("locale") or config.KNOWLEDGE_DEFAULT_LANGUAGE,
    )
    return outcome.to_dict()
