"""
tabletop.services.preference_service — Per-User AI Model Choice
================================================================
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tabletop.database.engine import get_session
from tabletop.database.models import AIModel, UserPreference
from tabletop.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

DEFAULT_AI_MODEL = AIModel.ANTHROPIC_CLAUDE_HAIKU


def _parse_model(value: str | AIModel) -> AIModel:
    try:
        return AIModel(value)
    except ValueError:
        raise ValidationError(
            f"Unknown AI model: {value!r}. Allowed: {', '.join(m.value for m in AIModel)}"
        ) from None


def get_preference(
    engine: Engine, user_id: str, default: str | AIModel = DEFAULT_AI_MODEL
) -> AIModel:
    """The user's chosen model, or *default* if they never picked one."""
    with get_session(engine) as session:
        pref = session.get(UserPreference, user_id)
        if pref is None:
            return _parse_model(default)
        return pref.ai_model


def set_preference(engine: Engine, user_id: str, ai_model: str | AIModel) -> AIModel:
    """Insert or update the user's model choice."""
    model = _parse_model(ai_model)
    with get_session(engine) as session:
        pref = session.get(UserPreference, user_id)
        if pref is None:
            session.add(UserPreference(user_id=user_id, ai_model=model))
        else:
            pref.ai_model = model
    logger.info("User %s switched AI model to %s", user_id, model)
    return model
