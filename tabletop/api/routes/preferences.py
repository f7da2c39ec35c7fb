"""
tabletop.api.routes.preferences — AI model preference
=======================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tabletop.api.deps import get_config, get_current_user, get_engine
from tabletop.config import TabletopConfig
from tabletop.database.engine import run_db
from tabletop.database.models import AIModel
from tabletop.services import preference_service

router = APIRouter(prefix="/preferences", tags=["preferences"])


class PreferenceUpdate(BaseModel):
    ai_model: str


@router.get("")
async def get_preferences(
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
    cfg: TabletopConfig = Depends(get_config),
):
    model = await run_db(
        preference_service.get_preference, engine, user["sub"], cfg.default_ai_model
    )
    return {"ai_model": str(model), "available_models": [m.value for m in AIModel]}


@router.put("")
async def update_preferences(
    body: PreferenceUpdate,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    model = await run_db(preference_service.set_preference, engine, user["sub"], body.ai_model)
    return {"ai_model": str(model)}
