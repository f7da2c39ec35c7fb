"""
tabletop.api.routes.bgg — BoardGameGeek search & import
=========================================================
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from tabletop.api.deps import get_bgg_client, get_config, get_current_user, get_engine
from tabletop.config import TabletopConfig
from tabletop.database.engine import run_db
from tabletop.errors import ValidationError
from tabletop.services import bgg_service
from tabletop.services.bgg_service import BggClient

router = APIRouter(prefix="/bgg", tags=["bgg"])


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = ""
    page: int = 1
    page_size: int | None = Field(default=None, alias="pageSize")


class FetchGameRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bgg_id: str = Field(default="", alias="bggId")
    import_game: bool = Field(default=False, alias="importGame")


@router.post("/search")
async def search(
    body: SearchRequest,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
    cfg: TabletopConfig = Depends(get_config),
    client: BggClient = Depends(get_bgg_client),
):
    """Local catalogue plus BoardGameGeek, without duplicates."""
    return await bgg_service.unified_search(
        engine,
        client,
        user["sub"],
        body.query,
        page=body.page,
        page_size=body.page_size or cfg.search_page_size,
    )


@router.post("/games")
async def fetch_game(
    body: FetchGameRequest,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
    client: BggClient = Depends(get_bgg_client),
):
    """Fetch one BGG game; with ``importGame`` also add it to the catalogue."""
    if not body.bgg_id:
        raise ValidationError("BGG ID is required")

    if body.import_game:
        existing = await run_db(bgg_service.find_by_bgg_id, engine, body.bgg_id)
        if existing is not None:
            return {
                "game": existing,
                "imported": False,
                "message": "Game already exists in database",
            }

    data = await client.fetch_game(body.bgg_id)
    if not body.import_game:
        return {"game": asdict(data), "imported": False}

    result = await run_db(bgg_service.import_game, engine, user["sub"], data)
    return {**result, "canAddRules": True}
