"""
tabletop.api.routes.games — Game CRUD, image upload & create-from-images
=========================================================================
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile
from pydantic import BaseModel

from tabletop.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    get_feed,
    get_llm_factory,
    get_user_llm,
)
from tabletop.config import TabletopConfig
from tabletop.database.engine import run_db
from tabletop.engine.feed import RuleStatusFeed
from tabletop.engine.llm import VisionClient
from tabletop.engine.schemas import ImageRef
from tabletop.errors import TabletopError
from tabletop.services import game_service, image_service, rules_pipeline, storage_service

router = APIRouter(tags=["games"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class GameCreate(BaseModel):
    name: str
    description: str | None = None
    estimated_time: str | None = None
    status: str = "draft"
    min_players: int | None = None
    max_players: int | None = None
    min_age: int | None = None


class GameUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    estimated_time: str | None = None
    status: str | None = None
    min_players: int | None = None
    max_players: int | None = None
    min_age: int | None = None


class FromImagesRequest(BaseModel):
    images: list[ImageRef]


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------
@router.get("/games")
async def list_games(
    status: str | None = None,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    """List the caller's games."""
    games = await run_db(game_service.list_games, engine, user["sub"], status)
    return {"games": games}


@router.post("/games", status_code=201)
async def create_game(
    body: GameCreate,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    return await run_db(
        game_service.create_game,
        engine,
        user["sub"],
        body.name,
        description=body.description,
        estimated_time=body.estimated_time,
        status=body.status,
        min_players=body.min_players,
        max_players=body.max_players,
        min_age=body.min_age,
    )


@router.get("/games/{game_id}")
async def get_game(
    game_id: str,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    return await run_db(game_service.get_game, engine, user["sub"], game_id)


@router.patch("/games/{game_id}")
async def update_game(
    game_id: str,
    body: GameUpdate,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    return await run_db(
        game_service.update_game,
        engine,
        user["sub"],
        game_id,
        **body.model_dump(exclude_unset=True),
    )


@router.delete("/games/{game_id}", status_code=204)
async def delete_game(
    game_id: str,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    """Delete a game with its images, rules and stored blobs."""
    await run_db(game_service.delete_game, engine, user["sub"], game_id)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------
@router.post("/uploads", status_code=201)
async def upload_blob(
    file: UploadFile,
    user: dict = Depends(get_current_user),
    cfg: TabletopConfig = Depends(get_config),
):
    """Store an image before its game exists; returns the blob path."""
    content = await file.read()
    path = await storage_service.save_upload(
        user["sub"],
        None,
        file.filename or "upload.png",
        content,
        file.content_type,
        max_bytes=cfg.max_upload_mb * 1024 * 1024,
    )
    return {"path": path}


@router.post("/games/{game_id}/images", status_code=201)
async def upload_game_image(
    game_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    image_type: str = Form("rules"),
    is_cover: bool = Form(False),
    order_index: int | None = Form(None),
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
    cfg: TabletopConfig = Depends(get_config),
    client: VisionClient = Depends(get_user_llm),
):
    """Upload an image and attach it to the game.

    Rules and example images are then extracted in the background.
    """
    content = await file.read()
    path = await storage_service.save_upload(
        user["sub"],
        game_id,
        file.filename or "upload.png",
        content,
        file.content_type,
        max_bytes=cfg.max_upload_mb * 1024 * 1024,
    )
    try:
        image = await run_db(
            game_service.add_image,
            engine,
            user["sub"],
            game_id,
            path,
            image_type,
            is_cover=is_cover,
            order_index=order_index,
        )
    except TabletopError:
        storage_service.delete_blob(path)
        raise

    if image["processing_status"] == "pending":
        background_tasks.add_task(
            image_service.process_uploaded_image, engine, image["id"], vision_client=client
        )
    return image


@router.post("/games/{game_id}/images/{image_id}/process", status_code=202)
async def process_game_image(
    game_id: str,
    image_id: str,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
    client: VisionClient = Depends(get_user_llm),
):
    """Run the per-image extraction again, e.g. after an error."""
    image = await run_db(
        image_service.queue_image_processing, engine, user["sub"], game_id, image_id
    )
    background_tasks.add_task(
        image_service.process_uploaded_image, engine, image["id"], vision_client=client
    )
    return image


@router.delete("/games/{game_id}/images/{image_id}", status_code=204)
async def delete_game_image(
    game_id: str,
    image_id: str,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    await run_db(game_service.delete_image, engine, user["sub"], game_id, image_id)


@router.put("/games/{game_id}/cover/{image_id}")
async def set_cover(
    game_id: str,
    image_id: str,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    return await run_db(game_service.set_cover_image, engine, user["sub"], game_id, image_id)


# ---------------------------------------------------------------------------
# Create from images
# ---------------------------------------------------------------------------
@router.post("/games/from-images", status_code=201)
async def create_from_images(
    body: FromImagesRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
    cfg: TabletopConfig = Depends(get_config),
    feed: RuleStatusFeed = Depends(get_feed),
    llm_factory: Callable = Depends(get_llm_factory),
):
    """Create a draft game named from its rulebook pages; rules run in the background."""
    game, run = await game_service.create_game_from_images(
        engine,
        user["sub"],
        body.images,
        vision_client=llm_factory(cfg.game_info_model),
        feed=feed,
    )
    background_tasks.add_task(
        rules_pipeline.run_rules_processing,
        engine,
        run,
        body.images,
        feed=feed,
        vision_client=llm_factory(cfg.extraction_model),
    )
    return {
        "game": {
            "id": game["id"],
            "name": game["name"],
            "description": game["description"],
            "estimatedTime": game["estimated_time"],
        },
        "requestId": run.request_id,
        "message": "Game created successfully, rules processing started",
    }
