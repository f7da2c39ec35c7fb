"""
tabletop.api.routes.rules — Rules processing, polling & live feed
==================================================================

``POST /rules/process`` answers as soon as the run is queued; extraction
continues as a background task.  Progress is visible through
``GET /games/{id}/rules`` or the WebSocket feed, which sends the current
snapshot on connect and every status write after that.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field

from tabletop.api.deps import (
    decode_token,
    get_config,
    get_current_user,
    get_engine,
    get_feed,
    get_llm_factory,
)
from tabletop.config import TabletopConfig
from tabletop.database.engine import run_db
from tabletop.engine.feed import RuleStatusFeed
from tabletop.engine.schemas import ImageRef
from tabletop.errors import AuthenticationError, NotFoundError, PermissionDeniedError
from tabletop.services import rules_pipeline

router = APIRouter(tags=["rules"])
logger = logging.getLogger(__name__)


class ProcessRulesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    game_id: str = Field(default="", alias="gameId")
    images: list[ImageRef] = Field(default_factory=list)


@router.post("/rules/process", status_code=202)
async def process_rules(
    body: ProcessRulesRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
    cfg: TabletopConfig = Depends(get_config),
    feed: RuleStatusFeed = Depends(get_feed),
    llm_factory: Callable = Depends(get_llm_factory),
):
    """Queue rules extraction for a game's uploaded rulebook pages."""
    run = await run_db(
        rules_pipeline.queue_rules_processing,
        engine,
        user["sub"],
        body.game_id,
        body.images,
        feed,
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
        "message": "Game rules processing started",
        "gameId": run.game_id,
        "requestId": run.request_id,
        "ruleId": run.rule_id,
    }


@router.get("/games/{game_id}/rules")
async def rule_status(
    game_id: str,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
):
    return await run_db(rules_pipeline.get_rule_status, engine, user["sub"], game_id)


@router.websocket("/games/{game_id}/rules/feed")
async def rules_feed(
    websocket: WebSocket,
    game_id: str,
    token: str = Query(""),
    engine: Any = Depends(get_engine),
    feed: RuleStatusFeed = Depends(get_feed),
) -> None:
    """Stream rule snapshots for one game.

    Client → server: ``{"action": "ping"}`` (optional keep-alive).
    Server → client: rule snapshots, or ``{"type": "pong"}``.
    """
    try:
        user = decode_token(token)
    except AuthenticationError as exc:
        await websocket.close(code=4001, reason=f"Authentication failed: {exc.message}")
        return

    try:
        snapshot = await run_db(rules_pipeline.get_rule_status, engine, user["sub"], game_id)
    except PermissionDeniedError as exc:
        await websocket.close(code=4003, reason=exc.message)
        return
    except NotFoundError:
        snapshot = None

    await websocket.accept()
    queue = feed.subscribe(game_id)
    logger.info("Rules feed opened for game %s by %s", game_id, user["sub"])

    async def _forward() -> None:
        if snapshot is not None:
            await websocket.send_json(snapshot)
        while True:
            await websocket.send_json(await queue.get())

    async def _receive() -> None:
        while True:
            msg = await websocket.receive_json()
            if isinstance(msg, dict) and msg.get("action") == "ping":
                await websocket.send_json({"type": "pong"})

    tasks = [asyncio.create_task(_forward()), asyncio.create_task(_receive())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("Rules feed for game %s failed: %s", game_id, exc)
    finally:
        for task in tasks:
            task.cancel()
        feed.unsubscribe(game_id, queue)
        logger.info("Rules feed closed for game %s", game_id)
