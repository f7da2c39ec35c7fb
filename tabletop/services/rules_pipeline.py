"""
tabletop.services.rules_pipeline — Rule Ingestion
==================================================

Turns photographed rulebook pages into rules text plus structured metadata.
Work is split in two so the HTTP request returns immediately:

1. :func:`queue_rules_processing` (synchronous, inside the request)
   validates the caller, locates or creates the game's :class:`GameRule`
   row and marks it ``queued`` with a fresh request id.
2. :func:`run_rules_processing` (async, scheduled as a background task)
   downloads every page, registers missing :class:`GameImage` rows, makes
   one vision-model call and writes ``completed`` or ``error``.

Every status write is published on the :class:`RuleStatusFeed` and
NOTIFYed, so clients can either poll :func:`get_rule_status` or subscribe.

There is no lock between runs.  If a game is queued twice, both runs write
to the same row and the last write wins.  There is no automatic retry
either: the client queues again, which restarts from the first image.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from tabletop.database.engine import get_session, run_db
from tabletop.database.models import (
    Game,
    GameImage,
    GameRule,
    GameStatus,
    ImageType,
    ProcessingStatus,
)
from tabletop.engine.feed import RuleStatusFeed, notify_before_commit, rule_snapshot
from tabletop.engine.llm import VisionClient, get_vision_client
from tabletop.engine.prompts import EXTRACT_GAME_RULES_PROMPT
from tabletop.engine.schemas import ExtractedRules, ImageRef
from tabletop.errors import NotFoundError, PermissionDeniedError, ValidationError
from tabletop.services import storage_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueuedRun:
    """Handle for one queued processing attempt."""

    request_id: str
    rule_id: str
    game_id: str
    author_id: str
    attempt: int


def _utcnow() -> datetime:
    return datetime.now(UTC)


def sort_images(images: list[ImageRef]) -> list[ImageRef]:
    """Order by ``order_index``; images without one go last, in input order."""
    return sorted(
        images,
        key=lambda img: (img.order_index is None, img.order_index or 0),
    )


# ---------------------------------------------------------------------------
# Step 1 — queue (runs inside the request)
# ---------------------------------------------------------------------------
def queue_rules_processing(
    engine: Engine,
    user_id: str,
    game_id: str,
    images: list[ImageRef],
    feed: RuleStatusFeed | None = None,
) -> QueuedRun:
    """Validate the caller and mark the game's rules ``queued``.

    Ownership is checked before anything is written.  Each call counts as
    a new attempt, including calls made while an earlier run is still in
    flight.

    Raises
    ------
    ValidationError
        ``game_id`` missing or no images supplied.
    NotFoundError
        The game doesn't exist.
    PermissionDeniedError
        The caller is not the game's author, or an image path lies outside
        the caller's storage folder.
    """
    if not game_id:
        raise ValidationError("Missing required parameter: gameId")
    if not images:
        raise ValidationError("Missing required parameter: images")

    request_id = str(uuid.uuid4())

    with get_session(engine) as session:
        game = session.get(Game, game_id)
        if game is None:
            raise NotFoundError(f"Game not found: {game_id}")
        if game.author_id != user_id:
            raise PermissionDeniedError("Not authorized to process rules for this game")
        foreign = [img.path for img in images if not storage_service.owns_path(user_id, img.path)]
        if foreign:
            raise PermissionDeniedError(f"Images not owned by caller: {', '.join(foreign)}")

        rule = session.scalar(select(GameRule).where(GameRule.game_id == game_id))
        if rule is None:
            rule = GameRule(game_id=game_id, processing_attempts=1)
            session.add(rule)
        else:
            # Incremented in SQL so concurrent requests never lose a count.
            rule.processing_attempts = GameRule.processing_attempts + 1

        rule.processing_status = ProcessingStatus.QUEUED
        rule.last_attempt_at = _utcnow()
        rule.processing_request_id = request_id
        rule.error_message = None
        rule.processing_progress = {
            "stage": "queued",
            "queued_at": _utcnow().isoformat(),
            "images_count": len(images),
        }
        session.flush()
        session.refresh(rule)

        snapshot = rule_snapshot(rule)
        notify_before_commit(session, snapshot)
        run = QueuedRun(
            request_id=request_id,
            rule_id=rule.id,
            game_id=game_id,
            author_id=game.author_id,
            attempt=rule.processing_attempts,
        )

    if feed is not None:
        feed.publish(game_id, snapshot)

    logger.info(
        "[%s] Queued rules processing for game %s (attempt %d, %d image(s))",
        request_id, game_id, run.attempt, len(images),
    )
    return run


# ---------------------------------------------------------------------------
# Row writes (worker thread)
# ---------------------------------------------------------------------------
def _write_rule(
    engine: Engine,
    run: QueuedRun,
    feed: RuleStatusFeed | None,
    *,
    mark_game_complete: bool = False,
    **fields: Any,
) -> dict[str, Any]:
    with get_session(engine) as session:
        rule = session.get(GameRule, run.rule_id)
        if rule is None:
            raise NotFoundError(f"Rule row disappeared: {run.rule_id}")
        if rule.processing_request_id != run.request_id:
            logger.warning(
                "[%s] Superseded by request %s; writing anyway",
                run.request_id, rule.processing_request_id,
            )

        for name, value in fields.items():
            setattr(rule, name, value)
        if mark_game_complete:
            game = session.get(Game, run.game_id)
            if game is not None:
                game.has_complete_rules = True

        session.flush()
        snapshot = rule_snapshot(rule)
        notify_before_commit(session, snapshot)

    if feed is not None:
        feed.publish(run.game_id, snapshot)
    return snapshot


def _progress(engine, run, feed, progress: dict[str, Any], **fields: Any) -> dict[str, Any]:
    logger.info("[%s] Updating processing progress: %s", run.request_id, progress)
    return _write_rule(engine, run, feed, processing_progress=progress, **fields)


def _register_images(engine: Engine, run: QueuedRun, images: list[ImageRef]) -> int:
    """Add a ``rules`` GameImage for every path the game doesn't have yet."""
    created = 0
    with get_session(engine) as session:
        known = set(
            session.scalars(
                select(GameImage.image_url).where(GameImage.game_id == run.game_id)
            )
        )
        for index, image in enumerate(images):
            if image.path in known:
                continue
            session.add(
                GameImage(
                    game_id=run.game_id,
                    image_url=image.path,
                    image_type=ImageType.RULES,
                    uploader_id=run.author_id,
                    is_cover=False,
                    order_index=image.order_index if image.order_index is not None else index,
                )
            )
            known.add(image.path)
            created += 1
    return created


# ---------------------------------------------------------------------------
# Step 2 — background run
# ---------------------------------------------------------------------------
async def _download_all(
    engine: Engine,
    run: QueuedRun,
    feed: RuleStatusFeed | None,
    images: list[ImageRef],
) -> list[str]:
    """Download every page concurrently, reporting progress per page.

    The first failed download cancels the rest.  A progress write that is
    already on its way to the database is allowed to land before the
    failure propagates, so the caller's error write is always the last one.
    """
    total = len(images)
    done = 0
    write_lock = asyncio.Lock()
    await run_db(
        _progress, engine, run, feed,
        {"stage": "downloading_images", "progress": 0, "total": total},
    )

    async def _one(image: ImageRef) -> str:
        nonlocal done
        logger.info("[%s] Downloading image %s", run.request_id, image.path)
        url = await storage_service.download_data_url(image.path)
        async with write_lock:
            done += 1
            write = asyncio.ensure_future(
                run_db(
                    _progress, engine, run, feed,
                    {"stage": "downloading_images", "progress": done, "total": total},
                )
            )
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                await write
                raise
        return url

    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(_one(image)) for image in images]
    except ExceptionGroup as failed:
        raise failed.exceptions[0] from None
    # tasks keep input order, so pages reach the model sorted.
    return [task.result() for task in tasks]


async def run_rules_processing(
    engine: Engine,
    run: QueuedRun,
    images: list[ImageRef],
    *,
    feed: RuleStatusFeed | None = None,
    vision_client: VisionClient | None = None,
    model: str | None = None,
) -> None:
    """Process a queued run to ``completed`` or ``error``.

    Never raises: this runs after the response has been sent, so every
    failure is logged and written to the rule row instead.
    """
    rid = run.request_id
    started = time.perf_counter()
    logger.info("[%s] Rules processing started for game %s", rid, run.game_id)

    try:
        await run_db(
            _progress, engine, run, feed,
            {"stage": "started", "total_images": len(images)},
            processing_status=ProcessingStatus.PROCESSING,
        )

        ordered = sort_images(images)
        stage_start = time.perf_counter()
        data_urls = await _download_all(engine, run, feed, ordered)
        logger.info(
            "[%s] Downloaded %d image(s), elapsed %.2fs",
            rid, len(data_urls), time.perf_counter() - stage_start,
        )

        await run_db(_progress, engine, run, feed, {"stage": "creating_image_records"})
        created = await run_db(_register_images, engine, run, ordered)
        logger.info("[%s] Registered %d new image record(s)", rid, created)

        client = vision_client or get_vision_client(model)
        await run_db(
            _progress, engine, run, feed,
            {"stage": "ai_processing", "model": client.model_id},
        )
        stage_start = time.perf_counter()
        extracted = await client.extract(
            system=EXTRACT_GAME_RULES_PROMPT,
            images=data_urls,
            schema=ExtractedRules,
        )
        logger.info(
            "[%s] AI rules extraction finished, elapsed %.2fs",
            rid, time.perf_counter() - stage_start,
        )

        await run_db(
            _progress, engine, run, feed, {"stage": "finalizing", "status": "success"}
        )
        await run_db(
            _write_rule, engine, run, feed,
            mark_game_complete=True,
            raw_text=extracted.raw_text,
            structured_content=extracted.metadata.model_dump(),
            processing_status=ProcessingStatus.COMPLETED,
            processed_at=_utcnow(),
            error_message=None,
            processing_progress={"stage": "completed", "status": "success"},
        )
        logger.info(
            "[%s] Rules processing completed, elapsed %.2fs",
            rid, time.perf_counter() - started,
        )

    except Exception as exc:
        logger.exception("[%s] Rules processing failed", rid)
        message = str(exc) or exc.__class__.__name__
        try:
            await run_db(
                _write_rule, engine, run, feed,
                processing_status=ProcessingStatus.ERROR,
                error_message=message,
                processed_at=_utcnow(),
                processing_progress={
                    "stage": "error",
                    "error": message,
                    "timestamp": _utcnow().isoformat(),
                },
            )
        except Exception:
            logger.exception("[%s] Failed to record processing error", rid)


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------
def get_rule_status(engine: Engine, user_id: str, game_id: str) -> dict[str, Any]:
    """Current rule snapshot for a game.

    The author can always read it; other users only for published games.
    """
    with get_session(engine) as session:
        game = session.get(Game, game_id)
        if game is None:
            raise NotFoundError(f"Game not found: {game_id}")
        if game.author_id != user_id and game.status != GameStatus.PUBLISHED:
            raise PermissionDeniedError("Not authorized to view rules for this game")

        rule = session.scalar(select(GameRule).where(GameRule.game_id == game_id))
        if rule is None:
            raise NotFoundError(f"No rules found for game: {game_id}")

        snapshot = rule_snapshot(rule)
        snapshot["raw_text"] = rule.raw_text
        snapshot["structured_content"] = rule.structured_content
        return snapshot
