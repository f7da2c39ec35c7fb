"""
tabletop.services.game_service — Games & Their Images
======================================================

CRUD over :class:`Game` and :class:`GameImage`, plus *create from images*:
photograph a rulebook, get a draft game named and described by a vision
model, and have the rules pipeline queued for the same pages.

Only the author may change a game.  Anyone signed in may read a
``published`` game; drafts are visible to their author only.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from tabletop.database.engine import get_session, run_db
from tabletop.database.models import (
    Game,
    GameImage,
    GameStatus,
    ImageType,
    ProcessingStatus,
)
from tabletop.engine.feed import RuleStatusFeed
from tabletop.engine.llm import LLMError, VisionClient, get_vision_client
from tabletop.engine.prompts import EXTRACT_GAME_INFO_PROMPT
from tabletop.engine.schemas import GameInfo, ImageRef
from tabletop.errors import (
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from tabletop.services import rules_pipeline, storage_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

DRAFT_GAME_NAME = "Draft Game"
EDITABLE_FIELDS = frozenset({
    "name",
    "description",
    "estimated_time",
    "status",
    "min_players",
    "max_players",
    "min_age",
})
# Uploads of these types get their own per-image extraction pass.
EXTRACTED_IMAGE_TYPES = frozenset({ImageType.RULES, ImageType.EXAMPLE})


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def image_to_dict(image: GameImage) -> dict[str, Any]:
    return {
        "id": image.id,
        "game_id": image.game_id,
        "image_url": image.image_url,
        "image_type": str(image.image_type),
        "is_cover": image.is_cover,
        "is_external": image.is_external,
        "order_index": image.order_index,
        "uploaded_at": image.uploaded_at.isoformat() if image.uploaded_at else None,
        "processing_status": (
            str(image.processing_status) if image.processing_status else None
        ),
        "extracted_text": image.extracted_text,
        "extracted_pattern": image.extracted_pattern,
        "extracted_content": image.extracted_content,
        "additional_info": image.additional_info,
        "model_used": image.model_used,
        "processed_at": image.processed_at.isoformat() if image.processed_at else None,
    }


def cover_image_url(game: Game) -> str | None:
    """The cover's path/URL, falling back to BGG artwork."""
    if game.cover_image_id:
        for image in game.images:
            if image.id == game.cover_image_id:
                return image.image_url
    return game.bgg_thumbnail_url or game.bgg_image_url


def game_to_dict(game: Game, *, detail: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": game.id,
        "author_id": game.author_id,
        "name": game.name,
        "description": game.description,
        "estimated_time": game.estimated_time,
        "status": str(game.status),
        "min_players": game.min_players,
        "max_players": game.max_players,
        "min_age": game.min_age,
        "bgg_id": game.bgg_id,
        "bgg_year_published": game.bgg_year_published,
        "bgg_rating": game.bgg_rating,
        "bgg_weight": game.bgg_weight,
        "bgg_image_url": game.bgg_image_url,
        "bgg_thumbnail_url": game.bgg_thumbnail_url,
        "language_dependence": game.language_dependence,
        "cover_image_id": game.cover_image_id,
        "cover_image_url": cover_image_url(game),
        "has_complete_rules": game.has_complete_rules,
        "created_at": game.created_at.isoformat() if game.created_at else None,
        "updated_at": game.updated_at.isoformat() if game.updated_at else None,
    }
    if detail:
        data["images"] = [image_to_dict(i) for i in game.images]
        data["tags"] = [
            {"id": rel.tag.id, "name": rel.tag.name, "type": str(rel.tag.type)}
            for rel in game.tag_relations
        ]
        data["player_counts"] = [
            {
                "player_count": pc.player_count,
                "recommendation": pc.recommendation,
                "votes": pc.votes,
            }
            for pc in sorted(game.player_counts, key=lambda pc: pc.player_count)
        ]
        data["rules_status"] = str(game.rule.processing_status) if game.rule else None
    return data


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def _get_game(session: Session, game_id: str) -> Game:
    game = session.get(Game, game_id)
    if game is None:
        raise NotFoundError(f"Game not found: {game_id}")
    return game


def _get_owned_game(session: Session, user_id: str, game_id: str) -> Game:
    game = _get_game(session, game_id)
    if game.author_id != user_id:
        raise PermissionDeniedError("Not authorized to modify this game")
    return game


def _parse_status(value: str | GameStatus) -> GameStatus:
    try:
        return GameStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status: {value!r}. Allowed: {', '.join(s.value for s in GameStatus)}"
        ) from None


def _parse_image_type(value: str | ImageType) -> ImageType:
    try:
        return ImageType(value)
    except ValueError:
        raise ValidationError(
            f"Invalid image type: {value!r}. Allowed: {', '.join(t.value for t in ImageType)}"
        ) from None


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
def create_game(
    engine: Engine,
    user_id: str,
    name: str,
    *,
    description: str | None = None,
    estimated_time: str | None = None,
    status: str | GameStatus = GameStatus.DRAFT,
    min_players: int | None = None,
    max_players: int | None = None,
    min_age: int | None = None,
) -> dict[str, Any]:
    if not name or not name.strip():
        raise ValidationError("Game name is required")

    with get_session(engine) as session:
        game = Game(
            author_id=user_id,
            name=name.strip(),
            description=description,
            estimated_time=estimated_time,
            status=_parse_status(status),
            min_players=min_players,
            max_players=max_players,
            min_age=min_age,
        )
        session.add(game)
        session.flush()
        session.refresh(game)
        logger.info("Game %s created by %s", game.id, user_id)
        return game_to_dict(game)


def get_game(engine: Engine, user_id: str, game_id: str) -> dict[str, Any]:
    with get_session(engine) as session:
        game = _get_game(session, game_id)
        if game.author_id != user_id and game.status != GameStatus.PUBLISHED:
            raise PermissionDeniedError("Not authorized to view this game")
        return game_to_dict(game, detail=True)


def list_games(
    engine: Engine, user_id: str, status: str | GameStatus | None = None
) -> list[dict[str, Any]]:
    """The caller's own games, newest first."""
    with get_session(engine) as session:
        stmt = select(Game).where(Game.author_id == user_id)
        if status is not None:
            stmt = stmt.where(Game.status == _parse_status(status))
        games = session.scalars(stmt.order_by(Game.created_at.desc())).all()
        return [game_to_dict(g) for g in games]


def update_game(
    engine: Engine, user_id: str, game_id: str, **fields: Any
) -> dict[str, Any]:
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")

    with get_session(engine) as session:
        game = _get_owned_game(session, user_id, game_id)
        for name, value in fields.items():
            if name == "status":
                value = _parse_status(value)
            elif name == "name" and (not value or not str(value).strip()):
                raise ValidationError("Game name is required")
            setattr(game, name, value)
        session.flush()
        session.refresh(game)
        return game_to_dict(game, detail=True)


def delete_game(engine: Engine, user_id: str, game_id: str) -> None:
    """Delete a game, its dependent rows, and the author's blobs for it."""
    with get_session(engine) as session:
        game = _get_owned_game(session, user_id, game_id)
        session.delete(game)
    storage_service.delete_prefix(user_id, game_id)
    logger.info("Game %s deleted by %s", game_id, user_id)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------
def _apply_cover(game: Game, image: GameImage) -> None:
    for other in game.images:
        other.is_cover = other.id == image.id
    image.is_cover = True
    game.cover_image_id = image.id


def add_image(
    engine: Engine,
    user_id: str,
    game_id: str,
    path: str,
    image_type: str | ImageType = ImageType.RULES,
    *,
    is_cover: bool = False,
    order_index: int | None = None,
) -> dict[str, Any]:
    with get_session(engine) as session:
        game = _get_owned_game(session, user_id, game_id)
        if any(i.image_url == path for i in game.images):
            raise ValidationError(f"Image already attached to this game: {path}")

        kind = _parse_image_type(image_type)
        image = GameImage(
            game_id=game.id,
            image_url=path,
            image_type=kind,
            uploader_id=user_id,
            is_cover=is_cover,
            order_index=order_index if order_index is not None else len(game.images),
            processing_status=(
                ProcessingStatus.PENDING if kind in EXTRACTED_IMAGE_TYPES else None
            ),
        )
        game.images.append(image)
        session.flush()
        if is_cover:
            _apply_cover(game, image)
        session.flush()
        return image_to_dict(image)


def delete_image(engine: Engine, user_id: str, game_id: str, image_id: str) -> None:
    with get_session(engine) as session:
        game = _get_owned_game(session, user_id, game_id)
        image = session.get(GameImage, image_id)
        if image is None or image.game_id != game.id:
            raise NotFoundError(f"Image not found: {image_id}")
        if game.cover_image_id == image.id:
            game.cover_image_id = None
        path, external = image.image_url, image.is_external
        game.images.remove(image)

    if not external:
        storage_service.delete_blob(path)


def set_cover_image(
    engine: Engine, user_id: str, game_id: str, image_id: str
) -> dict[str, Any]:
    """Make *image_id* the game's only cover."""
    with get_session(engine) as session:
        game = _get_owned_game(session, user_id, game_id)
        image = session.get(GameImage, image_id)
        if image is None or image.game_id != game.id:
            raise NotFoundError(f"Image not found: {image_id}")
        _apply_cover(game, image)
        session.flush()
        return game_to_dict(game, detail=True)


# ---------------------------------------------------------------------------
# Create from images
# ---------------------------------------------------------------------------
def _unique_pages(images: list[ImageRef]) -> list[ImageRef]:
    """Sorted pages, keeping the first reference to each path."""
    seen: set[str] = set()
    pages = []
    for ref in rules_pipeline.sort_images(images):
        if ref.path in seen:
            continue
        seen.add(ref.path)
        pages.append(ref)
    return pages


def _create_draft(engine: Engine, user_id: str, pages: list[ImageRef]) -> tuple[str, str | None]:
    """Insert the draft game and its rule images.  Returns (game_id, cover_id).

    Only the first page flagged ``is_cover`` becomes the cover.
    """
    cover_ref = next((ref for ref in pages if ref.is_cover), None)
    with get_session(engine) as session:
        game = Game(author_id=user_id, name=DRAFT_GAME_NAME, status=GameStatus.DRAFT)
        session.add(game)
        session.flush()

        cover_id = None
        for index, ref in enumerate(pages):
            image = GameImage(
                game_id=game.id,
                image_url=ref.path,
                image_type=ImageType.RULES,
                uploader_id=user_id,
                is_cover=ref is cover_ref,
                order_index=ref.order_index if ref.order_index is not None else index,
            )
            session.add(image)
            session.flush()
            if ref is cover_ref:
                cover_id = image.id
        return game.id, cover_id


def _apply_game_info(
    engine: Engine, game_id: str, info: GameInfo, cover_id: str | None
) -> dict[str, Any]:
    with get_session(engine) as session:
        game = _get_game(session, game_id)
        game.name = info.title
        game.description = info.description
        game.estimated_time = info.estimated_play_time
        game.cover_image_id = cover_id
        session.flush()
        return game_to_dict(game)


async def create_game_from_images(
    engine: Engine,
    user_id: str,
    images: list[ImageRef],
    *,
    vision_client: VisionClient | None = None,
    model: str | None = None,
    feed: RuleStatusFeed | None = None,
) -> tuple[dict[str, Any], rules_pipeline.QueuedRun]:
    """Create a draft game from rulebook photos and queue rules extraction.

    The caller schedules :func:`rules_pipeline.run_rules_processing` with
    the returned run.  If naming the game fails, the draft stays behind for
    the user to delete.
    """
    if not images:
        raise ValidationError("Missing required parameter: images")
    foreign = [img.path for img in images if not storage_service.owns_path(user_id, img.path)]
    if foreign:
        raise PermissionDeniedError(f"Images not owned by caller: {', '.join(foreign)}")

    request_id = str(uuid.uuid4())
    started = time.perf_counter()
    logger.info("[%s] Creating game from %d image(s)", request_id, len(images))

    pages = _unique_pages(images)
    # a missing blob fails here, before any row is written
    data_urls = [await storage_service.download_data_url(ref.path) for ref in pages]

    game_id, cover_id = await run_db(_create_draft, engine, user_id, pages)

    client = vision_client or get_vision_client(model)
    try:
        info = await client.extract(
            system=EXTRACT_GAME_INFO_PROMPT,
            images=data_urls,
            schema=GameInfo,
        )
    except LLMError as exc:
        logger.error("[%s] Game info extraction failed: %s", request_id, exc)
        raise ExternalServiceError(str(exc)) from exc

    game = await run_db(_apply_game_info, engine, game_id, info, cover_id)
    logger.info(
        "[%s] Game %s named %r, elapsed %.2fs",
        request_id, game_id, game["name"], time.perf_counter() - started,
    )

    run = await run_db(
        rules_pipeline.queue_rules_processing, engine, user_id, game_id, pages, feed
    )
    return game, run