"""
tabletop.services.question_service — Ask the Assistant
=======================================================

Answers rules questions and generates play examples for a game.

* :func:`ask_question` works from the rules text the pipeline already
  extracted plus the per-image extractions of uploaded rules and example
  images, so it refuses to run until all of them have completed.
* :func:`generate_examples_from_images` sends the rule and example pages
  themselves to the model instead.

The model is the caller's :class:`UserPreference`, else the configured
default.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
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
from tabletop.engine.llm import LLMError, VisionClient, get_vision_client
from tabletop.engine.prompts import build_example_images_prompt, build_question_prompt
from tabletop.errors import (
    ExternalServiceError,
    ImagesPendingError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from tabletop.services import preference_service, storage_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

QUESTION_TYPES = frozenset({"rules", "examples"})
MAX_EXAMPLES = 10


@dataclass(slots=True)
class _GameContext:
    title: str
    description: str | None
    rules_status: ProcessingStatus | None
    raw_text: str | None
    structured_content: dict | None
    rule_paths: list[str]
    example_paths: list[str]
    page_texts: list[str]
    examples: list[str]
    unprocessed: list[str]


def _load_context(engine: Engine, user_id: str, game_id: str) -> _GameContext:
    with get_session(engine) as session:
        game = session.get(Game, game_id)
        if game is None:
            raise NotFoundError(f"Game not found with id: {game_id}")
        if game.author_id != user_id and game.status != GameStatus.PUBLISHED:
            raise PermissionDeniedError("Not authorized to view this game")

        rule = session.scalar(select(GameRule).where(GameRule.game_id == game_id))
        images = session.scalars(
            select(GameImage)
            .where(GameImage.game_id == game_id)
            .order_by(GameImage.order_index)
        ).all()
        rule_images = [i for i in images if i.image_type == ImageType.RULES]
        example_images = [i for i in images if i.image_type == ImageType.EXAMPLE]
        return _GameContext(
            title=game.name,
            description=game.description,
            rules_status=rule.processing_status if rule else None,
            raw_text=rule.raw_text if rule else None,
            structured_content=rule.structured_content if rule else None,
            rule_paths=[i.image_url for i in rule_images],
            example_paths=[i.image_url for i in example_images],
            page_texts=[
                _joined(i.extracted_text, i.additional_info)
                for i in rule_images
                if i.extracted_text
            ],
            examples=[
                _joined(i.extracted_pattern, i.extracted_content, i.additional_info)
                for i in example_images
            ],
            # images never queued for their own pass have no status
            unprocessed=[
                i.image_url
                for i in images
                if i.processing_status not in (None, ProcessingStatus.COMPLETED)
            ],
        )


def _joined(*parts: str | None) -> str:
    return "\n".join(p for p in parts if p)


def _rules_text(ctx: _GameContext) -> str:
    parts = [ctx.raw_text or ""]
    if ctx.structured_content:
        parts.append(json.dumps(ctx.structured_content, indent=2))
    parts.extend(ctx.page_texts)
    return "\n\n".join(p for p in parts if p)


def _check_n(n: int) -> None:
    if n < 1 or n > MAX_EXAMPLES:
        raise ValidationError(f"n must be between 1 and {MAX_EXAMPLES}")


async def _pick_client(engine: Engine, user_id: str, default_model: str) -> VisionClient:
    model = await run_db(preference_service.get_preference, engine, user_id, default_model)
    return get_vision_client(model, default_model)


async def ask_question(
    engine: Engine,
    user_id: str,
    game_id: str,
    user_prompt: str,
    question_type: str,
    n: int = 1,
    *,
    llm: VisionClient | None = None,
    default_model: str = preference_service.DEFAULT_AI_MODEL,
) -> dict[str, Any]:
    """Answer a rules question or generate *n* examples.

    Raises
    ------
    ImagesPendingError
        Rules extraction for the game, or the extraction of one of its
        uploaded rules or example images, has not completed.
    """
    if not game_id:
        raise ValidationError("gameId is required")
    if question_type not in QUESTION_TYPES:
        raise ValidationError(
            f"Invalid question type: {question_type!r}. Allowed: rules, examples"
        )
    _check_n(n)

    request_id = str(uuid.uuid4())
    started = time.perf_counter()
    logger.info("[%s] %s question for game %s", request_id, question_type, game_id)

    ctx = await run_db(_load_context, engine, user_id, game_id)
    if ctx.rules_status != ProcessingStatus.COMPLETED:
        state = ctx.rules_status or "not started"
        pending = ", ".join(ctx.rule_paths) or "no rule images"
        raise ImagesPendingError(
            f"Some images are still being processed ({state}): {pending}"
        )
    if ctx.unprocessed:
        raise ImagesPendingError(
            f"Some images are still being processed: {', '.join(ctx.unprocessed)}"
        )

    prompt = build_question_prompt(
        title=ctx.title,
        description=ctx.description,
        rules_text=_rules_text(ctx),
        examples_text="\n\n".join(e for e in ctx.examples if e),
        user_prompt=user_prompt,
        question_type=question_type,
        n=n,
    )

    client = llm or await _pick_client(engine, user_id, default_model)
    try:
        suggestion = await client.complete(prompt)
    except LLMError as exc:
        logger.error("[%s] Assistant call failed: %s", request_id, exc)
        raise ExternalServiceError(str(exc)) from exc

    logger.info(
        "[%s] Answered with %s, elapsed %.2fs",
        request_id, client.model_id, time.perf_counter() - started,
    )
    return {"suggestion": suggestion}


async def generate_examples_from_images(
    engine: Engine,
    user_id: str,
    game_id: str,
    user_prompt: str,
    n: int = 1,
    *,
    llm: VisionClient | None = None,
    default_model: str = preference_service.DEFAULT_AI_MODEL,
) -> dict[str, Any]:
    """Generate *n* examples with the rule and example pages sent inline."""
    if not game_id:
        raise ValidationError("gameId is required")
    _check_n(n)

    request_id = str(uuid.uuid4())
    ctx = await run_db(_load_context, engine, user_id, game_id)
    paths = ctx.rule_paths + ctx.example_paths
    if not paths:
        raise ValidationError("Game has no rule or example images")

    logger.info("[%s] Encoding %d image(s) for game %s", request_id, len(paths), game_id)
    images = [await storage_service.download_data_url(p) for p in paths]

    prompt = build_example_images_prompt(
        title=ctx.title, description=ctx.description, user_prompt=user_prompt, n=n
    )
    client = llm or await _pick_client(engine, user_id, default_model)
    try:
        suggestion = await client.complete(prompt, images)
    except LLMError as exc:
        logger.error("[%s] Example generation failed: %s", request_id, exc)
        raise ExternalServiceError(str(exc)) from exc
    return {"suggestion": suggestion}
