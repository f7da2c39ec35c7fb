"""
tabletop.services.image_service — Per-Image Extraction
=======================================================

Every rules or example image uploaded to a game gets its own model pass,
run as a background task once the upload has been answered:

* ``rules`` images yield ``extracted_text`` (:class:`RulesImageText`).
* ``example`` images yield ``extracted_pattern`` and ``extracted_content``
  (:class:`ExampleImageContent`).

The image row moves pending → processing → completed | error and records
which model did the work.  The assistant refuses to answer while any of a
game's tracked images is unfinished, and feeds the extracted example
content into its prompt.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tabletop.database.engine import get_session, run_db
from tabletop.database.models import Game, GameImage, ImageType, ProcessingStatus
from tabletop.engine.llm import VisionClient, get_vision_client
from tabletop.engine.prompts import PROCESS_EXAMPLE_IMAGE_PROMPT, PROCESS_RULES_IMAGE_PROMPT
from tabletop.engine.schemas import ExampleImageContent, RulesImageText
from tabletop.errors import NotFoundError, PermissionDeniedError, ValidationError
from tabletop.services import storage_service
from tabletop.services.game_service import image_to_dict

if TYPE_CHECKING:
    from pydantic import BaseModel
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

EXTRACTION: dict[ImageType, tuple[str, type[BaseModel]]] = {
    ImageType.RULES: (PROCESS_RULES_IMAGE_PROMPT, RulesImageText),
    ImageType.EXAMPLE: (PROCESS_EXAMPLE_IMAGE_PROMPT, ExampleImageContent),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def queue_image_processing(
    engine: Engine, user_id: str, game_id: str, image_id: str
) -> dict[str, Any]:
    """Reset one of the author's images to ``pending`` so it can be re-run."""
    with get_session(engine) as session:
        game = session.get(Game, game_id)
        if game is None:
            raise NotFoundError(f"Game not found: {game_id}")
        if game.author_id != user_id:
            raise PermissionDeniedError("Not authorized to process images for this game")
        image = session.get(GameImage, image_id)
        if image is None or image.game_id != game_id:
            raise NotFoundError(f"Image not found: {image_id}")
        if image.image_type not in EXTRACTION or image.is_external:
            raise ValidationError(f"Images of type {image.image_type} are not processed")
        if image.processing_status == ProcessingStatus.PROCESSING:
            raise ValidationError(f"Image is already being processed: {image_id}")

        image.processing_status = ProcessingStatus.PENDING
        image.error_message = None
        session.flush()
        return image_to_dict(image)


def _start(engine: Engine, image_id: str, model_id: str) -> tuple[str, ImageType] | None:
    """Mark the image ``processing``; ``None`` if it has no extraction pass."""
    with get_session(engine) as session:
        image = session.get(GameImage, image_id)
        if image is None:
            raise NotFoundError(f"Image not found: {image_id}")
        if image.image_type not in EXTRACTION or image.is_external:
            return None
        image.processing_status = ProcessingStatus.PROCESSING
        image.model_used = model_id
        image.error_message = None
        return image.image_url, image.image_type


def _finish(engine: Engine, image_id: str, **fields: Any) -> None:
    with get_session(engine) as session:
        image = session.get(GameImage, image_id)
        if image is None:
            # deleted while the model was running
            return
        for key, value in fields.items():
            setattr(image, key, value)


async def process_uploaded_image(
    engine: Engine,
    image_id: str,
    *,
    vision_client: VisionClient | None = None,
    model: str | None = None,
) -> None:
    """Extract one image's content and store it on the image row.

    Never raises: it runs after the upload response has been sent, so a
    failure is logged and written to the row as ``error``.
    """
    client = vision_client or get_vision_client(model)
    started = time.perf_counter()
    logger.info("Processing image %s with %s", image_id, client.model_id)

    try:
        claimed = await run_db(_start, engine, image_id, client.model_id)
        if claimed is None:
            logger.info("Image %s has no extraction pass, skipping", image_id)
            return
        path, kind = claimed
        prompt, schema = EXTRACTION[kind]
        data_url = await storage_service.download_data_url(path)
        extracted = await client.extract(system=prompt, images=[data_url], schema=schema)
        await run_db(
            _finish, engine, image_id,
            processing_status=ProcessingStatus.COMPLETED,
            processed_at=_utcnow(),
            error_message=None,
            **extracted.model_dump(),
        )
        logger.info(
            "Image %s (%s) processed, elapsed %.2fs",
            image_id, kind, time.perf_counter() - started,
        )

    except Exception as exc:
        logger.exception("Processing image %s failed", image_id)
        try:
            await run_db(
                _finish, engine, image_id,
                processing_status=ProcessingStatus.ERROR,
                error_message=str(exc) or exc.__class__.__name__,
                processed_at=_utcnow(),
            )
        except Exception:
            logger.exception("Failed to record error for image %s", image_id)
