"""
tests/test_image_service.py — Per-Image Extraction
===================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from conftest import FakeVisionClient, make_game, run, store_blob
from tabletop.database.models import GameImage, ProcessingStatus
from tabletop.engine.llm import LLMError
from tabletop.engine.prompts import PROCESS_EXAMPLE_IMAGE_PROMPT, PROCESS_RULES_IMAGE_PROMPT
from tabletop.engine.schemas import ExampleImageContent, RulesImageText
from tabletop.errors import NotFoundError, PermissionDeniedError, ValidationError
from tabletop.services import game_service, image_service

PAGE = RulesImageText(
    extracted_text="Setup: give each player a board and 4 starting tiles.",
    additional_info="Two-column layout, headings in bold",
)
EXAMPLE = ExampleImageContent(
    extracted_pattern="Factory display with four tiles",
    extracted_content="Red, Red, Blue, Black",
)


def _image(engine, image_id: str) -> GameImage:
    with Session(engine) as session:
        return session.get(GameImage, image_id)


@pytest.fixture
def game_id(db_engine):
    return make_game(db_engine, author_id="user-1")


def _upload(engine, game_id, image_type="rules", content=b"\x89PNG page"):
    path = store_blob("user-1", game_id, content)
    return game_service.add_image(engine, "user-1", game_id, path, image_type)


class TestAddImageTracking:
    @pytest.mark.parametrize("image_type", ["rules", "example"])
    def test_extracted_types_start_pending(self, db_engine, game_id, image_type):
        image = _upload(db_engine, game_id, image_type)
        assert image["processing_status"] == "pending"
        assert image["extracted_text"] is None

    def test_other_types_untracked(self, db_engine, game_id):
        image = _upload(db_engine, game_id, "cover")
        assert image["processing_status"] is None


class TestProcessUploadedImage:
    def test_rules_image(self, db_engine, game_id):
        image = _upload(db_engine, game_id, "rules")
        llm = FakeVisionClient(result=PAGE)

        run(image_service.process_uploaded_image(db_engine, image["id"], vision_client=llm))

        row = _image(db_engine, image["id"])
        assert row.processing_status == ProcessingStatus.COMPLETED
        assert row.extracted_text == PAGE.extracted_text
        assert row.additional_info == PAGE.additional_info
        assert row.extracted_pattern is None
        assert row.model_used == "fake__vision-test"
        assert row.processed_at is not None

        (call,) = llm.extract_calls
        assert call["system"] == PROCESS_RULES_IMAGE_PROMPT
        assert call["schema"] is RulesImageText
        assert len(call["images"]) == 1
        assert call["images"][0].startswith("data:image/png;base64,")

    def test_example_image(self, db_engine, game_id):
        image = _upload(db_engine, game_id, "example")
        llm = FakeVisionClient(result=EXAMPLE)

        run(image_service.process_uploaded_image(db_engine, image["id"], vision_client=llm))

        row = _image(db_engine, image["id"])
        assert row.processing_status == ProcessingStatus.COMPLETED
        assert row.extracted_pattern == EXAMPLE.extracted_pattern
        assert row.extracted_content == EXAMPLE.extracted_content
        assert row.extracted_text is None
        assert llm.extract_calls[0]["system"] == PROCESS_EXAMPLE_IMAGE_PROMPT
        assert llm.extract_calls[0]["schema"] is ExampleImageContent

    def test_model_failure_recorded(self, db_engine, game_id):
        image = _upload(db_engine, game_id, "rules")
        llm = FakeVisionClient(error=LLMError("Anthropic request failed: overloaded"))

        run(image_service.process_uploaded_image(db_engine, image["id"], vision_client=llm))

        row = _image(db_engine, image["id"])
        assert row.processing_status == ProcessingStatus.ERROR
        assert row.error_message == "Anthropic request failed: overloaded"
        assert row.model_used == "fake__vision-test"
        assert row.extracted_text is None

    def test_missing_blob_recorded(self, db_engine, game_id):
        image = game_service.add_image(
            db_engine, "user-1", game_id, f"user-1/{game_id}/gone.png", "example"
        )
        llm = FakeVisionClient(result=EXAMPLE)

        run(image_service.process_uploaded_image(db_engine, image["id"], vision_client=llm))

        row = _image(db_engine, image["id"])
        assert row.processing_status == ProcessingStatus.ERROR
        assert "gone.png" in row.error_message
        assert llm.extract_calls == []

    def test_untracked_type_not_sent_to_model(self, db_engine, game_id):
        image = _upload(db_engine, game_id, "cover")
        llm = FakeVisionClient(result=PAGE)

        run(image_service.process_uploaded_image(db_engine, image["id"], vision_client=llm))

        assert llm.extract_calls == []
        assert _image(db_engine, image["id"]).processing_status is None

    def test_unknown_image_does_not_raise(self, db_engine):
        llm = FakeVisionClient(result=PAGE)
        run(image_service.process_uploaded_image(db_engine, "no-such-image", vision_client=llm))
        assert llm.extract_calls == []


class TestQueueImageProcessing:
    def test_failed_image_back_to_pending(self, db_engine, game_id):
        image = _upload(db_engine, game_id, "rules")
        run(
            image_service.process_uploaded_image(
                db_engine, image["id"], vision_client=FakeVisionClient(error=LLMError("boom"))
            )
        )

        queued = image_service.queue_image_processing(db_engine, "user-1", game_id, image["id"])

        assert queued["processing_status"] == "pending"
        assert _image(db_engine, image["id"]).error_message is None

    def test_non_author_rejected(self, db_engine, game_id):
        image = _upload(db_engine, game_id, "rules")
        with pytest.raises(PermissionDeniedError):
            image_service.queue_image_processing(db_engine, "user-2", game_id, image["id"])

    def test_untracked_type_rejected(self, db_engine, game_id):
        image = _upload(db_engine, game_id, "component")
        with pytest.raises(ValidationError, match="not processed"):
            image_service.queue_image_processing(db_engine, "user-1", game_id, image["id"])

    def test_image_of_another_game(self, db_engine, game_id):
        other = make_game(db_engine, author_id="user-1")
        image = _upload(db_engine, other, "rules")
        with pytest.raises(NotFoundError):
            image_service.queue_image_processing(db_engine, "user-1", game_id, image["id"])
