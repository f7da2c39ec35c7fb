"""
tests/test_rules_pipeline.py — Rule Ingestion Pipeline
=======================================================
Queue-time validation and attempt accounting, the background run's happy
and failure paths, idempotent image registration, and feed publication.
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import FakeVisionClient, make_game, run, store_blob
from tabletop.database.models import (
    Game,
    GameImage,
    GameRule,
    ImageType,
    ProcessingStatus,
)
from tabletop.engine.feed import RuleStatusFeed
from tabletop.engine.llm import LLMError
from tabletop.engine.schemas import ExtractedRules, ImageRef, RulesMetadata
from tabletop.errors import NotFoundError, PermissionDeniedError, ValidationError
from tabletop.services import rules_pipeline

EXTRACTED = ExtractedRules(
    raw_text="Each turn, draft tiles from a factory display.",
    metadata=RulesMetadata(
        key_mechanics=["Tile drafting", "Pattern building"],
        victory_conditions="Most points after the final round",
    ),
)


def _rule(engine, game_id: str) -> GameRule | None:
    with Session(engine) as session:
        return session.scalar(select(GameRule).where(GameRule.game_id == game_id))


def _images(engine, game_id: str) -> list[GameImage]:
    with Session(engine) as session:
        return list(
            session.scalars(
                select(GameImage)
                .where(GameImage.game_id == game_id)
                .order_by(GameImage.order_index)
            )
        )


@pytest.fixture
def game_id(db_engine):
    return make_game(db_engine, author_id="user-1")


@pytest.fixture
def pages(game_id):
    return [
        ImageRef(path=store_blob("user-1", game_id, b"page-two"), order_index=1),
        ImageRef(path=store_blob("user-1", game_id, b"page-one"), order_index=0),
    ]


# ===========================================================================
# Image ordering
# ===========================================================================
class TestSortImages:
    def test_missing_order_index_sorts_last(self):
        images = [
            ImageRef(path="c", order_index=None),
            ImageRef(path="b", order_index=2),
            ImageRef(path="a", order_index=0),
            ImageRef(path="d", order_index=None),
        ]
        assert [i.path for i in rules_pipeline.sort_images(images)] == ["a", "b", "c", "d"]


# ===========================================================================
# Queueing
# ===========================================================================
class TestQueueRulesProcessing:
    def test_requires_game_id(self, db_engine, pages):
        with pytest.raises(ValidationError, match="gameId"):
            rules_pipeline.queue_rules_processing(db_engine, "user-1", "", pages)

    def test_requires_images(self, db_engine, game_id):
        with pytest.raises(ValidationError, match="images"):
            rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, [])

    def test_unknown_game(self, db_engine, pages):
        with pytest.raises(NotFoundError):
            rules_pipeline.queue_rules_processing(db_engine, "user-1", "missing", pages)

    def test_non_author_rejected_before_any_write(self, db_engine, game_id, pages):
        with pytest.raises(PermissionDeniedError):
            rules_pipeline.queue_rules_processing(db_engine, "intruder", game_id, pages)
        assert _rule(db_engine, game_id) is None

    def test_foreign_image_paths_rejected(self, db_engine, game_id):
        foreign = [ImageRef(path="someone-else/x/page.png")]
        with pytest.raises(PermissionDeniedError, match="not owned"):
            rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, foreign)
        assert _rule(db_engine, game_id) is None

    def test_first_call_creates_queued_row(self, db_engine, game_id, pages):
        queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)

        rule = _rule(db_engine, game_id)
        assert rule.id == queued.rule_id
        assert rule.processing_status == ProcessingStatus.QUEUED
        assert rule.processing_attempts == 1
        assert rule.processing_request_id == queued.request_id
        assert rule.last_attempt_at is not None
        assert rule.processing_progress["stage"] == "queued"
        assert rule.processing_progress["images_count"] == 2
        assert "queued_at" in rule.processing_progress

    def test_each_call_is_a_new_attempt(self, db_engine, game_id, pages):
        first = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)
        second = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)

        rule = _rule(db_engine, game_id)
        assert rule.processing_attempts == 2
        assert (first.attempt, second.attempt) == (1, 2)
        assert first.rule_id == second.rule_id
        assert rule.processing_request_id == second.request_id

    def test_requeue_clears_previous_error(self, db_engine, game_id, pages):
        queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)
        run(
            rules_pipeline.run_rules_processing(
                db_engine, queued, pages, vision_client=FakeVisionClient(error=LLMError("boom"))
            )
        )
        assert _rule(db_engine, game_id).error_message == "boom"

        rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)
        rule = _rule(db_engine, game_id)
        assert rule.error_message is None
        assert rule.processing_status == ProcessingStatus.QUEUED
        assert rule.processing_attempts == 2


# ===========================================================================
# Background run
# ===========================================================================
class TestRunRulesProcessing:
    def test_happy_path_completes(self, db_engine, game_id, pages):
        llm = FakeVisionClient(result=EXTRACTED)
        queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)

        run(rules_pipeline.run_rules_processing(db_engine, queued, pages, vision_client=llm))

        rule = _rule(db_engine, game_id)
        assert rule.processing_status == ProcessingStatus.COMPLETED
        assert rule.raw_text == EXTRACTED.raw_text
        assert rule.structured_content["key_mechanics"] == ["Tile drafting", "Pattern building"]
        assert rule.processed_at is not None
        assert rule.processing_progress == {"stage": "completed", "status": "success"}
        assert rule.processing_attempts == 1

        with Session(db_engine) as session:
            assert session.get(Game, game_id).has_complete_rules is True

    def test_model_receives_pages_in_order(self, db_engine, game_id, pages):
        llm = FakeVisionClient(result=EXTRACTED)
        queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)

        run(rules_pipeline.run_rules_processing(db_engine, queued, pages, vision_client=llm))

        (call,) = llm.extract_calls
        assert call["schema"] is ExtractedRules
        assert len(call["images"]) == 2
        assert all(url.startswith("data:image/png;base64,") for url in call["images"])
        # page-one (order_index 0) first
        assert call["images"][0].endswith("cGFnZS1vbmU=")

    def test_registers_rule_images(self, db_engine, game_id, pages):
        queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)
        run(
            rules_pipeline.run_rules_processing(
                db_engine, queued, pages, vision_client=FakeVisionClient(result=EXTRACTED)
            )
        )

        images = _images(db_engine, game_id)
        assert [i.image_url for i in images] == [pages[1].path, pages[0].path]
        assert all(i.image_type == ImageType.RULES for i in images)
        assert all(i.uploader_id == "user-1" and not i.is_cover for i in images)

    def test_existing_image_path_not_duplicated(self, db_engine, game_id, pages):
        with Session(db_engine) as session:
            session.add(
                GameImage(
                    game_id=game_id,
                    image_url=pages[0].path,
                    image_type=ImageType.RULES,
                    uploader_id="user-1",
                )
            )
            session.commit()

        for _ in range(2):
            queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)
            run(
                rules_pipeline.run_rules_processing(
                    db_engine, queued, pages, vision_client=FakeVisionClient(result=EXTRACTED)
                )
            )

        paths = [i.image_url for i in _images(db_engine, game_id)]
        assert sorted(paths) == sorted(p.path for p in pages)

    def test_llm_failure_records_error(self, db_engine, game_id, pages):
        llm = FakeVisionClient(error=LLMError("OpenAI request failed: rate limited"))
        queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)

        run(rules_pipeline.run_rules_processing(db_engine, queued, pages, vision_client=llm))

        rule = _rule(db_engine, game_id)
        assert rule.processing_status == ProcessingStatus.ERROR
        assert rule.error_message == "OpenAI request failed: rate limited"
        assert rule.processed_at is not None
        assert rule.processing_progress["stage"] == "error"
        assert rule.processing_progress["error"] == rule.error_message
        assert "timestamp" in rule.processing_progress
        assert rule.processing_attempts == 1

    def test_missing_blob_records_error(self, db_engine, game_id):
        pages = [ImageRef(path="user-1/nowhere/gone.png", order_index=0)]
        llm = FakeVisionClient(result=EXTRACTED)
        queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)

        run(rules_pipeline.run_rules_processing(db_engine, queued, pages, vision_client=llm))

        rule = _rule(db_engine, game_id)
        assert rule.processing_status == ProcessingStatus.ERROR
        assert "gone.png" in rule.error_message
        assert llm.extract_calls == []

    def test_failed_download_stops_sibling_progress(self, db_engine, game_id, monkeypatch):
        slow = store_blob("user-1", game_id, b"slow page")
        pages = [
            ImageRef(path="user-1/nowhere/gone.png", order_index=0),
            ImageRef(path=slow, order_index=1),
        ]
        download = rules_pipeline.storage_service.download_data_url

        async def _download(path):
            if path == slow:
                await asyncio.sleep(0.3)
            return await download(path)

        monkeypatch.setattr(rules_pipeline.storage_service, "download_data_url", _download)

        async def _scenario():
            feed = RuleStatusFeed()
            queue = feed.subscribe(game_id)
            queued = rules_pipeline.queue_rules_processing(
                db_engine, "user-1", game_id, pages, feed
            )
            await rules_pipeline.run_rules_processing(
                db_engine, queued, pages, feed=feed,
                vision_client=FakeVisionClient(result=EXTRACTED),
            )
            await asyncio.sleep(0.6)
            seen = []
            while not queue.empty():
                seen.append(queue.get_nowait())
            return seen

        seen = run(_scenario())

        rule = _rule(db_engine, game_id)
        assert rule.processing_status == ProcessingStatus.ERROR
        assert rule.processing_progress["stage"] == "error"
        assert "gone.png" in rule.error_message
        assert seen[-1]["progress"]["stage"] == "error"

    def test_superseded_run_still_writes(self, db_engine, game_id, pages):
        stale = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)
        rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)

        run(
            rules_pipeline.run_rules_processing(
                db_engine, stale, pages, vision_client=FakeVisionClient(result=EXTRACTED)
            )
        )

        rule = _rule(db_engine, game_id)
        assert rule.processing_status == ProcessingStatus.COMPLETED
        assert rule.processing_attempts == 2


# ===========================================================================
# Feed publication
# ===========================================================================
class TestFeedPublication:
    def test_every_stage_is_published(self, db_engine, game_id, pages):
        async def _scenario():
            feed = RuleStatusFeed()
            queue = feed.subscribe(game_id)
            queued = rules_pipeline.queue_rules_processing(
                db_engine, "user-1", game_id, pages, feed
            )
            await rules_pipeline.run_rules_processing(
                db_engine, queued, pages, feed=feed,
                vision_client=FakeVisionClient(result=EXTRACTED),
            )
            seen = []
            while not queue.empty():
                seen.append(queue.get_nowait())
            return seen

        seen = run(_scenario())
        stages = [s["progress"]["stage"] for s in seen]
        assert stages[0] == "queued"
        assert stages[1] == "started"
        assert "downloading_images" in stages
        assert "creating_image_records" in stages
        assert "ai_processing" in stages
        assert stages[-1] == "completed"
        assert seen[-1]["status"] == "completed"


# ===========================================================================
# Polling
# ===========================================================================
class TestGetRuleStatus:
    def test_author_reads_snapshot(self, db_engine, game_id, pages):
        queued = rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)
        snap = rules_pipeline.get_rule_status(db_engine, "user-1", game_id)
        assert snap["rule_id"] == queued.rule_id
        assert snap["status"] == "queued"
        assert snap["attempts"] == 1

    def test_other_user_cannot_read_draft(self, db_engine, game_id, pages):
        rules_pipeline.queue_rules_processing(db_engine, "user-1", game_id, pages)
        with pytest.raises(PermissionDeniedError):
            rules_pipeline.get_rule_status(db_engine, "user-2", game_id)

    def test_no_rule_row(self, db_engine, game_id):
        with pytest.raises(NotFoundError):
            rules_pipeline.get_rule_status(db_engine, "user-1", game_id)
