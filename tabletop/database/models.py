"""
tabletop.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- games              — Catalogued board games (manual, image-created or BGG import)
- game_images        — Blob paths / external URLs attached to a game
- game_rules         — One row per game: extracted rules + processing status
- game_tags          — Category / mechanic / designer / publisher labels
- game_tag_relations — Game ↔ tag join table
- game_player_counts — BGG "suggested number of players" poll results
- user_preferences   — Per-user AI model choice
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tabletop ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class GameStatus(enum.StrEnum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    UNDER_REVIEW = "under_review"


class ImageType(enum.StrEnum):
    RULES = "rules"
    COVER = "cover"
    EXAMPLE = "example"
    COMPONENT = "component"
    GAME_STATE = "game_state"
    OTHER = "other"


class ProcessingStatus(enum.StrEnum):
    """Lifecycle of a rule-ingestion run.

    The pipeline writes queued → processing → completed | error.
    ``pending`` is the initial value of a row nobody has queued yet and
    ``retrying`` is accepted from clients but never written by the pipeline.
    """
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    RETRYING = "retrying"


class TagType(enum.StrEnum):
    CATEGORY = "category"
    MECHANIC = "mechanic"
    DESIGNER = "designer"
    PUBLISHER = "publisher"


class AIModel(enum.StrEnum):
    """Selectable models, written as ``provider__model``."""
    OPENAI_GPT_4O_MINI = "openai__gpt-4o-mini"
    OPENAI_GPT_4O = "openai__gpt-4o-2024-11-20"
    ANTHROPIC_CLAUDE_SONNET = "anthropic__claude-3-5-sonnet-20241022"
    ANTHROPIC_CLAUDE_HAIKU = "anthropic__claude-3-haiku-20240307"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    """String-backed enum with a CHECK constraint, portable across PG/SQLite."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        create_constraint=True,
        validate_strings=True,
        length=40,
    )


# ---------------------------------------------------------------------------
# Game — one catalogued board game
# ---------------------------------------------------------------------------
class Game(Base):
    __tablename__ = "games"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    author_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    estimated_time: Mapped[str | None] = mapped_column(String(100), default=None)
    status: Mapped[GameStatus] = mapped_column(
        _enum_column(GameStatus, "game_status"), default=GameStatus.DRAFT
    )
    min_players: Mapped[int | None] = mapped_column(Integer, default=None)
    max_players: Mapped[int | None] = mapped_column(Integer, default=None)
    min_age: Mapped[int | None] = mapped_column(Integer, default=None)

    # BoardGameGeek linkage
    bgg_id: Mapped[str | None] = mapped_column(String(20), unique=True, default=None)
    bgg_year_published: Mapped[int | None] = mapped_column(Integer, default=None)
    bgg_rating: Mapped[float | None] = mapped_column(Float, default=None)
    bgg_weight: Mapped[float | None] = mapped_column(Float, default=None)
    bgg_image_url: Mapped[str | None] = mapped_column(String(500), default=None)
    bgg_thumbnail_url: Mapped[str | None] = mapped_column(String(500), default=None)
    language_dependence: Mapped[int | None] = mapped_column(Integer, default=None)

    # Points at a GameImage row; kept FK-free to avoid a games ↔ images cycle.
    cover_image_id: Mapped[str | None] = mapped_column(String(36), default=None)
    has_complete_rules: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships — every dependent row goes with the game
    images: Mapped[list[GameImage]] = relationship(
        back_populates="game",
        cascade="all, delete-orphan",
        order_by="GameImage.order_index",
    )
    rule: Mapped[GameRule | None] = relationship(
        back_populates="game", uselist=False, cascade="all, delete-orphan"
    )
    tag_relations: Mapped[list[GameTagRelation]] = relationship(
        back_populates="game", cascade="all, delete-orphan"
    )
    player_counts: Mapped[list[GamePlayerCount]] = relationship(
        back_populates="game", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_games_author", "author_id"),
        Index("ix_games_name", "name"),
    )

    def __repr__(self) -> str:
        return f"<Game id={self.id} name={self.name!r} status={self.status}>"


# ---------------------------------------------------------------------------
# GameImage — blob path or external URL attached to a game
# ---------------------------------------------------------------------------
class GameImage(Base):
    __tablename__ = "game_images"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    game_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("games.id", ondelete="CASCADE"), nullable=False
    )
    image_url: Mapped[str] = mapped_column(String(500), nullable=False)
    image_type: Mapped[ImageType] = mapped_column(
        _enum_column(ImageType, "image_type"), nullable=False
    )
    uploader_id: Mapped[str] = mapped_column(String(64), nullable=False)
    is_cover: Mapped[bool] = mapped_column(Boolean, default=False)
    is_external: Mapped[bool] = mapped_column(Boolean, default=False)
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    # Per-image extraction, only tracked for rules/example uploads.
    processing_status: Mapped[ProcessingStatus | None] = mapped_column(
        _enum_column(ProcessingStatus, "image_processing_status"), default=None
    )
    extracted_text: Mapped[str | None] = mapped_column(Text, default=None)
    extracted_pattern: Mapped[str | None] = mapped_column(Text, default=None)
    extracted_content: Mapped[str | None] = mapped_column(Text, default=None)
    additional_info: Mapped[str | None] = mapped_column(Text, default=None)
    model_used: Mapped[str | None] = mapped_column(String(100), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    game: Mapped[Game] = relationship(back_populates="images")

    __table_args__ = (
        UniqueConstraint("game_id", "image_url", name="uq_game_images_game_url"),
        Index("ix_game_images_game_type", "game_id", "image_type"),
    )

    def __repr__(self) -> str:
        return f"<GameImage id={self.id} game={self.game_id} type={self.image_type}>"


# ---------------------------------------------------------------------------
# GameRule — extracted rules and processing status (one per game)
# ---------------------------------------------------------------------------
class GameRule(Base):
    __tablename__ = "game_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    game_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("games.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    raw_text: Mapped[str | None] = mapped_column(Text, default=None)
    structured_content: Mapped[dict | None] = mapped_column(JSONB, default=None)
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        _enum_column(ProcessingStatus, "processing_status"),
        default=ProcessingStatus.PENDING,
        nullable=False,
    )
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    processing_progress: Mapped[dict | None] = mapped_column(JSONB, default=None)
    processing_request_id: Mapped[str | None] = mapped_column(String(36), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    game: Mapped[Game] = relationship(back_populates="rule")

    def __repr__(self) -> str:
        return (
            f"<GameRule id={self.id} game={self.game_id} "
            f"status={self.processing_status} attempts={self.processing_attempts}>"
        )


# ---------------------------------------------------------------------------
# GameTag / GameTagRelation — labels imported from BoardGameGeek
# ---------------------------------------------------------------------------
class GameTag(Base):
    __tablename__ = "game_tags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[TagType] = mapped_column(_enum_column(TagType, "tag_type"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("name", "type", name="uq_game_tags_name_type"),
    )

    def __repr__(self) -> str:
        return f"<GameTag id={self.id} name={self.name!r} type={self.type}>"


class GameTagRelation(Base):
    __tablename__ = "game_tag_relations"

    game_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("games.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("game_tags.id", ondelete="CASCADE"), primary_key=True
    )

    game: Mapped[Game] = relationship(back_populates="tag_relations")
    tag: Mapped[GameTag] = relationship()

    def __repr__(self) -> str:
        return f"<GameTagRelation game={self.game_id} tag={self.tag_id}>"


# ---------------------------------------------------------------------------
# GamePlayerCount — community player-count recommendations
# ---------------------------------------------------------------------------
class GamePlayerCount(Base):
    __tablename__ = "game_player_counts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    game_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("games.id", ondelete="CASCADE"), nullable=False
    )
    player_count: Mapped[int] = mapped_column(Integer, nullable=False)
    recommendation: Mapped[str] = mapped_column(String(30), nullable=False)
    votes: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    game: Mapped[Game] = relationship(back_populates="player_counts")


# ---------------------------------------------------------------------------
# UserPreference — per-user AI model choice
# ---------------------------------------------------------------------------
class UserPreference(Base):
    __tablename__ = "user_preferences"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ai_model: Mapped[AIModel] = mapped_column(
        _enum_column(AIModel, "ai_model"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<UserPreference user={self.user_id} model={self.ai_model}>"
