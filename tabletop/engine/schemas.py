"""
tabletop.engine.schemas — Response Contracts for the Vision Models
===================================================================

Every structured model call names one of these classes; the provider is
asked for JSON matching ``model_json_schema()`` and the reply is validated
before anything touches the database.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PlayerCount(BaseModel):
    min: int = Field(description="Minimum number of players required")
    max: int = Field(description="Maximum number of players allowed")
    recommended: int | None = Field(default=None, description="Recommended number of players")


class RulesMetadata(BaseModel):
    key_mechanics: list[str] = Field(description="List of key gameplay mechanics identified")
    setup_instructions: str | None = Field(
        default=None, description="Instructions for setting up the game"
    )
    victory_conditions: str | None = Field(
        default=None, description="Conditions for winning the game"
    )
    player_count: PlayerCount | None = Field(
        default=None, description="Player count requirements"
    )
    components: list[str] | None = Field(
        default=None, description="List of game components needed"
    )
    phases_of_play: list[str] | None = Field(
        default=None, description="Main phases or steps of gameplay"
    )


class ExtractedRules(BaseModel):
    """Full rules text plus metadata, extracted from every page at once."""

    raw_text: str = Field(
        description="The complete, unstructured rules text extracted from all images"
    )
    metadata: RulesMetadata


class GameInfo(BaseModel):
    """Quick title/description pass run while a game is being created."""

    title: str = Field(description="The title of the game")
    description: str = Field(description="The description of the game")
    estimated_play_time: str | None = Field(
        default=None, description="The estimated play time of the game"
    )


class RulesImageText(BaseModel):
    """Text of a single uploaded rules page."""

    extracted_text: str = Field(
        description="The complete text content extracted from the rules image"
    )
    additional_info: str | None = Field(
        default=None,
        description="Confidence level, text positioning or visual styling worth noting",
    )


class ExampleImageContent(BaseModel):
    """Content and layout of a single uploaded example image."""

    extracted_pattern: str = Field(
        description="The pattern or structure identified in the example"
    )
    extracted_content: str = Field(
        description="The actual content/text extracted from the example image"
    )
    additional_info: str | None = Field(
        default=None, description="Any other detail worth noting about the example"
    )


class ImageRef(BaseModel):
    """An uploaded blob handed to the pipeline by the client."""

    model_config = ConfigDict(populate_by_name=True)

    path: str
    order_index: int | None = None
    is_cover: bool = Field(default=False, alias="isCover")
