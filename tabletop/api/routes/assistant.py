"""
tabletop.api.routes.assistant — Ask the assistant
===================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from tabletop.api.deps import get_current_user, get_engine, get_user_llm
from tabletop.engine.llm import VisionClient
from tabletop.services import question_service

router = APIRouter(prefix="/assistant", tags=["assistant"])


class AskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    game_id: str = Field(default="", alias="gameId")
    user_prompt: str = Field(default="", alias="userPrompt")
    question_type: str = Field(default="rules", alias="questionType")
    n: int = 1
    from_images: bool = Field(default=False, alias="fromImages")


@router.post("/ask")
async def ask(
    body: AskRequest,
    user: dict = Depends(get_current_user),
    engine: Any = Depends(get_engine),
    client: VisionClient = Depends(get_user_llm),
):
    """Answer a rules question or generate examples.

    With ``fromImages`` the rule and example pages are sent to the model
    directly instead of the extracted rules text.
    """
    if body.from_images:
        return await question_service.generate_examples_from_images(
            engine, user["sub"], body.game_id, body.user_prompt, body.n, llm=client
        )
    return await question_service.ask_question(
        engine,
        user["sub"],
        body.game_id,
        body.user_prompt,
        body.question_type,
        body.n,
        llm=client,
    )
