"""
tabletop.engine.prompts — Fixed Prompts Sent to the Models
===========================================================
"""

from __future__ import annotations

EXTRACT_GAME_RULES_PROMPT = """\
Analyze the provided game rule images and extract structured information.

Important:
1. Extract the complete rules text exactly as written in the images for raw_text
2. For player_count, use actual numbers (e.g. "2" not "two")
3. Include all key mechanics you can identify
4. List components and phases if clearly specified

Process all images together as they may contain different parts of the rules."""

EXTRACT_GAME_INFO_PROMPT = """\
Please extract the title, description, and estimated play time from the rule images supplied.
If any of these fields are already provided, use those values instead of extracting them."""

PROCESS_RULES_IMAGE_PROMPT = """\
Extract and format all text content from this game rule image. Focus on capturing \
the complete text while preserving any hierarchical structure. Include any important \
formatting or visual emphasis. Also note any additional metadata like confidence level, \
text positioning, or visual styling in the additional_info field."""

PROCESS_EXAMPLE_IMAGE_PROMPT = """\
Extract the content of the examples, as well as the pattern or structure that is being displayed."""


def build_question_prompt(
    *,
    title: str,
    description: str | None,
    rules_text: str,
    examples_text: str,
    user_prompt: str,
    question_type: str,
    n: int = 1,
) -> str:
    """Assemble the ask-the-assistant prompt from previously extracted text."""
    base_context = (
        f"Game Title: {title}\n"
        f"Game Description: {description or ''}\n\n"
        f"Game Rules:\n{rules_text}\n\n"
        f"Game Examples:\n{examples_text}\n\n"
        f"Additional Context from User: {user_prompt}\n"
    )

    if question_type == "rules":
        return (
            f"{base_context}\n"
            "Please answer the user's question about the game rules based on the "
            "provided information.\n"
            "Be specific and reference the rules directly when possible."
        )

    return (
        f"{base_context}\n"
        f"Based on the provided game rules and examples, generate {n} creative "
        "examples that follow the same pattern and rules.\n"
        "Only include the examples themselves, with no additional text or explanation.\n"
        "The generated examples should be in the same style and format as the "
        "examples provided."
    )


def build_example_images_prompt(
    *, title: str, description: str | None, user_prompt: str, n: int
) -> str:
    """Prompt for generating examples when the rule/example pages go inline."""
    numbered = "\n".join(f"{i}. [Example {i}]" for i in range(1, n + 1))
    return (
        f"Game Title: {title}\n"
        f"Game Description: {description or ''}\n\n"
        f"Based on the provided game rules and examples, generate {n} creative "
        "examples that follow the same pattern and rules.\n\n"
        "Only include the examples themselves, with no additional text or explanation.\n\n"
        "The generated examples should be in the same style and format as the "
        "examples provided.\n\n"
        "[Instructions and examples have been provided as images]\n\n"
        f"Additional Context from User: {user_prompt}\n\n"
        f"Format your response as:\n{numbered}"
    )
