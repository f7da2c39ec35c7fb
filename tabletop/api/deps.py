"""
tabletop.api.deps — FastAPI dependency injection
==================================================
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Callable
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from tabletop.config import TabletopConfig, load_config
from tabletop.database.engine import create_db_engine, run_db
from tabletop.engine.feed import RuleStatusFeed
from tabletop.engine.llm import VisionClient, get_vision_client
from tabletop.errors import AuthenticationError
from tabletop.services import preference_service
from tabletop.services.bgg_service import BggClient

logger = logging.getLogger(__name__)

_WEAK_SECRETS = frozenset({
    "tabletop-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> TabletopConfig:
    try:
        return load_config()
    except FileNotFoundError:
        logger.warning("config.yaml not found; using built-in defaults")
        return TabletopConfig()


@lru_cache(maxsize=1)
def get_feed() -> RuleStatusFeed:
    return RuleStatusFeed()


def get_llm_factory() -> Callable[..., VisionClient]:
    """Factory for vision clients; overridden in tests."""
    return get_vision_client


async def get_bgg_client(
    cfg: TabletopConfig = Depends(get_config),
) -> AsyncIterator[BggClient]:
    async with BggClient(cfg) as client:
        yield client


def decode_token(token: str) -> dict:
    """Verify a bearer token and return its claims (``sub`` = user id)."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise AuthenticationError("Invalid token") from None
    if not payload.get("sub"):
        raise AuthenticationError("Invalid token")
    return payload


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return the user payload. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing token")
    return decode_token(authorization.split(" ", 1)[1])


async def get_user_llm(
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    cfg: TabletopConfig = Depends(get_config),
    llm_factory: Callable[..., VisionClient] = Depends(get_llm_factory),
) -> VisionClient:
    """Vision client for the caller's preferred model."""
    model = await run_db(
        preference_service.get_preference, engine, user["sub"], cfg.default_ai_model
    )
    return llm_factory(model, cfg.default_ai_model)
