"""
tabletop.api.auth — Token identity
====================================

Sign-in happens elsewhere; this service only verifies the HS256 bearer
tokens it is handed (see :func:`tabletop.api.deps.get_current_user`).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from tabletop.api.deps import get_current_user

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me")
async def me(user: dict = Depends(get_current_user)):
    """Return the current authenticated user's info."""
    return {
        "id": user["sub"],
        "username": user.get("username"),
        "email": user.get("email"),
    }
