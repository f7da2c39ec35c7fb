"""
tabletop.services.bgg_service — BoardGameGeek Search & Import
==============================================================

* :class:`BggClient` — thin async HTTP client over XML API2.
* :func:`unified_search` — local catalogue + BGG results in one paged list.
  BGG hits whose id is already catalogued locally are dropped so a game is
  never listed twice.
* :func:`import_game` — copy a BGG record into the catalogue (idempotent
  on ``bgg_id``).
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy import or_, select

from tabletop.config import TabletopConfig
from tabletop.database.engine import get_session, run_db
from tabletop.database.models import (
    Game,
    GameImage,
    GamePlayerCount,
    GameStatus,
    GameTag,
    GameTagRelation,
    ImageType,
    TagType,
)
from tabletop.engine.bgg import (
    BggGameData,
    BggParseError,
    BggSearchResult,
    parse_game,
    parse_search_details,
    parse_search_ids,
)
from tabletop.errors import ExternalServiceError, ValidationError
from tabletop.services.game_service import game_to_dict

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------
class BggClient:
    """Async client for ``/search`` and ``/thing``.

    Use as an async context manager::

        async with BggClient(cfg) as bgg:
            results = await bgg.search("catan")
    """

    def __init__(
        self,
        cfg: TabletopConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cfg = cfg or TabletopConfig()
        self._client = httpx.AsyncClient(
            base_url=self.cfg.bgg_base_url,
            timeout=self.cfg.bgg_timeout_seconds,
            transport=transport or httpx.AsyncHTTPTransport(retries=1),
        )

    async def __aenter__(self) -> BggClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any], what: str) -> bytes:
        try:
            resp = await self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"BGG {what} failed: {exc}") from exc
        if resp.status_code != 200:
            raise ExternalServiceError(f"BGG {what} failed: {resp.status_code}")
        return resp.content

    async def search(self, query: str) -> list[BggSearchResult]:
        """Search by name, then fetch details for the top hits in one call."""
        body = await self._get("/search", {"query": query, "type": "boardgame"}, "search")
        try:
            hits = parse_search_ids(body, self.cfg.bgg_search_limit)
            if not hits:
                return []
            ids = ",".join(bgg_id for bgg_id, _ in hits)
            details = await self._get("/thing", {"id": ids, "stats": 1}, "details fetch")
            return parse_search_details(details)
        except BggParseError as exc:
            raise ExternalServiceError(str(exc)) from exc

    async def fetch_game(self, bgg_id: str) -> BggGameData:
        body = await self._get("/thing", {"id": bgg_id, "stats": 1}, "game fetch")
        try:
            return parse_game(body)
        except BggParseError as exc:
            raise ExternalServiceError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Unified search
# ---------------------------------------------------------------------------
def _search_local(engine: Engine, user_id: str, query: str) -> tuple[list[dict], set[str]]:
    """Published games plus the caller's own, matching *query* by name.

    Also returns every ``bgg_id`` already catalogued, for deduplication.
    """
    with get_session(engine) as session:
        games = session.scalars(
            select(Game)
            .where(
                Game.name.ilike(f"%{query}%"),
                or_(Game.status == GameStatus.PUBLISHED, Game.author_id == user_id),
            )
            .order_by(Game.name)
        ).all()
        known_ids = set(
            session.scalars(select(Game.bgg_id).where(Game.bgg_id.is_not(None)))
        )
        return [game_to_dict(g) for g in games], known_ids


async def unified_search(
    engine: Engine,
    client: BggClient,
    user_id: str,
    query: str,
    page: int = 1,
    page_size: int = 10,
) -> dict[str, Any]:
    """One paged list: local matches first, then new BGG results."""
    query = (query or "").strip()
    if not query:
        raise ValidationError("Search query is required")
    if page < 1 or page_size < 1:
        raise ValidationError("page and page_size must be positive")

    request_id = str(uuid.uuid4())
    started = time.perf_counter()
    logger.info("[%s] Searching for: %s", request_id, query)

    local, known_ids = await run_db(_search_local, engine, user_id, query)
    external = [r for r in await client.search(query) if r.id not in known_ids]

    combined = (
        [{"source": "local", **g} for g in local]
        + [{"source": "bgg", **asdict(r)} for r in external]
    )
    start = (page - 1) * page_size
    logger.info(
        "[%s] Search done: %d local, %d bgg, elapsed %.2fs",
        request_id, len(local), len(external), time.perf_counter() - started,
    )
    return {
        "results": combined[start:start + page_size],
        "total": len(combined),
        "local_count": len(local),
        "bgg_count": len(external),
        "page": page,
        "page_size": page_size,
    }


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------
def _attach_tags(session, game: Game, names: list[str], tag_type: TagType) -> None:
    for name in dict.fromkeys(names):
        tag = session.scalar(
            select(GameTag).where(GameTag.name == name, GameTag.type == tag_type)
        )
        if tag is None:
            tag = GameTag(name=name, type=tag_type)
            session.add(tag)
            session.flush()
        game.tag_relations.append(GameTagRelation(tag_id=tag.id))


def find_by_bgg_id(engine: Engine, bgg_id: str) -> dict[str, Any] | None:
    with get_session(engine) as session:
        game = session.scalar(select(Game).where(Game.bgg_id == bgg_id))
        return game_to_dict(game) if game is not None else None


def import_game(engine: Engine, user_id: str, data: BggGameData) -> dict[str, Any]:
    """Catalogue a BGG game.  Returns ``{"game": …, "imported": bool}``."""
    with get_session(engine) as session:
        existing = session.scalar(select(Game).where(Game.bgg_id == data.bgg_id))
        if existing is not None:
            logger.info("BGG game %s already catalogued as %s", data.bgg_id, existing.id)
            return {
                "game": game_to_dict(existing),
                "imported": False,
                "message": "Game already exists in database",
            }

        game = Game(
            author_id=user_id,
            name=data.name,
            description=data.description or None,
            estimated_time=f"{data.playing_time} minutes" if data.playing_time else None,
            status=GameStatus.PUBLISHED,
            bgg_id=data.bgg_id,
            bgg_year_published=data.year_published,
            min_players=data.min_players,
            max_players=data.max_players,
            min_age=data.min_age,
            bgg_rating=data.bgg_rating,
            bgg_weight=data.bgg_weight,
            bgg_image_url=data.image_url,
            bgg_thumbnail_url=data.thumbnail_url,
            language_dependence=data.language_dependence,
        )
        session.add(game)
        session.flush()

        _attach_tags(session, game, data.categories, TagType.CATEGORY)
        _attach_tags(session, game, data.mechanics, TagType.MECHANIC)
        _attach_tags(session, game, data.designers, TagType.DESIGNER)
        _attach_tags(session, game, data.publishers, TagType.PUBLISHER)

        for rec in data.recommended_players:
            game.player_counts.append(
                GamePlayerCount(
                    player_count=rec.count,
                    recommendation=rec.recommendation.lower(),
                    votes=rec.votes,
                )
            )

        if data.image_url:
            cover = GameImage(
                image_url=data.image_url,
                image_type=ImageType.COVER,
                uploader_id=user_id,
                is_cover=True,
                is_external=True,
                order_index=0,
            )
            game.images.append(cover)
            session.flush()
            game.cover_image_id = cover.id

        session.flush()
        session.refresh(game)
        logger.info("Imported BGG game %s as %s", data.bgg_id, game.id)
        return {"game": game_to_dict(game, detail=True), "imported": True}
