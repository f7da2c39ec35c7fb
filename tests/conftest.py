"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of tabletop.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from tabletop.api import deps  # noqa: E402
from tabletop.database.models import Base, Game, GameStatus  # noqa: E402
from tabletop.services import storage_service  # noqa: E402
from tabletop.services.bgg_service import BggClient  # noqa: E402

# Bound at collection time: test_jwt_startup reloads deps, which replaces
# these function objects, but the app's routes keep the originals.
_GET_ENGINE = deps.get_engine
_GET_LLM_FACTORY = deps.get_llm_factory
_GET_BGG_CLIENT = deps.get_bgg_client

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def run(coro):
    """Run a coroutine to completion without pytest-asyncio."""
    return asyncio.run(coro)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Tabletop tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture(autouse=True)
def storage_dir(tmp_path, monkeypatch):
    """Point blob storage at a per-test temp directory."""
    root = tmp_path / "blobs"
    root.mkdir()
    monkeypatch.setattr(storage_service, "STORAGE_DIR", root)
    return root


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def make_token(sub: str = "user-1", username: str = "Fixture Player") -> str:
    """Create a user JWT.  Usable from fixtures and tests alike."""
    import jwt

    return jwt.encode(
        {"sub": sub, "username": username},
        deps.JWT_SECRET,
        algorithm=deps.JWT_ALGORITHM,
    )


def make_game(
    engine: Engine,
    author_id: str = "user-1",
    name: str = "Azul",
    status: GameStatus = GameStatus.DRAFT,
    **fields,
) -> str:
    """Insert a game row and return its id."""
    with Session(engine, expire_on_commit=False) as session:
        game = Game(author_id=author_id, name=name, status=status, **fields)
        session.add(game)
        session.commit()
        return game.id


def store_blob(owner_id: str, game_id: str | None = None, content: bytes = b"\x89PNG page") -> str:
    """Save a small PNG blob and return its path."""
    return run(storage_service.save_upload(owner_id, game_id, "page.png", content, "image/png"))


class FakeVisionClient:
    """Stands in for a provider client; records every call."""

    provider = "fake"

    def __init__(self, result=None, error: Exception | None = None, text: str = "answer"):
        self.model = "vision-test"
        self.result = result
        self.error = error
        self.text = text
        self.extract_calls: list[dict] = []
        self.complete_calls: list[dict] = []

    @property
    def model_id(self) -> str:
        return f"{self.provider}__{self.model}"

    async def extract(self, *, system, images, schema, text=None):
        self.extract_calls.append(
            {"system": system, "images": list(images), "schema": schema, "text": text}
        )
        if self.error is not None:
            raise self.error
        if isinstance(self.result, dict):
            return self.result[schema.__name__]
        return self.result

    async def complete(self, prompt, images=None):
        self.complete_calls.append({"prompt": prompt, "images": images})
        if self.error is not None:
            raise self.error
        return self.text


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------
@pytest.fixture
def token() -> str:
    return make_token()


@pytest.fixture
def fake_llm() -> FakeVisionClient:
    return FakeVisionClient()


@pytest.fixture
def bgg_handler():
    """Mutable holder for the BGG MockTransport handler used by ``client``."""
    state = {"handler": lambda request: httpx.Response(200, text="<items/>")}
    return state


@pytest.fixture
def client(db_engine, fake_llm, bgg_handler):
    """FastAPI TestClient wired to SQLite, a fake LLM and a mocked BGG."""
    from fastapi.testclient import TestClient

    from tabletop.api.main import app

    async def _bgg():
        transport = httpx.MockTransport(lambda req: bgg_handler["handler"](req))
        async with BggClient(transport=transport) as bgg:
            yield bgg

    app.dependency_overrides[_GET_ENGINE] = lambda: db_engine
    app.dependency_overrides[_GET_LLM_FACTORY] = lambda: (lambda *a, **k: fake_llm)
    app.dependency_overrides[_GET_BGG_CLIENT] = _bgg
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# BGG XML samples
# ---------------------------------------------------------------------------
BGG_SEARCH_XML = """<?xml version="1.0" encoding="utf-8"?>
<items total="3" termsofuse="https://boardgamegeek.com/xmlapi/termsofuse">
  <item type="boardgame" id="230802">
    <name type="primary" value="Azul"/>
    <yearpublished value="2017"/>
  </item>
  <item type="boardgame" id="287954">
    <name type="primary" value="Azul: Summer Pavilion"/>
  </item>
  <item type="boardgame" id="256226">
    <name type="primary" value="Azul: Stained Glass of Sintra"/>
  </item>
</items>"""

BGG_THING_XML = """<?xml version="1.0" encoding="utf-8"?>
<items termsofuse="https://boardgamegeek.com/xmlapi/termsofuse">
  <item type="boardgame" id="230802">
    <thumbnail>https://cf.geekdo-images.com/azul_thumb.jpg</thumbnail>
    <image>https://cf.geekdo-images.com/azul.jpg</image>
    <name type="primary" sortindex="1" value="Azul"/>
    <name type="alternate" sortindex="1" value="Azulejos"/>
    <description>Introduced by the Moors, &amp;quot;azulejos&amp;quot; were tiles.&amp;#10;Players compete as artisans.</description>
    <yearpublished value="2017"/>
    <minplayers value="2"/>
    <maxplayers value="4"/>
    <poll name="suggested_numplayers" title="User Suggested Number of Players" totalvotes="120">
      <results numplayers="1">
        <result value="Best" numvotes="0"/>
        <result value="Recommended" numvotes="0"/>
        <result value="Not Recommended" numvotes="0"/>
      </results>
      <results numplayers="2">
        <result value="Best" numvotes="90"/>
        <result value="Recommended" numvotes="20"/>
        <result value="Not Recommended" numvotes="4"/>
      </results>
      <results numplayers="3">
        <result value="Best" numvotes="30"/>
        <result value="Recommended" numvotes="60"/>
        <result value="Not Recommended" numvotes="5"/>
      </results>
      <results numplayers="4">
        <result value="Best" numvotes="10"/>
        <result value="Recommended" numvotes="10"/>
        <result value="Not Recommended" numvotes="40"/>
      </results>
      <results numplayers="4+">
        <result value="Best" numvotes="0"/>
        <result value="Recommended" numvotes="0"/>
        <result value="Not Recommended" numvotes="50"/>
      </results>
    </poll>
    <playingtime value="45"/>
    <minplaytime value="30"/>
    <maxplaytime value="45"/>
    <minage value="8"/>
    <poll name="language_dependence" title="Language Dependence" totalvotes="40">
      <results>
        <result level="1" value="No necessary in-game text" numvotes="38"/>
        <result level="2" value="Some necessary text" numvotes="2"/>
      </results>
    </poll>
    <link type="boardgamecategory" id="1009" value="Abstract Strategy"/>
    <link type="boardgamemechanic" id="2048" value="Pattern Building"/>
    <link type="boardgamemechanic" id="2004" value="Set Collection"/>
    <link type="boardgamedesigner" id="6650" value="Michael Kiesling"/>
    <link type="boardgamepublisher" id="25842" value="Next Move Games"/>
    <link type="boardgamefamily" id="1" value="Ignored Family"/>
    <statistics page="1">
      <ratings>
        <average value="7.74"/>
        <averageweight value="1.76"/>
      </ratings>
    </statistics>
  </item>
</items>"""
