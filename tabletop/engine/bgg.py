"""
tabletop.engine.bgg — BoardGameGeek XML API2 Parsing
=====================================================

Pure translation of BGG XML documents into dataclasses.  No I/O happens
here; :mod:`tabletop.services.bgg_service` fetches the documents.

BGG double-encodes entities inside ``<description>``: after the XML parser
has run, the text still contains ``&quot;``, ``&#10;`` and friends, which
:func:`decode_html_entities` resolves.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

UNKNOWN_GAME = "Unknown Game"
DESCRIPTION_PREVIEW_CHARS = 300

_TAG_RE = re.compile(r"<[^>]*>?", re.MULTILINE)

_ENTITIES = (
    ("&quot;", '"'),
    ("&#039;", "'"),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&mdash;", "—"),
    ("&ndash;", "–"),
    ("&#10;", "\n"),
)

_LINK_FIELDS = {
    "boardgamecategory": "categories",
    "boardgamemechanic": "mechanics",
    "boardgamedesigner": "designers",
    "boardgamepublisher": "publishers",
}

_PLAYER_POLL_COUNTS = {"1", "2", "3", "4", "5", "6", "7", "7+"}


class BggParseError(ValueError):
    """The document has no usable ``<item>``."""


@dataclass(slots=True)
class BggSearchResult:
    id: str
    name: str
    year_published: str | None = None
    thumbnail: str | None = None
    description: str | None = None
    min_players: int | None = None
    max_players: int | None = None
    playing_time: int | None = None
    bgg_weight: float | None = None


@dataclass(slots=True)
class RecommendedPlayers:
    count: int
    recommendation: str  # "Best" | "Recommended" | "Not Recommended"
    votes: int


@dataclass(slots=True)
class BggGameData:
    bgg_id: str
    name: str
    description: str | None = None
    year_published: int | None = None
    min_players: int | None = None
    max_players: int | None = None
    playing_time: int | None = None
    min_age: int | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None
    categories: list[str] = field(default_factory=list)
    mechanics: list[str] = field(default_factory=list)
    designers: list[str] = field(default_factory=list)
    publishers: list[str] = field(default_factory=list)
    bgg_rating: float | None = None
    bgg_weight: float | None = None
    recommended_players: list[RecommendedPlayers] = field(default_factory=list)
    language_dependence: int | None = None


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------
def decode_html_entities(text: str | None) -> str:
    if not text:
        return ""
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    return text


def clean_description(text: str | None) -> str | None:
    """Strip tags, decode entities and cut to a short preview."""
    if not text:
        return None
    cleaned = decode_html_entities(_TAG_RE.sub("", text))
    if len(cleaned) > DESCRIPTION_PREVIEW_CHARS:
        cleaned = cleaned[:DESCRIPTION_PREVIEW_CHARS] + "..."
    return cleaned


def _parse(xml: str | bytes) -> ET.Element:
    try:
        return ET.fromstring(xml)
    except ET.ParseError as exc:
        raise BggParseError(f"Invalid BGG XML: {exc}") from exc


def _value(item: ET.Element, path: str) -> str | None:
    node = item.find(path)
    if node is None:
        return None
    return node.get("value") or None


def _int(item: ET.Element, path: str) -> int | None:
    raw = _value(item, path)
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


def _float(item: ET.Element, path: str) -> float | None:
    raw = _value(item, path)
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


def _text(item: ET.Element, path: str) -> str | None:
    node = item.find(path)
    if node is None or not node.text:
        return None
    return node.text.strip()


def _first_name(item: ET.Element) -> str:
    return _value(item, "name") or UNKNOWN_GAME


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------
def parse_search_ids(xml: str | bytes, limit: int = 5) -> list[tuple[str, str]]:
    """``[(id, name)]`` for the first *limit* hits of a ``/search`` document."""
    root = _parse(xml)
    hits: list[tuple[str, str]] = []
    for item in root.findall("item")[:limit]:
        bgg_id = item.get("id")
        if bgg_id:
            hits.append((bgg_id, _first_name(item)))
    return hits


def parse_search_details(xml: str | bytes) -> list[BggSearchResult]:
    """Summaries from a batched ``/thing?id=a,b,c&stats=1`` document."""
    root = _parse(xml)
    results = []
    for item in root.findall("item"):
        results.append(
            BggSearchResult(
                id=item.get("id", ""),
                name=_first_name(item),
                year_published=_value(item, "yearpublished"),
                thumbnail=_text(item, "thumbnail"),
                description=clean_description(_text(item, "description")),
                min_players=_int(item, "minplayers"),
                max_players=_int(item, "maxplayers"),
                playing_time=_int(item, "playingtime"),
                bgg_weight=_float(item, "statistics/ratings/averageweight"),
            )
        )
    return results


# ---------------------------------------------------------------------------
# Single game
# ---------------------------------------------------------------------------
def _recommended_players(item: ET.Element) -> list[RecommendedPlayers]:
    poll = item.find("poll[@name='suggested_numplayers']")
    if poll is None:
        return []

    rows = []
    for results in poll.findall("results"):
        num_players = results.get("numplayers")
        if num_players not in _PLAYER_POLL_COUNTS:
            continue

        votes = {r.get("value"): int(r.get("numvotes") or 0) for r in results.findall("result")}
        best = votes.get("Best", 0)
        recommended = votes.get("Recommended", 0)
        not_recommended = votes.get("Not Recommended", 0)
        total = best + recommended + not_recommended
        if total <= 0:
            continue

        if best > recommended and best > not_recommended:
            verdict = "Best"
        elif recommended > not_recommended:
            verdict = "Recommended"
        else:
            verdict = "Not Recommended"

        rows.append(
            RecommendedPlayers(
                count=7 if num_players == "7+" else int(num_players),
                recommendation=verdict,
                votes=total,
            )
        )
    return rows


def _language_dependence(item: ET.Element) -> int | None:
    results = item.find("poll[@name='language_dependence']/results")
    if results is None:
        return None

    level = None
    highest = 0
    for result in results.findall("result"):
        votes = int(result.get("numvotes") or 0)
        if votes > highest:
            highest = votes
            level = int(result.get("level") or 0)
    return level


def parse_game(xml: str | bytes) -> BggGameData:
    """Full record for the first ``<item>`` of a ``/thing`` document."""
    root = _parse(xml)
    item = root.find("item")
    if item is None:
        raise BggParseError("Invalid BGG API response")

    primary = item.find("name[@type='primary']")
    name = primary.get("value") if primary is not None else None

    data = BggGameData(
        bgg_id=item.get("id", ""),
        name=name or UNKNOWN_GAME,
        year_published=_int(item, "yearpublished"),
        min_players=_int(item, "minplayers"),
        max_players=_int(item, "maxplayers"),
        playing_time=_int(item, "playingtime"),
        min_age=_int(item, "minage"),
        image_url=_text(item, "image"),
        thumbnail_url=_text(item, "thumbnail"),
        bgg_rating=_float(item, "statistics/ratings/average"),
        bgg_weight=_float(item, "statistics/ratings/averageweight"),
        recommended_players=_recommended_players(item),
        language_dependence=_language_dependence(item),
    )

    description = _text(item, "description")
    if description:
        data.description = decode_html_entities(description)

    for link in item.findall("link"):
        attr = _LINK_FIELDS.get(link.get("type", ""))
        if attr and link.get("value"):
            getattr(data, attr).append(link.get("value"))

    return data
