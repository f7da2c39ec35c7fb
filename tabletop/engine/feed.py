"""
tabletop.engine.feed — Realtime Rule-Status Feed
=================================================

Every status write made by the rules pipeline is fanned out two ways:

1. **In process** — :class:`RuleStatusFeed` hands a snapshot to every
   ``asyncio.Queue`` subscribed to that game.  The WebSocket route drains
   one queue per connected client.
2. **Across processes** — :func:`notify_before_commit` emits
   ``NOTIFY rule_status`` inside the writing transaction, so it fires only
   if the write commits.  Other workers can ``LISTEN rule_status``.

Subscribers that fall behind lose the oldest updates rather than block the
pipeline; each snapshot is a full row image, so the latest one is enough.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from tabletop.database.models import GameRule

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "rule_status"
QUEUE_MAXSIZE = 100


def rule_snapshot(rule: GameRule) -> dict[str, Any]:
    """JSON-safe view of a rule row, as published and polled."""
    return {
        "game_id": rule.game_id,
        "rule_id": rule.id,
        "status": str(rule.processing_status),
        "progress": rule.processing_progress,
        "attempts": rule.processing_attempts,
        "request_id": rule.processing_request_id,
        "error_message": rule.error_message,
        "processed_at": rule.processed_at.isoformat() if rule.processed_at else None,
    }


class RuleStatusFeed:
    """Per-game pub/sub of rule snapshots.

    Subscriptions are created on the event loop; :meth:`publish` may be
    called from that loop or from a worker thread.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = (
            defaultdict(list)
        )
        self._lock = threading.Lock()

    def subscribe(self, game_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers[game_id].append((loop, queue))
        logger.debug("Feed subscriber added for game %s", game_id)
        return queue

    def unsubscribe(self, game_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            entries = self._subscribers.get(game_id, [])
            self._subscribers[game_id] = [e for e in entries if e[1] is not queue]
            if not self._subscribers[game_id]:
                del self._subscribers[game_id]
        logger.debug("Feed subscriber removed for game %s", game_id)

    def subscriber_count(self, game_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(game_id, []))

    def publish(self, game_id: str, payload: dict[str, Any]) -> int:
        """Deliver *payload* to every subscriber of *game_id*.

        Returns the number of queues it was handed to.
        """
        with self._lock:
            targets = list(self._subscribers.get(game_id, []))

        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        for loop, queue in targets:
            if loop is current:
                self._offer(queue, payload)
            elif not loop.is_closed():
                loop.call_soon_threadsafe(self._offer, queue, payload)
        return len(targets)

    @staticmethod
    def _offer(queue: asyncio.Queue, payload: dict[str, Any]) -> None:
        if queue.full():
            queue.get_nowait()
            logger.warning("Feed subscriber lagging; dropped oldest update")
        queue.put_nowait(payload)


def notify_before_commit(session: Session, payload: dict[str, Any]) -> None:
    """Queue ``NOTIFY rule_status`` in the current transaction.

    PostgreSQL delivers it only when the transaction commits.  Other
    dialects have no NOTIFY, so this is a no-op there.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(
        text("SELECT pg_notify(:channel, :payload)"),
        {"channel": NOTIFY_CHANNEL, "payload": json.dumps(payload, default=str)},
    )
