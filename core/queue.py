"""Minimal Redis-backed task queue for deferred fan-out.

A Redis list of JSON bodies ``{"name": ..., "payload": {...}}``. Producers call
``enqueue_task`` after a transaction commits; ``workers.worker`` pops and runs
them. Kept deliberately small so no Celery/RQ dependency is needed.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

import redis  # type: ignore

from core.config import FANOUT_QUEUE_NAME, REDIS_URL


DEFAULT_QUEUE = FANOUT_QUEUE_NAME

_client: Optional[redis.Redis] = None


def get_queue_client() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(REDIS_URL)
    return _client


def enqueue_task(*, name: str, payload: Optional[Dict[str, Any]] = None, queue: str = DEFAULT_QUEUE) -> None:
    body = {"name": name, "payload": payload or {}}
    get_queue_client().rpush(queue, json.dumps(body))


def decode_task(raw) -> Tuple[str, Dict[str, Any]]:
    """Parse one queue item into ``(name, payload)``; raises ValueError on junk."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Malformed task body: {exc}") from exc
    if not isinstance(msg, dict) or not msg.get("name"):
        raise ValueError("Task body has no name")
    payload = msg.get("payload") or {}
    if not isinstance(payload, dict):
        payload = {}
    return str(msg["name"]), payload
