from __future__ import annotations

from typing import Any, Dict


def handle_task(name: str, payload: Dict[str, Any]) -> None:
    if name == "noop":
        return
    if name == "fanout.deliver":
        from routers.conversations.fanout import Delivery, deliver_all

        deliver_all([Delivery.from_dict(item) for item in payload.get("deliveries") or []])
        return
    raise ValueError(f"Unknown task: {name}")
