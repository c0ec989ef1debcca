"""Server-sent event helpers."""

from __future__ import annotations

import json
from typing import Any

from clinigate.schemas import StreamEvent


def format_sse(event: str, payload: dict[str, Any]) -> str:
    data = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)
    return f"event: {event}\ndata: {data}\n\n"


def stream_event_to_sse(event: StreamEvent) -> str:
    return format_sse(
        event.type,
        {
            "requestId": event.request_id,
            "timestamp": event.timestamp.isoformat(),
            "payload": event.payload,
        },
    )
