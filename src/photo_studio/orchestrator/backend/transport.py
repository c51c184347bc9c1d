"""Callback transport that serializes payloads across an in-process boundary."""

from __future__ import annotations

from collections.abc import Callable

from photo_studio.orchestrator.backend.base import CallbackPayload
from photo_studio.orchestrator.errors import PayloadTooLargeError

DEFAULT_MAX_PAYLOAD_BYTES = 1024 * 1024


class InProcessCallbackTransport:
    """Round-trips the payload through JSON, enforcing the transport size limit."""

    def __init__(
        self,
        handler: Callable[[CallbackPayload], None],
        *,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
    ) -> None:
        self.handler = handler
        self.max_payload_bytes = max_payload_bytes

    def deliver(self, payload: CallbackPayload) -> None:
        raw = payload.to_json()
        size = len(raw.encode("utf-8"))
        if size > self.max_payload_bytes:
            raise PayloadTooLargeError(size_bytes=size, limit_bytes=self.max_payload_bytes)
        self.handler(CallbackPayload.from_json(raw))
