"""
Security event reporting.

Crypto code records rejections synchronously; the queued events are shipped
to the relay's event sink later, outside any per-session lock. Details never
include plaintext or key material.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .exceptions import NetworkError
from .interfaces import SecurityEventSink

logger = logging.getLogger(__name__)

INVALID_SIGNATURE = "invalid_signature"
REPLAY_DETECTED = "replay_detected"
DECRYPT_FAILED = "decrypt_failed"

EVENT_TYPES = (INVALID_SIGNATURE, REPLAY_DETECTED, DECRYPT_FAILED)


class SecurityEvents:
    """Logs security rejections and buffers them for the relay"""

    def __init__(self, max_pending: int = 1000):
        self.max_pending = max_pending
        self._pending: List[Tuple[str, Dict]] = []

    def report(self, event_type: str, **details):
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown security event: {event_type}")
        fields = " ".join(f"{k}={v}" for k, v in sorted(details.items()))
        logger.warning("%s %s", event_type, fields)
        if len(self._pending) >= self.max_pending:
            self._pending.pop(0)
        self._pending.append((event_type, details))

    @property
    def pending(self) -> List[Tuple[str, Dict]]:
        return list(self._pending)

    async def flush(self, sink: Optional[SecurityEventSink]) -> int:
        """
        Send buffered events to the sink.

        Events that fail to send stay buffered for the next flush, as do all
        events when there is no sink yet.

        Returns:
            Number of events delivered
        """
        if sink is None:
            return 0
        sent = 0
        while self._pending:
            event_type, details = self._pending[0]
            try:
                await sink.report_event(event_type, details)
            except NetworkError as e:
                logger.debug("Deferring security event delivery: %s", e)
                break
            self._pending.pop(0)
            sent += 1
        return sent
