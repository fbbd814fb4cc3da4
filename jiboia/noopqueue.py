"""External queue that accepts messages and does nothing with them."""

from __future__ import annotations

import logging

from jiboia.domain import MessageContext

TYPE = "noop"
NAME = "noop"


class NoopExternalQueue:
    """Logs each message and discards it."""

    queue_type = TYPE
    name = NAME

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or logging.getLogger(__name__)

    def enqueue(self, message: MessageContext) -> None:
        """Discard the message."""
        self._log.debug("enqueue called on No-op ext queue, url %s", message.url)