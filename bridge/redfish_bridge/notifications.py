# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""In-process pub/sub for snapshot and error events.

Two channels: data handlers receive the full list of canonical records,
error handlers receive ``(connection_id, message)``.  A new data subscriber
is called once straight away with the latest snapshot; errors are events,
not state, so they are never replayed.
"""

import logging
from typing import Callable

from .redfish_model import CanonicalRecord

logger = logging.getLogger(__name__)

DataHandler = Callable[[list[CanonicalRecord]], None]
ErrorHandler = Callable[[str, str], None]
Unsubscribe = Callable[[], None]


class NotificationBus:
    def __init__(self):
        self._data_handlers: list[DataHandler] = []
        self._error_handlers: list[ErrorHandler] = []
        self._snapshot: list[CanonicalRecord] = []
        self._handler_errors = 0

    @property
    def snapshot(self) -> list[CanonicalRecord]:
        """The most recently published snapshot (a copy)."""
        return list(self._snapshot)

    def subscribe(self, handler: DataHandler) -> Unsubscribe:
        self._data_handlers.append(handler)
        self._deliver(handler, self.snapshot)

        def unsubscribe():
            if handler in self._data_handlers:
                self._data_handlers.remove(handler)
        return unsubscribe

    def subscribe_to_errors(self, handler: ErrorHandler) -> Unsubscribe:
        self._error_handlers.append(handler)

        def unsubscribe():
            if handler in self._error_handlers:
                self._error_handlers.remove(handler)
        return unsubscribe

    def publish_snapshot(self, records: list[CanonicalRecord]):
        self._snapshot = list(records)
        for handler in list(self._data_handlers):
            self._deliver(handler, self.snapshot)

    def publish_error(self, connection_id: str, message: str):
        for handler in list(self._error_handlers):
            self._deliver(handler, connection_id, message)

    def _deliver(self, handler, *args):
        try:
            handler(*args)
        except Exception:
            self._handler_errors += 1
            if self._handler_errors <= 5 or self._handler_errors % 100 == 0:
                logger.exception("Subscriber %r failed (error %d)",
                                 handler, self._handler_errors)

    def clear(self):
        """Drop every subscriber."""
        self._data_handlers.clear()
        self._error_handlers.clear()

    def get_status(self) -> dict:
        return {
            "data_subscribers": len(self._data_handlers),
            "error_subscribers": len(self._error_handlers),
            "handler_errors": self._handler_errors,
            "records": len(self._snapshot),
        }
