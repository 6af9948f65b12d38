"""In-process implementation of ChangeChannel."""

from __future__ import annotations

from typing import Callable, TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from fieldlog.channel.base import ChangeHandler
    from fieldlog.core.models import ChangeEvent

log = structlog.get_logger()


class LocalChangeChannel:
    """ChangeChannel shared by all contexts living in one process.

    Handlers run synchronously in subscription order. A failing handler is
    logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: list[ChangeHandler] = []
        self.published = 0

    def publish(self, event: ChangeEvent) -> None:
        self.published += 1
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                log.error("change_handler_failed", type=event.type.value,
                          ids=list(event.affected_ids), exc_info=True)

    def subscribe(self, handler: ChangeHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self) -> int:
        return len(self._handlers)
