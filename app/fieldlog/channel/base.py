"""Channel interface (port) for cross-context change broadcasts."""

from __future__ import annotations

from typing import Callable, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from fieldlog.core.models import ChangeEvent

ChangeHandler = Callable[["ChangeEvent"], None]


class ChangeChannel(Protocol):
    """Port: delivers every published ChangeEvent to every subscriber, the publisher included."""

    def publish(self, event: ChangeEvent) -> None: ...

    def subscribe(self, handler: ChangeHandler) -> Callable[[], None]: ...
