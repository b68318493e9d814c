"""
Source change feed for notifying listeners of source list changes.
"""

import asyncio
from typing import Any, Callable

from sourceperm.domain.models import Source
from sourceperm.utils.logging import get_logger

logger = get_logger(__name__)

# Called with the full source list and the slug whose files changed, if known
SourcesListener = Callable[[list[Source], str | None], Any]


class SourceChangeFeed:
    """
    Delivers the full current source list to subscribers on every change.

    Publishing from a foreign thread (a watchdog observer, for example)
    goes through publish_threadsafe so listeners always run on the loop
    that owns them.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._listeners: list[SourcesListener] = []
        self._loop = loop

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the event loop that listeners run on."""
        self._loop = loop

    def subscribe(self, listener: SourcesListener) -> Callable[[], None]:
        """Subscribe to source list changes. Returns an unsubscribe callable."""
        if listener not in self._listeners:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: SourcesListener) -> None:
        """Unsubscribe from source list changes."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, sources: list[Source], changed: str | None = None) -> None:
        """
        Publish the current source list to all listeners.

        Args:
            sources: Full current source list
            changed: Slug of the source whose files changed, None when unknown
        """
        for listener in list(self._listeners):
            try:
                listener(sources, changed)
            except Exception as e:
                logger.error(
                    "source_listener_error",
                    sources=len(sources),
                    changed=changed,
                    error=str(e),
                    exc_info=True,
                )

    def publish_threadsafe(self, sources: list[Source], changed: str | None = None) -> None:
        """Publish from any thread; listeners run on the bound loop."""
        if self._loop is None:
            raise RuntimeError("SourceChangeFeed has no event loop bound")
        self._loop.call_soon_threadsafe(self.publish, sources, changed)

    def clear(self) -> None:
        """Clear all listeners."""
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)


__all__ = ["SourceChangeFeed", "SourcesListener"]
