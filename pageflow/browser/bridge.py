from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOAD_FINISHED = "load-finished"
DOM_MUTATED = "dom-mutated"

EventHandler = Callable[[str, dict[str, Any]], None]


class PageBridge(ABC):
    """Contract between the automation engine and the page that hosts it.

    ``loop`` is the event loop every page operation must run on. Coroutines
    are only ever awaited on that loop; event handlers are called from it.
    A frame scope of ``None`` always means the main frame.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, name: str, payload: dict[str, Any] | None = None) -> None:
        for handler in list(self._handlers):
            try:
                handler(name, payload or {})
            except Exception:
                logger.exception("Event handler failed for %s", name)

    @property
    @abstractmethod
    def main_frame(self) -> Any: ...

    def is_main_frame(self, frame: Any) -> bool:
        return frame is None or frame is self.main_frame

    @abstractmethod
    async def evaluate(self, script: str, frame: Any = None) -> Any:
        """Evaluate ``script`` in ``frame``; raise ScriptEvaluationError on failure."""

    @abstractmethod
    async def resolve_frame(self, selector: str, parent: Any = None) -> Any:
        """Return the frame scope of the iframe matching ``selector``.

        Falls back to the main frame when the frame cannot be identified.
        """

    @abstractmethod
    async def open_url(self, url: str, mobile: bool) -> None:
        """Apply the device mode and start loading ``url`` without waiting for it."""

    @abstractmethod
    async def insert_text(self, text: str) -> None: ...

    @abstractmethod
    async def deliver_file(self, selector: str, path: Path, frame: Any = None) -> None: ...

    @abstractmethod
    async def reset(self) -> None:
        """Abort any navigation in flight and show a blank page."""
