from __future__ import annotations

import json
from typing import Any

from pageflow.browser.actions import HELPERS
from pageflow.browser.bridge import PageBridge


class PageInspector:
    """Questions an authoring surface asks about elements on the page."""

    def __init__(self, bridge: PageBridge) -> None:
        self.bridge = bridge

    async def _frame(self, iframe_selector: str | None) -> Any:
        if iframe_selector is None:
            return None
        return await self.bridge.resolve_frame(iframe_selector)

    async def is_input(self, selector: str, iframe_selector: str | None = None) -> bool:
        frame = await self._frame(iframe_selector)
        result = await self.bridge.evaluate(f"{HELPERS}.isInput({_query(selector)})", frame)
        return result is True

    async def is_file_input(self, selector: str, iframe_selector: str | None = None) -> bool:
        frame = await self._frame(iframe_selector)
        result = await self.bridge.evaluate(f"{HELPERS}.isFileInput({_query(selector)})", frame)
        return result is True

    async def is_iframe(self, selector: str) -> bool:
        result = await self.bridge.evaluate(f"{_query(selector)} instanceof HTMLIFrameElement")
        return result is True

    async def location_of(self, selector: str) -> tuple[float, float]:
        """Page coordinates of the element's top-left corner, (0, 0) if unknown."""
        result = await self.bridge.evaluate(
            f"(() => {{ const el = {_query(selector)}; return el ? {HELPERS}.getOffset(el) : null; }})()"
        )
        if isinstance(result, list) and len(result) == 2:
            return float(result[0]), float(result[1])
        return 0.0, 0.0

    async def element_at(self, x: float, y: float, iframe_selector: str | None = None) -> str:
        """Selector of the element under the point, or an empty string."""
        frame = await self._frame(iframe_selector)
        result = await self.bridge.evaluate(f"{HELPERS}.getDomPath(document.elementFromPoint({x}, {y}))", frame)
        return result if isinstance(result, str) else ""


def _query(selector: str) -> str:
    return f"document.querySelector({json.dumps(selector)})"
