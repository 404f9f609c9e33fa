from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pageflow.browser.actions import Action
from pageflow.errors import PageflowError

Resume = Callable[[str], None]


class AutomationDelegate:
    """Receives progress from an AutomationRunner.

    Every callback is invoked on the bridge's event loop. Override only the
    ones you need; the rest do nothing.
    """

    def will_execute(self, action: Action, index: int) -> None:
        pass

    def did_produce(self, result: Any, action: Action, index: int) -> None:
        pass

    def needs_input(self, resume: Resume, action: Action, index: int) -> None:
        """Call ``resume`` with the text to type, now or later."""
        resume("")

    def did_fail(self, error: PageflowError | Exception, action: Action, index: int) -> None:
        pass

    def did_finish(self) -> None:
        pass
