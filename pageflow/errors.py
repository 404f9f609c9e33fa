from __future__ import annotations

from typing import Any


class PageflowError(Exception):
    """Base class for errors raised by pageflow."""


class ActionDecodeError(PageflowError, ValueError):
    def __init__(self, message: str, data: Any = None) -> None:
        self.data = data
        super().__init__(message)


class BookmarkError(PageflowError):
    pass


class ScriptEvaluationError(PageflowError):
    def __init__(self, script: str, reason: str) -> None:
        self.script = script
        self.reason = reason
        super().__init__(f"Script evaluation failed: {reason}")


class ExecutionContextError(PageflowError, RuntimeError):
    pass
