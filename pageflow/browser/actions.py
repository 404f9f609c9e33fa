from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union
from uuid import UUID, uuid4

# Stand-in for an upload whose file reference could not be resolved.
PLACEHOLDER_FILE = Path("/file")

HELPERS = "__pageflow"


@dataclass(frozen=True, slots=True)
class Click:
    selector: str


@dataclass(frozen=True, slots=True)
class Input:
    selector: str
    text: str


@dataclass(frozen=True, slots=True)
class Iframe:
    selector: str
    action: ActionType


@dataclass(frozen=True, slots=True)
class GetResult:
    selector: str


@dataclass(frozen=True, slots=True)
class URLChange:
    pass


@dataclass(frozen=True, slots=True)
class UploadFile:
    selector: str
    file: Path


@dataclass(frozen=True, slots=True)
class OpenURL:
    url: str
    mobile: bool = False


ActionType = Union[Click, Input, Iframe, GetResult, URLChange, UploadFile, OpenURL]

SELECTOR_TYPES = (Click, Input, Iframe, GetResult, UploadFile)


@dataclass(frozen=True, slots=True)
class Action:
    """One automation step.

    Equality covers the payload and the timeout. The identifier is only a
    handle for presentation layers and never takes part in comparisons.
    """

    type: ActionType
    timeout: float = 0.0
    id: UUID = field(default_factory=uuid4, compare=False)

    @property
    def script(self) -> str:
        return render(self.type)

    @property
    def description(self) -> str:
        return describe(self.type)

    @property
    def accessibility_label(self) -> str:
        return accessibility_label(self.type)

    @property
    def selector(self) -> str | None:
        if isinstance(self.type, SELECTOR_TYPES):
            return self.type.selector
        return None

    @property
    def ask_for_value_each_time(self) -> bool:
        """Whether the caller must supply the value when the step runs."""
        match self.type:
            case Input(text=text):
                return text == ""
            case UploadFile(file=file):
                return file == PLACEHOLDER_FILE
            case _:
                return False

    def is_similar(self, other: Action) -> bool:
        """Loose comparison over the rendered description and the timeout."""
        return self.description == other.description and self.timeout == other.timeout

    def similarity_key(self) -> str:
        return self.description


def _query(selector: str) -> str:
    return f"document.querySelector({json.dumps(selector)})"


def render(target: Action | ActionType, *, frame_relative: bool = False) -> str:
    """Return the JavaScript expression that performs the action's effect.

    ``frame_relative`` selects the variant used inside a sub-frame, where text
    cannot be typed through the keyboard and is injected by script instead.
    """
    action_type = target.type if isinstance(target, Action) else target
    match action_type:
        case Click(selector=selector):
            return f"{HELPERS}.click({_query(selector)})"
        case Input(selector=selector, text=text):
            if frame_relative:
                encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
                return f"{HELPERS}.input({_query(selector)}, {json.dumps(encoded)})"
            return f"{_query(selector)}.focus()"
        case GetResult(selector=selector):
            return f"{HELPERS}.getData({_query(selector)})"
        case Iframe(action=inner):
            if isinstance(inner, Input):
                return render(inner, frame_relative=True)
            return render(inner)
        case UploadFile(selector=selector):
            return render(Click(selector))
        case URLChange() | OpenURL():
            return ""
    raise TypeError(f"Unsupported action type: {action_type!r}")


def describe(target: Action | ActionType) -> str:
    action_type = target.type if isinstance(target, Action) else target
    match action_type:
        case Click(selector=selector):
            return f"Click element at {selector}"
        case Input(selector=selector, text=text):
            return f"Type {text} at {selector}"
        case URLChange():
            return "URL change"
        case OpenURL(url=url, mobile=mobile):
            return f"Open {url} ({'Mobile' if mobile else 'Desktop'})"
        case GetResult(selector=selector):
            return f"Get content at {selector}"
        case Iframe(selector=selector, action=inner):
            return f"In iframe at {selector} {describe(inner)}"
        case UploadFile(selector=selector, file=file):
            return f"Upload {file.name} at {selector}"
    raise TypeError(f"Unsupported action type: {action_type!r}")


def accessibility_label(target: Action | ActionType) -> str:
    action_type = target.type if isinstance(target, Action) else target
    match action_type:
        case Click():
            return "Click element"
        case Input(text=text):
            return f"Input '{text}'"
        case URLChange():
            return "URL Change"
        case OpenURL(url=url):
            return f"Open {url}"
        case UploadFile(file=file):
            return f"Upload {file.name}"
        case Iframe(action=inner):
            return accessibility_label(inner)
        case GetResult():
            return "Get content"
    raise TypeError(f"Unsupported action type: {action_type!r}")
