from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pageflow.automation.bookmarks import create_bookmark, resolve_bookmark
from pageflow.browser.actions import (
    PLACEHOLDER_FILE,
    Action,
    ActionType,
    Click,
    GetResult,
    Iframe,
    Input,
    OpenURL,
    UploadFile,
    URLChange,
)
from pageflow.errors import ActionDecodeError, BookmarkError

logger = logging.getLogger(__name__)


def encode_action_type(action_type: ActionType) -> dict[str, Any]:
    match action_type:
        case Click(selector=selector):
            return {"click": selector}
        case Input(selector=selector, text=text):
            return {"input": [selector, text]}
        case URLChange():
            return {"urlChange": True}
        case OpenURL(url=url, mobile=mobile):
            return {"openURL": {"url": url, "mobile": mobile}}
        case GetResult(selector=selector):
            return {"getResult": selector}
        case Iframe(selector=selector, action=inner):
            return {"iframe": {"path": selector, "action": encode_action_type(inner)}}
        case UploadFile(selector=selector, file=file):
            token = "" if file == PLACEHOLDER_FILE else create_bookmark(file)
            return {"uploadFile": [selector, token]}
    raise TypeError(f"Unsupported action type: {action_type!r}")


def decode_action_type(data: Any) -> ActionType:
    if not isinstance(data, dict):
        raise ActionDecodeError("Action type must be an object", data)

    if "urlChange" in data:
        return URLChange()

    click = data.get("click")
    if isinstance(click, str):
        return Click(click)

    values = data.get("input")
    if _is_string_pair(values):
        return Input(values[0], values[1])

    target = data.get("openURL")
    if isinstance(target, str):
        return OpenURL(target, False)
    if isinstance(target, dict) and isinstance(target.get("url"), str):
        return OpenURL(target["url"], bool(target.get("mobile", False)))

    path = data.get("getResult")
    if isinstance(path, str):
        return GetResult(path)

    iframe = data.get("iframe")
    if isinstance(iframe, dict) and isinstance(iframe.get("path"), str) and "action" in iframe:
        return Iframe(iframe["path"], decode_action_type(iframe["action"]))

    upload = data.get("uploadFile")
    if _is_string_pair(upload):
        return UploadFile(upload[0], _resolve_upload(upload[1]))

    raise ActionDecodeError(f"Unrecognized action type keys: {sorted(data)}", data)


def encode_action(action: Action) -> dict[str, Any]:
    return {"type": encode_action_type(action.type), "timeout": action.timeout}


def decode_action(data: Any) -> Action:
    if not isinstance(data, dict) or "type" not in data:
        raise ActionDecodeError("Action must be an object with a 'type' key", data)
    action_type = decode_action_type(data["type"])
    return Action(type=action_type, timeout=_timeout(data.get("timeout")))


def encode_actions(actions: list[Action]) -> list[dict[str, Any]]:
    return [encode_action(action) for action in actions]


def decode_actions(data: Any) -> list[Action]:
    if not isinstance(data, list):
        raise ActionDecodeError("Action list must be an array", data)
    return [decode_action(raw) for raw in data]


def _is_string_pair(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) == 2
        and all(isinstance(item, str) for item in value)
    )


def _timeout(raw: Any) -> float:
    if isinstance(raw, bool):
        return 0.0
    try:
        return max(float(raw), 0.0)
    except (TypeError, ValueError):
        return 0.0


def _resolve_upload(token: str) -> Path:
    try:
        return resolve_bookmark(token)
    except BookmarkError as exc:
        logger.warning("Falling back to placeholder upload file: %s", exc)
        return PLACEHOLDER_FILE
