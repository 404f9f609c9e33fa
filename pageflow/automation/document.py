from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pageflow.automation.codec import decode_actions, encode_actions
from pageflow.browser.actions import Action
from pageflow.errors import ActionDecodeError


@dataclass(slots=True)
class AutomationDocument:
    """A named, ordered list of actions stored as JSON."""

    name: str
    actions: list[Action] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "actions": encode_actions(self.actions)}

    @classmethod
    def from_dict(cls, data: Any, default_name: str = "Untitled") -> AutomationDocument:
        # Older documents are a bare list of actions.
        if isinstance(data, list):
            return cls(name=default_name, actions=decode_actions(data))
        if not isinstance(data, dict):
            raise ActionDecodeError("Document must be an object or an array", data)
        name = str(data.get("name") or default_name)
        return cls(name=name, actions=decode_actions(data.get("actions", [])))

    def save(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> AutomationDocument:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ActionDecodeError(f"{path} is not valid JSON: {exc}") from exc
        return cls.from_dict(data, default_name=path.stem)
