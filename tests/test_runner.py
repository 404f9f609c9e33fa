from __future__ import annotations

import asyncio
import io
import logging
import time
from pathlib import Path
from typing import Any

import httpx
import pytest
from PIL import Image

from fake_bridge import FakeBridge, FakeFrame, RecordingDelegate
from pageflow.automation.delegate import Resume
from pageflow.automation.runner import AutomationRunner, EngineState
from pageflow.browser.actions import (
    PLACEHOLDER_FILE,
    Action,
    Click,
    GetResult,
    Iframe,
    Input,
    OpenURL,
    UploadFile,
    URLChange,
    render,
)
from pageflow.browser.scripts import missing_script
from pageflow.errors import ExecutionContextError, ScriptEvaluationError

FAST = {"settle_delay": 0, "mutation_settle": 0, "image_recheck_delay": 0.01}


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (2, 2), "red").save(buffer, format="PNG")
    return buffer.getvalue()


def test_empty_action_list_finishes_immediately() -> None:
    delegate = RecordingDelegate()

    async def scenario() -> list:
        bridge = FakeBridge(asyncio.get_running_loop())
        runner = AutomationRunner([], bridge, delegate)
        return await runner.run()

    assert asyncio.run(scenario()) == []
    assert delegate.kinds() == ["did_finish"]


def test_run_outside_event_loop_fails_loudly() -> None:
    loop = asyncio.new_event_loop()
    try:
        runner = AutomationRunner([Action(Click("#a"))], FakeBridge(loop))
        with pytest.raises(ExecutionContextError):
            runner.run()
    finally:
        loop.close()


def test_get_result_classifies_strings_and_images() -> None:
    png = _png_bytes()
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=png)))
    delegate = RecordingDelegate()

    async def scenario() -> list:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present |= {"#title", "#logo"}
        bridge.main.values.update({"#title": "hello", "#logo": "https://example.com/a.png"})
        actions = [Action(GetResult("#title")), Action(GetResult("#logo"))]
        runner = AutomationRunner(actions, bridge, delegate, http_client=client, **FAST)
        return await runner.run()

    results = asyncio.run(scenario())

    assert results[0] == "hello"
    assert isinstance(results[1], Image.Image)
    assert results[1].size == (2, 2)
    assert delegate.kinds() == ["will_execute", "did_produce", "will_execute", "did_produce", "did_finish"]


def test_soft_miss_skips_action_after_timeout() -> None:
    async def scenario() -> tuple[list, float, FakeBridge]:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present.add("#title")
        bridge.main.values["#title"] = "hello"
        actions = [Action(Click("#never"), timeout=0.2), Action(GetResult("#title"))]
        runner = AutomationRunner(actions, bridge, **FAST)
        started = time.monotonic()
        results = await runner.run()
        return results, time.monotonic() - started, bridge

    results, elapsed, bridge = asyncio.run(scenario())

    assert results == ["hello"]
    assert elapsed >= 0.2
    assert render(Click("#never")) not in [script for script, _ in bridge.scripts]


def test_waits_for_element_until_dom_mutation() -> None:
    async def scenario() -> FakeBridge:
        loop = asyncio.get_running_loop()
        bridge = FakeBridge(loop)
        runner = AutomationRunner([Action(Click("#late"))], bridge, **FAST)
        loop.call_later(0.05, bridge.add, "#late")
        await runner.run()
        return bridge

    bridge = asyncio.run(scenario())

    assert render(Click("#late")) in [script for script, _ in bridge.scripts]


def test_stop_during_element_wait_returns_partial_results() -> None:
    delegate = RecordingDelegate()

    async def scenario() -> tuple[list, FakeBridge, AutomationRunner]:
        loop = asyncio.get_running_loop()
        bridge = FakeBridge(loop)
        bridge.main.present.add("#title")
        bridge.main.values["#title"] = "hello"
        actions = [Action(GetResult("#title")), Action(Click("#never")), Action(GetResult("#title"))]
        runner = AutomationRunner(actions, bridge, delegate, **FAST)

        def stop() -> None:
            delegate.events.append(("stop",))
            runner.stop()

        loop.call_later(0.1, stop)
        results = await runner.run()
        return results, bridge, runner

    results, bridge, runner = asyncio.run(scenario())

    assert results == ["hello"]
    assert runner.state is EngineState.STOPPED
    assert bridge.resets == 1
    kinds = delegate.kinds()
    assert kinds[kinds.index("stop") + 1:] == ["did_finish"]


def test_iframe_runs_nested_action_in_resolved_frame() -> None:
    async def scenario() -> tuple[list, FakeBridge, FakeFrame]:
        bridge = FakeBridge(asyncio.get_running_loop())
        frame = FakeFrame("checkout", present={"#total"}, values={"#total": "42 EUR"})
        bridge.frames["#payment"] = frame
        bridge.main.present.add("#payment")
        runner = AutomationRunner([Action(Iframe("#payment", GetResult("#total")))], bridge, **FAST)
        return await runner.run(), bridge, frame

    results, bridge, frame = asyncio.run(scenario())

    assert results == ["42 EUR"]
    assert render(Iframe("#payment", GetResult("#total"))) in bridge.scripts_in(frame)


def test_input_inside_iframe_is_injected_by_script() -> None:
    async def scenario() -> tuple[FakeBridge, FakeFrame]:
        bridge = FakeBridge(asyncio.get_running_loop())
        frame = FakeFrame("login", present={"#user"})
        bridge.frames["#login"] = frame
        bridge.main.present.add("#login")
        runner = AutomationRunner([Action(Iframe("#login", Input("#user", "héllo")))], bridge, **FAST)
        await runner.run()
        return bridge, frame

    bridge, frame = asyncio.run(scenario())

    assert render(Input("#user", "héllo"), frame_relative=True) in bridge.scripts_in(frame)
    assert bridge.inserted == []


def test_interactive_input_asks_delegate_for_text() -> None:
    delegate = RecordingDelegate(answer="Ada")

    async def scenario() -> FakeBridge:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present.add("#name")
        runner = AutomationRunner([Action(Input("#name", ""))], bridge, delegate, **FAST)
        await runner.run()
        return bridge

    bridge = asyncio.run(scenario())

    assert "needs_input" in delegate.kinds()
    assert bridge.inserted == ["Ada"]
    assert render(Input("#name", "Ada")) in bridge.scripts_in(bridge.main)


def test_open_url_waits_for_load_then_continues() -> None:
    async def scenario() -> tuple[list, FakeBridge]:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present.add("#title")
        bridge.main.values["#title"] = "welcome"
        actions = [Action(OpenURL("https://example.com", mobile=True)), Action(GetResult("#title"))]
        runner = AutomationRunner(actions, bridge, **FAST)
        return await runner.run(), bridge

    results, bridge = asyncio.run(scenario())

    assert bridge.opened == [("https://example.com", True)]
    assert results == ["welcome"]


def test_url_change_waits_for_next_load() -> None:
    async def scenario() -> float:
        loop = asyncio.get_running_loop()
        bridge = FakeBridge(loop)
        runner = AutomationRunner([Action(URLChange())], bridge, **FAST)
        loop.call_later(0.15, bridge.finish_load)
        started = time.monotonic()
        await runner.run()
        return time.monotonic() - started

    assert asyncio.run(scenario()) >= 0.15


def test_evaluation_failure_is_reported_and_run_continues() -> None:
    delegate = RecordingDelegate()

    async def scenario() -> list:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present |= {"#broken", "#title"}
        bridge.main.values["#title"] = "still here"
        bridge.failing.add("#broken")
        actions = [Action(Click("#broken")), Action(GetResult("#title"))]
        runner = AutomationRunner(actions, bridge, delegate, **FAST)
        return await runner.run()

    assert asyncio.run(scenario()) == ["still here"]
    assert isinstance(delegate.errors[0], ScriptEvaluationError)


def test_upload_file_hands_file_to_bridge(tmp_path: Path) -> None:
    upload = tmp_path / "cv.pdf"
    upload.write_bytes(b"%PDF")

    async def scenario() -> FakeBridge:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present |= {"#upload", "#other"}
        actions = [Action(UploadFile("#upload", upload)), Action(UploadFile("#other", PLACEHOLDER_FILE))]
        runner = AutomationRunner(actions, bridge, **FAST)
        await runner.run()
        return bridge

    bridge = asyncio.run(scenario())

    assert [(selector, path) for selector, path, _ in bridge.files] == [("#upload", upload)]
    assert render(Click("#other")) in bridge.scripts_in(bridge.main)


def test_image_extraction_waits_for_source() -> None:
    async def scenario() -> tuple[list, FakeBridge]:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present.add("div.cover > img")
        bridge.main.values["div.cover > img"] = "not-a-url"
        bridge.unset_sources["div.cover > img"] = 2
        runner = AutomationRunner([Action(GetResult("div.cover > img"))], bridge, **FAST)
        return await runner.run(), bridge

    results, bridge = asyncio.run(scenario())

    checks = [script for script, _ in bridge.scripts if "isSrcUndefined" in script]
    assert len(checks) == 3
    assert results == ["not-a-url"]


def test_invalid_url_in_extracted_text_is_kept_as_text() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    async def scenario() -> list:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present |= {"#a", "#b"}
        bridge.main.values.update({"#a": "http://[::1", "#b": "next"})
        actions = [Action(GetResult("#a")), Action(GetResult("#b"))]
        runner = AutomationRunner(actions, bridge, http_client=client, **FAST)
        return await runner.run()

    assert asyncio.run(scenario()) == ["http://[::1", "next"]


class BrokenExtractionBridge(FakeBridge):
    async def evaluate(self, script: str, frame: Any = None) -> Any:
        if "getData" in script and "#broken" in script:
            raise RuntimeError("page went away")
        return await super().evaluate(script, frame)


def test_unexpected_step_error_is_reported_and_run_continues() -> None:
    delegate = RecordingDelegate()

    async def scenario() -> list:
        bridge = BrokenExtractionBridge(asyncio.get_running_loop())
        bridge.main.present |= {"#broken", "#title"}
        bridge.main.values["#title"] = "after"
        actions = [Action(GetResult("#broken")), Action(GetResult("#title"))]
        runner = AutomationRunner(actions, bridge, delegate, **FAST)
        return await runner.run()

    assert asyncio.run(scenario()) == ["after"]
    assert isinstance(delegate.errors[0], RuntimeError)
    assert delegate.kinds()[-1] == "did_finish"


class RacingBridge(FakeBridge):
    """Element appears while the first existence check is in flight."""

    def __init__(self, loop: asyncio.AbstractEventLoop, selector: str) -> None:
        super().__init__(loop)
        self.selector = selector
        self.raced = False

    async def evaluate(self, script: str, frame: Any = None) -> Any:
        result = await super().evaluate(script, frame)
        if not self.raced and script == missing_script(self.selector):
            self.raced = True
            self.add(self.selector)
        return result


def test_mutation_during_existence_check_is_not_lost() -> None:
    async def scenario() -> RacingBridge:
        bridge = RacingBridge(asyncio.get_running_loop(), "#late")
        runner = AutomationRunner([Action(Click("#late"))], bridge, **FAST)
        await asyncio.wait_for(runner.run(), timeout=2)
        return bridge

    bridge = asyncio.run(scenario())

    assert render(Click("#late")) in bridge.scripts_in(bridge.main)


class SilentDelegate(RecordingDelegate):
    def needs_input(self, resume: Resume, action: Action, index: int) -> None:
        self.events.append(("needs_input", index, action))


def test_stop_while_waiting_for_input() -> None:
    delegate = SilentDelegate()

    async def scenario() -> tuple[list, FakeBridge, AutomationRunner]:
        loop = asyncio.get_running_loop()
        bridge = FakeBridge(loop)
        bridge.main.present |= {"#title", "#name"}
        bridge.main.values["#title"] = "hello"
        actions = [Action(GetResult("#title")), Action(Input("#name", "")), Action(GetResult("#title"))]
        runner = AutomationRunner(actions, bridge, delegate, **FAST)

        def stop() -> None:
            delegate.events.append(("stop",))
            runner.stop()

        loop.call_later(0.1, stop)
        return await asyncio.wait_for(runner.run(), timeout=2), bridge, runner

    results, bridge, runner = asyncio.run(scenario())

    assert results == ["hello"]
    assert runner.state is EngineState.STOPPED
    assert bridge.inserted == []
    kinds = delegate.kinds()
    assert "needs_input" in kinds
    assert kinds[kinds.index("stop") + 1:] == ["did_finish"]


def test_stop_while_waiting_for_navigation() -> None:
    delegate = RecordingDelegate()

    async def scenario() -> tuple[list, AutomationRunner]:
        loop = asyncio.get_running_loop()
        bridge = FakeBridge(loop)
        bridge.main.present.add("#title")
        bridge.main.values["#title"] = "hello"
        actions = [Action(GetResult("#title")), Action(URLChange()), Action(GetResult("#title"))]
        runner = AutomationRunner(actions, bridge, delegate, **FAST)

        def stop() -> None:
            delegate.events.append(("stop",))
            runner.stop()

        loop.call_later(0.1, stop)
        return await asyncio.wait_for(runner.run(), timeout=2), runner

    results, runner = asyncio.run(scenario())

    assert results == ["hello"]
    assert runner.state is EngineState.STOPPED
    kinds = delegate.kinds()
    assert kinds[kinds.index("stop") + 1:] == ["did_finish"]


def test_soft_miss_inside_iframe() -> None:
    async def scenario() -> tuple[list, float, FakeBridge, FakeFrame]:
        bridge = FakeBridge(asyncio.get_running_loop())
        frame = FakeFrame("checkout")
        bridge.frames["#payment"] = frame
        bridge.main.present |= {"#payment", "#title"}
        bridge.main.values["#title"] = "hello"
        actions = [Action(Iframe("#payment", Click("#pay")), timeout=0.2), Action(GetResult("#title"))]
        runner = AutomationRunner(actions, bridge, **FAST)
        started = time.monotonic()
        results = await runner.run()
        return results, time.monotonic() - started, bridge, frame

    results, elapsed, bridge, frame = asyncio.run(scenario())

    assert results == ["hello"]
    assert elapsed >= 0.2
    assert missing_script("#pay") in bridge.scripts_in(frame)
    assert render(Click("#pay")) not in bridge.scripts_in(frame)


def test_nested_iframes_run_in_innermost_frame() -> None:
    async def scenario() -> tuple[list, FakeBridge, FakeFrame, FakeFrame]:
        bridge = FakeBridge(asyncio.get_running_loop())
        outer = FakeFrame("outer", present={"#inner"})
        inner = FakeFrame("inner", present={"#total"}, values={"#total": "7"})
        bridge.frames.update({"#outer": outer, "#inner": inner})
        bridge.main.present.add("#outer")
        action = Action(Iframe("#outer", Iframe("#inner", GetResult("#total"))))
        runner = AutomationRunner([action], bridge, **FAST)
        return await runner.run(), bridge, outer, inner

    results, bridge, outer, inner = asyncio.run(scenario())

    assert results == ["7"]
    assert missing_script("#inner") in bridge.scripts_in(outer)
    assert render(GetResult("#total")) in bridge.scripts_in(inner)


def test_failed_reset_after_stop_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> list:
        loop = asyncio.get_running_loop()
        bridge = FakeBridge(loop)
        bridge.reset_error = RuntimeError("browser closed")
        runner = AutomationRunner([Action(Click("#never"))], bridge, **FAST)
        loop.call_later(0.05, runner.stop)
        results = await runner.run()
        await asyncio.sleep(0.05)
        assert runner._thread is None
        return results

    with caplog.at_level(logging.WARNING):
        assert asyncio.run(scenario()) == []

    assert "browser closed" in caplog.text


def test_image_source_recheck_is_bounded() -> None:
    async def scenario() -> tuple[list, FakeBridge]:
        bridge = FakeBridge(asyncio.get_running_loop())
        bridge.main.present.add("img.avatar")
        bridge.main.values["img.avatar"] = "placeholder"
        bridge.unset_sources["img.avatar"] = 100
        runner = AutomationRunner([Action(GetResult("img.avatar"))], bridge, max_image_rechecks=3, **FAST)
        return await runner.run(), bridge

    results, bridge = asyncio.run(scenario())

    checks = [script for script, _ in bridge.scripts if "isSrcUndefined" in script]
    assert len(checks) == 4
    assert results == ["placeholder"]
