from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import logging
import queue
import re
import threading
import time
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from pageflow.automation.delegate import AutomationDelegate, Resume
from pageflow.automation.results import ResultCollector, classify_result
from pageflow.browser.actions import Action, GetResult, Iframe, Input, OpenURL, UploadFile, URLChange, render
from pageflow.browser.bridge import DOM_MUTATED, LOAD_FINISHED, PageBridge
from pageflow.browser.scripts import missing_script, src_missing_script
from pageflow.errors import ExecutionContextError, ScriptEvaluationError

logger = logging.getLogger(__name__)

_COMPLETED = "completed"
_INPUT = "input"
_STOP = "stop"

# Last compound of the selector is an <img>, e.g. "div.cover > img".
_IMAGE_SELECTOR = re.compile(r"(?:^|[\s>+~])img(?:[.#:\[][^\s>+~]*)?\s*$")


class EngineState(Enum):
    IDLE = "idle"
    PROBING = "probing"
    EXECUTING_LEAF = "executing-leaf"
    WAITING_FOR_ELEMENT = "waiting-for-element"
    WAITING_FOR_NAVIGATION = "waiting-for-navigation"
    WAITING_FOR_INPUT = "waiting-for-input"
    ADVANCING = "advancing"
    FINISHED = "finished"
    STOPPED = "stopped"


@dataclass(slots=True)
class _Message:
    kind: str
    token: int = 0
    payload: Any = None


class _Stopped(Exception):
    pass


class AutomationRunner:
    """Executes a list of actions on a page, one step at a time.

    ``run`` must be called on the bridge's event loop. The steps themselves
    run on a dedicated worker thread which hands every page operation back
    to the loop and blocks on a single channel until the matching reply, a
    bridge event or a stop request arrives.
    """

    def __init__(
        self,
        actions: Sequence[Action],
        bridge: PageBridge,
        delegate: AutomationDelegate | None = None,
        *,
        settle_delay: float = 1.0,
        mutation_settle: float = 0.5,
        image_recheck_delay: float = 0.5,
        max_image_rechecks: int = 20,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.actions = list(actions)
        self.bridge = bridge
        self.delegate = delegate or AutomationDelegate()
        self.settle_delay = settle_delay
        self.mutation_settle = mutation_settle
        self.image_recheck_delay = image_recheck_delay
        self.max_image_rechecks = max_image_rechecks
        self.http_client = http_client
        self.state = EngineState.IDLE

        self._channel: queue.Queue[_Message] = queue.Queue()
        self._stopping = threading.Event()
        self._tokens = itertools.count(1)
        self._mutation_pending = False
        self._results = ResultCollector()
        self._future: asyncio.Future[list[Any]] | None = None
        self._thread: threading.Thread | None = None

    # Public API

    def run(self) -> asyncio.Future[list[Any]]:
        """Start executing; the returned future resolves to the collected results."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None or loop is not self.bridge.loop:
            raise ExecutionContextError("AutomationRunner.run must be called from the bridge's event loop")
        if self.is_running():
            raise ExecutionContextError("AutomationRunner is already running")

        self._future = loop.create_future()
        self._results = ResultCollector()
        self._channel = queue.Queue()
        self._stopping.clear()
        self._mutation_pending = False

        if not self.actions:
            self.state = EngineState.FINISHED
            self.delegate.did_finish()
            self._future.set_result([])
            return self._future

        self.bridge.on_event(self._on_bridge_event)
        self._thread = threading.Thread(target=self._sequence, name="automation-runner", daemon=True)
        self._thread.start()
        return self._future

    def stop(self) -> None:
        """Abandon the run; it finishes promptly with the results collected so far."""
        if not self.is_running():
            return
        self._stopping.set()
        reset = asyncio.run_coroutine_threadsafe(self.bridge.reset(), self.bridge.loop)
        reset.add_done_callback(_log_reset_failure)
        self._channel.put(_Message(_STOP))

    def is_running(self) -> bool:
        return self._future is not None and not self._future.done()

    # Sequencing (worker thread)

    def _sequence(self) -> None:
        index = 0
        try:
            while index < len(self.actions):
                if self._stopping.is_set():
                    raise _Stopped
                action = self.actions[index]
                try:
                    self._step(index, action, None)
                except _Stopped:
                    raise
                except Exception as exc:
                    logger.exception("Step %d (%s) raised", index, action.description)
                    self._notify("did_fail", exc, action, index)
                self._transition(EngineState.ADVANCING)
                index += 1
        except _Stopped:
            logger.info("Automation stopped at step %d", index)
        self._finalize()

    def _step(self, index: int, action: Action, frame: Any) -> None:
        if not isinstance(action.type, Iframe):
            self._notify("will_execute", action, index)

        match action.type:
            case OpenURL(url=url, mobile=mobile):
                self._open_url(url, mobile)
            case URLChange():
                self._transition(EngineState.WAITING_FOR_NAVIGATION)
                self._receive(lambda message: message.kind == LOAD_FINISHED)
            case _:
                self._run_selector_action(index, action, frame)

    def _open_url(self, url: str, mobile: bool) -> None:
        self._transition(EngineState.WAITING_FOR_NAVIGATION)
        token = self._dispatch(self.bridge.open_url(url, mobile))

        def accept(message: _Message) -> bool:
            if message.kind == LOAD_FINISHED:
                return True
            return message.kind == _COMPLETED and message.token == token and _failed(message.payload)

        message = self._receive(accept)
        if message.kind == _COMPLETED:
            logger.warning("Could not open %s: %s", url, message.payload.exception())

    def _run_selector_action(self, index: int, action: Action, frame: Any) -> None:
        selector = action.selector
        while True:
            self._transition(EngineState.PROBING)
            self._mutation_pending = False
            if not self._is_missing(selector, frame):
                break
            if not self._wait_for_element(selector, frame, action.timeout):
                logger.info("Skipping step %d, %s did not appear within %ss", index, selector, action.timeout)
                return

        match action.type:
            case Iframe(selector=iframe_selector, action=inner):
                scope = self._call(self.bridge.resolve_frame(iframe_selector, frame))
                self._step(index, Action(type=inner, timeout=action.timeout), scope)
                return
            case Input(selector=input_selector) if action.ask_for_value_each_time:
                text = self._request_input(index, action)
                action = Action(type=Input(input_selector, text), timeout=action.timeout)

        self._execute_leaf(index, action, frame)

    def _wait_for_element(self, selector: str, frame: Any, timeout: float) -> bool:
        self._transition(EngineState.WAITING_FOR_ELEMENT)
        deadline = time.monotonic() + timeout if timeout > 0 else None
        while True:
            if self._mutation_pending:
                self._mutation_pending = False
            elif self._receive(lambda message: message.kind == DOM_MUTATED, deadline) is None:
                return False
            if not self._is_missing(selector, frame):
                self._pause(self.mutation_settle)
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False

    def _request_input(self, index: int, action: Action) -> str:
        self._transition(EngineState.WAITING_FOR_INPUT)
        token = next(self._tokens)

        def resume(text: str) -> None:
            self._channel.put(_Message(_INPUT, token, text))

        self._notify("needs_input", resume, action, index)
        message = self._receive(lambda m: m.kind == _INPUT and m.token == token)
        return str(message.payload)

    def _execute_leaf(self, index: int, action: Action, frame: Any) -> None:
        self._transition(EngineState.EXECUTING_LEAF)
        if index > 0:
            self._pause(self.settle_delay)
        if isinstance(action.type, GetResult):
            self._await_image_source(action.type.selector, frame)

        in_main_frame = self.bridge.is_main_frame(frame)
        script = render(action, frame_relative=not in_main_frame)
        try:
            value = self._call(self.bridge.evaluate(script, frame))
        except ScriptEvaluationError as exc:
            logger.warning("Step %d (%s) failed: %s", index, action.description, exc.reason)
            self._notify("did_fail", exc, action, index)
            return

        match action.type:
            case Input(text=text) if in_main_frame:
                self._call_bridge(self.bridge.insert_text(text), action, index)
            case UploadFile(selector=selector, file=file):
                if action.ask_for_value_each_time:
                    logger.info("Leaving the file choice for %s to the user", selector)
                else:
                    self._call_bridge(self.bridge.deliver_file(selector, file, frame), action, index)
            case GetResult():
                result = self._classify(value)
                self._results.push(result)
                self._notify("did_produce", result, action, index)

    def _await_image_source(self, selector: str, frame: Any) -> None:
        if not _IMAGE_SELECTOR.search(selector):
            return
        rechecks = 0
        while True:
            try:
                missing = self._call(self.bridge.evaluate(src_missing_script(selector), frame)) is True
            except ScriptEvaluationError:
                return
            if not missing:
                return
            if rechecks >= self.max_image_rechecks:
                logger.info("Image %s still has no source, extracting anyway", selector)
                return
            rechecks += 1
            self._pause(self.image_recheck_delay)

    def _is_missing(self, selector: str, frame: Any) -> bool:
        try:
            return self._call(self.bridge.evaluate(missing_script(selector), frame)) is True
        except ScriptEvaluationError as exc:
            # Unknown counts as present; the step itself will then report the failure.
            logger.debug("Probe for %s failed: %s", selector, exc.reason)
            return False

    def _classify(self, value: Any) -> Any:
        if self.http_client is not None:
            return classify_result(value, self.http_client)
        with httpx.Client(timeout=15.0, follow_redirects=True) as client:
            return classify_result(value, client)

    def _finalize(self) -> None:
        stopped = self._stopping.is_set()
        self._transition(EngineState.STOPPED if stopped else EngineState.FINISHED)
        results = self._results.snapshot()
        logger.info("Automation ended with %d results", len(results))
        try:
            self.bridge.loop.call_soon_threadsafe(self._complete, results)
        except RuntimeError:
            logger.warning("Event loop closed before the automation finished")

    # Loop side

    def _complete(self, results: list[Any]) -> None:
        self.bridge.remove_handler(self._on_bridge_event)
        self._stopping.clear()
        # The worker has nothing left to do once it scheduled this call.
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
        try:
            self.delegate.did_finish()
        except Exception:
            logger.exception("Delegate did_finish failed")
        if self._future is not None and not self._future.done():
            self._future.set_result(results)

    def _on_bridge_event(self, name: str, payload: dict[str, Any]) -> None:
        self._channel.put(_Message(name, payload=payload))

    def _notify(self, method: str, *args: Any) -> None:
        def deliver() -> None:
            if self._stopping.is_set():
                return
            try:
                getattr(self.delegate, method)(*args)
            except Exception:
                logger.exception("Delegate %s failed", method)

        self.bridge.loop.call_soon_threadsafe(deliver)

    # Channel plumbing

    def _dispatch(self, coro: Coroutine[Any, Any, Any]) -> int:
        token = next(self._tokens)
        future = asyncio.run_coroutine_threadsafe(coro, self.bridge.loop)
        future.add_done_callback(lambda done: self._channel.put(_Message(_COMPLETED, token, done)))
        return token

    def _call(self, coro: Coroutine[Any, Any, Any]) -> Any:
        token = self._dispatch(coro)
        message = self._receive(lambda m: m.kind == _COMPLETED and m.token == token)
        return message.payload.result()

    def _call_bridge(self, coro: Coroutine[Any, Any, Any], action: Action, index: int) -> None:
        try:
            self._call(coro)
        except _Stopped:
            raise
        except Exception as exc:
            logger.warning("Step %d (%s) could not finish: %s", index, action.description, exc)
            self._notify("did_fail", exc, action, index)

    def _receive(self, accept: Callable[[_Message], bool], deadline: float | None = None) -> _Message | None:
        """Block until an accepted message arrives; None once ``deadline`` passes."""
        while True:
            if self._stopping.is_set():
                raise _Stopped
            timeout = None if deadline is None else deadline - time.monotonic()
            if timeout is not None and timeout <= 0:
                return None
            try:
                message = self._channel.get(timeout=timeout)
            except queue.Empty:
                return None
            if message.kind == _STOP:
                raise _Stopped
            if accept(message):
                return message
            if message.kind == DOM_MUTATED:
                self._mutation_pending = True
            logger.debug("Discarding %s message while %s", message.kind, self.state.value)

    def _pause(self, seconds: float) -> None:
        if seconds > 0 and self._stopping.wait(seconds):
            raise _Stopped
        if self._stopping.is_set():
            raise _Stopped

    def _transition(self, state: EngineState) -> None:
        logger.debug("%s -> %s", self.state.value, state.value)
        self.state = state


def _failed(future: concurrent.futures.Future[Any]) -> bool:
    return future.cancelled() or future.exception() is not None


def _log_reset_failure(future: concurrent.futures.Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Page reset after stop failed: %s", exc)
