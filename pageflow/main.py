from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from PIL import Image
from rich import print as console_print
from rich.logging import RichHandler
from rich.prompt import Prompt

from pageflow.automation.delegate import AutomationDelegate, Resume
from pageflow.automation.document import AutomationDocument
from pageflow.automation.runner import AutomationRunner
from pageflow.browser.actions import Action
from pageflow.browser.playwright_bridge import launch_bridge
from pageflow.browser.session_store import JsonSessionStore


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a saved web automation document")
    parser.add_argument("document", help="Path to the automation document (JSON)")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--session-file", help="Where cookies are kept between runs")
    parser.add_argument("--output", default="results", help="Directory for extracted images")
    return parser.parse_args()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class ConsoleDelegate(AutomationDelegate):
    def __init__(self, total: int) -> None:
        self.total = total

    def will_execute(self, action: Action, index: int) -> None:
        console_print(f"⏳ Step {index + 1}/{self.total}: {action.description}")

    def did_produce(self, result: Any, action: Action, index: int) -> None:
        if isinstance(result, Image.Image):
            console_print(f"   📷 Image {result.width}x{result.height}")
        else:
            console_print(f"   📄 {str(result)[:200]}")

    def did_fail(self, error: Exception, action: Action, index: int) -> None:
        console_print(f"   ❌ {error}")

    def needs_input(self, resume: Resume, action: Action, index: int) -> None:
        loop = asyncio.get_running_loop()
        answer = loop.run_in_executor(None, Prompt.ask, f"   ✏️  Text for {action.selector}")
        answer.add_done_callback(lambda done: resume("" if done.exception() else done.result()))


def _save_results(results: list[Any], output_dir: Path) -> list[str]:
    saved: list[str] = []
    for position, result in enumerate(results, start=1):
        if isinstance(result, Image.Image):
            output_dir.mkdir(parents=True, exist_ok=True)
            path = output_dir / f"result_{position}.png"
            result.save(path)
            saved.append(str(path))
        else:
            saved.append(str(result))
    return saved


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    load_dotenv()
    verbose = _env_flag("PAGEFLOW_VERBOSE")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )

    headless = not args.headed and _env_flag("PAGEFLOW_HEADLESS", default=True)
    session_file = Path(args.session_file or os.getenv("PAGEFLOW_SESSION_FILE", ".pageflow/session.json"))
    settle_delay = float(os.getenv("PAGEFLOW_SETTLE_SECONDS", "1.0"))

    document = AutomationDocument.load(Path(args.document))
    console_print(f"\n🎯 Running: {document.name} ({len(document.actions)} steps)\n")

    async with launch_bridge(JsonSessionStore(session_file), headless=headless) as bridge:
        runner = AutomationRunner(
            document.actions,
            bridge,
            ConsoleDelegate(len(document.actions)),
            settle_delay=settle_delay,
        )
        results = await runner.run()

    return {
        "document": document.name,
        "steps": len(document.actions),
        "results": _save_results(results, Path(args.output)),
        "verbose": verbose,
    }


def main() -> None:
    args = _parse_args()
    result = asyncio.run(_run(args))

    console_print("\n" + "=" * 60)
    console_print(f"Steps: {result['steps']}")
    console_print(f"Results: {len(result['results'])}")
    for position, value in enumerate(result["results"], start=1):
        console_print(f"  {position}. {value}")
    console_print("=" * 60 + "\n")

    if result["verbose"]:
        console_print("\nDetailed result:")
        console_print(result)


if __name__ == "__main__":
    main()
