from __future__ import annotations

import json
import sys
import textwrap
import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest

from cowork.runtime.config import CoworkConfig
from cowork.runtime.event_bus import EventBus

FAKE_AGENT_SOURCE = textwrap.dedent(
    """
    import json
    import os
    import sys
    import time

    argv_path = os.environ.get("FAKE_AGENT_ARGV")
    if argv_path:
        with open(argv_path, "w", encoding="utf-8") as f:
            json.dump(sys.argv[1:], f)

    with open(os.environ["FAKE_AGENT_PLAN"], encoding="utf-8") as f:
        plan = json.load(f)

    for step in plan.get("steps", []):
        if "sleep" in step:
            time.sleep(step["sleep"])
        elif "stderr" in step:
            sys.stderr.write(step["stderr"] + "\\n")
            sys.stderr.flush()
        elif "raw" in step:
            sys.stdout.write(step["raw"] + "\\n")
            sys.stdout.flush()
        else:
            sys.stdout.write(json.dumps(step["out"]) + "\\n")
            sys.stdout.flush()

    sys.exit(plan.get("exit", 0))
    """
)


class FakeAgent:
    def __init__(self, root: Path) -> None:
        self.script = root / "fake_agent.py"
        self.script.write_text(FAKE_AGENT_SOURCE, encoding="utf-8")
        self.plan_path = root / "plan.json"
        self.argv_path = root / "argv.json"

    def plan(self, steps: list[dict[str, Any]], *, exit_code: int = 0) -> dict[str, str]:
        self.plan_path.write_text(json.dumps({"steps": steps, "exit": exit_code}), encoding="utf-8")
        return {"FAKE_AGENT_PLAN": str(self.plan_path), "FAKE_AGENT_ARGV": str(self.argv_path)}

    def recorded_argv(self) -> list[str]:
        return json.loads(self.argv_path.read_text(encoding="utf-8"))

    def config(self, data_dir: Path, **overrides: Any) -> CoworkConfig:
        values: dict[str, Any] = {
            "agent_command": sys.executable,
            "agent_args": (str(self.script),),
            "include_partial_messages": False,
            "cancel_grace_s": 1.0,
            "save_debounce_s": 0.05,
            "data_dir": data_dir,
        }
        values.update(overrides)
        return CoworkConfig(**values)


class Recorder:
    """Thread-safe event sink for EventBus subscriptions and runner callbacks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[Any] = []

    def __call__(self, *args: Any) -> None:
        event = args[-1]
        with self._lock:
            self.events.append(event)

    def kinds(self) -> list[str]:
        with self._lock:
            return [e.kind for e in self.events]

    def of_kind(self, kind: str) -> list[Any]:
        with self._lock:
            return [e for e in self.events if e.kind == kind]


def wait_until(predicate: Callable[[], bool], *, timeout_s: float = 5.0, interval_s: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval_s)
    return predicate()


@pytest.fixture
def fake_agent(tmp_path: Path) -> FakeAgent:
    return FakeAgent(tmp_path)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def event_bus(recorder: Recorder) -> EventBus:
    bus = EventBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COWORK_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("COWORK_CONFIG_PATH", raising=False)
    monkeypatch.delenv("COWORK_APPROVAL_PORT", raising=False)
