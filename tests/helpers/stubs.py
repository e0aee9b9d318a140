from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from synergy.core.config import Settings
from synergy.orchestration.executors import AgentExecutor, AgentResponse, ExecutionContext, ToolExecutor


class FakeClock:
    """Manually advanced UTC clock for TTL and expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


Handler = Callable[[str, str, ExecutionContext], Awaitable["str | AgentResponse"]]


class StubAgentExecutor(AgentExecutor):
    """Answers from a handler, or echoes the first line of the message back."""

    def __init__(self, handler: Handler | None = None, *, default: str | None = None) -> None:
        self._handler = handler
        self._default = default
        self.calls: list[tuple[str, str, ExecutionContext]] = []

    async def execute(self, system_prompt: str, user_message: str, context: ExecutionContext) -> str | AgentResponse:
        self.calls.append((system_prompt, user_message, context))
        if self._handler is not None:
            return await self._handler(system_prompt, user_message, context)
        if self._default is not None:
            return self._default
        return f"done: {user_message.splitlines()[0]}"

    def calls_in_mode(self, mode: str) -> list[tuple[str, str, ExecutionContext]]:
        return [call for call in self.calls if call[2].data.get("mode") == mode]


class BlockingAgentExecutor(AgentExecutor):
    """Holds every task call until ``release`` is set; other modes answer at once."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started: list[str] = []

    async def execute(self, system_prompt: str, user_message: str, context: ExecutionContext) -> str:
        if context.data.get("mode") == "task" and context.task is not None:
            self.started.append(context.task.id)
            await self.release.wait()
            return f"finished {context.task.title}"
        return "ok"


class StubToolExecutor(ToolExecutor):
    def __init__(self, *, fail_on: set[str] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._fail_on = set(fail_on or ())

    async def execute(self, tool_name: str, args: Mapping[str, Any]) -> Any:
        self.calls.append((tool_name, dict(args)))
        if tool_name in self._fail_on:
            raise RuntimeError(f"{tool_name} exited with status 1")
        if tool_name == "write_file":
            Path(str(args["path"])).write_text(str(args.get("content", "")), encoding="utf-8")
        return {"tool": tool_name, "ok": True}


def make_settings(root: Path, **sections: Mapping[str, Any]) -> Settings:
    """Settings rooted under a temporary directory with fast retries."""
    values: dict[str, Any] = {
        "environment": "test",
        "storage": {"data_dir": root / "data"},
        "audit": {"log_dir": root / "audit"},
        "rollback": {"backup_dir": root / "rollback"},
        "scheduling": {
            "default_retry_attempts": 1,
            "base_backoff_seconds": 0.0,
            "max_backoff_seconds": 0.0,
            "task_timeout_seconds": 5.0,
        },
        "decisions": {"approval_timeout_seconds": 5.0},
    }
    for name, overrides in sections.items():
        current = dict(values.get(name, {}))
        current.update(overrides)
        values[name] = current
    return Settings(**values)


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the loop until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
