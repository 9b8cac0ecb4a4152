from __future__ import annotations

import asyncio
import copy
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

import foreman

CATALOG: Dict[str, Any] = {
    "jobs": [
        {
            "type": "example",
            "label": "Example job",
            "nodes": {
                "available": ["broker", "worker-1", "worker-2"],
                "min": 1,
                "max": 2,
                "default": {"broker": True, "worker-1": False},
            },
            "params": [
                {"name": "path", "type": "text", "required": True},
                {"name": "force", "type": "flag", "default": 1},
                {"name": "when", "type": "datetime"},
            ],
        },
        {
            "type": "cleanup",
            "group": "maintenance",
            "nodes": {"available": ["broker"]},
            "props": [{"name": "priority", "type": "combo", "options": [1, 2], "default": 2}],
            "delayRestricted": {"update": True, "delete": True},
        },
        {
            "type": "report",
            "group": "maintenance",
            "nodes": {"available": ["worker-1", "worker-2"], "default": ["worker-1"]},
        },
    ],
    "props": [{"name": "author", "type": "text"}],
    "delayRestricted": {},
    "observer": {},
    "auth": {"user": "operator", "pass": "s3cret"},
}


class FakeTimer:
    def __init__(self, when: float, callback: Callable[..., None], args: Tuple[Any, ...]) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeLoop:
    """Deterministic stand-in for the `call_later` part of an event loop."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> FakeTimer:
        timer = FakeTimer(self.now + delay, callback, args)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [timer for timer in self.active if timer.when <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda item: item.when)
            self.timers.remove(timer)
            self.now = timer.when
            timer.callback(*timer.args)
        self.timers = self.active
        self.now = target


class StubTransport:
    """Records every request; `errors` maps a method name to the exception it raises."""

    def __init__(self, config_payload: Optional[Dict[str, Any]] = None) -> None:
        self.config_payload = config_payload
        self.calls: List[Tuple[str, Any]] = []
        self.errors: Dict[str, Exception] = {}
        self.hold: Optional[asyncio.Event] = None
        self.closed = False

    async def _call(self, name: str, payload: Any) -> None:
        self.calls.append((name, payload))
        if self.hold is not None:
            await self.hold.wait()
        if name in self.errors:
            raise self.errors[name]

    async def load_config(self) -> Dict[str, Any]:
        await self._call("load_config", None)
        return copy.deepcopy(self.config_payload or {})

    async def create(self, jobs: List[Dict[str, Any]]) -> None:
        await self._call("create", jobs)

    async def delay(self, spec: Dict[str, Any], jobs: List[Dict[str, Any]], update_count: int) -> None:
        await self._call("delay", {"delay": spec, "jobs": jobs, "updateCount": update_count})

    async def delete_delayed_work(self, work_filter: Dict[str, Any], update_count: int) -> None:
        await self._call("delete", {"filter": work_filter, "updateCount": update_count})

    async def get_delayed_works(self, work_filter: Optional[Dict[str, Any]] = None) -> None:
        await self._call("get", {"filter": work_filter})

    async def close(self) -> None:
        self.closed = True

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]


class StubHandle:
    def __init__(self, auth: Dict[str, str]) -> None:
        self.auth = auth
        self.listeners: List[Callable[[Dict[str, Any]], Any]] = []

    def add_listener(self, listener: Callable[[Dict[str, Any]], Any]) -> None:
        self.listeners.append(listener)

    def emit(self, event: Dict[str, Any]) -> None:
        for listener in self.listeners:
            listener(event)


class StubStreamClient:
    def __init__(self) -> None:
        self.connects: List[Dict[str, str]] = []
        self.handles: Dict[Tuple[str, str], StubHandle] = {}
        self.closed = False

    def connect(self, auth: Dict[str, str]) -> StubHandle:
        self.connects.append(dict(auth))
        key = (auth.get("user", ""), auth.get("pass", ""))
        if key not in self.handles:
            self.handles[key] = StubHandle(dict(auth))
        return self.handles[key]

    async def close(self) -> None:
        self.closed = True


class AlertLog:
    def __init__(self) -> None:
        self.items: List[Tuple[str, str, bool]] = []

    def __call__(self, message: str, severity: str = "info", persist: bool = False) -> None:
        self.items.append((message, severity, persist))

    @property
    def messages(self) -> List[str]:
        return [message for message, _, _ in self.items]


@pytest.fixture
def catalog_payload() -> Dict[str, Any]:
    return copy.deepcopy(CATALOG)


@pytest.fixture
def config(catalog_payload: Dict[str, Any]) -> foreman.ConsoleConfig:
    return foreman.build_config(catalog_payload)


@pytest.fixture
def fake_loop() -> FakeLoop:
    return FakeLoop()


@pytest.fixture
def transport(catalog_payload: Dict[str, Any]) -> StubTransport:
    return StubTransport(catalog_payload)


@pytest.fixture
def stream_client() -> StubStreamClient:
    return StubStreamClient()


@pytest.fixture
def alerts() -> AlertLog:
    return AlertLog()
