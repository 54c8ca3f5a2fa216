"""Shared fixtures: an in-memory stand-in for ChromeConnector."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest


SESSION_ID = "S1"


class FakeConnector:
    """Records calls, serves canned responses and dispatches synthetic events.

    ``responses`` maps a method to a dict, an exception instance, or a callable
    taking params (sync or async) that returns either. ``Runtime.evaluate``
    without an explicit response is answered by ``evaluator(expression)``.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.responses: Dict[str, Any] = {
            "Target.getTargets": {"targetInfos": [{"targetId": "T1", "type": "page"}]},
            "Target.attachToTarget": {"sessionId": SESSION_ID},
        }
        self.evaluator: Callable[[str], Any] = lambda expression: None
        self.event_handlers: Dict[str, List[Callable]] = {}
        self.connected = True
        self.disconnect_count = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, retries: int = 3) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_count += 1
        self.connected = False

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None,
                   session_id: Optional[str] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        self.calls.append((method, params, session_id))

        if method in self.responses:
            response = self.responses[method]
            if callable(response):
                response = response(params)
                if asyncio.iscoroutine(response):
                    response = await response
        elif method == "Runtime.evaluate":
            value = self.evaluator((params or {}).get("expression", ""))
            if isinstance(value, Exception):
                raise value
            response = {"result": {"type": "object", "value": value}}
        else:
            response = {}

        if isinstance(response, Exception):
            raise response
        return response

    async def get_targets(self) -> Dict[str, Any]:
        return await self.call("Target.getTargets")

    def filter_page_targets(self, targets_response: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [t for t in targets_response.get("targetInfos", []) if t.get("type") == "page"]

    def on_event(self, method: str, handler: Callable) -> None:
        self.event_handlers.setdefault(method, []).append(handler)

    def off_event(self, method: str, handler: Optional[Callable] = None) -> None:
        handlers = self.event_handlers.get(method)
        if not handlers:
            return
        if handler is None:
            handlers.clear()
        elif handler in handlers:
            handlers.remove(handler)

    async def emit(self, method: str, params: Optional[Dict[str, Any]] = None,
                   session_id: Optional[str] = SESSION_ID) -> None:
        params = dict(params or {})
        if session_id is not None:
            params.setdefault("sessionId", session_id)
        for handler in list(self.event_handlers.get(method, ())):
            result = handler(params)
            if asyncio.iscoroutine(result):
                await result

    def handler_count(self) -> int:
        return sum(len(handlers) for handlers in self.event_handlers.values())

    def methods(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_connector():
    return FakeConnector()
