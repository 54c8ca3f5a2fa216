"""Shared collector lifecycle: subscriptions, background tasks, per-recording state."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..config import ProfilerConfig
from ..core.connector import ChromeConnector
from ..errors import InvalidStateError

logger = logging.getLogger(__name__)


class BaseCollector:
    """Base class for the four domain collectors.

    Subclasses implement ``_new_state()``, ``_on_start()`` and ``_on_stop()``.
    A fresh state object is created by every ``start()`` and dropped by
    ``stop()``/``abort()``, so nothing leaks from one recording into the next.
    Domains listed in ``required_domains`` are enabled by the coordinator,
    never by the collector itself.
    """

    name = "collector"
    required_domains: Tuple[str, ...] = ()

    def __init__(self, connector: ChromeConnector, session_id: str,
                 config: Optional[ProfilerConfig] = None):
        self.connector = connector
        self.session_id = session_id
        self.config = config or ProfilerConfig()
        self._state: Any = None
        self._subscriptions: List[Tuple[str, Callable]] = []
        self._tasks: List[asyncio.Task] = []

    @property
    def is_recording(self) -> bool:
        return self._state is not None

    def _new_state(self) -> Any:
        raise NotImplementedError

    async def _on_start(self) -> None:
        raise NotImplementedError

    async def _on_stop(self) -> Any:
        raise NotImplementedError

    async def _on_abort(self) -> None:
        """Undo protocol-side effects of start(); called before teardown on abort."""

    async def start(self) -> None:
        """Begin a recording; on failure every listener is released again."""
        if self._state is not None:
            raise InvalidStateError(f"{self.name} collector is already recording")

        state = self._new_state()
        self._state = state
        try:
            await self._on_start()
            if self._state is not state:
                raise InvalidStateError(f"{self.name} collector was aborted while starting")
        except BaseException:
            await self.abort()
            raise
        logger.debug(f"{self.name} collector started")

    async def stop(self) -> Any:
        """Finalize the recording and return its report."""
        if self._state is None:
            raise InvalidStateError(f"{self.name} collector is not recording")
        try:
            return await self._on_stop()
        finally:
            await self._teardown()
            logger.debug(f"{self.name} collector stopped")

    async def abort(self) -> None:
        """Drop the recording without producing a report. Never raises."""
        if self._state is None and not self._subscriptions and not self._tasks:
            return
        try:
            if self._state is not None:
                await self._on_abort()
        except Exception as e:
            logger.debug(f"{self.name} collector abort hook failed: {e}")
        try:
            await self._teardown()
        except Exception as e:
            logger.warning(f"Error aborting {self.name} collector: {e}")

    async def _teardown(self) -> None:
        try:
            self.release()
            await self.cancel_tasks()
        finally:
            self._state = None

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, method: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        """Register a handler that only sees this page's events while recording."""
        if self._state is None:
            raise InvalidStateError(f"{self.name} collector is not recording")

        def _filtered(params: Dict[str, Any]) -> None:
            session_id = params.get("sessionId")
            if session_id is not None and session_id != self.session_id:
                return
            if self._state is None:
                return
            handler(params)

        self.connector.on_event(method, _filtered)
        self._subscriptions.append((method, _filtered))

    def release(self) -> None:
        """Undo every registration made through subscribe()."""
        while self._subscriptions:
            method, handler = self._subscriptions.pop()
            self.connector.off_event(method, handler)

    # -- background tasks --------------------------------------------------

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.append(task)
        return task

    async def cancel_tasks(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"{self.name} background task ended with error: {e}")

    # -- protocol ----------------------------------------------------------

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None,
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self.connector.call(method, params, session_id=self.session_id, timeout=timeout)
