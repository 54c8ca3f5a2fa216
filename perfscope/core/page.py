"""Page handle - in-page evaluation and screenshots over an attached session."""

import asyncio
import logging
from typing import Any, Dict, Optional

from .connector import ChromeConnector
from ..errors import ProtocolError

logger = logging.getLogger(__name__)


class PageHandle:
    """Thin wrapper around one flattened target session."""

    def __init__(self, connector: ChromeConnector, session_id: str, target_id: Optional[str] = None):
        self.connector = connector
        self.session_id = session_id
        self.target_id = target_id

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None,
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send a command scoped to this page's session."""
        return await self.connector.call(method, params, session_id=self.session_id, timeout=timeout)

    async def evaluate(self, expression: str, await_promise: bool = False,
                       timeout: Optional[float] = None) -> Any:
        """Evaluate an expression in the page and return its JSON value.

        A thrown in-page exception is reported as ProtocolError.
        """
        result = await self.send("Runtime.evaluate", {
            "expression": expression,
            "returnByValue": True,
            "awaitPromise": await_promise,
        }, timeout=timeout)

        details = result.get("exceptionDetails")
        if details:
            text = details.get("exception", {}).get("description") or details.get("text", "unknown")
            raise ProtocolError(f"Evaluation failed: {text}", method="Runtime.evaluate")

        return (result.get("result") or {}).get("value")

    async def screenshot(self, image_format: str = "png") -> str:
        """Capture the visible viewport, returned base64-encoded."""
        result = await self.send("Page.captureScreenshot", {"format": image_format})
        return result.get("data", "")

    async def url(self) -> str:
        return await self.evaluate("location.href") or ""

    async def user_agent(self) -> str:
        return await self.evaluate("navigator.userAgent") or ""

    async def goto(self, url: str, timeout: float = 30.0) -> None:
        """Navigate and wait for the load lifecycle event (Page domain must be enabled)."""
        loop = asyncio.get_running_loop()
        loaded = loop.create_future()

        def _on_load(params: dict) -> None:
            if params.get("sessionId") not in (None, self.session_id):
                return
            if not loaded.done():
                loaded.set_result(True)

        self.connector.on_event("Page.loadEventFired", _on_load)
        try:
            result = await self.send("Page.navigate", {"url": url}, timeout=timeout)
            if result.get("errorText"):
                raise ProtocolError(f"Navigation to {url} failed: {result['errorText']}",
                                    method="Page.navigate")
            try:
                await asyncio.wait_for(loaded, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out waiting for load event of {url}")
        finally:
            self.connector.off_event("Page.loadEventFired", _on_load)
