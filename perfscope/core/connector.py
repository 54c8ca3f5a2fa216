"""Chrome DevTools Protocol connector - the instrumentation channel."""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional
import httpx
import websockets

from ..errors import ProtocolError


logger = logging.getLogger(__name__)


class ChromeConnectionError(ProtocolError):
    """Transport-level failure: not connected, timeout, endpoint discovery."""
    pass


class ChromeConnector:
    """Browser-level CDP connection with flattened target sessions.

    Commands are request/response round trips over one websocket; events are
    fanned out to handlers registered with on_event()/off_event(). Events from
    attached targets carry their ``sessionId`` inside ``params``.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 9222,
                 call_timeout: float = 15.0):
        self.host = host
        self.port = port
        self.websocket = None
        self.next_id = 1
        self.pending_requests: Dict[int, asyncio.Future] = {}
        self.event_handlers: Dict[str, List[Callable]] = {}
        self.message_task: Optional[asyncio.Task] = None
        self.call_timeout = call_timeout

    @property
    def is_connected(self) -> bool:
        return self.websocket is not None

    async def connect(self, retries: int = 3) -> None:
        """Open the websocket with retry and exponential backoff."""
        last_exception: Optional[Exception] = None

        for attempt in range(retries):
            try:
                ws_url = await self._discover_websocket_url()
                self.websocket = await asyncio.wait_for(
                    websockets.connect(
                        ws_url,
                        ping_interval=20,
                        ping_timeout=10,
                        max_size=256 * 1024 * 1024  # heap snapshot chunks and profiles can be large
                    ),
                    timeout=5.0
                )
                self.message_task = asyncio.create_task(self._handle_messages())
                logger.info(f"Connected to Chrome at {self.host}:{self.port}")
                return

            except asyncio.TimeoutError:
                last_exception = ChromeConnectionError("WebSocket connection timed out")
            except ChromeConnectionError as e:
                last_exception = e
            except Exception as e:
                last_exception = ChromeConnectionError(f"Failed to connect to WebSocket: {e}")

            if attempt < retries - 1:
                delay = 2 ** attempt
                logger.warning(f"Connection attempt {attempt + 1} failed, retrying in {delay}s...")
                await asyncio.sleep(delay)

        raise last_exception

    async def _discover_websocket_url(self) -> str:
        """Discover Chrome's browser-level WebSocket debugger URL."""
        url = f"http://{self.host}:{self.port}/json/version"

        try:
            async with httpx.AsyncClient(timeout=3.0) as client:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()
        except httpx.ConnectError:
            raise ChromeConnectionError(
                f"Could not connect to Chrome on {self.host}:{self.port}. "
                f"Start Chrome with --remote-debugging-port={self.port}"
            )
        except httpx.TimeoutException:
            raise ChromeConnectionError("Connection to Chrome timed out")
        except Exception as e:
            raise ChromeConnectionError(f"Failed to discover Chrome endpoint: {e}")

        if not isinstance(data, dict) or "webSocketDebuggerUrl" not in data:
            raise ChromeConnectionError("Chrome debugger endpoint missing WebSocket URL")

        return data["webSocketDebuggerUrl"]

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None,
                   session_id: Optional[str] = None,
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send a CDP command and wait for its result.

        Raises ProtocolError when Chrome rejects the command and
        ChromeConnectionError on transport failures.
        """
        if not self.websocket:
            raise ChromeConnectionError("Not connected to Chrome", method=method)

        request_id = self.next_id
        self.next_id += 1

        message: Dict[str, Any] = {"id": request_id, "method": method}
        if params:
            message["params"] = params
        if session_id:
            message["sessionId"] = session_id

        future = asyncio.get_running_loop().create_future()
        self.pending_requests[request_id] = future

        try:
            await self.websocket.send(json.dumps(message))
            wait_timeout = timeout if timeout is not None else self.call_timeout
            return await asyncio.wait_for(future, timeout=wait_timeout)

        except asyncio.TimeoutError:
            raise ChromeConnectionError(f"Timeout waiting for response to {method}", method=method)
        except ChromeConnectionError:
            raise
        except ProtocolError as e:
            if e.method is not None:
                raise
            raise ProtocolError(f"{method} rejected: {e}", method=method, code=e.code) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ChromeConnectionError(f"Error calling {method}: {e}", method=method)
        finally:
            self.pending_requests.pop(request_id, None)

    async def _handle_messages(self) -> None:
        """Read loop: resolve pending commands and dispatch events."""
        try:
            async for message in self.websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Received invalid JSON message")
                    continue

                if "id" in data:
                    self._resolve_response(data)
                elif "method" in data:
                    params = dict(data.get("params") or {})
                    if "sessionId" in data:
                        params["sessionId"] = data["sessionId"]
                    await self._dispatch_event(data["method"], params)

        except websockets.exceptions.ConnectionClosed:
            logger.info("WebSocket connection closed")
        except Exception as e:
            logger.error(f"Error in message handler: {e}")
        finally:
            self._fail_pending(ChromeConnectionError("Connection to Chrome lost"))

    def _resolve_response(self, data: Dict[str, Any]) -> None:
        future = self.pending_requests.get(data["id"])
        if future is None or future.done():
            return
        if "error" in data:
            error = data["error"] or {}
            future.set_exception(ProtocolError(
                error.get("message", "Unknown error"),
                code=error.get("code"),
            ))
        else:
            future.set_result(data.get("result", {}))

    def _fail_pending(self, error: Exception) -> None:
        for future in self.pending_requests.values():
            if not future.done():
                future.set_exception(error)
        self.pending_requests.clear()

    async def disconnect(self) -> None:
        """Close the WebSocket connection and cancel the read loop."""
        if self.message_task:
            self.message_task.cancel()
            try:
                await self.message_task
            except asyncio.CancelledError:
                pass
            self.message_task = None

        if self.websocket:
            await self.websocket.close()
            self.websocket = None

        for future in self.pending_requests.values():
            if not future.done():
                future.cancel()
        self.pending_requests.clear()

    async def get_browser_version(self) -> Dict[str, Any]:
        return await self.call("Browser.getVersion")

    async def get_targets(self) -> Dict[str, Any]:
        return await self.call("Target.getTargets")

    def filter_page_targets(self, targets_response: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Filter targets to only include pages."""
        target_infos = targets_response.get("targetInfos", [])
        return [target for target in target_infos if target.get("type") == "page"]

    def on_event(self, method: str, handler: Callable[[Dict[str, Any]], Any]) -> None:
        """Register an event handler for a specific method."""
        self.event_handlers.setdefault(method, []).append(handler)

    def off_event(self, method: str, handler: Optional[Callable] = None) -> None:
        """Unregister one handler, or every handler when none is given."""
        handlers = self.event_handlers.get(method)
        if not handlers:
            return
        if handler is None:
            handlers.clear()
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    async def _dispatch_event(self, method: str, params: Dict[str, Any]) -> None:
        """Dispatch an event to registered handlers (sync or async)."""
        # Copy: handlers may unsubscribe while we iterate
        for handler in list(self.event_handlers.get(method, ())):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(params)
                else:
                    handler(params)
            except Exception as e:
                logger.warning(f"Error in event handler for {method}: {e}")
