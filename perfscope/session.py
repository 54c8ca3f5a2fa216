"""Recording session coordinator - lifecycle of one page recording."""

import logging
import time
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from .collectors import (
    BaseCollector, CPUProfileAnalyzer, MemoryProfileAnalyzer, NetworkCollector, TimelineCollector,
)
from .config import ProfilerConfig, get_network_throttling
from .core.connector import ChromeConnector
from .core.page import PageHandle
from .errors import InvalidStateError, ProtocolError
from .models import EnvironmentSnapshot, HeapSnapshot, RecordingReport, SessionState

logger = logging.getLogger(__name__)

# Start order; stop runs in reverse
COLLECTOR_ORDER = ("timeline", "network", "memory", "cpu")

_COLLECTOR_TYPES = {
    "timeline": TimelineCollector,
    "network": NetworkCollector,
    "memory": MemoryProfileAnalyzer,
    "cpu": CPUProfileAnalyzer,
}


@dataclass
class RecordingOptions:
    """Which collectors a recording runs."""
    timeline: bool = False
    network: bool = False
    memory: bool = False
    cpu: bool = False
    screenshots: bool = False

    @classmethod
    def everything(cls) -> "RecordingOptions":
        return cls(timeline=True, network=True, memory=True, cpu=True)

    @classmethod
    def coerce(cls, options: Union["RecordingOptions", Mapping[str, Any], None]) -> "RecordingOptions":
        if options is None:
            return cls.everything()
        if isinstance(options, cls):
            return options
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise ValueError(f"Unknown recording options: {', '.join(sorted(unknown))}")
        return cls(**{key: bool(value) for key, value in options.items()})

    def selected(self) -> List[str]:
        return [name for name in COLLECTOR_ORDER if getattr(self, name)]


class SessionCoordinator:
    """Owns the page session and runs the selected collectors for one recording at a time.

    Typical use::

        async with SessionCoordinator(config) as session:
            await session.start({"cpu": True, "network": True})
            await session.navigate("https://example.com")
            report = await session.stop()
    """

    def __init__(self, config: Optional[ProfilerConfig] = None,
                 connector: Optional[ChromeConnector] = None,
                 host: str = "127.0.0.1", port: int = 9222,
                 target_id: Optional[str] = None):
        self.config = config or ProfilerConfig()
        self.connector = connector
        self.host = host
        self.port = port
        self.target_id = target_id
        self.session_id: Optional[str] = None
        self.page: Optional[PageHandle] = None

        self._owns_connector = False
        self._created_target = False
        self._state = SessionState.IDLE
        self._busy = False
        self._closed = False
        self._collectors: Dict[str, BaseCollector] = {}
        self._active: List[str] = []
        self._options: Optional[RecordingOptions] = None
        self._base_domains: List[str] = []
        self._recording_domains: List[str] = []
        self._started_at = 0.0
        self._started_wall: Optional[datetime] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state is SessionState.RECORDING

    async def __aenter__(self) -> "SessionCoordinator":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()

    # -- setup -------------------------------------------------------------------

    async def initialize(self) -> None:
        """Connect, attach to a page target and apply the configured environment."""
        if self._closed:
            raise InvalidStateError("Session has been cleaned up")
        if self.page is not None:
            return

        try:
            if self.connector is None:
                self.connector = ChromeConnector(self.host, self.port, call_timeout=self.config.call_timeout)
            if not self.connector.is_connected:
                await self.connector.connect()
                self._owns_connector = True

            target_id = await self._resolve_target()
            response = await self.connector.call("Target.attachToTarget",
                                                 {"targetId": target_id, "flatten": True})
            self.session_id = response["sessionId"]
            self.target_id = target_id
            self.page = PageHandle(self.connector, self.session_id, target_id)

            await self._enable("Page", self._base_domains)
            await self._apply_environment()

            self._collectors = {
                name: cls(self.connector, self.session_id, self.config)
                for name, cls in _COLLECTOR_TYPES.items()
            }
            logger.info(f"Session attached to target {target_id}")
        except Exception:
            await self.cleanup()
            raise

    async def _resolve_target(self) -> str:
        if self.target_id:
            return self.target_id

        pages = self.connector.filter_page_targets(await self.connector.get_targets())
        if pages:
            return pages[0]["targetId"]

        created = await self.connector.call("Target.createTarget", {"url": "about:blank"})
        self._created_target = True
        return created["targetId"]

    async def _apply_environment(self) -> None:
        config = self.config
        await self._send("Emulation.setDeviceMetricsOverride", {
            "width": config.viewport_width,
            "height": config.viewport_height,
            "deviceScaleFactor": 1,
            "mobile": False,
        })

        if config.network_throttling != "NoThrottling":
            await self._enable("Network", self._base_domains)
            conditions = get_network_throttling(config.network_throttling)
            await self._send("Network.emulateNetworkConditions", {"offline": False, **conditions})

        if config.cpu_throttling and config.cpu_throttling != 1:
            await self._send("Emulation.setCPUThrottlingRate", {"rate": config.cpu_throttling})

        logger.debug(f"Environment applied: {config.viewport_width}x{config.viewport_height}, "
                     f"throttling {config.throttling_profile()}")

    async def _send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.connector.call(method, params, session_id=self.session_id)

    async def _enable(self, domain: str, registry: List[str]) -> None:
        if domain in self._base_domains or domain in self._recording_domains:
            return
        await self._send(f"{domain}.enable")
        registry.append(domain)

    async def _disable(self, registry: List[str]) -> None:
        while registry:
            domain = registry.pop()
            try:
                await self._send(f"{domain}.disable")
            except Exception as e:
                logger.debug(f"Failed to disable {domain}: {e}")

    # -- recording -----------------------------------------------------------------

    async def start(self, options: Union[RecordingOptions, Mapping[str, Any], None] = None) -> None:
        """Start a recording with the selected collectors."""
        if self._state is SessionState.RECORDING or self._busy:
            raise InvalidStateError("A recording is already in progress")
        if self.page is None or self._closed:
            raise InvalidStateError("Session is not initialized")

        selected = RecordingOptions.coerce(options)
        # Claim the session before the first await
        self._state = SessionState.RECORDING
        self._busy = True
        self._options = selected
        started: List[str] = []

        try:
            for name in selected.selected():
                for domain in self._collectors[name].required_domains:
                    await self._enable(domain, self._recording_domains)
                    self._check_open()

            self._started_at = time.monotonic()
            self._started_wall = datetime.now(timezone.utc)
            for name in selected.selected():
                await self._collectors[name].start()
                started.append(name)
                self._check_open()
        except BaseException as e:
            logger.error(f"Failed to start recording: {e}")
            for name in reversed(started):
                await self._collectors[name].abort()
            if self._closed:
                # cleanup() already released the target
                self._recording_domains.clear()
                self._state = SessionState.STOPPED
            else:
                await self._disable(self._recording_domains)
                self._state = SessionState.IDLE
            self._options = None
            raise
        finally:
            self._busy = False

        self._active = started
        logger.info(f"Recording started: {', '.join(started) or 'no collectors'}")

    def _check_open(self) -> None:
        if self._closed:
            raise InvalidStateError("Session was cleaned up while the recording was starting")

    async def stop(self) -> RecordingReport:
        """Stop the recording and assemble the composite report.

        Collector failures are listed in ``errors`` rather than raised. A
        ProtocolError while reading the environment is raised after every
        collector has been finalized.
        """
        if self._state is not SessionState.RECORDING or self._busy:
            raise InvalidStateError("No recording in progress")

        self._busy = True
        reports: Dict[str, Any] = {}
        errors: List[str] = []
        environment_error: Optional[ProtocolError] = None
        environment = self._fallback_environment()

        try:
            for name in reversed(self._active):
                try:
                    reports[name] = await self._collectors[name].stop()
                except Exception as e:
                    logger.error(f"{name} collector failed to stop: {e}")
                    errors.append(f"{name}: {e}")

            try:
                environment = await self._environment_snapshot()
            except ProtocolError as e:
                environment_error = e

            await self._disable(self._recording_domains)
        finally:
            self._state = SessionState.STOPPED
            self._busy = False
            self._active = []
            self._options = None

        duration = (time.monotonic() - self._started_at) * 1000
        report = RecordingReport(
            environment=environment,
            duration=duration,
            timestamp=(self._started_wall or datetime.now(timezone.utc)).isoformat(),
            timeline=reports.get("timeline"),
            network=reports.get("network"),
            cpu=reports.get("cpu"),
            memory=reports.get("memory"),
            errors=errors,
        )
        logger.info(f"Recording stopped after {duration:.0f}ms"
                    + (f" with {len(errors)} collector errors" if errors else ""))

        if environment_error is not None:
            raise environment_error
        return report

    def _fallback_environment(self) -> EnvironmentSnapshot:
        return EnvironmentSnapshot(
            user_agent="",
            viewport_width=self.config.viewport_width,
            viewport_height=self.config.viewport_height,
            url="",
            timestamp=datetime.now(timezone.utc).isoformat(),
            throttling=self.config.throttling_profile(),
        )

    async def _environment_snapshot(self) -> EnvironmentSnapshot:
        snapshot = self._fallback_environment()
        snapshot.user_agent = await self.page.user_agent()
        snapshot.url = await self.page.url()
        return snapshot

    # -- interaction helpers ------------------------------------------------------

    def _require_page(self) -> PageHandle:
        if self.page is None or self._closed:
            raise InvalidStateError("Session is not initialized")
        return self.page

    async def navigate(self, url: str, timeout: float = 30.0) -> None:
        await self._require_page().goto(url, timeout=timeout)

    async def take_screenshot(self) -> str:
        """Capture the viewport; attached to the timeline when recording with screenshots."""
        data = await self._require_page().screenshot()
        if (self.is_recording and self._options is not None and self._options.screenshots
                and "timeline" in self._active):
            self._collectors["timeline"].add_screenshot(data)
        return data

    async def capture_heap_snapshot(self, label: str = "manual") -> Optional[HeapSnapshot]:
        """Manual heap snapshot during a memory recording.

        Needs "manual" in ``snapshot_triggers``; may raise ResourceLimitError.
        """
        if not self.is_recording or "memory" not in self._active:
            raise InvalidStateError("Heap snapshots need an active memory recording")
        return await self._collectors["memory"].capture_snapshot(label, trigger="manual")

    # -- teardown ---------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Tear everything down; safe to call at any time and more than once."""
        if self._closed:
            return
        self._closed = True

        for name in reversed(self._active or list(self._collectors)):
            collector = self._collectors.get(name)
            if collector is not None:
                await collector.abort()
        self._active = []
        if self._state is SessionState.RECORDING:
            self._state = SessionState.STOPPED

        if self.connector is not None and self.session_id is not None:
            await self._disable(self._recording_domains)
            await self._restore_environment()
            await self._disable(self._base_domains)
            try:
                if self._created_target and self.target_id:
                    await self.connector.call("Target.closeTarget", {"targetId": self.target_id})
                else:
                    await self.connector.call("Target.detachFromTarget", {"sessionId": self.session_id})
            except Exception as e:
                logger.debug(f"Failed to release target: {e}")

        if self.connector is not None and self._owns_connector:
            try:
                await self.connector.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting from Chrome: {e}")

        self.page = None
        self.session_id = None
        logger.info("Session cleaned up")

    async def _restore_environment(self) -> None:
        steps = [("Emulation.clearDeviceMetricsOverride", None)]
        if self.config.cpu_throttling and self.config.cpu_throttling != 1:
            steps.append(("Emulation.setCPUThrottlingRate", {"rate": 1}))
        for method, params in steps:
            try:
                await self._send(method, params)
            except Exception as e:
                logger.debug(f"{method} failed during cleanup: {e}")
