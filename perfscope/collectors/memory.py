"""Memory collector - heap snapshots, usage polling, GC detection and allocation sampling."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .base import BaseCollector
from .classify import extract_gc_message, gc_type_from_message, growth_trend, leak_suspicion
from ..core.page import PageHandle
from ..errors import InvalidStateError, NonFatalCollectionError, ResourceLimitError
from ..models import (
    AllocationSample, GCEvent, GrowthTrend, HeapSnapshot, HeapUsageSample, MemoryAnalysis,
    MemoryReport, ObjectRetention,
)
from ..utils.ids import make_snapshot_id

logger = logging.getLogger(__name__)

SNAPSHOT_TIMEOUT = 120.0
MAX_ALLOCATION_SAMPLES = 1000

_MEMORY_JS = """
(() => {
  const m = performance.memory;
  if (!m) return null;
  return {used: m.usedJSHeapSize, total: m.totalJSHeapSize, limit: m.jsHeapSizeLimit};
})()
"""


def parse_snapshot(text: str) -> Tuple[int, int, int]:
    """Return (node_count, edge_count, total self size) of a serialized heap snapshot."""
    try:
        data = json.loads(text)
        meta = data["snapshot"]["meta"]
        node_fields = meta["node_fields"]
        stride = len(node_fields)
        size_index = node_fields.index("self_size")
        nodes = data.get("nodes") or []
        edges = data.get("edges") or []
        edge_stride = len(meta.get("edge_fields") or []) or 1
    except (ValueError, KeyError, TypeError) as e:
        raise NonFatalCollectionError(f"Unreadable heap snapshot: {e}") from e

    info = data["snapshot"]
    node_count = info.get("node_count", len(nodes) // stride)
    edge_count = info.get("edge_count", len(edges) // edge_stride)
    total_size = sum(nodes[size_index::stride])
    return node_count, edge_count, total_size


@dataclass
class _MemoryState:
    started_at: float  # monotonic seconds
    wall_started_at: float
    snapshots: List[HeapSnapshot] = field(default_factory=list)
    heap_usage: List[HeapUsageSample] = field(default_factory=list)
    gc_events: List[GCEvent] = field(default_factory=list)
    allocation_samples: List[AllocationSample] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    consecutive_failures: int = 0
    sampling: bool = False
    snapshot_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class MemoryProfileAnalyzer(BaseCollector):
    """Heap snapshots, periodic heap usage, GC events and allocation sampling."""

    name = "memory"
    required_domains = ("HeapProfiler", "Runtime")

    def __init__(self, connector, session_id, config=None):
        super().__init__(connector, session_id, config)
        self.page = PageHandle(connector, session_id)

    def _new_state(self) -> _MemoryState:
        return _MemoryState(started_at=time.monotonic(), wall_started_at=time.time())

    def _elapsed(self, state: _MemoryState) -> float:
        return (time.monotonic() - state.started_at) * 1000

    async def _on_start(self) -> None:
        state = self._state
        config = self.config

        if config.track_allocation_sampling:
            await self.call("HeapProfiler.startSampling",
                            {"samplingInterval": config.allocation_sampling_interval})
            state.sampling = True

        if config.monitor_gc_events:
            self.subscribe("Runtime.consoleAPICalled", self._on_console_message)

        if "start" in config.snapshot_triggers:
            await self.capture_snapshot("start", trigger="start")

        self.spawn(self._poll_usage(state))
        if "interval" in config.snapshot_triggers:
            self.spawn(self._interval_snapshots(state))

        logger.info(f"Memory profiling started (triggers: {', '.join(config.snapshot_triggers)})")

    async def _on_abort(self) -> None:
        if self._state.sampling:
            self._state.sampling = False
            await self.call("HeapProfiler.stopSampling")

    # -- snapshots ------------------------------------------------------------

    async def capture_snapshot(self, label: str, trigger: str = "manual") -> Optional[HeapSnapshot]:
        """Take a labeled heap snapshot.

        The trigger must be listed in ``snapshot_triggers``. Past
        ``max_snapshots`` a manual or start trigger raises
        ResourceLimitError; interval and end triggers only add a warning.
        """
        state = self._state
        if state is None:
            raise InvalidStateError("memory collector is not recording")
        if trigger not in self.config.snapshot_triggers:
            raise InvalidStateError(f"Snapshot trigger '{trigger}' is not enabled")

        async with state.snapshot_lock:
            if len(state.snapshots) >= self.config.max_snapshots:
                message = f"Heap snapshot limit of {self.config.max_snapshots} reached, skipped '{label}'"
                if trigger in ("start", "manual"):
                    raise ResourceLimitError(message)
                logger.warning(message)
                state.warnings.append(message)
                return None

            elapsed = self._elapsed(state)
            try:
                node_count, edge_count, total_size = parse_snapshot(await self._take_snapshot())
            except NonFatalCollectionError as e:
                logger.warning(str(e))
                state.warnings.append(f"snapshot '{label}' dropped: {e}")
                return None

            snapshot = HeapSnapshot(
                id=make_snapshot_id(label, elapsed, len(state.snapshots)),
                label=label,
                elapsed_time_ms=elapsed,
                node_count=node_count,
                edge_count=edge_count,
                total_size=total_size,
            )
            state.snapshots.append(snapshot)

        logger.debug(f"Heap snapshot '{label}': {node_count} nodes, {total_size} bytes")
        return snapshot

    async def _take_snapshot(self) -> str:
        chunks: List[str] = []

        def _on_chunk(params: Dict[str, Any]) -> None:
            if params.get("sessionId") not in (None, self.session_id):
                return
            chunks.append(params.get("chunk", ""))

        self.connector.on_event("HeapProfiler.addHeapSnapshotChunk", _on_chunk)
        try:
            await self.call("HeapProfiler.takeHeapSnapshot", {"reportProgress": False},
                            timeout=SNAPSHOT_TIMEOUT)
        finally:
            self.connector.off_event("HeapProfiler.addHeapSnapshotChunk", _on_chunk)
        return "".join(chunks)

    async def _interval_snapshots(self, state: _MemoryState) -> None:
        interval = self.config.snapshot_interval_ms / 1000
        index = 0
        while True:
            await asyncio.sleep(interval)
            index += 1
            try:
                snapshot = await self.capture_snapshot(f"interval-{index}", trigger="interval")
                if snapshot is None and len(state.snapshots) >= self.config.max_snapshots:
                    logger.debug("Interval heap snapshots stopped at the snapshot limit")
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Interval heap snapshot failed: {e}")
                state.warnings.append(f"interval snapshot failed: {e}")

    # -- usage polling -----------------------------------------------------------

    async def _poll_usage(self, state: _MemoryState) -> None:
        interval = self.config.usage_poll_interval_ms / 1000
        while True:
            try:
                await self.sample_usage(state)
                state.consecutive_failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = NonFatalCollectionError(f"Heap usage poll failed: {e}")
                state.consecutive_failures += 1
                logger.debug(str(error))
                if state.consecutive_failures >= self.config.max_poll_failures:
                    message = (f"Heap usage polling stopped after "
                               f"{state.consecutive_failures} consecutive failures")
                    logger.warning(message)
                    state.warnings.append(message)
                    return
            await asyncio.sleep(interval)

    async def sample_usage(self, state: _MemoryState) -> HeapUsageSample:
        elapsed = self._elapsed(state)
        value = None
        try:
            value = await self.page.evaluate(_MEMORY_JS)
        except Exception as e:
            logger.debug(f"performance.memory unavailable: {e}")

        if isinstance(value, dict) and value.get("total"):
            sample = HeapUsageSample.from_usage(
                elapsed, "performance.memory",
                int(value.get("used") or 0), int(value["total"]), int(value.get("limit") or 0),
            )
        else:
            usage = await self.call("Runtime.getHeapUsage")
            sample = HeapUsageSample.from_usage(
                elapsed, "runtime", int(usage.get("usedSize", 0)), int(usage.get("totalSize", 0)),
            )

        self.record_usage(state, sample)
        return sample

    def record_usage(self, state: _MemoryState, sample: HeapUsageSample) -> None:
        """Append a usage sample, inferring a GC when the heap dropped sharply."""
        if state.heap_usage and self.config.monitor_gc_events:
            previous = state.heap_usage[-1]
            freed = previous.used - sample.used
            if freed > self.config.gc_drop_threshold_bytes:
                state.gc_events.append(GCEvent(
                    elapsed_time_ms=sample.elapsed_time_ms,
                    type="inferred",
                    freed_bytes=freed,
                    total_heap_size=sample.total,
                    used_heap_size=sample.used,
                    cause="heap-drop",
                ))
                logger.debug(f"Inferred GC: heap dropped by {freed} bytes")
        state.heap_usage.append(sample)

    def _on_console_message(self, params: Dict[str, Any]) -> None:
        message = extract_gc_message(params.get("args", []))
        if message is None:
            return
        state = self._state
        latest = state.heap_usage[-1] if state.heap_usage else None
        state.gc_events.append(GCEvent(
            elapsed_time_ms=self._elapsed(state),
            type=gc_type_from_message(message),
            total_heap_size=latest.total if latest else 0,
            used_heap_size=latest.used if latest else 0,
            cause=f"console: {message[:100]}",
        ))

    # -- finalization ----------------------------------------------------------------

    async def _on_stop(self) -> MemoryReport:
        state = self._state
        await self.cancel_tasks()
        self.release()

        try:
            await self.sample_usage(state)
        except Exception as e:
            logger.debug(f"Final heap usage sample failed: {e}")

        if "end" in self.config.snapshot_triggers:
            try:
                await self.capture_snapshot("end", trigger="end")
            except Exception as e:
                logger.warning(f"End heap snapshot failed: {e}")
                state.warnings.append(f"end snapshot failed: {e}")

        if state.sampling:
            state.sampling = False
            try:
                result = await self.call("HeapProfiler.stopSampling")
                state.allocation_samples = self.allocation_samples(result.get("profile") or {}, state)
            except Exception as e:
                logger.warning(f"Failed to collect allocation samples: {e}")
                state.warnings.append(f"allocation samples unavailable: {e}")

        duration_ms = self._elapsed(state)
        analysis = self.analyze(state.heap_usage, state.gc_events, state.snapshots, duration_ms)
        logger.info(f"Memory profiling completed: {len(state.snapshots)} snapshots, "
                    f"{len(state.heap_usage)} usage samples, {len(state.gc_events)} GC events")

        return MemoryReport(
            snapshots=list(state.snapshots),
            heap_usage=list(state.heap_usage),
            gc_events=list(state.gc_events),
            allocation_samples=state.allocation_samples,
            analysis=analysis,
            metadata={
                "profiling_duration": duration_ms,
                "start_time": state.wall_started_at * 1000,
                "end_time": time.time() * 1000,
                "snapshot_triggers": list(self.config.snapshot_triggers),
                "max_snapshots": self.config.max_snapshots,
            },
            warnings=list(state.warnings),
        )

    @staticmethod
    def allocation_samples(profile: Dict[str, Any], state: Optional[_MemoryState] = None) -> List[AllocationSample]:
        """Resolve sampled allocations to stack traces (largest first)."""
        frames: Dict[int, Tuple[str, Optional[int]]] = {}
        stack = [(profile.get("head"), None)]
        while stack:
            node, parent = stack.pop()
            if not isinstance(node, dict):
                continue
            node_id = node.get("id")
            name = (node.get("callFrame") or {}).get("functionName") or "(anonymous)"
            frames[node_id] = (name, parent)
            for child in node.get("children") or []:
                stack.append((child, node_id))

        def _trace(node_id: int) -> List[str]:
            trace = []
            seen = set()
            while node_id in frames and node_id not in seen:
                seen.add(node_id)
                name, parent = frames[node_id]
                if name != "(root)":
                    trace.append(name)
                node_id = parent
            return trace

        raw = [s for s in profile.get("samples") or [] if isinstance(s, dict)]
        raw.sort(key=lambda s: s.get("size", 0), reverse=True)
        if len(raw) > MAX_ALLOCATION_SAMPLES and state is not None:
            state.warnings.append(
                f"kept the {MAX_ALLOCATION_SAMPLES} largest of {len(raw)} allocation samples"
            )

        return [
            AllocationSample(
                size=int(s.get("size", 0)),
                node_id=int(s.get("nodeId", 0)),
                ordinal=int(s.get("ordinal", 0)),
                stack_trace=_trace(s.get("nodeId")),
            )
            for s in raw[:MAX_ALLOCATION_SAMPLES]
        ]

    @staticmethod
    def growth(samples: List[HeapUsageSample]) -> Tuple[float, GrowthTrend]:
        """Linear growth rate (bytes/s) between first and last sample."""
        if len(samples) < 2:
            return 0.0, GrowthTrend.STABLE
        first, last = samples[0], samples[-1]
        elapsed = last.elapsed_time_ms - first.elapsed_time_ms
        rate = (last.used - first.used) / elapsed * 1000 if elapsed > 0 else 0.0
        return rate, growth_trend(rate)

    @staticmethod
    def potential_leaks(snapshots: List[HeapSnapshot]) -> List[ObjectRetention]:
        if len(snapshots) < 2:
            return []
        first, last = snapshots[0], snapshots[-1]
        increase = last.total_size - first.total_size
        level = leak_suspicion(increase)
        if level is None:
            return []
        return [ObjectRetention(
            object_type="unknown",
            retained_size=increase,
            instance_count=last.node_count - first.node_count,
            suspicion_level=level,
        )]

    def analyze(self, heap_usage: List[HeapUsageSample], gc_events: List[GCEvent],
                snapshots: List[HeapSnapshot], duration_ms: float) -> MemoryAnalysis:
        rate, trend = self.growth(heap_usage)
        leaks = self.potential_leaks(snapshots)

        total_gc_time = sum(e.duration for e in gc_events)
        # Inferred events carry no duration, so efficiency only covers timed ones
        timed = [e for e in gc_events if e.duration > 0]
        timed_duration = sum(e.duration for e in timed)
        efficiency = sum(e.freed_bytes for e in timed) / timed_duration if timed_duration > 0 else 0.0

        analysis = MemoryAnalysis(
            total_gc_time=total_gc_time,
            avg_memory_usage=(sum(s.used for s in heap_usage) / len(heap_usage)) if heap_usage else 0.0,
            max_memory_usage=max((s.used for s in heap_usage), default=0),
            memory_growth_rate=rate,
            memory_growth_trend=trend,
            gc_frequency=len(gc_events) / (duration_ms / 1000) if duration_ms > 0 else 0.0,
            gc_efficiency=efficiency,
            potential_leaks=leaks,
        )

        recommendations = []
        if leaks:
            recommendations.append("Potential memory leaks detected - review object retention patterns")
        if timed and efficiency < 1000:
            recommendations.append("Low GC efficiency - consider reducing object allocations")
        if len(gc_events) > 10:
            recommendations.append("High GC frequency - optimize memory usage patterns")
        if heap_usage and sum(s.pressure for s in heap_usage) / len(heap_usage) > 0.8:
            recommendations.append("High memory pressure - consider memory optimization")
        if not recommendations:
            recommendations.append("Memory usage appears optimal")
        analysis.recommendations = recommendations
        return analysis
