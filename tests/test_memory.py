"""Tests for the memory collector."""

import asyncio
import json

import pytest

from perfscope.collectors.memory import MemoryProfileAnalyzer, parse_snapshot
from perfscope.config import ProfilerConfig
from perfscope.errors import InvalidStateError, NonFatalCollectionError, ResourceLimitError
from perfscope.models import GCEvent, GrowthTrend, HeapSnapshot, HeapUsageSample, SuspicionLevel


MB = 1024 * 1024


def _snapshot_text(*sizes):
    fields = ["type", "name", "id", "self_size", "edge_count"]
    nodes = []
    for index, size in enumerate(sizes):
        nodes.extend([0, index, index + 1, size, 0])
    return json.dumps({
        "snapshot": {
            "meta": {"node_fields": fields, "edge_fields": ["type", "name_or_index", "to_node"]},
            "node_count": len(sizes),
            "edge_count": 0,
        },
        "nodes": nodes,
        "edges": [],
    })


def _serve_snapshots(connector, *texts):
    """Answer takeHeapSnapshot by streaming each text in two chunks."""
    queue = list(texts)

    async def take(params):
        text = queue.pop(0) if len(queue) > 1 else queue[0]
        middle = len(text) // 2
        await connector.emit("HeapProfiler.addHeapSnapshotChunk", {"chunk": "garbage"}, session_id="OTHER")
        await connector.emit("HeapProfiler.addHeapSnapshotChunk", {"chunk": text[:middle]})
        await connector.emit("HeapProfiler.addHeapSnapshotChunk", {"chunk": text[middle:]})
        return {}

    connector.responses["HeapProfiler.takeHeapSnapshot"] = take


def _usage(elapsed, used, total=None):
    return HeapUsageSample.from_usage(elapsed, "runtime", used, total or used * 2)


class TestHelpers:

    def test_parse_snapshot(self):
        assert parse_snapshot(_snapshot_text(100, 250)) == (2, 0, 350)

    def test_parse_snapshot_rejects_garbage(self):
        with pytest.raises(NonFatalCollectionError):
            parse_snapshot("{\"nodes\": []}")
        with pytest.raises(NonFatalCollectionError):
            parse_snapshot("not json")

    def test_growth_increasing(self):
        samples = [_usage(0, MB), _usage(10000, int(1.02 * MB))]
        rate, trend = MemoryProfileAnalyzer.growth(samples)
        assert rate == pytest.approx(2097.1, abs=0.1)
        assert trend is GrowthTrend.INCREASING

    def test_growth_within_deadband(self):
        samples = [_usage(0, 1_000_000), _usage(10000, 1_010_000)]
        rate, trend = MemoryProfileAnalyzer.growth(samples)
        assert rate == 1000
        assert trend is GrowthTrend.STABLE

    def test_growth_single_sample(self):
        assert MemoryProfileAnalyzer.growth([_usage(0, MB)]) == (0.0, GrowthTrend.STABLE)

    def test_potential_leaks(self):
        def snap(size, nodes):
            return HeapSnapshot(id="x", label="l", elapsed_time_ms=0, node_count=nodes, edge_count=0, total_size=size)

        assert MemoryProfileAnalyzer.potential_leaks([snap(MB, 10), snap(MB + 1000, 11)]) == []
        leaks = MemoryProfileAnalyzer.potential_leaks([snap(MB, 10), snap(4 * MB, 60)])
        assert leaks[0].suspicion_level is SuspicionLevel.MEDIUM
        assert leaks[0].retained_size == 3 * MB
        assert leaks[0].instance_count == 50
        leaks = MemoryProfileAnalyzer.potential_leaks([snap(MB, 10), snap(20 * MB, 10)])
        assert leaks[0].suspicion_level is SuspicionLevel.HIGH

    def test_allocation_stack_traces(self):
        profile = {
            "head": {
                "id": 1, "callFrame": {"functionName": "(root)"},
                "children": [{
                    "id": 2, "callFrame": {"functionName": "loadItems"},
                    "children": [{"id": 3, "callFrame": {"functionName": ""}, "children": []}],
                }],
            },
            "samples": [
                {"size": 64, "nodeId": 2, "ordinal": 1},
                {"size": 4096, "nodeId": 3, "ordinal": 2},
            ],
        }
        samples = MemoryProfileAnalyzer.allocation_samples(profile)

        assert [s.size for s in samples] == [4096, 64]
        assert samples[0].stack_trace == ["(anonymous)", "loadItems"]
        assert samples[1].stack_trace == ["loadItems"]


@pytest.mark.asyncio
class TestMemoryAnalysis:

    async def test_gc_inferred_from_heap_drop(self, fake_connector):
        collector = MemoryProfileAnalyzer(fake_connector, "S1")
        state = collector._new_state()

        collector.record_usage(state, _usage(0, 10 * MB))
        collector.record_usage(state, _usage(1000, 9.5 * MB))
        collector.record_usage(state, _usage(2000, 6 * MB))

        assert len(state.gc_events) == 1
        event = state.gc_events[0]
        assert event.type == "inferred"
        assert event.freed_bytes == int(3.5 * MB)
        assert event.elapsed_time_ms == 2000
        assert event.duration == 0

    async def test_gc_efficiency_uses_timed_events(self, fake_connector):
        collector = MemoryProfileAnalyzer(fake_connector, "S1")
        events = [
            GCEvent(elapsed_time_ms=100, type="inferred", freed_bytes=5 * MB),
            GCEvent(elapsed_time_ms=200, type="major", duration=4.0, freed_bytes=8000),
        ]
        analysis = collector.analyze([_usage(0, MB)], events, [], duration_ms=2000)

        assert analysis.gc_efficiency == 2000
        assert analysis.total_gc_time == 4.0
        assert analysis.gc_frequency == 1.0
        assert "Memory usage appears optimal" in analysis.recommendations

    async def test_inferred_events_alone_skip_efficiency_advice(self, fake_connector):
        collector = MemoryProfileAnalyzer(fake_connector, "S1")
        events = [GCEvent(elapsed_time_ms=100, type="inferred", freed_bytes=5 * MB)]
        analysis = collector.analyze([], events, [], duration_ms=1000)

        assert analysis.gc_efficiency == 0.0
        assert not any("GC efficiency" in r for r in analysis.recommendations)


@pytest.mark.asyncio
class TestMemoryCollector:

    async def test_start_commands(self, fake_connector):
        _serve_snapshots(fake_connector, _snapshot_text(100))
        collector = MemoryProfileAnalyzer(fake_connector, "S1")
        await collector.start()

        assert fake_connector.methods()[:2] == ["HeapProfiler.startSampling", "HeapProfiler.takeHeapSnapshot"]
        assert fake_connector.calls[0][1] == {"samplingInterval": 32768}
        await collector.abort()
        assert fake_connector.methods()[-1] == "HeapProfiler.stopSampling"

    async def test_snapshots_from_chunks(self, fake_connector):
        _serve_snapshots(fake_connector, _snapshot_text(100, 200), _snapshot_text(100, 200, 5 * MB))
        collector = MemoryProfileAnalyzer(fake_connector, "S1")
        await collector.start()
        report = await collector.stop()

        assert [s.label for s in report.snapshots] == ["start", "end"]
        assert report.snapshots[0].total_size == 300
        assert report.snapshots[1].node_count == 3
        assert len(report.snapshots[0].id) == 20
        assert report.analysis.potential_leaks[0].suspicion_level is SuspicionLevel.MEDIUM
        assert report.heap_usage
        assert fake_connector.handler_count() == 0

    async def test_snapshot_limit(self, fake_connector):
        _serve_snapshots(fake_connector, _snapshot_text(100))
        collector = MemoryProfileAnalyzer(fake_connector, "S1", ProfilerConfig(max_snapshots=1, snapshot_triggers=["start", "end", "manual"]))
        await collector.start()

        with pytest.raises(ResourceLimitError):
            await collector.capture_snapshot("extra")

        report = await collector.stop()
        assert len(report.snapshots) == 1
        assert report.warnings == ["Heap snapshot limit of 1 reached, skipped 'end'"]

    async def test_interval_snapshots_stop_at_limit(self, fake_connector):
        _serve_snapshots(fake_connector, _snapshot_text(100))
        config = ProfilerConfig(snapshot_triggers=["interval"], snapshot_interval_ms=5, max_snapshots=1)
        collector = MemoryProfileAnalyzer(fake_connector, "S1", config)
        await collector.start()
        await asyncio.sleep(0.1)
        report = await collector.stop()

        assert [s.label for s in report.snapshots] == ["interval-1"]
        limit_warnings = [w for w in report.warnings if "limit" in w]
        assert limit_warnings == ["Heap snapshot limit of 1 reached, skipped 'interval-2'"]
        assert fake_connector.methods().count("HeapProfiler.takeHeapSnapshot") == 1

    async def test_manual_snapshot_needs_manual_trigger(self, fake_connector):
        _serve_snapshots(fake_connector, _snapshot_text(100))
        collector = MemoryProfileAnalyzer(fake_connector, "S1")
        await collector.start()

        with pytest.raises(InvalidStateError, match="'manual' is not enabled"):
            await collector.capture_snapshot("extra")

        report = await collector.stop()
        assert [s.label for s in report.snapshots] == ["start", "end"]

    async def test_unreadable_snapshot_is_a_warning(self, fake_connector):
        _serve_snapshots(fake_connector, "{}")
        collector = MemoryProfileAnalyzer(fake_connector, "S1", ProfilerConfig(snapshot_triggers=["manual"]))
        await collector.start()

        assert await collector.capture_snapshot("manual") is None
        report = await collector.stop()
        assert report.snapshots == []
        assert report.warnings[0].startswith("snapshot 'manual' dropped")

    async def test_interval_snapshots(self, fake_connector):
        _serve_snapshots(fake_connector, _snapshot_text(100))
        config = ProfilerConfig(snapshot_triggers=["interval"], snapshot_interval_ms=5)
        collector = MemoryProfileAnalyzer(fake_connector, "S1", config)
        await collector.start()
        await asyncio.sleep(0.05)
        report = await collector.stop()

        assert report.snapshots
        assert report.snapshots[0].label == "interval-1"

    async def test_performance_memory_preferred(self, fake_connector):
        fake_connector.evaluator = lambda expression: (
            {"used": 50, "total": 100, "limit": 1000} if "performance.memory" in expression else None
        )
        collector = MemoryProfileAnalyzer(fake_connector, "S1", ProfilerConfig(snapshot_triggers=[]))
        await collector.start()
        report = await collector.stop()

        sample = report.heap_usage[-1]
        assert sample.source == "performance.memory"
        assert sample.pressure == 0.5
        assert "Runtime.getHeapUsage" not in fake_connector.methods()

    async def test_polling_gives_up(self, fake_connector):
        fake_connector.evaluator = lambda expression: RuntimeError("no memory api")
        fake_connector.responses["Runtime.getHeapUsage"] = RuntimeError("target crashed")
        config = ProfilerConfig(snapshot_triggers=[], max_poll_failures=2, usage_poll_interval_ms=1)
        collector = MemoryProfileAnalyzer(fake_connector, "S1", config)
        await collector.start()
        await asyncio.sleep(0.05)
        report = await collector.stop()

        assert report.heap_usage == []
        assert "Heap usage polling stopped after 2 consecutive failures" in report.warnings

    async def test_console_gc_message(self, fake_connector):
        collector = MemoryProfileAnalyzer(fake_connector, "S1", ProfilerConfig(snapshot_triggers=[]))
        await collector.start()

        await fake_connector.emit("Runtime.consoleAPICalled", {
            "type": "log", "args": [{"type": "string", "value": "[GC] Mark-Compact 12.0 -> 8.0 MB"}],
        })
        await fake_connector.emit("Runtime.consoleAPICalled", {
            "type": "log", "args": [{"type": "string", "value": "hello"}],
        })

        report = await collector.stop()
        console_events = [e for e in report.gc_events if e.cause.startswith("console:")]
        assert len(console_events) == 1
        assert console_events[0].type == "major"

    async def test_allocation_samples_in_report(self, fake_connector):
        fake_connector.responses["HeapProfiler.stopSampling"] = {"profile": {
            "head": {"id": 1, "callFrame": {"functionName": "(root)"}, "children": []},
            "samples": [{"size": 32, "nodeId": 1, "ordinal": 1}],
        }}
        collector = MemoryProfileAnalyzer(fake_connector, "S1", ProfilerConfig(snapshot_triggers=[]))
        await collector.start()
        report = await collector.stop()

        assert [s.size for s in report.allocation_samples] == [32]
        assert report.allocation_samples[0].stack_trace == []
