"""Tests for the network collector."""

import pytest

from perfscope.collectors.network import NetworkCollector, connection_reuse_estimate, max_parallelism
from perfscope.config import ProfilerConfig
from perfscope.errors import InvalidStateError
from perfscope.models import RequestState, ResourceType

from conftest import SESSION_ID


def _sent(request_id, timestamp, url, **extra):
    params = {
        "requestId": request_id,
        "timestamp": timestamp,
        "request": {"url": url, "method": "GET", "headers": {"Accept": "*/*"}},
        "initiator": {"type": "parser"},
    }
    params.update(extra)
    return params


def _response(request_id, timestamp, mime_type="text/html", status=200, **response):
    body = {"status": status, "statusText": "OK", "mimeType": mime_type,
            "headers": {"Content-Type": mime_type}}
    body.update(response)
    return {"requestId": request_id, "timestamp": timestamp, "response": body}


class TestHelpers:

    def test_parallelism_overlap(self):
        assert max_parallelism([(0, 100), (50, 150), (120, 200)]) == 2

    def test_parallelism_back_to_back(self):
        assert max_parallelism([(0, 100), (100, 200), (200, 300)]) == 1

    def test_parallelism_empty(self):
        assert max_parallelism([]) == 0

    def test_connection_reuse_estimate(self):
        urls = [f"https://cdn.test/{i}.js" for i in range(10)]
        assert connection_reuse_estimate(urls) == 80.0
        assert connection_reuse_estimate(["https://a.test/", "https://b.test/"]) == 0.0
        assert connection_reuse_estimate([]) == 0.0


@pytest.mark.asyncio
class TestNetworkCollector:

    async def test_stop_without_start(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        with pytest.raises(InvalidStateError):
            await collector.stop()

    async def test_completed_request(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        await collector.start()

        await fake_connector.emit("Network.requestWillBeSent", _sent("r1", 10.0, "https://example.test/"))
        await fake_connector.emit("Network.responseReceived", _response("r1", 10.2, timing={
            "dnsStart": 1.0, "dnsEnd": 5.0, "connectStart": 5.0, "connectEnd": 20.0,
            "sslStart": -1, "sslEnd": -1, "sendStart": 21.0, "sendEnd": 22.0, "receiveHeadersEnd": 120.0,
        }))
        await fake_connector.emit("Network.dataReceived", {"requestId": "r1", "dataLength": 4000})
        await fake_connector.emit("Network.loadingFinished",
                                  {"requestId": "r1", "timestamp": 10.5, "encodedDataLength": 1500})

        report = await collector.stop()

        assert report.request_count == 1
        request = report.requests[0]
        assert request.state is RequestState.COMPLETED
        assert request.status == 200
        assert request.resource_type is ResourceType.DOCUMENT
        assert request.critical_path is True
        assert request.initiator == "parser"
        assert request.timing.duration == pytest.approx(500.0)
        assert request.timing.dns == 4.0
        assert request.timing.ssl == 0.0
        assert request.timing.response == 98.0
        assert request.size.transfer_size == 1500
        assert request.size.response_body == 4000
        assert report.total_transfer_size == 1500
        assert report.state_counts == {"completed": 1, "failed": 0, "incomplete": 0}
        assert report.critical_path_requests == [request]
        assert fake_connector.handler_count() == 0

    async def test_failed_and_incomplete(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        await collector.start()

        await fake_connector.emit("Network.requestWillBeSent", _sent("ok", 1.0, "https://a.test/"))
        await fake_connector.emit("Network.requestWillBeSent", _sent("bad", 1.1, "https://a.test/app.js"))
        await fake_connector.emit("Network.requestWillBeSent", _sent("slow", 1.2, "https://a.test/img.png"))
        await fake_connector.emit("Network.loadingFailed",
                                  {"requestId": "bad", "timestamp": 1.3, "errorText": "net::ERR_FAILED"})
        await fake_connector.emit("Network.loadingFinished",
                                  {"requestId": "ok", "timestamp": 2.0, "encodedDataLength": 10})

        report = await collector.stop()

        states = {r.id: r.state for r in report.requests}
        assert states == {
            "ok": RequestState.COMPLETED,
            "bad": RequestState.FAILED,
            "slow": RequestState.INCOMPLETE,
        }
        failed = next(r for r in report.requests if r.id == "bad")
        assert failed.error_text == "net::ERR_FAILED"
        assert failed.status == 0
        incomplete = next(r for r in report.requests if r.id == "slow")
        assert incomplete.timing.end_time == pytest.approx(1000.0)
        assert report.state_counts == {"completed": 1, "failed": 1, "incomplete": 1}

    async def test_terminal_state_is_final(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        await collector.start()

        await fake_connector.emit("Network.requestWillBeSent", _sent("r1", 1.0, "https://a.test/"))
        await fake_connector.emit("Network.loadingFailed", {"requestId": "r1", "timestamp": 1.1})
        await fake_connector.emit("Network.loadingFinished", {"requestId": "r1", "timestamp": 1.5})

        report = await collector.stop()
        assert report.requests[0].state is RequestState.FAILED
        assert report.requests[0].timing.duration == pytest.approx(100.0)

    async def test_unknown_request_events_are_dropped(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        await collector.start()

        await fake_connector.emit("Network.responseReceived", _response("ghost", 1.0))
        await fake_connector.emit("Network.loadingFinished", {"requestId": "ghost", "timestamp": 1.2})

        report = await collector.stop()
        assert report.request_count == 0
        assert report.warnings == ["2 events referenced unknown requests"]

    async def test_redirect_keeps_both_hops(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        await collector.start()

        await fake_connector.emit("Network.requestWillBeSent", _sent("r1", 1.0, "http://a.test/"))
        await fake_connector.emit("Network.requestWillBeSent", _sent(
            "r1", 1.1, "https://a.test/",
            redirectResponse={"status": 301, "statusText": "Moved", "headers": {}},
        ))
        await fake_connector.emit("Network.loadingFinished", {"requestId": "r1", "timestamp": 1.4})

        report = await collector.stop()

        assert [r.id for r in report.requests] == ["r1:redirect0", "r1"]
        hop, final = report.requests
        assert hop.status == 301
        assert hop.state is RequestState.COMPLETED
        assert hop.timing.duration == pytest.approx(100.0)
        assert final.url == "https://a.test/"
        assert final.state is RequestState.COMPLETED

    async def test_cache_ratio_and_priority(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        await collector.start()

        for index in range(4):
            await fake_connector.emit("Network.requestWillBeSent",
                                      _sent(f"r{index}", 1.0 + index, f"https://a.test/{index}.css"))
        await fake_connector.emit("Network.requestServedFromCache", {"requestId": "r0"})
        await fake_connector.emit("Network.resourceChangedPriority",
                                  {"requestId": "r1", "newPriority": "VeryHigh"})

        report = await collector.stop()

        assert report.cache_hit_ratio == 0.25
        assert report.requests[1].priority == "VeryHigh"
        assert len(report.render_blocking_requests) == 4
        assert report.breakdown["stylesheet"].count == 4

    async def test_slow_and_large_requests(self, fake_connector):
        config = ProfilerConfig(slow_request_ms=100, large_resource_bytes=1000)
        collector = NetworkCollector(fake_connector, SESSION_ID, config)
        await collector.start()

        await fake_connector.emit("Network.requestWillBeSent", _sent("big", 1.0, "https://a.test/big.js"))
        await fake_connector.emit("Network.loadingFinished",
                                  {"requestId": "big", "timestamp": 1.5, "encodedDataLength": 5000})

        report = await collector.stop()
        assert [r.id for r in report.slow_requests] == ["big"]
        assert [r.id for r in report.large_requests] == ["big"]

    async def test_foreign_session_is_ignored(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        await collector.start()

        await fake_connector.emit("Network.requestWillBeSent",
                                  _sent("r1", 1.0, "https://other.test/"), session_id="OTHER")

        report = await collector.stop()
        assert report.request_count == 0

    async def test_restart_starts_fresh(self, fake_connector):
        collector = NetworkCollector(fake_connector, SESSION_ID)
        await collector.start()
        await fake_connector.emit("Network.requestWillBeSent", _sent("r1", 1.0, "https://a.test/"))
        await collector.stop()

        await collector.start()
        report = await collector.stop()
        assert report.request_count == 0
