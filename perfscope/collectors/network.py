"""Network collector - per-request state machine and loading analysis."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from .base import BaseCollector
from .classify import classify_resource_type, is_critical_path, is_render_blocking
from ..models import (
    LoadingFailed, LoadingFinished, NetworkReport, ProcessedRequest, RequestSize,
    RequestState, RequestTiming, RequestWillBeSent, ResourceBreakdown, ResourceType,
    ResponseReceived,
)

logger = logging.getLogger(__name__)

TOP_N = 10


def headers_size(headers: Optional[Dict[str, Any]]) -> int:
    """Approximate serialized header size: ``name: value\\r\\n`` per header."""
    return sum(len(str(k)) + len(str(v)) + 4 for k, v in (headers or {}).items())


def max_parallelism(intervals: Iterable[Tuple[float, float]]) -> int:
    """Maximum number of overlapping intervals.

    Sweep line; at equal times ends are processed before starts, so
    back-to-back intervals do not count as overlapping.
    """
    points = []
    for start, end in intervals:
        points.append((start, 1))
        points.append((max(start, end), -1))
    points.sort(key=lambda p: (p[0], p[1]))

    current = peak = 0
    for _, delta in points:
        current += delta
        peak = max(peak, current)
    return peak


def connection_reuse_estimate(urls: List[str]) -> float:
    """Rough connection reuse percentage from distinct hosts.

    No connection ids are tracked; assumes up to two connections per host.
    """
    if not urls:
        return 0.0
    hosts = {urlparse(url).netloc for url in urls}
    estimate = (len(urls) - len(hosts) * 2) / len(urls) * 100
    return min(100.0, max(0.0, estimate))


def _phase(end: Any, start: Any) -> float:
    # Unavailable markers are reported as -1
    if not isinstance(end, (int, float)) or not isinstance(start, (int, float)):
        return 0.0
    if end < 0 or start < 0:
        return 0.0
    return max(0.0, float(end) - float(start))


@dataclass
class _NetworkState:
    requests: Dict[str, ProcessedRequest] = field(default_factory=dict)
    order: List[ProcessedRequest] = field(default_factory=list)
    decoded_bytes: Dict[str, int] = field(default_factory=dict)
    first_timestamp: Optional[float] = None
    last_timestamp: float = 0.0
    ignored_events: int = 0


class NetworkCollector(BaseCollector):
    """Tracks every request from send to a terminal state and aggregates the results."""

    name = "network"
    required_domains = ("Network",)

    def _new_state(self) -> _NetworkState:
        return _NetworkState()

    async def _on_start(self) -> None:
        self.subscribe("Network.requestWillBeSent", self._on_request_will_be_sent)
        self.subscribe("Network.responseReceived", self._on_response_received)
        self.subscribe("Network.dataReceived", self._on_data_received)
        self.subscribe("Network.loadingFinished", self._on_loading_finished)
        self.subscribe("Network.loadingFailed", self._on_loading_failed)
        self.subscribe("Network.requestServedFromCache", self._on_served_from_cache)
        self.subscribe("Network.resourceChangedPriority", self._on_priority_changed)

    # -- helpers ------------------------------------------------------------

    def _relative(self, timestamp: float) -> float:
        state = self._state
        if state.first_timestamp is None:
            return 0.0
        return max(0.0, (timestamp - state.first_timestamp) * 1000)

    def _observe(self, timestamp: float) -> None:
        if timestamp > self._state.last_timestamp:
            self._state.last_timestamp = timestamp

    def _lookup(self, request_id: str) -> Optional[ProcessedRequest]:
        request = self._state.requests.get(request_id)
        if request is None:
            self._state.ignored_events += 1
            logger.debug(f"Ignoring event for unknown request {request_id}")
        return request

    # -- event handlers ------------------------------------------------------

    def _on_request_will_be_sent(self, params: Dict[str, Any]) -> None:
        event = RequestWillBeSent.from_params(params)
        if event is None:
            return
        state = self._state
        if state.first_timestamp is None:
            state.first_timestamp = event.timestamp
        self._observe(event.timestamp)

        previous = state.requests.get(event.request_id)
        if previous is not None and event.redirect_response is not None:
            self._complete_redirect(previous, event)

        resource_type = classify_resource_type(event.url, event.headers)
        request = ProcessedRequest(
            id=event.request_id,
            url=event.url,
            method=event.method,
            timing=RequestTiming(start_time=self._relative(event.timestamp)),
            size=RequestSize(
                request_headers=headers_size(event.headers),
                request_body=len(event.post_data.encode("utf-8")),
            ),
            priority=event.initial_priority,
            initiator=str(event.initiator.get("type", "unknown")),
            resource_type=resource_type,
            render_blocking=is_render_blocking(resource_type),
            critical_path=is_critical_path(resource_type),
        )
        request.timing.end_time = request.timing.start_time
        state.requests[event.request_id] = request
        state.order.append(request)

    def _complete_redirect(self, previous: ProcessedRequest, event: RequestWillBeSent) -> None:
        state = self._state
        response = event.redirect_response or {}
        previous.status = response.get("status")
        previous.status_text = response.get("statusText", "")
        previous.size.response_headers = headers_size(response.get("headers"))
        previous.size.transfer_size = int(response.get("encodedDataLength") or 0)
        self._finish_sizes(previous, 0)
        previous.finalize(RequestState.COMPLETED, self._relative(event.timestamp))

        # Keep the hop under a distinct key; the request id continues with the new hop
        hop = sum(1 for r in state.order if r.id.startswith(f"{event.request_id}:redirect"))
        previous.id = f"{event.request_id}:redirect{hop}"
        state.requests.pop(event.request_id, None)
        state.decoded_bytes.pop(event.request_id, None)

    def _on_response_received(self, params: Dict[str, Any]) -> None:
        event = ResponseReceived.from_params(params)
        if event is None:
            return
        request = self._lookup(event.request_id)
        if request is None:
            return
        self._observe(event.timestamp)

        request.status = event.status
        request.status_text = event.status_text
        request.mime_type = event.mime_type
        request.cached = request.cached or event.from_disk_cache or event.from_prefetch_cache
        request.from_service_worker = event.from_service_worker

        if event.timing:
            timing = event.timing
            request.timing.dns = _phase(timing.get("dnsEnd"), timing.get("dnsStart"))
            request.timing.connect = _phase(timing.get("connectEnd"), timing.get("connectStart"))
            request.timing.ssl = _phase(timing.get("sslEnd"), timing.get("sslStart"))
            request.timing.request = _phase(timing.get("sendEnd"), timing.get("sendStart"))
            request.timing.response = _phase(timing.get("receiveHeadersEnd"), timing.get("sendEnd"))

        request.size.response_headers = headers_size(event.headers)
        request.size.encoded_response_body = event.encoded_data_length

        reclassified = classify_resource_type(request.url, event.headers, event.mime_type)
        if reclassified is not ResourceType.OTHER or request.resource_type is ResourceType.OTHER:
            request.resource_type = reclassified
            request.render_blocking = is_render_blocking(reclassified)
            request.critical_path = is_critical_path(reclassified)

    def _on_data_received(self, params: Dict[str, Any]) -> None:
        request_id = params.get("requestId")
        if request_id not in self._state.requests:
            return
        length = params.get("dataLength")
        if isinstance(length, int) and length > 0:
            self._state.decoded_bytes[request_id] = self._state.decoded_bytes.get(request_id, 0) + length

    def _on_loading_finished(self, params: Dict[str, Any]) -> None:
        event = LoadingFinished.from_params(params)
        if event is None:
            return
        request = self._lookup(event.request_id)
        if request is None:
            return
        self._observe(event.timestamp)

        request.size.transfer_size = event.encoded_data_length
        self._finish_sizes(request, self._state.decoded_bytes.get(event.request_id, 0))
        if not request.finalize(RequestState.COMPLETED, self._relative(event.timestamp)):
            logger.debug(f"Request {event.request_id} already finalized")

    def _on_loading_failed(self, params: Dict[str, Any]) -> None:
        event = LoadingFailed.from_params(params)
        if event is None:
            return
        request = self._lookup(event.request_id)
        if request is None:
            return
        self._observe(event.timestamp)

        request.status = 0
        request.status_text = event.error_text
        request.error_text = event.error_text
        if not request.finalize(RequestState.FAILED, self._relative(event.timestamp)):
            logger.debug(f"Request {event.request_id} already finalized")

    def _on_served_from_cache(self, params: Dict[str, Any]) -> None:
        request = self._lookup(params.get("requestId", ""))
        if request is not None:
            request.cached = True

    def _on_priority_changed(self, params: Dict[str, Any]) -> None:
        request = self._lookup(params.get("requestId", ""))
        if request is not None and params.get("newPriority"):
            request.priority = params["newPriority"]

    @staticmethod
    def _finish_sizes(request: ProcessedRequest, decoded: int) -> None:
        size = request.size
        if decoded > 0:
            size.response_body = decoded
        else:
            size.response_body = max(0, size.transfer_size - size.response_headers)
        size.total = size.request_headers + size.request_body + size.response_headers + size.response_body

    # -- finalization ---------------------------------------------------------

    async def _on_stop(self) -> NetworkReport:
        state = self._state
        self.release()

        end = self._relative(state.last_timestamp) if state.first_timestamp is not None else 0.0
        incomplete = 0
        for request in state.order:
            if request.finalize(RequestState.INCOMPLETE, end):
                incomplete += 1
        if incomplete:
            logger.info(f"{incomplete} requests still pending at stop, marked incomplete")

        report = self.build_report(state.order)
        if state.ignored_events:
            report.warnings.append(f"{state.ignored_events} events referenced unknown requests")
        return report

    def build_report(self, requests: List[ProcessedRequest]) -> NetworkReport:
        """Aggregate finalized requests into a NetworkReport."""
        requests = list(requests)
        count = len(requests)

        breakdown: Dict[str, ResourceBreakdown] = {}
        for request in requests:
            entry = breakdown.setdefault(request.resource_type.value, ResourceBreakdown())
            entry.count += 1
            entry.transfer_size += request.size.transfer_size
            entry.resource_size += request.size.response_body

        state_counts = {s.value: 0 for s in RequestState if s is not RequestState.PENDING}
        for request in requests:
            state_counts[request.state.value] = state_counts.get(request.state.value, 0) + 1

        if requests:
            total_duration = (max(r.timing.end_time for r in requests)
                              - min(r.timing.start_time for r in requests))
        else:
            total_duration = 0.0

        by_size = sorted(requests, key=lambda r: r.size.transfer_size, reverse=True)
        by_duration = sorted(requests, key=lambda r: r.timing.duration, reverse=True)

        return NetworkReport(
            request_count=count,
            total_transfer_size=sum(r.size.transfer_size for r in requests),
            total_resource_size=sum(r.size.response_body for r in requests),
            total_duration=total_duration,
            breakdown=breakdown,
            state_counts=state_counts,
            requests=requests,
            critical_path_requests=[r for r in requests if r.critical_path],
            render_blocking_requests=[r for r in requests if r.render_blocking],
            largest_requests=by_size[:TOP_N],
            slowest_requests=by_duration[:TOP_N],
            slow_requests=[r for r in requests if r.timing.duration > self.config.slow_request_ms],
            large_requests=[r for r in requests if r.size.transfer_size > self.config.large_resource_bytes],
            parallel_request_count=max_parallelism(
                (r.timing.start_time, r.timing.end_time) for r in requests
            ),
            connection_reuse=connection_reuse_estimate([r.url for r in requests]),
            cache_hit_ratio=(sum(1 for r in requests if r.cached) / count) if count else 0.0,
        )
