"""Data model shared by the collectors and the session coordinator.

Three layers live here:

* protocol payload structs (``RequestWillBeSent``, ``RawTimelineEvent`` ...)
  built with ``from_params()``. Missing or malformed fields fall back to
  defaults instead of raising, so a newer or older Chrome does not break
  collection.
* processed records (``ProcessedRequest``, ``TimelineEvent``, ``ProfileNode``,
  ``HeapSnapshot`` ...) that collectors accumulate during a recording.
* report objects returned from ``stop()``. ``to_dict()`` turns any of them
  into plain JSON-ready data.
"""

import json
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"


class EventCategory(str, Enum):
    NAVIGATION = "navigation"
    SCRIPT = "script"
    LAYOUT = "layout"
    PAINT = "paint"
    COMPOSITE = "composite"
    INPUT = "input"
    ANIMATION = "animation"
    GC = "gc"
    IDLE = "idle"
    OTHER = "other"


class RequestState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    INCOMPLETE = "incomplete"


class ResourceType(str, Enum):
    DOCUMENT = "document"
    SCRIPT = "script"
    STYLESHEET = "stylesheet"
    IMAGE = "image"
    FONT = "font"
    XHR = "xhr"
    PREFLIGHT = "preflight"
    OTHER = "other"


class GrowthTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class SuspicionLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Rating(str, Enum):
    GOOD = "good"
    NEEDS_IMPROVEMENT = "needs-improvement"
    POOR = "poor"


def to_plain(value: Any) -> Any:
    """Recursively convert dataclasses/enums into JSON-ready plain data."""
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


class Serializable:
    """Mixin for report objects."""

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(self)

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Payload coercion helpers
# ---------------------------------------------------------------------------

def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    return default


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _as_str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------

PHASES = {"B": "begin", "E": "end", "X": "complete", "I": "instant"}


@dataclass
class RawTimelineEvent:
    """Trace-style event before conversion; ``ts``/``dur`` in microseconds."""
    name: str
    ts: float
    ph: str = "I"
    cat: str = ""
    dur: Optional[float] = None
    pid: int = 0
    tid: int = 0
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "RawTimelineEvent":
        dur = params.get("dur")
        ph = _as_str(params.get("ph"), "I")
        return cls(
            name=_as_str(params.get("name"), "unknown") or "unknown",
            ts=_as_float(params.get("ts")),
            ph=ph if ph in PHASES else "I",
            cat=_as_str(params.get("cat")),
            dur=_as_float(dur) if isinstance(dur, (int, float)) and not isinstance(dur, bool) else None,
            pid=_as_int(params.get("pid")),
            tid=_as_int(params.get("tid")),
            args=_as_dict(params.get("args")),
            id=params.get("id") if isinstance(params.get("id"), str) else None,
        )


@dataclass(frozen=True)
class TimelineEvent:
    """Converted event; times in ms relative to navigation start."""
    name: str
    category: EventCategory
    start_time: float
    phase: str
    end_time: Optional[float] = None
    duration: Optional[float] = None
    process_id: int = 0
    thread_id: int = 0
    data: Optional[Dict[str, Any]] = None
    id: Optional[str] = None


@dataclass
class LCPMetric:
    value: float
    rating: Rating
    element: Optional[str] = None
    url: Optional[str] = None
    render_time: Optional[float] = None
    load_time: Optional[float] = None


@dataclass
class FIDMetric:
    value: float
    rating: Rating
    event_type: str
    start_time: float
    processing_start: float
    processing_end: Optional[float] = None


@dataclass
class CLSMetric:
    value: float
    rating: Rating
    sources: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class INPMetric:
    value: float
    rating: Rating
    event_type: str
    start_time: float
    processing_start: Optional[float] = None
    processing_end: Optional[float] = None


@dataclass
class CoreWebVitals:
    lcp: Optional[LCPMetric] = None
    fid: Optional[FIDMetric] = None
    cls: Optional[CLSMetric] = None
    inp: Optional[INPMetric] = None


@dataclass
class NavigationTiming:
    """W3C navigation entry fields (ms from time origin)."""
    navigation_start: Optional[float] = None
    fetch_start: Optional[float] = None
    domain_lookup_start: Optional[float] = None
    domain_lookup_end: Optional[float] = None
    connect_start: Optional[float] = None
    connect_end: Optional[float] = None
    secure_connection_start: Optional[float] = None
    request_start: Optional[float] = None
    response_start: Optional[float] = None
    response_end: Optional[float] = None
    dom_interactive: Optional[float] = None
    dom_content_loaded_event_start: Optional[float] = None
    dom_content_loaded_event_end: Optional[float] = None
    dom_complete: Optional[float] = None
    load_event_start: Optional[float] = None
    load_event_end: Optional[float] = None
    ttfb: Optional[float] = None
    dom_processing: Optional[float] = None
    total_page_load: Optional[float] = None


@dataclass
class LongTask:
    start_time: float
    duration: float
    name: str = ""
    attribution: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class JavaScriptMetrics:
    total_execution_time: float = 0.0
    main_thread_blocking_time: float = 0.0
    long_tasks: List[LongTask] = field(default_factory=list)
    script_urls: List[str] = field(default_factory=list)
    compilation_time: float = 0.0
    execution_breakdown: Dict[str, float] = field(default_factory=lambda: {
        "evaluation": 0.0, "parsing": 0.0, "compilation": 0.0,
    })


@dataclass
class LayoutPaintMetrics:
    layout_count: int = 0
    total_layout_time: float = 0.0
    paint_count: int = 0
    total_paint_time: float = 0.0
    layer_count: int = 0
    first_paint: Optional[float] = None
    first_contentful_paint: Optional[float] = None
    forced_reflow_count: int = 0
    avg_layout_time: float = 0.0


@dataclass
class Screenshot:
    timestamp: float
    data: str


@dataclass
class TimelineReport(Serializable):
    events: List[TimelineEvent]
    core_web_vitals: CoreWebVitals
    navigation_timing: Optional[NavigationTiming]
    javascript: JavaScriptMetrics
    layout_paint: LayoutPaintMetrics
    metadata: Dict[str, Any] = field(default_factory=dict)
    screenshots: List[Screenshot] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

@dataclass
class RequestWillBeSent:
    request_id: str
    timestamp: float
    url: str = ""
    method: str = "GET"
    headers: Dict[str, Any] = field(default_factory=dict)
    post_data: str = ""
    initial_priority: str = ""
    initiator: Dict[str, Any] = field(default_factory=dict)
    resource_type: str = ""
    redirect_response: Optional[Dict[str, Any]] = None

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> Optional["RequestWillBeSent"]:
        request_id = params.get("requestId")
        if not isinstance(request_id, str):
            return None
        request = _as_dict(params.get("request"))
        redirect = params.get("redirectResponse")
        return cls(
            request_id=request_id,
            timestamp=_as_float(params.get("timestamp")),
            url=_as_str(request.get("url")),
            method=_as_str(request.get("method"), "GET"),
            headers=_as_dict(request.get("headers")),
            post_data=_as_str(request.get("postData")),
            initial_priority=_as_str(request.get("initialPriority")),
            initiator=_as_dict(params.get("initiator")),
            resource_type=_as_str(params.get("type")),
            redirect_response=redirect if isinstance(redirect, dict) else None,
        )


@dataclass
class ResponseReceived:
    request_id: str
    timestamp: float
    status: int = 0
    status_text: str = ""
    mime_type: str = ""
    headers: Dict[str, Any] = field(default_factory=dict)
    from_disk_cache: bool = False
    from_prefetch_cache: bool = False
    from_service_worker: bool = False
    encoded_data_length: int = 0
    timing: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> Optional["ResponseReceived"]:
        request_id = params.get("requestId")
        if not isinstance(request_id, str):
            return None
        response = _as_dict(params.get("response"))
        return cls(
            request_id=request_id,
            timestamp=_as_float(params.get("timestamp")),
            status=_as_int(response.get("status")),
            status_text=_as_str(response.get("statusText")),
            mime_type=_as_str(response.get("mimeType")),
            headers=_as_dict(response.get("headers")),
            from_disk_cache=bool(response.get("fromDiskCache", False)),
            from_prefetch_cache=bool(response.get("fromPrefetchCache", False)),
            from_service_worker=bool(response.get("fromServiceWorker", False)),
            encoded_data_length=_as_int(response.get("encodedDataLength")),
            timing=_as_dict(response.get("timing")),
        )


@dataclass
class LoadingFinished:
    request_id: str
    timestamp: float
    encoded_data_length: int = 0

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> Optional["LoadingFinished"]:
        request_id = params.get("requestId")
        if not isinstance(request_id, str):
            return None
        return cls(
            request_id=request_id,
            timestamp=_as_float(params.get("timestamp")),
            encoded_data_length=_as_int(params.get("encodedDataLength")),
        )


@dataclass
class LoadingFailed:
    request_id: str
    timestamp: float
    error_text: str = "Failed"
    canceled: bool = False

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> Optional["LoadingFailed"]:
        request_id = params.get("requestId")
        if not isinstance(request_id, str):
            return None
        return cls(
            request_id=request_id,
            timestamp=_as_float(params.get("timestamp")),
            error_text=_as_str(params.get("errorText"), "Failed") or "Failed",
            canceled=bool(params.get("canceled", False)),
        )


@dataclass
class RequestTiming:
    """Milliseconds relative to the first observed request."""
    start_time: float = 0.0
    end_time: float = 0.0
    duration: float = 0.0
    dns: Optional[float] = None
    connect: Optional[float] = None
    ssl: Optional[float] = None
    request: float = 0.0
    response: float = 0.0
    total: float = 0.0


@dataclass
class RequestSize:
    request_headers: int = 0
    request_body: int = 0
    response_headers: int = 0
    response_body: int = 0
    encoded_response_body: int = 0
    total: int = 0
    transfer_size: int = 0


@dataclass
class ProcessedRequest:
    id: str
    url: str
    method: str
    state: RequestState = RequestState.PENDING
    status: Optional[int] = None
    status_text: str = ""
    mime_type: str = ""
    error_text: Optional[str] = None
    timing: RequestTiming = field(default_factory=RequestTiming)
    size: RequestSize = field(default_factory=RequestSize)
    priority: str = ""
    initiator: str = "unknown"
    cached: bool = False
    from_service_worker: bool = False
    resource_type: ResourceType = ResourceType.OTHER
    render_blocking: bool = False
    critical_path: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state is not RequestState.PENDING

    def finalize(self, state: RequestState, end_time: float) -> bool:
        """Move into a terminal state once; later calls are ignored (returns False)."""
        if self.is_terminal or state is RequestState.PENDING:
            return False
        self.state = state
        self.timing.end_time = max(end_time, self.timing.start_time)
        self.timing.duration = self.timing.end_time - self.timing.start_time
        self.timing.total = self.timing.duration
        return True


@dataclass
class ResourceBreakdown:
    count: int = 0
    transfer_size: int = 0
    resource_size: int = 0


@dataclass
class NetworkReport(Serializable):
    request_count: int
    total_transfer_size: int
    total_resource_size: int
    total_duration: float
    breakdown: Dict[str, ResourceBreakdown]
    state_counts: Dict[str, int]
    requests: List[ProcessedRequest]
    critical_path_requests: List[ProcessedRequest]
    render_blocking_requests: List[ProcessedRequest]
    largest_requests: List[ProcessedRequest]
    slowest_requests: List[ProcessedRequest]
    slow_requests: List[ProcessedRequest]
    large_requests: List[ProcessedRequest]
    parallel_request_count: int
    # Percentage estimated from distinct hosts; no connection ids are tracked
    connection_reuse: float
    cache_hit_ratio: float
    warnings: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# CPU
# ---------------------------------------------------------------------------

@dataclass
class ProfileNode:
    node_id: int
    function_name: str = "(anonymous)"
    url: str = ""
    line: int = 0
    column: int = 0
    script_id: str = "0"
    hit_count: int = 0
    self_time: float = 0.0  # microseconds
    total_time: float = 0.0  # microseconds, self + descendants
    children: List[int] = field(default_factory=list)
    parent: Optional[int] = None

    @classmethod
    def from_params(cls, params: Dict[str, Any], fallback_id: int = 0) -> "ProfileNode":
        frame = _as_dict(params.get("callFrame"))
        children = params.get("children")
        return cls(
            node_id=_as_int(params.get("id"), fallback_id),
            function_name=_as_str(frame.get("functionName")) or "(anonymous)",
            url=_as_str(frame.get("url")),
            line=_as_int(frame.get("lineNumber")),
            column=_as_int(frame.get("columnNumber")),
            script_id=str(frame.get("scriptId", "0")),
            hit_count=_as_int(params.get("hitCount")),
            children=[c for c in children if isinstance(c, int)] if isinstance(children, list) else [],
        )

    @property
    def identity(self) -> tuple:
        return (self.function_name, self.url, self.line, self.column)


@dataclass
class OptimizationInfo:
    """Heuristic labels, not engine facts."""
    is_inlined: bool
    is_optimized: bool
    deoptimization_risk: Optional[str] = None


@dataclass
class HotSpot:
    function_name: str
    url: str
    line: int
    column: int
    self_time: float
    total_time: float
    hit_count: int
    percentage: float
    optimization_info: Optional[OptimizationInfo] = None


@dataclass
class FunctionMetric:
    function_name: str
    url: str
    line: int
    column: int
    call_count: int
    self_time: float
    total_time: float
    average_time: float


@dataclass
class CallFrame:
    function_name: str
    url: str
    line_number: int
    column_number: int
    script_id: str


@dataclass
class ExecutionPath:
    critical_path: List[CallFrame] = field(default_factory=list)
    longest_path: List[CallFrame] = field(default_factory=list)
    most_frequent_path: List[CallFrame] = field(default_factory=list)


@dataclass
class InlinedFunction:
    function_name: str
    url: str
    line_number: int
    column_number: int
    reason: str
    impact: str
    time_saved: float
    call_count: int


@dataclass
class DeoptimizationRisk:
    function_name: str
    url: str
    line_number: int
    column_number: int
    reason: str
    impact: str
    bailout_type: str = "predicted"


@dataclass
class OptimizationOpportunity:
    type: str
    function_name: str
    url: str
    line_number: int
    description: str
    potential_impact: str
    recommendation: str
    estimated_savings: float


@dataclass
class OptimizationStats:
    total_functions: int = 0
    optimized_functions: int = 0
    inlined_functions: int = 0
    deoptimized_functions: int = 0
    optimization_ratio: float = 0.0
    inlining_ratio: float = 0.0
    total_time_saved: float = 0.0


@dataclass
class OptimizationDetails:
    inlined_functions: List[InlinedFunction] = field(default_factory=list)
    deoptimizations: List[DeoptimizationRisk] = field(default_factory=list)
    opportunities: List[OptimizationOpportunity] = field(default_factory=list)
    stats: OptimizationStats = field(default_factory=OptimizationStats)


@dataclass
class CPUAnalysis:
    total_samples: int = 0
    total_time: float = 0.0  # microseconds
    idle_time: float = 0.0
    active_time: float = 0.0
    hot_spots: List[HotSpot] = field(default_factory=list)
    function_breakdown: List[FunctionMetric] = field(default_factory=list)
    execution_path: ExecutionPath = field(default_factory=ExecutionPath)
    optimizations: Optional[OptimizationDetails] = None
    recommendations: List[str] = field(default_factory=list)


@dataclass
class CPUReport(Serializable):
    duration: float
    sample_count: int
    analysis: CPUAnalysis
    metadata: Dict[str, Any] = field(default_factory=dict)
    profile: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

@dataclass
class HeapSnapshot:
    id: str
    label: str
    elapsed_time_ms: float
    node_count: int
    edge_count: int
    total_size: int


@dataclass
class HeapUsageSample:
    elapsed_time_ms: float
    source: str
    used: int
    total: int
    limit: int
    pressure: float

    @classmethod
    def from_usage(cls, elapsed_time_ms: float, source: str,
                   used: int, total: int, limit: int = 0) -> "HeapUsageSample":
        pressure = used / total if total > 0 else 0.0
        return cls(
            elapsed_time_ms=elapsed_time_ms,
            source=source,
            used=used,
            total=total,
            limit=limit,
            pressure=min(max(pressure, 0.0), 1.0),
        )


@dataclass
class GCEvent:
    elapsed_time_ms: float
    type: str = "unknown"
    duration: float = 0.0
    freed_bytes: int = 0
    total_heap_size: int = 0
    used_heap_size: int = 0
    cause: str = "unknown"


@dataclass
class AllocationSample:
    size: int
    node_id: int
    ordinal: int
    stack_trace: List[str] = field(default_factory=list)


@dataclass
class ObjectRetention:
    object_type: str
    retained_size: int
    instance_count: int
    suspicion_level: SuspicionLevel


@dataclass
class MemoryAnalysis:
    total_gc_time: float = 0.0
    avg_memory_usage: float = 0.0
    max_memory_usage: int = 0
    memory_growth_rate: float = 0.0  # bytes per second
    memory_growth_trend: GrowthTrend = GrowthTrend.STABLE
    gc_frequency: float = 0.0  # events per second
    gc_efficiency: float = 0.0  # bytes freed per millisecond
    potential_leaks: List[ObjectRetention] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class MemoryReport(Serializable):
    snapshots: List[HeapSnapshot]
    heap_usage: List[HeapUsageSample]
    gc_events: List[GCEvent]
    allocation_samples: List[AllocationSample]
    analysis: MemoryAnalysis
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------

@dataclass
class EnvironmentSnapshot:
    user_agent: str
    viewport_width: int
    viewport_height: int
    url: str
    timestamp: str
    throttling: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordingReport(Serializable):
    environment: EnvironmentSnapshot
    duration: float  # wall-clock milliseconds
    timestamp: str
    timeline: Optional[TimelineReport] = None
    network: Optional[NetworkReport] = None
    cpu: Optional[CPUReport] = None
    memory: Optional[MemoryReport] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = to_plain(self)
        # Sub-reports are present only when requested
        for key in ("timeline", "network", "cpu", "memory"):
            if data.get(key) is None:
                data.pop(key, None)
        return data
