"""Recording configuration - every knob is fixed at construction time."""

import copy
from typing import Any, Dict, List, Optional


# Network throttling presets based on real-world conditions
NETWORK_PRESETS: Dict[str, Dict[str, float]] = {
    "Fast3G": {
        "downloadThroughput": 1600 * 1024,
        "uploadThroughput": 750 * 1024,
        "latency": 150,
    },
    "Slow3G": {
        "downloadThroughput": 500 * 1024,
        "uploadThroughput": 500 * 1024,
        "latency": 400,
    },
    "Fast4G": {
        "downloadThroughput": 4000 * 1024,
        "uploadThroughput": 3000 * 1024,
        "latency": 20,
    },
    "NoThrottling": {
        "downloadThroughput": 0,
        "uploadThroughput": 0,
        "latency": 0,
    },
}

SNAPSHOT_TRIGGERS = ("start", "end", "interval", "manual")


def get_network_throttling(preset: str) -> Dict[str, float]:
    """Return CDP Network.emulateNetworkConditions parameters for a preset."""
    if preset not in NETWORK_PRESETS:
        raise ValueError(f"Unknown network throttling preset: {preset}")
    return dict(NETWORK_PRESETS[preset])


class ProfilerConfig:
    """Recording configuration.

    Units follow the protocol they end up in: sampling intervals in
    microseconds (CPU) or bytes (allocation sampling), everything time-like
    on the Python side in milliseconds unless the name says otherwise.
    """

    DEFAULT_CWV_THRESHOLDS: Dict[str, Dict[str, float]] = {
        "lcp": {"good": 2500, "poor": 4000},
        "fid": {"good": 100, "poor": 300},
        "cls": {"good": 0.1, "poor": 0.25},
        "inp": {"good": 200, "poor": 500},
    }

    # Preset overrides, applied on top of the defaults
    PRESETS: Dict[str, Dict[str, Any]] = {
        "default": {},
        "ci": {
            "call_timeout": 30.0,
            "network_throttling": "Fast3G",
            "cpu_throttling": 4,
        },
        "dev": {
            "network_throttling": "Fast4G",
            "cpu_throttling": 2,
        },
    }

    def __init__(self,
                 sampling_interval: int = 1000,
                 include_inlining: bool = True,
                 include_raw_profile: bool = False,
                 long_task_threshold: float = 50.0,
                 include_categories: Optional[List[str]] = None,
                 exclude_categories: Optional[List[str]] = None,
                 min_event_duration: float = 0.0,
                 observer_timeout_ms: int = 1000,
                 slow_request_ms: float = 2000.0,
                 large_resource_bytes: int = 1024 * 1024,
                 cwv_thresholds: Optional[Dict[str, Dict[str, float]]] = None,
                 snapshot_triggers: Optional[List[str]] = None,
                 snapshot_interval_ms: int = 10000,
                 max_snapshots: int = 10,
                 usage_poll_interval_ms: int = 1000,
                 max_poll_failures: int = 5,
                 track_allocation_sampling: bool = True,
                 allocation_sampling_interval: int = 32768,
                 monitor_gc_events: bool = True,
                 gc_drop_threshold_bytes: int = 1024 * 1024,
                 viewport_width: int = 1920,
                 viewport_height: int = 1080,
                 network_throttling: str = "NoThrottling",
                 cpu_throttling: float = 1,
                 call_timeout: float = 15.0):
        self.sampling_interval = sampling_interval
        self.include_inlining = include_inlining
        self.include_raw_profile = include_raw_profile
        self.long_task_threshold = long_task_threshold
        self.include_categories = include_categories
        self.exclude_categories = exclude_categories
        self.min_event_duration = min_event_duration
        self.observer_timeout_ms = observer_timeout_ms
        self.slow_request_ms = slow_request_ms
        self.large_resource_bytes = large_resource_bytes
        self.cwv_thresholds = self._merge_cwv_thresholds(cwv_thresholds)
        self.snapshot_triggers = self._parse_triggers(snapshot_triggers)
        self.snapshot_interval_ms = snapshot_interval_ms
        self.max_snapshots = max_snapshots
        self.usage_poll_interval_ms = usage_poll_interval_ms
        self.max_poll_failures = max_poll_failures
        self.track_allocation_sampling = track_allocation_sampling
        self.allocation_sampling_interval = allocation_sampling_interval
        self.monitor_gc_events = monitor_gc_events
        self.gc_drop_threshold_bytes = gc_drop_threshold_bytes
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        get_network_throttling(network_throttling)  # raises on unknown preset
        self.network_throttling = network_throttling
        self.cpu_throttling = cpu_throttling
        self.call_timeout = call_timeout

    @classmethod
    def preset(cls, name: str, **overrides: Any) -> "ProfilerConfig":
        """Build a config from a named preset plus keyword overrides."""
        if name not in cls.PRESETS:
            raise ValueError(f"Unknown config preset: {name}")
        kwargs = dict(cls.PRESETS[name])
        kwargs.update(overrides)
        return cls(**kwargs)

    def _merge_cwv_thresholds(self, custom: Optional[Dict[str, Dict[str, float]]]) -> Dict[str, Dict[str, float]]:
        merged = copy.deepcopy(self.DEFAULT_CWV_THRESHOLDS)
        for metric, bounds in (custom or {}).items():
            merged.setdefault(metric, {}).update(bounds)
        return merged

    def _parse_triggers(self, triggers: Optional[List[str]]) -> List[str]:
        if triggers is None:
            return ["start", "end"]
        for trigger in triggers:
            if trigger not in SNAPSHOT_TRIGGERS:
                raise ValueError(f"Unknown snapshot trigger: {trigger}")
        return list(triggers)

    def throttling_profile(self) -> Dict[str, Any]:
        """Throttling summary as reported in the environment snapshot."""
        return {"network": self.network_throttling, "cpu": self.cpu_throttling}

    def to_dict(self) -> Dict[str, Any]:
        return dict(vars(self))
