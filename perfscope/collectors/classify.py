"""Pure classification heuristics shared by the collectors.

Nothing here touches the protocol; every function maps plain inputs to a
tagged result so the rules can be tested in isolation. The inlining and
deoptimization labels are approximations derived from sampling data, not
facts reported by the engine.
"""

import re
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from ..models import EventCategory, GrowthTrend, Rating, ResourceType, SuspicionLevel


# First match wins; checked against the lower-cased event name (and category
# where noted).
_CATEGORY_RULES: Sequence[Tuple[EventCategory, Tuple[str, ...], bool]] = (
    (EventCategory.NAVIGATION, ("navigation",), True),
    (EventCategory.SCRIPT, ("script", "js"), True),
    (EventCategory.LAYOUT, ("layout", "reflow"), False),
    (EventCategory.PAINT, ("paint", "render"), False),
    (EventCategory.COMPOSITE, ("composite", "layer"), False),
    (EventCategory.INPUT, ("input", "click", "key"), False),
    (EventCategory.ANIMATION, ("animation", "transition"), False),
    (EventCategory.GC, ("gc", "garbage"), False),
    (EventCategory.IDLE, ("idle",), False),
)

_EXTENSION_TYPES: Dict[str, ResourceType] = {
    "html": ResourceType.DOCUMENT,
    "htm": ResourceType.DOCUMENT,
    "js": ResourceType.SCRIPT,
    "mjs": ResourceType.SCRIPT,
    "css": ResourceType.STYLESHEET,
    "png": ResourceType.IMAGE,
    "jpg": ResourceType.IMAGE,
    "jpeg": ResourceType.IMAGE,
    "gif": ResourceType.IMAGE,
    "svg": ResourceType.IMAGE,
    "webp": ResourceType.IMAGE,
    "avif": ResourceType.IMAGE,
    "ico": ResourceType.IMAGE,
    "woff": ResourceType.FONT,
    "woff2": ResourceType.FONT,
    "ttf": ResourceType.FONT,
    "otf": ResourceType.FONT,
    "eot": ResourceType.FONT,
}

_IDLE_PATTERN = re.compile(r"idle|wait|sleep", re.IGNORECASE)

GC_KEYWORDS = (
    "gc", "garbage collect", "heap collect",
    "major gc", "minor gc", "full gc",
    "scavenge", "mark-sweep", "mark-compact",
)


def categorize_event(name: str, category: str = "") -> EventCategory:
    """Map a trace event to a category by first keyword match."""
    name = (name or "").lower()
    category = (category or "").lower()
    for result, keywords, check_category in _CATEGORY_RULES:
        for keyword in keywords:
            if keyword in name or (check_category and keyword in category):
                return result
    return EventCategory.OTHER


def _header(headers: Optional[Mapping[str, Any]], name: str) -> str:
    for key, value in (headers or {}).items():
        if key.lower() == name:
            return str(value)
    return ""


def url_extension(url: str) -> str:
    """Lower-cased extension of the URL path ("" when there is none)."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    last = path.rsplit("/", 1)[-1]
    if "." not in last:
        return ""
    return last.rsplit(".", 1)[-1].lower()


def classify_resource_type(url: str, headers: Optional[Mapping[str, Any]] = None,
                           mime_type: str = "") -> ResourceType:
    """Classify a request: content type first, then extension, then preflight."""
    content_type = (mime_type or _header(headers, "content-type")).lower()

    if content_type:
        if "text/html" in content_type:
            return ResourceType.DOCUMENT
        if "javascript" in content_type or "ecmascript" in content_type:
            return ResourceType.SCRIPT
        if "css" in content_type:
            return ResourceType.STYLESHEET
        if content_type.startswith("image/"):
            return ResourceType.IMAGE
        if content_type.startswith("font/") or "font-woff" in content_type:
            return ResourceType.FONT

    by_extension = _EXTENSION_TYPES.get(url_extension(url))
    if by_extension is not None:
        return by_extension

    if _header(headers, "access-control-request-method"):
        return ResourceType.PREFLIGHT

    if "json" in content_type or "xml" in content_type:
        return ResourceType.XHR

    return ResourceType.OTHER


def is_render_blocking(resource_type: ResourceType) -> bool:
    return resource_type is ResourceType.STYLESHEET


def is_critical_path(resource_type: ResourceType) -> bool:
    return resource_type in (ResourceType.DOCUMENT, ResourceType.STYLESHEET)


def rating(value: float, thresholds: Mapping[str, float]) -> Rating:
    """Rate a metric against its good/poor thresholds."""
    if value <= thresholds["good"]:
        return Rating.GOOD
    if value <= thresholds["poor"]:
        return Rating.NEEDS_IMPROVEMENT
    return Rating.POOR


def is_idle_function(function_name: str) -> bool:
    return bool(_IDLE_PATTERN.search(function_name or ""))


def is_anonymous(function_name: str) -> bool:
    return not function_name or function_name == "(anonymous)"


def detect_inlining(function_name: str, hit_count: int, self_time: float) -> bool:
    """Guess whether a function was likely inlined (self_time in µs)."""
    if hit_count > 10 and self_time < 1000:
        return True
    return len(function_name) < 20 and hit_count > 5 and self_time < 500


def detect_deoptimization_risk(function_name: str, url: str = "") -> Optional[str]:
    """Name-pattern guess at why a function might bail out of optimization."""
    if "eval" in function_name:
        return "eval-usage"
    if "apply" in function_name or "call" in function_name:
        return "dynamic-call"
    if "arguments" in function_name:
        return "arguments-object"
    if "try" in function_name or "catch" in function_name:
        return "try-catch-block"
    if "async" in function_name or "await" in function_name:
        return "async-function"
    if "*" in function_name or "yield" in function_name:
        return "generator-function"
    if "large" in url or len(function_name) > 50:
        return "function-too-large"
    return None


def is_likely_optimized(function_name: str, hit_count: int, self_time: float) -> bool:
    if hit_count > 10 and self_time / hit_count < 100:
        return True
    return function_name.startswith("(") and function_name.endswith(")")


def impact_level(self_time: float) -> str:
    """Bucket a self time (µs) into high/medium/low/neutral."""
    if self_time > 10000:
        return "high"
    if self_time > 1000:
        return "medium"
    if self_time > 100:
        return "low"
    return "neutral"


def inlining_reason(function_name: str, hit_count: int, self_time: float) -> str:
    if hit_count > 100:
        return "frequent-call"
    if self_time < 100:
        return "small-function"
    if "get" in function_name or "set" in function_name:
        return "getter-setter"
    if "constructor" in function_name:
        return "constructor"
    return "hot-path"


def growth_trend(rate_bytes_per_sec: float, deadband: float = 1024.0) -> GrowthTrend:
    """Trend of a heap growth rate; |rate| <= deadband is stable."""
    if rate_bytes_per_sec > deadband:
        return GrowthTrend.INCREASING
    if rate_bytes_per_sec < -deadband:
        return GrowthTrend.DECREASING
    return GrowthTrend.STABLE


def leak_suspicion(growth_bytes: int) -> Optional[SuspicionLevel]:
    """Suspicion level for snapshot growth, None below 1MB."""
    if growth_bytes > 10 * 1024 * 1024:
        return SuspicionLevel.HIGH
    if growth_bytes > 1024 * 1024:
        return SuspicionLevel.MEDIUM
    return None


def extract_gc_message(args: Sequence[Mapping[str, Any]]) -> Optional[str]:
    """Return the first console string argument mentioning GC, truncated."""
    for arg in args or ():
        if arg.get("type") != "string":
            continue
        value = arg.get("value", "")
        if isinstance(value, str):
            lowered = value.lower()
            if any(keyword in lowered for keyword in GC_KEYWORDS):
                return value[:500]
    return None


def gc_type_from_message(message: str) -> str:
    lowered = message.lower()
    if "minor" in lowered or "scavenge" in lowered:
        return "minor"
    if "major" in lowered or "mark-" in lowered or "full" in lowered:
        return "major"
    return "unknown"
