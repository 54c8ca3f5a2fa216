"""Tests for the pure classification heuristics."""

import pytest

from perfscope.collectors.classify import (
    categorize_event, classify_resource_type, detect_deoptimization_risk, detect_inlining,
    extract_gc_message, gc_type_from_message, growth_trend, impact_level, inlining_reason,
    is_critical_path, is_idle_function, is_likely_optimized, is_render_blocking,
    leak_suspicion, rating, url_extension,
)
from perfscope.models import EventCategory, GrowthTrend, Rating, ResourceType, SuspicionLevel


class TestCategorizeEvent:

    @pytest.mark.parametrize("name,cat,expected", [
        ("NavigationStart", "", EventCategory.NAVIGATION),
        ("EvaluateScript", "", EventCategory.SCRIPT),
        ("longtask", "devtools.timeline,script", EventCategory.SCRIPT),
        ("Layout", "", EventCategory.LAYOUT),
        ("layout-shift", "", EventCategory.LAYOUT),
        ("first-contentful-paint", "", EventCategory.PAINT),
        ("CompositeLayers", "", EventCategory.COMPOSITE),
        ("input-event:click", "", EventCategory.INPUT),
        ("Animation", "", EventCategory.ANIMATION),
        ("MinorGC", "", EventCategory.GC),
        ("RequestIdleCallback", "", EventCategory.IDLE),
        ("DOMContentLoaded", "loading", EventCategory.OTHER),
    ])
    def test_first_keyword_match(self, name, cat, expected):
        assert categorize_event(name, cat) is expected

    def test_category_only_checked_for_navigation_and_script(self):
        assert categorize_event("Foo", "paint") is EventCategory.OTHER


class TestResourceType:

    def test_content_type_wins_over_extension(self):
        headers = {"Content-Type": "application/javascript"}
        assert classify_resource_type("https://cdn.test/widget.css", headers) is ResourceType.SCRIPT

    def test_mime_type_argument(self):
        assert classify_resource_type("https://a.test/x", mime_type="text/html") is ResourceType.DOCUMENT

    def test_extension_ignores_query_string(self):
        assert classify_resource_type("https://a.test/app.js?v=3") is ResourceType.SCRIPT
        assert classify_resource_type("https://a.test/logo.PNG#top") is ResourceType.IMAGE
        assert classify_resource_type("https://a.test/font.woff2") is ResourceType.FONT

    def test_path_segment_is_not_an_extension(self):
        assert url_extension("https://a.test/my.jsonfiles/data") == ""
        assert classify_resource_type("https://a.test/v1.js/list") is ResourceType.OTHER

    def test_preflight(self):
        headers = {"Access-Control-Request-Method": "POST"}
        assert classify_resource_type("https://api.test/items", headers) is ResourceType.PREFLIGHT

    def test_json_is_xhr(self):
        assert classify_resource_type("https://api.test/items", mime_type="application/json") is ResourceType.XHR

    def test_blocking_and_critical(self):
        assert is_render_blocking(ResourceType.STYLESHEET)
        assert not is_render_blocking(ResourceType.SCRIPT)
        assert is_critical_path(ResourceType.DOCUMENT)
        assert is_critical_path(ResourceType.STYLESHEET)
        assert not is_critical_path(ResourceType.IMAGE)


class TestRating:

    def test_boundaries(self):
        thresholds = {"good": 2500, "poor": 4000}
        assert rating(2500, thresholds) is Rating.GOOD
        assert rating(3000, thresholds) is Rating.NEEDS_IMPROVEMENT
        assert rating(4000.1, thresholds) is Rating.POOR


class TestCPUHeuristics:

    def test_idle_functions(self):
        assert is_idle_function("(idle)")
        assert is_idle_function("waitForEvent")
        assert not is_idle_function("render")

    def test_inlining(self):
        assert detect_inlining("computeLayoutForVeryLongName", hit_count=11, self_time=900)
        assert detect_inlining("add", hit_count=6, self_time=400)
        assert not detect_inlining("add", hit_count=5, self_time=400)
        assert not detect_inlining("computeLayoutForVeryLongName", hit_count=11, self_time=1000)

    def test_deoptimization_order(self):
        assert detect_deoptimization_risk("evalCall") == "eval-usage"
        assert detect_deoptimization_risk("applyPatch") == "dynamic-call"
        assert detect_deoptimization_risk("useArguments") is None  # capital A
        assert detect_deoptimization_risk("read_arguments") == "arguments-object"
        assert detect_deoptimization_risk("tryParse") == "try-catch-block"
        assert detect_deoptimization_risk("asyncLoad") == "async-function"
        assert detect_deoptimization_risk("*gen") == "generator-function"
        assert detect_deoptimization_risk("f", "https://a.test/large-bundle.js") == "function-too-large"
        assert detect_deoptimization_risk("x" * 51) == "function-too-large"
        assert detect_deoptimization_risk("render") is None

    def test_likely_optimized(self):
        assert is_likely_optimized("hot", hit_count=20, self_time=1000)
        assert is_likely_optimized("(program)", hit_count=0, self_time=0)
        assert not is_likely_optimized("cold", hit_count=20, self_time=4000)

    def test_impact_levels(self):
        assert impact_level(10001) == "high"
        assert impact_level(1001) == "medium"
        assert impact_level(101) == "low"
        assert impact_level(100) == "neutral"

    def test_inlining_reason(self):
        assert inlining_reason("x", 101, 5000) == "frequent-call"
        assert inlining_reason("x", 10, 50) == "small-function"
        assert inlining_reason("getValue", 10, 500) == "getter-setter"
        assert inlining_reason("constructor", 10, 500) == "constructor"
        assert inlining_reason("step", 10, 500) == "hot-path"


class TestMemoryHeuristics:

    def test_growth_trend_deadband(self):
        assert growth_trend(1000) is GrowthTrend.STABLE
        assert growth_trend(1024) is GrowthTrend.STABLE
        assert growth_trend(2048) is GrowthTrend.INCREASING
        assert growth_trend(-2048) is GrowthTrend.DECREASING

    def test_leak_suspicion(self):
        assert leak_suspicion(512 * 1024) is None
        assert leak_suspicion(2 * 1024 * 1024) is SuspicionLevel.MEDIUM
        assert leak_suspicion(11 * 1024 * 1024) is SuspicionLevel.HIGH

    def test_gc_console_message(self):
        args = [{"type": "number", "value": 3}, {"type": "string", "value": "[GC] Scavenge 4.1 -> 2.0 MB"}]
        message = extract_gc_message(args)
        assert message == "[GC] Scavenge 4.1 -> 2.0 MB"
        assert gc_type_from_message(message) == "minor"
        assert gc_type_from_message("Mark-Compact done") == "major"
        assert extract_gc_message([{"type": "string", "value": "hello"}]) is None
