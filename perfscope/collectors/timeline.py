"""Timeline collector - page lifecycle, performance entries and Core Web Vitals."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .base import BaseCollector
from .classify import categorize_event, rating
from ..core.page import PageHandle
from ..models import (
    CLSMetric, CoreWebVitals, EventCategory, FIDMetric, INPMetric, JavaScriptMetrics,
    LCPMetric, LayoutPaintMetrics, LongTask, NavigationTiming, PHASES, RawTimelineEvent,
    Screenshot, TimelineEvent, TimelineReport,
)

logger = logging.getLogger(__name__)

BINDING_NAME = "__perfscopeTimeline"

# Total blocking time counts the part of a long task beyond this budget
BLOCKING_BUDGET_MS = 50.0

OBSERVED_ENTRY_TYPES = (
    "longtask", "paint", "layout-shift", "largest-contentful-paint",
    "first-input", "event", "mark", "measure",
)

# Shared by the live observer and the final query; DOM nodes are reduced to names
_SERIALIZE_JS = """
const __serialize = (e) => {
  const out = {entryType: e.entryType, name: e.name, startTime: e.startTime, duration: e.duration};
  for (const k of ['value', 'hadRecentInput', 'processingStart', 'processingEnd',
                   'interactionId', 'renderTime', 'loadTime', 'size', 'url', 'id']) {
    if (e[k] !== undefined && e[k] !== null) out[k] = e[k];
  }
  if (e.element) out.element = e.element.tagName ? e.element.tagName.toLowerCase() : String(e.element);
  if (e.sources) {
    out.sources = Array.from(e.sources).map((s) => ({
      node: s.node ? s.node.nodeName : null,
      previousRect: s.previousRect ? s.previousRect.toJSON() : null,
      currentRect: s.currentRect ? s.currentRect.toJSON() : null,
    }));
  }
  if (e.attribution) {
    out.attribution = Array.from(e.attribution).map((a) => ({
      name: a.name, containerType: a.containerType, containerSrc: a.containerSrc,
      containerId: a.containerId, containerName: a.containerName,
    }));
  }
  return out;
};
"""

_OBSERVER_JS = """
(() => {
  if (window.__perfscopeObserverInstalled) return;
  window.__perfscopeObserverInstalled = true;
  __SERIALIZE__
  for (const type of __TYPES__) {
    try {
      const options = {type: type, buffered: true};
      if (type === 'event') options.durationThreshold = 16;
      new PerformanceObserver((list) => {
        try {
          window.__BINDING__(JSON.stringify({
            origin: performance.timeOrigin,
            entries: list.getEntries().map(__serialize),
          }));
        } catch (e) {}
      }).observe(options);
    } catch (e) {}
  }
})();
"""

_FINAL_QUERY_JS = """
(() => {
  __SERIALIZE__
  const buffered = (type) => new Promise((resolve) => {
    let observer;
    const timer = setTimeout(() => { if (observer) observer.disconnect(); resolve([]); }, __TIMEOUT__);
    try {
      observer = new PerformanceObserver((list) => {
        clearTimeout(timer);
        observer.disconnect();
        resolve(list.getEntries().map(__serialize));
      });
      observer.observe({type: type, buffered: true});
    } catch (e) {
      clearTimeout(timer);
      resolve(null);
    }
  });
  const nav = performance.getEntriesByType('navigation')[0];
  return Promise.all([
    buffered('largest-contentful-paint'),
    buffered('layout-shift'),
    buffered('first-input'),
    buffered('event'),
  ]).then(([lcp, layoutShift, firstInput, events]) => ({
    origin: performance.timeOrigin,
    navigation: nav ? nav.toJSON() : null,
    paint: performance.getEntriesByType('paint').map(__serialize),
    lcp: lcp,
    layoutShift: layoutShift,
    firstInput: firstInput,
    event: events,
  }));
})()
"""

_NAVIGATION_FIELDS = {
    "navigation_start": "startTime",
    "fetch_start": "fetchStart",
    "domain_lookup_start": "domainLookupStart",
    "domain_lookup_end": "domainLookupEnd",
    "connect_start": "connectStart",
    "connect_end": "connectEnd",
    "secure_connection_start": "secureConnectionStart",
    "request_start": "requestStart",
    "response_start": "responseStart",
    "response_end": "responseEnd",
    "dom_interactive": "domInteractive",
    "dom_content_loaded_event_start": "domContentLoadedEventStart",
    "dom_content_loaded_event_end": "domContentLoadedEventEnd",
    "dom_complete": "domComplete",
    "load_event_start": "loadEventStart",
    "load_event_end": "loadEventEnd",
}


def _observer_script() -> str:
    return (_OBSERVER_JS
            .replace("__SERIALIZE__", _SERIALIZE_JS)
            .replace("__TYPES__", json.dumps(list(OBSERVED_ENTRY_TYPES)))
            .replace("__BINDING__", BINDING_NAME))


def _final_query_script(timeout_ms: int) -> str:
    return (_FINAL_QUERY_JS
            .replace("__SERIALIZE__", _SERIALIZE_JS)
            .replace("__TIMEOUT__", str(int(timeout_ms))))


def entry_to_raw_event(entry: Dict[str, Any], origin: float) -> Optional[RawTimelineEvent]:
    """Turn a serialized PerformanceEntry into a trace-style event.

    ``origin`` is the document's ``performance.timeOrigin`` (epoch ms); entry
    times are relative to it.
    """
    entry_type = entry.get("entryType")
    start = entry.get("startTime")
    if not isinstance(entry_type, str) or not isinstance(start, (int, float)):
        return None

    name = str(entry.get("name") or entry_type)
    cat = "devtools.timeline"
    if entry_type == "longtask":
        name, cat = "longtask", "devtools.timeline,script"
    elif entry_type in ("layout-shift", "largest-contentful-paint"):
        name = entry_type
    elif entry_type == "first-input":
        name = f"first-input:{entry.get('name', '')}"
    elif entry_type == "event":
        name = f"input-event:{entry.get('name', '')}"
    elif entry_type in ("mark", "measure"):
        cat = "blink.user_timing"

    duration = entry.get("duration") or 0
    return RawTimelineEvent.from_params({
        "name": name,
        "cat": cat,
        "ts": (origin + start) * 1000,
        "ph": "X" if duration > 0 else "I",
        "dur": duration * 1000 if duration > 0 else None,
        "args": entry,
    })


def _relative(value: Any) -> Optional[float]:
    return max(0.0, float(value)) if isinstance(value, (int, float)) and not isinstance(value, bool) else None


@dataclass
class _TimelineState:
    navigation_start: float = 0.0  # epoch ms
    raw_events: List[RawTimelineEvent] = field(default_factory=list)
    observed: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    screenshots: List[Screenshot] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    script_identifier: Optional[str] = None
    started_at: float = 0.0


class TimelineCollector(BaseCollector):
    """Collects timeline events and derives Core Web Vitals, JS and layout metrics."""

    name = "timeline"
    required_domains = ("Performance", "Runtime", "Page")

    def __init__(self, connector, session_id, config=None):
        super().__init__(connector, session_id, config)
        self.page = PageHandle(connector, session_id)

    def _new_state(self) -> _TimelineState:
        return _TimelineState(started_at=time.time())

    async def _on_start(self) -> None:
        state = self._state
        state.navigation_start = await self._navigation_start()

        self.subscribe("Page.lifecycleEvent", self._on_lifecycle)
        self.subscribe("Performance.metrics", self._on_metrics)
        self.subscribe("Runtime.bindingCalled", self._on_binding)

        try:
            await self.call("Page.setLifecycleEventsEnabled", {"enabled": True})
        except Exception as e:
            logger.debug(f"Lifecycle events unavailable: {e}")

        try:
            await self.call("Runtime.addBinding", {"name": BINDING_NAME})
            script = _observer_script()
            result = await self.call("Page.addScriptToEvaluateOnNewDocument", {"source": script})
            state.script_identifier = result.get("identifier")
            await self.page.evaluate(script)
            logger.debug("Performance observer injected")
        except Exception as e:
            logger.warning(f"Performance observer injection failed: {e}")
            state.warnings.append(f"performance observer unavailable: {e}")

    async def _navigation_start(self) -> float:
        try:
            origin = await self.page.evaluate("performance.timeOrigin")
            if isinstance(origin, (int, float)) and origin > 0:
                return float(origin)
        except Exception as e:
            logger.debug(f"performance.timeOrigin unavailable, using wall clock: {e}")
        return time.time() * 1000

    # -- event handlers (never await) -------------------------------------

    def _on_lifecycle(self, params: Dict[str, Any]) -> None:
        self._state.raw_events.append(RawTimelineEvent.from_params({
            "name": params.get("name", "lifecycle"),
            "cat": "loading",
            "ts": time.time() * 1e6,
            "ph": "I",
            # protocol timestamp is monotonic seconds, not comparable with ts
            "args": {"frameId": params.get("frameId"), "loaderId": params.get("loaderId"),
                     "timestamp": params.get("timestamp")},
        }))

    def _on_metrics(self, params: Dict[str, Any]) -> None:
        metrics = {m.get("name"): m.get("value") for m in params.get("metrics", []) if isinstance(m, dict)}
        self._state.raw_events.append(RawTimelineEvent.from_params({
            "name": f"metrics:{params.get('title', '')}",
            "cat": "disabled-by-default-devtools.timeline",
            "ts": time.time() * 1e6,
            "ph": "I",
            "args": metrics,
        }))

    def _on_binding(self, params: Dict[str, Any]) -> None:
        if params.get("name") != BINDING_NAME:
            return
        try:
            payload = json.loads(params.get("payload") or "{}")
            origin = float(payload.get("origin") or self._state.navigation_start)
            entries = payload.get("entries") or []
        except (TypeError, ValueError) as e:
            logger.debug(f"Malformed observer payload: {e}")
            return

        for entry in entries:
            if not isinstance(entry, dict):
                continue
            event = entry_to_raw_event(entry, origin)
            if event is None:
                continue
            self._state.raw_events.append(event)
            self._state.observed.setdefault(entry["entryType"], []).append(entry)

    def add_screenshot(self, data: str) -> None:
        """Attach a base64 screenshot, timestamped relative to navigation start."""
        if self._state is None:
            return
        elapsed = max(0.0, time.time() * 1000 - self._state.navigation_start)
        self._state.screenshots.append(Screenshot(timestamp=elapsed, data=data))

    # -- finalization -------------------------------------------------------

    async def _on_stop(self) -> TimelineReport:
        state = self._state
        self.release()
        await self._remove_injection(state)

        final = await self._query_final_entries(state)
        perf_metrics = await self._performance_metrics()

        events = self.convert_events(state.raw_events, state.navigation_start)
        cwv = self.compute_core_web_vitals(final, state.observed)
        navigation = self.navigation_timing(final.get("navigation"))
        javascript = self.javascript_metrics(events)
        layout_paint = self.layout_paint_metrics(events, final.get("paint"), perf_metrics)

        return TimelineReport(
            events=events,
            core_web_vitals=cwv,
            navigation_timing=navigation,
            javascript=javascript,
            layout_paint=layout_paint,
            metadata={
                "navigation_start": state.navigation_start,
                "recording_duration": (time.time() - state.started_at) * 1000,
                "raw_event_count": len(state.raw_events),
                "event_count": len(events),
                "performance_metrics": perf_metrics,
            },
            screenshots=list(state.screenshots),
            warnings=list(state.warnings),
        )

    async def _on_abort(self) -> None:
        await self._remove_injection(self._state)

    async def _remove_injection(self, state: _TimelineState) -> None:
        try:
            if state.script_identifier:
                await self.call("Page.removeScriptToEvaluateOnNewDocument",
                                {"identifier": state.script_identifier})
            await self.call("Runtime.removeBinding", {"name": BINDING_NAME})
        except Exception as e:
            logger.debug(f"Failed to remove performance observer: {e}")

    async def _query_final_entries(self, state: _TimelineState) -> Dict[str, Any]:
        timeout_ms = self.config.observer_timeout_ms
        try:
            result = await asyncio.wait_for(
                self.page.evaluate(_final_query_script(timeout_ms), await_promise=True),
                timeout=timeout_ms / 1000 + 2.0,
            )
            return result if isinstance(result, dict) else {}
        except Exception as e:
            logger.warning(f"Final performance entry query failed: {e}")
            state.warnings.append(f"final performance entries unavailable: {e}")
            return {}

    async def _performance_metrics(self) -> Dict[str, float]:
        try:
            result = await self.call("Performance.getMetrics")
        except Exception as e:
            logger.debug(f"Performance.getMetrics failed: {e}")
            return {}
        return {m["name"]: m["value"] for m in result.get("metrics", [])
                if isinstance(m, dict) and "name" in m}

    def convert_events(self, raw_events: List[RawTimelineEvent],
                       navigation_start: float) -> List[TimelineEvent]:
        """Filter and convert raw events to ms relative to navigation start."""
        include = self.config.include_categories
        exclude = self.config.exclude_categories
        min_duration = self.config.min_event_duration

        events = []
        for raw in raw_events:
            category = categorize_event(raw.name, raw.cat)
            if include and category.value not in include:
                continue
            if exclude and category.value in exclude:
                continue
            if min_duration and raw.dur is not None and raw.dur / 1000 < min_duration:
                continue
            events.append(self.convert_event(raw, navigation_start, category))

        events.sort(key=lambda e: e.start_time)
        return events

    @staticmethod
    def convert_event(raw: RawTimelineEvent, navigation_start: float,
                      category: Optional[EventCategory] = None) -> TimelineEvent:
        start = max(0.0, (raw.ts - navigation_start * 1000) / 1000)
        duration = raw.dur / 1000 if raw.dur is not None else None
        return TimelineEvent(
            name=raw.name,
            category=category or categorize_event(raw.name, raw.cat),
            start_time=start,
            end_time=start + duration if duration is not None else None,
            duration=duration,
            phase=PHASES.get(raw.ph, "instant"),
            process_id=raw.pid,
            thread_id=raw.tid,
            data=raw.args or None,
            id=raw.id,
        )

    def _entries(self, final: Dict[str, Any], key: str,
                 observed: Dict[str, List[Dict[str, Any]]], entry_type: str) -> Optional[List[Dict[str, Any]]]:
        # None means "unknown", [] means "supported but nothing happened"
        entries = final.get(key)
        if isinstance(entries, list):
            return entries
        seen = observed.get(entry_type)
        return list(seen) if seen else None

    def compute_core_web_vitals(self, final: Dict[str, Any],
                                observed: Dict[str, List[Dict[str, Any]]]) -> CoreWebVitals:
        thresholds = self.config.cwv_thresholds
        vitals = CoreWebVitals()

        lcp_entries = self._entries(final, "lcp", observed, "largest-contentful-paint")
        if lcp_entries:
            last = lcp_entries[-1]
            value = float(last.get("startTime", 0))
            vitals.lcp = LCPMetric(
                value=value,
                rating=rating(value, thresholds["lcp"]),
                element=last.get("element"),
                url=last.get("url") or None,
                render_time=last.get("renderTime"),
                load_time=last.get("loadTime"),
            )

        shifts = self._entries(final, "layoutShift", observed, "layout-shift")
        if shifts is not None:
            counted = [s for s in shifts if not s.get("hadRecentInput")]
            value = sum(float(s.get("value", 0)) for s in counted)
            vitals.cls = CLSMetric(
                value=value,
                rating=rating(value, thresholds["cls"]),
                sources=[src for s in counted for src in s.get("sources", [])],
            )

        inputs = self._entries(final, "firstInput", observed, "first-input")
        if inputs:
            first = inputs[0]
            start = float(first.get("startTime", 0))
            processing_start = float(first.get("processingStart", start))
            value = max(0.0, processing_start - start)
            vitals.fid = FIDMetric(
                value=value,
                rating=rating(value, thresholds["fid"]),
                event_type=str(first.get("name", "")),
                start_time=start,
                processing_start=processing_start,
                processing_end=first.get("processingEnd"),
            )

        event_entries = self._entries(final, "event", observed, "event") or []
        interactions = [e for e in event_entries if e.get("interactionId")]
        if interactions:
            slowest = max(interactions, key=lambda e: e.get("duration", 0))
            value = float(slowest.get("duration", 0))
            vitals.inp = INPMetric(
                value=value,
                rating=rating(value, thresholds["inp"]),
                event_type=str(slowest.get("name", "")),
                start_time=float(slowest.get("startTime", 0)),
                processing_start=slowest.get("processingStart"),
                processing_end=slowest.get("processingEnd"),
            )

        return vitals

    @staticmethod
    def navigation_timing(entry: Optional[Dict[str, Any]]) -> Optional[NavigationTiming]:
        if not isinstance(entry, dict):
            return None

        timing = NavigationTiming(**{
            attr: _relative(entry.get(key)) for attr, key in _NAVIGATION_FIELDS.items()
        })

        def _span(end: Optional[float], start: Optional[float]) -> Optional[float]:
            if end is None or start is None:
                return None
            return max(0.0, end - start)

        timing.ttfb = _span(timing.response_start, timing.request_start)
        timing.dom_processing = _span(timing.dom_complete, timing.dom_interactive)
        timing.total_page_load = _span(timing.load_event_end, timing.navigation_start)
        return timing

    def javascript_metrics(self, events: List[TimelineEvent]) -> JavaScriptMetrics:
        scripts = [e for e in events if e.category is EventCategory.SCRIPT]
        metrics = JavaScriptMetrics()
        metrics.total_execution_time = sum(e.duration or 0.0 for e in scripts)

        for event in scripts:
            duration = event.duration or 0.0
            if duration > self.config.long_task_threshold:
                metrics.long_tasks.append(LongTask(
                    start_time=event.start_time,
                    duration=duration,
                    name=event.name,
                    attribution=list((event.data or {}).get("attribution", [])),
                ))

            lowered = event.name.lower()
            if "parse" in lowered:
                bucket = "parsing"
            elif "compile" in lowered:
                bucket = "compilation"
            else:
                bucket = "evaluation"
            metrics.execution_breakdown[bucket] += duration

        metrics.main_thread_blocking_time = sum(
            max(0.0, task.duration - BLOCKING_BUDGET_MS) for task in metrics.long_tasks
        )
        metrics.compilation_time = metrics.execution_breakdown["compilation"]
        metrics.script_urls = self._script_urls(scripts)
        return metrics

    @staticmethod
    def _script_urls(events: List[TimelineEvent]) -> List[str]:
        urls: List[str] = []
        for event in events:
            data = event.data or {}
            candidates = [data.get("url"), (data.get("data") or {}).get("url")]
            candidates.extend(a.get("containerSrc") for a in data.get("attribution", []) if isinstance(a, dict))
            for url in candidates:
                if isinstance(url, str) and url and url not in urls:
                    urls.append(url)
        return urls

    @staticmethod
    def layout_paint_metrics(events: List[TimelineEvent], paint_entries: Optional[List[Dict[str, Any]]],
                             perf_metrics: Optional[Dict[str, float]] = None) -> LayoutPaintMetrics:
        perf_metrics = perf_metrics or {}
        layouts = [e for e in events if e.category is EventCategory.LAYOUT and e.name != "layout-shift"]
        paints = [e for e in events if e.category is EventCategory.PAINT]
        composites = [e for e in events if e.category is EventCategory.COMPOSITE]

        metrics = LayoutPaintMetrics(
            layout_count=len(layouts),
            total_layout_time=sum(e.duration or 0.0 for e in layouts),
            paint_count=len(paints),
            total_paint_time=sum(e.duration or 0.0 for e in paints),
            layer_count=sum(1 for e in composites if "layer" in e.name.lower()),
            forced_reflow_count=sum(1 for e in layouts if "forced" in e.name.lower()),
        )

        if not layouts and "LayoutCount" in perf_metrics:
            metrics.layout_count = int(perf_metrics["LayoutCount"])
            # LayoutDuration is reported in seconds
            metrics.total_layout_time = float(perf_metrics.get("LayoutDuration", 0.0)) * 1000

        if metrics.layout_count:
            metrics.avg_layout_time = metrics.total_layout_time / metrics.layout_count

        for entry in paint_entries or []:
            if entry.get("name") == "first-paint":
                metrics.first_paint = _relative(entry.get("startTime"))
            elif entry.get("name") == "first-contentful-paint":
                metrics.first_contentful_paint = _relative(entry.get("startTime"))

        if metrics.first_paint is None or metrics.first_contentful_paint is None:
            for event in paints:
                if event.name == "first-paint" and metrics.first_paint is None:
                    metrics.first_paint = event.start_time
                elif event.name == "first-contentful-paint" and metrics.first_contentful_paint is None:
                    metrics.first_contentful_paint = event.start_time

        return metrics
