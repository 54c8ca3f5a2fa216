"""CPU profile collector - sampling profiler, hotspots and optimization heuristics."""

import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .base import BaseCollector
from .classify import (
    detect_deoptimization_risk, detect_inlining, impact_level, inlining_reason,
    is_anonymous, is_idle_function, is_likely_optimized,
)
from ..models import (
    CallFrame, CPUAnalysis, CPUReport, DeoptimizationRisk, ExecutionPath, FunctionMetric,
    HotSpot, InlinedFunction, OptimizationDetails, OptimizationInfo, OptimizationOpportunity,
    OptimizationStats, ProfileNode,
)

logger = logging.getLogger(__name__)

HOTSPOT_MIN_PERCENT = 0.5
MAX_HOTSPOTS = 20
MAX_FUNCTIONS = 50
MAX_OPPORTUNITIES = 10
MAX_STACK_SIZE = 200
# Estimated per-call overhead avoided by inlining, in microseconds
INLINE_CALL_OVERHEAD = 3


@dataclass
class _CPUState:
    started_at: float


class ProfileTree:
    """Node table of one profile with derived self/total times (µs)."""

    def __init__(self, profile: Dict[str, Any], sampling_interval: float):
        self.interval = sampling_interval
        self.nodes: Dict[int, ProfileNode] = {}
        for index, raw in enumerate(profile.get("nodes") or []):
            if isinstance(raw, dict):
                node = ProfileNode.from_params(raw, fallback_id=index)
                self.nodes[node.node_id] = node

        samples = [s for s in (profile.get("samples") or []) if isinstance(s, int)]
        if samples:
            self.hits = Counter(s for s in samples if s in self.nodes)
        else:
            # Some profiles only carry per-node hit counts
            self.hits = Counter({n.node_id: n.hit_count for n in self.nodes.values() if n.hit_count})
        self.total_samples = sum(self.hits.values())

        for node in self.nodes.values():
            node.hit_count = self.hits.get(node.node_id, 0)
            node.self_time = node.hit_count * self.interval
            for child_id in node.children:
                child = self.nodes.get(child_id)
                if child is not None and child.parent is None:
                    child.parent = node.node_id

        self.roots = [n for n in self.nodes.values() if n.parent is None]
        self._compute_totals()

    def _compute_totals(self) -> None:
        visited = set()
        for root in self.roots:
            stack = [(root, False)]
            while stack:
                node, expanded = stack.pop()
                if expanded:
                    node.total_time = node.self_time + sum(
                        self.nodes[c].total_time for c in node.children
                        if c in self.nodes and self.nodes[c].parent == node.node_id
                    )
                    continue
                if node.node_id in visited:
                    continue
                visited.add(node.node_id)
                stack.append((node, True))
                for child_id in node.children:
                    child = self.nodes.get(child_id)
                    if child is not None and child.parent == node.node_id:
                        stack.append((child, False))

    def children_of(self, node: ProfileNode) -> List[ProfileNode]:
        return [self.nodes[c] for c in node.children
                if c in self.nodes and self.nodes[c].parent == node.node_id]

    def path_to(self, node: ProfileNode) -> List[ProfileNode]:
        path = []
        seen = set()
        current: Optional[ProfileNode] = node
        while current is not None and current.node_id not in seen:
            seen.add(current.node_id)
            path.append(current)
            current = self.nodes.get(current.parent) if current.parent is not None else None
        path.reverse()
        return path


def _frame(node: ProfileNode) -> CallFrame:
    return CallFrame(
        function_name=node.function_name,
        url=node.url,
        line_number=node.line,
        column_number=node.column,
        script_id=node.script_id,
    )


def _frames(path: List[ProfileNode]) -> List[CallFrame]:
    return [_frame(n) for n in path if n.function_name != "(root)"]


class CPUProfileAnalyzer(BaseCollector):
    """Runs the sampling profiler over a recording and analyzes the profile."""

    name = "cpu"
    required_domains = ("Profiler", "Runtime")

    def _new_state(self) -> _CPUState:
        return _CPUState(started_at=time.time())

    async def _on_start(self) -> None:
        interval = self.config.sampling_interval
        if interval > 0:
            await self.call("Profiler.setSamplingInterval", {"interval": interval})

        if self.config.include_inlining:
            try:
                await self.call("Runtime.setMaxCallStackSizeToCapture", {"size": MAX_STACK_SIZE})
            except Exception as e:
                logger.debug(f"Could not raise captured stack depth: {e}")

        await self.call("Profiler.start")
        logger.info(f"CPU profiling started ({interval}us sampling interval)")

    async def _on_abort(self) -> None:
        await self.call("Profiler.stop")

    async def _on_stop(self) -> CPUReport:
        started_at = self._state.started_at
        result = await self.call("Profiler.stop")
        profile = result.get("profile") or {}
        ended_at = time.time()

        analysis = self.analyze(profile)
        logger.info(f"CPU profiling completed, {analysis.total_samples} samples")

        return CPUReport(
            duration=(ended_at - started_at) * 1000,
            sample_count=len(profile.get("samples") or []),
            analysis=analysis,
            metadata={
                "profiling_duration": (ended_at - started_at) * 1000,
                "start_time": started_at * 1000,
                "end_time": ended_at * 1000,
                "sampling_interval": self.config.sampling_interval,
                "include_inlining": self.config.include_inlining,
                "heuristics": "approximate",
            },
            profile=profile if self.config.include_raw_profile else None,
        )

    def analyze(self, profile: Dict[str, Any]) -> CPUAnalysis:
        """Analyze a raw ``Profiler.stop`` profile."""
        if not profile or not profile.get("nodes"):
            logger.warning("Empty or invalid CPU profile")
            return CPUAnalysis(recommendations=["No CPU samples were collected"])

        tree = ProfileTree(profile, float(self.config.sampling_interval))
        total_time = tree.total_samples * tree.interval
        idle_time = sum(n.self_time for n in tree.nodes.values() if is_idle_function(n.function_name))
        active_time = max(0.0, total_time - idle_time)

        hot_spots = self.hot_spots(tree)
        functions = self.function_breakdown(tree)
        optimizations = self.optimizations(tree) if self.config.include_inlining else None
        active_ratio = active_time / total_time if total_time > 0 else 0.0

        return CPUAnalysis(
            total_samples=tree.total_samples,
            total_time=total_time,
            idle_time=idle_time,
            active_time=active_time,
            hot_spots=hot_spots,
            function_breakdown=functions,
            execution_path=self.execution_paths(tree),
            optimizations=optimizations,
            recommendations=self.recommendations(hot_spots, functions, active_ratio, optimizations),
        )

    def hot_spots(self, tree: ProfileTree) -> List[HotSpot]:
        if tree.total_samples == 0:
            return []

        spots = []
        for node in tree.nodes.values():
            if node.hit_count == 0:
                continue
            percentage = node.hit_count / tree.total_samples * 100
            if percentage < HOTSPOT_MIN_PERCENT:
                continue
            spots.append(HotSpot(
                function_name=node.function_name,
                url=node.url,
                line=node.line,
                column=node.column,
                self_time=node.self_time,
                total_time=node.total_time,
                hit_count=node.hit_count,
                percentage=percentage,
                optimization_info=OptimizationInfo(
                    is_inlined=detect_inlining(node.function_name, node.hit_count, node.self_time),
                    is_optimized=is_likely_optimized(node.function_name, node.hit_count, node.self_time),
                    deoptimization_risk=detect_deoptimization_risk(node.function_name, node.url),
                ),
            ))

        spots.sort(key=lambda s: s.percentage, reverse=True)
        return spots[:MAX_HOTSPOTS]

    def function_breakdown(self, tree: ProfileTree) -> List[FunctionMetric]:
        merged: Dict[tuple, FunctionMetric] = {}
        for node in tree.nodes.values():
            metric = merged.get(node.identity)
            if metric is None:
                metric = merged[node.identity] = FunctionMetric(
                    function_name=node.function_name,
                    url=node.url,
                    line=node.line,
                    column=node.column,
                    call_count=0,
                    self_time=0.0,
                    total_time=0.0,
                    average_time=0.0,
                )
            metric.call_count += node.hit_count
            metric.self_time += node.self_time
            metric.total_time += node.total_time

        functions = [m for m in merged.values() if m.call_count > 0]
        for metric in functions:
            metric.average_time = metric.self_time / metric.call_count

        functions.sort(key=lambda m: m.self_time, reverse=True)
        return functions[:MAX_FUNCTIONS]

    def execution_paths(self, tree: ProfileTree) -> ExecutionPath:
        if not tree.roots:
            return ExecutionPath()

        # Heaviest: follow the child with the largest total time
        heaviest = []
        node: Optional[ProfileNode] = max(tree.roots, key=lambda n: n.total_time)
        seen = set()
        while node is not None and node.node_id not in seen:
            seen.add(node.node_id)
            heaviest.append(node)
            children = tree.children_of(node)
            node = max(children, key=lambda n: n.total_time) if children else None

        leaves = [n for n in tree.nodes.values() if not tree.children_of(n)]
        deepest = max(
            (tree.path_to(leaf) for leaf in leaves),
            key=lambda path: (len(path), path[-1].total_time),
            default=[],
        )
        sampled = [n for n in tree.nodes.values() if n.hit_count > 0]
        frequent = tree.path_to(max(sampled, key=lambda n: n.hit_count)) if sampled else []

        return ExecutionPath(
            critical_path=_frames(heaviest),
            longest_path=_frames(deepest),
            most_frequent_path=_frames(frequent),
        )

    def optimizations(self, tree: ProfileTree) -> OptimizationDetails:
        """Heuristic inlining/deoptimization labels; approximations only."""
        inlined: List[InlinedFunction] = []
        deopts = []
        opportunities: List[OptimizationOpportunity] = []
        stats = OptimizationStats()

        for node in tree.nodes.values():
            stats.total_functions += 1
            name, hits, self_time = node.function_name, node.hit_count, node.self_time

            is_inlined = detect_inlining(name, hits, self_time)
            if is_inlined:
                saved = hits * INLINE_CALL_OVERHEAD * (tree.interval / 1000 / 1000)
                stats.inlined_functions += 1
                stats.total_time_saved += saved
                inlined.append(InlinedFunction(
                    function_name=name,
                    url=node.url,
                    line_number=node.line,
                    column_number=node.column,
                    reason=inlining_reason(name, hits, self_time),
                    impact=impact_level(saved),
                    time_saved=saved,
                    call_count=hits,
                ))

            risk = detect_deoptimization_risk(name, node.url)
            if risk is not None:
                stats.deoptimized_functions += 1
                deopts.append((self_time, DeoptimizationRisk(
                    function_name=name,
                    url=node.url,
                    line_number=node.line,
                    column_number=node.column,
                    reason=risk,
                    impact=impact_level(self_time),
                )))

            opportunities.extend(self._opportunities(node))

            if is_inlined or is_likely_optimized(name, hits, self_time):
                stats.optimized_functions += 1

        if stats.total_functions:
            stats.optimization_ratio = stats.optimized_functions / stats.total_functions
            stats.inlining_ratio = stats.inlined_functions / stats.total_functions

        deopts.sort(key=lambda item: item[0], reverse=True)
        opportunities.sort(key=lambda o: o.estimated_savings, reverse=True)
        return OptimizationDetails(
            inlined_functions=inlined,
            deoptimizations=[risk for _, risk in deopts],
            opportunities=opportunities[:MAX_OPPORTUNITIES],
            stats=stats,
        )

    @staticmethod
    def _opportunities(node: ProfileNode) -> List[OptimizationOpportunity]:
        found = []
        if node.self_time > 50000:
            found.append(OptimizationOpportunity(
                type="reduce-function-size",
                function_name=node.function_name,
                url=node.url,
                line_number=node.line,
                description=f"Large function taking {node.self_time / 1000:.1f}ms - consider breaking into smaller functions",
                potential_impact="high",
                recommendation="Break this function into smaller, focused functions so the engine can optimize them",
                estimated_savings=node.self_time * 0.2,
            ))
        if is_anonymous(node.function_name) and node.self_time > 1000:
            found.append(OptimizationOpportunity(
                type="avoid-dynamic-calls",
                function_name=node.function_name,
                url=node.url,
                line_number=node.line,
                description="Anonymous function with significant execution time",
                potential_impact="medium",
                recommendation="Name this function to improve profiling visibility",
                estimated_savings=node.self_time * 0.1,
            ))
        return found

    @staticmethod
    def recommendations(hot_spots: List[HotSpot], functions: List[FunctionMetric],
                        active_ratio: float,
                        optimizations: Optional[OptimizationDetails]) -> List[str]:
        recommendations = []

        if hot_spots:
            top = hot_spots[0]
            if top.percentage > 20:
                recommendations.append(
                    f"High CPU usage in '{top.function_name}' ({top.percentage:.1f}%) - consider optimization"
                )
            if sum(1 for h in hot_spots if h.percentage > 5) > 3:
                recommendations.append("Multiple performance hot spots detected - review function efficiency")

        expensive = [f for f in functions if f.self_time > 100000]
        if expensive:
            recommendations.append(
                f"{len(expensive)} functions taking >100ms - consider async patterns or optimization"
            )

        if active_ratio > 0.9:
            recommendations.append("High CPU utilization - consider performance optimization or workload distribution")
        elif active_ratio < 0.1:
            recommendations.append("Low CPU utilization - investigate potential blocking operations")

        anonymous = [f for f in functions if is_anonymous(f.function_name)]
        if functions and len(anonymous) > len(functions) * 0.3:
            recommendations.append(
                "High percentage of anonymous functions - consider named functions for better profiling"
            )

        if optimizations is not None:
            stats = optimizations.stats
            if stats.optimization_ratio < 0.3:
                recommendations.append(
                    f"Only {stats.optimization_ratio * 100:.1f}% of functions look optimized "
                    f"- review code patterns that prevent optimization"
                )
            if stats.inlining_ratio < 0.1 and stats.total_functions > 10:
                recommendations.append(
                    f"Low function inlining ratio ({stats.inlining_ratio * 100:.1f}%) "
                    f"- consider smaller, focused functions"
                )
            if optimizations.deoptimizations:
                top_deopt = optimizations.deoptimizations[0]
                recommendations.append(
                    f"Deoptimization risk in '{top_deopt.function_name}' ({top_deopt.reason}) "
                    f"- review for optimization barriers"
                )
            if optimizations.opportunities and optimizations.opportunities[0].potential_impact == "high":
                recommendations.append(
                    f"High-impact optimization opportunity: {optimizations.opportunities[0].recommendation}"
                )
            if optimizations.inlined_functions and stats.total_time_saved > 1000:
                recommendations.append(
                    f"Inlining saved ~{stats.total_time_saved / 1000:.1f}ms"
                )

        if not recommendations:
            recommendations.append("CPU performance appears optimal")
        return recommendations
