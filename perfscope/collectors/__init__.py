"""Domain collectors for a performance recording."""

from .base import BaseCollector
from .cpu import CPUProfileAnalyzer
from .memory import MemoryProfileAnalyzer
from .network import NetworkCollector
from .timeline import TimelineCollector

__all__ = [
    "BaseCollector",
    "CPUProfileAnalyzer",
    "MemoryProfileAnalyzer",
    "NetworkCollector",
    "TimelineCollector",
]
