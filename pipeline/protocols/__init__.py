"""Pipeline Protocols - Type interfaces for dependency injection"""

from pipeline.protocols.metrics import MetricsCollector, NullMetrics
from pipeline.protocols.services import Consolidator, Embedder, ThemeGenerator
from pipeline.protocols.store import ConversationStore, JobStore

__all__ = [
    "MetricsCollector",
    "NullMetrics",
    "Consolidator",
    "Embedder",
    "ThemeGenerator",
    "ConversationStore",
    "JobStore",
]
