"""Metrics Protocol - Interface for metrics collection without concrete dependency

This protocol enables dependency injection of metrics throughout the pipeline,
allowing components to be tested and run without prometheus collectors.
"""

from typing import Protocol, Any, ContextManager
from contextlib import contextmanager


class LabeledCounter(Protocol):
    def labels(self, **kwargs: Any) -> "LabeledCounter": ...
    def inc(self, amount: float = 1) -> None: ...


class LabeledHistogram(Protocol):
    def labels(self, **kwargs: Any) -> "LabeledHistogram": ...
    def observe(self, value: float) -> None: ...
    def time(self) -> ContextManager: ...


class MetricsCollector(Protocol):
    """Unified metrics interface for all pipeline components

    Used by:
    - pipeline/processor.py - Job outcomes and analysis duration
    - analysis/embeddings.py - Embedding batch requests
    - analysis/llm/consolidator.py - LLM calls, fallbacks, dropped ids
    """
    # Job metrics
    jobs_processed: LabeledCounter
    analysis_duration: LabeledHistogram

    # Model service metrics
    embedding_requests: LabeledCounter
    consolidation_fallbacks: LabeledCounter
    hallucinated_ids: LabeledCounter

    def record_error(self, component: str, error: Exception) -> None: ...

    def record_llm_call(
        self,
        model: str,
        prompt_type: str,
        duration_seconds: float,
        input_tokens: int,
        output_tokens: int,
        success: bool = True
    ) -> None: ...


class _NullCounter:
    def labels(self, **kwargs: Any) -> "_NullCounter":
        return self

    def inc(self, amount: float = 1) -> None:
        pass


class _NullHistogram:
    def labels(self, **kwargs: Any) -> "_NullHistogram":
        return self

    def observe(self, value: float) -> None:
        pass

    @contextmanager
    def time(self):
        yield


class NullMetrics:
    """No-op metrics for testing or standalone use"""

    def __init__(self):
        self.jobs_processed = _NullCounter()
        self.analysis_duration = _NullHistogram()
        self.embedding_requests = _NullCounter()
        self.consolidation_fallbacks = _NullCounter()
        self.hallucinated_ids = _NullCounter()

    def record_error(self, component: str, error: Exception) -> None:
        pass

    def record_llm_call(
        self,
        model: str,
        prompt_type: str,
        duration_seconds: float,
        input_tokens: int,
        output_tokens: int,
        success: bool = True
    ) -> None:
        pass
