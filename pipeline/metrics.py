"""
Prometheus Metrics Module

Provides instrumentation for the analysis worker:
- Job outcomes and analysis duration
- Embedding and LLM API calls
- Consolidation fallbacks and dropped model ids
- Error tracking

Usage:
    from pipeline.metrics import metrics
    metrics.jobs_processed.labels(outcome="succeeded").inc()
    with metrics.analysis_duration.labels(strategy="full").time():
        await pipeline.run(conversation_id)
"""

from prometheus_client import Counter, Histogram, REGISTRY, start_http_server


class AnalysisMetrics:
    """Centralized metrics for the analysis pipeline"""

    def __init__(self, registry=REGISTRY):
        # Job metrics
        self.jobs_processed = Counter(
            'hive_analysis_jobs_processed_total',
            'Total analysis jobs handled',
            ['outcome'],  # succeeded/failed/skipped/superseded
            registry=registry
        )

        self.analysis_duration = Histogram(
            'hive_analysis_duration_seconds',
            'End-to-end analysis duration',
            ['strategy'],
            buckets=[1, 5, 10, 30, 60, 120, 300, 600],
            registry=registry
        )

        # Embedding metrics
        self.embedding_requests = Counter(
            'hive_embedding_requests_total',
            'Embedding batch requests',
            ['status'],
            registry=registry
        )

        # LLM metrics
        self.llm_api_calls = Counter(
            'hive_llm_api_calls_total',
            'Total LLM API calls',
            ['model', 'prompt_type', 'status'],
            registry=registry
        )

        self.llm_api_duration = Histogram(
            'hive_llm_api_duration_seconds',
            'LLM API call duration',
            ['model', 'prompt_type'],
            buckets=[1, 2, 5, 10, 20, 30, 60],
            registry=registry
        )

        self.llm_api_tokens = Counter(
            'hive_llm_api_tokens_total',
            'Total tokens consumed',
            ['model', 'token_type'],  # token_type: input/output
            registry=registry
        )

        # Consolidation quality
        self.consolidation_fallbacks = Counter(
            'hive_consolidation_fallbacks_total',
            'Clusters (or cluster chunks) that fell back to singleton buckets',
            ['reason'],
            registry=registry
        )

        self.hallucinated_ids = Counter(
            'hive_consolidation_hallucinated_ids_total',
            'Response ids returned by the model that were not in the input',
            ['location'],  # bucket/unconsolidated
            registry=registry
        )

        # Error metrics
        self.errors = Counter(
            'hive_errors_total',
            'Total errors by component and type',
            ['component', 'error_type'],
            registry=registry
        )

    def record_llm_call(
        self,
        model: str,
        prompt_type: str,
        duration_seconds: float,
        input_tokens: int,
        output_tokens: int,
        success: bool = True
    ):
        """Record a complete LLM API call

        Args:
            model: Model name (e.g., "gemini-2.5-flash")
            prompt_type: Type of prompt (consolidation/themes)
            duration_seconds: API call duration
            input_tokens: Input tokens consumed
            output_tokens: Output tokens consumed
            success: Whether the call succeeded
        """
        status = 'success' if success else 'error'

        self.llm_api_calls.labels(
            model=model,
            prompt_type=prompt_type,
            status=status
        ).inc()

        if success:
            self.llm_api_duration.labels(
                model=model,
                prompt_type=prompt_type
            ).observe(duration_seconds)

            self.llm_api_tokens.labels(model=model, token_type='input').inc(input_tokens)
            self.llm_api_tokens.labels(model=model, token_type='output').inc(output_tokens)

    def record_error(self, component: str, error: Exception):
        """Record an error

        Args:
            component: Component name (embeddings/consolidator/processor/database)
            error: Exception instance
        """
        error_type = type(error).__name__
        self.errors.labels(component=component, error_type=error_type).inc()


# Global metrics instance
metrics = AnalysisMetrics()


def serve_metrics(port: int) -> None:
    """Expose the default registry on /metrics for Prometheus scraping"""
    start_http_server(port, registry=REGISTRY)
