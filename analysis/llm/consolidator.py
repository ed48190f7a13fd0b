"""
Cluster Consolidation - LLM-driven semantic grouping

Responsibilities:
- Send a cluster's responses (paired with their ids) to Gemini
- Parse the structured bucket payload
- Validate it against the input: hallucinated ids dropped, duplicates
  resolved, omitted ids recovered as unconsolidated
- Fall back to one bucket per response when a call fails
- Split clusters larger than max_responses_per_call into chunks
- Consolidate many clusters concurrently with isolated failures

Every result partitions its cluster's input ids exactly: each id is in one
bucket or in unconsolidated_ids, never both, never missing.
"""

import asyncio
import json
import math
import time
from importlib.resources import files
from typing import Any, Dict, List, Mapping, Optional, Sequence

from google.genai import types

from analysis.gemini import call_with_retry, create_client
from config import AnalysisSettings, get_logger
from database.models import MISC_CLUSTER_INDEX, ConsolidationResult, Response, SemanticBucket
from exceptions import LLMError
from pipeline.protocols import MetricsCollector, NullMetrics

logger = get_logger(__name__).bind(component="consolidator")

DEFAULT_CONSOLIDATION_MODEL = "gemini-2.5-flash-lite"

SINGLE_RESPONSE_BUCKET = "Single response"
FALLBACK_BUCKET = "Uncategorized"
PROMPT_TYPE = "consolidation"


def load_prompts(prompts_path: Optional[str] = None) -> Dict[str, Any]:
    """Prompt templates from prompts.json (package resource by default)"""
    if prompts_path is None:
        return json.loads(files("analysis.llm").joinpath("prompts.json").read_text())
    with open(prompts_path, "r") as f:
        return json.load(f)


def format_responses(responses: Sequence[Response]) -> str:
    return "\n".join(f'[ID: {r.id}] "{r.text}"' for r in responses)


def fallback_result(cluster_index: int, responses: Sequence[Response]) -> ConsolidationResult:
    """Every response becomes its own single-member bucket"""
    return ConsolidationResult(
        cluster_index=cluster_index,
        buckets=[
            SemanticBucket(
                bucket_name=FALLBACK_BUCKET,
                consolidated_statement=r.text,
                response_ids=[r.id],
            )
            for r in responses
        ],
        unconsolidated_ids=[],
    )


def chunk_responses(responses: Sequence[Response], max_per_call: int) -> List[List[Response]]:
    """Consecutive, near-equal chunks of at most max_per_call responses

    100 responses with a cap of 50 -> [50, 50]; 51 -> [26, 25].
    """
    if len(responses) <= max_per_call:
        return [list(responses)]

    num_chunks = math.ceil(len(responses) / max_per_call)
    base, extra = divmod(len(responses), num_chunks)

    chunks = []
    start = 0
    for i in range(num_chunks):
        size = base + (1 if i < extra else 0)
        chunks.append(list(responses[start : start + size]))
        start += size
    return chunks


def validate_consolidation(
    cluster_index: int,
    payload: Any,
    responses: Sequence[Response],
    metrics: Optional[MetricsCollector] = None,
) -> ConsolidationResult:
    """Turn a model payload into a result that partitions the input ids

    - Ids not in the input are dropped and logged
    - A bucket left with no valid ids is discarded
    - An id already placed in an earlier bucket is dropped from later ones
    - An id both bucketed and declared unconsolidated stays in its bucket
    - Input ids the model never mentioned are appended to unconsolidated_ids

    Raises:
        LLMError: If the payload is not a JSON object
    """
    if not isinstance(payload, dict):
        raise LLMError(
            f"Consolidation payload must be an object, got {type(payload).__name__}",
            prompt_type=PROMPT_TYPE,
        )

    metrics = metrics or NullMetrics()
    valid_ids = [str(r.id) for r in responses]
    valid_set = set(valid_ids)
    assigned: set = set()
    buckets: List[SemanticBucket] = []
    hallucinated: Dict[str, List[str]] = {"bucket": [], "unconsolidated": []}
    duplicates: List[str] = []

    raw_buckets = payload.get("buckets")
    if not isinstance(raw_buckets, list):
        logger.warning("payload has no bucket list", cluster_index=cluster_index)
        raw_buckets = []

    for raw in raw_buckets:
        if not (
            isinstance(raw, dict)
            and isinstance(raw.get("bucket_name"), str)
            and isinstance(raw.get("consolidated_statement"), str)
            and isinstance(raw.get("response_ids"), list)
        ):
            logger.warning("skipping malformed bucket", cluster_index=cluster_index)
            continue

        bucket_ids: List[str] = []
        for rid in map(str, raw["response_ids"]):
            if rid not in valid_set:
                hallucinated["bucket"].append(rid)
            elif rid in assigned:
                duplicates.append(rid)
            else:
                assigned.add(rid)
                bucket_ids.append(rid)

        if not bucket_ids:
            logger.warning(
                "discarding bucket with no valid ids",
                cluster_index=cluster_index,
                bucket_name=raw["bucket_name"],
            )
            continue

        buckets.append(
            SemanticBucket(
                bucket_name=raw["bucket_name"],
                consolidated_statement=raw["consolidated_statement"],
                response_ids=bucket_ids,
            )
        )

    unconsolidated: List[str] = []
    raw_unconsolidated = payload.get("unconsolidated_ids")
    if isinstance(raw_unconsolidated, list):
        for rid in map(str, raw_unconsolidated):
            if rid not in valid_set:
                hallucinated["unconsolidated"].append(rid)
            elif rid not in assigned:
                assigned.add(rid)
                unconsolidated.append(rid)

    for location, dropped in hallucinated.items():
        if not dropped:
            continue
        metrics.hallucinated_ids.labels(location=location).inc(len(dropped))
        logger.warning(
            "dropped hallucinated response ids",
            cluster_index=cluster_index,
            location=location,
            count=len(dropped),
            sample=dropped[:5],
        )

    if duplicates:
        logger.warning(
            "dropped duplicate response ids",
            cluster_index=cluster_index,
            count=len(duplicates),
            sample=duplicates[:5],
        )

    missing = [rid for rid in valid_ids if rid not in assigned]
    if missing:
        logger.warning(
            "response ids missing from model output, adding to unconsolidated",
            cluster_index=cluster_index,
            count=len(missing),
        )
        unconsolidated.extend(missing)

    return ConsolidationResult(
        cluster_index=cluster_index,
        buckets=buckets,
        unconsolidated_ids=unconsolidated,
    )


def merge_results(cluster_index: int, results: Sequence[ConsolidationResult]) -> ConsolidationResult:
    """Combine per-chunk results for one cluster (buckets concatenated)"""
    merged = ConsolidationResult(cluster_index=cluster_index)
    for result in results:
        merged.buckets.extend(result.buckets)
        merged.unconsolidated_ids.extend(result.unconsolidated_ids)
    return merged


class ClusterConsolidator:
    """Merges each cluster's responses into consolidated statements"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
        settings: Optional[AnalysisSettings] = None,
        model: str = DEFAULT_CONSOLIDATION_MODEL,
        prompts_path: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Initialize consolidator

        Args:
            api_key: Gemini API key (defaults to env vars)
            client: Pre-built genai.Client (or compatible fake)
            settings: Tuning knobs; max_responses_per_call caps each call
            model: Gemini model name
            prompts_path: Path to prompts.json (defaults to package resource)
            metrics: Metrics collector (defaults to no-op)
        """
        self.client = client if client is not None else create_client(api_key)
        self.settings = settings or AnalysisSettings()
        self.model = model
        self.metrics = metrics or NullMetrics()

        self.prompts = load_prompts(prompts_path)

    async def consolidate(self, cluster_index: int, responses: Sequence[Response]) -> ConsolidationResult:
        """Consolidate one cluster; never raises for model failures

        Args:
            cluster_index: The cluster being processed
            responses: All responses in the cluster

        Returns:
            ConsolidationResult covering every input id exactly once
        """
        if not responses:
            return ConsolidationResult(cluster_index=cluster_index)

        if len(responses) == 1:
            only = responses[0]
            return ConsolidationResult(
                cluster_index=cluster_index,
                buckets=[
                    SemanticBucket(
                        bucket_name=SINGLE_RESPONSE_BUCKET,
                        consolidated_statement=only.text,
                        response_ids=[only.id],
                    )
                ],
            )

        chunks = chunk_responses(responses, self.settings.max_responses_per_call)
        if len(chunks) > 1:
            logger.info(
                "cluster exceeds per-call cap, consolidating in chunks",
                cluster_index=cluster_index,
                responses=len(responses),
                chunks=len(chunks),
                max_per_call=self.settings.max_responses_per_call,
            )

        results = [
            await self._consolidate_chunk(cluster_index, chunk, chunk_number)
            for chunk_number, chunk in enumerate(chunks, start=1)
        ]
        return results[0] if len(results) == 1 else merge_results(cluster_index, results)

    async def consolidate_clusters(
        self, cluster_responses: Mapping[int, Sequence[Response]]
    ) -> List[ConsolidationResult]:
        """Consolidate clusters concurrently

        A cluster whose task raises gets the singleton fallback; siblings are
        unaffected. Results are ordered by cluster index. The misc group
        (outliers) is never sent to the model; its responses stay
        unconsolidated.
        """
        if not cluster_responses:
            return []

        misc = cluster_responses.get(MISC_CLUSTER_INDEX)
        ordered = sorted((idx, rs) for idx, rs in cluster_responses.items() if idx != MISC_CLUSTER_INDEX)
        outcomes = await asyncio.gather(
            *(self.consolidate(idx, responses) for idx, responses in ordered),
            return_exceptions=True,
        )

        results: List[ConsolidationResult] = []
        if misc:
            results.append(
                ConsolidationResult(cluster_index=MISC_CLUSTER_INDEX, unconsolidated_ids=[r.id for r in misc])
            )

        failures = 0
        for (idx, responses), outcome in zip(ordered, outcomes):
            if isinstance(outcome, Exception):
                failures += 1
                self.metrics.consolidation_fallbacks.labels(reason="task_error").inc()
                logger.error(
                    "cluster consolidation task failed, using fallback",
                    cluster_index=idx,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                results.append(fallback_result(idx, responses))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)

        total_consolidated = sum(len(r.consolidated_ids()) for r in results)
        total_unconsolidated = sum(len(r.unconsolidated_ids) for r in results)
        total = total_consolidated + total_unconsolidated
        logger.info(
            "clusters consolidated",
            clusters=len(ordered),
            misc=len(misc) if misc else 0,
            failed=failures,
            buckets=sum(len(r.buckets) for r in results),
            consolidated=total_consolidated,
            unconsolidated=total_unconsolidated,
            consolidation_rate=round(total_consolidated / total * 100, 1) if total else 0.0,
        )
        return results

    async def _consolidate_chunk(
        self, cluster_index: int, responses: List[Response], chunk_number: int
    ) -> ConsolidationResult:
        if len(responses) == 1:
            # Nothing to merge a lone trailing response with
            return ConsolidationResult(cluster_index=cluster_index, unconsolidated_ids=[responses[0].id])

        try:
            payload = await self._request_consolidation(responses)
            return validate_consolidation(cluster_index, payload, responses, self.metrics)
        except LLMError as e:
            self.metrics.consolidation_fallbacks.labels(reason="llm_error").inc()
            logger.warning(
                "consolidation failed, each response becomes its own bucket",
                cluster_index=cluster_index,
                chunk_number=chunk_number,
                responses=len(responses),
                error=str(e),
            )
            return fallback_result(cluster_index, responses)

    async def _request_consolidation(self, responses: List[Response]) -> Any:
        """Call Gemini and parse its JSON payload

        Raises:
            LLMError: On call failure, empty output or unparseable JSON
        """
        prompt_data = self.prompts[PROMPT_TYPE]["cluster"]
        prompt = self._get_prompt(count=len(responses), responses=format_responses(responses))
        gen_config = types.GenerateContentConfig(
            system_instruction=prompt_data["system"],
            temperature=0.2,
            response_mime_type="application/json",
            response_schema=prompt_data.get("response_schema"),
        )

        start_time = time.time()
        try:
            response = await call_with_retry(
                lambda: self.client.aio.models.generate_content(
                    model=self.model, contents=prompt, config=gen_config
                ),
                service="llm",
            )
            response_text = response.text
            if not response_text:
                raise ValueError("Gemini returned no text")
            payload = json.loads(response_text)
        except Exception as e:
            duration = time.time() - start_time
            self.metrics.record_llm_call(
                model=self.model,
                prompt_type=PROMPT_TYPE,
                duration_seconds=duration,
                input_tokens=0,
                output_tokens=0,
                success=False,
            )
            self.metrics.record_error(component="consolidator", error=e)
            raise LLMError(
                f"Consolidation call failed after {duration:.1f}s",
                model=self.model,
                prompt_type=PROMPT_TYPE,
                original_error=e,
            ) from e

        usage = getattr(response, "usage_metadata", None)
        self.metrics.record_llm_call(
            model=self.model,
            prompt_type=PROMPT_TYPE,
            duration_seconds=time.time() - start_time,
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
            success=True,
        )
        return payload

    def _get_prompt(self, **variables) -> str:
        try:
            template = self.prompts[PROMPT_TYPE]["cluster"]["template"]
        except KeyError as e:
            raise LLMError(f"Prompt not found: {PROMPT_TYPE}.cluster", prompt_type=PROMPT_TYPE) from e
        return template.format(**variables)


def group_by_cluster(
    responses: Sequence[Response], cluster_indices: Sequence[int]
) -> Dict[int, List[Response]]:
    """cluster index -> member responses, in input order"""
    groups: Dict[int, List[Response]] = {}
    for response, idx in zip(responses, cluster_indices):
        groups.setdefault(int(idx), []).append(response)
    return groups
