"""
Pipeline Analyzer - one full analysis run for a conversation

Coordinates:
- Response and feedback reads (database/)
- Embedding of responses that have no vector yet (analysis/embeddings.py)
- Adaptive clustering (deliberation/clustering.py)
- Outlier reassignment to the misc group (deliberation/outliers.py)
- Per-cluster consolidation (analysis/llm/consolidator.py)
- Per-cluster themes (analysis/llm/themes.py)
- Consensus metrics and agreement summaries (deliberation/consensus.py)

Clustering completes before consolidation starts; clusters are then
consolidated and themed concurrently. The run is a full recompute; nothing is merged
with earlier results. Persisting the result is the caller's job, since only
the worker that still owns the job may write it.
"""

import asyncio
import time
from typing import List, Optional

from analysis.llm.consolidator import group_by_cluster
from config import AnalysisSettings, get_logger
from database.models import (
    ANALYSIS_STATUS_ANALYZING,
    ANALYSIS_STATUS_EMBEDDING,
    MISC_CLUSTER_INDEX,
    AnalysisResult,
    Response,
)
from deliberation.clustering import cluster_embeddings, normalize_embeddings, relabel_clusters_by_size
from deliberation.consensus import compute_conversation_consensus, summarize_agreement
from deliberation.outliers import cosine_distances_to_centroids, detect_outliers_per_cluster, reassign_outliers
from exceptions import ValidationError
from pipeline.protocols import Consolidator, ConversationStore, Embedder, ThemeGenerator

logger = get_logger(__name__).bind(component="pipeline")


class AnalysisPipeline:
    """Response analysis orchestrator"""

    def __init__(
        self,
        conversations: ConversationStore,
        embedder: Embedder,
        consolidator: Consolidator,
        settings: Optional[AnalysisSettings] = None,
        theme_generator: Optional[ThemeGenerator] = None,
    ):
        self.conversations = conversations
        self.embedder = embedder
        self.consolidator = consolidator
        self.theme_generator = theme_generator
        self.settings = settings or AnalysisSettings()

    async def run(self, conversation_id: str, explicit_k: Optional[int] = None) -> AnalysisResult:
        """Analyze every response in a conversation

        Args:
            conversation_id: Conversation to analyze
            explicit_k: Force this many clusters instead of searching

        Returns:
            AnalysisResult ready to persist

        Raises:
            EmbeddingError, ClusteringError, ValidationError, DatabaseError
        """
        start_time = time.time()
        log = logger.bind(conversation_id=conversation_id)

        responses = await self.conversations.get_responses(conversation_id)
        if not responses:
            log.info("no responses to analyze")
            feedback = await self.conversations.get_feedback(conversation_id)
            items, metrics = compute_conversation_consensus([], [], feedback)
            return AnalysisResult(
                conversation_id=conversation_id,
                consensus_items=items,
                agreement_summaries=summarize_agreement(items),
                metrics=metrics,
            )

        await self.conversations.set_analysis_status(conversation_id, ANALYSIS_STATUS_EMBEDDING)
        vectors = await self._ensure_embeddings(responses)

        await self.conversations.set_analysis_status(conversation_id, ANALYSIS_STATUS_ANALYZING)
        matrix = normalize_embeddings(vectors)
        labels = await asyncio.to_thread(cluster_embeddings, matrix, explicit_k, self.settings)
        labels = relabel_clusters_by_size(labels)

        distances = cosine_distances_to_centroids(matrix, labels)
        outliers = detect_outliers_per_cluster(labels, distances)
        labels = reassign_outliers(labels, outliers)

        groups = group_by_cluster(responses, labels)
        log.info(
            "responses clustered",
            responses=len(responses),
            clusters=len([idx for idx in groups if idx != MISC_CLUSTER_INDEX]),
            misc=len(groups.get(MISC_CLUSTER_INDEX, [])),
        )

        if self.theme_generator is not None:
            consolidations, themes = await asyncio.gather(
                self.consolidator.consolidate_clusters(groups),
                self.theme_generator.generate_themes(groups),
            )
        else:
            consolidations, themes = await self.consolidator.consolidate_clusters(groups), []

        feedback = await self.conversations.get_feedback(conversation_id)
        items, metrics = compute_conversation_consensus(responses, consolidations, feedback)

        result = AnalysisResult(
            conversation_id=conversation_id,
            response_count=len(responses),
            cluster_assignments={r.id: label for r, label in zip(responses, labels)},
            consolidations=consolidations,
            themes=themes,
            consensus_items=items,
            agreement_summaries=summarize_agreement(items),
            metrics=metrics,
        )

        log.info(
            "analysis complete",
            responses=result.response_count,
            clusters=result.cluster_count,
            misc=result.misc_count,
            themes=len(themes),
            statements=metrics.total_statements,
            agreement_summaries=len(result.agreement_summaries),
            duration_seconds=round(time.time() - start_time, 1),
        )
        return result

    async def _ensure_embeddings(self, responses: List[Response]) -> List[List[float]]:
        """Vectors for every response, embedding (and storing) only the missing ones"""
        missing = [r for r in responses if r.embedding is None]

        if missing:
            new_vectors = await self.embedder.embed([r.text for r in missing])
            if len(new_vectors) != len(missing):
                raise ValidationError(
                    f"Embedding count {len(new_vectors)} does not match response count {len(missing)}",
                    field="embeddings",
                )
            for response, vector in zip(missing, new_vectors):
                response.embedding = list(vector)
            await self.conversations.save_embeddings({r.id: r.embedding for r in missing})
            logger.debug("embedded missing responses", embedded=len(missing), reused=len(responses) - len(missing))

        dimensions = {len(r.embedding) for r in responses}
        if len(dimensions) != 1:
            raise ValidationError(
                f"Embeddings have inconsistent dimensions: {sorted(dimensions)}",
                field="embeddings",
            )

        return [r.embedding for r in responses]
