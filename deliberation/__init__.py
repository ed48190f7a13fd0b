"""Deliberation module - response grouping and consensus

Pure computation over a conversation's responses and feedback:
- Adaptive k-means clustering of response embeddings
- Cluster outliers (MAD z-score on cosine distance) moved to the misc group
- Layout outlier filtering (IQR on centroid distance)
- Consensus metrics, per-statement vote breakdowns and agreement summaries
"""

from deliberation.clustering import (
    cluster_embeddings,
    normalize_embeddings,
    relabel_clusters_by_size,
)
from deliberation.consensus import (
    compute_agreement_summaries,
    compute_consensus_metrics,
    compute_consolidated_consensus_items,
    compute_conversation_consensus,
    compute_response_consensus_items,
    summarize_agreement,
)
from deliberation.outliers import (
    cosine_distances_to_centroids,
    detect_outliers,
    detect_outliers_per_cluster,
    filter_outliers,
    reassign_outliers,
)

__all__ = [
    "cluster_embeddings",
    "normalize_embeddings",
    "relabel_clusters_by_size",
    "compute_agreement_summaries",
    "compute_consensus_metrics",
    "compute_consolidated_consensus_items",
    "compute_conversation_consensus",
    "compute_response_consensus_items",
    "summarize_agreement",
    "cosine_distances_to_centroids",
    "detect_outliers",
    "detect_outliers_per_cluster",
    "filter_outliers",
    "reassign_outliers",
]
