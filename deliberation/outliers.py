"""Distance-based outlier handling

Two independent tools:
- filter_outliers: drops far-flung 2-D layout points (IQR rule) so they do
  not distort a cluster's drawn boundary; the analysis keeps them
- detect_outliers_per_cluster: flags responses far from their cluster's
  centroid in embedding space (MAD z-score); the analyzer moves them to
  the misc group (cluster index -1)
"""

import math
from typing import Dict, List, Mapping, Sequence, Set, TypeVar

import numpy as np

from config import get_logger
from database.models import MISC_CLUSTER_INDEX

logger = get_logger(__name__).bind(component="outliers")

Point = TypeVar("Point", bound=Sequence[float])

DEFAULT_IQR_THRESHOLD = 2.5
MIN_POINTS_FOR_FILTERING = 4
MAX_DROP_RATIO = 0.5


def distances_to_centroid(points: Sequence[Sequence[float]]) -> np.ndarray:
    """Euclidean distance from each point to the points' mean"""
    matrix = np.asarray(points, dtype=np.float64)
    centroid = matrix.mean(axis=0)
    return np.linalg.norm(matrix - centroid, axis=1)


def outlier_mask(
    points: Sequence[Sequence[float]], threshold_iqr: float = DEFAULT_IQR_THRESHOLD
) -> List[bool]:
    """True for each point that should be kept

    Keeps points within Q3 + threshold * IQR of the centroid. If that rule
    would drop more than half of the points, keeps the nearest half instead.
    """
    n = len(points)
    if n < MIN_POINTS_FOR_FILTERING:
        return [True] * n

    distances = distances_to_centroid(points)
    q1, q3 = np.percentile(distances, [25, 75])
    cutoff = q3 + threshold_iqr * (q3 - q1)
    keep = distances <= cutoff

    min_keep = math.ceil(n * (1 - MAX_DROP_RATIO))
    if int(keep.sum()) < min_keep:
        nearest = np.argsort(distances, kind="stable")[:min_keep]
        keep = np.zeros(n, dtype=bool)
        keep[nearest] = True
        logger.debug("iqr rule too aggressive, keeping nearest half", n=n, kept=min_keep)

    return [bool(k) for k in keep]


def filter_outliers(
    points: Sequence[Point], threshold_iqr: float = DEFAULT_IQR_THRESHOLD
) -> List[Point]:
    """Remove distance outliers from a set of 2-D points

    Args:
        points: (x, y) pairs for one cluster
        threshold_iqr: IQR multiplier above Q3 beyond which a point is dropped

    Returns:
        The kept points, in input order. No-op below four points.
    """
    mask = outlier_mask(points, threshold_iqr)
    kept = [point for point, keep in zip(points, mask) if keep]

    if len(kept) < len(points):
        logger.debug("filtered layout outliers", total=len(points), dropped=len(points) - len(kept))

    return kept


# --- Per-cluster outliers (embedding space) ---

OUTLIER_Z_THRESHOLD = 3.5
OUTLIER_MIN_CLUSTER_SIZE = 6
OUTLIER_MAX_RATIO = 0.20

# Makes MAD comparable to a standard deviation for normal data
MAD_SCALE = 0.6745


def cosine_distances_to_centroids(
    embeddings: Sequence[Sequence[float]], cluster_indices: Sequence[int]
) -> np.ndarray:
    """Cosine distance from each embedding to its own cluster's mean (0 to 2)"""
    matrix = np.asarray(embeddings, dtype=np.float64)
    labels = np.asarray(cluster_indices)
    distances = np.zeros(len(labels), dtype=np.float64)

    for idx in np.unique(labels):
        members = labels == idx
        centroid = matrix[members].mean(axis=0)
        norms = np.linalg.norm(matrix[members], axis=1) * np.linalg.norm(centroid)
        dots = matrix[members] @ centroid
        similarity = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        distances[members] = 1.0 - similarity

    return distances


def mad_z_scores(distances: Sequence[float]) -> np.ndarray:
    """Modified z-score |x - median| * 0.6745 / MAD; all zeros when MAD is 0"""
    values = np.asarray(distances, dtype=np.float64)
    if values.size == 0:
        return values
    median = np.median(values)
    mad = np.median(np.abs(values - median))
    if mad == 0:
        return np.zeros_like(values)
    return MAD_SCALE * np.abs(values - median) / mad


def detect_outliers(
    distances: Sequence[float],
    threshold: float = OUTLIER_Z_THRESHOLD,
    min_cluster_size: int = OUTLIER_MIN_CLUSTER_SIZE,
    max_outlier_ratio: float = OUTLIER_MAX_RATIO,
) -> List[bool]:
    """True for each distance whose MAD z-score exceeds the threshold

    Clusters smaller than min_cluster_size have no outliers. At most
    floor(n * max_outlier_ratio) are flagged, highest z-scores first.
    """
    n = len(distances)
    if n < min_cluster_size:
        return [False] * n

    scores = mad_z_scores(distances)
    candidates = [i for i in range(n) if scores[i] > threshold]

    max_outliers = math.floor(n * max_outlier_ratio)
    if len(candidates) > max_outliers:
        candidates = sorted(candidates, key=lambda i: -scores[i])[:max_outliers]

    flagged = set(candidates)
    return [i in flagged for i in range(n)]


def detect_outliers_per_cluster(
    cluster_indices: Sequence[int],
    distances: Sequence[float],
    threshold: float = OUTLIER_Z_THRESHOLD,
    min_cluster_size: int = OUTLIER_MIN_CLUSTER_SIZE,
    max_outlier_ratio: float = OUTLIER_MAX_RATIO,
) -> Dict[int, Set[int]]:
    """cluster index -> positions (into the input) of that cluster's outliers

    Clusters without outliers are omitted.
    """
    if len(cluster_indices) != len(distances):
        raise ValueError("cluster_indices and distances must have the same length")

    members: Dict[int, List[int]] = {}
    for position, idx in enumerate(cluster_indices):
        members.setdefault(int(idx), []).append(position)

    outliers: Dict[int, Set[int]] = {}
    for idx, positions in members.items():
        flags = detect_outliers(
            [distances[p] for p in positions], threshold, min_cluster_size, max_outlier_ratio
        )
        found = {p for p, flagged in zip(positions, flags) if flagged}
        if found:
            outliers[idx] = found

    return outliers


def reassign_outliers(
    cluster_indices: Sequence[int], outliers: Mapping[int, Set[int]]
) -> List[int]:
    """Copy of cluster_indices with every outlier moved to MISC_CLUSTER_INDEX"""
    reassigned = [int(idx) for idx in cluster_indices]
    for positions in outliers.values():
        for position in positions:
            reassigned[position] = MISC_CLUSTER_INDEX
    return reassigned
