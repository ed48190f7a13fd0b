"""Adaptive response clustering

Groups embedded responses without a human-chosen cluster count.

Algorithm:
1. Derive a search budget maxK from the data size and minimum cluster size
2. K-means (fixed seed) for every k in 1..maxK, recording distortion
3. Homogeneous data (distortion at k=1 ~ 0) short-circuits to k=1
4. Knee detection: k with maximum perpendicular distance to the chord
   between (1, d1) and (maxK, dMaxK)
5. Linear curves with no strong k=1 -> k=2 drop fall back to k=1

Hard-coded counts force meaningless splits on homogeneous input and an
undersized cap on diverse input; the size-bounded knee search avoids both.
"""

import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.cluster import KMeans

from config import AnalysisSettings, get_logger
from exceptions import ClusteringError

logger = get_logger(__name__).bind(component="clustering")

# Seed shared by every k-means run so k-selection is reproducible
KMEANS_SEED = 42

# Mean squared distance to the centroid below which data counts as homogeneous.
# Embeddings are unit length, so this is an RMS spread of 1e-3.
HOMOGENEITY_TOLERANCE = 1e-6

# Knee must stand out by at least this fraction of the distortion range
LINEAR_THRESHOLD = 0.001

# Fractional drop from k=1 to k=2 that overrides the linearity guard
STRONG_K2_DROP = 0.5


def default_min_cluster_size(n: int) -> int:
    """Size-banded minimum cluster size

    Examples:
        - 50 items -> 8
        - 150 items -> 12
        - 300 items -> 16
        - 400+ items -> 20
    """
    if n >= 400:
        return 20
    if n >= 200:
        return 16
    if n >= 100:
        return 12
    return 8


def derive_max_k(n: int, settings: AnalysisSettings) -> int:
    """Largest k worth evaluating for n items

    At least min_cluster_size items per cluster and never fewer than three,
    further capped by settings.max_clusters. May be 0 for tiny inputs.
    """
    min_cluster_size = settings.min_cluster_size or default_min_cluster_size(n)
    max_k = min(n // min_cluster_size, n // 3)
    if settings.max_clusters is not None:
        max_k = min(max_k, settings.max_clusters)
    return max_k


def perpendicular_distance(
    x: float, y: float, x1: float, y1: float, x2: float, y2: float
) -> float:
    """Distance from (x, y) to the line through (x1, y1) and (x2, y2)"""
    dx = x2 - x1
    dy = y2 - y1
    denominator = math.sqrt(dx * dx + dy * dy)
    if denominator == 0:
        return 0.0
    return abs(dy * x - dx * y + x2 * y1 - y2 * x1) / denominator


def compute_distortion(
    matrix: np.ndarray, labels: np.ndarray, centers: np.ndarray
) -> float:
    """Sum of squared distances from each point to its assigned centroid"""
    diffs = matrix - centers[labels]
    return float(np.sum(diffs * diffs))


def _as_matrix(embeddings: Sequence[Sequence[float]]) -> np.ndarray:
    try:
        matrix = np.asarray(embeddings, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ClusteringError(
            f"Clustering failed: embeddings are not a rectangular numeric matrix ({e})",
            n_items=len(embeddings),
        ) from e

    if matrix.ndim != 2:
        raise ClusteringError(
            f"Clustering failed: expected 2-D embeddings, got {matrix.ndim}-D",
            n_items=len(embeddings),
        )
    if not np.all(np.isfinite(matrix)):
        raise ClusteringError(
            "Clustering failed: embeddings contain NaN or infinite values",
            n_items=len(embeddings),
        )
    return matrix


def _fit_kmeans(matrix: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    """Run k-means, returning (labels, centers)"""
    if k == 1:
        return np.zeros(matrix.shape[0], dtype=int), matrix.mean(axis=0, keepdims=True)

    kmeans = KMeans(
        n_clusters=k,
        init="k-means++",
        n_init=10,
        max_iter=300,
        random_state=KMEANS_SEED,
    )
    labels = kmeans.fit_predict(matrix)
    return labels.astype(int), kmeans.cluster_centers_


def compute_distortion_curve(
    matrix: np.ndarray, max_k: int
) -> Tuple[List[float], List[np.ndarray]]:
    """Distortion and labels for k = 1..max_k (index 0 holds k=1)"""
    distortions: List[float] = []
    labelings: List[np.ndarray] = []
    for k in range(1, max_k + 1):
        labels, centers = _fit_kmeans(matrix, k)
        distortions.append(compute_distortion(matrix, labels, centers))
        labelings.append(labels)
    return distortions, labelings


def choose_k_from_curve(distortions: List[float]) -> Tuple[int, float]:
    """Knee of a distortion curve

    Returns:
        (k, max perpendicular distance). k is 1 when the curve has no knee.
    """
    max_k = len(distortions)
    if max_k <= 1:
        return 1, 0.0

    x1, y1 = 1, distortions[0]
    x2, y2 = max_k, distortions[-1]

    best_k = 1
    max_distance = 0.0
    for k in range(1, max_k + 1):
        distance = perpendicular_distance(k, distortions[k - 1], x1, y1, x2, y2)
        if distance > max_distance:
            max_distance = distance
            best_k = k

    # A steep k=1 -> k=2 drop is a real signal even when the rest of the curve is flat
    y_range = abs(y1 - y2)
    drop_k1_to_k2 = abs(distortions[0] - distortions[1])
    strong_k2_signal = drop_k1_to_k2 >= STRONG_K2_DROP * distortions[0]

    if not strong_k2_signal and y_range > 0 and max_distance < LINEAR_THRESHOLD * y_range:
        return 1, max_distance

    return best_k, max_distance


def determine_optimal_clusters(
    matrix: np.ndarray, settings: AnalysisSettings
) -> Tuple[int, np.ndarray]:
    """Pick k from the data

    Returns:
        (k, labels for that k)
    """
    n = matrix.shape[0]
    all_zero = np.zeros(n, dtype=int)
    max_k = derive_max_k(n, settings)

    if max_k < 1:
        if settings.debug:
            logger.debug("search budget below one cluster", n=n, max_k=max_k)
        return 1, all_zero

    # k=1 first: homogeneous data never reaches the k-means search
    d1 = compute_distortion(matrix, all_zero, matrix.mean(axis=0, keepdims=True))
    if d1 / n < HOMOGENEITY_TOLERANCE:
        if settings.debug:
            logger.debug("homogeneous data, using k=1", n=n, distortion_k1=d1)
        return 1, all_zero

    distortions, labelings = compute_distortion_curve(matrix, max_k)
    k, max_distance = choose_k_from_curve(distortions)

    if settings.debug:
        logger.debug(
            "distortion curve evaluated",
            n=n,
            max_k=max_k,
            min_cluster_size=settings.min_cluster_size or default_min_cluster_size(n),
            distortions=[round(d, 6) for d in distortions],
            chosen_k=k,
            max_distance=round(max_distance, 6),
        )

    return k, labelings[k - 1]


def cluster_embeddings(
    embeddings: Sequence[Sequence[float]],
    explicit_k: Optional[int] = None,
    settings: Optional[AnalysisSettings] = None,
) -> List[int]:
    """Assign each embedding to one of k clusters

    Args:
        embeddings: One vector per response, all the same length
        explicit_k: Use exactly this many clusters (no search)
        settings: Tuning knobs (defaults to the environment configuration)

    Returns:
        Cluster index in [0, k) for each embedding, in input order

    Raises:
        ClusteringError: If the grouping algorithm fails
    """
    settings = settings or AnalysisSettings.from_config()
    n = len(embeddings)

    if n == 0:
        return []
    if n == 1:
        return [0]

    matrix = _as_matrix(embeddings)

    if explicit_k is not None and explicit_k < 1:
        raise ClusteringError(
            f"Clustering failed: cluster count must be positive, got {explicit_k}",
            n_items=n,
            k=explicit_k,
        )

    try:
        if explicit_k is not None:
            k = explicit_k
            labels, _ = _fit_kmeans(matrix, k)
        else:
            k, labels = determine_optimal_clusters(matrix, settings)
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
        logger.error("k-means failed", n=n, explicit_k=explicit_k, error=str(e))
        raise ClusteringError(f"Clustering failed: {e}", n_items=n, k=explicit_k) from e

    if settings.debug:
        logger.debug(
            "clustered embeddings",
            n=n,
            k=k,
            sizes=sorted(cluster_sizes(labels).values(), reverse=True),
        )

    return [int(label) for label in labels]


def relabel_clusters_by_size(cluster_indices: Sequence[int]) -> List[int]:
    """Renumber clusters so the largest is 0, the next 1, and so on

    Ties keep their original relative order.
    """
    sizes = cluster_sizes(cluster_indices)
    ordered = sorted(sizes, key=lambda idx: (-sizes[idx], idx))
    mapping = {old: new for new, old in enumerate(ordered)}
    return [mapping[idx] for idx in cluster_indices]


def cluster_sizes(cluster_indices: Sequence[int]) -> Dict[int, int]:
    """Number of members per cluster index"""
    sizes: Dict[int, int] = {}
    for idx in cluster_indices:
        idx = int(idx)
        sizes[idx] = sizes.get(idx, 0) + 1
    return sizes


def normalize_embeddings(embeddings: Sequence[Sequence[float]]) -> np.ndarray:
    """Scale every vector to unit length; zero vectors are left as-is"""
    matrix = np.asarray(embeddings, dtype=np.float64)
    if matrix.size == 0:
        return matrix.reshape(0, 0) if matrix.ndim < 2 else matrix
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms
