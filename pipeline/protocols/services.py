"""Model service protocols - embedding, consolidation and theme seams for the pipeline"""

from typing import List, Mapping, Protocol, Sequence

from database.models import ClusterTheme, ConsolidationResult, Response


class Embedder(Protocol):
    async def embed(self, texts: Sequence[str]) -> List[List[float]]: ...


class Consolidator(Protocol):
    async def consolidate_clusters(
        self, cluster_responses: Mapping[int, Sequence[Response]]
    ) -> List[ConsolidationResult]: ...


class ThemeGenerator(Protocol):
    async def generate_themes(
        self, cluster_responses: Mapping[int, Sequence[Response]]
    ) -> List[ClusterTheme]: ...
