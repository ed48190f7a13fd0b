"""
Cluster Themes - short name and description per cluster

Each regular cluster gets a Gemini-written theme from an evenly spaced
sample of its responses. The misc group (outliers) gets a fixed theme and
is never sent to the model. A failed call yields a numbered placeholder
theme; theme generation never fails the analysis.
"""

import asyncio
import json
import time
from typing import Any, List, Mapping, Optional, Sequence

from google.genai import types

from analysis.gemini import call_with_retry, create_client
from analysis.llm.consolidator import load_prompts
from config import get_logger
from database.models import MISC_CLUSTER_INDEX, ClusterTheme, Response
from exceptions import LLMError
from pipeline.protocols import MetricsCollector, NullMetrics

logger = get_logger(__name__).bind(component="themes")

DEFAULT_THEME_MODEL = "gemini-2.5-flash-lite"
PROMPT_TYPE = "themes"

MAX_THEME_SAMPLES = 20
MISC_THEME_NAME = "Misc"
MISC_THEME_DESCRIPTION = "Responses that don't fit well into other themes"


def sample_diverse(texts: Sequence[str], max_samples: int = MAX_THEME_SAMPLES) -> List[str]:
    """Evenly spaced texts across the input order

    Keeps early, middle and late responses alike instead of only the first few.
    """
    if len(texts) <= max_samples:
        return list(texts)
    step = len(texts) / max_samples
    return [texts[int(i * step)] for i in range(max_samples)]


def placeholder_theme(cluster_index: int, size: int) -> ClusterTheme:
    return ClusterTheme(
        cluster_index=cluster_index,
        name=f"Theme {cluster_index + 1}",
        description=f"{size} related responses",
        size=size,
    )


def misc_theme(size: int) -> ClusterTheme:
    return ClusterTheme(
        cluster_index=MISC_CLUSTER_INDEX,
        name=MISC_THEME_NAME,
        description=MISC_THEME_DESCRIPTION,
        size=size,
    )


class ClusterThemeGenerator:
    """Names each cluster with Gemini"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
        model: str = DEFAULT_THEME_MODEL,
        prompts_path: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.client = client if client is not None else create_client(api_key)
        self.model = model
        self.metrics = metrics or NullMetrics()
        self.prompts = load_prompts(prompts_path)

    async def generate_theme(self, cluster_index: int, responses: Sequence[Response]) -> ClusterTheme:
        """Theme for one cluster; falls back to a placeholder on any model failure"""
        if not responses:
            return ClusterTheme(
                cluster_index=cluster_index,
                name="Empty Cluster",
                description="No responses in this cluster",
                size=0,
            )

        try:
            payload = await self._request_theme(sample_diverse([r.text for r in responses]))
        except LLMError as e:
            logger.warning(
                "theme generation failed, using placeholder",
                cluster_index=cluster_index,
                error=str(e),
            )
            return placeholder_theme(cluster_index, len(responses))

        fallback = placeholder_theme(cluster_index, len(responses))
        name = payload.get("name") if isinstance(payload, dict) else None
        description = payload.get("description") if isinstance(payload, dict) else None
        return ClusterTheme(
            cluster_index=cluster_index,
            name=name if isinstance(name, str) and name.strip() else fallback.name,
            description=(
                description
                if isinstance(description, str) and description.strip()
                else "A collection of related responses"
            ),
            size=len(responses),
        )

    async def generate_themes(self, cluster_responses: Mapping[int, Sequence[Response]]) -> List[ClusterTheme]:
        """Themes for every cluster, largest cluster first, misc last"""
        regular = sorted((idx, rs) for idx, rs in cluster_responses.items() if idx != MISC_CLUSTER_INDEX)
        outcomes = await asyncio.gather(
            *(self.generate_theme(idx, responses) for idx, responses in regular),
            return_exceptions=True,
        )

        themes: List[ClusterTheme] = []
        for (idx, responses), outcome in zip(regular, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "theme task failed, using placeholder",
                    cluster_index=idx,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                themes.append(placeholder_theme(idx, len(responses)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                themes.append(outcome)

        themes.sort(key=lambda t: (-t.size, t.cluster_index))

        misc = cluster_responses.get(MISC_CLUSTER_INDEX)
        if misc:
            themes.append(misc_theme(len(misc)))

        logger.info("themes generated", themes=len(themes), misc=len(misc) if misc else 0)
        return themes

    async def _request_theme(self, texts: List[str]) -> Any:
        """Call Gemini and parse its JSON payload

        Raises:
            LLMError: On call failure, empty output or unparseable JSON
        """
        prompt_data = self.prompts[PROMPT_TYPE]["cluster"]
        numbered = "\n".join(f"{i}. {text}" for i, text in enumerate(texts, start=1))
        prompt = prompt_data["template"].format(responses=numbered)
        gen_config = types.GenerateContentConfig(
            system_instruction=prompt_data["system"],
            temperature=0.3,
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
            if not response.text:
                raise ValueError("Gemini returned no text")
            payload = json.loads(response.text)
        except Exception as e:
            self.metrics.record_llm_call(
                model=self.model,
                prompt_type=PROMPT_TYPE,
                duration_seconds=time.time() - start_time,
                input_tokens=0,
                output_tokens=0,
                success=False,
            )
            self.metrics.record_error(component="themes", error=e)
            raise LLMError(
                "Theme generation call failed",
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
