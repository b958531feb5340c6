"""Resolved stage inputs and the cache-first executor that runs them.

A :class:`StageSpec` is the fully resolved input of one upstream call: system
instruction, user payload, response contract and the projection of the
request that identifies it in the cache. :class:`StageExecutor` runs a spec
through the cache and, on a miss, through the inference provider exactly once.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple, Type

from pydantic import BaseModel, ValidationError

from makersai.cache import make_cache_key
from makersai.designs import (
    ConstructionPlanOutput,
    Dimensions,
    ImageAnalysisOutput,
    ModelOutputs,
    RenderedImage,
    SourceImage,
)
from makersai.errors import StageFailed
from makersai.prompts import (
    DEFAULT_IMAGE_INSTRUCTION,
    SYSTEM_MSG_IMAGE_TO_SCAD,
    SYSTEM_MSG_SCAD_GENERATOR,
    build_planner_system_instruction,
    build_render_prompt,
    build_scad_system_instruction,
)

logger = logging.getLogger(__name__)


class StageKind(str, Enum):
    DECOMPOSITION = "decomposition"
    CODE_SYNTHESIS = "code_synthesis"
    IMAGE_SYNTHESIS = "image_synthesis"
    VISION_SYNTHESIS = "vision_synthesis"


CACHE_PREFIXES = {
    StageKind.DECOMPOSITION: "construction-plan",
    StageKind.CODE_SYNTHESIS: "outputs",
    StageKind.IMAGE_SYNTHESIS: "image",
    StageKind.VISION_SYNTHESIS: "image-outputs",
}

STAGE_LABELS = {
    StageKind.DECOMPOSITION: "Construction plan",
    StageKind.CODE_SYNTHESIS: "Outputs",
    StageKind.IMAGE_SYNTHESIS: "Image",
    StageKind.VISION_SYNTHESIS: "Image analysis",
}

STAGE_FAILURE_MESSAGES = {
    StageKind.DECOMPOSITION: (
        "Failed to generate the construction plan. The model may have returned an invalid response."
    ),
    StageKind.CODE_SYNTHESIS: "Failed to generate OpenSCAD code and outputs.",
    StageKind.IMAGE_SYNTHESIS: "Failed to generate the model's image visualization.",
    StageKind.VISION_SYNTHESIS: "Failed to analyze the source image and generate a model.",
}


@dataclass(frozen=True)
class StageSpec:
    stage: StageKind
    system_instruction: str
    user_text: str
    response_schema: Type[BaseModel]
    required_fields: Tuple[str, ...]
    cache_payload: Mapping[str, Any] = field(default_factory=dict)
    user_binary: Optional[SourceImage] = None

    @property
    def cache_key(self) -> str:
        return make_cache_key(CACHE_PREFIXES[self.stage], dict(self.cache_payload))

    def failure(self) -> StageFailed:
        return StageFailed(self.stage.value, STAGE_FAILURE_MESSAGES[self.stage])


class InferenceProvider(Protocol):
    """The one capability the pipeline needs from an upstream model provider."""

    def infer(self, spec: StageSpec) -> Dict[str, Any]:
        ...


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...


# --- Stage builders ---


def _dimensions_payload(dimensions: Optional[Dimensions]) -> Optional[Dict[str, float]]:
    return dimensions.model_dump() if dimensions is not None else None


def build_plan_stage(prompt_text: str, colors: Sequence[str]) -> StageSpec:
    colors = list(colors)
    return StageSpec(
        stage=StageKind.DECOMPOSITION,
        system_instruction=build_planner_system_instruction(colors),
        user_text=prompt_text,
        response_schema=ConstructionPlanOutput,
        required_fields=("parts",),
        cache_payload={"prompt": prompt_text, "colors": colors},
    )


def build_code_stage(
    prompt_text: str, dimensions: Optional[Dimensions], colors: Sequence[str]
) -> StageSpec:
    colors = list(colors)
    return StageSpec(
        stage=StageKind.CODE_SYNTHESIS,
        system_instruction=build_scad_system_instruction(
            SYSTEM_MSG_SCAD_GENERATOR,
            width=dimensions.width if dimensions else None,
            height=dimensions.height if dimensions else None,
            colors=colors,
        ),
        user_text=prompt_text,
        response_schema=ModelOutputs,
        required_fields=("scadCode", "imagePrompt", "svgCode"),
        cache_payload={
            "prompt": prompt_text,
            "dimensions": _dimensions_payload(dimensions),
            "colors": colors,
        },
    )


def build_image_stage(image_description: str) -> StageSpec:
    return StageSpec(
        stage=StageKind.IMAGE_SYNTHESIS,
        system_instruction="",
        user_text=build_render_prompt(image_description),
        response_schema=RenderedImage,
        required_fields=("imageUrl",),
        cache_payload={"imagePrompt": image_description},
    )


def build_vision_stage(
    source_image: SourceImage,
    instruction: str,
    dimensions: Optional[Dimensions],
    colors: Sequence[str],
) -> StageSpec:
    colors = list(colors)
    return StageSpec(
        stage=StageKind.VISION_SYNTHESIS,
        system_instruction=build_scad_system_instruction(
            SYSTEM_MSG_IMAGE_TO_SCAD,
            width=dimensions.width if dimensions else None,
            height=dimensions.height if dimensions else None,
            colors=colors,
        ),
        user_text=instruction or DEFAULT_IMAGE_INSTRUCTION,
        user_binary=source_image,
        response_schema=ImageAnalysisOutput,
        required_fields=("scadCode", "imagePrompt", "svgCode"),
        cache_payload={
            "prompt": instruction,
            "dimensions": _dimensions_payload(dimensions),
            "colors": colors,
            "image": source_image.digest,
        },
    )


# --- Execution ---


class StageExecutor:
    """Run stage specs cache-first, calling the provider at most once per miss."""

    def __init__(
        self,
        provider: InferenceProvider,
        cache: CacheBackend,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.upstream_calls = 0
        self.cache_hits = 0

    def execute(self, spec: StageSpec) -> Dict[str, Any]:
        key = spec.cache_key
        cached = self._cache_get(key)
        if cached is not None:
            self.cache_hits += 1
            logger.info("✅ %s served from cache", STAGE_LABELS[spec.stage])
            return cached

        self.upstream_calls += 1
        try:
            result = self.provider.infer(spec)
        except Exception as exc:
            logger.error("Error during %s stage: %s", spec.stage.value, exc)
            raise spec.failure() from exc

        missing = missing_fields(result, spec.required_fields)
        if missing:
            logger.error(
                "Invalid response structure from %s stage. Missing required keys: %s",
                spec.stage.value,
                ", ".join(missing),
            )
            raise spec.failure()

        try:
            validated = spec.response_schema.model_validate(result).model_dump()
        except ValidationError as exc:
            logger.error("Response from %s stage failed validation: %s", spec.stage.value, exc)
            raise spec.failure() from exc

        self._cache_set(key, validated)
        return validated

    def _cache_get(self, key: str) -> Optional[Any]:
        try:
            return self.cache.get(key)
        except Exception as exc:
            logger.warning("Cache get error: %s", exc)
            return None

    def _cache_set(self, key: str, value: Any) -> None:
        try:
            self.cache.set(key, value, self.ttl_seconds)
        except Exception as exc:
            logger.warning("Cache set error: %s", exc)


def missing_fields(result: Any, required: Sequence[str]) -> Tuple[str, ...]:
    """Return the required keys absent (or null) in ``result``."""
    if not isinstance(result, Mapping):
        return tuple(required) or ("<object>",)
    return tuple(name for name in required if result.get(name) is None)
