# makersai/orchestrator.py

"""Sequencing of inference stages into the supported generation pipelines.

Every pipeline is a strict sequence of blocking stage calls: the render stage
always waits for the synthesis stage that produces its description, and in
construction mode part ``i + 1`` only starts once part ``i`` has been fully
rendered. At most one upstream call is in flight per pipeline run.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from makersai.admission import LayeredAdmission
from makersai.designs import (
    ConstructionPart,
    DesignRequest,
    Dimensions,
    GenerationMode,
    GenerationResult,
)
from makersai.errors import AdmissionRejected, StageFailed, ValidationFailed
from makersai.feasibility import FeasibilityReport, ProfileRegistry, check_feasibility
from makersai.stages import (
    StageExecutor,
    StageSpec,
    build_code_stage,
    build_image_stage,
    build_plan_stage,
    build_vision_stage,
)

logger = logging.getLogger(__name__)

BUDGET_EXCEEDED_MESSAGE = "Generation time budget exceeded."


class RunState(str, Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"
    DECOMPOSING = "decomposing"
    SYNTHESIZING = "synthesizing"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RunState.REJECTED, RunState.FAILED})

ALLOWED_TRANSITIONS = {
    RunState.ADMITTED: {RunState.REJECTED, RunState.DECOMPOSING, RunState.SYNTHESIZING},
    RunState.DECOMPOSING: {RunState.SYNTHESIZING, RunState.FAILED},
    RunState.SYNTHESIZING: {RunState.RENDERING, RunState.FAILED},
    RunState.RENDERING: {RunState.COMPLETED, RunState.FAILED},
    RunState.COMPLETED: {RunState.SYNTHESIZING},
    RunState.REJECTED: set(),
    RunState.FAILED: set(),
}


@dataclass
class PipelineRun:
    """State of one pipeline invocation and its wall-clock deadline."""

    mode: GenerationMode
    deadline: float
    clock: Callable[[], float] = time.monotonic
    state: RunState = RunState.ADMITTED
    part_index: int = 0
    history: List[Tuple[RunState, int]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.history.append((self.state, self.part_index))

    def advance(self, state: RunState, part_index: Optional[int] = None) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {state.value}")
        if part_index is not None:
            self.part_index = part_index
        self.state = state
        self.history.append((state, self.part_index))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def time_left(self) -> float:
        return self.deadline - self.clock()

    def ensure_time_left(self, spec: StageSpec) -> None:
        if self.time_left() <= 0:
            logger.error(
                "Pipeline budget exhausted before %s stage (part %d)",
                spec.stage.value,
                self.part_index,
            )
            raise StageFailed(spec.stage.value, BUDGET_EXCEEDED_MESSAGE)


@dataclass
class ConstructionOutcome:
    """Parts completed before the loop stopped, and the failure that stopped it."""

    results: List[GenerationResult] = field(default_factory=list)
    error: Optional[StageFailed] = None
    failed_part: Optional[ConstructionPart] = None
    failed_index: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Orchestrator:
    """Runs the direct, construction and image-conditioned pipelines.

    Collaborators are injected: the stage executor (which owns the provider
    and cache), an optional admission chain for generation requests, the
    device-profile registry for advisory feasibility checks, and an optional
    usage sink with a ``record_usage(action, metadata)`` method.
    """

    def __init__(
        self,
        executor: StageExecutor,
        admission: Optional[LayeredAdmission] = None,
        profiles: Optional[ProfileRegistry] = None,
        usage_sink: Optional[Any] = None,
        max_pipeline_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.admission = admission
        self.profiles = profiles or ProfileRegistry()
        self.usage_sink = usage_sink
        self.max_pipeline_seconds = max_pipeline_seconds
        self._clock = clock

    # --- Run lifecycle ---

    def start_run(self, mode: GenerationMode, client_identity: Optional[str] = None) -> PipelineRun:
        """Admit a request and open its pipeline run.

        Raises :class:`AdmissionRejected` before any upstream work when the
        client's generation window is exhausted.
        """
        run = PipelineRun(
            mode=mode,
            deadline=self._clock() + self.max_pipeline_seconds,
            clock=self._clock,
        )
        if self.admission is not None and client_identity is not None:
            try:
                self.admission.check(client_identity)
            except AdmissionRejected:
                run.advance(RunState.REJECTED)
                raise
        return run

    def _run_stage(self, run: PipelineRun, spec: StageSpec) -> Dict[str, Any]:
        try:
            run.ensure_time_left(spec)
            return self.executor.execute(spec)
        except StageFailed:
            run.advance(RunState.FAILED)
            raise

    def _render(
        self,
        run: PipelineRun,
        outputs: Mapping[str, Any],
        part_index: int,
        part_name: Optional[str] = None,
    ) -> GenerationResult:
        run.advance(RunState.RENDERING, part_index)
        rendered = self._run_stage(run, build_image_stage(outputs["imagePrompt"]))
        run.advance(RunState.COMPLETED, part_index)
        return GenerationResult(
            model_code=outputs["scadCode"],
            preview_image=rendered["imageUrl"],
            vector_profile=normalize_vector_profile(outputs.get("svgCode")),
            part_name=part_name,
        )

    def _synthesize_and_render(
        self,
        run: PipelineRun,
        prompt_text: str,
        dimensions: Optional[Dimensions],
        colors: Sequence[str],
        part_index: int = 0,
        part_name: Optional[str] = None,
    ) -> GenerationResult:
        run.advance(RunState.SYNTHESIZING, part_index)
        outputs = self._run_stage(run, build_code_stage(prompt_text, dimensions, colors))
        return self._render(run, outputs, part_index, part_name)

    # --- Public pipelines ---

    def generate_direct(
        self,
        request: DesignRequest,
        client_identity: Optional[str] = None,
        run: Optional[PipelineRun] = None,
    ) -> GenerationResult:
        """Synthesize model code for the whole prompt, then render its preview."""
        run = run or self.start_run(GenerationMode.DIRECT, client_identity)
        result = self._synthesize_and_render(
            run, request.prompt_text, request.dimensions, request.color_palette
        )
        self._record_usage(
            "generate_model",
            {
                "prompt": request.prompt_text,
                "has_dimensions": request.dimensions is not None,
                "color_count": len(request.color_palette),
            },
        )
        return result

    def generate_construction_plan(
        self,
        request: DesignRequest,
        client_identity: Optional[str] = None,
        run: Optional[PipelineRun] = None,
    ) -> List[ConstructionPart]:
        """Decompose the prompt into an ordered, non-empty list of parts.

        A provider response with no parts or malformed entries fails the whole
        plan; no partial plan is ever returned.
        """
        run = run or self.start_run(GenerationMode.CONSTRUCTION, client_identity)
        run.advance(RunState.DECOMPOSING)
        spec = build_plan_stage(request.prompt_text, request.color_palette)
        raw_plan = self._run_stage(run, spec)

        try:
            parts = [
                ConstructionPart(
                    part_name=entry["partName"],
                    sub_prompt=entry["prompt"],
                    assigned_color=entry.get("color") or "",
                )
                for entry in raw_plan["parts"]
            ]
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Malformed construction plan: %s", exc)
            run.advance(RunState.FAILED)
            raise spec.failure() from exc

        if not parts:
            logger.error("Construction plan contained no parts")
            run.advance(RunState.FAILED)
            raise spec.failure()

        logger.info("🏗️ Construction plan with %d part(s)", len(parts))
        self._record_usage(
            "generate_construction_plan",
            {"prompt": request.prompt_text, "part_count": len(parts)},
        )
        return parts

    def iter_construction_parts(
        self,
        plan: Sequence[ConstructionPart],
        dimensions: Optional[Dimensions] = None,
        client_identity: Optional[str] = None,
        run: Optional[PipelineRun] = None,
    ) -> Iterator[GenerationResult]:
        """Yield one result per part, in plan order, as each finishes.

        Admission happens eagerly, before the iterator is returned. A stage
        failure on part ``i`` is raised from the iterator tagged with the part;
        results already yielded stay valid and later parts are never attempted.
        """
        if not plan:
            raise ValidationFailed(
                [{"field": "plan", "message": "Construction plan must contain at least one part"}]
            )
        run = run or self.start_run(GenerationMode.CONSTRUCTION, client_identity)
        return self._iter_parts(run, list(plan), dimensions)

    def _iter_parts(
        self,
        run: PipelineRun,
        plan: List[ConstructionPart],
        dimensions: Optional[Dimensions],
    ) -> Iterator[GenerationResult]:
        for index, part in enumerate(plan):
            colors = [part.assigned_color] if part.assigned_color else []
            logger.info("🔧 Generating part %d/%d: %s", index + 1, len(plan), part.part_name)
            try:
                result = self._synthesize_and_render(
                    run,
                    part.sub_prompt,
                    dimensions,
                    colors,
                    part_index=index,
                    part_name=part.part_name,
                )
            except StageFailed as exc:
                logger.error("Part %d (%s) failed: %s", index + 1, part.part_name, exc.message)
                raise exc.for_part(part.part_name, index) from exc
            self._record_usage(
                "generate_construction_part",
                {"part_name": part.part_name, "part_index": index},
            )
            yield result

    def generate_construction_parts(
        self,
        plan: Sequence[ConstructionPart],
        dimensions: Optional[Dimensions] = None,
        on_result: Optional[Callable[[GenerationResult], None]] = None,
        client_identity: Optional[str] = None,
        run: Optional[PipelineRun] = None,
    ) -> ConstructionOutcome:
        """Generate every part in order, keeping completed parts if a later one fails."""
        outcome = ConstructionOutcome()
        parts = list(plan)
        try:
            for result in self.iter_construction_parts(parts, dimensions, client_identity, run):
                outcome.results.append(result)
                if on_result is not None:
                    on_result(result)
        except StageFailed as exc:
            outcome.error = exc
            outcome.failed_index = exc.part_index
            if exc.part_index is not None:
                outcome.failed_part = parts[exc.part_index]
        return outcome

    def generate_from_image(
        self,
        request: DesignRequest,
        client_identity: Optional[str] = None,
        run: Optional[PipelineRun] = None,
    ) -> GenerationResult:
        """Reconstruct a model from the source image, then render its preview."""
        if request.source_image is None:
            raise ValidationFailed(
                [{"field": "source_image", "message": "An image is required for image-to-3D conversion"}]
            )
        run = run or self.start_run(GenerationMode.IMAGE_CONDITIONED, client_identity)
        run.advance(RunState.SYNTHESIZING, 0)
        analysis = self._run_stage(
            run,
            build_vision_stage(
                request.source_image,
                request.prompt_text,
                request.dimensions,
                request.color_palette,
            ),
        )
        if analysis.get("analysisNote"):
            logger.info("🔍 Image analysis: %s", analysis["analysisNote"])
        result = self._render(run, analysis, 0)
        self._record_usage(
            "generate_from_image",
            {
                "prompt": request.prompt_text,
                "mime_type": request.source_image.mime_type,
                "has_dimensions": request.dimensions is not None,
            },
        )
        return result

    def generate(
        self, request: DesignRequest, client_identity: Optional[str] = None
    ) -> List[GenerationResult]:
        """Run the pipeline selected by ``request.mode``.

        A construction part failure is raised as the part's :class:`StageFailed`,
        with the parts finished before it on ``completed_results``.
        """
        run = self.start_run(request.mode, client_identity)
        if request.mode is GenerationMode.IMAGE_CONDITIONED:
            return [self.generate_from_image(request, run=run)]
        if request.mode is GenerationMode.DIRECT:
            return [self.generate_direct(request, run=run)]

        plan = self.generate_construction_plan(request, run=run)
        outcome = self.generate_construction_parts(plan, request.dimensions, run=run)
        if outcome.error is not None:
            logger.warning(
                "Construction stopped at part %s after %d completed part(s)",
                outcome.failed_index,
                len(outcome.results),
            )
            outcome.error.completed_results = list(outcome.results)
            raise outcome.error
        return outcome.results

    # --- Advisory checks ---

    def check_feasibility(
        self, request: DesignRequest, profile_id: Optional[str]
    ) -> Optional[FeasibilityReport]:
        """Non-blocking dimension check of ``request`` against a device profile."""
        if not profile_id or request.dimensions is None or not request.dimensions.is_complete:
            return None
        profile = self.profiles.lookup(profile_id)
        if profile is None:
            logger.warning("Unknown device profile %s; skipping feasibility check", profile_id)
            return None
        report = check_feasibility(request.dimensions.width, request.dimensions.height, profile)
        if not report.valid:
            logger.info("📐 Feasibility issues for %s: %s", profile_id, "; ".join(report.errors))
        return report

    def _record_usage(self, action: str, metadata: Mapping[str, Any]) -> None:
        if self.usage_sink is None:
            return
        try:
            self.usage_sink.record_usage(action, metadata)
        except Exception as exc:
            logger.warning("Failed to record usage for %s: %s", action, exc)


def normalize_vector_profile(svg_code: Optional[str]) -> Optional[str]:
    """An empty or whitespace-only SVG means no cutting profile."""
    if svg_code is None or not svg_code.strip():
        return None
    return svg_code
