import pytest

from makersai.admission import AdmissionController, LayeredAdmission
from makersai.designs import (
    ConstructionPart,
    Dimensions,
    GenerationMode,
    parse_design_request,
)
from makersai.errors import AdmissionRejected, StageFailed, ValidationFailed
from makersai.orchestrator import (
    BUDGET_EXCEEDED_MESSAGE,
    Orchestrator,
    PipelineRun,
    RunState,
    normalize_vector_profile,
)
from makersai.stages import StageKind

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def direct_request(prompt="a desk organizer", **extra):
    return parse_design_request({"prompt_text": prompt, **extra})


def three_part_plan():
    return [
        ConstructionPart(part_name="Seat", sub_prompt="first: a square seat", assigned_color="red"),
        ConstructionPart(part_name="Leg", sub_prompt="second: a chair leg", assigned_color="blue"),
        ConstructionPart(part_name="Back", sub_prompt="third: a backrest", assigned_color="green"),
    ]


class RecordingSink:
    def __init__(self):
        self.events = []

    def record_usage(self, action, metadata):
        self.events.append((action, dict(metadata)))


# --- Direct ---


def test_direct_runs_synthesis_then_render(orchestrator, provider):
    result = orchestrator.generate_direct(direct_request(color_palette=["red"]))

    assert provider.stages_called() == [StageKind.CODE_SYNTHESIS, StageKind.IMAGE_SYNTHESIS]
    render_spec = provider.calls[1]
    assert render_spec.user_text.startswith("render of a desk organizer")
    assert result.model_code.startswith("// a desk organizer")
    assert result.preview_image.startswith("data:image/png;base64,")
    assert result.vector_profile == "<svg></svg>"
    assert result.part_name is None


def test_identical_direct_requests_are_served_from_cache(orchestrator, provider):
    first = orchestrator.generate_direct(direct_request())
    second = orchestrator.generate_direct(direct_request("  a desk organizer "))

    assert first == second
    assert len(provider.calls) == 2
    assert orchestrator.executor.cache_hits == 2


def test_render_failure_is_not_cached_but_synthesis_is(orchestrator, provider):
    provider.script(StageKind.IMAGE_SYNTHESIS, RuntimeError("quota"))

    with pytest.raises(StageFailed) as excinfo:
        orchestrator.generate_direct(direct_request())
    assert excinfo.value.stage == "image_synthesis"

    orchestrator.generate_direct(direct_request())
    assert provider.stages_called() == [
        StageKind.CODE_SYNTHESIS,
        StageKind.IMAGE_SYNTHESIS,
        StageKind.IMAGE_SYNTHESIS,
    ]


def test_blank_svg_becomes_no_vector_profile(orchestrator, provider):
    provider.script(
        StageKind.CODE_SYNTHESIS,
        {"scadCode": "cube(1);", "imagePrompt": "a cube", "svgCode": "   "},
    )
    result = orchestrator.generate_direct(direct_request())
    assert result.vector_profile is None


def test_normalize_vector_profile():
    assert normalize_vector_profile(None) is None
    assert normalize_vector_profile("") is None
    assert normalize_vector_profile("<svg/>") == "<svg/>"


# --- Construction ---


def test_construction_plan(orchestrator, provider):
    request = direct_request("a small chair", color_palette=["red", "blue"])
    plan = orchestrator.generate_construction_plan(request)

    assert [part.part_name for part in plan] == ["Base", "Lid"]
    assert plan[0].assigned_color == "red"
    assert provider.stages_called() == [StageKind.DECOMPOSITION]
    assert "red, blue" in provider.calls[0].system_instruction


def test_malformed_plan_entries_fail_the_whole_plan(orchestrator, provider):
    provider.script(
        StageKind.DECOMPOSITION,
        {"parts": [{"partName": "Seat", "prompt": "a seat", "color": "red"}, {"partName": "Leg"}]},
    )
    with pytest.raises(StageFailed) as excinfo:
        orchestrator.generate_construction_plan(direct_request("a small chair"))
    assert excinfo.value.stage == "decomposition"


def test_parts_are_generated_in_order_with_their_color(orchestrator, provider):
    seen = []
    outcome = orchestrator.generate_construction_parts(
        three_part_plan(), Dimensions(width=100, height=100), on_result=seen.append
    )

    assert outcome.succeeded
    assert [r.part_name for r in outcome.results] == ["Seat", "Leg", "Back"]
    assert seen == outcome.results
    assert provider.stages_called() == [
        StageKind.CODE_SYNTHESIS,
        StageKind.IMAGE_SYNTHESIS,
    ] * 3
    code_specs = [spec for spec in provider.calls if spec.stage is StageKind.CODE_SYNTHESIS]
    assert [spec.cache_payload["colors"] for spec in code_specs] == [["red"], ["blue"], ["green"]]
    assert all("100mm x 100mm" in spec.system_instruction for spec in code_specs)


def test_failure_on_part_two_keeps_part_one_and_skips_part_three(orchestrator, provider):
    provider.fail_when = lambda spec: spec.user_text.startswith("second")

    outcome = orchestrator.generate_construction_parts(three_part_plan())

    assert [r.part_name for r in outcome.results] == ["Seat"]
    assert outcome.error is not None
    assert outcome.error.part_name == "Leg"
    assert outcome.error.part_index == 1
    assert outcome.failed_part.part_name == "Leg"
    assert not any(spec.user_text.startswith("third") for spec in provider.calls)


def test_iterator_yields_before_failing(orchestrator, provider):
    provider.fail_when = lambda spec: spec.user_text.startswith("third")
    results = orchestrator.iter_construction_parts(three_part_plan())

    assert next(results).part_name == "Seat"
    assert next(results).part_name == "Leg"
    with pytest.raises(StageFailed) as excinfo:
        next(results)
    assert excinfo.value.part_name == "Back"


def test_empty_plan_is_a_validation_error(orchestrator, provider):
    with pytest.raises(ValidationFailed):
        orchestrator.generate_construction_parts([])
    assert provider.calls == []


def test_generate_raises_part_failure_with_completed_prefix(orchestrator, provider):
    provider.fail_when = lambda spec: spec.user_text == "a snap-fit lid"
    request = direct_request("a box", mode=GenerationMode.CONSTRUCTION)

    with pytest.raises(StageFailed) as excinfo:
        orchestrator.generate(request)

    assert excinfo.value.part_name == "Lid"
    assert excinfo.value.part_index == 1
    assert [r.part_name for r in excinfo.value.completed_results] == ["Base"]


def test_generate_raises_when_no_part_completed(orchestrator, provider):
    provider.fail_when = lambda spec: spec.user_text == "a flat base plate"
    request = direct_request("a box", mode=GenerationMode.CONSTRUCTION)

    with pytest.raises(StageFailed) as excinfo:
        orchestrator.generate(request)
    assert excinfo.value.part_name == "Base"
    assert excinfo.value.completed_results == []


# --- Image-conditioned ---


def test_from_image_runs_vision_then_render(orchestrator, provider):
    request = parse_design_request(
        {
            "mode": GenerationMode.IMAGE_CONDITIONED,
            "source_image": {"data": PNG_BYTES, "mime_type": "image/png"},
            "dimensions": {"width": 50, "height": 40},
        }
    )
    result = orchestrator.generate_from_image(request)

    assert provider.stages_called() == [StageKind.VISION_SYNTHESIS, StageKind.IMAGE_SYNTHESIS]
    vision_spec = provider.calls[0]
    assert vision_spec.user_binary.data == PNG_BYTES
    assert "50mm x 40mm" in vision_spec.system_instruction
    assert result.model_code.startswith("// Convert the object")


def test_generate_dispatches_on_mode(orchestrator, provider):
    request = parse_design_request(
        {
            "mode": GenerationMode.IMAGE_CONDITIONED,
            "prompt_text": "it is a mug",
            "source_image": {"data": PNG_BYTES, "mime_type": "image/png"},
        }
    )
    (result,) = orchestrator.generate(request)
    assert result.model_code == "// it is a mug\ncube([10, 10, 10]);"
    assert provider.stages_called()[0] is StageKind.VISION_SYNTHESIS


# --- Admission, budget, usage ---


def test_rejected_request_makes_no_upstream_call(executor, provider, clock):
    strict = AdmissionController(max_requests=1, window_seconds=60, clock=clock)
    orchestrator = Orchestrator(executor, admission=LayeredAdmission(strict), clock=clock)

    orchestrator.generate_direct(direct_request(), client_identity="10.0.0.1")
    calls_before = len(provider.calls)

    with pytest.raises(AdmissionRejected) as excinfo:
        orchestrator.generate_direct(direct_request("another thing"), client_identity="10.0.0.1")

    assert excinfo.value.retry_after_seconds == 60
    assert len(provider.calls) == calls_before


def test_budget_exhaustion_fails_before_next_stage(executor, provider, clock):
    orchestrator = Orchestrator(executor, max_pipeline_seconds=30, clock=clock)

    def slow_synthesis(spec):
        clock.advance(31)
        return {"scadCode": "cube(1);", "imagePrompt": "a cube", "svgCode": ""}

    provider.script(StageKind.CODE_SYNTHESIS, slow_synthesis)

    with pytest.raises(StageFailed) as excinfo:
        orchestrator.generate_direct(direct_request())

    assert excinfo.value.message == BUDGET_EXCEEDED_MESSAGE
    assert excinfo.value.stage == "image_synthesis"
    assert provider.stages_called() == [StageKind.CODE_SYNTHESIS]


def test_usage_events_are_recorded(executor, clock):
    sink = RecordingSink()
    orchestrator = Orchestrator(executor, usage_sink=sink, clock=clock)

    orchestrator.generate_direct(direct_request(color_palette=["red"]))
    plan = orchestrator.generate_construction_plan(direct_request("a box"))
    orchestrator.generate_construction_parts(plan)

    assert [action for action, _ in sink.events] == [
        "generate_model",
        "generate_construction_plan",
        "generate_construction_part",
        "generate_construction_part",
    ]
    assert sink.events[0][1]["color_count"] == 1
    assert sink.events[1][1]["part_count"] == 2


def test_broken_usage_sink_does_not_fail_generation(executor, clock):
    class BrokenSink:
        def record_usage(self, action, metadata):
            raise RuntimeError("database is locked")

    orchestrator = Orchestrator(executor, usage_sink=BrokenSink(), clock=clock)
    assert orchestrator.generate_direct(direct_request()).model_code


def test_feasibility_check_is_advisory(orchestrator):
    request = direct_request(dimensions={"width": 500, "height": 100})

    report = orchestrator.check_feasibility(request, "anycubic-kobra-3-combo")
    assert not report.valid
    assert orchestrator.check_feasibility(request, "unknown-printer") is None
    assert orchestrator.check_feasibility(direct_request(), "anycubic-kobra-3-combo") is None

    width_only = direct_request(dimensions={"width": 500})
    assert orchestrator.check_feasibility(width_only, "anycubic-kobra-3-combo") is None


# --- Run state machine ---


def test_run_history_for_direct_generation(orchestrator, clock):
    run = orchestrator.start_run(GenerationMode.DIRECT)
    orchestrator.generate_direct(direct_request(), run=run)

    assert [state for state, _ in run.history] == [
        RunState.ADMITTED,
        RunState.SYNTHESIZING,
        RunState.RENDERING,
        RunState.COMPLETED,
    ]


def test_run_history_for_failed_part(orchestrator, provider):
    provider.fail_when = lambda spec: spec.user_text.startswith("second")
    run = orchestrator.start_run(GenerationMode.CONSTRUCTION)
    orchestrator.generate_construction_parts(three_part_plan(), run=run)

    assert run.state is RunState.FAILED
    assert run.history[-1] == (RunState.FAILED, 1)
    assert run.is_terminal


def test_terminal_states_accept_no_transitions(clock):
    run = PipelineRun(mode=GenerationMode.DIRECT, deadline=clock() + 10, clock=clock)
    run.advance(RunState.REJECTED)

    with pytest.raises(RuntimeError):
        run.advance(RunState.SYNTHESIZING)


def test_illegal_transition_is_rejected(clock):
    run = PipelineRun(mode=GenerationMode.DIRECT, deadline=clock() + 10, clock=clock)
    with pytest.raises(RuntimeError):
        run.advance(RunState.RENDERING)
