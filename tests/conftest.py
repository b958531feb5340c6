import base64
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from makersai.cache import MemoryCacheStore  # noqa: E402
from makersai.config import Settings  # noqa: E402
from makersai.orchestrator import Orchestrator  # noqa: E402
from makersai.stages import StageExecutor, StageKind  # noqa: E402


class ManualClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def default_response(spec):
    if spec.stage is StageKind.DECOMPOSITION:
        return {
            "parts": [
                {"partName": "Base", "prompt": "a flat base plate", "color": "red"},
                {"partName": "Lid", "prompt": "a snap-fit lid", "color": "blue"},
            ]
        }
    if spec.stage is StageKind.IMAGE_SYNTHESIS:
        encoded = base64.b64encode(spec.user_text.encode("utf-8")).decode("ascii")
        return {"imageUrl": f"data:image/png;base64,{encoded}"}
    outputs = {
        "scadCode": f"// {spec.user_text}\ncube([10, 10, 10]);",
        "imagePrompt": f"render of {spec.user_text}",
        "svgCode": "<svg></svg>",
    }
    if spec.stage is StageKind.VISION_SYNTHESIS:
        outputs["analysisNote"] = "a coffee mug"
    return outputs


class FakeProvider:
    """Scripted inference provider.

    Each ``infer`` call pops the next scripted outcome for its stage (a dict, an
    exception to raise or a callable taking the stage spec); without a script it
    answers with ``default_response``. ``fail_when`` raises for matching specs.
    """

    def __init__(self, fail_when=None):
        self.calls = []
        self.scripts = {}
        self.fail_when = fail_when

    def script(self, stage, *outcomes):
        self.scripts.setdefault(stage, []).extend(outcomes)

    def infer(self, spec):
        self.calls.append(spec)
        if self.fail_when is not None and self.fail_when(spec):
            raise RuntimeError(f"upstream error during {spec.stage.value}")
        queue = self.scripts.get(spec.stage)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if callable(outcome):
                return outcome(spec)
            return outcome
        return default_response(spec)

    def stages_called(self):
        return [spec.stage for spec in self.calls]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def cache(clock):
    store = MemoryCacheStore(default_ttl=86400, check_period=0, clock=clock)
    yield store
    store.close()


@pytest.fixture
def executor(provider, cache):
    return StageExecutor(provider, cache)


@pytest.fixture
def orchestrator(executor, clock):
    return Orchestrator(executor, max_pipeline_seconds=900, clock=clock)


@pytest.fixture
def test_settings(tmp_path):
    return Settings.load(
        overrides={
            "storage": {"database_path": ":memory:"},
            "cache": {"cache_dir": str(tmp_path / "cache")},
            "rate_limit": {"max_requests": 10, "window_ms": 60000},
        },
        environ={},
    )
