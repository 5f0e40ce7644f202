"""
Parallel exploration and complexity scoring.

A. Output parsing: structured block, bare JSON, path-scraping fallback
B. Merging lane results
C. ParallelExplorer with a scripted transport: partial failure, all
   lanes failing, lane timeout, missing target directory
D. Complexity factors, score and model tier
"""

import asyncio
import json

import pytest

from flightpath_complexity import (
    compute_complexity_factors, compute_complexity_score, score_requirement, select_model_tier,
)
from flightpath_config import default_config
from flightpath_errors import AllExplorersFailedError, ConfigurationError
from flightpath_explorer import (
    PARSE_FAILURE_NOTE, ParallelExplorer, build_lane_prompt, merge_explorer_results,
    parse_explorer_output,
)
from flightpath_models import (
    ComplexityFactors, ExplorationDepth, ExplorerResult, ExplorerType, MergedExplorationContext,
    ModelTier, Pattern, RelatedFiles, Requirement,
)
from flightpath_transport import AgentTransport, AssistantEvent, ResultEvent


def _req(**kwargs):
    base = dict(id="r1", title="Add login", description="Users can log in with email",
                acceptance_criteria=["shows error on bad password"])
    base.update(kwargs)
    return Requirement(**base)


def _lane_reply(lane, templates=(), patterns=(), notes=()):
    body = {"type": lane, "patterns": [{"name": p, "files": []} for p in patterns],
            "relatedFiles": {"templates": list(templates), "types": [], "tests": []},
            "notes": list(notes)}
    return f"Here is what I found:\n```json\n{json.dumps(body)}\n```"


class ScriptedTransport(AgentTransport):
    """Answers each explorer lane from a per-lane script: a reply string, an exception, or a delay."""

    def __init__(self, script):
        self.script = script
        self.models = []
        self.closed_sessions = []

    async def stream(self, prompt, *, session_id, model, cwd, hooks, max_turns, tools=()):
        self.models.append(model)
        lane = next(name for name in ("pattern", "api", "test") if f'"type": "{name}"' in prompt)
        action = self.script[lane]
        if isinstance(action, Exception):
            raise action
        if isinstance(action, float):
            await asyncio.sleep(action)
            action = _lane_reply(lane)
        yield AssistantEvent(text=action)
        yield ResultEvent(subtype="success", result=action, session_id=f"s-{lane}", num_turns=1)

    async def close_session(self, session_id):
        self.closed_sessions.append(session_id)


def _explorer(script, timeout=5.0):
    config = default_config()
    config.explorer.lane_timeout_seconds = timeout
    transport = ScriptedTransport(script)
    return ParallelExplorer(transport, config), transport


# ============================================================
# A. PARSING
# ============================================================

def test_parse_fenced_json():
    result = parse_explorer_output(ExplorerType.PATTERN,
                                   _lane_reply("pattern", templates=["src/a.ts"], patterns=["FormComponent"]))
    assert not result.failed
    assert result.related_files.templates == ["src/a.ts"]
    assert result.patterns[0].name == "FormComponent"


def test_parse_bare_json():
    text = 'Result: {"type": "api", "apiEndpoints": ["GET /users"]} done'
    result = parse_explorer_output(ExplorerType.API, text)
    assert result.api_endpoints == ["GET /users"]
    assert PARSE_FAILURE_NOTE not in result.notes


def test_parse_fallback_scrapes_paths_and_caps():
    text = "Looked at " + ", ".join(f"src/mod{i}.py" for i in range(12)) + " and src/mod0.py again"
    result = parse_explorer_output(ExplorerType.TEST, text, fallback_cap=10)
    assert result.notes == [PARSE_FAILURE_NOTE]
    assert result.related_files.templates == [f"src/mod{i}.py" for i in range(10)]


def test_parse_fallback_on_empty_reply():
    result = parse_explorer_output(ExplorerType.TEST, "")
    assert result.related_files.templates == []
    assert result.notes == [PARSE_FAILURE_NOTE]


def test_lane_prompt_names_lane_and_criteria():
    prompt = build_lane_prompt(_req(), ExplorerType.API)
    assert '"type": "api"' in prompt
    assert "shows error on bad password" in prompt


# ============================================================
# B. MERGING
# ============================================================

def _results():
    return [
        ExplorerResult(type=ExplorerType.PATTERN,
                       patterns=[Pattern(name="LoginComponent"), Pattern(name="useForm")],
                       related_files=RelatedFiles(templates=["src/a.tsx", "src/b.tsx"]),
                       notes=["pattern note"]),
        ExplorerResult(type=ExplorerType.API, patterns=[Pattern(name="useForm")],
                       related_files=RelatedFiles(templates=["src/b.tsx"], types=["src/types.ts"]),
                       api_endpoints=["POST /login"]),
        ExplorerResult(type=ExplorerType.TEST, error="timeout", error_type="transient",
                       related_files=RelatedFiles(tests=["ignored.test.ts"])),
    ]


def test_merge_dedupes_and_skips_failed_lanes():
    merged = merge_explorer_results(_results())
    assert [p.name for p in merged.patterns] == ["LoginComponent", "useForm"]
    assert merged.related_files.templates == ["src/a.tsx", "src/b.tsx"]
    assert merged.related_files.tests == []
    assert merged.api_endpoints == ["POST /login"]
    assert merged.existing_components == ["LoginComponent"]


def test_merge_content_does_not_depend_on_lane_order():
    forward = merge_explorer_results(_results())
    backward = merge_explorer_results(list(reversed(_results())))
    assert {p.name for p in forward.patterns} == {p.name for p in backward.patterns}
    assert set(forward.related_files.templates) == set(backward.related_files.templates)
    assert set(forward.notes) == set(backward.notes)


# ============================================================
# C. PARALLEL EXPLORER
# ============================================================

@pytest.mark.asyncio
async def test_explore_survives_one_failed_lane(tmp_path):
    explorer, transport = _explorer({
        "pattern": _lane_reply("pattern", templates=["src/a/x.ts"], patterns=["ButtonComponent"]),
        "api": RuntimeError("ECONNRESET"),
        "test": _lane_reply("test", notes=["uses pytest"]),
    })
    events = []
    result = await explorer.explore(_req(), str(tmp_path), "medium", storage_root=str(tmp_path / ".claude"),
                                    storage_id="sid", emit=lambda t, d: events.append((t.value, d)))

    assert [lane.failed for lane in result.lanes] == [False, True, False]
    assert result.lanes[1].error_type == "transient"
    assert result.context.existing_components == ["ButtonComponent"]
    assert result.context.notes == ["uses pytest"]
    # lanes always run on the cheapest tier
    assert set(transport.models) == {explorer.config.model_for_tier(ModelTier.HAIKU).model_id}

    types = [t for t, _ in events]
    assert types[0] == "parallel_exploration_started"
    assert types.count("explorer_started") == 3
    assert "explorer_error" in types
    assert types[-2:] == ["model_selected", "parallel_exploration_completed"]
    assert events[-1][1]["failed"] == 1


@pytest.mark.asyncio
async def test_explore_all_lanes_failing_raises(tmp_path):
    explorer, _ = _explorer({
        "pattern": RuntimeError("boom"),
        "api": RuntimeError("ENOENT: missing"),
        "test": RuntimeError("429 rate limit"),
    })
    with pytest.raises(AllExplorersFailedError) as info:
        await explorer.explore(_req(), str(tmp_path), storage_root=str(tmp_path), storage_id="sid")
    error_types = {f["type"]: f["errorType"] for f in info.value.failures}
    assert error_types == {"pattern": "unknown", "api": "configuration", "test": "transient"}


@pytest.mark.asyncio
async def test_slow_lane_times_out_without_blocking_others(tmp_path):
    explorer, transport = _explorer({
        "pattern": _lane_reply("pattern", templates=["src/x.ts"]),
        "api": 0.3,
        "test": _lane_reply("test"),
    }, timeout=0.05)
    result = await explorer.explore(_req(), str(tmp_path), storage_root=str(tmp_path), storage_id="sid")
    api_lane = result.lanes[1]
    assert api_lane.failed
    assert "timeout after" in api_lane.error
    assert api_lane.error_type == "transient"
    assert not result.lanes[0].failed
    assert "s-api" not in transport.closed_sessions
    # let the abandoned lane finish before the loop closes
    await asyncio.sleep(0.35)
    assert sorted(transport.closed_sessions) == ["s-api", "s-pattern", "s-test"]


@pytest.mark.asyncio
async def test_missing_target_dir_is_configuration_error(tmp_path):
    explorer, transport = _explorer({"pattern": "", "api": "", "test": ""})
    with pytest.raises(ConfigurationError):
        await explorer.explore(_req(), str(tmp_path / "nope"), storage_root=str(tmp_path), storage_id="sid")
    assert transport.models == []


@pytest.mark.asyncio
async def test_depth_quick_selects_cheapest_tier(tmp_path):
    explorer, _ = _explorer({lane: _lane_reply(lane) for lane in ("pattern", "api", "test")})
    result = await explorer.explore(_req(description="x" * 2000, platform="both"), str(tmp_path),
                                    ExplorationDepth.QUICK, storage_root=str(tmp_path), storage_id="sid")
    assert result.model_tier is ModelTier.HAIKU
    assert result.complexity_score > 30


# ============================================================
# D. COMPLEXITY
# ============================================================

def test_complexity_factors():
    context = MergedExplorationContext(related_files=RelatedFiles(
        templates=["src/a/x.ts", "src/b/y.ts"], types=["src/a/t.ts", "top.ts"],
        tests=["t1", "t2", "t3"]))
    factors = compute_complexity_factors(_req(platform="mobile"), context)
    assert factors.estimated_files == 6
    assert factors.cross_module == 1
    assert factors.is_novel is False
    assert factors.platform == "mobile"


def test_no_templates_means_novel():
    factors = compute_complexity_factors(_req(), MergedExplorationContext())
    assert factors.is_novel
    assert factors.platform == "backend"


def test_score_grows_with_text_and_is_clamped():
    small = compute_complexity_score(ComplexityFactors(text_length=50))
    large = compute_complexity_score(ComplexityFactors(text_length=400))
    assert small < large
    huge = ComplexityFactors(text_length=10 ** 6, estimated_files=100, platform="both",
                             is_novel=True, cross_module=50)
    assert compute_complexity_score(huge) == 100
    assert compute_complexity_score(ComplexityFactors()) == 0


@pytest.mark.parametrize("field, low, high", [
    ("estimated_files", 1, 4),
    ("platform", "backend", "mobile"),
    ("platform", "mobile", "both"),
    ("is_novel", False, True),
    ("cross_module", 0, 3),
])
def test_score_is_monotonic_in_each_factor(field, low, high):
    base = dict(text_length=120, estimated_files=2, platform="backend", is_novel=False, cross_module=1)
    lower = compute_complexity_score(ComplexityFactors(**{**base, field: low}))
    higher = compute_complexity_score(ComplexityFactors(**{**base, field: high}))
    assert lower < higher


@pytest.mark.parametrize("depth, score, tier", [
    ("quick", 95, ModelTier.HAIKU),
    ("thorough", 0, ModelTier.OPUS),
    ("medium", 29, ModelTier.HAIKU),
    ("medium", 30, ModelTier.SONNET),
    ("medium", 69, ModelTier.SONNET),
    ("medium", 70, ModelTier.OPUS),
    (ExplorationDepth.MEDIUM, 100, ModelTier.OPUS),
])
def test_select_model_tier(depth, score, tier):
    assert select_model_tier(depth, score) is tier


def test_score_requirement_bundles_all_three():
    factors, score, tier = score_requirement(_req(), MergedExplorationContext(), "medium")
    assert factors.is_novel
    assert score == compute_complexity_score(factors)
    assert tier is select_model_tier("medium", score)
