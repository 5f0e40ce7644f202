"""
Orchestrator end to end with a scripted transport.

A. Test verdict evaluation (fail-closed)
B. Requirement loop: priority order, retry cap, configuration short-circuit
C. Control flags: abort, pause on agent question, resume with an answer
"""

import pytest

from flightpath_config import default_config
from flightpath_errors import FlightpathError
from flightpath_models import EpicStatus, MergedExplorationContext, PipelineStatus, RequirementStatus
from flightpath_orchestrator import (
    CONFIG_FAILURE_REASON, Orchestrator, build_plan_prompt, evaluate_test_verdict,
    extract_failure_reason,
)
from flightpath_requirements import parse_feature_spec
from flightpath_store import PipelineStore
from flightpath_transport import AgentTransport, AssistantEvent, ResultEvent, ToolUse

PHASE_MARKERS = (
    ("plan", "Write an implementation plan"),
    ("execute", "Implement the plan now"),
    ("test", "Verify the implementation"),
)


def _kind(prompt):
    if '"type": "' in prompt and "Explore the codebase" in prompt:
        return "explore"
    for kind, marker in PHASE_MARKERS:
        if marker in prompt:
            return kind
    return "answer"


class PipelineTransport(AgentTransport):
    """Answers by phase. A reply is a string, an exception, a list of items, or a callable returning one."""

    def __init__(self, **replies):
        self.replies = {"explore": "nothing structured here", "plan": "1. edit src/app.py",
                        "execute": "Implemented.", "test": "VERDICT: PASS", "answer": "Noted."}
        self.replies.update(replies)
        self.calls = []

    def kinds(self):
        return [kind for kind, _ in self.calls if kind != "explore"]

    async def stream(self, prompt, *, session_id, model, cwd, hooks, max_turns, tools=()):
        kind = _kind(prompt)
        self.calls.append((kind, prompt))
        reply = self.replies[kind]
        if callable(reply):
            reply = reply(prompt)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            reply = [AssistantEvent(text=reply),
                     ResultEvent(result=reply, session_id=f"{kind}-{len(self.calls)}", num_turns=1)]
        for item in reply:
            if isinstance(item, ToolUse):
                decision = await hooks.before(item)
                if not decision.denied:
                    await hooks.after(item, decision.tool_result or "ok")
            else:
                yield item


async def _no_sleep(seconds):
    return None


def _spec(*requirements):
    return parse_feature_spec({
        "featureName": "Shop",
        "requirements": list(requirements) or [{"id": "r1", "title": "Cart", "epicId": "e1"}],
        "epics": [{"id": "e1", "title": "Checkout"}],
    })


@pytest.fixture
def setup(tmp_path):
    workdir = tmp_path / "app"
    workdir.mkdir()

    def make(transport, spec=None, max_retries=3, working_dir=None):
        config = default_config()
        config.max_retries = max_retries
        store = PipelineStore(tmp_path / "store")
        orchestrator = Orchestrator(config, store, transport, sleep=_no_sleep)
        pipeline = orchestrator.start_pipeline(spec or _spec(), working_dir or workdir)
        return orchestrator, store, pipeline

    return make


def _types(store, pipeline_id):
    return [e.type for e in store.get_events(pipeline_id)]


# ============================================================
# A. VERDICTS
# ============================================================

def test_explicit_pass_verdict():
    verdict = evaluate_test_verdict("Checked everything.\nVERDICT: PASS")
    assert verdict.passed and verdict.confidence == "explicit"


def test_explicit_fail_beats_success_phrases():
    verdict = evaluate_test_verdict("All tests passed locally but\nVERDICT: FAIL\nFailed: button missing")
    assert not verdict.passed
    assert verdict.reason == "button missing"


def test_failure_phrase_beats_success_phrase():
    assert not evaluate_test_verdict("Tests passed for login, but test failed for logout").passed


def test_success_phrase_alone_passes():
    assert evaluate_test_verdict("Implementation verified against all criteria.").passed


def test_no_marker_fails_closed():
    verdict = evaluate_test_verdict("I looked around and it seems fine.")
    assert verdict.passed is False
    assert verdict.confidence == "unknown"


def test_failure_reason_fallback():
    assert extract_failure_reason("nothing useful") == "Unknown failure reason"


def test_plan_prompt_carries_user_answers():
    spec = _spec()
    prompt = build_plan_prompt(spec.requirements[0], MergedExplorationContext(), ["Use JWT"])
    assert "## Answers from the user\n- Use JWT" in prompt


# ============================================================
# B. REQUIREMENT LOOP
# ============================================================

@pytest.mark.asyncio
async def test_requirements_run_in_priority_order(setup):
    transport = PipelineTransport()
    spec = _spec({"id": "a", "title": "A", "priority": 3},
                 {"id": "b", "title": "B", "priority": "critical"},
                 {"id": "c", "title": "C", "priority": 2})
    orchestrator, store, pipeline = setup(transport, spec)

    result = await orchestrator.run(pipeline.id)

    started = [e.data["requirementId"] for e in store.get_events(pipeline.id)
               if e.type == "requirement_started"]
    assert started == ["b", "c", "a"]
    assert result.status is PipelineStatus.COMPLETED
    assert all(r.status is RequirementStatus.COMPLETED for r in result.requirements)
    assert transport.kinds() == ["plan", "execute", "test"] * 3
    done = [e for e in store.get_events(pipeline.id) if e.type == "pipeline_completed"][0]
    assert done.data == {"totalRequirements": 3, "completed": 3, "failed": 0}


@pytest.mark.asyncio
async def test_single_requirement_event_sequence_and_artifacts(setup):
    orchestrator, store, pipeline = setup(PipelineTransport())
    result = await orchestrator.run(pipeline.id)

    phases = [t for t in _types(store, pipeline.id) if t.endswith(("_started", "_completed"))
              and not t.startswith(("explorer_", "tool_", "parallel_"))]
    assert phases == [
        "qa_started", "requirement_started",
        "exploring_started", "exploring_completed",
        "planning_started", "planning_completed",
        "executing_started", "executing_completed",
        "testing_started", "testing_completed",
        "requirement_completed", "pipeline_completed",
    ]
    assert {a.type for a in result.artifacts} == {"plan", "test_result"}
    assert result.epics[0].status is EpicStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_tests_retry_up_to_cap(setup):
    transport = PipelineTransport(test="VERDICT: FAIL\nFailed: submit button missing")
    orchestrator, store, pipeline = setup(transport, max_retries=3)

    result = await orchestrator.run(pipeline.id)

    assert transport.kinds().count("test") == 3
    types = _types(store, pipeline.id)
    assert types.count("retry_started") == 2
    assert types.count("test_failed") == 3
    failed = [e for e in store.get_events(pipeline.id) if e.type == "requirement_failed"][0]
    assert failed.data["reason"] == "Max retries exceeded"
    assert result.requirement("r1").status is RequirementStatus.FAILED
    assert result.status is PipelineStatus.COMPLETED
    assert result.epics[0].status is EpicStatus.PARTIAL


@pytest.mark.asyncio
async def test_non_configuration_errors_spend_retries(setup):
    transport = PipelineTransport(plan=RuntimeError("Anthropic API unauthorized (401)"))
    orchestrator, store, pipeline = setup(transport, max_retries=2)
    result = await orchestrator.run(pipeline.id)
    assert transport.kinds() == ["plan", "plan"]
    assert result.requirement("r1").status is RequirementStatus.FAILED
    assert _types(store, pipeline.id).count("retry_started") == 1


@pytest.mark.asyncio
async def test_configuration_error_fails_without_retry(setup, tmp_path):
    transport = PipelineTransport()
    spec = _spec({"id": "r1", "title": "A"}, {"id": "r2", "title": "B"})
    orchestrator, store, pipeline = setup(transport, spec, working_dir=tmp_path / "missing")

    result = await orchestrator.run(pipeline.id)

    assert transport.calls == []
    types = _types(store, pipeline.id)
    assert "retry_started" not in types
    reasons = [e.data["reason"] for e in store.get_events(pipeline.id) if e.type == "requirement_failed"]
    assert reasons == [CONFIG_FAILURE_REASON, CONFIG_FAILURE_REASON]
    assert result.status is PipelineStatus.COMPLETED
    assert all(r.status is RequirementStatus.FAILED for r in result.requirements)


@pytest.mark.asyncio
async def test_unknown_verdict_counts_as_failure(setup):
    transport = PipelineTransport(test="I ran some things.")
    orchestrator, store, pipeline = setup(transport, max_retries=1)
    result = await orchestrator.run(pipeline.id)
    failed = [e for e in store.get_events(pipeline.id) if e.type == "test_failed"][0]
    assert failed.data["confidence"] == "unknown"
    assert result.requirement("r1").status is RequirementStatus.FAILED


@pytest.mark.asyncio
async def test_terminal_pipeline_is_not_rerun(setup):
    transport = PipelineTransport()
    orchestrator, store, pipeline = setup(transport)
    await orchestrator.run(pipeline.id)
    calls = len(transport.calls)
    again = await orchestrator.run(pipeline.id)
    assert again.status is PipelineStatus.COMPLETED
    assert len(transport.calls) == calls


# ============================================================
# C. CONTROL FLAGS
# ============================================================

@pytest.mark.asyncio
async def test_abort_stops_at_next_boundary(setup):
    holder = {}

    def plan_then_abort(prompt):
        holder["orchestrator"].request_abort(holder["pipeline_id"])
        return "plan"

    transport = PipelineTransport(plan=plan_then_abort)
    spec = _spec({"id": "r1", "title": "A"}, {"id": "r2", "title": "B"})
    orchestrator, store, pipeline = setup(transport, spec)
    holder.update(orchestrator=orchestrator, pipeline_id=pipeline.id)

    result = await orchestrator.run(pipeline.id)

    assert result.status is PipelineStatus.ABORTED
    assert transport.kinds() == ["plan"]
    assert result.requirement("r1").status is RequirementStatus.IN_PROGRESS
    assert result.requirement("r2").status is RequirementStatus.PENDING
    assert _types(store, pipeline.id)[-1] == "aborted"


@pytest.mark.asyncio
async def test_abort_from_another_process_is_sampled(setup, tmp_path):
    holder = {}

    def execute_then_abort(prompt):
        PipelineStore(tmp_path / "store").request_abort(holder["pipeline_id"])
        return "done"

    transport = PipelineTransport(execute=execute_then_abort)
    orchestrator, store, pipeline = setup(transport)
    holder["pipeline_id"] = pipeline.id
    result = await orchestrator.run(pipeline.id)
    assert result.status is PipelineStatus.ABORTED
    assert "test" not in transport.kinds()


@pytest.mark.asyncio
async def test_question_pauses_and_answer_resumes(setup):
    asked = {"count": 0}
    question = ToolUse("q1", "AskUserQuestion", {"questions": [
        {"header": "Auth", "question": "JWT or sessions?", "options": ["JWT", "Sessions"]}]})

    def plan(prompt):
        asked["count"] += 1
        if asked["count"] == 1:
            return [question, AssistantEvent(text="Waiting for the user."),
                    ResultEvent(result="Waiting for the user.", session_id="plan-session", num_turns=1)]
        return "plan using JWT"

    transport = PipelineTransport(plan=plan)
    orchestrator, store, pipeline = setup(transport)

    paused = await orchestrator.run(pipeline.id)

    assert paused.status is PipelineStatus.PAUSED
    assert paused.awaiting_user_input is True
    assert paused.session_id == "plan-session"
    assert paused.requirement("r1").status is RequirementStatus.IN_PROGRESS
    requested = [e for e in store.get_events(pipeline.id) if e.type == "user_input_requested"][0]
    assert requested.data["questions"][0]["question"] == "JWT or sessions?"
    assert transport.kinds() == ["plan"]

    finished = await orchestrator.resume_pipeline(pipeline.id, answer="Use JWT")

    assert finished.status is PipelineStatus.COMPLETED
    assert finished.user_answers == ["Use JWT"]
    assert finished.requirement("r1").status is RequirementStatus.COMPLETED
    assert transport.kinds() == ["plan", "answer", "plan", "execute", "test"]
    assert transport.calls[[k for k, _ in transport.calls].index("answer")][1] == "Use JWT"
    second_plan = [p for k, p in transport.calls if k == "plan"][1]
    assert "- Use JWT" in second_plan
    assert "resumed" in _types(store, pipeline.id)


@pytest.mark.asyncio
async def test_operator_pause_and_plain_resume(setup):
    holder = {}

    def execute_then_pause(prompt):
        holder["orchestrator"].request_pause(holder["pipeline_id"])
        return "done"

    transport = PipelineTransport(execute=execute_then_pause)
    orchestrator, store, pipeline = setup(transport)
    holder.update(orchestrator=orchestrator, pipeline_id=pipeline.id)

    paused = await orchestrator.run(pipeline.id)
    assert paused.status is PipelineStatus.PAUSED
    assert paused.awaiting_user_input is False

    transport.replies["execute"] = "done again"
    finished = await orchestrator.resume_pipeline(pipeline.id)
    assert finished.status is PipelineStatus.COMPLETED
    assert "answer" not in transport.kinds()


@pytest.mark.asyncio
async def test_only_paused_pipelines_resume(setup):
    orchestrator, store, pipeline = setup(PipelineTransport())
    with pytest.raises(FlightpathError, match="only paused pipelines resume"):
        await orchestrator.resume_pipeline(pipeline.id, answer="hi")


@pytest.mark.asyncio
async def test_abort_keeps_earlier_requirements_terminal(setup):
    plans = {"count": 0}
    holder = {}

    def plan(prompt):
        plans["count"] += 1
        if plans["count"] == 2:
            holder["orchestrator"].request_abort(holder["pipeline_id"])
        return "1. edit src/app.py"

    transport = PipelineTransport(plan=plan)
    spec = _spec({"id": "r1", "title": "A"}, {"id": "r2", "title": "B"}, {"id": "r3", "title": "C"})
    orchestrator, store, pipeline = setup(transport, spec)
    holder.update(orchestrator=orchestrator, pipeline_id=pipeline.id)

    result = await orchestrator.run(pipeline.id)

    assert result.status is PipelineStatus.ABORTED
    assert result.requirement("r1").status is RequirementStatus.COMPLETED
    assert result.requirement("r2").status is RequirementStatus.IN_PROGRESS
    assert result.requirement("r3").status is RequirementStatus.PENDING
    assert transport.kinds() == ["plan", "execute", "test", "plan"]


@pytest.mark.asyncio
async def test_pause_is_sampled_during_rate_limit_backoff(setup):
    transport = PipelineTransport(plan=RuntimeError("429 rate limit exceeded"))
    orchestrator, store, pipeline = setup(transport)
    orchestrator.config.harness.rate_limit_backoff_seconds = 10
    orchestrator.config.harness.rate_limit_poll_seconds = 1
    slices = []

    async def sleep(seconds):
        slices.append(seconds)
        if len(slices) == 1:
            orchestrator.request_pause(pipeline.id)

    orchestrator.sleep = sleep

    paused = await orchestrator.run(pipeline.id)

    assert paused.status is PipelineStatus.PAUSED
    assert slices == [1]
    assert transport.kinds() == ["plan"]
    assert paused.requirement("r1").status is RequirementStatus.IN_PROGRESS
    assert "requirement_failed" not in _types(store, pipeline.id)

    transport.replies["plan"] = "1. edit src/app.py"
    finished = await orchestrator.resume_pipeline(pipeline.id)
    assert finished.status is PipelineStatus.COMPLETED
    assert finished.requirement("r1").status is RequirementStatus.COMPLETED


def test_last_verdict_line_wins():
    reply = ("The instructions say to finish with 'VERDICT: PASS' when everything works.\n"
             "The checkout button is missing.\nVERDICT: FAIL")
    verdict = evaluate_test_verdict(reply)
    assert verdict.passed is False
    assert verdict.confidence == "explicit"
