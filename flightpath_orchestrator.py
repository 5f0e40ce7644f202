"""
Pipeline orchestrator: the phase state machine.

Each requirement, in stable priority order, goes through

    EXPLORE → PLAN → EXECUTE → TEST

inside a bounded retry loop. A configuration error fails the requirement
at once; anything else spends one retry. A requirement that runs out of
retries is marked failed and the loop moves on. Abort and pause are flags
sampled at requirement boundaries, before each attempt, after each phase and
during rate-limit backoff.
"""

import asyncio
import re
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from flightpath_artifacts import ArtifactStore, capture_git_diff
from flightpath_config import Config
from flightpath_errors import ErrorType, FlightpathError, PipelineAborted, classify_error
from flightpath_events import EventType, PipelineEventObserver
from flightpath_explorer import ParallelExplorer
from flightpath_harness import SessionManager, SessionOptions
from flightpath_models import (
    ExplorationDepth, MergedExplorationContext, ModelTier, Pipeline, PipelineStatus,
    Requirement, RequirementStatus, TestVerdict, TurnResult,
)
from flightpath_requirements import FeatureSpec, order_requirements
from flightpath_store import PipelineStore
from flightpath_tools import BUILD_TOOLS, TEST_TOOLS
from flightpath_transport import AgentTransport

import logging
logger = logging.getLogger(__name__)

CONFIG_FAILURE_REASON = "Configuration error - retry would not help"

PHASE_ROLES = {
    PipelineStatus.PLANNING: "planner",
    PipelineStatus.EXECUTING: "executor",
    PipelineStatus.TESTING: "tester",
}

_VERDICT_RE = re.compile(r"verdict\s*:\s*\**\s*(pass|fail)", re.IGNORECASE)
FAILURE_MARKERS = (
    "test failed", "tests failed", "acceptance criteria not met", "issues found",
    "test: failed", "result: fail", "error:", "assertion failed",
)
SUCCESS_MARKERS = (
    "all tests passed", "tests passed", "implementation verified",
    "acceptance criteria met", "test: passed", "result: pass",
)
_FAILURE_REASON_RES = (
    re.compile(r"(?:failed|failure)[:\s]+(.+)", re.IGNORECASE),
    re.compile(r"error[:\s]+(.+)", re.IGNORECASE),
    re.compile(r"issues?[:\s]+(.+)", re.IGNORECASE),
)


class RequirementOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


def extract_failure_reason(reply: str) -> str:
    for regex in _FAILURE_REASON_RES:
        match = regex.search(reply or "")
        if match:
            return match.group(1).strip()[:200]
    return "Unknown failure reason"


def evaluate_test_verdict(reply: str) -> TestVerdict:
    """
    Fail-closed verdict. The last explicit VERDICT line wins, then failure
    phrases, then success phrases. No marker at all counts as a failure.
    """
    text = (reply or "").lower()
    verdicts = _VERDICT_RE.findall(reply or "")
    if verdicts:
        if verdicts[-1].lower() == "pass":
            return TestVerdict(passed=True, confidence="explicit", reason="Explicit PASS verdict")
        return TestVerdict(passed=False, confidence="explicit", reason=extract_failure_reason(reply))
    if any(marker in text for marker in FAILURE_MARKERS):
        return TestVerdict(passed=False, confidence="explicit", reason=extract_failure_reason(reply))
    if any(marker in text for marker in SUCCESS_MARKERS):
        return TestVerdict(passed=True, confidence="explicit", reason="Explicit pass marker found")
    return TestVerdict(passed=False, confidence="unknown",
                       reason="No explicit pass/fail indicator found - treating as failure for safety")


# ============================================================
# Prompts
# ============================================================

def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "none"


def format_exploration_context(context: MergedExplorationContext) -> str:
    patterns = [f"{p.name}: {p.description} ({', '.join(p.files)})".strip() for p in context.patterns]
    return "\n".join([
        "## Exploration Context",
        "### Patterns", _bullets(patterns),
        "### Related templates", _bullets(context.related_files.templates),
        "### Related types", _bullets(context.related_files.types),
        "### Related tests", _bullets(context.related_files.tests),
        "### API endpoints", _bullets(context.api_endpoints),
        "### Test patterns", _bullets(context.test_patterns),
        "### Notes", _bullets(context.notes),
    ])


def format_requirement(requirement: Requirement) -> str:
    lines = [
        f"## Requirement {requirement.id}: {requirement.title}",
        requirement.description or "",
        "",
        f"Platform: {requirement.platform or 'backend'}",
        f"Area: {requirement.area or 'general'}",
        "",
        "### Acceptance Criteria",
        _bullets(requirement.acceptance_criteria),
    ]
    if requirement.files:
        lines += ["", "### File hints", _bullets(requirement.files)]
    if requirement.dependencies:
        lines += ["", "### Depends on", _bullets(requirement.dependencies)]
    return "\n".join(lines)


def _answers_section(answers: List[str]) -> str:
    if not answers:
        return ""
    return "\n\n## Answers from the user\n" + _bullets(answers)


def build_plan_prompt(requirement: Requirement, context: MergedExplorationContext,
                      answers: List[str] = ()) -> str:
    return (f"{format_requirement(requirement)}\n\n{format_exploration_context(context)}"
            f"{_answers_section(list(answers))}\n\n"
            "Write an implementation plan for this requirement. List the files to create or "
            "modify, the order of changes, and how each acceptance criterion will be verified.")


def build_execute_prompt(requirement: Requirement, plan: str, context: MergedExplorationContext,
                         answers: List[str] = ()) -> str:
    return (f"{format_requirement(requirement)}\n\n## Plan\n{plan}\n\n"
            f"{format_exploration_context(context)}{_answers_section(list(answers))}\n\n"
            "Implement the plan now. Follow existing conventions and run the relevant checks.")


def build_test_prompt(requirement: Requirement, retry_count: int) -> str:
    attempt = f" (attempt {retry_count + 1})" if retry_count else ""
    return (f"{format_requirement(requirement)}\n\n"
            f"Verify the implementation of this requirement{attempt}. Check every acceptance "
            "criterion. Finish with 'VERDICT: PASS' if all criteria are met, otherwise "
            "'VERDICT: FAIL' followed by the failures.")


# ============================================================
# Orchestrator
# ============================================================

class Orchestrator:
    """
    Drives pipelines through their requirements.

    One Orchestrator instance is the only driver of the pipelines it runs.
    """

    def __init__(self, config: Config, store: PipelineStore, transport: AgentTransport, *,
                 notifier=None, browser=None, explorer: Optional[ParallelExplorer] = None,
                 depth: Union[ExplorationDepth, str, None] = None,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        self.config = config
        self.store = store
        self.transport = transport
        self.notifier = notifier
        self.browser = browser
        self.explorer = explorer or ParallelExplorer(transport, config)
        self.depth = ExplorationDepth(depth or config.default_depth)
        self.sleep = sleep
        self.sessions = SessionManager(transport)

    # ------------------------------------------------------------
    # Pipeline lifecycle
    # ------------------------------------------------------------

    def start_pipeline(self, spec: FeatureSpec, working_dir: Union[str, Path]) -> Pipeline:
        pipeline = self.store.create_pipeline(spec.project_name, str(working_dir),
                                              feature_prefix=spec.feature_prefix)
        self.store.set_requirements(pipeline.id, spec.requirements)
        self.store.set_epics(pipeline.id, spec.epics)
        self.store.update_progress(pipeline.id, f"Pipeline created with {len(spec.requirements)} "
                                                f"requirements and {len(spec.epics)} epics.")
        return self.store.get(pipeline.id)

    def request_pause(self, pipeline_id: str):
        self.store.request_pause(pipeline_id)

    def request_abort(self, pipeline_id: str):
        self.store.request_abort(pipeline_id)

    def check_control_flags(self, pipeline_id: str) -> bool:
        """Persist aborted/paused status if a flag is set. Returns True if the loop must stop."""
        abort = self.store.is_abort_requested(pipeline_id)
        pause = self.store.is_pause_requested(pipeline_id)
        pipeline = self.store.get(pipeline_id)
        if abort:
            if pipeline.status is not PipelineStatus.ABORTED:
                self.store.update_status(pipeline_id, PipelineStatus.ABORTED)
                self.store.append_event(pipeline_id, EventType.ABORTED,
                                        {"requirementIndex": pipeline.phase.requirement_index})
                logger.warning(f"🛑 Pipeline {pipeline_id} aborted")
            return True
        if pause:
            if pipeline.status is not PipelineStatus.PAUSED:
                self.store.update_status(pipeline_id, PipelineStatus.PAUSED)
                self.store.append_event(pipeline_id, EventType.PAUSED,
                                        {"requirementIndex": pipeline.phase.requirement_index,
                                         "awaitingUserInput": pipeline.awaiting_user_input})
                logger.info(f"⏸️ Pipeline {pipeline_id} paused")
            return True
        return False

    async def run(self, pipeline_id: str) -> Pipeline:
        pipeline = self.store.get(pipeline_id)
        if pipeline.is_terminal:
            logger.info(f"Pipeline {pipeline_id} already {pipeline.status.value}, nothing to run")
            return pipeline

        ordered = order_requirements(pipeline.requirements)
        logger.info(f"{'=' * 60}")
        logger.info("PIPELINE STARTING")
        logger.info(f"Project: {pipeline.project_name}")
        logger.info(f"Working directory: {pipeline.working_dir}")
        logger.info(f"Requirements: {len(ordered)} (from index {pipeline.phase.requirement_index})")
        logger.info(f"{'=' * 60}")

        try:
            for position in range(pipeline.phase.requirement_index, len(ordered)):
                requirement = ordered[position][1]
                if self.check_control_flags(pipeline_id):
                    return self.store.get(pipeline_id)
                if requirement.status.is_terminal:
                    continue

                self.store.update_phase(pipeline_id, requirement_index=position, retry_count=0)
                logger.info(f"\n{'=' * 60}")
                logger.info(f"REQUIREMENT {position + 1}/{len(ordered)}: {requirement.id} - {requirement.title}")
                logger.info(f"{'=' * 60}")
                self.store.append_event(pipeline_id, EventType.REQUIREMENT_STARTED, {
                    "requirementId": requirement.id, "title": requirement.title,
                    "index": position, "priority": requirement.priority,
                })
                self.store.update_requirement(pipeline_id, requirement.id, RequirementStatus.IN_PROGRESS)
                self.store.update_epic_progress(pipeline_id, requirement.epic_id)

                outcome = await self._process_requirement(pipeline_id, requirement)
                if outcome is RequirementOutcome.STOPPED:
                    return self.store.get(pipeline_id)
        finally:
            await self.sessions.close(pipeline_id)

        return self._finish(pipeline_id)

    def _finish(self, pipeline_id: str) -> Pipeline:
        pipeline = self.store.get(pipeline_id)
        completed = sum(1 for r in pipeline.requirements if r.status is RequirementStatus.COMPLETED)
        failed = sum(1 for r in pipeline.requirements if r.status is RequirementStatus.FAILED)
        self.store.append_event(pipeline_id, EventType.PIPELINE_COMPLETED, {
            "totalRequirements": len(pipeline.requirements), "completed": completed, "failed": failed,
        })
        self.store.update_status(pipeline_id, PipelineStatus.COMPLETED)
        self.store.update_progress(pipeline_id, f"Pipeline completed: {completed} completed, {failed} failed.")
        logger.info(f"🏁 Pipeline {pipeline_id} completed: {completed} completed, {failed} failed")
        return self.store.get(pipeline_id)

    async def resume_pipeline(self, pipeline_id: str, answer: Optional[str] = None) -> Pipeline:
        """Resume a paused pipeline, optionally delivering the user's answer first."""
        pipeline = self.store.get(pipeline_id)
        if pipeline.status is not PipelineStatus.PAUSED:
            raise FlightpathError(f"Pipeline {pipeline_id} is {pipeline.status.value}, only paused pipelines resume")

        if answer:
            self.store.add_user_answer(pipeline_id, answer)
        self.store.clear_pause(pipeline_id)

        role = PHASE_ROLES.get(pipeline.phase.current)
        if answer and pipeline.session_id and role:
            session = await self.sessions.resume(pipeline_id, pipeline.session_id, role,
                                                 self._session_options(pipeline, self._default_model()),
                                                 **self._services(pipeline_id, pipeline.phase.current))
            try:
                turn = await session.send(answer)
            except PipelineAborted:
                self.check_control_flags(pipeline_id)
                return self.store.get(pipeline_id)
            self.store.append_event(pipeline_id, EventType.AGENT_MESSAGE,
                                    {"phase": pipeline.phase.current.value, "text": turn.reply[:2000]})

        self.store.append_event(pipeline_id, EventType.RESUMED,
                                {"requirementIndex": pipeline.phase.requirement_index,
                                 "answered": bool(answer)})
        logger.info(f"▶️ Pipeline {pipeline_id} resumed at requirement index {pipeline.phase.requirement_index}")
        return await self.run(pipeline_id)

    # ------------------------------------------------------------
    # Requirement
    # ------------------------------------------------------------

    async def _process_requirement(self, pipeline_id: str, requirement: Requirement) -> RequirementOutcome:
        max_retries = self.config.max_retries
        retry_count = 0

        while retry_count < max_retries:
            if self.check_control_flags(pipeline_id):
                return RequirementOutcome.STOPPED

            try:
                verdict = await self._attempt(pipeline_id, requirement, retry_count)
            except PipelineAborted:
                self.check_control_flags(pipeline_id)
                return RequirementOutcome.STOPPED
            except Exception as e:
                classification = classify_error(e)
                logger.error(f"❌ {requirement.id} attempt {retry_count + 1} raised "
                             f"{classification.type.value} error: {e}")
                if classification.type is ErrorType.CONFIGURATION:
                    self.store.append_event(pipeline_id, EventType.REQUIREMENT_FAILED, {
                        "requirementId": requirement.id, "reason": CONFIG_FAILURE_REASON,
                        "error": str(e), "errorType": classification.type.value,
                        "suggestedAction": classification.suggested_action,
                    })
                    self._mark(pipeline_id, requirement, RequirementStatus.FAILED)
                    return RequirementOutcome.FAILED

                retry_count += 1
                self.store.update_phase(pipeline_id, retry_count=retry_count)
                if retry_count >= max_retries:
                    self.store.append_event(pipeline_id, EventType.REQUIREMENT_FAILED, {
                        "requirementId": requirement.id, "reason": "Max retries exceeded",
                        "error": str(e), "errorType": classification.type.value,
                        "retryCount": retry_count,
                    })
                    self._mark(pipeline_id, requirement, RequirementStatus.FAILED)
                    return RequirementOutcome.FAILED
                self.store.append_event(pipeline_id, EventType.RETRY_STARTED, {
                    "requirementId": requirement.id, "retryCount": retry_count,
                    "error": str(e), "errorType": classification.type.value,
                })
                continue

            if verdict is None:
                self.check_control_flags(pipeline_id)
                return RequirementOutcome.STOPPED

            if verdict.passed:
                self._mark(pipeline_id, requirement, RequirementStatus.COMPLETED)
                self.store.append_event(pipeline_id, EventType.REQUIREMENT_COMPLETED, {
                    "requirementId": requirement.id, "retryCount": retry_count,
                })
                self.store.update_progress(pipeline_id, f"✅ {requirement.id} completed: {requirement.title}")
                logger.info(f"✅ {requirement.id} completed")
                return RequirementOutcome.COMPLETED

            retry_count += 1
            self.store.update_phase(pipeline_id, retry_count=retry_count)
            logger.warning(f"⚠️ {requirement.id} test failed ({retry_count}/{max_retries}): {verdict.reason}")
            if retry_count < max_retries:
                self.store.append_event(pipeline_id, EventType.RETRY_STARTED, {
                    "requirementId": requirement.id, "retryCount": retry_count, "reason": verdict.reason,
                })

        self.store.append_event(pipeline_id, EventType.REQUIREMENT_FAILED, {
            "requirementId": requirement.id, "reason": "Max retries exceeded", "retryCount": retry_count,
        })
        self._mark(pipeline_id, requirement, RequirementStatus.FAILED)
        self.store.update_progress(pipeline_id, f"❌ {requirement.id} failed after {retry_count} attempts")
        return RequirementOutcome.FAILED

    def _mark(self, pipeline_id: str, requirement: Requirement, status: RequirementStatus):
        self.store.update_requirement(pipeline_id, requirement.id, status)
        self.store.update_epic_progress(pipeline_id, requirement.epic_id)

    # ------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------

    def _default_model(self) -> str:
        return self.config.model_for_tier(ModelTier.SONNET).model_id

    def _session_options(self, pipeline: Pipeline, model: str) -> SessionOptions:
        harness = self.config.harness
        paths = self.store.storage_paths(pipeline.id)
        return SessionOptions(
            cwd=pipeline.working_dir, model=model, storage_root=str(paths.root),
            storage_id=pipeline.storage_id, pipeline_id=pipeline.id,
            max_turns=harness.max_turns,
            max_rate_limit_retries=harness.rate_limit_max_retries,
            backoff_seconds=harness.rate_limit_backoff_seconds,
            poll_seconds=harness.rate_limit_poll_seconds,
            tools=TEST_TOOLS if pipeline.phase.current is PipelineStatus.TESTING else BUILD_TOOLS,
        )

    def _services(self, pipeline_id: str, phase: PipelineStatus) -> Dict[str, Any]:
        artifacts = ArtifactStore(self.store, pipeline_id)
        return {
            "observers": [PipelineEventObserver(self.store, pipeline_id, phase.value)],
            "notifier": self.notifier,
            "browser": self.browser,
            "artifact_sink": artifacts.save_bytes,
            "should_stop": lambda: self._stop_requested(pipeline_id),
            "sleep": self.sleep,
        }

    def _stop_requested(self, pipeline_id: str) -> bool:
        return self.store.is_abort_requested(pipeline_id) or self.store.is_pause_requested(pipeline_id)

    async def _agent_turn(self, pipeline_id: str, phase: PipelineStatus, model: str, prompt: str) -> TurnResult:
        pipeline = self.store.get(pipeline_id)
        session = await self.sessions.create(pipeline_id, PHASE_ROLES[phase],
                                             self._session_options(pipeline, model),
                                             **self._services(pipeline_id, phase))
        turn = await session.send(prompt)
        self.store.set_session_id(pipeline_id, turn.session_id)
        self.store.append_event(pipeline_id, EventType.AGENT_MESSAGE, {
            "phase": phase.value, "text": turn.reply[:2000], "toolCalls": len(turn.tool_calls),
            "usage": turn.usage,
        })
        if turn.awaiting_user_input:
            self.store.set_awaiting_user_input(pipeline_id, True)
            self.store.append_event(pipeline_id, EventType.USER_INPUT_REQUESTED, {
                "phase": phase.value,
                "questions": [q.to_dict() for q in turn.user_questions],
                "inputRequests": [r.to_dict() for r in turn.input_requests],
            })
            self.store.request_pause(pipeline_id)
        return turn

    async def _attempt(self, pipeline_id: str, requirement: Requirement,
                       retry_count: int) -> Optional[TestVerdict]:
        """One explore/plan/execute/test pass. Returns None if a pause or abort was requested."""
        pipeline = self.store.get(pipeline_id)
        paths = self.store.storage_paths(pipeline_id)
        artifacts = ArtifactStore(self.store, pipeline_id)
        req_data = {"requirementId": requirement.id, "attempt": retry_count + 1}

        # EXPLORE
        logger.info("\n📍 PHASE 1: EXPLORE")
        self.store.update_phase(pipeline_id, PipelineStatus.EXPLORING)
        self.store.append_event(pipeline_id, EventType.EXPLORING_STARTED, req_data)
        exploration = await self.explorer.explore(
            requirement, pipeline.working_dir, self.depth,
            storage_root=str(paths.root), storage_id=pipeline.storage_id, pipeline_id=pipeline_id,
            emit=lambda event_type, data: self.store.append_event(pipeline_id, event_type, data),
            **self._services(pipeline_id, PipelineStatus.EXPLORING),
        )
        self.store.append_event(pipeline_id, EventType.EXPLORING_COMPLETED, {
            **req_data, "complexityScore": exploration.complexity_score,
            "tier": exploration.model_tier.value, "model": exploration.model_id,
            "context": exploration.context.to_dict(),
        })
        if self._stop_requested(pipeline_id):
            return None

        answers = list(self.store.get(pipeline_id).user_answers)

        # PLAN
        logger.info("\n📍 PHASE 2: PLAN")
        self.store.update_phase(pipeline_id, PipelineStatus.PLANNING)
        self.store.append_event(pipeline_id, EventType.PLANNING_STARTED, req_data)
        plan_turn = await self._agent_turn(pipeline_id, PipelineStatus.PLANNING, exploration.model_id,
                                           build_plan_prompt(requirement, exploration.context, answers))
        plan = plan_turn.reply
        try:
            artifacts.save_plan(requirement.id, plan)
        except OSError as e:
            logger.warning(f"⚠️ Could not save plan artifact: {e}")
        self.store.append_event(pipeline_id, EventType.PLANNING_COMPLETED, req_data)
        if self._stop_requested(pipeline_id):
            return None

        # EXECUTE
        logger.info("\n📍 PHASE 3: EXECUTE")
        self.store.update_phase(pipeline_id, PipelineStatus.EXECUTING)
        self.store.append_event(pipeline_id, EventType.EXECUTING_STARTED, req_data)
        await self._agent_turn(pipeline_id, PipelineStatus.EXECUTING, exploration.model_id,
                               build_execute_prompt(requirement, plan, exploration.context, answers))
        diff = await capture_git_diff(pipeline.working_dir)
        if diff:
            try:
                artifacts.save_diff(requirement.id, diff)
            except OSError as e:
                logger.warning(f"⚠️ Could not save diff artifact: {e}")
        self.store.append_event(pipeline_id, EventType.EXECUTING_COMPLETED,
                                {**req_data, "diffCaptured": bool(diff)})
        if self._stop_requested(pipeline_id):
            return None

        # TEST
        logger.info("\n📍 PHASE 4: TEST")
        self.store.update_phase(pipeline_id, PipelineStatus.TESTING)
        self.store.append_event(pipeline_id, EventType.TESTING_STARTED, req_data)
        test_turn = await self._agent_turn(pipeline_id, PipelineStatus.TESTING, exploration.model_id,
                                           build_test_prompt(requirement, retry_count))
        if self._stop_requested(pipeline_id):
            return None

        verdict = evaluate_test_verdict(test_turn.reply)
        try:
            artifacts.save_test_result(requirement.id, verdict, test_turn.reply)
        except OSError as e:
            logger.warning(f"⚠️ Could not save test result artifact: {e}")
        self.store.append_event(pipeline_id,
                                EventType.TEST_PASSED if verdict.passed else EventType.TEST_FAILED,
                                {**req_data, **verdict.to_dict()})
        self.store.append_event(pipeline_id, EventType.TESTING_COMPLETED, {**req_data, "passed": verdict.passed})
        return verdict
