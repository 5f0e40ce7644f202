"""
Parallel codebase exploration.

Three read-only lanes investigate the target project concurrently:

    pattern  existing conventions, components, templates
    api      endpoints, types and contracts
    test     test frameworks, fixtures and layout

Each lane races its own timeout. A lane that times out or raises becomes a
recorded failure without disturbing the others; only when all three fail
does exploration fail. Surviving results are merged and scored to pick the
model tier for planning and execution.
"""

import asyncio
import json
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from flightpath_complexity import score_requirement
from flightpath_config import Config
from flightpath_errors import AllExplorersFailedError, ConfigurationError, ExplorerTimeout, classify_error
from flightpath_events import EventType
from flightpath_harness import SessionOptions, create_session
from flightpath_models import (
    ExplorationDepth, ExplorerResult, ExplorerType, MergedExplorationContext, ModelTier,
    ParallelExplorationResult, Pattern, RelatedFiles, Requirement,
)
from flightpath_tools import READ_ONLY_TOOLS
from flightpath_transport import AgentTransport

import logging
logger = logging.getLogger(__name__)

PARSE_FAILURE_NOTE = "Failed to parse structured output"

LANE_FOCUS = {
    ExplorerType.PATTERN: (
        "Focus: find existing patterns, components and templates this feature should follow. "
        "List the most similar files as templates."
    ),
    ExplorerType.API: (
        "Focus: find API endpoints, request/response types, schemas and interfaces this "
        "feature will use or extend. List type definition files under types."
    ),
    ExplorerType.TEST: (
        "Focus: find how similar features are tested: frameworks, fixtures, helpers and file "
        "locations. List relevant test files under tests and conventions under testPatterns."
    ),
}

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```")
_BARE_JSON_RE = re.compile(r'\{[\s\S]*"type"[\s\S]*\}')
_FILE_PATH_RE = re.compile(r"[a-zA-Z0-9_\-/.]+\.(?:tsx|ts|jsx|js|json|py)\b")

Emit = Callable[[EventType, Dict[str, Any]], Any]


def build_lane_prompt(requirement: Requirement, lane: ExplorerType) -> str:
    criteria = "\n".join(f"- {c}" for c in requirement.acceptance_criteria) or "- (none given)"
    return f"""Explore the codebase for the following requirement.

## Requirement {requirement.id}: {requirement.title}
{requirement.description}

Platform: {requirement.platform or "backend"}
Area: {requirement.area or "general"}

### Acceptance Criteria
{criteria}

{LANE_FOCUS[lane]}

Reply with a single JSON block:
```json
{{
  "type": "{lane.value}",
  "patterns": [{{"name": "...", "files": ["..."], "description": "..."}}],
  "relatedFiles": {{"templates": [], "types": [], "tests": []}},
  "apiEndpoints": [],
  "testPatterns": [],
  "notes": []
}}
```"""


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


def _parse_patterns(value: Any) -> List[Pattern]:
    patterns = []
    for item in value if isinstance(value, list) else []:
        if isinstance(item, str):
            patterns.append(Pattern(name=item))
        elif isinstance(item, dict) and item.get("name"):
            patterns.append(Pattern(name=str(item["name"]), files=_str_list(item.get("files")),
                                    description=str(item.get("description", ""))))
    return patterns


def _extract_json(text: str) -> Optional[dict]:
    for regex in (_FENCED_JSON_RE, _BARE_JSON_RE):
        match = regex.search(text)
        if not match:
            continue
        candidate = match.group(1) if regex is _FENCED_JSON_RE else match.group(0)
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_explorer_output(lane: ExplorerType, text: str, fallback_cap: int = 10) -> ExplorerResult:
    """Structured block if present; otherwise scrape file-like paths from the raw text."""
    data = _extract_json(text or "")
    if data is None:
        seen: List[str] = []
        for path in _FILE_PATH_RE.findall(text or ""):
            if path not in seen:
                seen.append(path)
        return ExplorerResult(type=lane, related_files=RelatedFiles(templates=seen[:fallback_cap]),
                              notes=[PARSE_FAILURE_NOTE])

    related = data.get("relatedFiles") if isinstance(data.get("relatedFiles"), dict) else {}
    return ExplorerResult(
        type=lane,
        patterns=_parse_patterns(data.get("patterns")),
        related_files=RelatedFiles(
            templates=_str_list(related.get("templates")),
            types=_str_list(related.get("types")),
            tests=_str_list(related.get("tests")),
        ),
        api_endpoints=_str_list(data.get("apiEndpoints")),
        test_patterns=_str_list(data.get("testPatterns")),
        notes=_str_list(data.get("notes")),
    )


def _extend_unique(target: List[str], values: List[str]):
    for value in values:
        if value not in target:
            target.append(value)


def merge_explorer_results(results: List[ExplorerResult]) -> MergedExplorationContext:
    """
    Union of all successful lanes. Patterns dedupe by name, files and
    endpoints by value (first seen wins); notes and test patterns concatenate.
    """
    merged = MergedExplorationContext()
    pattern_names = set()
    for result in results:
        if result.failed:
            continue
        for pattern in result.patterns:
            if pattern.name not in pattern_names:
                pattern_names.add(pattern.name)
                merged.patterns.append(pattern)
        _extend_unique(merged.related_files.templates, result.related_files.templates)
        _extend_unique(merged.related_files.types, result.related_files.types)
        _extend_unique(merged.related_files.tests, result.related_files.tests)
        _extend_unique(merged.api_endpoints, result.api_endpoints)
        merged.test_patterns.extend(result.test_patterns)
        merged.notes.extend(result.notes)

    merged.existing_components = [p.name for p in merged.patterns if "component" in p.name.lower()]
    return merged


def _consume_abandoned(task: "asyncio.Future"):
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Abandoned explorer call finished with: {error}")


def _close_when_done(session):
    """Done-callback closing the session of an abandoned lane once its send settles."""
    def callback(task: "asyncio.Future"):
        _consume_abandoned(task)
        closing = asyncio.ensure_future(session.close())
        closing.add_done_callback(_consume_abandoned)
    return callback


class ParallelExplorer:
    """
    Usage:
        explorer = ParallelExplorer(transport, config)
        result = await explorer.explore(requirement, working_dir, "medium",
                                        storage_root=..., storage_id=..., emit=...)
    """

    def __init__(self, transport: AgentTransport, config: Config):
        self.transport = transport
        self.config = config

    async def _run_lane(self, lane: ExplorerType, requirement: Requirement, options: SessionOptions,
                        emit: Emit, services: Dict[str, Any]) -> ExplorerResult:
        started = time.monotonic()
        await _maybe_await(emit(EventType.EXPLORER_STARTED, {"type": lane.value, "requirementId": requirement.id}))
        session = create_session(self.transport, f"explorer-{lane.value}", options, **services)
        timeout = self.config.explorer.lane_timeout_seconds

        task = asyncio.ensure_future(session.send(build_lane_prompt(requirement, lane)))
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task not in done:
            task.add_done_callback(_close_when_done(session))
            raise ExplorerTimeout(lane.value, timeout)
        try:
            turn = task.result()
        finally:
            await session.close()

        result = parse_explorer_output(lane, turn.reply, self.config.explorer.fallback_file_cap)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        await _maybe_await(emit(EventType.EXPLORER_COMPLETED, {
            "type": lane.value, "duration": result.duration_ms,
            "patterns": len(result.patterns), "notes": result.notes,
        }))
        return result

    async def explore(self, requirement: Requirement, working_dir: str,
                      depth: Union[ExplorationDepth, str] = ExplorationDepth.MEDIUM, *,
                      storage_root: str, storage_id: str, pipeline_id: Optional[str] = None,
                      emit: Optional[Emit] = None, **services) -> ParallelExplorationResult:
        if not Path(working_dir).is_dir():
            raise ConfigurationError(f"Target path not found: {working_dir}")
        emit = emit or (lambda event_type, data: None)
        started = time.monotonic()

        cheapest = self.config.model_for_tier(ModelTier.HAIKU)
        options = SessionOptions(
            cwd=str(working_dir), model=cheapest.model_id, storage_root=storage_root,
            storage_id=storage_id, pipeline_id=pipeline_id,
            max_turns=self.config.explorer.lane_max_turns, max_rate_limit_retries=0,
            tools=READ_ONLY_TOOLS,
        )

        lanes = list(ExplorerType)
        logger.info(f"🔍 Exploring {requirement.id} with {len(lanes)} parallel lanes")
        await _maybe_await(emit(EventType.PARALLEL_EXPLORATION_STARTED, {
            "requirementId": requirement.id, "lanes": [lane.value for lane in lanes],
        }))

        outcomes = await asyncio.gather(
            *(self._run_lane(lane, requirement, options, emit, services) for lane in lanes),
            return_exceptions=True,
        )

        results: List[ExplorerResult] = []
        for lane, outcome in zip(lanes, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                classification = classify_error(outcome)
                logger.warning(f"⚠️ Explorer {lane.value} failed ({classification.type.value}): {outcome}")
                results.append(ExplorerResult(type=lane, error=str(outcome),
                                              error_type=classification.type.value))
                await _maybe_await(emit(EventType.EXPLORER_ERROR, {
                    "type": lane.value, "error": str(outcome), "errorType": classification.type.value,
                }))
            else:
                results.append(outcome)

        failures = [r for r in results if r.failed]
        if len(failures) == len(results):
            raise AllExplorersFailedError([
                {"type": r.type.value, "error": r.error, "errorType": r.error_type} for r in failures
            ])

        context = merge_explorer_results(results)
        factors, score, tier = score_requirement(requirement, context, depth)
        model_id = self.config.model_for_tier(tier).model_id
        duration = int((time.monotonic() - started) * 1000)

        logger.info(f"✅ Exploration done: score={score} → {tier.value} ({model_id}), "
                    f"{len(failures)} lane(s) failed")
        await _maybe_await(emit(EventType.MODEL_SELECTED, {
            "requirementId": requirement.id, "complexityScore": score, "tier": tier.value,
            "model": model_id, "factors": factors.to_dict(),
        }))
        await _maybe_await(emit(EventType.PARALLEL_EXPLORATION_COMPLETED, {
            "requirementId": requirement.id, "duration": duration,
            "succeeded": len(results) - len(failures), "failed": len(failures),
        }))
        return ParallelExplorationResult(context=context, lanes=results, complexity_score=score,
                                         factors=factors, model_tier=tier, model_id=model_id,
                                         duration_ms=duration)


async def _maybe_await(value):
    if asyncio.iscoroutine(value):
        await value
