"""
Pipeline state persistence for the flightpath orchestrator.

All mutation of a pipeline goes through the narrow setters below; each one
persists the pipeline immediately. Only one driver (orchestrator loop)
works on a pipeline id at a time, so no locking is done here.

Key files:
- .claude/pipelines/<id>.json: machine-readable pipeline state (with a tail of recent events)
- .claude/<storage_id>/<prefix>/events.ndjson: append-only event log
- .claude/<storage_id>/<prefix>/PROGRESS.md: human-readable progress log
"""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from flightpath_errors import PipelineNotFound
from flightpath_event_log import EventLog
from flightpath_events import EventType
from flightpath_models import (
    Pipeline, PipelineStatus, PipelineEvent, Requirement, RequirementStatus,
    Epic, Artifact, now_iso,
)
from flightpath_paths import StoragePaths, make_storage_id, pipeline_state_path, DEFAULT_FEATURE_PREFIX
from flightpath_requirements import compute_epic_progress, derive_epic_status, find_epic

import logging
logger = logging.getLogger(__name__)

Subscriber = Callable[[PipelineEvent], None]

STATE_EVENT_TAIL = 200


class PipelineStore:
    """
    Owns pipeline state for every pipeline under one storage base dir.
    """

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = str(base_dir)
        self._pipelines: Dict[str, Pipeline] = {}
        self._subscribers: Dict[str, List[Subscriber]] = {}

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def create_pipeline(self, project_name: str, working_dir: str,
                        feature_prefix: str = DEFAULT_FEATURE_PREFIX,
                        pipeline_id: Optional[str] = None) -> Pipeline:
        pipeline_id = pipeline_id or str(uuid.uuid4())
        pipeline = Pipeline(
            id=pipeline_id,
            project_name=project_name,
            working_dir=str(working_dir),
            storage_id=make_storage_id(project_name, pipeline_id),
            feature_prefix=feature_prefix or DEFAULT_FEATURE_PREFIX,
            status=PipelineStatus.QA,
        )
        self._pipelines[pipeline_id] = pipeline
        self._save(pipeline)
        self.append_event(pipeline_id, EventType.QA_STARTED, {"projectName": project_name})
        logger.info(f"Pipeline created: {pipeline_id} (storage={pipeline.storage_id})")
        return pipeline

    def get(self, pipeline_id: str) -> Pipeline:
        if pipeline_id in self._pipelines:
            return self._pipelines[pipeline_id]
        state_file = pipeline_state_path(self.base_dir, pipeline_id)
        if not state_file.exists():
            raise PipelineNotFound(pipeline_id)
        pipeline = Pipeline.from_json(state_file.read_text())
        self._pipelines[pipeline_id] = pipeline
        self._backfill_event_log(pipeline)
        logger.debug(f"Pipeline loaded: {pipeline_id}, status={pipeline.status.value}")
        return pipeline

    def _backfill_event_log(self, pipeline: Pipeline):
        """Seed a missing or empty event log from the event tail kept in the state file."""
        try:
            self.event_log(pipeline.id).backfill(pipeline.events, pipeline.id)
        except OSError as e:
            logger.warning(f"Could not backfill event log for {pipeline.id}: {e}")

    def exists(self, pipeline_id: str) -> bool:
        return pipeline_id in self._pipelines or pipeline_state_path(self.base_dir, pipeline_id).exists()

    def storage_paths(self, pipeline_id: str) -> StoragePaths:
        pipeline = self.get(pipeline_id)
        return StoragePaths(self.base_dir, pipeline.storage_id, pipeline.feature_prefix)

    def _save(self, pipeline: Pipeline, merge_flags: bool = True):
        pipeline.updated_at = now_iso()
        state_file = pipeline_state_path(self.base_dir, pipeline.id)
        if merge_flags and state_file.exists():
            # control flags may have been set by another process since our last load
            on_disk = Pipeline.from_json(state_file.read_text())
            pipeline.abort_requested = pipeline.abort_requested or on_disk.abort_requested
            pipeline.pause_requested = pipeline.pause_requested or on_disk.pause_requested
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state_file.write_text(pipeline.to_json())
        logger.debug(f"State saved: {pipeline.id} status={pipeline.status.value} "
                     f"req={pipeline.phase.requirement_index} retry={pipeline.phase.retry_count}")

    # ------------------------------------------------------------
    # Setters
    # ------------------------------------------------------------

    def update_phase(self, pipeline_id: str, current: Optional[PipelineStatus] = None,
                     requirement_index: Optional[int] = None,
                     retry_count: Optional[int] = None) -> Pipeline:
        """Move the phase record. Status follows the phase unless pause/abort is pending."""
        pipeline = self.get(pipeline_id)
        if current is not None:
            pipeline.phase.current = current
            if not (pipeline.pause_requested or pipeline.abort_requested):
                pipeline.status = current
        if requirement_index is not None:
            pipeline.phase.requirement_index = requirement_index
        if retry_count is not None:
            pipeline.phase.retry_count = retry_count
        self._save(pipeline)
        return pipeline

    def update_status(self, pipeline_id: str, status: PipelineStatus) -> Pipeline:
        pipeline = self.get(pipeline_id)
        if pipeline.status is not status:
            logger.debug(f"Pipeline {pipeline_id}: {pipeline.status.value} → {status.value}")
        pipeline.status = status
        self._save(pipeline)
        return pipeline

    def set_requirements(self, pipeline_id: str, requirements: List[Requirement]) -> Pipeline:
        pipeline = self.get(pipeline_id)
        pipeline.requirements = list(requirements)
        pipeline.phase.total_requirements = len(requirements)
        self._save(pipeline)
        return pipeline

    def set_epics(self, pipeline_id: str, epics: List[Epic]) -> Pipeline:
        pipeline = self.get(pipeline_id)
        pipeline.epics = list(epics)
        for epic in pipeline.epics:
            epic.progress = compute_epic_progress(epic, pipeline.requirements)
            epic.status = derive_epic_status(epic.progress)
        self._save(pipeline)
        return pipeline

    def update_requirement(self, pipeline_id: str, requirement_id: str,
                           status: RequirementStatus) -> Requirement:
        """
        Set a requirement's status. Status is monotonic
        (pending → in_progress → completed|failed); regressions are refused.
        """
        pipeline = self.get(pipeline_id)
        requirement = pipeline.requirement(requirement_id)
        if status.rank < requirement.status.rank or (
                requirement.status.is_terminal and status is not requirement.status):
            logger.warning(f"⚠️ Refusing status regression for {requirement_id}: "
                           f"{requirement.status.value} → {status.value}")
            return requirement
        requirement.status = status
        self._save(pipeline)
        return requirement

    def update_epic_progress(self, pipeline_id: str, epic_id: Optional[str]):
        pipeline = self.get(pipeline_id)
        epic = find_epic(pipeline.epics, epic_id)
        if epic is None:
            return None
        epic.progress = compute_epic_progress(epic, pipeline.requirements)
        epic.status = derive_epic_status(epic.progress)
        self._save(pipeline)
        return epic

    def add_artifact(self, pipeline_id: str, artifact: Artifact) -> Pipeline:
        pipeline = self.get(pipeline_id)
        pipeline.artifacts.append(artifact)
        self._save(pipeline)
        return pipeline

    def set_session_id(self, pipeline_id: str, session_id: Optional[str]) -> Pipeline:
        pipeline = self.get(pipeline_id)
        pipeline.session_id = session_id
        self._save(pipeline)
        return pipeline

    def set_awaiting_user_input(self, pipeline_id: str, awaiting: bool) -> Pipeline:
        pipeline = self.get(pipeline_id)
        pipeline.awaiting_user_input = awaiting
        self._save(pipeline)
        return pipeline

    def add_user_answer(self, pipeline_id: str, answer: str) -> Pipeline:
        pipeline = self.get(pipeline_id)
        pipeline.user_answers.append(answer)
        pipeline.awaiting_user_input = False
        self._save(pipeline)
        return pipeline

    # ------------------------------------------------------------
    # Control flags (sampled by the loop, never pushed)
    # ------------------------------------------------------------

    def request_pause(self, pipeline_id: str):
        pipeline = self.get(pipeline_id)
        pipeline.pause_requested = True
        self._save(pipeline)
        logger.info(f"⏸️ Pause requested for {pipeline_id}")

    def request_abort(self, pipeline_id: str):
        pipeline = self.get(pipeline_id)
        pipeline.abort_requested = True
        self._save(pipeline)
        logger.info(f"🛑 Abort requested for {pipeline_id}")

    def clear_pause(self, pipeline_id: str):
        pipeline = self._refresh(pipeline_id)
        pipeline.pause_requested = False
        pipeline.awaiting_user_input = False
        self._save(pipeline, merge_flags=False)

    def _refresh(self, pipeline_id: str) -> Pipeline:
        """Pick up flags set by another process (e.g. `flightpath abort`)."""
        pipeline = self.get(pipeline_id)
        state_file = pipeline_state_path(self.base_dir, pipeline_id)
        if state_file.exists():
            on_disk = Pipeline.from_json(state_file.read_text())
            pipeline.abort_requested = pipeline.abort_requested or on_disk.abort_requested
            pipeline.pause_requested = pipeline.pause_requested or on_disk.pause_requested
        return pipeline

    def is_pause_requested(self, pipeline_id: str) -> bool:
        return self._refresh(pipeline_id).pause_requested

    def is_abort_requested(self, pipeline_id: str) -> bool:
        return self._refresh(pipeline_id).abort_requested

    # ------------------------------------------------------------
    # Events
    # ------------------------------------------------------------

    def event_log(self, pipeline_id: str) -> EventLog:
        return EventLog(self.storage_paths(pipeline_id).event_log_path)

    def append_event(self, pipeline_id: str, event_type: Union[EventType, str],
                     data: Optional[dict] = None) -> PipelineEvent:
        type_name = event_type.value if isinstance(event_type, EventType) else str(event_type)
        event = PipelineEvent(type=type_name, data=data or {})
        pipeline = self.get(pipeline_id)
        pipeline.events.append(event)
        del pipeline.events[:-STATE_EVENT_TAIL]
        self._save(pipeline)
        try:
            self.event_log(pipeline_id).append(event, pipeline_id)
        except OSError as e:
            logger.warning(f"Could not append to event log: {e}")
        for callback in list(self._subscribers.get(pipeline_id, [])):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event subscriber raised on {type_name}: {e}")
        return event

    def get_events(self, pipeline_id: str) -> List[PipelineEvent]:
        return self.event_log(pipeline_id).read_events()

    def subscribe(self, pipeline_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for new events. Returns an unsubscribe function."""
        self._subscribers.setdefault(pipeline_id, []).append(callback)

        def unsubscribe():
            subs = self._subscribers.get(pipeline_id, [])
            if callback in subs:
                subs.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------
    # Progress log
    # ------------------------------------------------------------

    def update_progress(self, pipeline_id: str, message: str):
        """Prepend an entry to PROGRESS.md (newest first)."""
        pipeline = self.get(pipeline_id)
        progress_file = self.storage_paths(pipeline_id).progress_path
        progress_file.parent.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        if progress_file.exists():
            content = progress_file.read_text()
        else:
            content = (f"# Progress Log\n\n**Project:** {pipeline.project_name}\n"
                       f"**Pipeline ID:** {pipeline.id}\n**Started:** {pipeline.created_at}\n\n---\n\n")

        index = pipeline.phase.requirement_index + 1
        entry = (f"## [{timestamp}] Requirement {index}/{pipeline.phase.total_requirements} "
                 f"- {pipeline.phase.current.value.upper()}\n\n{message}\n\n---\n\n")

        parts = content.split("---\n\n", 1)
        if len(parts) == 2:
            content = parts[0] + "---\n\n" + entry + parts[1]
        else:
            content += entry

        progress_file.write_text(content)
