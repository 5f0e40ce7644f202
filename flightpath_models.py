"""
Data models for the flightpath orchestrator.

Pipelines, requirements and epics are persisted as JSON; the exploration and
turn types are ephemeral and only serialized into events and artifacts.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from enum import Enum
import json


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PipelineStatus(Enum):
    IDLE = "idle"
    QA = "qa"
    EXPLORING = "exploring"
    PLANNING = "planning"
    EXECUTING = "executing"
    TESTING = "testing"
    PAUSED = "paused"
    ABORTED = "aborted"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PIPELINE_STATUSES = (PipelineStatus.ABORTED, PipelineStatus.COMPLETED, PipelineStatus.FAILED)
RUNNABLE_PHASES = (PipelineStatus.EXPLORING, PipelineStatus.PLANNING,
                   PipelineStatus.EXECUTING, PipelineStatus.TESTING)


class RequirementStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return 0 if self is RequirementStatus.PENDING else 1 if self is RequirementStatus.IN_PROGRESS else 2

    @property
    def is_terminal(self) -> bool:
        return self in (RequirementStatus.COMPLETED, RequirementStatus.FAILED)


class EpicStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PARTIAL = "partial"
    COMPLETED = "completed"


class ExplorerType(Enum):
    PATTERN = "pattern"
    API = "api"
    TEST = "test"


class ModelTier(Enum):
    HAIKU = "haiku"
    SONNET = "sonnet"
    OPUS = "opus"


class ExplorationDepth(Enum):
    QUICK = "quick"
    MEDIUM = "medium"
    THOROUGH = "thorough"


# ============================================================
# Requirements & epics
# ============================================================

@dataclass
class Requirement:
    id: str
    title: str
    description: str = ""
    priority: int = 0
    status: RequirementStatus = RequirementStatus.PENDING
    acceptance_criteria: List[str] = field(default_factory=list)
    epic_id: Optional[str] = None
    platform: Optional[str] = None  # "mobile", "backend" or "both"
    area: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "title": self.title, "description": self.description,
            "priority": self.priority, "status": self.status.value,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "epicId": self.epic_id, "platform": self.platform, "area": self.area,
            "dependencies": list(self.dependencies), "files": list(self.files),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Requirement":
        return cls(
            id=data["id"], title=data.get("title", ""),
            description=data.get("description", ""),
            priority=data.get("priority", 0),
            status=RequirementStatus(data.get("status", "pending")),
            acceptance_criteria=list(data.get("acceptanceCriteria", [])),
            epic_id=data.get("epicId"), platform=data.get("platform"),
            area=data.get("area"),
            dependencies=list(data.get("dependencies", [])),
            files=list(data.get("files", [])),
        )


@dataclass
class EpicProgress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0

    def to_dict(self) -> dict:
        return {"total": self.total, "completed": self.completed,
                "failed": self.failed, "inProgress": self.in_progress}

    @classmethod
    def from_dict(cls, data: dict) -> "EpicProgress":
        return cls(total=data.get("total", 0), completed=data.get("completed", 0),
                   failed=data.get("failed", 0), in_progress=data.get("inProgress", 0))


@dataclass
class Epic:
    id: str
    title: str
    goal: str = ""
    priority: int = 0
    definition_of_done: List[str] = field(default_factory=list)
    requirement_ids: List[str] = field(default_factory=list)
    status: EpicStatus = EpicStatus.PENDING
    progress: EpicProgress = field(default_factory=EpicProgress)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "title": self.title, "goal": self.goal,
            "priority": self.priority, "definitionOfDone": list(self.definition_of_done),
            "requirementIds": list(self.requirement_ids), "status": self.status.value,
            "progress": self.progress.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Epic":
        return cls(
            id=data["id"], title=data.get("title", ""), goal=data.get("goal", ""),
            priority=data.get("priority", 0),
            definition_of_done=list(data.get("definitionOfDone", [])),
            requirement_ids=list(data.get("requirementIds", [])),
            status=EpicStatus(data.get("status", "pending")),
            progress=EpicProgress.from_dict(data.get("progress", {})),
        )


# ============================================================
# Pipeline
# ============================================================

@dataclass
class PhaseState:
    current: PipelineStatus = PipelineStatus.IDLE
    requirement_index: int = 0
    retry_count: int = 0
    total_requirements: int = 0

    def to_dict(self) -> dict:
        return {"current": self.current.value, "requirementIndex": self.requirement_index,
                "retryCount": self.retry_count, "totalRequirements": self.total_requirements}

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseState":
        return cls(
            current=PipelineStatus(data.get("current", "idle")),
            requirement_index=data.get("requirementIndex", 0),
            retry_count=data.get("retryCount", 0),
            total_requirements=data.get("totalRequirements", 0),
        )


@dataclass
class PipelineEvent:
    """One entry of the pipeline's append-only event stream."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {"ts": self.ts, "type": self.type, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineEvent":
        return cls(type=data["type"], data=data.get("data", {}), ts=data.get("ts", now_iso()))


@dataclass
class Artifact:
    type: str
    path: str
    requirement_id: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {"type": self.type, "path": self.path,
                "requirementId": self.requirement_id, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: dict) -> "Artifact":
        return cls(type=data["type"], path=data["path"],
                   requirement_id=data.get("requirementId"),
                   created_at=data.get("createdAt", now_iso()))


@dataclass
class Pipeline:
    id: str
    project_name: str
    working_dir: str
    storage_id: str
    feature_prefix: str = "pipeline"
    status: PipelineStatus = PipelineStatus.IDLE
    phase: PhaseState = field(default_factory=PhaseState)
    requirements: List[Requirement] = field(default_factory=list)
    epics: List[Epic] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    session_id: Optional[str] = None
    abort_requested: bool = False
    pause_requested: bool = False
    awaiting_user_input: bool = False
    user_answers: List[str] = field(default_factory=list)
    events: List[PipelineEvent] = field(default_factory=list)  # recent tail only
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def requirement(self, requirement_id: str) -> Requirement:
        for req in self.requirements:
            if req.id == requirement_id:
                return req
        raise KeyError(f"Unknown requirement: {requirement_id}")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PIPELINE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id, "projectName": self.project_name,
            "workingDir": self.working_dir, "storageId": self.storage_id,
            "featurePrefix": self.feature_prefix, "status": self.status.value,
            "phase": self.phase.to_dict(),
            "requirements": [r.to_dict() for r in self.requirements],
            "epics": [e.to_dict() for e in self.epics],
            "artifacts": [a.to_dict() for a in self.artifacts],
            "sessionId": self.session_id,
            "abortRequested": self.abort_requested,
            "pauseRequested": self.pause_requested,
            "awaitingUserInput": self.awaiting_user_input,
            "userAnswers": list(self.user_answers),
            "events": [e.to_dict() for e in self.events],
            "createdAt": self.created_at, "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pipeline":
        return cls(
            id=data["id"], project_name=data.get("projectName", "untitled-project"),
            working_dir=data.get("workingDir", "."), storage_id=data["storageId"],
            feature_prefix=data.get("featurePrefix", "pipeline"),
            status=PipelineStatus(data.get("status", "idle")),
            phase=PhaseState.from_dict(data.get("phase", {})),
            requirements=[Requirement.from_dict(r) for r in data.get("requirements", [])],
            epics=[Epic.from_dict(e) for e in data.get("epics", [])],
            artifacts=[Artifact.from_dict(a) for a in data.get("artifacts", [])],
            session_id=data.get("sessionId"),
            abort_requested=data.get("abortRequested", False),
            pause_requested=data.get("pauseRequested", False),
            awaiting_user_input=data.get("awaitingUserInput", False),
            user_answers=list(data.get("userAnswers", [])),
            events=[PipelineEvent.from_dict(e) for e in data.get("events", [])],
            created_at=data.get("createdAt", now_iso()),
            updated_at=data.get("updatedAt", now_iso()),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> "Pipeline":
        return cls.from_dict(json.loads(json_str))


# ============================================================
# Exploration
# ============================================================

@dataclass
class Pattern:
    name: str
    files: List[str] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "files": list(self.files), "description": self.description}


@dataclass
class RelatedFiles:
    templates: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)
    tests: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"templates": list(self.templates), "types": list(self.types), "tests": list(self.tests)}


@dataclass
class ExplorerResult:
    type: ExplorerType
    patterns: List[Pattern] = field(default_factory=list)
    related_files: RelatedFiles = field(default_factory=RelatedFiles)
    api_endpoints: List[str] = field(default_factory=list)
    test_patterns: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    duration_ms: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value, "patterns": [p.to_dict() for p in self.patterns],
            "relatedFiles": self.related_files.to_dict(),
            "apiEndpoints": list(self.api_endpoints),
            "testPatterns": list(self.test_patterns), "notes": list(self.notes),
            "duration": self.duration_ms, "error": self.error, "errorType": self.error_type,
        }


@dataclass
class MergedExplorationContext:
    patterns: List[Pattern] = field(default_factory=list)
    related_files: RelatedFiles = field(default_factory=RelatedFiles)
    api_endpoints: List[str] = field(default_factory=list)
    test_patterns: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    existing_components: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "patterns": [p.to_dict() for p in self.patterns],
            "relatedFiles": self.related_files.to_dict(),
            "apiEndpoints": list(self.api_endpoints),
            "testPatterns": list(self.test_patterns), "notes": list(self.notes),
            "existingComponents": list(self.existing_components),
        }


@dataclass
class ComplexityFactors:
    text_length: int = 0
    estimated_files: int = 0
    platform: str = "backend"
    is_novel: bool = False
    cross_module: int = 0

    def to_dict(self) -> dict:
        return {"textLength": self.text_length, "estimatedFiles": self.estimated_files,
                "platform": self.platform, "isNovel": self.is_novel,
                "crossModule": self.cross_module}


@dataclass
class ParallelExplorationResult:
    context: MergedExplorationContext
    lanes: List[ExplorerResult]
    complexity_score: int
    factors: ComplexityFactors
    model_tier: ModelTier
    model_id: str
    duration_ms: int = 0


# ============================================================
# Agent turns
# ============================================================

@dataclass
class ToolCallRecord:
    id: str
    name: str
    input: Dict[str, Any]
    result: Optional[str] = None
    duration_ms: Optional[int] = None
    error: bool = False

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "input": self.input,
                "result": self.result, "durationMs": self.duration_ms, "error": self.error}


@dataclass
class UserQuestion:
    header: str
    question: str
    options: List[str] = field(default_factory=list)
    multi_select: bool = False

    @property
    def key(self) -> str:
        return f"{self.header}:{self.question}"

    def to_dict(self) -> dict:
        return {"header": self.header, "question": self.question,
                "options": list(self.options), "multiSelect": self.multi_select}


@dataclass
class UserInputRequest:
    id: str
    header: str = "Input Required"
    description: str = ""
    fields: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"id": self.id, "header": self.header,
                "description": self.description, "fields": self.fields}


@dataclass
class TurnResult:
    reply: str = "No response from agent"
    session_id: Optional[str] = None
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    awaiting_user_input: bool = False
    user_questions: List[UserQuestion] = field(default_factory=list)
    input_requests: List[UserInputRequest] = field(default_factory=list)
    structured_output: Optional[Any] = None
    usage: Dict[str, int] = field(default_factory=dict)
    total_cost_usd: Optional[float] = None
    total_turns: int = 0


@dataclass
class TestVerdict:
    __test__ = False

    passed: bool
    confidence: str  # "explicit" or "unknown"
    reason: str

    def to_dict(self) -> dict:
        return {"passed": self.passed, "confidence": self.confidence, "reason": self.reason}
