"""
Feature-spec intake: requirements, epics and their derived progress.

The feature spec document is produced upstream (QA phase) and is loosely shaped:
ids, priorities and most fields may be missing. Parsing never fails on a
missing optional field; duplicate ids are warned about, not rejected.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple

from flightpath_models import (
    Requirement, Epic, EpicProgress, EpicStatus, RequirementStatus,
)
from flightpath_paths import sanitize_project_name, DEFAULT_FEATURE_PREFIX

logger = logging.getLogger(__name__)

PRIORITY_SCALE = {
    "critical": 1,
    "high": 2,
    "medium": 3,
    "low": 4,
    "trivial": 5,
    "nice-to-have": 5,
}


@dataclass
class FeatureSpec:
    project_name: str
    feature_prefix: str = DEFAULT_FEATURE_PREFIX
    requirements: List[Requirement] = field(default_factory=list)
    epics: List[Epic] = field(default_factory=list)


def coerce_priority(value: Any) -> int:
    """
    Numbers pass through; the qualitative scale maps to 1..5.
    Anything unrecognized (including missing) becomes 0.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in PRIORITY_SCALE:
            return PRIORITY_SCALE[text]
        try:
            return int(float(text))
        except ValueError:
            pass
    return 0


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _warn_duplicates(kind: str, ids: List[str]):
    seen = set()
    for item_id in ids:
        if item_id in seen:
            logger.warning(f"⚠️ Duplicate {kind} id '{item_id}' in feature spec")
        seen.add(item_id)


def parse_requirement(data: Dict[str, Any], index: int) -> Requirement:
    return Requirement(
        id=str(data.get("id") or f"req-{index + 1}"),
        title=data.get("title") or data.get("name") or f"Requirement {index + 1}",
        description=data.get("description", ""),
        priority=coerce_priority(data.get("priority")),
        status=RequirementStatus.PENDING,
        acceptance_criteria=_as_list(data.get("acceptanceCriteria")),
        epic_id=data.get("epicId"),
        platform=data.get("platform"),
        area=data.get("area"),
        dependencies=_as_list(data.get("dependencies")),
        files=_as_list(data.get("files")),
    )


def parse_epic(data: Dict[str, Any], index: int, requirements: List[Requirement]) -> Epic:
    epic_id = str(data.get("id") or f"epic-{index + 1}")
    return Epic(
        id=epic_id,
        title=data.get("title") or data.get("name") or f"Epic {index + 1}",
        goal=data.get("goal", ""),
        priority=coerce_priority(data.get("priority")),
        definition_of_done=_as_list(data.get("definitionOfDone")),
        requirement_ids=[r.id for r in requirements if r.epic_id == epic_id],
    )


def parse_feature_spec(data: Dict[str, Any]) -> FeatureSpec:
    project_name = (data.get("featureName") or data.get("projectName")
                    or data.get("name") or "untitled-project")

    requirements = [parse_requirement(r, i) for i, r in enumerate(data.get("requirements") or [])]
    _warn_duplicates("requirement", [r.id for r in requirements])

    epics = [parse_epic(e, i, requirements) for i, e in enumerate(data.get("epics") or [])]
    _warn_duplicates("epic", [e.id for e in epics])

    prefix = data.get("featurePrefix") or sanitize_project_name(project_name)
    logger.info(f"Feature spec parsed: {len(requirements)} requirements, {len(epics)} epics "
                f"(project={project_name}, prefix={prefix})")
    return FeatureSpec(project_name=project_name, feature_prefix=prefix,
                       requirements=requirements, epics=epics)


def load_feature_spec(path: Path) -> FeatureSpec:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Feature spec not found: {path}")
    return parse_feature_spec(json.loads(path.read_text()))


def order_requirements(requirements: List[Requirement]) -> List[Tuple[int, Requirement]]:
    """Stable priority order: ascending priority, ties keep their original position."""
    return sorted(enumerate(requirements), key=lambda pair: (pair[1].priority, pair[0]))


def compute_epic_progress(epic: Epic, requirements: List[Requirement]) -> EpicProgress:
    linked = [r for r in requirements if r.id in epic.requirement_ids]
    return EpicProgress(
        total=len(linked),
        completed=sum(1 for r in linked if r.status is RequirementStatus.COMPLETED),
        failed=sum(1 for r in linked if r.status is RequirementStatus.FAILED),
        in_progress=sum(1 for r in linked if r.status is RequirementStatus.IN_PROGRESS),
    )


def derive_epic_status(progress: EpicProgress) -> EpicStatus:
    if progress.total > 0 and progress.completed == progress.total:
        return EpicStatus.COMPLETED
    if progress.in_progress > 0:
        return EpicStatus.IN_PROGRESS
    if progress.completed > 0 or progress.failed > 0:
        return EpicStatus.PARTIAL
    return EpicStatus.PENDING


def find_epic(epics: List[Epic], epic_id: Optional[str]) -> Optional[Epic]:
    if not epic_id:
        return None
    for epic in epics:
        if epic.id == epic_id:
            return epic
    return None
