"""
Artifact persistence for one pipeline: plans, diffs, test results, screenshots.

Files land under <feature_dir>/artifacts/ and are registered on the pipeline.
Saving is best-effort from the orchestrator's point of view; callers log and
move on when a save fails.
"""

import asyncio
import json
import re
from pathlib import Path
from typing import Optional, Any

from flightpath_models import Artifact, TestVerdict

import logging
logger = logging.getLogger(__name__)


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", name).strip("-") or "artifact"


async def capture_git_diff(working_dir: str, timeout: float = 30.0) -> Optional[str]:
    """`git diff HEAD` in working_dir, or None if git is unavailable or the dir is not a repo."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", "diff", "HEAD",
            cwd=working_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"git diff unavailable: {e}")
        return None
    if proc.returncode != 0:
        logger.debug(f"git diff failed: {stderr.decode(errors='replace')[:200]}")
        return None
    return stdout.decode(errors="replace")


class ArtifactStore:

    def __init__(self, store, pipeline_id: str):
        self.store = store
        self.pipeline_id = pipeline_id

    @property
    def artifacts_dir(self) -> Path:
        return self.store.storage_paths(self.pipeline_id).artifacts_dir

    def _register(self, kind: str, path: Path, requirement_id: Optional[str]) -> Path:
        self.store.add_artifact(self.pipeline_id, Artifact(type=kind, path=str(path),
                                                           requirement_id=requirement_id))
        logger.debug(f"  Artifact saved: {kind} → {path}")
        return path

    def save_text(self, kind: str, name: str, text: str, requirement_id: Optional[str] = None) -> Path:
        path = self.artifacts_dir / _safe_name(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return self._register(kind, path, requirement_id)

    def save_json(self, kind: str, name: str, data: Any, requirement_id: Optional[str] = None) -> Path:
        return self.save_text(kind, name, json.dumps(data, indent=2, default=str), requirement_id)

    def save_bytes(self, data: bytes, name: str, kind: str = "screenshot",
                   requirement_id: Optional[str] = None) -> str:
        filename = _safe_name(name)
        if "." not in filename:
            filename += ".png"
        path = self.artifacts_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return str(self._register(kind, path, requirement_id))

    def save_plan(self, requirement_id: str, plan: str) -> Path:
        return self.save_text("plan", f"plan-{requirement_id}.md", plan, requirement_id)

    def save_diff(self, requirement_id: str, diff: str) -> Path:
        return self.save_text("diff", f"diff-{requirement_id}.patch", diff, requirement_id)

    def save_test_result(self, requirement_id: str, verdict: TestVerdict, reply: str) -> Path:
        return self.save_json("test_result", f"test-result-{requirement_id}.json", {
            "requirementId": requirement_id, **verdict.to_dict(), "reply": reply,
        }, requirement_id)
