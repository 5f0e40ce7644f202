"""
Tool-call path resolution and artifact storage layout.

The agent believes it is working inside the target project. Pipeline
artifacts (feature specs, feature maps, smoke tests) must never land in that
tree, so every tool call is rewritten before it executes:

    Read  feature-map.json          -> <base>/.claude/<storage_id>/feature-map.json
    Write myfeat/feature-spec.json  -> <base>/.claude/<storage_id>/myfeat/feature-spec.json
    Read  src/app.py                -> <cwd>/src/app.py
    Bash  cat feature-map.json      -> cd "<cwd>" && cat <storage>/feature-map.json

Everything here is pure: no filesystem access, no shared state.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Dict, Any

ARTIFACT_FILES = (
    "feature-spec.json",
    "feature-spec.v3.json",
    "feature-understanding.json",
    "smoke-tests.json",
    "feature-map.json",
)
ROOT_LEVEL_ARTIFACTS = ("feature-understanding.json", "feature-map.json")

URL_PREFIXES = ("http://", "https://", "file://")
STORAGE_DIRNAME = ".claude"
DEFAULT_FEATURE_PREFIX = "pipeline"

_PREFIX_FIELD_RE = re.compile(r'"featurePrefix"\s*:\s*"([^"]+)"')
_ARTIFACT_IN_COMMAND_RE = re.compile(
    r"(?<![\w.\-/~])(/?(?:[\w.\-~]+/)*(?:"
    + "|".join(re.escape(name) for name in sorted(ARTIFACT_FILES, key=len, reverse=True))
    + r"))(?![\w.\-])"
)
_NOT_A_PREFIX = {"", ".", "..", "~", STORAGE_DIRNAME}


def sanitize_project_name(name: Optional[str]) -> str:
    """Lowercase, dash-separated, [a-z0-9-] only. Falls back to 'untitled-project'."""
    text = (name or "").lower()
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"[^a-z0-9-]", "", text)
    text = re.sub(r"-+", "-", text).strip("-")
    return text or "untitled-project"


def make_storage_id(project_name: str, pipeline_id: str) -> str:
    return f"{sanitize_project_name(project_name)}-{pipeline_id[:8]}"


def is_url(path: str) -> bool:
    return path.startswith(URL_PREFIXES)


def resolve_user_path(path: str, cwd: str) -> str:
    """Expand ~, keep absolute paths and URLs, resolve the rest against cwd."""
    if not path or is_url(path):
        return path
    if path == "~":
        return str(Path.home())
    if path.startswith("~/"):
        return str(Path.home() / path[2:])
    if os.path.isabs(path):
        return path
    return os.path.normpath(os.path.join(cwd, path))


def extract_feature_prefix(path: str, content: Optional[str] = None) -> Optional[str]:
    """Prefix from the directory holding the artifact, else from a featurePrefix field in content."""
    parent = os.path.basename(os.path.dirname(path.rstrip("/")))
    if parent not in _NOT_A_PREFIX:
        return parent
    if content:
        match = _PREFIX_FIELD_RE.search(content)
        if match:
            return match.group(1)
    return None


def resolve_artifact_path(path: str, storage_root: str, storage_id: str,
                          content: Optional[str] = None) -> Optional[str]:
    """
    Storage location for a recognized artifact filename, or None.

    Root-level artifacts ignore any directory in the original path. Others
    need a feature prefix; without one the path is left alone.
    """
    name = os.path.basename(path)
    if name not in ARTIFACT_FILES:
        return None
    if name in ROOT_LEVEL_ARTIFACTS:
        return os.path.join(storage_root, storage_id, name)
    prefix = extract_feature_prefix(path, content)
    if not prefix:
        return None
    return os.path.join(storage_root, storage_id, prefix, name)


def resolve_path(path: str, cwd: str, storage_root: str, storage_id: str,
                 content: Optional[str] = None) -> str:
    if not path or is_url(path):
        return path
    artifact = resolve_artifact_path(path, storage_root, storage_id, content)
    if artifact:
        return artifact
    marker = f"{STORAGE_DIRNAME}/"
    if marker in path:
        tail = path.split(marker)[-1]
        return os.path.join(storage_root, tail)
    return resolve_user_path(path, cwd)


def rewrite_command(command: str, cwd: str, storage_root: str, storage_id: str) -> str:
    """Redirect artifact paths embedded in a shell command, then pin it to cwd."""
    def _swap(match):
        original = match.group(1)
        return resolve_artifact_path(original, storage_root, storage_id) or original

    rewritten = _ARTIFACT_IN_COMMAND_RE.sub(_swap, command)
    escaped = cwd.replace('"', '\\"')
    cd_prefix = f'cd "{escaped}" && '
    if rewritten.startswith(cd_prefix):
        return rewritten
    return cd_prefix + rewritten


def _resolve_key(args: Dict[str, Any], key: str, cwd: str, storage_root: str,
                 storage_id: str, content: Optional[str] = None):
    value = args.get(key)
    if isinstance(value, str) and value:
        args[key] = resolve_path(value, cwd, storage_root, storage_id, content)


def resolve_tool_input(tool_name: str, tool_input: Dict[str, Any], cwd: str,
                       storage_id: str, storage_root: str) -> Tuple[Dict[str, Any], bool]:
    """
    Rewrite a tool call's arguments. Returns (new_args, changed).

    The input dict is never mutated; callers may share it across lanes.
    """
    args = dict(tool_input or {})

    if tool_name in ("Read", "Edit", "MultiEdit", "NotebookEdit"):
        _resolve_key(args, "file_path", cwd, storage_root, storage_id)
    elif tool_name == "Write":
        _resolve_key(args, "file_path", cwd, storage_root, storage_id, args.get("content"))
    elif tool_name in ("Glob", "Grep", "LS"):
        if args.get("path"):
            _resolve_key(args, "path", cwd, storage_root, storage_id)
        else:
            args["path"] = cwd
    elif tool_name == "Bash":
        command = args.get("command")
        if isinstance(command, str) and command:
            args["command"] = rewrite_command(command, cwd, storage_root, storage_id)
    else:
        for key in ("path", "directory"):
            _resolve_key(args, key, cwd, storage_root, storage_id)

    return args, args != (tool_input or {})


@dataclass
class StoragePaths:
    """
    Artifact storage layout for one pipeline:

        <base>/.claude/
            pipelines/<pipeline_id>.json
            <storage_id>/
                feature-map.json, feature-understanding.json
                <feature_prefix>/
                    events.ndjson
                    PROGRESS.md
                    artifacts/
    """
    base_dir: str
    storage_id: str
    feature_prefix: str = DEFAULT_FEATURE_PREFIX

    @property
    def root(self) -> Path:
        return Path(self.base_dir) / STORAGE_DIRNAME

    @property
    def storage_dir(self) -> Path:
        return self.root / self.storage_id

    @property
    def feature_dir(self) -> Path:
        return self.storage_dir / (self.feature_prefix or DEFAULT_FEATURE_PREFIX)

    @property
    def artifacts_dir(self) -> Path:
        return self.feature_dir / "artifacts"

    @property
    def event_log_path(self) -> Path:
        return self.feature_dir / "events.ndjson"

    @property
    def progress_path(self) -> Path:
        return self.feature_dir / "PROGRESS.md"


def pipeline_state_path(base_dir: str, pipeline_id: str) -> Path:
    return Path(base_dir) / STORAGE_DIRNAME / "pipelines" / f"{pipeline_id}.json"
