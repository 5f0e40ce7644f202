"""
Error classification and tool-path resolution.

A. Classifier: the five error classes and their precedence
B. Error messages: configuration and all-explorers-failed wording
C. Path resolver: artifact redirection, user paths, Bash rewriting
D. Storage layout and project-name sanitizing
"""

import os
from pathlib import Path

import pytest

from flightpath_errors import (
    AllExplorersFailedError, ConfigurationError, ErrorType, ExplorerTimeout, classify_error,
)
from flightpath_paths import (
    StoragePaths, extract_feature_prefix, make_storage_id, pipeline_state_path,
    resolve_artifact_path, resolve_path, resolve_tool_input, rewrite_command,
    sanitize_project_name,
)

CWD = "/work/app"
STORAGE = "/base/.claude"
SID = "my-app-1234abcd"


# ============================================================
# A. CLASSIFIER
# ============================================================

@pytest.mark.parametrize("message, expected", [
    ("Not logged in. Please run login", ErrorType.AUTHENTICATION),
    ("Invalid API key provided", ErrorType.AUTHENTICATION),
    ("HTTP 401 Unauthorized", ErrorType.AUTHENTICATION),
    ("model not found: claude-x", ErrorType.MODEL),
    ("The model claude-x is not available in your region", ErrorType.MODEL),
    ("ENOENT: no such file or directory", ErrorType.CONFIGURATION),
    ("permission denied: /etc/shadow", ErrorType.CONFIGURATION),
    ("Process exited with code 1", ErrorType.CONFIGURATION),
    ("Request timed out", ErrorType.TRANSIENT),
    ("read ECONNRESET", ErrorType.TRANSIENT),
    ("Anthropic API rate limit (429)", ErrorType.TRANSIENT),
    ("Anthropic API overloaded (529)", ErrorType.TRANSIENT),
    ("502 Bad Gateway", ErrorType.TRANSIENT),
    ("something odd happened", ErrorType.UNKNOWN),
])
def test_classify_error_types(message, expected):
    assert classify_error(RuntimeError(message)).type is expected


def test_auth_wins_over_transient():
    # both "401" and "timeout" present: first rule in order wins
    result = classify_error("401 after timeout")
    assert result.type is ErrorType.AUTHENTICATION
    assert result.retryable is False


def test_model_not_found_is_not_configuration():
    assert classify_error("model not found").type is ErrorType.MODEL


def test_only_transient_and_unknown_are_retryable():
    assert classify_error("overloaded").retryable
    assert classify_error("mystery").retryable
    assert not classify_error("enoent").retryable
    assert not classify_error("api key missing").retryable


def test_classification_dict_carries_action():
    data = classify_error("ECONNRESET").to_dict()
    assert data["type"] == "transient"
    assert data["retryable"] is True
    assert data["suggestedAction"]


# ============================================================
# B. ERROR MESSAGES
# ============================================================

def test_configuration_error_always_classifies_as_configuration():
    assert classify_error(ConfigurationError("bad working dir")).type is ErrorType.CONFIGURATION
    assert classify_error(ConfigurationError("Target path not found: /x")).type is ErrorType.CONFIGURATION


def test_explorer_timeout_is_transient():
    error = ExplorerTimeout("api", 60)
    assert str(error) == "Explorer api timeout after 60s"
    assert classify_error(error).type is ErrorType.TRANSIENT


def test_all_explorers_failed_message_lists_lanes():
    error = AllExplorersFailedError([
        {"type": "pattern", "error": "boom", "errorType": "unknown"},
        {"type": "api", "error": "ENOENT", "errorType": "configuration"},
        {"type": "test", "error": "timeout", "errorType": "transient"},
    ])
    message = str(error)
    assert message.startswith("All parallel explorers failed: pattern: boom (unknown)")
    assert "api: ENOENT (configuration)" in message
    assert "file permissions" in message


def test_all_explorers_failed_without_config_error_has_no_advice():
    error = AllExplorersFailedError([{"type": "test", "error": "x", "errorType": "unknown"}])
    assert "file permissions" not in str(error)


# ============================================================
# C. PATH RESOLVER
# ============================================================

def test_root_level_artifact_ignores_directory():
    for path in ("feature-map.json", "some/dir/feature-map.json", "/abs/feature-map.json"):
        assert resolve_artifact_path(path, STORAGE, SID) == os.path.join(STORAGE, SID, "feature-map.json")


def test_prefixed_artifact_uses_parent_dir():
    assert (resolve_artifact_path("myfeat/feature-spec.json", STORAGE, SID)
            == os.path.join(STORAGE, SID, "myfeat", "feature-spec.json"))


def test_prefixed_artifact_falls_back_to_content_field():
    content = '{"featurePrefix": "checkout", "requirements": []}'
    assert (resolve_artifact_path("smoke-tests.json", STORAGE, SID, content)
            == os.path.join(STORAGE, SID, "checkout", "smoke-tests.json"))


def test_prefixed_artifact_without_prefix_is_left_alone():
    assert resolve_artifact_path("feature-spec.json", STORAGE, SID) is None
    assert resolve_path("feature-spec.json", CWD, STORAGE, SID) == os.path.join(CWD, "feature-spec.json")


def test_extract_prefix_skips_storage_dirname():
    assert extract_feature_prefix(".claude/feature-spec.json") is None
    assert extract_feature_prefix("a/b/feature-spec.json") == "b"


def test_user_paths():
    assert resolve_path("src/app.py", CWD, STORAGE, SID) == "/work/app/src/app.py"
    assert resolve_path("/etc/hosts", CWD, STORAGE, SID) == "/etc/hosts"
    assert resolve_path("https://example.com/a.json", CWD, STORAGE, SID) == "https://example.com/a.json"
    assert resolve_path("~/notes.md", CWD, STORAGE, SID) == str(Path.home() / "notes.md")


def test_claude_marker_maps_into_storage_root():
    assert resolve_path("/anything/.claude/pipelines/x.json", CWD, STORAGE, SID) == "/base/.claude/pipelines/x.json"


def test_resolve_tool_input_does_not_mutate():
    original = {"file_path": "feature-map.json"}
    args, changed = resolve_tool_input("Read", original, CWD, SID, STORAGE)
    assert changed
    assert args["file_path"] == os.path.join(STORAGE, SID, "feature-map.json")
    assert original == {"file_path": "feature-map.json"}


def test_write_uses_content_for_prefix():
    args, _ = resolve_tool_input("Write", {"file_path": "feature-spec.json",
                                           "content": '{"featurePrefix": "auth"}'}, CWD, SID, STORAGE)
    assert args["file_path"] == os.path.join(STORAGE, SID, "auth", "feature-spec.json")


def test_search_tools_default_to_cwd():
    args, changed = resolve_tool_input("Glob", {"pattern": "**/*.py"}, CWD, SID, STORAGE)
    assert args["path"] == CWD
    assert changed


def test_unchanged_input_reports_no_change():
    args, changed = resolve_tool_input("Read", {"file_path": "/work/app/a.py"}, CWD, SID, STORAGE)
    assert not changed
    assert args == {"file_path": "/work/app/a.py"}


def test_bash_command_rewrite():
    rewritten = rewrite_command("cat feature-map.json | jq .", CWD, STORAGE, SID)
    assert rewritten == f'cd "{CWD}" && cat {STORAGE}/{SID}/feature-map.json | jq .'


def test_bash_rewrite_is_idempotent():
    once = rewrite_command("ls && cat myfeat/smoke-tests.json", CWD, STORAGE, SID)
    assert rewrite_command(once, CWD, STORAGE, SID) == once
    assert once.count("cd ") == 1


def test_bash_rewrite_escapes_quotes_in_cwd():
    assert rewrite_command("ls", '/tmp/we"ird', STORAGE, SID) == 'cd "/tmp/we\\"ird" && ls'


# ============================================================
# D. STORAGE LAYOUT
# ============================================================

def test_sanitize_project_name():
    assert sanitize_project_name("My Cool App!") == "my-cool-app"
    assert sanitize_project_name("  --Weird__Name--  ") == "weirdname"
    assert sanitize_project_name("") == "untitled-project"
    assert sanitize_project_name(None) == "untitled-project"


def test_storage_id_uses_pipeline_prefix():
    assert make_storage_id("My App", "1234abcd-5678") == "my-app-1234abcd"


def test_storage_paths_layout(tmp_path):
    paths = StoragePaths(str(tmp_path), "proj-1234abcd", "checkout")
    assert paths.root == tmp_path / ".claude"
    assert paths.event_log_path == tmp_path / ".claude" / "proj-1234abcd" / "checkout" / "events.ndjson"
    assert paths.artifacts_dir.name == "artifacts"
    assert pipeline_state_path(str(tmp_path), "abc") == tmp_path / ".claude" / "pipelines" / "abc.json"
