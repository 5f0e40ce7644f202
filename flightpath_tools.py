"""
Tool capability providers: local file/shell/search tools and browser tools.

Arguments arrive already rewritten by the path resolver, so every path is
absolute. Tools never raise into the agent loop: failures come back as
"ERROR: ..." strings, which the transport reports through the failure hook.
"""

import asyncio
import fnmatch
import json
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

import logging
logger = logging.getLogger(__name__)

SCREENSHOT_PLACEHOLDER = "(screenshot captured)"
BROWSER_TOOL_PREFIX = "web_"
BROWSER_TOOLS = (
    "web_navigate", "web_click", "web_type", "web_fill", "web_screenshot",
    "web_assert_visible", "web_assert_text", "web_wait", "web_http_request",
)

MAX_READ_CHARS = 30000
MAX_OUTPUT_CHARS = 10000
MAX_LISTING = 200

# Commands that would destroy the target project or the storage root
PROTECTED_PATTERNS = [
    "rm -rf /",
    "rm -rf ~",
    "rm -rf .claude",
    "git clean -fdx",
    "sudo ",
]


def is_error_result(result: str) -> bool:
    return isinstance(result, str) and result.startswith("ERROR:")


class ToolRegistry:
    """
    Closed mapping from tool name to handler, with prefix entries and one
    default passthrough for everything else.
    """

    def __init__(self, default: Callable):
        self.default = default
        self._handlers: Dict[str, Callable] = {}
        self._prefixes: Dict[str, Callable] = {}

    def register(self, name: str, handler: Callable):
        self._handlers[name] = handler

    def register_prefix(self, prefix: str, handler: Callable):
        self._prefixes[prefix] = handler

    def resolve(self, name: str) -> Callable:
        if name in self._handlers:
            return self._handlers[name]
        for prefix, handler in self._prefixes.items():
            if name.startswith(prefix):
                return handler
        return self.default

    def names(self) -> List[str]:
        return sorted(self._handlers)


class ToolExecutor:
    """Executes file, shell and search tools on the local filesystem."""

    def __init__(self, allowed_roots: List[Union[str, Path]], command_timeout: int = 120):
        self.allowed_roots = [Path(r).resolve() for r in allowed_roots]
        self.command_timeout = command_timeout
        self.registry = ToolRegistry(default=self._unknown)
        self.registry.register("Read", self._read)
        self.registry.register("Write", self._write)
        self.registry.register("Edit", self._edit)
        self.registry.register("Bash", self._bash)
        self.registry.register("Glob", self._glob)
        self.registry.register("Grep", self._grep)
        self.registry.register("LS", self._ls)

    @property
    def tool_names(self) -> List[str]:
        return self.registry.names()

    async def execute(self, tool_name: str, arguments: dict) -> str:
        """Execute a tool and return the result as a string."""
        handler = self.registry.resolve(tool_name)
        try:
            return await handler(tool_name, arguments or {})
        except Exception as e:
            return f"ERROR: {type(e).__name__}: {e}"

    async def _unknown(self, tool_name: str, args: dict) -> str:
        return f"ERROR: Unknown tool '{tool_name}'"

    def _validate_path(self, path: str) -> Path:
        """Resolve path and ensure it stays within an allowed root. Raises ValueError otherwise."""
        if not path:
            raise ValueError("No path provided")
        full_path = Path(path).expanduser().resolve()
        for root in self.allowed_roots:
            if full_path == root or root in full_path.parents:
                return full_path
        raise ValueError(f"Path blocked: '{path}' is outside the allowed directories")

    async def _read(self, tool_name: str, args: dict) -> str:
        full_path = self._validate_path(args.get("file_path", ""))
        if not full_path.exists():
            return f"ERROR: File not found: {full_path}"
        if not full_path.is_file():
            return f"ERROR: Not a file: {full_path}"

        lines = full_path.read_text(errors="replace").splitlines()
        offset = int(args.get("offset") or 0)
        limit = int(args.get("limit") or len(lines))
        numbered = [f"{i + 1:>6}\t{line}" for i, line in enumerate(lines[offset:offset + limit], start=offset)]
        content = "\n".join(numbered)
        if len(content) > MAX_READ_CHARS:
            content = content[:MAX_READ_CHARS // 2] + "\n\n... (truncated) ...\n\n" + content[-MAX_READ_CHARS // 3:]
        logger.debug(f"  TOOL Read: {full_path} ({len(content)} chars)")
        return content

    async def _write(self, tool_name: str, args: dict) -> str:
        full_path = self._validate_path(args.get("file_path", ""))
        content = args.get("content", "")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content)
        logger.debug(f"  TOOL Write: {full_path} ({len(content)} bytes)")
        return f"OK: Wrote {len(content)} bytes to {full_path}"

    async def _edit(self, tool_name: str, args: dict) -> str:
        full_path = self._validate_path(args.get("file_path", ""))
        old = args.get("old_string", "")
        new = args.get("new_string", "")
        if not full_path.exists():
            return f"ERROR: File not found: {full_path}"
        if not old:
            return "ERROR: old_string is required"

        content = full_path.read_text()
        count = content.count(old)
        if count == 0:
            return f"ERROR: old_string not found in {full_path}"
        if count > 1 and not args.get("replace_all"):
            return f"ERROR: old_string appears {count} times in {full_path}; pass replace_all or add context"

        content = content.replace(old, new) if args.get("replace_all") else content.replace(old, new, 1)
        full_path.write_text(content)
        logger.debug(f"  TOOL Edit: {full_path} ({count} replacement(s))")
        return f"OK: Edited {full_path}"

    async def _bash(self, tool_name: str, args: dict) -> str:
        command = args.get("command", "")
        if not command:
            return "ERROR: No command provided"
        cmd_lower = command.lower()
        for pattern in PROTECTED_PATTERNS:
            if pattern in cmd_lower:
                return f"ERROR: Blocked dangerous command: '{command[:80]}'"

        timeout = float(args.get("timeout") or self.command_timeout)
        logger.debug(f"  TOOL Bash: {command[:100]}")
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, "TERM": "dumb", "NO_COLOR": "1"},
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return f"ERROR: Command timed out after {timeout:g}s"

        output = stdout.decode(errors="replace")
        if stderr:
            output += ("\n" if output else "") + f"STDERR: {stderr.decode(errors='replace')}"
        output += f"\nEXIT_CODE: {proc.returncode}"
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:5000] + "\n\n... (truncated) ...\n\n" + output[-3000:]
        return output

    async def _glob(self, tool_name: str, args: dict) -> str:
        base = self._validate_path(args.get("path", ""))
        pattern = args.get("pattern", "")
        if not pattern:
            return "ERROR: No pattern provided"
        if os.path.isabs(pattern):
            pattern = os.path.relpath(pattern, base)
        matches = sorted(str(p) for p in base.glob(pattern) if p.is_file())
        if not matches:
            return "No files found"
        return "\n".join(matches[:MAX_LISTING])

    async def _grep(self, tool_name: str, args: dict) -> str:
        base = self._validate_path(args.get("path", ""))
        try:
            regex = re.compile(args.get("pattern", ""), re.IGNORECASE if args.get("-i") else 0)
        except re.error as e:
            return f"ERROR: Invalid pattern: {e}"
        file_glob = args.get("glob")

        files = [base] if base.is_file() else sorted(p for p in base.rglob("*") if p.is_file())
        hits = []
        for path in files:
            if any(part.startswith(".") for part in path.relative_to(base.parent if base.is_file() else base).parts):
                continue
            if file_glob and not fnmatch.fnmatch(path.name, file_glob):
                continue
            try:
                text = path.read_text(errors="replace")
            except OSError:
                continue
            for line_no, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    hits.append(f"{path}:{line_no}:{line.strip()[:200]}")
                    if len(hits) >= MAX_LISTING:
                        return "\n".join(hits) + "\n... (more matches truncated)"
        return "\n".join(hits) if hits else "No matches found"

    async def _ls(self, tool_name: str, args: dict) -> str:
        full_path = self._validate_path(args.get("path", ""))
        if not full_path.is_dir():
            return f"ERROR: Not a directory: {full_path}"
        entries = []
        for entry in sorted(full_path.iterdir()):
            entries.append(entry.name + ("/" if entry.is_dir() else ""))
        return "\n".join(entries[:MAX_LISTING]) or "(empty directory)"


# ============================================================
# Browser automation
# ============================================================

class BrowserProvider:
    """
    Browser automation capability. Concrete drivers (e.g. a Playwright
    wrapper) override these; web_http_request is covered by
    HttpRequestProvider.
    """

    async def navigate(self, url: str) -> Dict[str, Any]:
        raise NotImplementedError("web_navigate is not available without a browser driver")

    async def click(self, selector: str) -> Dict[str, Any]:
        raise NotImplementedError("web_click is not available without a browser driver")

    async def type(self, selector: str, text: str) -> Dict[str, Any]:
        raise NotImplementedError("web_type is not available without a browser driver")

    async def fill(self, selector: str, value: str) -> Dict[str, Any]:
        raise NotImplementedError("web_fill is not available without a browser driver")

    async def screenshot(self, name: str) -> bytes:
        raise NotImplementedError("web_screenshot is not available without a browser driver")

    async def assert_visible(self, selector: str) -> Dict[str, Any]:
        raise NotImplementedError("web_assert_visible is not available without a browser driver")

    async def assert_text(self, text: str, selector: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError("web_assert_text is not available without a browser driver")

    async def wait(self, milliseconds: int = 0, selector: Optional[str] = None) -> Dict[str, Any]:
        await asyncio.sleep(milliseconds / 1000.0)
        return {"success": True, "waitedMs": milliseconds}

    async def http_request(self, method: str, url: str, headers: Optional[dict] = None,
                           body: Any = None) -> Dict[str, Any]:
        raise NotImplementedError("web_http_request is not available")


class HttpRequestProvider(BrowserProvider):
    """Serves web_http_request over httpx; other browser tools stay unavailable."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def http_request(self, method: str, url: str, headers: Optional[dict] = None,
                           body: Any = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"headers": headers or {}}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.request(method.upper(), url, **kwargs)
        return {
            "success": resp.is_success,
            "status": resp.status_code,
            "headers": dict(resp.headers),
            "body": resp.text[:MAX_OUTPUT_CHARS],
        }


ArtifactSink = Callable[[bytes, str], Optional[str]]


async def run_browser_tool(provider: BrowserProvider, tool_name: str, args: dict,
                           artifact_sink: Optional[ArtifactSink] = None) -> str:
    """
    Execute a web_* tool directly and return an agent-visible JSON string.
    Screenshot bytes go to the artifact sink; the agent sees a placeholder.
    """
    try:
        if tool_name == "web_navigate":
            result = await provider.navigate(args.get("url", ""))
        elif tool_name == "web_click":
            result = await provider.click(args.get("selector", ""))
        elif tool_name == "web_type":
            result = await provider.type(args.get("selector", ""), args.get("text", ""))
        elif tool_name == "web_fill":
            result = await provider.fill(args.get("selector", ""), args.get("value", ""))
        elif tool_name == "web_screenshot":
            name = args.get("name") or "screenshot"
            data = await provider.screenshot(name)
            saved = artifact_sink(data, name) if artifact_sink else None
            result = {"success": True, "screenshot": SCREENSHOT_PLACEHOLDER, "path": saved}
        elif tool_name == "web_assert_visible":
            result = await provider.assert_visible(args.get("selector", ""))
        elif tool_name == "web_assert_text":
            result = await provider.assert_text(args.get("text", ""), args.get("selector"))
        elif tool_name == "web_wait":
            result = await provider.wait(int(args.get("ms") or 0), args.get("selector"))
        elif tool_name == "web_http_request":
            result = await provider.http_request(args.get("method", "GET"), args.get("url", ""),
                                                 args.get("headers"), args.get("body"))
        else:
            return f"ERROR: Unknown browser tool '{tool_name}'"
    except Exception as e:
        return f"ERROR: {type(e).__name__}: {e}"

    if isinstance(result, dict):
        result = {k: (SCREENSHOT_PLACEHOLDER if isinstance(v, (bytes, bytearray)) else v)
                  for k, v in result.items()}
    return json.dumps(result, default=str)


# ============================================================
# Tool definitions sent to the model
# ============================================================

def _schema(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_STR = {"type": "string"}

TOOL_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "Read": {"description": "Read a file (line-numbered).",
             "input_schema": _schema({"file_path": _STR, "offset": {"type": "integer"},
                                      "limit": {"type": "integer"}}, ["file_path"])},
    "Write": {"description": "Create or overwrite a file.",
              "input_schema": _schema({"file_path": _STR, "content": _STR}, ["file_path", "content"])},
    "Edit": {"description": "Replace old_string with new_string in a file.",
             "input_schema": _schema({"file_path": _STR, "old_string": _STR, "new_string": _STR,
                                      "replace_all": {"type": "boolean"}},
                                     ["file_path", "old_string", "new_string"])},
    "Bash": {"description": "Run a shell command in the project directory.",
             "input_schema": _schema({"command": _STR, "description": _STR,
                                      "timeout": {"type": "number"}}, ["command"])},
    "Glob": {"description": "Find files matching a glob pattern.",
             "input_schema": _schema({"pattern": _STR, "path": _STR}, ["pattern"])},
    "Grep": {"description": "Search file contents with a regular expression.",
             "input_schema": _schema({"pattern": _STR, "path": _STR, "glob": _STR}, ["pattern"])},
    "LS": {"description": "List a directory.",
           "input_schema": _schema({"path": _STR}, [])},
    "TodoWrite": {"description": "Update your task list.",
                  "input_schema": _schema({"todos": {"type": "array", "items": {"type": "object"}}},
                                          ["todos"])},
    "AskUserQuestion": {"description": "Ask the user one or more questions. The pipeline pauses until they answer.",
                        "input_schema": _schema({"questions": {"type": "array", "items": {"type": "object"}}},
                                                ["questions"])},
    "AskUserInput": {"description": "Request structured input (form fields) from the user.",
                     "input_schema": _schema({"id": _STR, "header": _STR, "description": _STR,
                                              "fields": {"type": "array", "items": {"type": "object"}}},
                                             ["fields"])},
    "web_navigate": {"description": "Open a URL in the browser.",
                     "input_schema": _schema({"url": _STR}, ["url"])},
    "web_click": {"description": "Click an element.",
                  "input_schema": _schema({"selector": _STR}, ["selector"])},
    "web_type": {"description": "Type text into an element.",
                 "input_schema": _schema({"selector": _STR, "text": _STR}, ["selector", "text"])},
    "web_fill": {"description": "Fill an input with a value.",
                 "input_schema": _schema({"selector": _STR, "value": _STR}, ["selector", "value"])},
    "web_screenshot": {"description": "Capture a screenshot.",
                       "input_schema": _schema({"name": _STR}, [])},
    "web_assert_visible": {"description": "Assert an element is visible.",
                           "input_schema": _schema({"selector": _STR}, ["selector"])},
    "web_assert_text": {"description": "Assert text is present on the page.",
                        "input_schema": _schema({"text": _STR, "selector": _STR}, ["text"])},
    "web_wait": {"description": "Wait for a duration or a selector.",
                 "input_schema": _schema({"ms": {"type": "integer"}, "selector": _STR}, [])},
    "web_http_request": {"description": "Send an HTTP request.",
                         "input_schema": _schema({"method": _STR, "url": _STR,
                                                  "headers": {"type": "object"}, "body": {}}, ["url"])},
}

READ_ONLY_TOOLS = ("Read", "Glob", "Grep", "LS")
BUILD_TOOLS = ("Read", "Write", "Edit", "Bash", "Glob", "Grep", "LS", "TodoWrite",
               "AskUserQuestion", "AskUserInput")
TEST_TOOLS = BUILD_TOOLS + BROWSER_TOOLS


def tool_definitions(names) -> List[Dict[str, Any]]:
    return [{"name": name, **TOOL_DEFINITIONS[name]} for name in names if name in TOOL_DEFINITIONS]
