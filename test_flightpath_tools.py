"""
Local tool executor, tool registry and HTTP request provider.
"""

import json

import httpx
import pytest

from flightpath_tools import (
    BUILD_TOOLS, HttpRequestProvider, READ_ONLY_TOOLS, ToolExecutor, ToolRegistry, is_error_result,
    run_browser_tool, tool_definitions,
)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    return 'hello'\n\nmain()\n")
    (tmp_path / "README.md").write_text("# demo\n")
    return tmp_path


def test_registry_resolves_exact_then_prefix_then_default():
    registry = ToolRegistry(default="default")
    registry.register("Read", "read")
    registry.register_prefix("web_", "browser")
    assert registry.resolve("Read") == "read"
    assert registry.resolve("web_click") == "browser"
    assert registry.resolve("Unknown") == "default"
    assert registry.names() == ["Read"]


@pytest.mark.asyncio
async def test_read_numbers_lines_with_offset(project):
    executor = ToolExecutor([project])
    out = await executor.execute("Read", {"file_path": str(project / "src" / "app.py"), "offset": 1, "limit": 1})
    assert out == "     2\t    return 'hello'"


@pytest.mark.asyncio
async def test_paths_outside_roots_are_blocked(project, tmp_path_factory):
    outside = tmp_path_factory.mktemp("elsewhere") / "x.txt"
    out = await ToolExecutor([project]).execute("Write", {"file_path": str(outside), "content": "x"})
    assert is_error_result(out)
    assert "Path blocked" in out
    assert not outside.exists()


@pytest.mark.asyncio
async def test_write_then_edit(project):
    executor = ToolExecutor([project])
    target = project / "src" / "new" / "mod.py"
    assert (await executor.execute("Write", {"file_path": str(target), "content": "a = 1\na = 1\n"})).startswith("OK")

    ambiguous = await executor.execute("Edit", {"file_path": str(target), "old_string": "a = 1", "new_string": "a = 2"})
    assert "appears 2 times" in ambiguous

    done = await executor.execute("Edit", {"file_path": str(target), "old_string": "a = 1",
                                           "new_string": "a = 2", "replace_all": True})
    assert done.startswith("OK")
    assert target.read_text() == "a = 2\na = 2\n"


@pytest.mark.asyncio
async def test_bash_reports_exit_code_and_blocks_dangerous(project):
    executor = ToolExecutor([project])
    out = await executor.execute("Bash", {"command": f'cd "{project}" && ls src'})
    assert "app.py" in out
    assert out.endswith("EXIT_CODE: 0")
    assert (await executor.execute("Bash", {"command": "sudo rm thing"})).startswith("ERROR: Blocked")


@pytest.mark.asyncio
async def test_glob_grep_ls(project):
    executor = ToolExecutor([project])
    assert (await executor.execute("Glob", {"pattern": "**/*.py", "path": str(project)})).endswith("app.py")
    grep = await executor.execute("Grep", {"pattern": "return", "path": str(project)})
    assert grep == f"{project / 'src' / 'app.py'}:2:return 'hello'"
    assert await executor.execute("LS", {"path": str(project)}) == "README.md\nsrc/"


@pytest.mark.asyncio
async def test_unknown_tool_is_an_error_string(project):
    assert (await ToolExecutor([project]).execute("Teleport", {})) == "ERROR: Unknown tool 'Teleport'"


@pytest.mark.asyncio
async def test_http_request_tool():
    def handler(request):
        assert request.method == "POST"
        assert json.loads(request.content) == {"name": "x"}
        return httpx.Response(201, json={"id": 7})

    provider = HttpRequestProvider(transport=httpx.MockTransport(handler))
    out = json.loads(await run_browser_tool(provider, "web_http_request", {
        "method": "post", "url": "http://api.local/items", "body": {"name": "x"},
    }))
    assert out["status"] == 201
    assert out["success"] is True
    assert json.loads(out["body"]) == {"id": 7}


def test_tool_sets_have_definitions():
    assert [d["name"] for d in tool_definitions(READ_ONLY_TOOLS)] == list(READ_ONLY_TOOLS)
    assert all("input_schema" in d for d in tool_definitions(BUILD_TOOLS))
    assert tool_definitions(["NoSuchTool"]) == []
