"""
Tests for the execute tool - defaults, validation, progress, response shape
"""
import pytest
from mcp.shared.memory import create_connected_server_and_client_session

from run_box.models import ExecuteResult
from run_box.server import create_server, format_text_response


def text_of(result) -> str:
    return result.content[0].text


@pytest.mark.asyncio
async def test_lists_execute_tool(config, executor):
    server = create_server(config, executor)

    async with create_connected_server_and_client_session(server) as client:
        tools = (await client.list_tools()).tools

    assert [tool.name for tool in tools] == ["execute"]
    schema = tools[0].inputSchema
    assert schema["required"] == ["command"]
    assert set(schema["properties"]) == {"command", "cwd", "timeout"}
    assert set(tools[0].outputSchema["properties"]) == {
        "stdout", "stderr", "exitCode", "truncated", "killed",
    }


@pytest.mark.asyncio
async def test_execute_returns_structured_result(config, executor, tmp_path):
    server = create_server(config, executor)

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("execute", {"command": 'echo "hello world"'})

    assert result.isError is False
    assert result.structuredContent == {
        "stdout": "hello world\n",
        "stderr": "",
        "exitCode": 0,
        "truncated": False,
        "killed": False,
    }
    assert text_of(result) == f"{tmp_path} $ echo \"hello world\"\nhello world\n\n[exit code: 0]"


@pytest.mark.asyncio
async def test_execute_uses_default_cwd(config, executor, tmp_path):
    server = create_server(config, executor)

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("execute", {"command": "pwd"})

    assert result.structuredContent["stdout"].strip() == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_execute_honors_explicit_cwd(config, executor):
    server = create_server(config, executor)

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("execute", {"command": "pwd", "cwd": "/"})

    assert result.structuredContent["stdout"].strip() == "/"


@pytest.mark.asyncio
async def test_execute_rejects_missing_cwd(config, executor, registry):
    server = create_server(config, executor)

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool(
            "execute", {"command": "echo hi", "cwd": "/nonexistent/path/that/does/not/exist"},
        )

    assert result.isError is True
    assert text_of(result) == (
        "ERROR: Working directory does not exist: /nonexistent/path/that/does/not/exist"
    )
    assert result.structuredContent["exitCode"] == -1
    assert result.structuredContent["killed"] is False
    assert registry.count() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "arguments",
    [
        {"command": ""},
        {"command": "echo hi", "cwd": "relative/path"},
        {"command": "echo hi", "timeout": 999},
        {"command": "echo hi", "timeout": 3_600_001},
    ],
)
async def test_execute_validates_input(config, executor, arguments):
    server = create_server(config, executor)

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("execute", arguments)

    assert result.isError is True


@pytest.mark.asyncio
async def test_timeout_is_reported_as_error(config, executor):
    server = create_server(config, executor)

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("execute", {"command": "sleep 60", "timeout": 1000})

    assert result.isError is True
    assert result.structuredContent["killed"] is True
    assert result.structuredContent["exitCode"] == -1
    assert text_of(result).endswith("\n[KILLED: timeout]")


@pytest.mark.asyncio
async def test_truncation_is_reported_as_error(config, executor):
    server = create_server(config, executor)

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("execute", {"command": "yes aaaaaaaaaa | head -c 4096"})

    assert result.isError is True
    assert result.structuredContent["truncated"] is True
    assert "[OUTPUT TRUNCATED at 1024 bytes]" in result.structuredContent["stdout"]
    assert text_of(result).endswith("\n[OUTPUT TRUNCATED at 1024 bytes]")


@pytest.mark.asyncio
async def test_progress_notifications_arrive_before_result(config, executor):
    server = create_server(config, executor)
    messages: list[str] = []

    async def on_progress(progress: float, total: float | None, message: str | None) -> None:
        messages.append(message or "")

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool(
            "execute",
            {"command": "for i in 1 2 3; do echo $i; sleep 0.2; done"},
            progress_callback=on_progress,
        )

    assert len(messages) >= 2
    assert "".join(messages) == "1\n2\n3\n"
    assert result.structuredContent["exitCode"] == 0


def test_format_text_response_reports_exit_code():
    result = ExecuteResult(stdout="out\n", stderr="err\n", exit_code=3, truncated=False, killed=False)

    assert format_text_response("/tmp", "cmd", result, 100) == "/tmp $ cmd\nout\nerr\n\n[exit code: 3]"


def test_format_text_response_reports_truncation():
    result = ExecuteResult(stdout="aaa", stderr="", exit_code=-1, truncated=True, killed=True)

    text = format_text_response("/tmp", "yes", result, 100)

    assert text.endswith("\n[OUTPUT TRUNCATED at 100 bytes]")
    assert "[KILLED" not in text
