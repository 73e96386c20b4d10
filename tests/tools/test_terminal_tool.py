"""Tests for tools.terminal_tool -- bash, bash_output and bash_kill."""

import sys
import time

import pytest

from tools.process_registry import ProcessRegistry
from tools.terminal_tool import (
    DEFAULT_TIMEOUT,
    MAX_TIMEOUT,
    BashKillTool,
    BashOutputTool,
    BashTool,
    clamp_timeout,
    format_bash_output,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell semantics")


@pytest.fixture
def registry():
    reg = ProcessRegistry()
    yield reg
    reg.cleanup_all()


@pytest.fixture
def tools(registry, tmp_path):
    return (
        BashTool(registry, workspace_dir=str(tmp_path)),
        BashOutputTool(registry),
        BashKillTool(registry),
    )


class TestHelpers:
    def test_format_sections(self):
        text = format_bash_output("out", "err", bash_id="proc_1", exit_code=2)
        assert text == "out\n[stderr]:\nerr\n[bash_id]:\nproc_1\n[exit_code]:\n2"

    def test_format_empty(self):
        assert format_bash_output() == "(no output)"

    def test_zero_exit_code_omitted(self):
        assert format_bash_output("ok", exit_code=0) == "ok"

    @pytest.mark.parametrize("value,expected", [
        (None, DEFAULT_TIMEOUT), ("abc", DEFAULT_TIMEOUT), (0, 1), (5, 5), (10_000, MAX_TIMEOUT),
    ])
    def test_clamp_timeout(self, value, expected):
        assert clamp_timeout(value) == expected


class TestBashTool:
    def test_schema(self, tools):
        bash = tools[0]
        spec = bash.to_spec("anthropic")
        assert spec["name"] == "bash"
        assert spec["input_schema"]["required"] == ["command"]
        assert "run_in_background" in spec["input_schema"]["properties"]

    @pytest.mark.asyncio
    async def test_foreground_success(self, tools, tmp_path):
        result = await tools[0].execute(command="echo hi; pwd")
        assert result.success
        assert result.content == f"hi\n{tmp_path.resolve()}\n"

    @pytest.mark.asyncio
    async def test_foreground_failure(self, tools):
        result = await tools[0].execute(command="echo bad >&2; exit 4")
        assert not result.success
        assert "[stderr]:\nbad" in result.error
        assert "[exit_code]:\n4" in result.error
        assert result.text.startswith("Error: ")

    @pytest.mark.asyncio
    async def test_empty_command_rejected(self, tools):
        result = await tools[0].execute(command="   ")
        assert not result.success

    @pytest.mark.asyncio
    async def test_background_job_lifecycle(self, tools, registry):
        bash, bash_output, bash_kill = tools

        started = await bash.execute(command="printf 'a\\nb\\n'; sleep 30", run_in_background=True)
        assert started.success
        bash_id = registry.list_sessions()[0]["session_id"]
        assert f"bash_id='{bash_id}'" in started.content

        session = registry.get(bash_id)
        for _ in range(100):
            if len(session.output_lines) >= 2:
                break
            time.sleep(0.05)

        polled = await bash_output.execute(bash_id=bash_id)
        assert polled.success
        assert polled.content.startswith("a\nb\n[bash_id]:")
        assert polled.content.endswith("[status]:\nrunning")

        killed = await bash_kill.execute(bash_id=bash_id)
        assert killed.success
        assert killed.content.endswith("[status]:\nterminated")
        assert registry.get(bash_id) is None

    @pytest.mark.asyncio
    async def test_unknown_bash_id(self, tools):
        _, bash_output, bash_kill = tools
        for tool in (bash_output, bash_kill):
            result = await tool.execute(bash_id="proc_nope")
            assert not result.success
            assert "Shell not found: proc_nope" in result.error
