"""Tests for model_tools -- toolset assembly from configuration."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from model_tools import build_registry, get_local_tools, load_mcp_tools, load_skills
from tendril_cli.config import ToolsConfig
from tools.process_registry import ProcessRegistry


class TestGetLocalTools:
    def test_all_enabled(self, tmp_path):
        tools = get_local_tools(ToolsConfig(), tmp_path, ProcessRegistry())
        assert [t.name for t in tools] == [
            "bash", "bash_output", "bash_kill",
            "read_file", "write_file", "edit_file",
            "record_note", "recall_notes",
        ]

    def test_toggles(self, tmp_path):
        config = ToolsConfig(enable_bash=False, enable_note=False)
        tools = get_local_tools(config, tmp_path, ProcessRegistry())
        assert [t.name for t in tools] == ["read_file", "write_file", "edit_file"]

    def test_background_tools_share_one_registry(self, tmp_path):
        registry = ProcessRegistry()
        bash, bash_output, bash_kill = get_local_tools(
            ToolsConfig(enable_file_tools=False, enable_note=False), tmp_path, registry,
        )
        assert bash.registry is bash_output.registry is bash_kill.registry is registry

    def test_skill_tool_added_with_loader(self, tmp_path):
        loader = load_skills(ToolsConfig(), tmp_path / "skills")
        tools = get_local_tools(ToolsConfig(enable_bash=False, enable_file_tools=False, enable_note=False),
                                tmp_path, ProcessRegistry(), skill_loader=loader)
        assert [t.name for t in tools] == ["get_skill"]
        assert tools[0].loader is loader


class TestLoadSkills:
    def test_disabled_returns_none(self, tmp_path):
        assert load_skills(ToolsConfig(enable_skills=False), tmp_path) is None

    def test_discovers_skills(self, tmp_path):
        skill_dir = tmp_path / "greet"
        skill_dir.mkdir()
        (skill_dir / "SKILL.md").write_text("---\nname: greet\ndescription: Say hello.\n---\nHi.\n", encoding="utf-8")
        loader = load_skills(ToolsConfig(), tmp_path)
        assert loader.names() == ["greet"]


class TestLoadMCPTools:
    @pytest.mark.asyncio
    async def test_disabled_skips_manager(self, tmp_path):
        manager = MagicMock()
        manager.connect_all = AsyncMock()
        assert await load_mcp_tools(ToolsConfig(enable_mcp=False), tmp_path / "mcp.json", manager) == []
        manager.connect_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_enabled_returns_manager_tools(self, tmp_path):
        tool = MagicMock()
        tool.name = "remote"
        manager = MagicMock()
        manager.connect_all = AsyncMock(return_value=[tool])
        assert await load_mcp_tools(ToolsConfig(), tmp_path / "mcp.json", manager) == [tool]


def test_build_registry_merges_toolsets(tmp_path):
    local = get_local_tools(ToolsConfig(enable_bash=False, enable_note=False), tmp_path, ProcessRegistry())
    registry = build_registry(local, [])
    assert registry.names() == ["read_file", "write_file", "edit_file"]
    assert len(registry.schemas("openai")) == 3
