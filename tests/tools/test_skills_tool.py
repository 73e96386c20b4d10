"""Tests for tools/skills_tool.py -- skill discovery and the get_skill tool."""

import pytest

from tools.skills_tool import (
    SKILLS_HEADING,
    GetSkillTool,
    SkillLoader,
    load_skill,
    parse_frontmatter,
)


def _make_skill(skills_dir, name, frontmatter_extra="", body="Step 1: Do the thing.", category=None):
    """Helper to create a minimal skill directory."""
    skill_dir = skills_dir / category / name if category else skills_dir / name
    skill_dir.mkdir(parents=True, exist_ok=True)
    content = f"""\
---
name: {name}
description: Description for {name}.
{frontmatter_extra}---

# {name}

{body}
"""
    (skill_dir / "SKILL.md").write_text(content, encoding="utf-8")
    return skill_dir


# ---------------------------------------------------------------------------
# parse_frontmatter
# ---------------------------------------------------------------------------


class TestParseFrontmatter:
    def test_valid_frontmatter(self):
        fm, body = parse_frontmatter("---\nname: test\ndescription: A test.\n---\n\n# Body\n")
        assert fm == {"name": "test", "description": "A test."}
        assert "# Body" in body

    def test_no_frontmatter(self):
        content = "# Just a heading\nSome content.\n"
        assert parse_frontmatter(content) == ({}, content)

    def test_empty_frontmatter(self):
        fm, body = parse_frontmatter("---\n---\n\n# Body\n")
        assert fm == {}
        assert "# Body" in body

    def test_crlf_line_endings(self):
        fm, _ = parse_frontmatter("---\r\nname: win\r\ndescription: d\r\n---\r\nBody\r\n")
        assert fm["name"] == "win"

    def test_dashes_inside_a_value_do_not_close_the_block(self):
        fm, body = parse_frontmatter("---\nname: a---b\ndescription: d\n---\nBody\n")
        assert fm["name"] == "a---b"
        assert body == "Body\n"

    def test_malformed_yaml_fallback(self):
        fm, _ = parse_frontmatter("---\nname: test\ndescription: desc\n: invalid\n---\n\nBody.\n")
        assert fm["name"] == "test"
        assert fm["description"] == "desc"


# ---------------------------------------------------------------------------
# load_skill
# ---------------------------------------------------------------------------


class TestLoadSkill:
    def test_fields(self, tmp_path):
        skill_dir = _make_skill(
            tmp_path, "pdf",
            frontmatter_extra="license: MIT\nallowed-tools: [bash, read_file]\nmetadata:\n  version: 2\n",
        )
        skill = load_skill(skill_dir / "SKILL.md")
        assert skill.name == "pdf"
        assert skill.description == "Description for pdf."
        assert skill.license == "MIT"
        assert skill.allowed_tools == ["bash", "read_file"]
        assert skill.metadata == {"version": "2"}
        assert skill.content.startswith("# pdf")

    def test_missing_description_is_skipped(self, tmp_path):
        path = tmp_path / "SKILL.md"
        path.write_text("---\nname: half\n---\nBody\n", encoding="utf-8")
        assert load_skill(path) is None

    def test_bundled_paths_become_absolute(self, tmp_path):
        skill_dir = _make_skill(
            tmp_path, "render",
            body=(
                "Run `scripts/render.py` first.\n"
                "Then see layout.md.\n"
                "Read [the guide](./reference/guide.md)\n"
                "Ignore `scripts/missing.py`."
            ),
        )
        (skill_dir / "scripts").mkdir()
        (skill_dir / "scripts" / "render.py").write_text("print()", encoding="utf-8")
        (skill_dir / "layout.md").write_text("x", encoding="utf-8")
        (skill_dir / "reference").mkdir()
        (skill_dir / "reference" / "guide.md").write_text("x", encoding="utf-8")

        content = load_skill(skill_dir / "SKILL.md").content
        root = skill_dir.resolve()
        assert f"`{root / 'scripts' / 'render.py'}`" in content
        assert f"see `{root / 'layout.md'}` (use read_file to access)." in content
        assert f"Read [the guide](`{root / 'reference' / 'guide.md'}`)" in content
        assert "`scripts/missing.py`" in content


# ---------------------------------------------------------------------------
# SkillLoader
# ---------------------------------------------------------------------------


class TestSkillLoader:
    def test_discovers_nested_skills(self, tmp_path):
        _make_skill(tmp_path, "alpha")
        _make_skill(tmp_path, "beta", category="devops")
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "SKILL.md").write_text("no frontmatter", encoding="utf-8")

        loader = SkillLoader(tmp_path)
        assert [s.name for s in loader.discover()] == ["alpha", "beta"]
        assert loader.names() == ["alpha", "beta"]

    def test_duplicate_names_keep_first(self, tmp_path):
        _make_skill(tmp_path, "same", category="a")
        _make_skill(tmp_path, "same", category="b", body="second")
        loader = SkillLoader(tmp_path)
        loader.discover()
        assert "second" not in loader.get("same").content

    def test_missing_directory(self, tmp_path):
        loader = SkillLoader(tmp_path / "nope")
        assert loader.discover() == []
        assert loader.metadata_prompt() == ""

    def test_metadata_prompt_lists_names_only(self, tmp_path):
        _make_skill(tmp_path, "alpha", body="SECRET BODY")
        loader = SkillLoader(tmp_path)
        loader.discover()
        prompt = loader.metadata_prompt()
        assert prompt.startswith(SKILLS_HEADING)
        assert "- `alpha`: Description for alpha." in prompt
        assert "SECRET BODY" not in prompt


# ---------------------------------------------------------------------------
# GetSkillTool
# ---------------------------------------------------------------------------


class TestGetSkillTool:
    @pytest.fixture
    def tool(self, tmp_path):
        _make_skill(tmp_path, "alpha")
        loader = SkillLoader(tmp_path)
        loader.discover()
        return GetSkillTool(loader)

    def test_schema(self, tool):
        spec = tool.to_spec("anthropic")
        assert spec["name"] == "get_skill"
        assert spec["input_schema"]["required"] == ["skill_name"]

    @pytest.mark.asyncio
    async def test_returns_full_skill(self, tool):
        result = await tool.execute(skill_name="alpha")
        assert result.success
        assert result.content.startswith("\n# Skill: alpha\n\nDescription for alpha.")
        assert "Step 1: Do the thing." in result.content

    @pytest.mark.asyncio
    async def test_unknown_skill_lists_available(self, tool):
        result = await tool.execute(skill_name="ghost")
        assert not result.success
        assert result.error == "Skill 'ghost' does not exist. Available skills: alpha"
