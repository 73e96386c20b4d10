"""Skills: reusable instruction documents the agent loads on demand.

A skill is a directory holding a ``SKILL.md`` file: YAML frontmatter with at
least ``name`` and ``description``, followed by markdown instructions::

    skills/
      pdf-report/
        SKILL.md
        scripts/render.py
        reference/layout.md

Only names and descriptions go into the system prompt (``metadata_prompt``);
the ``get_skill`` tool returns a skill's full body when the model asks for it.
Relative references to files bundled with a skill are rewritten to absolute
paths so ``read_file`` and ``bash`` can reach them from any working directory.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from tools.base import Tool, ToolResult, ToolSchema

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"
SKILLS_HEADING = "## Available Skills"

_FRONTMATTER_RE = re.compile(r"\A---\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)(.*)\Z", re.DOTALL | re.MULTILINE)

# `scripts/run.py`, python scripts/run.py
_BUNDLED_DIR_RE = re.compile(r"(python\s+|`)((?:scripts|examples|templates|reference)/[^\s`)]+)")
# "see guide.md." / "read notes.txt,"
_DOC_MENTION_RE = re.compile(
    r"(see|read|refer to|check)\s+([A-Za-z0-9_-]+\.(?:md|txt|json|yaml))([.,;\s])", re.IGNORECASE
)
# [Layout](./reference/layout.md)
_MD_LINK_RE = re.compile(
    r"(?:(Read|See|Check|Refer to|Load|View)\s+)?\[(`?[^`\]]+`?)\]"
    r"\(((?:\./)?[^)]+\.(?:md|txt|json|yaml|js|py|html))\)",
    re.IGNORECASE,
)


def parse_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Split ``SKILL.md`` text into (frontmatter, body).

    Falls back to plain ``key: value`` lines when the YAML is malformed.
    Returns ``({}, content)`` when there is no frontmatter block.
    """
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return {}, content
    raw, body = match.group(1), match.group(2)

    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:
        fallback: Dict[str, Any] = {}
        for line in raw.splitlines():
            key, sep, value = line.partition(":")
            if sep and key.strip():
                fallback[key.strip()] = value.strip().strip("\"'")
        return fallback, body
    return (parsed if isinstance(parsed, dict) else {}), body


def _parse_allowed_tools(value: Any) -> Optional[List[str]]:
    if isinstance(value, list):
        names = [str(v).strip() for v in value if str(v).strip()]
    elif isinstance(value, str):
        inner = value.strip()
        if inner.startswith("[") and inner.endswith("]"):
            inner = inner[1:-1]
        names = [part.strip().strip("\"'") for part in inner.split(",") if part.strip()]
    else:
        return None
    return names or None


@dataclass
class Skill:
    name: str
    description: str
    content: str
    path: Path
    license: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_prompt(self) -> str:
        return f"\n# Skill: {self.name}\n\n{self.description}\n\n---\n\n{self.content}\n"


def _rewrite_bundled_paths(content: str, skill_dir: Path) -> str:
    def bundled(match):
        target = skill_dir / match.group(2)
        return f"{match.group(1)}{target}" if target.exists() else match.group(0)

    def mention(match):
        target = skill_dir / match.group(2)
        if not target.exists():
            return match.group(0)
        return f"{match.group(1)} `{target}` (use read_file to access){match.group(3)}"

    def link(match):
        prefix, text, rel = match.group(1), match.group(2), match.group(3)
        target = skill_dir / (rel[2:] if rel.startswith("./") else rel)
        if not target.exists():
            return match.group(0)
        lead = f"{prefix} " if prefix else ""
        return f"{lead}[{text}](`{target}`) (use read_file to access)"

    content = _BUNDLED_DIR_RE.sub(bundled, content)
    content = _DOC_MENTION_RE.sub(mention, content)
    return _MD_LINK_RE.sub(link, content)


def load_skill(skill_file: Union[str, Path]) -> Optional[Skill]:
    """Load one ``SKILL.md``. Returns None when it is unreadable or incomplete."""
    skill_file = Path(skill_file)
    try:
        raw = skill_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read skill %s: %s", skill_file, e)
        return None

    frontmatter, body = parse_frontmatter(raw)
    name = str(frontmatter.get("name") or "").strip()
    description = str(frontmatter.get("description") or "").strip()
    if not name or not description:
        logger.warning("Skipping %s: frontmatter needs name and description", skill_file)
        return None

    metadata = frontmatter.get("metadata")
    skill_dir = skill_file.parent.resolve()
    return Skill(
        name=name,
        description=description,
        content=_rewrite_bundled_paths(body.strip(), skill_dir),
        path=skill_file.resolve(),
        license=frontmatter.get("license"),
        allowed_tools=_parse_allowed_tools(frontmatter.get("allowed-tools")),
        metadata={str(k): str(v) for k, v in metadata.items()} if isinstance(metadata, dict) else {},
    )


class SkillLoader:
    """Finds and holds the skills under one directory."""

    def __init__(self, skills_dir: Union[str, Path]):
        self.skills_dir = Path(skills_dir)
        self._skills: Dict[str, Skill] = {}

    def discover(self) -> List[Skill]:
        """Scan ``skills_dir`` recursively for ``SKILL.md`` files."""
        if not self.skills_dir.is_dir():
            logger.info("Skills directory not found: %s", self.skills_dir)
            return []
        found = []
        for skill_file in sorted(self.skills_dir.rglob(SKILL_FILENAME)):
            skill = load_skill(skill_file)
            if skill is None:
                continue
            if skill.name in self._skills:
                logger.warning("Duplicate skill name '%s' in %s; keeping the first", skill.name, skill_file)
                continue
            self._skills[skill.name] = skill
            found.append(skill)
        return found

    def get(self, name: str) -> Optional[Skill]:
        return self._skills.get(name)

    def names(self) -> List[str]:
        return list(self._skills)

    def metadata_prompt(self) -> str:
        if not self._skills:
            return ""
        lines = [
            SKILLS_HEADING,
            "",
            "You have access to specialized skills. Each skill provides expert guidance for specific tasks.",
            "Load a skill's full content using the get_skill tool when needed.",
            "",
        ]
        lines.extend(f"- `{s.name}`: {s.description}" for s in self._skills.values())
        return "\n".join(lines)


class GetSkillTool(Tool):
    def __init__(self, loader: SkillLoader):
        self.loader = loader

    @property
    def schema(self) -> ToolSchema:
        return ToolSchema(
            name="get_skill",
            description=(
                "Get the full instructions of a skill by name. Skill names are "
                "listed under Available Skills in the system prompt."
            ),
            parameters={
                "skill_name": {"type": "string", "description": "Name of the skill to load"},
            },
            required=["skill_name"],
        )

    async def execute(self, skill_name: str, **_ignored) -> ToolResult:
        skill = self.loader.get(skill_name)
        if skill is None:
            available = ", ".join(self.loader.names()) or "none"
            return ToolResult(
                success=False,
                error=f"Skill '{skill_name}' does not exist. Available skills: {available}",
            )
        return ToolResult(success=True, content=skill.to_prompt())
