"""Tool providers exposed by the inbound MCP server.

A provider answers two questions: which tools exist (``list_tools``)
and what happens when one is called (``call_tool``).  Unknown names
raise :class:`ToolNotFoundError`.

* :class:`SkillToolProvider` -- skill directories (``<dir>/SKILL.md``)
  shipped with the package, one tool per skill.
* :class:`RegistryToolProvider` -- tools of connected upstream servers,
  re-exported under qualified ``server:tool`` names.
* :class:`CompositeToolProvider` -- several providers as one.
"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from flipagent.mcp.base import Tool, ToolResult
from flipagent.mcp.errors import ToolNotFoundError
from flipagent.mcp.registry import MCPRegistry

logger = logging.getLogger(__name__)

DEFAULT_SKILLS_DIR = Path(__file__).resolve().parent.parent / "skills"
SKILL_TOOL_PREFIX = "flipagent_"

_FRONTMATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---\r?\n(.*)$", re.DOTALL)


class ToolProvider(ABC):
    """Source of locally callable tools."""

    @abstractmethod
    def list_tools(self) -> list[Tool]:
        ...

    @abstractmethod
    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        ...

    def get_tool(self, name: str) -> Tool | None:
        return next((t for t in self.list_tools() if t.name == name), None)


# ------------------------------------------------------------------ #
# Skills
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Skill:
    name: str
    description: str
    directory: Path

    @property
    def tool_name(self) -> str:
        return SKILL_TOOL_PREFIX + self.name.replace("-", "_")


def parse_skill_description(content: str, fallback: str) -> str:
    """Description from frontmatter, else the first prose line, else the title."""
    match = _FRONTMATTER_RE.match(content)
    if match:
        try:
            meta = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError:
            meta = {}
        if isinstance(meta, dict) and meta.get("description"):
            return str(meta["description"]).strip()
        content = match.group(2)

    lines = content.splitlines()
    title = next((ln for ln in lines if ln.startswith("# ")), None)
    prose = next(
        (ln for ln in lines if ln.strip() and not ln.startswith("#") and not ln.startswith("---")),
        None,
    )
    if prose:
        return prose.strip()
    if title:
        return title[2:].strip()
    return fallback


def discover_skills(skills_dir: str | Path) -> list[Skill]:
    """Find ``*/SKILL.md`` under ``skills_dir``, sorted by name."""
    root = Path(skills_dir)
    if not root.is_dir():
        logger.warning("Skills directory not found: %s", root)
        return []

    skills: list[Skill] = []
    for entry in sorted(root.iterdir()):
        skill_md = entry / "SKILL.md"
        if not entry.is_dir() or not skill_md.is_file():
            continue
        try:
            content = skill_md.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to read %s: %s", skill_md, exc)
            continue
        skills.append(Skill(entry.name, parse_skill_description(content, entry.name), entry))
    logger.info("Discovered %d skill(s) in %s", len(skills), root)
    return skills


class SkillToolProvider(ToolProvider):
    """Expose each skill as ``flipagent_<skill_name>`` taking ``{args}``.

    Skills are documentation-driven: calling one reports what the skill
    does and echoes the request so the controller can route it through
    the agent pipeline.
    """

    def __init__(self, skills_dir: str | Path | None = None):
        self.skills_dir = Path(skills_dir) if skills_dir else DEFAULT_SKILLS_DIR
        self._skills: list[Skill] | None = None
        self._lock = threading.Lock()

    @property
    def skills(self) -> list[Skill]:
        with self._lock:
            if self._skills is None:
                self._skills = discover_skills(self.skills_dir)
            return self._skills

    def list_tools(self) -> list[Tool]:
        return [
            Tool(
                name=skill.tool_name,
                description=f"FlipAgent skill: {skill.description}",
                input_schema={
                    "type": "object",
                    "properties": {
                        "args": {"type": "string", "description": "Arguments to pass to the skill command"},
                    },
                },
            )
            for skill in self.skills
        ]

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        skill = next((s for s in self.skills if s.tool_name == name), None)
        if skill is None:
            raise ToolNotFoundError(name)

        args = arguments.get("args")
        command = f"/{skill.name} {args if isinstance(args, str) else ''}".strip()
        logger.debug("Skill command: %s", command)
        return ToolResult.from_text(
            f'Skill "{skill.name}" is available. {skill.description}\n\n'
            f"Command: {command}\n"
            "This skill is executed through FlipAgent's agent pipeline. "
            "Provide your request and the agent will use the appropriate tools."
        )


# ------------------------------------------------------------------ #
# Upstream servers
# ------------------------------------------------------------------ #


class RegistryToolProvider(ToolProvider):
    """Re-export the tools of READY upstream servers as ``server:tool``."""

    def __init__(self, registry: MCPRegistry):
        self.registry = registry

    def list_tools(self) -> list[Tool]:
        return [
            Tool(name=f"{t.server}:{t.name}", description=t.description, input_schema=t.input_schema)
            for t in self.registry.get_all_tools()
        ]

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        server, _ = self.registry.split_qualified(name)
        if server is None:
            raise ToolNotFoundError(name)
        return self.registry.call_tool(name, arguments)


class CompositeToolProvider(ToolProvider):
    """Concatenate providers; the first provider declaring a name owns it."""

    def __init__(self, providers: list[ToolProvider]):
        self.providers = list(providers)

    def list_tools(self) -> list[Tool]:
        seen: set[str] = set()
        tools: list[Tool] = []
        for provider in self.providers:
            for tool in provider.list_tools():
                if tool.name not in seen:
                    seen.add(tool.name)
                    tools.append(tool)
        return tools

    def _owner(self, name: str) -> ToolProvider | None:
        for provider in self.providers:
            if provider.get_tool(name) is not None:
                return provider
        return None

    def get_tool(self, name: str) -> Tool | None:
        for provider in self.providers:
            tool = provider.get_tool(name)
            if tool is not None:
                return tool
        return None

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        owner = self._owner(name)
        if owner is None:
            raise ToolNotFoundError(name)
        return owner.call_tool(name, arguments)
