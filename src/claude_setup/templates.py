"""
Skill and agent templates installed into ~/.claude.

Each unit is written once. If the target already exists it is left
alone, so user edits survive every later run.
"""

import importlib.resources
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .config import CLOUD_FLAGS, Settings
from .endpoints import write_text_atomic


class TemplateKind(str, Enum):
    SKILL = "skill"
    AGENT = "agent"


@dataclass(frozen=True)
class TemplateUnit:
    kind: TemplateKind
    id: str
    generator: Optional[Callable[[Settings], str]] = None
    condition: Optional[Callable[[Settings], bool]] = None

    def enabled(self, settings: Settings) -> bool:
        return self.condition is None or self.condition(settings)

    def target(self, claude_dir: Path) -> Path:
        if self.kind is TemplateKind.SKILL:
            return claude_dir / "skills" / self.id / "SKILL.md"
        return claude_dir / "agents" / f"{self.id}.md"

    @property
    def source_parts(self) -> List[str]:
        """Location relative to a template root (staged or bundled)."""
        if self.kind is TemplateKind.SKILL:
            return ["skills", self.id, "SKILL.md"]
        return ["agents", self.id, f"{self.id}.md"]


# =============================================================================
# Generated units
# =============================================================================

def render_container_environment(settings: Settings) -> str:
    """Describe what this container has installed, from the feature flags."""
    frontmatter = {
        "name": "container-environment",
        "description": (
            "Tools, languages and services available in this development "
            "container. Use when choosing commands, runtimes or build tools."
        ),
    }
    lines = ["---", yaml.safe_dump(frontmatter, sort_keys=False, width=1000).strip(), "---", ""]
    lines.append("# Container Environment")
    lines.append("")
    lines.append(f"Workspace: `{settings.workspace}`")
    lines.append("")

    lines.append("## Languages and toolchains")
    lines.append("")
    toolchains = settings.enabled_toolchains()
    if toolchains:
        lines.extend(f"- {label}" for label in toolchains)
    else:
        lines.append("- No optional language toolchains are enabled.")
    lines.append("")

    tools = settings.enabled_support_tools()
    if tools:
        lines.append("## Infrastructure tools")
        lines.append("")
        lines.extend(f"- {label}" for label in tools)
        lines.append("")

    lines.append("## Notes")
    lines.append("")
    lines.append("- Plugins and MCP servers are configured by `claude-setup`.")
    lines.append("- Run `claude-setup status` to see what is installed.")
    lines.append("- Prefer tools listed above; others may not be on PATH.")
    lines.append("")
    return "\n".join(lines)


def _any_cloud_tool(settings: Settings) -> bool:
    return any(settings.feature(flag) for flag in CLOUD_FLAGS)


TEMPLATE_UNITS: List[TemplateUnit] = [
    TemplateUnit(TemplateKind.SKILL, "container-environment", generator=render_container_environment),
    TemplateUnit(TemplateKind.SKILL, "git-workflow"),
    TemplateUnit(TemplateKind.SKILL, "testing-patterns"),
    TemplateUnit(TemplateKind.SKILL, "code-quality"),
    TemplateUnit(TemplateKind.SKILL, "development-workflow"),
    TemplateUnit(TemplateKind.SKILL, "error-handling"),
    TemplateUnit(TemplateKind.SKILL, "documentation-authoring"),
    TemplateUnit(TemplateKind.SKILL, "shell-scripting"),
    TemplateUnit(TemplateKind.SKILL, "skill-authoring"),
    TemplateUnit(TemplateKind.SKILL, "agent-authoring"),
    TemplateUnit(TemplateKind.SKILL, "docker-development",
                 condition=lambda settings: settings.feature("INCLUDE_DOCKER")),
    TemplateUnit(TemplateKind.SKILL, "cloud-infrastructure", condition=_any_cloud_tool),
    TemplateUnit(TemplateKind.AGENT, "code-reviewer"),
    TemplateUnit(TemplateKind.AGENT, "test-writer"),
    TemplateUnit(TemplateKind.AGENT, "refactorer"),
    TemplateUnit(TemplateKind.AGENT, "debugger"),
]


# =============================================================================
# Installation
# =============================================================================

def read_static_content(unit: TemplateUnit, settings: Settings) -> Optional[str]:
    """Content for a static unit.

    Templates staged into the image take precedence over the copies
    bundled with this package.
    """
    staged = settings.templates_dir.joinpath(*unit.source_parts)
    if staged.is_file():
        return staged.read_text()

    bundled = importlib.resources.files("claude_setup").joinpath("bundled")
    for part in unit.source_parts:
        bundled = bundled.joinpath(part)
    if bundled.is_file():
        return bundled.read_text()
    return None


def install_templates(
    settings: Settings,
    units: Optional[List[TemplateUnit]] = None,
) -> Dict[str, List[Any]]:
    """Install every enabled unit whose target does not exist yet.

    Returns:
        {"installed": [ids], "skipped": [ids], "failed": [(id, reason)]}
    """
    results: Dict[str, List[Any]] = {"installed": [], "skipped": [], "failed": []}

    for unit in units if units is not None else TEMPLATE_UNITS:
        if not unit.enabled(settings):
            continue

        target = unit.target(settings.claude_dir)
        if target.exists():
            results["skipped"].append(unit.id)
            continue

        try:
            if unit.generator is not None:
                content = unit.generator(settings)
            else:
                content = read_static_content(unit, settings)
            if content is None:
                results["failed"].append((unit.id, "template not found"))
                continue
            # A present target counts as installed, so it must never be partial
            write_text_atomic(target, content)
            results["installed"].append(unit.id)
        except (OSError, UnicodeDecodeError) as e:
            results["failed"].append((unit.id, str(e)))

    return results
