from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from magnus.context import ContextCollector

logger = logging.getLogger(__name__)

SkillCategory = Literal["sveltekit", "convex", "general", "testing", "design"]

_HEADING = re.compile(r"^#\s+(.+)$", re.MULTILINE)


@dataclass(frozen=True, slots=True)
class SkillDefinition:
    name: str
    description: str
    content: str
    category: SkillCategory


@dataclass(frozen=True, slots=True)
class SkillContext:
    session_id: str
    agent: str
    project: str = ""
    directory: str = ""


BUILTIN_SKILLS: dict[str, SkillDefinition] = {
    "SVELTEKIT_BASICS": SkillDefinition(
        name="SvelteKit Fundamentals",
        description="Core concepts and patterns for SvelteKit development",
        category="sveltekit",
        content="""# SvelteKit Fundamentals

## Routing
- File-based routing in `src/routes/`
- Dynamic routes with `[param]` syntax
- Layout routes with `+layout.svelte`

## Server-side vs Client-side
- `+page.server.ts` for server functions
- `+page.ts` for data loading
- `+page.svelte` for components

## Form Handling
- Action functions with `export const actions`
- Form validation with `enhance`
- Progressive enhancement patterns""",
    ),
    "CONVEX_FUNDAMENTALS": SkillDefinition(
        name="Convex Database Patterns",
        description="Essential Convex development patterns",
        category="convex",
        content="""# Convex Development Patterns

## Schema Definition
- Define schemas in `schema.ts`
- Use validators for arguments
- Index optimization strategies

## Query Functions
- `export const get = query(...)`
- Database queries with filters
- Real-time subscriptions

## Mutations
- `export const create = mutation(...)`
- Transaction patterns
- Error handling strategies""",
    ),
}

CLASSIFICATION_CATEGORIES: dict[str, tuple[SkillCategory, ...]] = {
    "ui": ("sveltekit", "design"),
    "api": ("convex",),
    "mixed": ("sveltekit", "convex", "design"),
}


def infer_category(name: str) -> SkillCategory:
    lowered = name.lower()
    if "svelte" in lowered or "kit" in lowered:
        return "sveltekit"
    if "convex" in lowered:
        return "convex"
    if "test" in lowered:
        return "testing"
    if "design" in lowered or "ui" in lowered:
        return "design"
    return "general"


def extract_description(content: str) -> str:
    match = _HEADING.search(content)
    return match.group(1).strip() if match else ""


class SkillLoader:
    """Reads skills from ``<content_dir>/skills/<NAME>.md``; builtins fill the gaps."""

    def __init__(self, content_dir: Path) -> None:
        self.skills_dir = content_dir / "skills"

    def load(self, name: str) -> SkillDefinition | None:
        path = self.skills_dir / f"{name}.md"
        if path.is_file():
            content = path.read_text(encoding="utf-8")
            return SkillDefinition(
                name=name,
                description=extract_description(content),
                content=content,
                category=infer_category(name),
            )
        return BUILTIN_SKILLS.get(name)

    def load_all(self) -> dict[str, SkillDefinition]:
        skills = dict(BUILTIN_SKILLS)
        if self.skills_dir.is_dir():
            for path in sorted(self.skills_dir.glob("*.md")):
                skill = self.load(path.stem)
                if skill is not None:
                    skills[path.stem] = skill
        return skills

    def by_category(self, categories: tuple[SkillCategory, ...]) -> list[str]:
        return [key for key, skill in self.load_all().items() if skill.category in categories]


class SkillInjector:
    def __init__(
        self,
        loader: SkillLoader,
        *,
        include_metadata: bool = True,
        prefix: str = "## Available Skills\n",
        suffix: str = "\n---\n",
    ) -> None:
        self.loader = loader
        self.include_metadata = include_metadata
        self.prefix = prefix
        self.suffix = suffix

    def skill_content(self, name: str, context: SkillContext | None = None) -> str | None:
        skill = self.loader.load(name)
        if skill is None:
            logger.warning("Unknown skill requested: %s", name)
            return None
        if self.include_metadata and context is not None:
            metadata = (
                f"> **Skill:** {skill.name}\n"
                f"> **Category:** {skill.category}\n"
                f"> **Context:** {context.session_id} ({context.agent})"
            )
            return f"{metadata}\n\n{skill.content}"
        return skill.content

    def inject(self, prompt: str, skills: list[str], context: SkillContext | None = None) -> str:
        contents = [
            content
            for content in (self.skill_content(name, context) for name in skills)
            if content
        ]
        if not contents:
            return prompt
        injection = self.prefix + "\n\n".join(contents) + self.suffix
        return f"{injection}\n\n{prompt}"

    def skills_for(self, classification: str) -> list[str]:
        return self.loader.by_category(CLASSIFICATION_CATEGORIES.get(classification, ()))

    def contribute(
        self,
        collector: ContextCollector,
        classification: str,
        context: SkillContext,
        *,
        producer: str = "skills",
    ) -> int:
        """Queue the skills relevant to ``classification``; returns how many were accepted."""
        accepted = 0
        for name in self.skills_for(classification):
            content = self.skill_content(name, context)
            if content and collector.contribute(producer, content):
                accepted += 1
        return accepted
