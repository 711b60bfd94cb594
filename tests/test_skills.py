from pathlib import Path

from magnus.context import ContextCollector
from magnus.skills import (
    SkillContext,
    SkillInjector,
    SkillLoader,
    extract_description,
    infer_category,
)


def _write_skill(tmp_path: Path, name: str, content: str) -> None:
    skills_dir = tmp_path / "skills"
    skills_dir.mkdir(parents=True, exist_ok=True)
    (skills_dir / f"{name}.md").write_text(content, encoding="utf-8")


def test_builtin_skills_are_available_without_content(tmp_path: Path) -> None:
    loader = SkillLoader(tmp_path)

    skill = loader.load("SVELTEKIT_BASICS")

    assert skill is not None
    assert skill.category == "sveltekit"
    assert loader.load("MISSING") is None


def test_content_directory_overrides_and_extends_builtins(tmp_path: Path) -> None:
    _write_skill(tmp_path, "SVELTEKIT_BASICS", "# Local SvelteKit notes\nUse runes.")
    _write_skill(tmp_path, "TESTING_VITEST", "# Vitest setup\nRun with --run.")
    loader = SkillLoader(tmp_path)

    skills = loader.load_all()

    assert skills["SVELTEKIT_BASICS"].description == "Local SvelteKit notes"
    assert skills["TESTING_VITEST"].category == "testing"
    assert "CONVEX_FUNDAMENTALS" in skills


def test_category_inference_and_description() -> None:
    assert infer_category("CONVEX_AUTH") == "convex"
    assert infer_category("DESIGN_TOKENS") == "design"
    assert infer_category("GIT_FLOW") == "general"
    assert extract_description("intro\n# Heading  \nbody") == "Heading"
    assert extract_description("no heading") == ""


def test_inject_prepends_skill_block_with_metadata(tmp_path: Path) -> None:
    injector = SkillInjector(SkillLoader(tmp_path))
    context = SkillContext(session_id="ses-1", agent="planner")

    prompt = injector.inject("Plan the feature.", ["CONVEX_FUNDAMENTALS", "UNKNOWN"], context)

    assert prompt.startswith("## Available Skills\n> **Skill:** Convex Database Patterns")
    assert "> **Context:** ses-1 (planner)" in prompt
    assert prompt.endswith("\n---\n\n\nPlan the feature.")


def test_inject_without_known_skills_returns_prompt(tmp_path: Path) -> None:
    injector = SkillInjector(SkillLoader(tmp_path))

    assert injector.inject("Plan.", ["UNKNOWN"]) == "Plan."


def test_skills_follow_classification(tmp_path: Path) -> None:
    injector = SkillInjector(SkillLoader(tmp_path))

    assert injector.skills_for("ui") == ["SVELTEKIT_BASICS"]
    assert injector.skills_for("api") == ["CONVEX_FUNDAMENTALS"]
    assert injector.skills_for("mixed") == ["SVELTEKIT_BASICS", "CONVEX_FUNDAMENTALS"]


def test_contribute_deduplicates_through_the_collector(tmp_path: Path) -> None:
    injector = SkillInjector(SkillLoader(tmp_path), include_metadata=False)
    collector = ContextCollector(["skills", "workflow"])
    context = SkillContext(session_id="ses-1", agent="planner")

    first = injector.contribute(collector, "mixed", context)
    second = injector.contribute(collector, "api", context, producer="workflow")

    assert first == 2
    assert second == 0
    assert [item.producer for item in collector.flush()] == ["skills", "skills"]
