from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from magnus.backends.base import AgentBackend
from magnus.dispatcher import InputInvalid

AgentMode = Literal["subagent", "background", "supervisor"]
Permission = Literal["allow", "deny"]

TOOL_NAMES = ("write", "edit", "multiedit", "read", "glob", "grep", "bash", "webfetch")
READ_ONLY_PERMISSIONS: dict[str, Permission] = {
    "write": "deny",
    "edit": "deny",
    "multiedit": "deny",
    "read": "allow",
    "glob": "allow",
    "grep": "allow",
    "bash": "deny",
    "webfetch": "allow",
}
WRITE_PERMISSIONS: dict[str, Permission] = {tool: "allow" for tool in TOOL_NAMES}


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    description: str = ""
    mode: AgentMode = "subagent"
    default_model: str | None = None
    output_kind: str = "default"
    permissions: dict[str, Permission] = READ_ONLY_PERMISSIONS
    fallback_prompt: str = "You are a software specialist."

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        prompt_dir: Path | None = None,
    ) -> None:
        self.backend = backend
        self.model = model or self.default_model
        self.prompt_dir = prompt_dir
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if self.prompt_dir is None:
            return self.fallback_prompt.strip()
        prompt_path = self.prompt_dir / f"{self.role}.md"
        try:
            return prompt_path.read_text(encoding="utf-8").strip() or self.fallback_prompt.strip()
        except FileNotFoundError:
            return self.fallback_prompt.strip()

    @property
    def allowed_tools(self) -> list[str]:
        return [tool for tool in TOOL_NAMES if self.permissions.get(tool) == "allow"]

    def descriptor(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "description": self.description,
            "mode": self.mode,
            "model": self.model,
            "permissions": dict(self.permissions),
        }

    def normalize_tools(self, requested: list[str] | None) -> list[str] | None:
        if not requested:
            return None
        normalized = sorted({str(tool).strip() for tool in requested if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_NAMES]
        if unknown:
            raise InputInvalid(
                f"Tool policy rejected unknown tools for {self.role}: " + ", ".join(unknown)
            )
        denied = [tool for tool in normalized if self.permissions.get(tool) != "allow"]
        if denied:
            raise InputInvalid(
                f"Tool policy denies {', '.join(denied)} for role {self.role}."
            )
        return normalized

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        allowed_tools: list[str] | None = None,
    ) -> SpecialistResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        run_context["role"] = self.role
        tools = self.normalize_tools(allowed_tools) or self.allowed_tools

        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
            tools=tools,
        ):
            chunks.append(chunk)
        return SpecialistResponse(
            role=self.role,
            content="".join(chunks).strip(),
            metadata={
                "instruction": instruction,
                "allowed_tools": list(tools),
                "tool_policy_enforced": allowed_tools is not None,
            },
        )
