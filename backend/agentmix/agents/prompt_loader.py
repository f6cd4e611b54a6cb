"""Loads and caches prompt templates shipped in the package's prompts/ directory."""

import re
from pathlib import Path

from agentmix.exceptions import PromptTemplateError

DEFAULT_PROMPT_DIR = Path(__file__).resolve().parent.parent / "prompts"


class PromptLoader:
    """
    Reads every ``*.txt`` file of ``prompt_dir`` once and renders them on demand.

    ``{name}`` placeholders are substituted; ``{{`` and ``}}`` render as literal
    braces. Substituted values are inserted verbatim, so agent output containing
    braces is never re-interpreted as a placeholder.
    """

    _TOKEN_RE = re.compile(r"\{\{|\}\}|\{(\w+)\}")

    def __init__(self, prompt_dir: str | Path = DEFAULT_PROMPT_DIR) -> None:
        self._prompt_dir = Path(prompt_dir)
        if not self._prompt_dir.is_dir():
            raise PromptTemplateError(f"Prompt directory not found: {self._prompt_dir}")
        self._cache: dict[str, str] = {
            path.stem: path.read_text(encoding="utf-8")
            for path in sorted(self._prompt_dir.glob("*.txt"))
        }

    def get(self, template_name: str, **variables: object) -> str:
        raw = self._cache.get(template_name)
        if raw is None:
            raise PromptTemplateError(f"Prompt template not found: {template_name}")

        missing: list[str] = []

        def _render(match: re.Match) -> str:
            token = match.group(0)
            if token == "{{":
                return "{"
            if token == "}}":
                return "}"
            key = match.group(1)
            if key not in variables:
                missing.append(key)
                return token
            return str(variables[key])

        rendered = self._TOKEN_RE.sub(_render, raw)
        if missing:
            raise PromptTemplateError(
                f"Missing variable(s) in prompt '{template_name}': {sorted(set(missing))}"
            )
        return rendered.strip()

    @property
    def loaded_templates(self) -> list[str]:
        return list(self._cache)
