from __future__ import annotations

import logging
import re
from pathlib import Path

from autoloop.errors import ConfigError

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{(\s*[\w.]+\s*)\}\}")
TEMPLATE_SUFFIXES = (".md", ".txt", ".prompt")


def substitute(template: str, lookup: dict[str, str]) -> str:
    """Replace ``{{ key }}`` placeholders; unknown keys are left as written."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1).strip()
        if key in lookup:
            return lookup[key]
        logger.warning("Unresolved variable: {{%s}}", key)
        return match.group(0)

    return VARIABLE_PATTERN.sub(_replace, template)


class PromptResolver:
    def __init__(self, prompts_dir: Path, repo_root: Path | None = None) -> None:
        self.prompts_dir = prompts_dir
        self.repo_root = repo_root or prompts_dir.parent

    def _candidates(self, reference: str) -> list[Path]:
        path = Path(reference)
        if path.is_absolute():
            return [path]
        return [self.prompts_dir / path, self.repo_root / path]

    def load_template(self, reference: str) -> str:
        """Return template text for a file reference, or the reference itself as inline text."""
        looks_like_path = "\n" not in reference and reference.strip().endswith(TEMPLATE_SUFFIXES)
        if "\n" not in reference and len(reference) < 1024:
            for candidate in self._candidates(reference.strip()):
                if candidate.is_file():
                    return candidate.read_text(encoding="utf-8")
        if looks_like_path:
            raise ConfigError(f"Prompt template not found: {reference.strip()}")
        return reference

    def resolve(
        self,
        template_ref: str,
        variables: dict[str, str],
        step_outputs: dict[str, str],
    ) -> str:
        lookup = dict(variables)
        for step_id, output in step_outputs.items():
            lookup[f"steps.{step_id}.output"] = output
        return substitute(self.load_template(template_ref), lookup)
