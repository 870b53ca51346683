"""Code-generation collaborators producing staged file sets from a prompt."""

from __future__ import annotations

import logging
import re

from change_pipeline.collaborators.llm import ChatCompletionsFileSource
from change_pipeline.models import StagedFile

logger = logging.getLogger(__name__)

_FEATURE_PATTERN = re.compile(
    r"\b(login|dashboard|sponsor|employee|payroll|mfa|settings|authentication|"
    r"security|accounting|ai|inventory|crm)\b",
    re.IGNORECASE,
)
_INVENTORY_PATTERN = re.compile(r"inventory|stock|warehouse", re.IGNORECASE)
_ACTION_PATTERN = re.compile(
    r"\b(?:add|create|update|enhance|improve)\s+(?:an?\s+|the\s+)?([a-z][\w-]*)",
    re.IGNORECASE,
)

DEFAULT_TARGETS: dict[str, list[str]] = {
    "crm": ["login", "dashboard"],
    "inventory": ["inventory"],
    "employee": ["employee"],
}


def derive_hint_targets(prompt: str) -> list[str]:
    """Return the page/feature names a prompt is about, most specific first."""
    lowered = prompt.lower()
    features: list[str] = []
    for match in _FEATURE_PATTERN.finditer(lowered):
        feature = match.group(1)
        if feature not in features:
            features.append(feature)

    if _INVENTORY_PATTERN.search(lowered):
        target = "inventory"
    elif "crm" in lowered:
        target = "crm"
    elif "employee" in lowered:
        target = "employee"
    else:
        action = _ACTION_PATTERN.search(lowered)
        target = action.group(1) if action else "system"

    if target == "crm":
        # A CRM request fans out into its default pages.
        return [item for item in features if item != "crm"] or list(DEFAULT_TARGETS["crm"])
    if not features:
        return list(DEFAULT_TARGETS.get(target, [target]))
    if target in features:
        features.remove(target)
        features.insert(0, target)
    return features


def _component_name(target: str) -> str:
    return "".join(part.capitalize() for part in re.split(r"[-_\s]+", target) if part)


class TemplateCodeGenerator:
    """Deterministic generator: one page component per target plus a shared route module."""

    def __init__(self, *, pages_dir: str = "frontend/src/pages", routes_dir: str = "backend/src/routes") -> None:
        self.pages_dir = pages_dir.rstrip("/")
        self.routes_dir = routes_dir.rstrip("/")

    def generate(self, prompt: str, hint_targets: list[str]) -> list[StagedFile]:
        targets = list(hint_targets) or derive_hint_targets(prompt)
        files = [self._page(prompt, target) for target in targets]
        files.append(self._routes(targets))
        logger.info(
            "code_generation event=generated mode=deterministic targets=%s files=%d",
            ",".join(targets),
            len(files),
        )
        return files

    def _page(self, prompt: str, target: str) -> StagedFile:
        name = _component_name(target)
        content = (
            "import React from 'react';\n\n"
            f"// Generated for: {prompt.strip()}\n"
            f"export default function {name}() {{\n"
            "  return (\n"
            f"    <section className=\"{target}-page\">\n"
            f"      <h1>{name}</h1>\n"
            "    </section>\n"
            "  );\n"
            "}\n"
        )
        return StagedFile(
            path=f"{self.pages_dir}/{name}.jsx",
            content=content,
            test_instructions=f"Open /{target} and verify the {name} heading is visible.",
        )

    def _routes(self, targets: list[str]) -> StagedFile:
        lines = ["const express = require('express');", "const router = express.Router();", ""]
        for target in targets:
            lines.append(
                f"router.get('/{target}', (req, res) => res.json({{ success: true, page: '{target}' }}));"
            )
        lines.extend(["", "module.exports = router;", ""])
        return StagedFile(
            path=f"{self.routes_dir}/generatedRoutes.js",
            content="\n".join(lines),
            test_instructions="GET each generated route and expect success true.",
        )


class LLMCodeGenerator:
    """Ask a chat-completions model for the staged file set."""

    def __init__(self, source: ChatCompletionsFileSource, *, timeout_s: float = 20.0) -> None:
        self.source = source
        self.timeout_s = timeout_s

    def generate(self, prompt: str, hint_targets: list[str]) -> list[StagedFile]:
        return self.source.request_files(prompt, hint_targets, timeout_s=self.timeout_s)
