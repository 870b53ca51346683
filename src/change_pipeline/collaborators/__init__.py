"""Collaborator interfaces and default implementations."""

from change_pipeline.collaborators.applier import FilesystemChangeApplier
from change_pipeline.collaborators.base import (
    BrowserRunner,
    ChangeApplier,
    CodeGenerator,
    EventNotifier,
)
from change_pipeline.collaborators.generators import (
    LLMCodeGenerator,
    TemplateCodeGenerator,
    derive_hint_targets,
)
from change_pipeline.collaborators.notifiers import InMemoryNotifier, LoggingNotifier
from change_pipeline.collaborators.runner import PlaywrightCliRunner

__all__ = [
    "BrowserRunner",
    "ChangeApplier",
    "CodeGenerator",
    "EventNotifier",
    "FilesystemChangeApplier",
    "InMemoryNotifier",
    "LLMCodeGenerator",
    "LoggingNotifier",
    "PlaywrightCliRunner",
    "TemplateCodeGenerator",
    "derive_hint_targets",
]
