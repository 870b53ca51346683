"""Test harness: script generation, failure classification and the retry loop."""

from change_pipeline.testing.classifier import classify_failure
from change_pipeline.testing.orchestrator import TestOrchestrator

__all__ = ["TestOrchestrator", "classify_failure"]
