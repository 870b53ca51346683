"""Map runner diagnostics onto the closed set of failure classes."""

from __future__ import annotations

import re

from change_pipeline.models import ErrorClass

# Checked in order; the first matching class wins.
FAILURE_PATTERNS: tuple[tuple[ErrorClass, re.Pattern[str]], ...] = (
    (
        ErrorClass.SELECTOR_NOT_FOUND,
        re.compile(
            r"waiting for locator|locator not found|waiting for selector|element not found",
            re.IGNORECASE,
        ),
    ),
    (
        ErrorClass.NO_STAGED_FILES,
        re.compile(r"no staged files|stagedfiles is empty|no files to test", re.IGNORECASE),
    ),
    (
        ErrorClass.TIMEOUT,
        re.compile(r"timeout|timed out|waitfor", re.IGNORECASE),
    ),
)


def classify_failure(diagnostic: str) -> ErrorClass:
    for error_class, pattern in FAILURE_PATTERNS:
        if pattern.search(diagnostic or ""):
            return error_class
    return ErrorClass.UNKNOWN
