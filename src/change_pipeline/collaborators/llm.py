"""Chat-completions client that asks a model for a staged file set."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any
from urllib import error, request

from pydantic import BaseModel, Field

from change_pipeline.models import StagedFile

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You write source files for a React and Express CRUD application. "
    "Return JSON only with key 'files': a list of objects with 'path' (relative, "
    "forward slashes), 'content' (complete file text) and 'test_instructions' "
    "(one sentence telling a browser test what to verify)."
)

# Rate limits and server-side failures are worth another try; other 4xx are not.
RETRYABLE_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504})


class GeneratedFiles(BaseModel):
    files: list[StagedFile] = Field(default_factory=list)


class RejectedRequest(RuntimeError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"chat completions rejected the request ({status}): {body[:400]}")
        self.status = status


def usable_files(candidates: list[StagedFile]) -> list[StagedFile]:
    """Keep files with a path and content that stay inside the project; first path wins."""
    seen: set[str] = set()
    kept: list[StagedFile] = []
    for item in candidates:
        if item.is_blank() or item.escapes_root() or item.path in seen:
            continue
        seen.add(item.path)
        kept.append(item)
    return kept


def build_user_prompt(prompt: str, hint_targets: list[str]) -> str:
    user_prompt = f"Change request: {prompt.strip()}\n"
    if hint_targets:
        user_prompt += f"Focus on these pages or features: {', '.join(hint_targets)}\n"
    return user_prompt


class ChatCompletionsFileSource:
    """POST the change request to ``{base_url}/chat/completions`` and parse ``GeneratedFiles``.

    Transport errors, retryable statuses and unparseable replies are retried
    with linear backoff; the last error propagates to the caller.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.model = model
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self._sleep = sleep

    def request_files(self, prompt: str, hint_targets: list[str], *, timeout_s: float) -> list[StagedFile]:
        body = self.payload(prompt, hint_targets)
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                generated = self._parse(self._post(body, timeout_s))
                break
            except RejectedRequest:
                raise
            except (error.URLError, TimeoutError, ValueError) as exc:
                logger.warning(
                    "code_generation event=llm_retry model=%s attempt=%d/%d reason=%s",
                    self.model,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt == attempts:
                    raise
                if self.backoff_s > 0:
                    self._sleep(self.backoff_s * attempt)

        files = usable_files(generated.files)
        logger.info(
            "code_generation event=generated mode=llm model=%s files=%d dropped=%d",
            self.model,
            len(files),
            len(generated.files) - len(files),
        )
        return files

    def payload(self, prompt: str, hint_targets: list[str]) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(prompt, hint_targets)},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "generated_files",
                    "strict": False,
                    "schema": GeneratedFiles.model_json_schema(),
                },
            },
        }

    def _post(self, body: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            self.endpoint,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                return json.loads(response.read().decode("utf-8"))
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            if exc.code not in RETRYABLE_STATUS:
                raise RejectedRequest(exc.code, detail) from exc
            raise

    @staticmethod
    def _parse(reply: dict[str, Any]) -> GeneratedFiles:
        choices = reply.get("choices") or []
        if not choices:
            raise ValueError("chat completion reply has no choices")
        content = choices[0].get("message", {}).get("content")
        if isinstance(content, list):
            # Content-part replies carry the JSON split across text parts.
            content = "".join(
                part["text"] for part in content if isinstance(part, dict) and isinstance(part.get("text"), str)
            )
        if not isinstance(content, str) or not content.strip():
            raise ValueError("chat completion reply has no text content")
        return GeneratedFiles.model_validate_json(content)
