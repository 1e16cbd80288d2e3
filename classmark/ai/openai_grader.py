"""OpenAI grading client for essay and math answers."""

from __future__ import annotations

import copy
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from classmark.settings import Settings, settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a rigorous grader. Return STRICT JSON ONLY: a map of questionId -> "
    "{points:number, reason:string, perCriterion:[{name,points,reason}]}.\n"
    "Grade each item against its criteria; perCriterion follows the order of the criteria given. "
    "Never exceed the marks of a question. No prose outside JSON."
)


@dataclass
class OpenAIRequestError(Exception):
    status_code: int | None
    body: str
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class SchemaBuildError(Exception):
    message: str

    def __str__(self) -> str:
        return self.message


class AIGrader(Protocol):
    model: str

    def grade(self, request: dict[str, Any]) -> str:
        """Send a batch grading request and return the raw response text."""


def _question_result_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "points": {"type": "number"},
            "reason": {"type": "string"},
            "perCriterion": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "points": {"type": "number"},
                        "reason": {"type": "string"},
                    },
                },
            },
        },
    }


def _close_objects(node: object, path: str = "schema") -> None:
    """Make every object in ``node`` strict: all properties required, nothing extra allowed."""
    if isinstance(node, list):
        for idx, item in enumerate(node):
            _close_objects(item, f"{path}[{idx}]")
        return

    if not isinstance(node, dict):
        return

    properties = node.get("properties")
    if node.get("type") == "object":
        if properties is None:
            properties = node["properties"] = {}
        if not isinstance(properties, dict):
            raise SchemaBuildError(f"Object at {path} has non-object properties")
        node["additionalProperties"] = False
        node["required"] = list(properties.keys())

    if isinstance(properties, dict):
        for key, value in properties.items():
            _close_objects(value, f"{path}.{key}")

    items = node.get("items")
    if items is not None:
        _close_objects(items, f"{path}.items")


def build_grading_response_schema(question_ids: list[str]) -> dict[str, Any]:
    """Strict schema whose top-level keys are exactly the question ids being graded."""
    schema: dict[str, Any] = {
        "type": "object",
        "properties": {qid: copy.deepcopy(_question_result_schema()) for qid in question_ids},
    }
    _close_objects(schema)
    return schema


def build_grading_request(model: str, payload: dict[str, Any], temperature: float) -> dict[str, object]:
    items = payload.get("items") or {}
    schema = build_grading_response_schema([str(qid) for qid in items])
    return {
        "model": model,
        "temperature": temperature,
        "input": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(payload)},
        ],
        "text": {
            "format": {
                "type": "json_schema",
                "name": "exam_grading",
                "strict": True,
                "schema": schema,
            }
        },
    }


class OpenAIGrader:
    """Grades a batch of items with one Responses API call.

    The credential is passed in by the caller; nothing here reads the
    environment or caches a client between instances.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 30.0,
        temperature: float = 0.2,
        retry_backoffs_seconds: tuple[float, ...] = (1.0,),
        client: Any | None = None,
    ) -> None:
        if client is None:
            if not api_key.strip():
                raise RuntimeError("OPENAI_API_KEY is not set")

            from openai import OpenAI

            client = OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)

        self._client = client
        self.model = model
        self._temperature = temperature
        self._retry_backoffs_seconds = retry_backoffs_seconds

    def grade(self, request: dict[str, Any]) -> str:
        request_payload = build_grading_request(self.model, request, self._temperature)
        started = time.perf_counter()
        text = self._call_openai_with_retry(request_payload)
        logger.info(
            "ai grading call finished",
            extra={
                "stage": "call_openai",
                "model": self.model,
                "items": len(request.get("items") or {}),
                "openai_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return text

    def _call_openai_with_retry(self, request_payload: dict[str, object]) -> str:
        last_exc: OpenAIRequestError | None = None
        backoffs = self._retry_backoffs_seconds
        attempts = len(backoffs) + 1
        for attempt in range(attempts):
            try:
                response = self._client.responses.create(**request_payload)
                return response.output_text or ""
            except Exception as exc:
                status_code = getattr(exc, "status_code", None)
                if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
                    status_code = 504
                response_obj = getattr(exc, "response", None)
                body_text = ""
                if response_obj is not None:
                    body_text = getattr(response_obj, "text", "") or ""
                if not body_text:
                    body_text = str(exc)

                retryable = isinstance(exc, (httpx.TimeoutException, TimeoutError)) or status_code in {429, 503, 504}
                last_exc = OpenAIRequestError(status_code=status_code, body=body_text, message=f"OpenAI request failed: {exc}")

                if retryable and attempt < attempts - 1:
                    logger.warning(
                        "ai grading openai retry",
                        extra={"stage": "openai_retry", "model": self.model, "attempt": attempt + 1, "status_code": status_code},
                    )
                    time.sleep(backoffs[attempt])
                    continue
                raise last_exc from exc

        raise last_exc or OpenAIRequestError(status_code=None, body="Unknown OpenAI error", message="OpenAI request failed")


class MockAIGrader:
    """Offline grader: awards half marks on every criterion."""

    model = "mock"

    def grade(self, request: dict[str, Any]) -> str:
        result: dict[str, Any] = {}
        for qid, item in (request.get("items") or {}).items():
            marks = float(item.get("marks") or 0)
            answered = bool(str(item.get("answer") or "").strip())
            points = marks / 2 if answered else 0.0
            result[qid] = {
                "points": points,
                "reason": "Mock grading" if answered else "No answer given",
                "perCriterion": [
                    {"name": c.get("name", ""), "points": points * float(c.get("weight") or 0), "reason": ""}
                    for c in item.get("criteria") or []
                ],
            }
        return json.dumps(result)


def build_ai_grader(config: Settings) -> AIGrader | None:
    """Construct the configured grader; ``None`` when no credential is available."""
    if os.getenv("OPENAI_MOCK", "").strip() == "1":
        return MockAIGrader()
    if not config.openai_api_key.strip():
        return None
    return OpenAIGrader(
        api_key=config.openai_api_key,
        model=config.ai_model,
        timeout_seconds=config.ai_timeout_seconds,
        temperature=config.ai_temperature,
        retry_backoffs_seconds=config.ai_retry_backoff_list,
    )


def get_ai_grader() -> AIGrader | None:
    """FastAPI dependency; tests override it with a fake."""
    return build_ai_grader(settings)
