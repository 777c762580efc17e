#!/usr/bin/env python3
"""Async Ollama helper providing `analyze` with retry, graceful degradation and
structured response parsing. Verdicts come back as `AnalysisResult`; exhausted
retries raise `ClassifierUnavailableError` unless degradation is requested."""
from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, List, Optional
from asyncio import TimeoutError, wait_for
import json
import math
import re

import httpx
import ollama

from config import config, get_logger
from errors import (
    ClassifierConfigurationError,
    ClassifierError,
    ClassifierParseError,
    ClassifierRequestError,
    ClassifierTimeoutError,
    ClassifierUnavailableError,
)
from models import AnalysisResult
from telemetry import trace_span
from utils import CancellationToken, RetryHelper, truncate_string

logger = get_logger("llm_client")

DEFAULT_MODEL = "llama3.1"
MAX_TAGS = 3

DECISION_KEYS = ("relevant", "is_relevant", "isRelevant", "relevance", "decision", "answer")
CONFIDENCE_KEYS = ("confidence", "score")
REASON_KEYS = ("reason", "explanation", "rationale")

POSITIVE_ANSWERS = {"yes", "y", "true", "relevant"}
NEGATIVE_ANSWERS = {"no", "n", "false", "not relevant", "irrelevant"}

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)
_LEADING_ANSWER_RE = re.compile(r"^\s*(yes|no)\b", re.IGNORECASE)
_LABELLED_ANSWER_RE = re.compile(r"\brelevant\s*[:=]\s*\"?(true|false|yes|no)\b", re.IGNORECASE)

PROMPT_TEMPLATE = (
    "You are a classifier that decides whether a blog post covers developer-focused AI topics "
    "on Apple platforms: machine learning frameworks such as Core ML or Foundation Models, "
    "on-device or hosted language models, and AI assistants or agents used while building apps.\n\n"
    "Respond with a JSON object only, using this shape:\n"
    '{"relevant": true or false, "confidence": number between 0 and 1, '
    '"reason": "one short sentence", "tags": ["up to three lowercase topic tags"]}\n\n'
    "Blog post summary:\n\n{text}"
)


def build_prompt(text: str, max_chars: Optional[int] = None) -> str:
    """Build the generation prompt, truncating the post text to the configured budget."""
    limit = max_chars or config.CLASSIFIER_MAX_INPUT_CHARS
    return PROMPT_TEMPLATE.replace("{text}", truncate_string(text.strip(), limit))


def _coerce_decision(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().strip(".!").lower()
        if lowered in POSITIVE_ANSWERS:
            return True
        if lowered in NEGATIVE_ANSWERS:
            return False
    return None


def _coerce_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        percent = cleaned.endswith("%")
        try:
            number = float(cleaned.rstrip("%").strip())
        except ValueError:
            return None
        if percent:
            number /= 100.0
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        return None
    if not math.isfinite(number):
        return None
    if 1.0 < number <= 100.0:
        number /= 100.0
    return min(1.0, max(0.0, number))


def _coerce_tags(value: Any) -> Optional[List[str]]:
    if isinstance(value, str):
        candidates = value.split(",")
    elif isinstance(value, list):
        candidates = [v for v in value if isinstance(v, str)]
    else:
        return None
    tags: List[str] = []
    for candidate in candidates:
        tag = candidate.strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
        if len(tags) == MAX_TAGS:
            break
    return tags or None


def _first_present(payload: Dict[str, Any], keys) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Find a JSON object in `text`: whole body, fenced block, or the outermost braces in prose."""
    candidates = [text]
    candidates.extend(match.group(1) for match in _FENCE_RE.finditer(text))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate.strip())
        except (ValueError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def parse_analysis_response(raw: str) -> AnalysisResult:
    """Turn a model answer into an `AnalysisResult`.

    Structured JSON answers are preferred; a bare leading YES/NO or a
    ``relevant: true`` label is accepted as a last resort.

    Raises:
        ClassifierParseError: if no decision can be extracted.
    """
    text = (raw or "").strip()
    if not text:
        raise ClassifierParseError("Classifier returned an empty response", raw_response=raw or "")

    payload = _extract_json_object(text)
    if payload is not None:
        relevant = _coerce_decision(_first_present(payload, DECISION_KEYS))
        if relevant is not None:
            reason = _first_present(payload, REASON_KEYS)
            if isinstance(reason, str):
                reason = reason.strip() or None
            else:
                reason = None
            return AnalysisResult(
                relevant=relevant,
                raw_response=raw,
                confidence=_coerce_confidence(_first_present(payload, CONFIDENCE_KEYS)),
                reason=reason,
                tags=_coerce_tags(payload.get("tags")),
            )

    match = _LEADING_ANSWER_RE.match(text) or _LABELLED_ANSWER_RE.search(text)
    if match:
        return AnalysisResult(relevant=_coerce_decision(match.group(1)) is True, raw_response=raw)

    raise ClassifierParseError(
        f"No relevance decision found in response: {truncate_string(text, 120)}",
        raw_response=raw,
    )


def _field(obj: Any, name: str) -> Any:
    """Read a field from an ollama response model or a plain mapping."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class OllamaClient:
    """Classification client for a local Ollama server.

    Requests go through ``ollama.AsyncClient``. Pass ``client`` (anything with
    async ``list()`` and ``generate(model=, prompt=, stream=)``) to use a
    preconfigured or fake client instead.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[Any] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.model = self._resolve_model(model)
        self.active_model = self.model
        self.timeout = timeout if timeout is not None else config.CLASSIFIER_HTTP_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else config.CLASSIFIER_MAX_RETRIES
        self.retry_helper = RetryHelper(
            max_retries=self.max_retries,
            base_delay=retry_delay if retry_delay is not None else config.CLASSIFIER_RETRY_DELAY_BASE,
        )
        self._owns_client = client is None
        self._client = client if client is not None else ollama.AsyncClient(host=self.base_url, timeout=self.timeout)

    @staticmethod
    def _resolve_model(model: Optional[str]) -> str:
        for candidate in (model, config.OLLAMA_MODEL, DEFAULT_MODEL):
            if candidate is None:
                continue
            if not isinstance(candidate, str) or not candidate.strip():
                raise ClassifierConfigurationError("Ollama model name must be a non-empty string")
            return candidate.strip()
        raise ClassifierConfigurationError("Unable to determine Ollama model to use")

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP pool of a client this instance created."""
        if not self._owns_client:
            return
        # ollama.AsyncClient keeps its httpx.AsyncClient in `_client`
        http_client = getattr(self._client, "_client", None)
        if http_client is not None and not http_client.is_closed:
            await http_client.aclose()

    async def _send(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        token: Optional[CancellationToken],
    ) -> Any:
        """Run one ollama call with the client timeout and cancellation applied.

        Raises:
            ClassifierRequestError: the server answered with an error status.
            ClassifierTimeoutError: the call exceeded the timeout.
            ClassifierError: the server could not be reached.
        """
        if token is not None:
            token.raise_if_cancelled()
        request = wait_for(call(), timeout=self.timeout)
        try:
            if token is not None:
                return await token.wrap(request)
            return await request
        except ollama.ResponseError as e:
            raise ClassifierRequestError(
                f"Ollama {operation} failed: {e.status_code} {truncate_string(str(e.error), 200)}",
                e.status_code,
            ) from e
        except TimeoutError as e:
            if token is not None and token.cancelled:
                raise
            raise ClassifierTimeoutError(f"Ollama {operation} timed out after {self.timeout}s") from e
        except (httpx.HTTPError, OSError) as e:
            if token is not None and token.cancelled:
                raise
            raise ClassifierError(f"Unable to reach Ollama at {self.base_url}: {e.__class__.__name__} {e}") from e

    async def check_connection(self, token: Optional[CancellationToken] = None) -> bool:
        """Verify the server lists its models and pick an installed tag for untagged models.

        Raises:
            ClassifierRequestError: the server answered with an error status.
            ClassifierUnavailableError: the server could not be reached.
        """
        try:
            listing = await self._send("model listing", self._client.list, token)
        except ClassifierRequestError:
            raise
        except ClassifierError as e:
            raise ClassifierUnavailableError(f"Unable to reach Ollama: {e}") from e

        self._select_installed_variant(listing)
        return True

    def _select_installed_variant(self, listing: Any) -> None:
        if ":" in self.model:
            return
        models = _field(listing, "models")
        if not isinstance(models, (list, tuple)):
            logger.debug("Ollama model listing had no models; keeping model %s", self.model)
            return
        installed = []
        for entry in models:
            name = _field(entry, "model") or _field(entry, "name")
            if isinstance(name, str):
                installed.append(name)
        if self.model in installed or f"{self.model}:latest" in installed:
            return
        for name in installed:
            if name.startswith(f"{self.model}:"):
                logger.info("Model %s not installed as-is; using %s", self.model, name)
                self.active_model = name
                return
        logger.warning("Model %s was not found among installed Ollama models", self.model)

    async def _generate(self, prompt: str, model: str, token: Optional[CancellationToken]) -> str:
        """Generate a verdict with retries; returns the model's raw answer."""
        attempts = self.max_retries + 1
        last_error: Optional[ClassifierError] = None

        def call():
            return self._client.generate(model=model, prompt=prompt, stream=False)

        for attempt in range(attempts):
            try:
                response = await self._send("generation", call, token)
                return self._extract_answer(response)
            except ClassifierRequestError as e:
                if e.status != 429 and e.status < 500:
                    raise
                last_error = e
            except ClassifierParseError:
                raise
            except ClassifierError as e:
                last_error = e

            if attempt < attempts - 1:
                logger.warning(
                    "Ollama generate attempt %d/%d failed: %s; retrying",
                    attempt + 1,
                    attempts,
                    last_error,
                )
                await self.retry_helper.sleep_for_attempt(attempt, token)

        raise ClassifierUnavailableError(
            f"Ollama generation failed after {attempts} attempts: {last_error}"
        ) from last_error

    def _extract_answer(self, response: Any) -> str:
        answer = _field(response, "response")
        if not isinstance(answer, str) or not answer.strip():
            raise ClassifierParseError("Ollama response did not include a decision", raw_response=str(answer or ""))
        return answer

    @trace_span(
        "ollama_analyze",
        tracer_name="llm_client",
        attr_from_args=lambda self, *args, **kwargs: {"llm.model": kwargs.get("model") or self.active_model},
        attr_from_result=lambda result: {"llm.relevant": result.relevant},
    )
    async def analyze(
        self,
        text: str,
        graceful_degradation: bool = False,
        model: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> AnalysisResult:
        """Classify one post description.

        With ``graceful_degradation`` any classifier failure becomes a
        non-relevant verdict with zero confidence instead of an exception.
        Cancellation always propagates.
        """
        if not isinstance(text, str) or not text.strip():
            raise ClassifierConfigurationError("Description must be a non-empty string")
        target_model = model.strip() if isinstance(model, str) and model.strip() else self.active_model

        try:
            raw = await self._generate(build_prompt(text), target_model, token)
            return parse_analysis_response(raw)
        except ClassifierParseError as e:
            if not graceful_degradation:
                raise
            logger.warning("Could not interpret classifier response: %s", e)
            return AnalysisResult(
                relevant=False,
                confidence=0.0,
                reason=f"Unable to interpret classifier response: {e}",
                raw_response=e.raw_response,
            )
        except ClassifierError as e:
            if not graceful_degradation:
                raise
            logger.warning("Classifier unavailable, treating post as not relevant: %s", e)
            return AnalysisResult(
                relevant=False,
                confidence=0.0,
                reason=f"Failed to communicate with Ollama: {e}",
                raw_response="",
            )

    async def analyze_text(
        self,
        text: str,
        model: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """Yes/no shortcut over `analyze`."""
        result = await self.analyze(text, model=model, token=token)
        return result.relevant


__all__ = ["OllamaClient", "build_prompt", "parse_analysis_response", "DEFAULT_MODEL"]
