"""Chat-completion agents: planner (code generation) and debugger."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

import httpx

from app_factory.agents.base import CallCancelledError, CallError
from app_factory.orchestrator.cancellation import CancelToken
from app_factory.orchestrator.models import DebugResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
PLANNER_MAX_TRIES = 3
_NON_TRANSIENT_CLIENT_STATUSES = range(400, 500)
_RETRYABLE_CLIENT_STATUSES = (408, 429)
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)

PLANNER_SYSTEM_PROMPT = (
    "You are an expert full-stack engineer. Generate clean, production-ready code. "
    "Follow best practices for Go, TypeScript, and React Native. Output only code and "
    "necessary explanations. No markdown fences unless showing file contents."
)

DEBUGGER_SYSTEM_PROMPT = """\
You are an expert debugger. Analyze the error log and source code provided.
Output a JSON object with exactly these fields:
{
  "analysis": "Brief description of the root cause",
  "fix_type": "code_patch" | "command" | "config_change",
  "fix_content": "The exact fix to apply (code diff, command to run, or config to change)"
}
Only output valid JSON. No additional text."""


class DebugResultParseError(ValueError):
    """Debugger output does not match the fix contract."""

    def __init__(self, message: str, *, raw_output: str) -> None:
        super().__init__(message)
        self.raw_output = raw_output


@dataclass(slots=True)
class ChatSettings:
    """Connection settings for one OpenAI-compatible chat endpoint."""

    api_key: str
    api_url: str
    model: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


class ChatCompletionClient:
    """Minimal chat-completions client returning the first choice's content.

    Cancellation is checked before the request is sent and again when the
    response arrives; a response that lands after cancellation is discarded.
    The blocking ``post`` itself is not interrupted, so a signal during an
    in-flight call waits at most ``timeout_seconds`` for it to return.
    """

    def __init__(
        self,
        settings: ChatSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._client = httpx.Client(
            timeout=httpx.Timeout(settings.timeout_seconds, connect=10.0),
            transport=transport,
        )

    def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        cancel: CancelToken,
    ) -> str:
        if cancel.cancelled:
            raise CallCancelledError()

        request_body = {
            "model": self.settings.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            response = self._client.post(
                self.settings.api_url,
                json=request_body,
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
            )
        except httpx.TimeoutException as error:
            raise CallError(f"API call timed out: {error}") from error
        except httpx.HTTPError as error:
            raise CallError(f"API call failed: {error}") from error

        if cancel.cancelled:
            raise CallCancelledError()

        if response.status_code != httpx.codes.OK:
            raise CallError(
                f"API returned {response.status_code}: {response.text}",
                status=response.status_code,
                body=response.text,
                transient=_is_transient_status(response.status_code),
            )

        try:
            payload = response.json()
            choices = payload.get("choices") or []
        except (ValueError, AttributeError) as error:
            raise CallError(
                f"unmarshal response: {error}",
                status=response.status_code,
                body=response.text,
            ) from error
        if not choices:
            raise CallError(
                "no choices in API response",
                status=response.status_code,
                body=response.text,
            )
        try:
            return str(choices[0]["message"]["content"])
        except (KeyError, TypeError) as error:
            raise CallError(
                f"malformed choice in API response: {error}",
                status=response.status_code,
                body=response.text,
            ) from error

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ChatCompletionClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class PlannerAgent:
    """Code-generation agent with its own transient-fault retry and backoff."""

    name = "Engine"

    def __init__(
        self,
        client: ChatCompletionClient,
        *,
        max_tries: int = PLANNER_MAX_TRIES,
        backoff_base_seconds: float = 1.0,
    ) -> None:
        self.client = client
        self.max_tries = max_tries
        self.backoff_base_seconds = backoff_base_seconds

    def execute(self, prompt: str, cancel: CancelToken) -> str:
        messages = [
            {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        last_error: CallError | None = None
        for attempt in range(self.max_tries):
            if attempt > 0:
                backoff = self.backoff_base_seconds * (2**attempt)
                logger.info(
                    "%s retry %d/%d in %.1fs after: %s",
                    self.name,
                    attempt + 1,
                    self.max_tries,
                    backoff,
                    last_error,
                )
                if cancel.wait(backoff):
                    raise CallCancelledError()
            try:
                return self.client.complete(
                    messages,
                    temperature=0.1,
                    max_tokens=4096,
                    cancel=cancel,
                )
            except CallCancelledError:
                raise
            except CallError as error:
                last_error = error
                if not error.transient:
                    break

        if last_error is None:
            raise CallError(f"{self.name} made no attempts", transient=False)
        raise CallError(
            f"engine failed after {self.max_tries} retries: {last_error}",
            status=last_error.status,
            body=last_error.body,
            transient=False,
        ) from last_error

    def close(self) -> None:
        self.client.close()


class DebuggerAgent:
    """Error-analysis agent producing a JSON fix contract."""

    name = "Debugger"

    def __init__(self, client: ChatCompletionClient) -> None:
        self.client = client

    def execute(self, prompt: str, cancel: CancelToken) -> str:
        messages = [
            {"role": "system", "content": DEBUGGER_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        return self.client.complete(messages, temperature=0.0, max_tokens=2048, cancel=cancel)

    def close(self) -> None:
        self.client.close()


def parse_debug_result(output: str) -> DebugResult:
    """Parse debugger output into a ``DebugResult``.

    Accepts a bare JSON object or one wrapped in a fenced ```json block.
    Extra keys are ignored; the three contract fields must be strings.
    """

    payload = _load_object(output.strip())
    if payload is None:
        raise DebugResultParseError(
            f"failed to parse debug result: not a JSON object\nraw output: {output}",
            raw_output=output,
        )
    values: dict[str, str] = {}
    for key in ("analysis", "fix_type", "fix_content"):
        value = payload.get(key)
        if not isinstance(value, str):
            raise DebugResultParseError(
                f"failed to parse debug result: {key} must be a string\nraw output: {output}",
                raw_output=output,
            )
        values[key] = value
    return DebugResult(**values)


def _load_object(text: str) -> dict[str, object] | None:
    candidates = [text]
    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        candidates.append(fenced.group(1))
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def _is_transient_status(status: int) -> bool:
    if status in _RETRYABLE_CLIENT_STATUSES:
        return True
    return status not in _NON_TRANSIENT_CLIENT_STATUSES
