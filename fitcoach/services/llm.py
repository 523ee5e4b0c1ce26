import json
import logging
import os
from typing import Any, Optional, Protocol

import httpx

logger = logging.getLogger("uvicorn.error")

COMPLETION_API_URL = os.getenv("COMPLETION_API_URL", "https://openrouter.ai/api/v1/chat/completions")
COMPLETION_API_KEY = os.getenv("COMPLETION_API_KEY", "")
COACH_MODEL = os.getenv("COACH_MODEL", "anthropic/claude-3.5-sonnet")
PLAN_MODEL = os.getenv("PLAN_MODEL", COACH_MODEL)
COACH_MAX_TOKENS = int(os.getenv("COACH_MAX_TOKENS", "5000"))
COACH_TEMPERATURE = float(os.getenv("COACH_TEMPERATURE", "0.7"))
PLAN_MAX_TOKENS = int(os.getenv("PLAN_MAX_TOKENS", "4000"))

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))

FALLBACK_REPLY = "I'm having trouble processing that right now. Please try again."

PROVIDER_NAME = "openai-compatible"


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


class LLMConfigError(RuntimeError):
    """Raised when the completion service is not configured (no API key)."""


class LLMRequestError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class LLMResponseFormatError(LLMRequestError):
    """The provider answered, but not with the requested JSON object."""


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from LLM")


class LLMClient(Protocol):
    def complete_chat(self, messages: list[dict[str, str]]) -> str:
        ...

    def generate_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        ...


class RealLLMClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = COMPLETION_API_KEY if api_key is None else api_key
        self.api_url = api_url or COMPLETION_API_URL
        self._transport = transport

    def _post(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise LLMConfigError("COMPLETION_API_KEY is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            with httpx.Client(timeout=_http_timeout(), transport=self._transport) as http:
                response = http.post(self.api_url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise LLMRequestError(
                provider=PROVIDER_NAME,
                model=model,
                message=f"Completion request failed: {str(exc)[:220] or type(exc).__name__}",
            ) from exc

        if response.status_code >= 400:
            detail = (response.text or "").strip()[:220]
            raise LLMRequestError(
                provider=PROVIDER_NAME,
                model=model,
                status_code=response.status_code,
                message=f"Completion request failed (status={response.status_code}): {detail or 'no response body'}",
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise LLMRequestError(
                provider=PROVIDER_NAME,
                model=model,
                status_code=response.status_code,
                message="Completion response was not JSON",
            ) from exc
        if not isinstance(data, dict):
            raise LLMRequestError(provider=PROVIDER_NAME, model=model, message="Completion response was not an object")
        # Some gateways report failures inside a 200 body.
        if data.get("error"):
            error = data["error"]
            detail = error.get("message") if isinstance(error, dict) else str(error)
            raise LLMRequestError(
                provider=PROVIDER_NAME,
                model=model,
                status_code=response.status_code,
                message=f"Completion provider error: {str(detail)[:220]}",
            )
        return data

    @staticmethod
    def _first_choice_text(data: dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""

    def complete_chat(self, messages: list[dict[str, str]]) -> str:
        payload = {
            "model": COACH_MODEL,
            "messages": messages,
            "temperature": COACH_TEMPERATURE,
            "max_tokens": COACH_MAX_TOKENS,
        }
        data = self._post(COACH_MODEL, payload)
        text = self._first_choice_text(data)
        if not text:
            logger.warning("coach_llm_empty_reply model=%s", COACH_MODEL)
            return FALLBACK_REPLY
        return text

    def generate_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        payload = {
            "model": PLAN_MODEL,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": COACH_TEMPERATURE,
            "max_tokens": PLAN_MAX_TOKENS,
        }
        data = self._post(PLAN_MODEL, payload)
        raw = self._first_choice_text(data)
        try:
            return parse_llm_json(raw)
        except ValueError as exc:
            raise LLMResponseFormatError(
                provider=PROVIDER_NAME,
                model=PLAN_MODEL,
                status_code=200,
                message="Model returned invalid JSON",
            ) from exc


def completion_configured() -> bool:
    return bool(COMPLETION_API_KEY)


def get_llm_client() -> LLMClient:
    return RealLLMClient()
