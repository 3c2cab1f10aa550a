import json
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol, Union

import httpx
from sqlalchemy.orm import Session

from aura_coach.core.security import decrypt_api_key
from aura_coach.db.models import UserAIConfig

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_READ_TIMEOUT_SECONDS = float(os.getenv("LLM_READ_TIMEOUT_SECONDS", "30"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "30"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.4"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "600"))

SUPPORTED_PROVIDERS = {"openai"}


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_READ_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


class UpstreamError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class UpstreamTimeout(RuntimeError):
    def __init__(self, provider: str, model: str, message: str):
        super().__init__(message)
        self.provider = provider
        self.model = model


class AIConfigMissing(ValueError):
    pass


@dataclass(frozen=True)
class ModelConfig:
    provider: str
    model: str
    api_key: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass(frozen=True)
class TurnEnd:
    finish_reason: str


StreamEvent = Union[TextDelta, ToolCallDelta, TurnEnd]


def resolve_model_config(db: Session, user_id: int) -> ModelConfig:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    if cfg:
        if cfg.ai_provider not in SUPPORTED_PROVIDERS:
            raise AIConfigMissing(f"Unsupported AI provider: {cfg.ai_provider}")
        return ModelConfig(cfg.ai_provider, cfg.ai_model, decrypt_api_key(cfg.encrypted_api_key))

    provider = os.getenv("DEFAULT_AI_PROVIDER", "openai").strip().lower()
    model = os.getenv("DEFAULT_AI_MODEL", "gpt-4o-mini").strip()
    key = os.getenv("OPENAI_API_KEY", "") if provider == "openai" else ""
    if provider in SUPPORTED_PROVIDERS and model and key:
        return ModelConfig(provider, model, key)
    raise AIConfigMissing("AI config missing")


def parse_stream_payload(data: dict[str, Any]) -> list[StreamEvent]:
    """Translate one chat-completions stream chunk into stream events."""
    events: list[StreamEvent] = []
    choices = data.get("choices") or []
    if not choices:
        return events
    choice = choices[0] or {}
    delta = choice.get("delta") or {}
    content = delta.get("content")
    if isinstance(content, str) and content:
        events.append(TextDelta(content))
    for fragment in delta.get("tool_calls") or []:
        function = fragment.get("function") or {}
        events.append(
            ToolCallDelta(
                index=int(fragment.get("index", 0) or 0),
                call_id=fragment.get("id"),
                name=function.get("name"),
                arguments=str(function.get("arguments") or ""),
            )
        )
    finish_reason = choice.get("finish_reason")
    if finish_reason:
        events.append(TurnEnd(str(finish_reason)))
    return events


class StreamingLLMClient(Protocol):
    def stream_chat(
        self, config: ModelConfig, messages: list[dict[str, str]], tools: list[dict[str, Any]]
    ) -> AsyncIterator[StreamEvent]:
        ...


class OpenAIStreamingClient:
    def __init__(
        self,
        base_url: str = OPENAI_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _payload(
        self, config: ModelConfig, messages: list[dict[str, str]], tools: list[dict[str, Any]]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": config.model,
            "messages": messages,
            "stream": True,
            "temperature": LLM_TEMPERATURE,
            "top_p": 0.9,
            "presence_penalty": 0.8,
            "frequency_penalty": 0.6,
            "max_tokens": LLM_MAX_TOKENS,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def stream_chat(
        self, config: ModelConfig, messages: list[dict[str, str]], tools: list[dict[str, Any]]
    ) -> AsyncIterator[StreamEvent]:
        provider, model = config.provider, config.model
        turn_ended = False
        try:
            async with httpx.AsyncClient(timeout=_http_timeout(), transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {config.api_key}", "Content-Type": "application/json"},
                    json=self._payload(config, messages, tools),
                ) as response:
                    if response.status_code >= 400:
                        detail = (await response.aread()).decode("utf-8", "replace").strip()[:220]
                        raise UpstreamError(
                            provider=provider,
                            model=model,
                            status_code=response.status_code,
                            message=f"OpenAI request failed (status={response.status_code}): {detail or 'no response body'}",
                        )
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:") :].strip()
                        if data == "[DONE]":
                            if not turn_ended:
                                turn_ended = True
                                yield TurnEnd("stop")
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError as exc:
                            raise UpstreamError(provider, model, "OpenAI stream sent malformed data") from exc
                        for event in parse_stream_payload(chunk):
                            if isinstance(event, TurnEnd):
                                if turn_ended:
                                    continue
                                turn_ended = True
                            yield event
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(provider, model, "OpenAI stream timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(provider, model, f"OpenAI transport error: {str(exc)[:220]}") from exc
        if not turn_ended:
            raise UpstreamError(provider, model, "OpenAI stream ended before end of turn")


def get_llm_client() -> StreamingLLMClient:
    return OpenAIStreamingClient()
