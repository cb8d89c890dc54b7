"""Streaming LLM service with tool calling and provider fallback."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Protocol, Sequence, Union

import httpx
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings


@dataclass(slots=True)
class TextDelta:
    """Incremental assistant text."""

    text: str


@dataclass(slots=True)
class ToolCallRequest:
    """A complete capability invocation requested by the model."""

    call_id: str
    name: str
    arguments: str


@dataclass(slots=True)
class StreamFinished:
    """Terminal event of one model step."""

    provider: str
    model: str
    finish_reason: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0


StreamEvent = Union[TextDelta, ToolCallRequest, StreamFinished]


class LLMProviderError(RuntimeError):
    """Raised when a provider returns an error response."""


class BaseLLMProvider(Protocol):
    """Protocol shared by provider implementations."""

    name: str

    def stream(
        self,
        turns: Sequence[Dict[str, Any]],
        *,
        system_prompt: Optional[str],
        tools: Sequence[Dict[str, Any]],
        **kwargs: Any,
    ) -> Iterator[StreamEvent]:  # pragma: no cover - interface definition
        """Stream one model step."""


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying LLM stream",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


def _iter_sse_data(response: httpx.Response) -> Iterator[str]:
    """Yield the ``data:`` payloads of a server-sent events body."""

    for line in response.iter_lines():
        if not line or not line.startswith("data:"):
            continue
        yield line[len("data:"):].strip()


def _arguments_json(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments if arguments is not None else {}, default=str)


def _arguments_dict(arguments: Any) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str) and arguments.strip():
        try:
            parsed = json.loads(arguments)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


@dataclass
class OpenAIProvider:
    """Stream chat completions from an OpenAI-compatible API."""

    api_key: str
    model: str
    base_url: str = "https://api.openai.com/v1"
    request_timeout: float = 30.0
    max_retries: int = 3
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)

    name: str = "openai"

    COST_PER_1K_TOKENS: ClassVar[Dict[str, Dict[str, float]]] = {
        "gpt-4o-mini": {"prompt": 0.0006, "completion": 0.0024},
        "gpt-4o": {"prompt": 0.01, "completion": 0.03},
        "gpt-3.5-turbo": {"prompt": 0.0005, "completion": 0.0015},
    }

    def _build_headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if settings.OPENAI_ORG_ID:
            headers["OpenAI-Organization"] = settings.OPENAI_ORG_ID
        return headers

    def _estimate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        model_rates = self.COST_PER_1K_TOKENS.get(model, {"prompt": 0.0, "completion": 0.0})
        prompt_cost = (prompt_tokens / 1000) * model_rates["prompt"]
        completion_cost = (completion_tokens / 1000) * model_rates["completion"]
        return round(prompt_cost + completion_cost, 6)

    @staticmethod
    def build_messages(
        turns: Sequence[Dict[str, Any]], system_prompt: Optional[str]
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for turn in turns:
            role = turn["role"]
            if role == "assistant" and turn.get("tool_calls"):
                messages.append(
                    {
                        "role": "assistant",
                        "content": turn.get("content") or None,
                        "tool_calls": [
                            {
                                "id": call["id"],
                                "type": "function",
                                "function": {
                                    "name": call["name"],
                                    "arguments": _arguments_json(call.get("arguments")),
                                },
                            }
                            for call in turn["tool_calls"]
                        ],
                    }
                )
            elif role == "tool":
                messages.append(
                    {"role": "tool", "tool_call_id": turn["tool_call_id"], "content": turn["content"]}
                )
            else:
                messages.append({"role": role, "content": turn.get("content", "")})
        return messages

    def _open(self, client: httpx.Client, payload: Dict[str, Any]) -> httpx.Response:
        request = client.build_request(
            "POST", "/chat/completions", json=payload, headers=self._build_headers()
        )
        response = client.send(request, stream=True)
        if response.status_code >= 400:
            body = response.read().decode("utf-8", "replace")
            response.close()
            logger.error("OpenAI returned error", status=response.status_code, body=body)
            raise LLMProviderError(f"OpenAI error {response.status_code}: {body}")
        return response

    def stream(
        self,
        turns: Sequence[Dict[str, Any]],
        *,
        system_prompt: Optional[str] = None,
        tools: Sequence[Dict[str, Any]] = (),
        **kwargs: Any,
    ) -> Iterator[StreamEvent]:
        payload: Dict[str, Any] = {
            "model": kwargs.get("model", self.model),
            "messages": self.build_messages(turns, system_prompt),
            "temperature": kwargs.get("temperature", 0.7),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if "max_tokens" in kwargs:
            payload["max_tokens"] = kwargs["max_tokens"]
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool["name"],
                        "description": tool["description"],
                        "parameters": tool["parameters"],
                    },
                }
                for tool in tools
            ]

        pending: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        usage: Dict[str, Any] = {}

        with httpx.Client(
            base_url=self.base_url, timeout=self.request_timeout, transport=self.transport
        ) as client:
            response = None
            for attempt in Retrying(
                stop=stop_after_attempt(max(1, self.max_retries)),
                wait=wait_exponential(multiplier=1, min=1, max=8),
                retry=retry_if_exception_type((httpx.TransportError, LLMProviderError)),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    response = self._open(client, payload)

            try:
                for data in _iter_sse_data(response):
                    if data == "[DONE]":
                        break
                    chunk = json.loads(data)
                    if chunk.get("usage"):
                        usage = chunk["usage"]
                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield TextDelta(delta["content"])
                        for call in delta.get("tool_calls") or []:
                            slot = pending.setdefault(
                                call.get("index", 0), {"id": "", "name": "", "arguments": ""}
                            )
                            if call.get("id"):
                                slot["id"] = call["id"]
                            function = call.get("function") or {}
                            if function.get("name"):
                                slot["name"] += function["name"]
                            if function.get("arguments"):
                                slot["arguments"] += function["arguments"]
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
            finally:
                response.close()

        for index in sorted(pending):
            slot = pending[index]
            yield ToolCallRequest(call_id=slot["id"], name=slot["name"], arguments=slot["arguments"])

        prompt_tokens = int(usage.get("prompt_tokens", 0))
        completion_tokens = int(usage.get("completion_tokens", 0))
        finished = StreamFinished(
            provider=self.name,
            model=payload["model"],
            finish_reason=finish_reason,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=self._estimate_cost(payload["model"], prompt_tokens, completion_tokens),
        )
        logger.info(
            "OpenAI stream complete",
            model=finished.model,
            finish_reason=finish_reason,
            tokens=prompt_tokens + completion_tokens,
            cost=finished.cost,
        )
        yield finished


@dataclass
class AnthropicProvider:
    """Stream messages from the Anthropic API."""

    api_key: str
    model: str
    base_url: str = "https://api.anthropic.com/v1"
    request_timeout: float = 30.0
    max_retries: int = 3
    transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)

    name: str = "anthropic"

    COST_PER_1K_TOKENS: ClassVar[Dict[str, Dict[str, float]]] = {
        "claude-3-5-sonnet": {"prompt": 0.003, "completion": 0.015},
        "claude-3-sonnet": {"prompt": 0.003, "completion": 0.015},
    }

    @staticmethod
    def build_messages(
        turns: Sequence[Dict[str, Any]], system_prompt: Optional[str]
    ) -> tuple[Optional[str], List[Dict[str, Any]]]:
        system_parts = [system_prompt] if system_prompt else []
        messages: List[Dict[str, Any]] = []
        for turn in turns:
            role = turn["role"]
            if role == "system":
                system_parts.append(turn.get("content", ""))
            elif role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": turn["tool_call_id"],
                    "content": turn["content"],
                }
                previous = messages[-1] if messages else None
                if (
                    previous
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and all(item.get("type") == "tool_result" for item in previous["content"])
                ):
                    previous["content"].append(block)
                else:
                    messages.append({"role": "user", "content": [block]})
            elif role == "assistant" and turn.get("tool_calls"):
                blocks: List[Dict[str, Any]] = []
                if turn.get("content"):
                    blocks.append({"type": "text", "text": turn["content"]})
                for call in turn["tool_calls"]:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": call["id"],
                            "name": call["name"],
                            "input": _arguments_dict(call.get("arguments")),
                        }
                    )
                messages.append({"role": "assistant", "content": blocks})
            else:
                messages.append({"role": role, "content": turn.get("content", "")})
        system = "\n\n".join(part for part in system_parts if part) or None
        return system, messages

    def _open(self, client: httpx.Client, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        request = client.build_request("POST", "/messages", json=payload, headers=headers)
        response = client.send(request, stream=True)
        if response.status_code >= 400:
            body = response.read().decode("utf-8", "replace")
            response.close()
            logger.error("Anthropic returned error", status=response.status_code, body=body)
            raise LLMProviderError(f"Anthropic error {response.status_code}: {body}")
        return response

    def stream(
        self,
        turns: Sequence[Dict[str, Any]],
        *,
        system_prompt: Optional[str] = None,
        tools: Sequence[Dict[str, Any]] = (),
        **kwargs: Any,
    ) -> Iterator[StreamEvent]:
        system, messages = self.build_messages(turns, system_prompt)
        payload: Dict[str, Any] = {
            "model": kwargs.get("model", self.model),
            "max_tokens": kwargs.get("max_tokens", 512),
            "temperature": kwargs.get("temperature", 0.7),
            "messages": messages,
            "stream": True,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {
                    "name": tool["name"],
                    "description": tool["description"],
                    "input_schema": tool["parameters"],
                }
                for tool in tools
            ]

        blocks: Dict[int, Dict[str, str]] = {}
        stop_reason: Optional[str] = None
        prompt_tokens = 0
        completion_tokens = 0

        with httpx.Client(
            base_url=self.base_url, timeout=self.request_timeout, transport=self.transport
        ) as client:
            response = None
            for attempt in Retrying(
                stop=stop_after_attempt(max(1, self.max_retries)),
                wait=wait_exponential(multiplier=1, min=1, max=8),
                retry=retry_if_exception_type((httpx.TransportError, LLMProviderError)),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    response = self._open(client, payload)

            try:
                for data in _iter_sse_data(response):
                    event = json.loads(data)
                    event_type = event.get("type")
                    if event_type == "message_start":
                        usage = (event.get("message") or {}).get("usage") or {}
                        prompt_tokens = int(usage.get("input_tokens", 0))
                    elif event_type == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            blocks[event.get("index", 0)] = {
                                "id": block.get("id", ""),
                                "name": block.get("name", ""),
                                "arguments": "",
                            }
                    elif event_type == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield TextDelta(delta["text"])
                        elif delta.get("type") == "input_json_delta":
                            slot = blocks.get(event.get("index", 0))
                            if slot is not None:
                                slot["arguments"] += delta.get("partial_json", "")
                    elif event_type == "message_delta":
                        stop_reason = (event.get("delta") or {}).get("stop_reason") or stop_reason
                        usage = event.get("usage") or {}
                        completion_tokens = int(usage.get("output_tokens", completion_tokens))
                    elif event_type == "error":
                        error = event.get("error") or {}
                        raise LLMProviderError(f"Anthropic stream error: {error.get('message', error)}")
                    elif event_type == "message_stop":
                        break
            finally:
                response.close()

        for index in sorted(blocks):
            slot = blocks[index]
            yield ToolCallRequest(call_id=slot["id"], name=slot["name"], arguments=slot["arguments"] or "{}")

        rates = self.COST_PER_1K_TOKENS.get(payload["model"], {"prompt": 0.0, "completion": 0.0})
        cost = round((prompt_tokens / 1000) * rates["prompt"] + (completion_tokens / 1000) * rates["completion"], 6)
        logger.info(
            "Anthropic stream complete",
            model=payload["model"],
            finish_reason=stop_reason,
            tokens=prompt_tokens + completion_tokens,
            cost=cost,
        )
        yield StreamFinished(
            provider=self.name,
            model=payload["model"],
            finish_reason=stop_reason,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=cost,
        )


class LLMService:
    """Coordinate streaming completion requests across providers."""

    def __init__(
        self,
        providers: Optional[Sequence[BaseLLMProvider]] = None,
        primary: Optional[str] = None,
        secondary: Optional[str] = None,
    ) -> None:
        if providers is not None:
            self._providers = list(providers)
        else:
            self._providers = self._build_default_providers()
        if not self._providers:
            raise ValueError("LLMService requires at least one provider")

        self._providers_by_name = {provider.name: provider for provider in self._providers}
        resolved_primary = primary or settings.PRIMARY_LLM_PROVIDER
        resolved_secondary = secondary or settings.SECONDARY_LLM_PROVIDER
        self._provider_order = self._build_order(resolved_primary, resolved_secondary)

    @property
    def provider_names(self) -> List[str]:
        return [provider.name for provider in self._provider_order]

    def _build_default_providers(self) -> List[BaseLLMProvider]:
        provider_list: List[BaseLLMProvider] = []
        if settings.OPENAI_API_KEY:
            provider_list.append(
                OpenAIProvider(
                    api_key=settings.OPENAI_API_KEY,
                    model=settings.OPENAI_MODEL,
                    base_url=str(settings.OPENAI_API_BASE or "https://api.openai.com/v1"),
                    request_timeout=settings.LLM_REQUEST_TIMEOUT_SECONDS,
                    max_retries=settings.LLM_MAX_RETRIES,
                )
            )
        if settings.ANTHROPIC_API_KEY:
            provider_list.append(
                AnthropicProvider(
                    api_key=settings.ANTHROPIC_API_KEY,
                    model=settings.ANTHROPIC_MODEL,
                    base_url=str(settings.ANTHROPIC_API_BASE or "https://api.anthropic.com/v1"),
                    request_timeout=settings.LLM_REQUEST_TIMEOUT_SECONDS,
                    max_retries=settings.LLM_MAX_RETRIES,
                )
            )
        return provider_list

    def _build_order(self, primary: Optional[str], secondary: Optional[str]) -> List[BaseLLMProvider]:
        ordered: List[BaseLLMProvider] = []
        seen: set[str] = set()

        def maybe_add(name: Optional[str]) -> None:
            if not name:
                return
            provider = self._providers_by_name.get(name)
            if provider and provider.name not in seen:
                ordered.append(provider)
                seen.add(provider.name)

        maybe_add(primary)
        maybe_add(secondary)
        for provider in self._providers:
            if provider.name in seen:
                continue
            ordered.append(provider)
        return ordered

    def stream_chat_completion(
        self,
        turns: Sequence[Dict[str, Any]],
        *,
        system_prompt: Optional[str] = None,
        tools: Sequence[Dict[str, Any]] = (),
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> Iterator[StreamEvent]:
        """Stream one model step, falling back to the next provider on failure.

        Fallback is only possible until the first event has been yielded;
        after that a provider failure is raised to the caller.
        """

        errors: List[str] = []
        for provider in self._provider_order:
            started = False
            try:
                for event in provider.stream(
                    turns,
                    system_prompt=system_prompt,
                    tools=tools,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ):
                    started = True
                    yield event
                return
            except Exception as exc:
                if started:
                    logger.exception("LLM provider failed mid-stream", provider=provider.name)
                    raise LLMProviderError(f"{provider.name}: {exc}") from exc
                logger.exception("LLM provider failure", provider=provider.name)
                errors.append(f"{provider.name}: {exc}")
                continue
        raise LLMProviderError("; ".join(errors))


__all__ = [
    "AnthropicProvider",
    "LLMProviderError",
    "LLMService",
    "OpenAIProvider",
    "StreamEvent",
    "StreamFinished",
    "TextDelta",
    "ToolCallRequest",
]
