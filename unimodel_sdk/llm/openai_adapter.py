# unimodel_sdk/llm/openai_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
OpenAI-compatible adapter for the unified model contract.

Targets the official `openai` Python client (`AsyncOpenAI`, Chat Completions)
and any OpenAI-compatible gateway reachable through `base_url`.

Goals
-----
- Map unified messages/options → Chat Completions.
- Stream text, tool-call and usage deltas as LLMChunk events.
- Normalize provider errors into the shared error taxonomy.
- Leave retries to the execution policy engine: the SDK client is created
  with `max_retries=0` so attempts are never multiplied.

Usage
-----
    from unimodel_sdk.llm.openai_adapter import OpenAIAdapter

    async with OpenAIAdapter(default_model="gpt-4.1-mini") as adapter:
        result = await adapter.complete(
            messages=[{"role": "user", "content": "Hello!"}],
        )
        print(result.text)
"""

from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import openai
from openai import AsyncOpenAI

from unimodel_sdk.llm.errors import (
    DeadlineExceeded,
    LLMAdapterError,
    TransientNetwork,
    Unavailable,
)
from unimodel_sdk.llm.llm_base import (
    BaseLLMAdapter,
    LLMCapabilities,
    LLMChunk,
    MetricsSink,
    OperationContext,
    TokenUsage,
    ToolCallDelta,
)
from unimodel_sdk.llm.options import GenerateOptions
from unimodel_sdk.llm.transport import error_for_status

logger = logging.getLogger(__name__)


def translate_openai_error(err: BaseException) -> LLMAdapterError:
    """
    Map OpenAI client errors → LLMAdapterError subclasses.

    HTTP status errors go through the shared status table so every provider
    reports e.g. a 429 as ResourceExhausted.
    """
    if isinstance(err, LLMAdapterError):
        return err

    # APITimeoutError subclasses APIConnectionError; check it first.
    if isinstance(err, openai.APITimeoutError):
        return DeadlineExceeded("OpenAI API request timed out")

    if isinstance(err, openai.APIConnectionError):
        return TransientNetwork(str(err) or "OpenAI API connection error")

    if isinstance(err, openai.APIStatusError):
        response = getattr(err, "response", None)
        headers = getattr(response, "headers", None)
        return error_for_status(
            int(err.status_code),
            f"OpenAI error (status={err.status_code}): {getattr(err, 'message', None) or err}",
            headers=headers,
        )

    if isinstance(err, openai.OpenAIError):
        return Unavailable(str(err) or "OpenAI API error")

    return Unavailable(str(err) or "internal OpenAI adapter error")


def _usage_from(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        total_tokens=int(getattr(usage, "total_tokens", 0) or 0),
    )


def _tool_deltas(raw_calls: Any) -> Tuple[ToolCallDelta, ...]:
    if not raw_calls:
        return ()
    deltas: List[ToolCallDelta] = []
    for pos, call in enumerate(raw_calls):
        fn = getattr(call, "function", None)
        index = getattr(call, "index", None)
        deltas.append(
            ToolCallDelta(
                index=pos if index is None else int(index),
                id=getattr(call, "id", None) or None,
                name=(getattr(fn, "name", None) or None) if fn is not None else None,
                arguments=(getattr(fn, "arguments", None) or "") if fn is not None else "",
            )
        )
    return tuple(deltas)


class OpenAIAdapter(BaseLLMAdapter):
    """
    BaseLLMAdapter backed by the OpenAI Chat Completions API.

    Parameters
    ----------
    client:
        Pre-configured `AsyncOpenAI` client. Should be created with
        `max_retries=0`; the adapter's execution policy owns retries.
    api_key:
        Used when no client is given (falls back to OPENAI_API_KEY).
    base_url:
        Custom base URL for gateways/compatible servers (falls back to
        OPENAI_BASE_URL).
    default_model:
        Model used when `options.model_name` is unset.
    """

    _provider = "openai"

    def __init__(
        self,
        *,
        client: Optional[AsyncOpenAI] = None,
        api_key: Optional[str] = None,
        organization: Optional[str] = None,
        base_url: Optional[str] = None,
        default_model: str = "gpt-4.1-mini",
        model_family: str = "openai",
        max_context_length: int = 128_000,
        default_options: Optional[GenerateOptions] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        super().__init__(
            default_options=default_options,
            metrics=metrics,
            default_model=default_model,
            model_family=model_family,
        )
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self._base_url = base_url or os.environ.get("OPENAI_BASE_URL")
        self._organization = organization
        self._owns_client = client is None
        self._client: AsyncOpenAI = client or AsyncOpenAI(
            api_key=self._api_key,
            organization=organization,
            base_url=self._base_url,
            max_retries=0,
        )
        self._max_context_length = int(max_context_length)
        self._version = getattr(openai, "__version__", "unknown")

    def _client_for(self, options: GenerateOptions) -> AsyncOpenAI:
        """Per-call connection overrides derive a client sharing the pool."""
        if not (options.api_key or options.base_url):
            return self._client
        overrides: Dict[str, Any] = {"max_retries": 0}
        if options.api_key:
            overrides["api_key"] = options.api_key
        if options.base_url:
            overrides["base_url"] = options.base_url
        return self._client.with_options(**overrides)

    @staticmethod
    def _request_kwargs(
        *,
        messages: List[Mapping[str, Any]],
        tools: Optional[List[Mapping[str, Any]]],
        options: GenerateOptions,
        model: str,
        streaming: bool,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [dict(m) for m in messages],
            "stream": streaming,
        }
        if streaming:
            kwargs["stream_options"] = {"include_usage": True}
        for name in ("temperature", "top_p", "max_tokens", "frequency_penalty", "presence_penalty", "seed", "reasoning_effort"):
            value = getattr(options, name)
            if value is not None:
                kwargs[name] = value
        if options.stop_sequences:
            kwargs["stop"] = list(options.stop_sequences)
        if tools:
            kwargs["tools"] = [dict(t) for t in tools]
            if options.tool_choice is not None:
                kwargs["tool_choice"] = options.tool_choice.to_wire()
        if options.additional_headers:
            kwargs["extra_headers"] = dict(options.additional_headers)
        if options.additional_body_params:
            kwargs["extra_body"] = dict(options.additional_body_params)
        if options.additional_query_params:
            kwargs["extra_query"] = dict(options.additional_query_params)
        return kwargs

    # ------------------------------------------------------------------
    # BaseLLMAdapter backend hooks
    # ------------------------------------------------------------------

    async def _do_capabilities(self) -> LLMCapabilities:
        return LLMCapabilities(
            server="openai",
            version=self._version,
            model_family=self._model_family,
            max_context_length=self._max_context_length,
            supports_streaming=True,
            supports_tools=True,
            supported_models=(),  # open set; let callers choose.
        )

    async def _do_stream(
        self,
        *,
        messages: List[Mapping[str, Any]],
        tools: Optional[List[Mapping[str, Any]]],
        options: GenerateOptions,
        model: str,
        ctx: Optional[OperationContext],
    ) -> AsyncIterator[LLMChunk]:
        """
        One Chat Completions call.

        Streaming emits one chunk per delta (text and/or tool-call fragments)
        and a terminal chunk carrying usage and finish_reason. Non-streaming
        emits a single terminal chunk.
        """
        streaming = True if options.stream is None else bool(options.stream)
        client = self._client_for(options)
        kwargs = self._request_kwargs(
            messages=messages, tools=tools, options=options, model=model, streaming=streaming
        )
        if ctx and ctx.traceparent:
            kwargs["extra_headers"] = {"traceparent": ctx.traceparent, **kwargs.get("extra_headers", {})}

        try:
            resp = await client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise translate_openai_error(exc) from exc

        if not streaming:
            if not getattr(resp, "choices", None):
                raise Unavailable("OpenAI returned no choices")
            choice = resp.choices[0]
            message = getattr(choice, "message", None)
            yield LLMChunk(
                text=(getattr(message, "content", None) or "") if message is not None else "",
                is_final=True,
                model=getattr(resp, "model", None) or model,
                usage_so_far=_usage_from(getattr(resp, "usage", None)),
                tool_calls=_tool_deltas(getattr(message, "tool_calls", None)),
                finish_reason=getattr(choice, "finish_reason", None) or "stop",
                response_id=getattr(resp, "id", None),
            )
            return

        last_model_id: Optional[str] = None
        response_id: Optional[str] = None
        finish_reason: Optional[str] = None
        final_usage: Optional[TokenUsage] = None
        try:
            async for event in resp:
                last_model_id = getattr(event, "model", None) or last_model_id
                response_id = getattr(event, "id", None) or response_id
                usage = _usage_from(getattr(event, "usage", None))
                if usage is not None:
                    final_usage = usage

                # usage-only events (include_usage) have no choices
                if not getattr(event, "choices", None):
                    continue

                choice = event.choices[0]
                finish_reason = getattr(choice, "finish_reason", None) or finish_reason
                delta = getattr(choice, "delta", None)
                text = (getattr(delta, "content", None) or "") if delta is not None else ""
                tool_calls = _tool_deltas(getattr(delta, "tool_calls", None)) if delta is not None else ()

                if text or tool_calls:
                    yield LLMChunk(
                        text=text,
                        is_final=False,
                        model=last_model_id or model,
                        tool_calls=tool_calls,
                        response_id=response_id,
                    )
        except LLMAdapterError:
            raise
        except Exception as exc:
            raise translate_openai_error(exc) from exc
        finally:
            # releases the HTTP response on early close/cancel
            await resp.close()

        yield LLMChunk(
            is_final=True,
            model=last_model_id or model,
            usage_so_far=final_usage,
            finish_reason=finish_reason or "stop",
            response_id=response_id,
        )

    async def _do_health(
        self,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Mapping[str, Any]:
        """
        Minimal live check: list models. Failures are reported, not raised.
        """
        try:
            await self._client.models.list()
            return {"ok": True, "server": "openai", "version": self._version}
        except Exception as exc:
            err = translate_openai_error(exc)
            logger.warning("OpenAIAdapter health check failed: %s", err)
            return {"ok": False, "server": "openai", "version": self._version}

    async def close(self) -> None:
        """Close the SDK client when this adapter created it."""
        if self._owns_client:
            await self._client.close()


__all__ = [
    "OpenAIAdapter",
    "translate_openai_error",
]
