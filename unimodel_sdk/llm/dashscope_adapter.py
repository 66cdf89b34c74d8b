# unimodel_sdk/llm/dashscope_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
DashScope adapter for the unified model contract.

Two layers:

- DashScopeHttpClient: endpoint selection, URL/query building, headers,
  passthrough body params, error envelopes, public-key retrieval. One call =
  one HTTP exchange; no retry here.
- DashScopeAdapter: BaseLLMAdapter implementation. Builds
  `{model, input: {messages}, parameters}` bodies, optionally seals them with
  the hybrid encryption envelope, and parses each response (or SSE event)
  into LLMChunk.

Encryption runs inside `_do_stream`, which the execution policy engine calls
once per attempt, so every attempt gets a fresh key/IV and its own
correlation id; the context is released when the attempt ends.

Configuration
-------------
- api_key:   constructor argument, falling back to DASHSCOPE_API_KEY.
- base_url:  constructor argument, falling back to DASHSCOPE_BASE_URL, then
             https://dashscope.aliyuncs.com.
- Per-call overrides (api_key, base_url, endpoint_path, additional_*) travel
  in GenerateOptions.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from unimodel_sdk.llm.encryption import (
    EncryptionContextStore,
    EncryptionEnvelope,
    PublicKey,
    PublicKeyCache,
)
from unimodel_sdk.llm.errors import (
    AuthError,
    BadRequest,
    LLMAdapterError,
    MalformedResponse,
    NotSupported,
    ResourceExhausted,
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
from unimodel_sdk.llm.sse import aiter_sse_json
from unimodel_sdk.llm.transport import HttpRequest, HttpTransport, HttpxTransport

LOG = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://dashscope.aliyuncs.com"
TEXT_GENERATION_ENDPOINT = "/api/v1/services/aigc/text-generation/generation"
MULTIMODAL_GENERATION_ENDPOINT = "/api/v1/services/aigc/multimodal-generation/generation"
PUBLIC_KEY_ENDPOINT = "/api/v1/public-keys/latest"

SSE_HEADER = "X-DashScope-SSE"

# Error-envelope codes that have a more specific kind than "bad request".
_ENVELOPE_CODES = {
    "InvalidApiKey": AuthError,
    "Throttling": ResourceExhausted,
    "Throttling.RateQuota": ResourceExhausted,
    "Throttling.AllocationQuota": ResourceExhausted,
    "InternalError": Unavailable,
    "ServiceUnavailable": Unavailable,
}


def _mask(text: str) -> str:
    if len(text) <= 8:
        return "***"
    return f"{text[:4]}...{text[-4:]}"


def is_multimodal_model(model_name: Optional[str]) -> bool:
    """Vision/reasoning models (`qvq*`, `*-vl*`) use the multimodal endpoint."""
    if not model_name:
        return False
    name = model_name.lower()
    return name.startswith("qvq") or "-vl" in name


def select_endpoint(model_name: Optional[str]) -> str:
    return MULTIMODAL_GENERATION_ENDPOINT if is_multimodal_model(model_name) else TEXT_GENERATION_ENDPOINT


def raise_for_envelope(payload: Any, *, status_code: Optional[int] = None) -> None:
    """
    Raise when `payload` is a DashScope error envelope `{code, message}`.

    Successful responses may carry an empty `code`; only a non-empty code
    together with no `output` counts as an error.
    """
    if not isinstance(payload, Mapping):
        return
    code = payload.get("code")
    if not code or payload.get("output") is not None:
        return
    message = str(payload.get("message") or code)
    cls = _ENVELOPE_CODES.get(str(code), BadRequest)
    raise cls(
        f"DashScope error {code}: {message}",
        status_code=status_code,
        details={"dashscope_code": str(code), "request_id": payload.get("request_id")},
    )


# =============================================================================
# HTTP client
# =============================================================================

class DashScopeHttpClient:
    """
    Thin DashScope HTTP client over an HttpTransport.

    Parameters
    ----------
    api_key:
        DashScope API key (falls back to DASHSCOPE_API_KEY).
    base_url:
        API root (falls back to DASHSCOPE_BASE_URL, then the public endpoint).
    transport:
        Injected HttpTransport; an owned HttpxTransport is created otherwise.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[HttpTransport] = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("DASHSCOPE_API_KEY")
        self._base_url = (base_url or os.environ.get("DASHSCOPE_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self._owns_transport = transport is None
        self._transport: HttpTransport = transport or HttpxTransport()

    @property
    def base_url(self) -> str:
        return self._base_url

    def build_url(
        self,
        endpoint: str,
        *,
        base_url: Optional[str] = None,
        query_params: Optional[Mapping[str, Any]] = None,
    ) -> str:
        root = (base_url or self._base_url).rstrip("/")
        url = root + (endpoint if endpoint.startswith("/") else "/" + endpoint)
        if query_params:
            sep = "&" if "?" in url else "?"
            url = url + sep + urlencode({k: str(v) for k, v in query_params.items()})
        return url

    def build_headers(
        self,
        *,
        streaming: bool,
        api_key: Optional[str] = None,
        additional_headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        key = api_key or self._api_key
        if not key:
            raise AuthError("DashScope API key is not configured (set DASHSCOPE_API_KEY)")
        headers = {
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }
        if streaming:
            headers[SSE_HEADER] = "enable"
        # caller-supplied headers override defaults
        headers.update(additional_headers or {})
        return headers

    @staticmethod
    def build_body(
        body: Mapping[str, Any],
        additional_body_params: Optional[Mapping[str, Any]] = None,
    ) -> str:
        merged = dict(body)
        merged.update(additional_body_params or {})
        return json.dumps(merged, ensure_ascii=False)

    async def call(
        self,
        body: Mapping[str, Any],
        *,
        endpoint: str,
        headers: Mapping[str, str],
        base_url: Optional[str] = None,
        additional_body_params: Optional[Mapping[str, Any]] = None,
        query_params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """One non-streaming call; returns the parsed response object."""
        request = HttpRequest(
            url=self.build_url(endpoint, base_url=base_url, query_params=query_params),
            method="POST",
            headers=dict(headers),
            body=self.build_body(body, additional_body_params),
        )
        response = await self._transport.execute(request)
        payload = response.json()
        raise_for_envelope(payload, status_code=response.status_code)
        if not isinstance(payload, dict):
            raise MalformedResponse("DashScope response is not a JSON object")
        return payload

    async def stream(
        self,
        body: Mapping[str, Any],
        *,
        endpoint: str,
        headers: Mapping[str, str],
        base_url: Optional[str] = None,
        additional_body_params: Optional[Mapping[str, Any]] = None,
        query_params: Optional[Mapping[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """One streaming call; yields each parsed SSE event object."""
        request = HttpRequest(
            url=self.build_url(endpoint, base_url=base_url, query_params=query_params),
            method="POST",
            headers=dict(headers),
            body=self.build_body(body, additional_body_params),
        )
        events = aiter_sse_json(self._transport.stream(request))
        try:
            async for payload in events:
                raise_for_envelope(payload)
                if not isinstance(payload, dict):
                    raise MalformedResponse("DashScope SSE event is not a JSON object")
                yield payload
        finally:
            await events.aclose()

    async def fetch_public_key(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> PublicKey:
        """GET the current RSA public key used for request encryption."""
        request = HttpRequest(
            url=self.build_url(PUBLIC_KEY_ENDPOINT, base_url=base_url),
            method="GET",
            headers=self.build_headers(streaming=False, api_key=api_key),
        )
        response = await self._transport.execute(request)
        payload = response.json()
        raise_for_envelope(payload, status_code=response.status_code)
        key = PublicKey.from_payload(payload)
        LOG.debug("Fetched DashScope public key id=%s", key.public_key_id)
        return key

    async def close(self) -> None:
        if self._owns_transport:
            await self._transport.close()


# =============================================================================
# Response parsing
# =============================================================================

def _usage_from(payload: Mapping[str, Any]) -> Optional[TokenUsage]:
    usage = payload.get("usage")
    if not isinstance(usage, Mapping):
        return None
    prompt = int(usage.get("input_tokens") or 0)
    completion = int(usage.get("output_tokens") or 0)
    total = int(usage.get("total_tokens") or (prompt + completion))
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _text_of(content: Any) -> str:
    # multimodal responses carry content as [{"text": ...}, {"image": ...}]
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(part.get("text", "")) for part in content if isinstance(part, Mapping)
        )
    return ""


def _tool_deltas(raw_calls: Any) -> Tuple[ToolCallDelta, ...]:
    if not isinstance(raw_calls, list):
        return ()
    deltas: List[ToolCallDelta] = []
    for pos, call in enumerate(raw_calls):
        if not isinstance(call, Mapping):
            continue
        fn = call.get("function") if isinstance(call.get("function"), Mapping) else {}
        arguments = fn.get("arguments")
        if arguments is not None and not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        deltas.append(
            ToolCallDelta(
                index=int(call.get("index", pos)),
                id=call.get("id") or None,
                name=fn.get("name") or None,
                arguments=arguments or "",
            )
        )
    return tuple(deltas)


def parse_response(payload: Mapping[str, Any], *, model: str, final: bool) -> LLMChunk:
    """
    Convert one (decrypted) DashScope response object into an LLMChunk.

    Handles both `result_format=message` (`output.choices[0].message`) and
    the legacy `output.text` shape. DashScope reports an in-progress stream's
    finish_reason as the string "null".
    """
    output = payload.get("output")
    if output is None:
        output = {}
    if not isinstance(output, Mapping):
        raise MalformedResponse("DashScope response 'output' is not an object")

    text = ""
    tool_calls: Tuple[ToolCallDelta, ...] = ()
    finish_reason = output.get("finish_reason")

    choices = output.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0] if isinstance(choices[0], Mapping) else {}
        message = choice.get("message") if isinstance(choice.get("message"), Mapping) else {}
        text = _text_of(message.get("content"))
        tool_calls = _tool_deltas(message.get("tool_calls"))
        finish_reason = choice.get("finish_reason", finish_reason)
    elif output.get("text") is not None:
        text = str(output.get("text"))

    if finish_reason in (None, "", "null"):
        finish_reason = None

    return LLMChunk(
        text=text,
        is_final=final or finish_reason is not None,
        model=model,
        usage_so_far=_usage_from(payload),
        tool_calls=tool_calls,
        finish_reason=finish_reason,
        response_id=payload.get("request_id"),
    )


# =============================================================================
# Adapter
# =============================================================================

class DashScopeAdapter(BaseLLMAdapter):
    """
    BaseLLMAdapter over the DashScope generation API.

    Parameters
    ----------
    api_key, base_url, transport:
        Forwarded to DashScopeHttpClient.
    model:
        Default model (e.g. "qwen-max"); per-call `options.model_name` wins.
    stream:
        Default transport mode when `options.stream` is unset.
    enable_thinking:
        Sends `enable_thinking`; thinking mode forces streaming.
    enable_encrypt:
        Seal request inputs with the hybrid encryption envelope. The public
        key is fetched lazily on first use and cached.
    public_key:
        Pre-provisioned key; skips the fetch.
    """

    _provider = "dashscope"

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        stream: bool = True,
        enable_thinking: Optional[bool] = None,
        enable_search: Optional[bool] = None,
        enable_encrypt: bool = False,
        public_key: Optional[PublicKey] = None,
        transport: Optional[HttpTransport] = None,
        client: Optional[DashScopeHttpClient] = None,
        default_options: Optional[GenerateOptions] = None,
        metrics: Optional[MetricsSink] = None,
        max_context_length: int = 131072,
    ) -> None:
        super().__init__(
            default_options=default_options,
            metrics=metrics,
            default_model=model,
            model_family="qwen",
        )
        self._client = client or DashScopeHttpClient(
            api_key=api_key, base_url=base_url, transport=transport
        )
        if enable_thinking and not stream:
            LOG.warning("Thinking mode is enabled but stream=False; forcing streaming")
        self._stream = True if enable_thinking else stream
        self._enable_thinking = enable_thinking
        self._enable_search = enable_search
        self._enable_encrypt = enable_encrypt or public_key is not None
        self._max_context_length = max_context_length
        self._store = EncryptionContextStore()
        self._key_cache = PublicKeyCache(self._fetch_default_key)
        if public_key is not None:
            self._key_cache.set(public_key)

    @property
    def http_client(self) -> DashScopeHttpClient:
        return self._client

    @property
    def encryption_store(self) -> EncryptionContextStore:
        return self._store

    async def close(self) -> None:
        await self._client.close()

    # --- request building ------------------------------------------------------

    def _parameters(
        self,
        *,
        options: GenerateOptions,
        tools: Optional[List[Mapping[str, Any]]],
        streaming: bool,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"result_format": "message"}
        if streaming:
            params["incremental_output"] = True
        for src, dst in (
            ("temperature", "temperature"),
            ("top_p", "top_p"),
            ("top_k", "top_k"),
            ("max_tokens", "max_tokens"),
            ("seed", "seed"),
            ("frequency_penalty", "frequency_penalty"),
            ("presence_penalty", "presence_penalty"),
        ):
            value = getattr(options, src)
            if value is not None:
                params[dst] = value
        if options.stop_sequences:
            params["stop"] = list(options.stop_sequences)

        if options.thinking_budget is not None and not self._enable_thinking:
            raise BadRequest("thinking_budget requires the adapter to be created with enable_thinking=True")
        if self._enable_thinking is not None:
            params["enable_thinking"] = self._enable_thinking
        if self._enable_thinking and options.thinking_budget is not None:
            params["thinking_budget"] = options.thinking_budget
        if self._enable_search is not None:
            params["enable_search"] = self._enable_search

        if tools:
            params["tools"] = [dict(t) for t in tools]
            if options.tool_choice is not None:
                params["tool_choice"] = options.tool_choice.to_wire()
        return params

    def _build_body(
        self,
        *,
        messages: List[Mapping[str, Any]],
        tools: Optional[List[Mapping[str, Any]]],
        options: GenerateOptions,
        model: str,
        streaming: bool,
    ) -> Dict[str, Any]:
        return {
            "model": model,
            "input": {"messages": [dict(m) for m in messages]},
            "parameters": self._parameters(options=options, tools=tools, streaming=streaming),
        }

    async def _fetch_default_key(self) -> PublicKey:
        defaults = self.default_options
        return await self._client.fetch_public_key(api_key=defaults.api_key, base_url=defaults.base_url)

    async def _envelope(self, options: GenerateOptions) -> EncryptionEnvelope:
        defaults = self.default_options
        if options.api_key != defaults.api_key or options.base_url != defaults.base_url:
            # credentials/endpoint overridden per call get their own key, not the cached one
            key = await self._client.fetch_public_key(api_key=options.api_key, base_url=options.base_url)
        else:
            key = await self._key_cache.get()
        return EncryptionEnvelope(key, self._store)

    # --- hooks -------------------------------------------------------------------

    async def _do_capabilities(self) -> LLMCapabilities:
        return LLMCapabilities(
            server="dashscope",
            version="v1",
            model_family="qwen",
            max_context_length=self._max_context_length,
            supports_streaming=True,
            supports_tools=True,
            supports_encryption=True,
            supported_models=(self._default_model,) if self._default_model else (),
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
        streaming = self._stream if options.stream is None else bool(options.stream)
        if self._enable_thinking:
            streaming = True

        body: Dict[str, Any] = self._build_body(
            messages=messages, tools=tools, options=options, model=model, streaming=streaming
        )
        headers = self._client.build_headers(
            streaming=streaming,
            api_key=options.api_key,
            additional_headers=options.additional_headers,
        )
        if ctx and ctx.request_id:
            headers.setdefault("X-Request-Id", ctx.request_id)
        if ctx and ctx.traceparent:
            headers.setdefault("traceparent", ctx.traceparent)

        envelope: Optional[EncryptionEnvelope] = None
        correlation_id: Optional[str] = None
        if self._enable_encrypt:
            envelope = await self._envelope(options)
            sealed = envelope.seal(body)
            body = sealed.body
            headers.update(sealed.headers)
            correlation_id = sealed.correlation_id

        endpoint = options.endpoint_path or select_endpoint(model)
        LOG.debug(
            "DashScope request: model=%s endpoint=%s stream=%s encrypted=%s key=%s",
            model,
            endpoint,
            streaming,
            envelope is not None,
            _mask(headers["Authorization"][len("Bearer "):]),
        )

        call_kwargs = dict(
            endpoint=endpoint,
            headers=headers,
            base_url=options.base_url,
            additional_body_params=options.additional_body_params,
            query_params=options.additional_query_params,
        )

        try:
            if not streaming:
                payload = await self._client.call(body, **call_kwargs)
                if envelope is not None:
                    payload = envelope.open(payload, correlation_id)
                yield parse_response(payload, model=model, final=True)
                return

            events = self._client.stream(body, **call_kwargs)
            saw_final = False
            try:
                async for payload in events:
                    if envelope is not None:
                        payload = envelope.open(payload, correlation_id)
                    chunk = parse_response(payload, model=model, final=False)
                    saw_final = chunk.is_final
                    yield chunk
                    if saw_final:
                        break
            finally:
                await events.aclose()
            if not saw_final:
                yield LLMChunk(is_final=True, model=model, finish_reason="stop")
        except LLMAdapterError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponse(f"unexpected DashScope response: {e}") from e
        finally:
            if envelope is not None:
                envelope.release(correlation_id)

    async def _do_health(self, *, ctx: Optional[OperationContext] = None) -> Mapping[str, Any]:
        if not self._enable_encrypt:
            raise NotSupported("DashScope has no health endpoint; enable encryption to probe the key service")
        await self._key_cache.get()
        return {"ok": True, "server": "dashscope", "version": "v1"}


__all__ = [
    "DEFAULT_BASE_URL",
    "TEXT_GENERATION_ENDPOINT",
    "MULTIMODAL_GENERATION_ENDPOINT",
    "PUBLIC_KEY_ENDPOINT",
    "is_multimodal_model",
    "select_endpoint",
    "raise_for_envelope",
    "parse_response",
    "DashScopeHttpClient",
    "DashScopeAdapter",
]
