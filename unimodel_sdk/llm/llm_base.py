# unimodel_sdk/llm/llm_base.py
# SPDX-License-Identifier: Apache-2.0
"""
Unified model contract — public types + instrumented base adapter.

Purpose
-------
One vendor-neutral, async API over every provider backend:

- Single streaming abstraction: every call is an async iterator of `LLMChunk`
  response events (text delta, tool-call delta, usage, terminal marker).
- Execution policy: timeout / retry / backoff-with-jitter from
  `GenerateOptions.execution_config`, applied around the provider call.
- Normalized error taxonomy (see `unimodel_sdk.llm.errors`).
- Deadline preflight from `OperationContext.deadline_ms`.
- SIEM-safe metrics via a pluggable `MetricsSink`.

Call flow
---------

    stream(messages, options)
      -> merge options over adapter.default_options
      -> validate messages + sampling params
      -> factory = lambda: self._do_stream(...)      # provider call (+ encryption)
      -> apply_execution_policy(factory, execution_config)
      -> metrics / error context
      -> caller

Encryption (when a provider uses it) happens inside `_do_stream`, i.e. inside
the factory, so each retried attempt seals with a fresh key/IV instead of
reusing a stale context.

Minimal core surface:
    * capabilities()
    * stream()
    * complete()     (aggregates stream())
    * health()

Backend implementers override only the `_do_*` hooks.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, replace
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from unimodel_sdk.core.error_context import attach_context
from unimodel_sdk.llm.errors import (
    BadRequest,
    DeadlineExceeded,
    LLMAdapterError,
    NotSupported,
    Unavailable,
)
from unimodel_sdk.llm.execution import ExecutionConfig, apply_execution_policy, retry_on_any
from unimodel_sdk.llm.options import GenerateOptions

LOG = logging.getLogger(__name__)

LLM_PROTOCOL_VERSION = "1.0.0"


# =============================================================================
# Operation Context (tracing, deadlines, multi-tenant isolation)
# =============================================================================

@dataclass(frozen=True)
class OperationContext:
    """
    Context for model operations. All fields are optional and advisory.

    Attributes:
        request_id:
            Correlation ID for tracing across systems.
        deadline_ms:
            Absolute epoch ms; checked before the call and while streaming.
        traceparent:
            W3C traceparent header for distributed tracing.
        tenant:
            Tenant/project identifier; never logged directly (only hashed).
        attrs:
            Additional JSON-serializable attributes for routing/middleware.
    """
    request_id: Optional[str] = None
    deadline_ms: Optional[int] = None
    traceparent: Optional[str] = None
    tenant: Optional[str] = None
    attrs: Mapping[str, Any] = None

    def __post_init__(self) -> None:
        if self.attrs is None:
            object.__setattr__(self, "attrs", {})


# =============================================================================
# Metrics Interface (SIEM-safe, low-cardinality)
# =============================================================================

class MetricsSink(Protocol):
    """
    Metrics collection protocol.

    Implementations MUST avoid PII and high-cardinality labels.
    """
    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...


class NoopMetrics:
    """No-op metrics sink for tests or minimal deployments."""
    def observe(self, **_: Any) -> None: ...
    def counter(self, **_: Any) -> None: ...


# =============================================================================
# Result Models
# =============================================================================

@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class ToolCallDelta:
    """
    Incremental tool-call fragment.

    Fragments sharing an `index` belong to one call; `arguments` fragments are
    concatenated in arrival order.
    """
    index: int = 0
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass(frozen=True)
class ToolCall:
    id: Optional[str]
    name: str
    arguments: str


@dataclass(frozen=True)
class LLMChunk:
    """
    One streaming response event.

    Attributes:
        text:
            Text delta (MAY be empty for tool-call / usage / terminal events).
        is_final:
            True on the terminal event; nothing follows it.
        model:
            Model identifier when the provider reports it.
        usage_so_far:
            Token usage snapshot; typically only on the final event.
        tool_calls:
            Tool-call deltas carried by this event.
        finish_reason:
            "stop", "length", "tool_calls", ... on the terminal event.
        response_id:
            Provider request/response id when available.
    """
    text: str = ""
    is_final: bool = False
    model: Optional[str] = None
    usage_so_far: Optional[TokenUsage] = None
    tool_calls: Tuple[ToolCallDelta, ...] = ()
    finish_reason: Optional[str] = None
    response_id: Optional[str] = None


@dataclass(frozen=True)
class LLMCompletion:
    """
    Aggregated (non-streaming) result.
    """
    text: str
    model: str
    model_family: str
    usage: TokenUsage
    finish_reason: str
    tool_calls: Tuple[ToolCall, ...] = ()
    response_id: Optional[str] = None


@dataclass(frozen=True)
class LLMCapabilities:
    """
    Describes the capabilities and limits of an adapter.
    """
    server: str
    version: str
    model_family: str
    max_context_length: int
    supports_streaming: bool = True
    supports_tools: bool = False
    supports_encryption: bool = False
    supports_deadline: bool = True
    supported_models: Tuple[str, ...] = ()  # empty ⇒ open/adapter-defined set


def aggregate_chunks(
    chunks: Sequence[LLMChunk],
    *,
    default_model: str,
    model_family: str,
) -> LLMCompletion:
    """
    Fold a complete chunk sequence into one LLMCompletion.

    Text deltas concatenate in order, the last usage snapshot and finish
    reason win, and tool-call deltas merge by index.
    """
    text_parts: List[str] = []
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
    model: Optional[str] = None
    response_id: Optional[str] = None
    calls: Dict[int, Dict[str, Any]] = {}

    for chunk in chunks:
        if chunk.text:
            text_parts.append(chunk.text)
        if chunk.usage_so_far is not None:
            usage = chunk.usage_so_far
        if chunk.finish_reason:
            finish_reason = chunk.finish_reason
        if chunk.model:
            model = chunk.model
        if chunk.response_id:
            response_id = chunk.response_id
        for delta in chunk.tool_calls:
            slot = calls.setdefault(delta.index, {"id": None, "name": "", "arguments": []})
            if delta.id and not slot["id"]:
                slot["id"] = delta.id
            if delta.name and not slot["name"]:
                slot["name"] = delta.name
            if delta.arguments:
                slot["arguments"].append(delta.arguments)

    tool_calls = tuple(
        ToolCall(id=slot["id"], name=slot["name"], arguments="".join(slot["arguments"]))
        for _, slot in sorted(calls.items())
    )
    return LLMCompletion(
        text="".join(text_parts),
        model=model or default_model,
        model_family=model_family,
        usage=usage or TokenUsage(prompt_tokens=0, completion_tokens=0, total_tokens=0),
        finish_reason=finish_reason or ("tool_calls" if tool_calls else "stop"),
        tool_calls=tool_calls,
        response_id=response_id,
    )


# =============================================================================
# Stable Protocol Interface
# =============================================================================

@runtime_checkable
class LLMProtocolV1(Protocol):
    """
    Language-level contract for model adapters.

    Implementations MUST raise LLMAdapterError subclasses on failure.
    """

    async def capabilities(self) -> LLMCapabilities: ...

    def stream(
        self,
        *,
        messages: List[Mapping[str, Any]],
        tools: Optional[List[Mapping[str, Any]]] = None,
        options: Optional[GenerateOptions] = None,
        ctx: Optional[OperationContext] = None,
    ) -> AsyncIterator[LLMChunk]: ...

    async def complete(
        self,
        *,
        messages: List[Mapping[str, Any]],
        tools: Optional[List[Mapping[str, Any]]] = None,
        options: Optional[GenerateOptions] = None,
        ctx: Optional[OperationContext] = None,
    ) -> LLMCompletion: ...

    async def health(self, *, ctx: Optional[OperationContext] = None) -> Mapping[str, Any]: ...


# =============================================================================
# Base Instrumented Adapter
# =============================================================================

class BaseLLMAdapter(LLMProtocolV1):
    """
    Base implementation of LLMProtocolV1.

    This class:
        - Merges per-call GenerateOptions over the adapter defaults.
        - Validates messages and sampling parameters.
        - Applies deadline preflight (ctx.deadline_ms).
        - Wraps each provider call with the execution policy engine.
        - Emits SIEM-safe metrics (hashed tenant IDs).
        - Attaches adapter/operation context to propagating errors.
    """

    _component = "llm"
    _provider = "base"

    def __init__(
        self,
        *,
        default_options: Optional[GenerateOptions] = None,
        metrics: Optional[MetricsSink] = None,
        default_model: Optional[str] = None,
        model_family: str = "unknown",
    ) -> None:
        self._default_options = default_options or GenerateOptions()
        self._metrics: MetricsSink = metrics or NoopMetrics()
        self._default_model = default_model
        self._model_family = model_family

    @property
    def default_options(self) -> GenerateOptions:
        return self._default_options

    # --- async context management --------------------------------------------

    async def __aenter__(self) -> "BaseLLMAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Release transports/clients. Default is a no-op."""
        return None

    # --- internal helpers (validation, metrics) ------------------------------

    @staticmethod
    def _validate_messages(messages: List[Mapping[str, Any]]) -> None:
        if (
            not messages
            or not all(isinstance(m, Mapping) and "role" in m and "content" in m for m in messages)
        ):
            raise BadRequest("messages must be a non-empty list of {role, content} mappings")
        try:
            json.dumps(messages)
        except (TypeError, ValueError) as e:
            raise BadRequest(f"messages must be JSON-serializable: {e}")

    @staticmethod
    def _validate_sampling_params(options: GenerateOptions) -> None:
        """
        Validate core sampling parameters in conservative, production-safe ranges.
        """
        if options.temperature is not None and not (0.0 <= options.temperature <= 2.0):
            raise BadRequest("temperature must be within [0.0, 2.0]")
        if options.top_p is not None and not (0.0 < options.top_p <= 1.0):
            raise BadRequest("top_p must be within (0.0, 1.0]")
        if options.frequency_penalty is not None and not (-2.0 <= options.frequency_penalty <= 2.0):
            raise BadRequest("frequency_penalty must be within [-2.0, 2.0]")
        if options.presence_penalty is not None and not (-2.0 <= options.presence_penalty <= 2.0):
            raise BadRequest("presence_penalty must be within [-2.0, 2.0]")
        if options.max_tokens is not None and options.max_tokens <= 0:
            raise BadRequest("max_tokens must be > 0")

    @staticmethod
    def _tenant_hash(t: Optional[str]) -> Optional[str]:
        """
        Hash tenant for metrics/logging. Raw tenant identifiers MUST NEVER be emitted.
        """
        if not t:
            return None
        return hashlib.sha256(t.encode()).hexdigest()[:12]

    def _record(
        self,
        op: str,
        t0: float,
        ok: bool,
        *,
        code: str = "OK",
        ctx: Optional[OperationContext] = None,
        **extra: Any,
    ) -> None:
        """
        Emit a timing metric for an operation. Metrics failures are swallowed.
        """
        try:
            ms = (time.monotonic() - t0) * 1000.0
            x = dict(extra or {})
            if ctx:
                x["tenant"] = self._tenant_hash(ctx.tenant)
            self._metrics.observe(
                component=self._component,
                op=op,
                ms=ms,
                ok=ok,
                code=code,
                extra=x or None,
            )
        except Exception:
            pass

    def _preflight_deadline(self, ctx: Optional[OperationContext]) -> None:
        """Fast-fail if ctx.deadline_ms has already elapsed."""
        if ctx and ctx.deadline_ms is not None:
            now_ms = int(time.time() * 1000)
            if now_ms >= ctx.deadline_ms:
                raise DeadlineExceeded(
                    "deadline already exceeded",
                    details={"remaining_ms": 0},
                )

    @staticmethod
    def _policy_config(
        config: Optional[ExecutionConfig],
        ctx: Optional[OperationContext],
    ) -> Optional[ExecutionConfig]:
        """
        Bind the caller's absolute deadline into the retry predicate.

        Once ctx.deadline_ms has passed, no error is retried: the caller has
        already given up, so a further attempt would be a wasted provider call.
        """
        if config is None or not config.retries_enabled or ctx is None or ctx.deadline_ms is None:
            return config
        deadline_ms = ctx.deadline_ms
        retry_on = config.retry_on or retry_on_any

        def _retry_before_deadline(error: BaseException) -> bool:
            if int(time.time() * 1000) >= deadline_ms:
                return False
            return retry_on(error)

        return replace(config, retry_on=_retry_before_deadline)

    def _effective_options(self, options: Optional[GenerateOptions]) -> GenerateOptions:
        return GenerateOptions.merge(options, self._default_options) or GenerateOptions()

    def _resolve_model(self, options: GenerateOptions) -> str:
        model = options.model_name or self._default_model
        if not model:
            raise BadRequest("model_name is required (set it in options or default_options)")
        return model

    # --- stream gate -----------------------------------------------------------

    async def _with_gates_stream(
        self,
        *,
        op: str,
        ctx: Optional[OperationContext],
        factory: Callable[[], AsyncIterator[LLMChunk]],
        config: Optional[ExecutionConfig],
        model: str,
    ) -> AsyncIterator[LLMChunk]:
        """
        Shared wrapper for streaming operations.

        Applies deadline preflight (and a per-chunk deadline check), the
        execution policy, metrics for overall duration/outcome, and error
        context. Closing this iterator closes the in-flight provider stream.
        """
        metric_extra = {"model": model, "provider": self._provider}
        self._preflight_deadline(ctx)

        t0 = time.monotonic()
        stream = apply_execution_policy(factory, config, operation=op, model=model)
        try:
            async for chunk in stream:
                self._preflight_deadline(ctx)
                yield chunk

            self._record(op, t0, True, ctx=ctx, **metric_extra)
            self._metrics.counter(component=self._component, name="stream_requests_total", value=1)

        except LLMAdapterError as e:
            code = e.code or type(e).__name__
            self._record(op, t0, False, code=code, ctx=ctx, **metric_extra)
            attach_context(
                e,
                self._provider,
                operation=op,
                model=model,
                request_id=ctx.request_id if ctx else None,
            )
            raise

        except Exception as e:
            self._record(op, t0, False, code="UnhandledException", ctx=ctx, **metric_extra)
            attach_context(e, self._provider, operation=op, model=model)
            raise

        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    # --- Public API --------------------------------------------------------------

    async def capabilities(self) -> LLMCapabilities:
        """Return adapter capabilities (fast, side-effect free)."""
        return await self._do_capabilities()

    def stream(
        self,
        *,
        messages: List[Mapping[str, Any]],
        tools: Optional[List[Mapping[str, Any]]] = None,
        options: Optional[GenerateOptions] = None,
        ctx: Optional[OperationContext] = None,
    ) -> AsyncIterator[LLMChunk]:
        """
        Stream response events for one model call.

        Validation errors raise immediately; the provider call itself starts
        lazily on first iteration.
        """
        self._validate_messages(messages)
        effective = self._effective_options(options)
        self._validate_sampling_params(effective)
        model = self._resolve_model(effective)

        LOG.debug("%s stream: model=%s", self._provider, model)

        def factory() -> AsyncIterator[LLMChunk]:
            return self._do_stream(
                messages=messages,
                tools=tools,
                options=effective,
                model=model,
                ctx=ctx,
            )

        return self._with_gates_stream(
            op="stream",
            ctx=ctx,
            factory=factory,
            config=self._policy_config(effective.execution_config, ctx),
            model=model,
        )

    async def complete(
        self,
        *,
        messages: List[Mapping[str, Any]],
        tools: Optional[List[Mapping[str, Any]]] = None,
        options: Optional[GenerateOptions] = None,
        ctx: Optional[OperationContext] = None,
    ) -> LLMCompletion:
        """
        Run one model call to completion and aggregate its events.

        Retries re-run the whole call, so a completion never mixes events
        from two attempts.
        """
        self._validate_messages(messages)
        effective = self._effective_options(options)
        self._validate_sampling_params(effective)
        model = self._resolve_model(effective)

        async def factory() -> AsyncIterator[LLMCompletion]:
            chunks: List[LLMChunk] = []
            source = self._do_stream(
                messages=messages,
                tools=tools,
                options=effective,
                model=model,
                ctx=ctx,
            )
            try:
                async for chunk in source:
                    self._preflight_deadline(ctx)
                    chunks.append(chunk)
            finally:
                aclose = getattr(source, "aclose", None)
                if aclose is not None:
                    await aclose()
            yield aggregate_chunks(chunks, default_model=model, model_family=self._model_family)

        completion: Optional[LLMCompletion] = None
        async for item in self._with_gates_stream(
            op="complete",
            ctx=ctx,
            factory=factory,
            config=self._policy_config(effective.execution_config, ctx),
            model=model,
        ):
            completion = item
        if completion is None:
            raise Unavailable(f"{self._provider} returned no completion")

        self._metrics.counter(
            component=self._component,
            name="tokens_processed",
            value=int(completion.usage.total_tokens),
        )
        return completion

    async def health(self, *, ctx: Optional[OperationContext] = None) -> Mapping[str, Any]:
        """
        Health check with normalized shape: {"ok", "server", "version"}.
        """
        t0 = time.monotonic()
        try:
            self._preflight_deadline(ctx)
            h = await self._do_health(ctx=ctx)
            self._record("health", t0, True, ctx=ctx)
            return {
                "ok": bool(h.get("ok", True)),
                "server": str(h.get("server", "")),
                "version": str(h.get("version", "")),
            }
        except LLMAdapterError as e:
            self._record("health", t0, False, code=type(e).__name__, ctx=ctx)
            raise
        except Exception as e:
            self._record("health", t0, False, code="UnhandledException", ctx=ctx)
            raise Unavailable("health check failed") from e

    # --- backend hooks -------------------------------------------------------

    async def _do_capabilities(self) -> LLMCapabilities:
        raise NotImplementedError

    def _do_stream(
        self,
        *,
        messages: List[Mapping[str, Any]],
        tools: Optional[List[Mapping[str, Any]]],
        options: GenerateOptions,
        model: str,
        ctx: Optional[OperationContext],
    ) -> AsyncIterator[LLMChunk]:
        """
        Backend implementation of one provider call (one attempt).

        Must return a *fresh* async iterator of LLMChunk each time it is
        called; the execution policy engine calls it once per attempt.
        Non-streaming providers yield a single final chunk.
        """
        raise NotImplementedError

    async def _do_health(self, *, ctx: Optional[OperationContext] = None) -> Mapping[str, Any]:
        raise NotSupported("health is not supported by this adapter")


__all__ = [
    "LLM_PROTOCOL_VERSION",
    "OperationContext",
    "MetricsSink",
    "NoopMetrics",
    "TokenUsage",
    "ToolCallDelta",
    "ToolCall",
    "LLMChunk",
    "LLMCompletion",
    "LLMCapabilities",
    "aggregate_chunks",
    "LLMProtocolV1",
    "BaseLLMAdapter",
]
