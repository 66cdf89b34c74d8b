# SPDX-License-Identifier: Apache-2.0
"""
Mock model adapter used by the pipeline tests.

Implements the BaseLLMAdapter `_do_*` hooks with a deterministic token plan
and scriptable failure injection, so retry/timeout/aggregation behavior can be
asserted without a network.

Key properties:
- Deterministic given the same inputs (echo of the last message + suffix)
- `script` lists per-attempt outcomes: an exception to raise (before or after
  the first token) or None for a clean attempt; attempts past the end of the
  script succeed
- Counts attempts and records every effective GenerateOptions it received
- Optional per-token delay to exercise timeouts and cancellation
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Mapping, Optional, Sequence

from unimodel_sdk.llm.llm_base import (
    BaseLLMAdapter,
    LLMCapabilities,
    LLMChunk,
    OperationContext,
    TokenUsage,
    ToolCallDelta,
)
from unimodel_sdk.llm.options import GenerateOptions


def _tokenize(s: str) -> List[str]:
    # Ultra-simple tokenizer: whitespace split
    return s.split()


@dataclass
class ScriptedFailure:
    """Raise `error` after `after_tokens` tokens have been emitted."""
    error: BaseException
    after_tokens: int = 0


@dataclass
class MockLLMAdapter(BaseLLMAdapter):
    """A scriptable mock adapter for pipeline tests."""

    _provider = "mock"

    name: str = "mock-llm"
    script: Sequence[Optional[Any]] = ()
    token_delay_s: float = 0.0
    tool_call: Optional[Mapping[str, Any]] = None
    default_options_: Optional[GenerateOptions] = None

    attempts: int = field(default=0, init=False)
    closed_streams: int = field(default=0, init=False)
    seen_options: List[GenerateOptions] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        super().__init__(
            default_options=self.default_options_,
            default_model="mock-model",
            model_family="mock",
        )

    def _plan(self, messages: List[Mapping[str, Any]], model: str, options: GenerateOptions) -> List[str]:
        last_content = str(messages[-1].get("content", "")) if messages else ""
        tokens = _tokenize(last_content.strip() or "ok") + ["(mock)", f"[{model}]"]
        if options.max_tokens is not None:
            tokens = tokens[: max(1, options.max_tokens)]
        return tokens

    def _outcome(self, attempt: int) -> Optional[ScriptedFailure]:
        if attempt > len(self.script):
            return None
        step = self.script[attempt - 1]
        if step is None:
            return None
        if isinstance(step, ScriptedFailure):
            return step
        return ScriptedFailure(error=step)

    async def _do_capabilities(self) -> LLMCapabilities:
        return LLMCapabilities(
            server="mock",
            version="1.0.0",
            model_family="mock",
            max_context_length=4096,
            supports_tools=True,
            supported_models=("mock-model",),
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
        self.attempts += 1
        self.seen_options.append(options)
        failure = self._outcome(self.attempts)
        tokens = self._plan(messages, model, options)

        try:
            for i, tok in enumerate(tokens):
                if failure is not None and i == failure.after_tokens:
                    raise failure.error
                if self.token_delay_s:
                    await asyncio.sleep(self.token_delay_s)
                yield LLMChunk(text=tok if i == 0 else " " + tok, model=model)
            if failure is not None:
                raise failure.error

            if tools and self.tool_call is not None:
                args = str(self.tool_call.get("arguments", "{}"))
                half = len(args) // 2
                yield LLMChunk(
                    tool_calls=(ToolCallDelta(index=0, id="call_0", name=self.tool_call["name"], arguments=args[:half]),),
                    model=model,
                )
                yield LLMChunk(tool_calls=(ToolCallDelta(index=0, arguments=args[half:]),), model=model)

            prompt = sum(len(_tokenize(str(m.get("content", "")))) for m in messages)
            yield LLMChunk(
                is_final=True,
                model=model,
                usage_so_far=TokenUsage(
                    prompt_tokens=prompt,
                    completion_tokens=len(tokens),
                    total_tokens=prompt + len(tokens),
                ),
                finish_reason="tool_calls" if tools and self.tool_call is not None else "stop",
            )
        finally:
            self.closed_streams += 1

    async def _do_health(self, *, ctx: Optional[OperationContext] = None) -> Mapping[str, Any]:
        status_hint = ctx.attrs.get("health") if ctx else None
        return {"ok": status_hint != "error", "server": "mock", "version": "1.0.0"}
