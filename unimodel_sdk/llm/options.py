# unimodel_sdk/llm/options.py
# SPDX-License-Identifier: Apache-2.0
"""
Per-call generation options and tool-choice variants.

`GenerateOptions` is an immutable value shared safely across tasks/threads.
Adapters hold `default_options` and merge per-call options over them:

    effective = GenerateOptions.merge(call_options, adapter.default_options)

Merge rules:
    - Scalar fields: primary's non-None value wins, else fallback's.
    - execution_config: merged field-by-field via ExecutionConfig.merge.
    - Map fields (additional_headers / additional_body_params /
      additional_query_params): union of both maps, primary wins on key
      conflicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from unimodel_sdk.llm.execution import ExecutionConfig

_MAP_FIELDS = ("additional_headers", "additional_body_params", "additional_query_params")


# =============================================================================
# Tool choice (tagged union)
# =============================================================================

class ToolChoiceMode(str, Enum):
    AUTO = "auto"
    NONE = "none"
    REQUIRED = "required"
    SPECIFIC = "specific"


@dataclass(frozen=True)
class ToolChoice:
    """
    How the model may use the supplied tools.

    Construct through the class helpers:
        ToolChoice.auto(), ToolChoice.none(), ToolChoice.required(),
        ToolChoice.specific("get_weather")
    """
    mode: ToolChoiceMode
    function_name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.mode is ToolChoiceMode.SPECIFIC and not self.function_name:
            raise ValueError("specific tool choice requires a function_name")
        if self.mode is not ToolChoiceMode.SPECIFIC and self.function_name is not None:
            raise ValueError(f"{self.mode.value} tool choice takes no function_name")

    @classmethod
    def auto(cls) -> "ToolChoice":
        return cls(ToolChoiceMode.AUTO)

    @classmethod
    def none(cls) -> "ToolChoice":
        return cls(ToolChoiceMode.NONE)

    @classmethod
    def required(cls) -> "ToolChoice":
        return cls(ToolChoiceMode.REQUIRED)

    @classmethod
    def specific(cls, function_name: str) -> "ToolChoice":
        return cls(ToolChoiceMode.SPECIFIC, function_name)

    def to_wire(self) -> Union[str, Dict[str, Any]]:
        """
        Render in the OpenAI-compatible shape (also accepted by DashScope).
        """
        if self.mode is ToolChoiceMode.AUTO:
            return "auto"
        if self.mode is ToolChoiceMode.NONE:
            return "none"
        if self.mode is ToolChoiceMode.REQUIRED:
            return "required"
        if self.mode is ToolChoiceMode.SPECIFIC:
            return {"type": "function", "function": {"name": self.function_name}}
        raise ValueError(f"unknown tool choice mode: {self.mode!r}")


# =============================================================================
# Generate options
# =============================================================================

def _frozen_map(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class GenerateOptions:
    """
    Per-call configuration: execution policy, connection overrides and
    provider-agnostic generation parameters. All fields are optional.
    """
    execution_config: Optional[ExecutionConfig] = None

    # connection overrides
    api_key: Optional[str] = field(default=None, repr=False)
    base_url: Optional[str] = None
    endpoint_path: Optional[str] = None

    # generation parameters
    model_name: Optional[str] = None
    stream: Optional[bool] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_tokens: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    seed: Optional[int] = None
    thinking_budget: Optional[int] = None
    reasoning_effort: Optional[str] = None
    stop_sequences: Optional[Tuple[str, ...]] = None
    tool_choice: Optional[ToolChoice] = None

    # passthrough maps
    additional_headers: Mapping[str, str] = field(default_factory=dict)
    additional_body_params: Mapping[str, Any] = field(default_factory=dict)
    additional_query_params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in _MAP_FIELDS:
            object.__setattr__(self, name, _frozen_map(getattr(self, name)))
        if self.stop_sequences is not None:
            object.__setattr__(self, "stop_sequences", tuple(self.stop_sequences))

    @staticmethod
    def merge(
        primary: Optional["GenerateOptions"],
        fallback: Optional["GenerateOptions"],
    ) -> Optional["GenerateOptions"]:
        """
        Merge two option sets; primary overrides fallback field by field.

        Returns the other side unchanged when either is None.
        """
        if primary is None:
            return fallback
        if fallback is None:
            return primary

        merged: Dict[str, Any] = {}
        for f in fields(GenerateOptions):
            p = getattr(primary, f.name)
            fb = getattr(fallback, f.name)
            if f.name == "execution_config":
                merged[f.name] = ExecutionConfig.merge(p, fb)
            elif f.name in _MAP_FIELDS:
                combined = dict(fb)
                combined.update(p)
                merged[f.name] = combined
            else:
                merged[f.name] = p if p is not None else fb
        return GenerateOptions(**merged)


__all__ = ["ToolChoice", "ToolChoiceMode", "GenerateOptions"]
