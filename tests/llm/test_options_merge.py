# SPDX-License-Identifier: Apache-2.0
"""
GenerateOptions / ToolChoice semantics.

Covers:
  • Scalar fields: primary's non-None value wins
  • Nested ExecutionConfig merges field by field
  • Map fields union-merge with primary precedence
  • Immutability of options and their maps
  • ToolChoice validation and wire rendering
"""

import dataclasses

import pytest

from unimodel_sdk.llm.execution import ExecutionConfig
from unimodel_sdk.llm.options import GenerateOptions, ToolChoice, ToolChoiceMode

pytestmark = pytest.mark.asyncio


async def test_primary_scalar_fields_win():
    primary = GenerateOptions(temperature=0.2, model_name="qwen-max")
    fallback = GenerateOptions(temperature=0.9, top_p=0.5, model_name="qwen-plus", max_tokens=128)

    merged = GenerateOptions.merge(primary, fallback)

    assert merged.temperature == 0.2
    assert merged.model_name == "qwen-max"
    assert merged.top_p == 0.5
    assert merged.max_tokens == 128


async def test_zero_and_false_are_not_treated_as_unset():
    merged = GenerateOptions.merge(
        GenerateOptions(temperature=0.0, stream=False),
        GenerateOptions(temperature=1.0, stream=True),
    )
    assert merged.temperature == 0.0
    assert merged.stream is False


async def test_none_side_returns_other_unchanged():
    options = GenerateOptions(seed=7)
    assert GenerateOptions.merge(None, options) is options
    assert GenerateOptions.merge(options, None) is options
    assert GenerateOptions.merge(None, None) is None


async def test_execution_configs_merge_field_by_field():
    primary = GenerateOptions(execution_config=ExecutionConfig(max_attempts=5))
    fallback = GenerateOptions(execution_config=ExecutionConfig(timeout=30, max_attempts=2, initial_backoff=0.5))

    config = GenerateOptions.merge(primary, fallback).execution_config

    assert config.max_attempts == 5
    assert config.timeout == 30.0
    assert config.initial_backoff == 0.5


async def test_maps_union_with_primary_precedence():
    primary = GenerateOptions(
        additional_headers={"X-Trace": "p", "X-Only-Primary": "1"},
        additional_body_params={"enable_search": True},
    )
    fallback = GenerateOptions(
        additional_headers={"X-Trace": "f", "X-Only-Fallback": "2"},
        additional_body_params={"enable_search": False, "vl_high_resolution_images": True},
        additional_query_params={"region": "cn"},
    )

    merged = GenerateOptions.merge(primary, fallback)

    assert dict(merged.additional_headers) == {"X-Trace": "p", "X-Only-Primary": "1", "X-Only-Fallback": "2"}
    assert dict(merged.additional_body_params) == {"enable_search": True, "vl_high_resolution_images": True}
    assert dict(merged.additional_query_params) == {"region": "cn"}


async def test_options_are_immutable():
    options = GenerateOptions(additional_headers={"a": "1"}, stop_sequences=["END"])

    with pytest.raises(dataclasses.FrozenInstanceError):
        options.temperature = 1.0
    with pytest.raises(TypeError):
        options.additional_headers["b"] = "2"
    assert options.stop_sequences == ("END",)


async def test_caller_map_mutation_does_not_leak():
    headers = {"a": "1"}
    options = GenerateOptions(additional_headers=headers)
    headers["a"] = "changed"
    assert options.additional_headers["a"] == "1"


async def test_api_key_is_not_in_repr():
    assert "sk-secret" not in repr(GenerateOptions(api_key="sk-secret"))


async def test_tool_choice_wire_values():
    assert ToolChoice.auto().to_wire() == "auto"
    assert ToolChoice.none().to_wire() == "none"
    assert ToolChoice.required().to_wire() == "required"
    assert ToolChoice.specific("get_weather").to_wire() == {
        "type": "function",
        "function": {"name": "get_weather"},
    }


async def test_tool_choice_validation():
    with pytest.raises(ValueError):
        ToolChoice(ToolChoiceMode.SPECIFIC)
    with pytest.raises(ValueError):
        ToolChoice(ToolChoiceMode.AUTO, "get_weather")
