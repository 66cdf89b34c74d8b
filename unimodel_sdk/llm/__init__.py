# unimodel_sdk/llm/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Unified model execution pipeline - Public API

Core types, the execution policy engine, the streaming assembler and the
encryption envelope are re-exported here for clean imports. Provider adapters
live in their own modules so their third-party clients load only when used:

    from unimodel_sdk.llm.dashscope_adapter import DashScopeAdapter
    from unimodel_sdk.llm.openai_adapter import OpenAIAdapter
"""

from unimodel_sdk.llm.errors import (
    # Error types
    LLMAdapterError,
    BadRequest,
    AuthError,
    PermissionDenied,
    NotFound,
    RequestTimeout,
    Conflict,
    PayloadTooLarge,
    UnprocessableEntity,
    ResourceExhausted,
    InternalServerError,
    BadGateway,
    Unavailable,
    GatewayTimeout,
    TransientNetwork,
    NotSupported,
    MalformedResponse,
    DeadlineExceeded,
    EncryptionError,
)
from unimodel_sdk.llm.execution import (
    # Execution policy
    ExecutionConfig,
    MODEL_DEFAULTS,
    TOOL_DEFAULTS,
    RETRYABLE_ERRORS,
    retry_on_any,
    retry_on_retryable,
    retry_on_types,
    compute_backoff,
    apply_execution_policy,
    run_with_policy,
)
from unimodel_sdk.llm.options import (
    # Per-call options
    GenerateOptions,
    ToolChoice,
    ToolChoiceMode,
)
from unimodel_sdk.llm.llm_base import (
    # Protocol version
    LLM_PROTOCOL_VERSION,

    # Context and metrics
    OperationContext,
    MetricsSink,
    NoopMetrics,

    # Result models
    TokenUsage,
    ToolCallDelta,
    ToolCall,
    LLMChunk,
    LLMCompletion,
    LLMCapabilities,
    aggregate_chunks,

    # Protocol interface
    LLMProtocolV1,
    BaseLLMAdapter,
)
from unimodel_sdk.llm.sse import (
    # Streaming assembly
    DONE_SENTINEL,
    SSEDecoder,
    aiter_sse_data,
    aiter_sse_json,
)
from unimodel_sdk.llm.encryption import (
    # Encryption envelope
    ENCRYPTION_HEADER,
    EncryptionContext,
    EncryptionContextStore,
    EncryptionEnvelope,
    PublicKey,
    PublicKeyCache,
)

__all__ = [
    # Protocol version
    "LLM_PROTOCOL_VERSION",

    # Error types
    "LLMAdapterError",
    "BadRequest",
    "AuthError",
    "PermissionDenied",
    "NotFound",
    "RequestTimeout",
    "Conflict",
    "PayloadTooLarge",
    "UnprocessableEntity",
    "ResourceExhausted",
    "InternalServerError",
    "BadGateway",
    "Unavailable",
    "GatewayTimeout",
    "TransientNetwork",
    "NotSupported",
    "MalformedResponse",
    "DeadlineExceeded",
    "EncryptionError",

    # Execution policy
    "ExecutionConfig",
    "MODEL_DEFAULTS",
    "TOOL_DEFAULTS",
    "RETRYABLE_ERRORS",
    "retry_on_any",
    "retry_on_retryable",
    "retry_on_types",
    "compute_backoff",
    "apply_execution_policy",
    "run_with_policy",

    # Per-call options
    "GenerateOptions",
    "ToolChoice",
    "ToolChoiceMode",

    # Context and metrics
    "OperationContext",
    "MetricsSink",
    "NoopMetrics",

    # Result models
    "TokenUsage",
    "ToolCallDelta",
    "ToolCall",
    "LLMChunk",
    "LLMCompletion",
    "LLMCapabilities",
    "aggregate_chunks",

    # Protocol interface
    "LLMProtocolV1",
    "BaseLLMAdapter",

    # Streaming assembly
    "DONE_SENTINEL",
    "SSEDecoder",
    "aiter_sse_data",
    "aiter_sse_json",

    # Encryption envelope
    "ENCRYPTION_HEADER",
    "EncryptionContext",
    "EncryptionContextStore",
    "EncryptionEnvelope",
    "PublicKey",
    "PublicKeyCache",
]

__version__ = LLM_PROTOCOL_VERSION
