# unimodel_sdk/llm/errors.py
# SPDX-License-Identifier: Apache-2.0
"""
Normalized error taxonomy for the unified model pipeline.

Every provider adapter, the transport, the streaming assembler, the execution
policy engine and the encryption envelope raise subclasses of
`LLMAdapterError` so callers can branch on a stable, machine-actionable
`code` instead of vendor-specific exception types.

Taxonomy
--------
- Transport / network:  TransientNetwork
- HTTP status:          one subclass per status (see `transport.error_for_status`)
- Malformed response:   MalformedResponse
- Timeout:              DeadlineExceeded
- Encryption:           EncryptionError
- Retry exhausted:      the last attempt's error itself, enriched with
                        attempt context (see `execution.apply_execution_policy`)
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class LLMAdapterError(Exception):
    """
    Base exception for all adapter and pipeline errors.

    Attributes:
        message:
            Human-readable description (safe for logs and clients).
        code:
            Upper-snake-case machine code; subclasses set a default.
        retry_after_ms:
            Optional client backoff hint (429 / overload / maintenance).
        status_code:
            Upstream HTTP status when the error was mapped from a response.
        details:
            Additional JSON-safe context (never include secrets/PII).
    """
    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
        status_code: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retry_after_ms = retry_after_ms
        self.status_code = status_code
        self.details = dict(details or {})

    def __str__(self) -> str:
        base = self.message or self.__class__.__name__
        if self.code:
            base += f" [code={self.code}]"
        if self.status_code is not None:
            base += f" status={self.status_code}"
        if self.retry_after_ms is not None:
            base += f" retry_after_ms={self.retry_after_ms}"
        if self.details:
            base += f" details={self.details}"
        return base


class BadRequest(LLMAdapterError):
    """
    Client error: malformed messages, invalid parameters, or a 400 response.
    """
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "BAD_REQUEST")
        super().__init__(message, **kwargs)


class AuthError(LLMAdapterError):
    """Invalid or missing credentials (401)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "AUTH_ERROR")
        super().__init__(message, **kwargs)


class PermissionDenied(LLMAdapterError):
    """Credentials are valid but not allowed to use the resource (403)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "PERMISSION_DENIED")
        super().__init__(message, **kwargs)


class NotFound(LLMAdapterError):
    """Unknown model, endpoint, or resource (404)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "NOT_FOUND")
        super().__init__(message, **kwargs)


class RequestTimeout(LLMAdapterError):
    """Upstream gave up waiting for the request body (408)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "REQUEST_TIMEOUT")
        super().__init__(message, **kwargs)


class Conflict(LLMAdapterError):
    """Request conflicts with upstream state (409)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "CONFLICT")
        super().__init__(message, **kwargs)


class PayloadTooLarge(LLMAdapterError):
    """Request body exceeds the upstream limit (413)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "PAYLOAD_TOO_LARGE")
        super().__init__(message, **kwargs)


class UnprocessableEntity(LLMAdapterError):
    """Well-formed request the upstream refuses to process (422)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "UNPROCESSABLE_ENTITY")
        super().__init__(message, **kwargs)


class ResourceExhausted(LLMAdapterError):
    """
    Quota, rate limit, or resource exhaustion (429).

    Callers should honor retry_after_ms when present.
    """
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "RESOURCE_EXHAUSTED")
        super().__init__(message, **kwargs)


class InternalServerError(LLMAdapterError):
    """Upstream internal failure (500)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "INTERNAL_SERVER_ERROR")
        super().__init__(message, **kwargs)


class BadGateway(LLMAdapterError):
    """Upstream proxy received an invalid response (502)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "BAD_GATEWAY")
        super().__init__(message, **kwargs)


class Unavailable(LLMAdapterError):
    """
    Backend unavailable / overloaded / maintenance (503 and unmapped 5xx).
    """
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "UNAVAILABLE")
        super().__init__(message, **kwargs)


class GatewayTimeout(LLMAdapterError):
    """Upstream proxy timed out waiting for the model service (504)."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "GATEWAY_TIMEOUT")
        super().__init__(message, **kwargs)


class TransientNetwork(LLMAdapterError):
    """
    Retryable network failure between adapter and upstream provider
    (connection refused/reset, read errors, broken streams).
    """
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "TRANSIENT_NETWORK")
        super().__init__(message, **kwargs)


class NotSupported(LLMAdapterError):
    """Unsupported operation or parameter."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "NOT_SUPPORTED")
        super().__init__(message, **kwargs)


class MalformedResponse(LLMAdapterError):
    """
    Upstream returned a body (or one SSE event) that cannot be decoded.

    Raised by the streaming assembler for a malformed event; the stream is
    terminated with this error rather than silently skipping the event.
    """
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "MALFORMED_RESPONSE")
        super().__init__(message, **kwargs)


class DeadlineExceeded(LLMAdapterError):
    """
    Operation exceeded its time budget.

    Emitted when:
        - Preflight sees an already-expired ctx.deadline_ms.
        - ExecutionConfig.timeout elapses before a response sequence completes.
    """
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "DEADLINE_EXCEEDED")
        super().__init__(message, **kwargs)


class EncryptionError(LLMAdapterError):
    """
    Key generation, key wrap, encrypt, or decrypt failure, or invalid
    encryption input (bad base64, wrong key/IV length, malformed public key).

    Never retried by the default retry predicate: it indicates a key or
    configuration mismatch, not a transient condition.
    """
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "ENCRYPTION_ERROR")
        super().__init__(message, **kwargs)


__all__ = [
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
]
