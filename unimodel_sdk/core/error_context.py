# unimodel_sdk/core/error_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Error context utilities for the model execution pipeline.

Helpers for attaching debugging context to exceptions as they propagate
through the pipeline layers (provider adapter, execution policy engine,
encryption envelope). The context lives in exception attributes rather than
in the message, so the original exception type, message and identity are
preserved. This is what lets the execution policy engine surface the *last*
attempt's error unchanged while still recording that retries were exhausted.

Typical usage
-------------

    from unimodel_sdk.core.error_context import attach_context

    try:
        async for chunk in adapter.stream(messages=messages):
            ...
    except Exception as exc:
        attach_context(exc, component="dashscope", operation="stream", model="qwen-plus")
        raise

Later, in error handlers or observability systems:

    except Exception as exc:
        context = get_context(exc)
        if context.get("retry_exhausted"):
            logger.error("gave up after %s attempts", context.get("attempts"))

Design
------
* Non-invasive: does not modify the exception message, type, or traceback.
* Composable: multiple calls merge contexts rather than overwriting, so each
  layer can contribute its own keys.
* Discoverable: stored under `__unimodel_context__` (canonical) and
  `__<component>_context__` (component-specific).
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional

logger = logging.getLogger(__name__)

_CANONICAL_ATTR = "__unimodel_context__"


def attach_context(
    exc: BaseException,
    component: str,
    **context: Any,
) -> None:
    """
    Attach debugging context to an exception.

    If context already exists on the exception (from a previous call), the
    new keys are merged over it. The `component` key is set once and never
    overwritten, so it records the innermost layer that saw the error.

    Parameters
    ----------
    exc:
        The exception to enrich. Any BaseException is accepted.
    component:
        Identifier of the layer attaching the context (e.g. "execution",
        "dashscope", "openai"). Also used to derive the component-specific
        attribute name.
    **context:
        Arbitrary JSON-safe keys. Common ones:
            - operation: "stream" / "complete" / "fetch_public_key"
            - model: str
            - attempts / max_attempts: int
            - retry_exhausted: bool
            - request_id: str
        Never include keys, plaintext payloads, or API keys.

    Notes
    -----
    Context attachment is best-effort; failures are logged at DEBUG and never
    prevent the original exception from propagating.
    """
    try:
        merged_context: MutableMapping[str, Any] = {}

        existing = getattr(exc, _CANONICAL_ATTR, None)
        if isinstance(existing, Mapping):
            merged_context.update(existing)

        merged_context.setdefault("component", component)
        merged_context.update(context)

        setattr(exc, _CANONICAL_ATTR, merged_context)
        setattr(exc, f"__{component}_context__", merged_context)
    except Exception as attachment_error:  # noqa: BLE001
        # Context attachment must never interfere with exception propagation.
        logger.debug(
            "Failed to attach error context to %s: %s",
            type(exc).__name__,
            attachment_error,
            extra={"component": component},
        )


def get_context(
    exc: BaseException,
    *,
    component: Optional[str] = None,
) -> Mapping[str, Any]:
    """
    Retrieve attached context from an exception.

    When `component` is given, the component-specific attribute is tried
    first before falling back to the canonical one. Returns an empty mapping
    when nothing is attached.
    """
    if component:
        ctx = getattr(exc, f"__{component}_context__", None)
        if isinstance(ctx, Mapping):
            return ctx

    ctx = getattr(exc, _CANONICAL_ATTR, None)
    if isinstance(ctx, Mapping):
        return ctx
    return {}


def has_context(
    exc: BaseException,
    *,
    component: Optional[str] = None,
) -> bool:
    """True if the exception carries attached context."""
    return bool(get_context(exc, component=component))


__all__ = ["attach_context", "get_context", "has_context"]
