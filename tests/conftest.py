# SPDX-License-Identifier: Apache-2.0
"""
Shared pytest fixtures for the unified model pipeline tests.

Adapter selection:
    UNIMODEL_ADAPTER="package.module:ClassName"  (default: the scripted mock)

Crypto fixtures generate one RSA key pair per session; key generation is the
slowest step of the envelope tests.
"""

from __future__ import annotations

import base64
import importlib
import inspect
import os
from typing import Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from unimodel_sdk.llm.encryption import PublicKey

ADAPTER_ENV = "UNIMODEL_ADAPTER"
DEFAULT_ADAPTER = "tests.mock.mock_llm_adapter:MockLLMAdapter"


class AdapterValidationError(RuntimeError):
    """Raised when UNIMODEL_ADAPTER does not resolve to a class."""


def _load_class_from_spec(spec: str) -> type:
    """
    Load a class from a 'package.module:ClassName' string.
    """
    module_name, _, class_name = spec.partition(":")
    if not module_name or not class_name:
        raise AdapterValidationError(
            f"Invalid adapter spec '{spec}'. Expected 'package.module:ClassName'."
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise AdapterValidationError(
            f"Failed to import adapter module '{module_name}' for spec '{spec}'."
        ) from exc
    cls = getattr(module, class_name, None)
    if not inspect.isclass(cls):
        raise AdapterValidationError(
            f"Adapter class '{class_name}' not found in module '{module_name}'."
        )
    return cls


@pytest.fixture
def adapter():
    """
    Fresh adapter per test (the mock counts attempts, so it is stateful).
    """
    Adapter = _load_class_from_spec(os.getenv(ADAPTER_ENV, DEFAULT_ADAPTER))
    return Adapter()


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_public_key_b64(rsa_private_key) -> str:
    """Base64 DER (SubjectPublicKeyInfo), the format the key service returns."""
    der = rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture(scope="session")
def public_key(rsa_public_key_b64) -> PublicKey:
    return PublicKey(public_key=rsa_public_key_b64, public_key_id="test-key-1")


def unwrap_key(private_key: rsa.RSAPrivateKey, wrapped_b64: str) -> bytes:
    """Server-side inverse of `wrap_key`: RSA-decrypt, then base64-decode."""
    key_text = private_key.decrypt(base64.b64decode(wrapped_b64), padding.PKCS1v15())
    return base64.b64decode(key_text)


@pytest.fixture(scope="session")
def unwrap(rsa_private_key):
    def _unwrap(wrapped_b64: str, private_key: Optional[rsa.RSAPrivateKey] = None) -> bytes:
        return unwrap_key(private_key or rsa_private_key, wrapped_b64)

    return _unwrap
