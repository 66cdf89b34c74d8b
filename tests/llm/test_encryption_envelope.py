# SPDX-License-Identifier: Apache-2.0
"""
Hybrid encryption envelope (RSA-wrapped AES-256-GCM).

Covers:
  • AES-GCM round trip, including the empty string and non-ASCII text
  • Tamper, wrong key, wrong IV and invalid base64 all fail with EncryptionError
  • Fresh key/IV per call
  • Server-side unwrap (RSA PKCS#1 v1.5 → base64 → AES key) reproduces the payload
  • Invalid public keys are rejected
  • seal(): header shape, no header/context for payload-less bodies
  • open(): plaintext passthrough, decrypt in place, missing context → None
  • Context store lifecycle and concurrent use
"""

import asyncio
import base64
import json
import threading

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from unimodel_sdk.llm.encryption import (
    AES_KEY_BYTES,
    ENCRYPTION_HEADER,
    IV_BYTES,
    EncryptionContext,
    EncryptionContextStore,
    EncryptionEnvelope,
    PublicKey,
    PublicKeyCache,
    decrypt,
    encrypt,
    generate_iv,
    generate_key,
    load_public_key,
    wrap_key,
)
from unimodel_sdk.llm.errors import EncryptionError, MalformedResponse

pytestmark = pytest.mark.asyncio


@pytest.mark.parametrize("plaintext", ["", "hello", "你好, 世界 ✓", '{"messages":[{"role":"user"}]}', "x" * 10_000])
async def test_aes_round_trip(plaintext):
    key, iv = generate_key(), generate_iv()
    assert decrypt(key, iv, encrypt(key, iv, plaintext)) == plaintext


async def test_ciphertext_includes_tag():
    key, iv = generate_key(), generate_iv()
    raw = base64.b64decode(encrypt(key, iv, ""))
    assert len(raw) == 16


async def test_tampered_ciphertext_is_rejected():
    key, iv = generate_key(), generate_iv()
    raw = bytearray(base64.b64decode(encrypt(key, iv, "sensitive")))
    raw[0] ^= 0x01
    with pytest.raises(EncryptionError):
        decrypt(key, iv, base64.b64encode(bytes(raw)).decode())


async def test_wrong_key_or_iv_is_rejected():
    key, iv = generate_key(), generate_iv()
    ciphertext = encrypt(key, iv, "sensitive")
    with pytest.raises(EncryptionError):
        decrypt(generate_key(), iv, ciphertext)
    with pytest.raises(EncryptionError):
        decrypt(key, generate_iv(), ciphertext)


@pytest.mark.parametrize("bad", ["not base64!!", "", "AAAA", 123])
async def test_invalid_ciphertext_is_rejected(bad):
    with pytest.raises(EncryptionError):
        decrypt(generate_key(), generate_iv(), bad)


async def test_invalid_key_sizes_are_rejected():
    with pytest.raises(EncryptionError):
        encrypt(b"short", generate_iv(), "x")
    with pytest.raises(EncryptionError):
        encrypt(generate_key(), b"short", "x")


async def test_keys_and_ivs_are_fresh():
    keys = {generate_key() for _ in range(64)}
    ivs = {generate_iv() for _ in range(64)}
    assert len(keys) == 64 and all(len(k) == AES_KEY_BYTES for k in keys)
    assert len(ivs) == 64 and all(len(i) == IV_BYTES for i in ivs)


async def test_wrapped_key_unwraps_to_original(rsa_public_key_b64, unwrap):
    key = generate_key()
    assert unwrap(wrap_key(key, rsa_public_key_b64)) == key


async def test_pem_public_key_is_accepted(rsa_private_key):
    pem = rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    assert load_public_key(pem).key_size == 2048


async def test_invalid_public_keys_are_rejected():
    with pytest.raises(EncryptionError):
        load_public_key("")
    with pytest.raises(EncryptionError):
        load_public_key("@@@not-base64@@@")
    with pytest.raises(EncryptionError):
        load_public_key(base64.b64encode(b"garbage der").decode())

    ec_der = ec.generate_private_key(ec.SECP256R1()).public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    with pytest.raises(EncryptionError):
        wrap_key(generate_key(), base64.b64encode(ec_der).decode())


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

async def test_sealed_request_decrypts_server_side(public_key, unwrap):
    envelope = EncryptionEnvelope(public_key)
    body = {
        "model": "qwen-plus",
        "input": {"messages": [{"role": "user", "content": "你好"}]},
        "parameters": {"result_format": "message"},
    }

    sealed = envelope.seal(body)

    assert sealed.body["model"] == "qwen-plus"
    assert sealed.body["parameters"] == body["parameters"]
    assert isinstance(sealed.body["input"], str)
    assert body["input"] == {"messages": [{"role": "user", "content": "你好"}]}, "original body untouched"

    header = json.loads(sealed.headers[ENCRYPTION_HEADER])
    assert set(header) == {"public_key_id", "encrypt_key", "iv"}
    assert header["public_key_id"] == "test-key-1"

    aes_key = unwrap(header["encrypt_key"])
    iv = base64.b64decode(header["iv"])
    plaintext = decrypt(aes_key, iv, sealed.body["input"])
    assert plaintext == json.dumps(body["input"], ensure_ascii=False, separators=(",", ":"))
    assert sealed.correlation_id in envelope.store


async def test_each_seal_uses_fresh_key_material(public_key):
    envelope = EncryptionEnvelope(public_key)
    body = {"input": {"messages": []}}
    a, b = envelope.seal(body), envelope.seal(body)

    assert a.correlation_id != b.correlation_id
    assert json.loads(a.headers[ENCRYPTION_HEADER])["iv"] != json.loads(b.headers[ENCRYPTION_HEADER])["iv"]
    assert a.body["input"] != b.body["input"]


async def test_seal_without_payload_adds_nothing(public_key):
    envelope = EncryptionEnvelope(public_key)
    sealed = envelope.seal({"model": "qwen-plus"})

    assert sealed.body == {"model": "qwen-plus"}
    assert sealed.headers == {}
    assert sealed.correlation_id is None
    assert len(envelope.store) == 0


async def test_open_decrypts_output_in_place(public_key):
    envelope = EncryptionEnvelope(public_key)
    sealed = envelope.seal({"input": {"messages": []}})
    ctx = envelope.store.get(sealed.correlation_id)
    output = {"choices": [{"message": {"role": "assistant", "content": "hi"}}]}

    response = {"request_id": "r1", "output": encrypt(ctx.aes_key, ctx.iv, json.dumps(output))}
    opened = envelope.open(response, sealed.correlation_id)

    assert opened["output"] == output
    assert opened["request_id"] == "r1"
    assert isinstance(response["output"], str), "input response untouched"


async def test_open_passes_plaintext_output_through(public_key):
    envelope = EncryptionEnvelope(public_key)
    response = {"output": {"text": "plain"}}
    assert envelope.open(response, None) == response


async def test_open_without_context_yields_none(public_key, caplog):
    envelope = EncryptionEnvelope(public_key)
    opened = envelope.open({"output": "Y2lwaGVydGV4dA=="}, "unknown-id")
    assert opened["output"] is None
    assert any("encryption context" in r.getMessage() for r in caplog.records)


async def test_open_with_tampered_output_raises(public_key):
    envelope = EncryptionEnvelope(public_key)
    sealed = envelope.seal({"input": {"messages": []}})
    ctx = envelope.store.get(sealed.correlation_id)
    raw = bytearray(base64.b64decode(encrypt(ctx.aes_key, ctx.iv, '{"text": "x"}')))
    raw[-1] ^= 0xFF

    with pytest.raises(EncryptionError):
        envelope.open({"output": base64.b64encode(bytes(raw)).decode()}, sealed.correlation_id)


async def test_open_with_non_json_plaintext_is_malformed(public_key):
    envelope = EncryptionEnvelope(public_key)
    sealed = envelope.seal({"input": {"messages": []}})
    ctx = envelope.store.get(sealed.correlation_id)

    with pytest.raises(MalformedResponse):
        envelope.open({"output": encrypt(ctx.aes_key, ctx.iv, "not json")}, sealed.correlation_id)


async def test_release_removes_context(public_key):
    envelope = EncryptionEnvelope(public_key)
    sealed = envelope.seal({"input": {"messages": []}})
    envelope.release(sealed.correlation_id)
    envelope.release(None)
    assert sealed.correlation_id not in envelope.store


# ---------------------------------------------------------------------------
# Store + key cache
# ---------------------------------------------------------------------------

async def test_context_store_is_safe_under_concurrent_use():
    store = EncryptionContextStore()
    ids = []
    lock = threading.Lock()

    def worker():
        for _ in range(200):
            cid = store.put(EncryptionContext(aes_key=generate_key(), iv=generate_iv()))
            assert store.get(cid) is not None
            with lock:
                ids.append(cid)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(ids) == len(set(ids)) == 1600
    assert len(store) == 1600
    for cid in ids:
        assert store.pop(cid) is not None
    assert len(store) == 0


async def test_context_repr_hides_key_material():
    ctx = EncryptionContext(aes_key=b"k" * 32, iv=b"i" * 12, public_key_id="pk")
    assert "kkkk" not in repr(ctx)


async def test_public_key_cache_fetches_once():
    calls = []

    async def fetch():
        calls.append(1)
        await asyncio.sleep(0.01)
        return PublicKey(public_key="abc", public_key_id="1")

    cache = PublicKeyCache(fetch)
    keys = await asyncio.gather(*(cache.get() for _ in range(10)))

    assert len(calls) == 1
    assert all(k.public_key_id == "1" for k in keys)

    cache.invalidate()
    await cache.get()
    assert len(calls) == 2


async def test_public_key_cache_does_not_cache_failures():
    calls = []

    async def fetch():
        calls.append(1)
        if len(calls) == 1:
            raise MalformedResponse("no data")
        return PublicKey(public_key="abc", public_key_id="2")

    cache = PublicKeyCache(fetch)
    with pytest.raises(MalformedResponse):
        await cache.get()
    assert (await cache.get()).public_key_id == "2"


async def test_public_key_from_payload():
    key = PublicKey.from_payload({"data": {"public_key": "abc", "public_key_id": 7}})
    assert key.public_key_id == "7"
    with pytest.raises(MalformedResponse):
        PublicKey.from_payload({"code": "InvalidApiKey", "message": "bad key"})
