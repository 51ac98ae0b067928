from __future__ import annotations

import pytest

from oracle_core.crypto import codec
from oracle_core.errors import BadSignatureError, ContractViolationError

from conftest import make_signer


def test_keccak256_empty_input_matches_known_digest():
    assert codec.keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


@pytest.mark.parametrize(
    "secret,address",
    [
        (1, "0x7e5f4552091a69125d5dfcb7b8c2659029395bdf"),
        (2, "0x2b5ad5c4795c026514f8317c7a215e218dccd6cf"),
    ],
)
def test_address_of_known_keys(secret, address):
    assert codec.address_of(secret.to_bytes(32, "big")) == address


def test_encode_is_32_byte_big_endian_word():
    encoded = codec.encode(4242)
    assert len(encoded) == 32
    assert encoded == b"\x00" * 30 + b"\x10\x92"
    assert codec.decode(encoded) == 4242


def test_encode_accepts_uint256_bounds():
    assert codec.encode(0) == b"\x00" * 32
    assert codec.encode(codec.UINT256_MAX) == b"\xff" * 32


@pytest.mark.parametrize("value", [-1, 1 << 256, True, "1", 1.0])
def test_encode_rejects_values_outside_uint256(value):
    with pytest.raises(ContractViolationError) as exc:
        codec.encode(value)
    assert exc.value.code == "INVALID_UINT256"


def test_decode_rejects_wrong_width():
    with pytest.raises(ContractViolationError):
        codec.decode(b"\x01" * 31)


def test_sign_then_verify_recovers_signer_address():
    key = make_signer(2)
    digest = codec.hash(codec.encode(4242))
    signature = key.sign_digest(digest)

    assert len(signature) == 65
    assert signature[64] in (27, 28)
    assert codec.verify(digest, signature) == key.address == codec.address_of((2).to_bytes(32, "big"))


def test_verify_accepts_raw_recovery_id():
    key = make_signer(5)
    digest = codec.hash(codec.encode(7))
    signature = key.sign_digest(digest)
    raw_v = signature[:64] + bytes([signature[64] - 27])

    assert codec.verify(digest, raw_v) == key.address


def test_verify_over_other_digest_recovers_other_address():
    key = make_signer(2)
    signature = key.sign_digest(codec.hash(codec.encode(1)))

    assert codec.verify(codec.hash(codec.encode(2)), signature) != key.address


@pytest.mark.parametrize("signature", [b"", b"\x01" * 64, b"\x01" * 66])
def test_verify_rejects_wrong_length(signature):
    with pytest.raises(BadSignatureError):
        codec.verify(codec.hash(b"x"), signature)


def test_verify_rejects_invalid_recovery_id():
    key = make_signer(2)
    digest = codec.hash(b"payload")
    signature = key.sign_digest(digest)

    with pytest.raises(BadSignatureError) as exc:
        codec.verify(digest, signature[:64] + bytes([5]))
    assert exc.value.code == "BAD_SIGNATURE"


def test_request_id_hashes_abi_encoded_tuple():
    consumer = "0x" + "ab" * 20
    expected = codec.keccak256(b"\x00" * 12 + bytes.fromhex("ab" * 20) + (3).to_bytes(32, "big") + (9).to_bytes(32, "big"))

    assert codec.request_id(consumer, 3, 9) == "0x" + expected.hex()
    assert codec.request_id(consumer.upper().replace("0X", "0x"), 3, 9) == codec.request_id(consumer, 3, 9)
    assert codec.request_id(consumer, 3, 10) != codec.request_id(consumer, 3, 9)
