"""Fulfillment payload codec: ABI encoding, keccak-256 and recoverable signatures.

Wire format matches what the consumer-side contract re-derives:

- results are ABI `uint256` words (32 bytes, big-endian)
- the message hash is keccak-256 of the encoded bytes
- signatures are secp256k1 over the EIP-191 personal-message digest of that
  hash, serialized as `r || s || v` with `v in {27, 28}`

Verification recovers the signer address from the signature. Callers never
pass the signer they expect; they compare the recovered address instead.
"""

from __future__ import annotations

from coincurve import PrivateKey, PublicKey
from Crypto.Hash import keccak

from oracle_core.errors import BadSignatureError, ContractViolationError
from oracle_core.utils import from_hex, normalize_address, to_hex

UINT256_MAX = (1 << 256) - 1
WORD_SIZE = 32
SIGNATURE_SIZE = 65

_PERSONAL_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n32"


def keccak256(data: bytes) -> bytes:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("keccak256 expects bytes-like input")
    return keccak.new(digest_bits=256, data=bytes(data)).digest()


def encode_uint256(value: int) -> bytes:
    # bool is an int subclass; reject it so True never encodes as 1.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ContractViolationError(f"uint256 value must be an int (got {type(value).__name__})", code="INVALID_UINT256")
    if value < 0 or value > UINT256_MAX:
        raise ContractViolationError("uint256 value out of range", code="INVALID_UINT256", details={"value": str(value)})
    return value.to_bytes(WORD_SIZE, "big")


def decode_uint256(data: bytes) -> int:
    if len(data) != WORD_SIZE:
        raise ContractViolationError(f"uint256 word must be {WORD_SIZE} bytes (got {len(data)})", code="INVALID_UINT256")
    return int.from_bytes(data, "big")


def encode_address(address: str) -> bytes:
    return from_hex(normalize_address(address)).rjust(WORD_SIZE, b"\x00")


def encode(value: int) -> bytes:
    """Canonical encoding of a fulfillment result."""
    return encode_uint256(value)


def decode(data: bytes) -> int:
    return decode_uint256(data)


def hash(data: bytes) -> bytes:  # noqa: A001 - mirrors the payload protocol naming
    return keccak256(data)


def personal_message_digest(digest: bytes) -> bytes:
    """EIP-191 digest that wallets sign for `signMessage(bytes32)`."""
    if len(digest) != 32:
        raise ContractViolationError("message digest must be 32 bytes", code="INVALID_DIGEST")
    return keccak256(_PERSONAL_MESSAGE_PREFIX + digest)


def _private_key(private_key: PrivateKey | bytes) -> PrivateKey:
    if isinstance(private_key, PrivateKey):
        return private_key
    return PrivateKey(bytes(private_key))


def address_of_public_key(public_key: PublicKey) -> str:
    uncompressed = public_key.format(compressed=False)
    return to_hex(keccak256(uncompressed[1:])[-20:])


def address_of(private_key: PrivateKey | bytes) -> str:
    return address_of_public_key(_private_key(private_key).public_key)


def sign(digest: bytes, private_key: PrivateKey | bytes) -> bytes:
    sk = _private_key(private_key)
    raw = sk.sign_recoverable(personal_message_digest(digest), hasher=None)
    return raw[:64] + bytes([raw[64] + 27])


def verify(digest: bytes, signature: bytes) -> str:
    """Recover the signer address, or raise BadSignatureError."""
    if len(signature) != SIGNATURE_SIZE:
        raise BadSignatureError(f"signature must be {SIGNATURE_SIZE} bytes (got {len(signature)})")
    v = signature[64]
    if v in (27, 28):
        v -= 27
    if v not in (0, 1):
        raise BadSignatureError(f"invalid signature recovery id: {signature[64]}")
    try:
        public_key = PublicKey.from_signature_and_message(signature[:64] + bytes([v]), personal_message_digest(digest), hasher=None)
    except Exception as e:  # coincurve surfaces libsecp256k1 failures as ValueError or plain Exception
        raise BadSignatureError(f"signature does not recover a public key: {e}") from e
    return address_of_public_key(public_key)


def request_id(consumer: str, subscription_id: int, nonce: int) -> str:
    """keccak256(abi.encode(address consumer, uint256 subscription_id, uint256 nonce))."""
    payload = encode_address(consumer) + encode_uint256(subscription_id) + encode_uint256(nonce)
    return to_hex(keccak256(payload))
