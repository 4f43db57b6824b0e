from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

# secp256k1 domain parameters
P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
B = 7
G = (
    0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
    0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
)

IDENTITY_BYTES = 28
KEY_TAG = "k"
SCRIPT_TAG = "s"

Point = Optional[tuple[int, int]]


def _on_curve(point: Point) -> bool:
    if point is None:
        return True
    x, y = point
    return (y * y - x * x * x - B) % P == 0


def _add(p1: Point, p2: Point) -> Point:
    if p1 is None:
        return p2
    if p2 is None:
        return p1
    (x1, y1), (x2, y2) = p1, p2
    if x1 == x2 and (y1 + y2) % P == 0:
        return None
    if p1 == p2:
        slope = 3 * x1 * x1 * pow(2 * y1, -1, P)
    else:
        slope = (y2 - y1) * pow(x2 - x1, -1, P)
    slope %= P
    x3 = (slope * slope - x1 - x2) % P
    return x3, (slope * (x1 - x3) - y1) % P


def _mul(scalar: int, point: Point = G) -> Point:
    scalar %= N
    result: Point = None
    while scalar and point is not None:
        if scalar & 1:
            result = _add(result, point)
        point = _add(point, point)
        scalar >>= 1
    return result


def _rfc6979_nonce(secret: int, digest: bytes) -> int:
    key = b"\x00" * 32
    v = b"\x01" * 32
    material = secret.to_bytes(32, "big") + digest
    for marker in (b"\x00", b"\x01"):
        key = hmac.new(key, v + marker + material, hashlib.sha256).digest()
        v = hmac.new(key, v, hashlib.sha256).digest()
    while True:
        v = hmac.new(key, v, hashlib.sha256).digest()
        candidate = int.from_bytes(v, "big")
        if 1 <= candidate < N:
            return candidate
        key = hmac.new(key, v + b"\x00", hashlib.sha256).digest()
        v = hmac.new(key, v, hashlib.sha256).digest()


def _parse_private_key(private_key_hex: str) -> int:
    try:
        value = int(private_key_hex, 16)
    except (TypeError, ValueError) as exc:
        raise ValueError("Private key must be hex") from exc
    if not 1 <= value < N:
        raise ValueError("Invalid private key")
    return value


def generate_private_key_hex() -> str:
    return f"{secrets.randbelow(N - 1) + 1:064x}"


def compress_public_key(point: tuple[int, int]) -> bytes:
    x, y = point
    return bytes([0x02 | (y & 1)]) + x.to_bytes(32, "big")


def decompress_public_key(data: bytes) -> tuple[int, int]:
    if len(data) != 33 or data[0] not in (0x02, 0x03):
        raise ValueError("Invalid compressed public key")
    x = int.from_bytes(data[1:], "big")
    y = pow((pow(x, 3, P) + B) % P, (P + 1) // 4, P)
    if (y & 1) != (data[0] & 1):
        y = P - y
    if not _on_curve((x, y)):
        raise ValueError("Public key is not on secp256k1")
    return x, y


def private_key_to_public_key(private_key_hex: str) -> bytes:
    point = _mul(_parse_private_key(private_key_hex))
    if point is None:
        raise ValueError("Could not derive public key")
    return compress_public_key(point)


def sign_digest(private_key_hex: str, digest: bytes) -> str:
    if len(digest) != 32:
        raise ValueError("Digest must be 32 bytes")
    secret = _parse_private_key(private_key_hex)
    z = int.from_bytes(digest, "big")
    k = _rfc6979_nonce(secret, digest)
    while True:
        point = _mul(k)
        r = point[0] % N if point else 0
        s = (pow(k, -1, N) * (z + r * secret)) % N if r else 0
        if r and s:
            break
        k = (k + 1) % N
    # low-S form
    s = min(s, N - s)
    return f"{r:064x}{s:064x}"


def verify_signature(public_key_hex: str, digest: bytes, signature_hex: str) -> bool:
    if len(digest) != 32 or len(signature_hex) != 128:
        return False
    try:
        r = int(signature_hex[:64], 16)
        s = int(signature_hex[64:], 16)
        public_point = decompress_public_key(bytes.fromhex(public_key_hex))
    except ValueError:
        return False
    if not (1 <= r < N and 1 <= s < N):
        return False
    w = pow(s, -1, N)
    z = int.from_bytes(digest, "big")
    point = _add(_mul(z * w % N), _mul(r * w % N, public_point))
    return point is not None and point[0] % N == r


def blake2b_224_hex(data: bytes) -> str:
    return hashlib.blake2b(data, digest_size=IDENTITY_BYTES).hexdigest()


def identity_from_public_key(public_key_hex: str) -> str:
    return blake2b_224_hex(bytes.fromhex(public_key_hex))


def key_address(identity: str, symbol: str) -> str:
    return f"{symbol}{KEY_TAG}{identity}"


def script_address(script_hash: str, symbol: str) -> str:
    return f"{symbol}{SCRIPT_TAG}{script_hash}"


def parse_address(address: str, symbol: str) -> tuple[str, str]:
    """Split an address into its credential kind ("key" or "script") and hash."""
    text = str(address).strip()
    if not text.startswith(symbol):
        raise ValueError("Address has wrong prefix")
    body = text[len(symbol) :]
    tag, credential = body[:1], body[1:]
    if tag not in (KEY_TAG, SCRIPT_TAG):
        raise ValueError("Address has unknown credential tag")
    if len(credential) != IDENTITY_BYTES * 2:
        raise ValueError(f"Address must contain {IDENTITY_BYTES * 2} hex chars after tag")
    try:
        int(credential, 16)
    except ValueError as exc:
        raise ValueError("Address contains non-hex characters") from exc
    return ("key" if tag == KEY_TAG else "script"), credential.lower()
