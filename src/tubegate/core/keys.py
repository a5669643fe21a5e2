import hashlib
import hmac
import secrets
from dataclasses import dataclass

KEY_SCHEME = "yt"
KEY_ID_BYTES = 16  # 32 hex chars
KEY_SECRET_BYTES = 32  # 64 hex chars


@dataclass(frozen=True)
class GeneratedKey:
    key_id: str
    key_secret: str
    key_hash: str

    @property
    def plaintext(self) -> str:
        # handed to the caller once, never persisted
        return format_api_key(self.key_id, self.key_secret)


@dataclass(frozen=True)
class ParsedKey:
    key_id: str
    key_secret: str


def format_api_key(key_id: str, key_secret: str) -> str:
    return f"{KEY_SCHEME}_{key_id}_{key_secret}"


def hash_secret(key_secret: str) -> str:
    return hashlib.sha256(key_secret.encode("utf-8")).hexdigest()


def generate_api_key() -> GeneratedKey:
    key_id = secrets.token_hex(KEY_ID_BYTES)
    key_secret = secrets.token_hex(KEY_SECRET_BYTES)
    return GeneratedKey(key_id=key_id, key_secret=key_secret, key_hash=hash_secret(key_secret))


def parse_api_key(candidate: str | None) -> ParsedKey | None:
    """
    Split ``yt_<key_id>_<secret>`` into its parts.

    Returns None for any other shape so malformed input never reaches the store.
    """
    if not candidate:
        return None

    parts = candidate.strip().split("_")
    if len(parts) != 3:
        return None

    scheme, key_id, key_secret = parts
    if scheme != KEY_SCHEME or not key_id or not key_secret:
        return None

    return ParsedKey(key_id=key_id, key_secret=key_secret)


def constant_time_equals(a: bytes | str, b: bytes | str) -> bool:
    """
    Compare two values without an early exit on the first differing byte.

    Both sides are reduced to SHA-256 digests first, so the buffers handed to
    hmac.compare_digest always have the same length regardless of input.
    """
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(hashlib.sha256(a).digest(), hashlib.sha256(b).digest())
