"""
Self-contained one-time passcode tokens.

A token carries the passcode and the signup/lookup fields encrypted with
AES-256-GCM, so the server keeps no OTP state at all: whoever holds the
token can only hand it back, never read or alter it.

Wire format (base64url, no padding):

    nonce (12 bytes) || auth tag (16 bytes) || ciphertext

The encryption key is SHA-256 of a long-lived server secret. Rotating the
secret invalidates every outstanding token.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import settings

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
AUTH_TAG_LENGTH = 16
MIN_TOKEN_LENGTH = NONCE_LENGTH + AUTH_TAG_LENGTH

# Every code-issuing endpoint uses the same 2 minute window
OTP_EXPIRY_MS = 120_000

CODE_MIN = 1000
CODE_MAX = 9999
CODE_PAD_LENGTH = 8


class ConfigurationError(RuntimeError):
    """Raised when the token secret is missing. Fatal, never per-request."""


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class OtpPayload:
    """Everything a token carries. Never persisted server-side."""
    email: str
    code: str
    first_name: str
    expires_at: int  # epoch milliseconds, absolute deadline
    phone: Optional[str] = None
    tier: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "email": self.email,
            "code": self.code,
            "firstName": self.first_name,
            "expiresAt": self.expires_at,
        }
        if self.phone is not None:
            data["phone"] = self.phone
        if self.tier is not None:
            data["tier"] = self.tier
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "OtpPayload":
        """
        Rebuild a payload from decoded JSON.

        Raises:
            ValueError: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise ValueError("payload must be an object")

        for field in ("email", "code", "firstName"):
            if not isinstance(data.get(field), str):
                raise ValueError(f"{field} must be a string")

        expires_at = data.get("expiresAt")
        if isinstance(expires_at, bool) or not isinstance(expires_at, int):
            raise ValueError("expiresAt must be an integer")

        for field in ("phone", "tier"):
            if data.get(field) is not None and not isinstance(data[field], str):
                raise ValueError(f"{field} must be a string")

        return cls(
            email=data["email"],
            code=data["code"],
            first_name=data["firstName"],
            expires_at=expires_at,
            phone=data.get("phone"),
            tier=data.get("tier"),
        )


@dataclass(frozen=True)
class Valid:
    payload: OtpPayload

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    def __bool__(self) -> bool:
        return False


INVALID = Invalid()

VerificationResult = Union[Valid, Invalid]


def derive_key(secret: str) -> bytes:
    """Derive the 32-byte AES key from the server secret."""
    return hashlib.sha256(secret.encode("utf-8")).digest()


def generate_code() -> str:
    """
    Generate a 4-digit passcode in [1000, 9999].

    Uses the secrets module so codes cannot be predicted from earlier ones.
    """
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def codes_match(expected: str, actual: str) -> bool:
    """
    Compare two passcodes in constant time.

    Both sides are NUL-padded to the same length first so the comparison
    does not reveal how many leading digits were right.
    """
    a = expected.encode("utf-8").ljust(CODE_PAD_LENGTH, b"\0")
    b = actual.encode("utf-8").ljust(CODE_PAD_LENGTH, b"\0")
    return hmac.compare_digest(a, b)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


class TokenService:
    """
    Issue and verify encrypted OTP tokens.

    Stateless apart from the derived key, so a single instance is safe to
    share across threads.
    """

    def __init__(self, secret: Optional[str], clock: Optional[Callable[[], int]] = None):
        """
        Args:
            secret: Server secret the AES key is derived from
            clock: Returns the current time in epoch milliseconds

        Raises:
            ConfigurationError: If the secret is missing or empty
        """
        if not secret:
            raise ConfigurationError(
                "OTP_TOKEN_SECRET is not set. Refusing to issue or verify OTP tokens."
            )
        self._aead = AESGCM(derive_key(secret))
        self._clock = clock or now_ms

    def issue(self, payload: OtpPayload) -> str:
        """
        Encrypt a payload into a URL-safe token.

        Args:
            payload: Code, contact fields and absolute expiry chosen by the caller

        Returns:
            str: base64url token
        """
        nonce = os.urandom(NONCE_LENGTH)
        plaintext = json.dumps(payload.to_dict(), separators=(",", ":")).encode("utf-8")

        # AESGCM appends the tag to the ciphertext; the wire format puts it first
        sealed = self._aead.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

        return _b64url_encode(nonce + tag + ciphertext)

    def verify(self, token: str, now: Optional[int] = None) -> VerificationResult:
        """
        Decrypt a token and check its expiry.

        Every failure (bad encoding, short token, forged tag, bad JSON,
        expired) returns the same INVALID outcome.

        Args:
            token: Token produced by issue()
            now: Current time in epoch milliseconds (defaults to the clock)

        Returns:
            Valid(payload) or INVALID
        """
        try:
            raw = _b64url_decode(token)
        except (binascii.Error, ValueError, TypeError, AttributeError):
            return INVALID

        if len(raw) < MIN_TOKEN_LENGTH:
            return INVALID

        nonce = raw[:NONCE_LENGTH]
        tag = raw[NONCE_LENGTH:MIN_TOKEN_LENGTH]
        ciphertext = raw[MIN_TOKEN_LENGTH:]

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            return INVALID

        try:
            payload = OtpPayload.from_dict(json.loads(plaintext.decode("utf-8")))
        except ValueError:
            # JSONDecodeError and UnicodeDecodeError are both ValueErrors
            return INVALID

        current = self._clock() if now is None else now
        if current > payload.expires_at:
            return INVALID

        return Valid(payload)

    def verify_code(self, token: str, presented_code: str, now: Optional[int] = None) -> VerificationResult:
        """
        Verify a token and the passcode presented with it.

        Returns INVALID for a wrong code exactly as for a bad token.
        """
        result = self.verify(token, now=now)
        if not isinstance(result, Valid):
            return INVALID
        if not codes_match(result.payload.code, presented_code):
            return INVALID
        return result


@lru_cache(maxsize=1)
def get_token_service() -> TokenService:
    """
    FastAPI dependency returning the shared TokenService.

    Raises:
        ConfigurationError: On first use if OTP_TOKEN_SECRET is not configured
    """
    return TokenService(settings.OTP_TOKEN_SECRET)
