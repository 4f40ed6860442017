from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Union

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import SigningUnavailable, TokenExpired, TokenInvalid, ValidationError

logger = get_logger(__name__)

ALGORITHM = "HS256"


@dataclass(frozen=True)
class Claims:
    """Decoded payload of a verified token."""

    subject: str
    issued_at: int
    expires_at: int
    jti: str
    credential_version: int = 0

    def remaining_seconds(self, now: float) -> int:
        return max(0, math.ceil(self.expires_at - now))


def key_id(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()[:16]


class SigningKeys:
    """Active signing secret plus retired secrets still accepted on verify.

    The active secret comes from configuration or from a mounted secret
    file; ``reload()`` re-reads the file and demotes the old secret to the
    verify-only set when it changed.
    """

    def __init__(
        self,
        active: Optional[str] = None,
        previous: Iterable[str] = (),
        *,
        secret_file: Optional[str] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._active = active
        self._previous: List[str] = [s for s in previous if s and s != active]
        self.secret_file = Path(secret_file) if secret_file else None
        if self.secret_file is not None and not active:
            self.reload()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeys":
        return cls(
            settings.jwt_secret,
            settings.jwt_previous_secrets,
            secret_file=settings.jwt_secret_file,
        )

    def reload(self) -> bool:
        """Re-read the secret file. Returns True when the active key changed."""
        if self.secret_file is None:
            return False
        try:
            secret = self.secret_file.read_text().strip()
        except OSError as exc:
            logger.error("signing_key_read_failed", error=str(exc))
            raise SigningUnavailable("signing key unavailable") from exc
        if not secret:
            logger.error("signing_key_empty", path=str(self.secret_file))
            raise SigningUnavailable("signing key unavailable")
        with self._lock:
            if secret == self._active:
                return False
            if self._active:
                self._previous.insert(0, self._active)
            self._previous = [s for s in self._previous if s != secret]
            self._active = secret
        logger.info("signing_key_rotated", kid=key_id(secret), previous_keys=len(self._previous))
        return True

    def signing_key(self) -> tuple[str, bytes]:
        with self._lock:
            active = self._active
        if not active:
            raise SigningUnavailable("signing key unavailable")
        return key_id(active), active.encode()

    def verification_keys(self, kid: Optional[str]) -> List[bytes]:
        with self._lock:
            secrets = [s for s in [self._active, *self._previous] if s]
        if kid:
            matched = [s.encode() for s in secrets if key_id(s) == kid]
            if matched:
                return matched
        return [s.encode() for s in secrets]


class TokenCodec:
    """Mints and verifies HS256-signed bearer tokens.

    Verification is pure: it checks structure, signature, issuer, audience
    and expiry, and never consults a store. Revocation is layered on top by
    the Authenticator.
    """

    def __init__(
        self,
        keys: SigningKeys,
        *,
        issuer: str,
        audience: str,
        default_ttl: Union[int, timedelta] = 24 * 60 * 60,
        clock: Optional[Callable[[], float]] = None,
        leeway_seconds: int = 0,
    ) -> None:
        self.keys = keys
        self.issuer = issuer
        self.audience = audience
        self.default_ttl = self._ttl_seconds(default_ttl)
        self.clock = clock or time.time
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Callable[[], float]] = None
    ) -> "TokenCodec":
        return cls(
            SigningKeys.from_settings(settings),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            default_ttl=settings.token_ttl_seconds,
            clock=clock,
            leeway_seconds=settings.clock_skew_seconds,
        )

    @staticmethod
    def _ttl_seconds(ttl: Union[int, float, timedelta]) -> int:
        if isinstance(ttl, timedelta):
            ttl = ttl.total_seconds()
        if ttl < 0:
            raise ValidationError("token ttl must not be negative")
        return int(ttl)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(
        self,
        subject_id: str,
        ttl: Union[int, timedelta, None] = None,
        *,
        credential_version: int = 0,
    ) -> str:
        """Encode and sign a token for ``subject_id`` valid for ``ttl`` seconds."""
        lifetime = self.default_ttl if ttl is None else self._ttl_seconds(ttl)
        kid, key = self.keys.signing_key()
        issued_at = int(self.clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": str(subject_id),
            "iat": issued_at,
            "exp": issued_at + lifetime,
            "jti": str(uuid.uuid4()),
            "ver": int(credential_version),
        }
        header = {"alg": ALGORITHM, "typ": "JWT", "kid": kid}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(key, signing_input)}"

    def verify(self, encoded_token: str) -> Claims:
        if not isinstance(encoded_token, str) or not encoded_token:
            raise TokenInvalid("token missing")
        try:
            header_b64, payload_b64, sig_b64 = encoded_token.split(".")
        except ValueError:
            raise TokenInvalid("token malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError, RecursionError):
            raise TokenInvalid("token header malformed")
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        candidates = self.keys.verification_keys(header.get("kid"))
        if not any(
            hmac.compare_digest(self._sign(key, signing_input).encode(), sig_b64.encode())
            for key in candidates
        ):
            raise TokenInvalid("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error_type=type(exc).__name__)
            raise TokenInvalid("token payload malformed")
        claims = self._claims_from_payload(payload)

        if self.clock() >= claims.expires_at + self.leeway_seconds:
            raise TokenExpired("token expired")
        return claims

    def revocation_ttl(self, claims: Claims) -> int:
        """Seconds until verify() stops accepting ``claims``, leeway included; at least 1."""
        return max(1, claims.remaining_seconds(self.clock() - self.leeway_seconds))

    def _claims_from_payload(self, payload: Any) -> Claims:
        if not isinstance(payload, dict):
            raise TokenInvalid("token payload malformed")
        if payload.get("iss") != self.issuer:
            raise TokenInvalid("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid("token audience mismatch")

        sub, iat, exp, jti = (payload.get(k) for k in ("sub", "iat", "exp", "jti"))
        ver = payload.get("ver", 0)
        if not isinstance(sub, str) or not sub or not isinstance(jti, str) or not jti:
            raise TokenInvalid("token claims incomplete")
        for value in (iat, exp, ver):
            # bool is an int subclass; a literal true/false is not a timestamp
            if isinstance(value, bool) or not isinstance(value, int):
                raise TokenInvalid("token claims incomplete")
        if exp < iat:
            raise TokenInvalid("token lifetime inverted")
        return Claims(
            subject=sub, issued_at=iat, expires_at=exp, jti=jti, credential_version=ver
        )
