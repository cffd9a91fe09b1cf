"""Bearer credential verification and actor resolution."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from ..errors import Unauthenticated
from ..models import User, UserStatus
from ..storage.document_store import USERS, DocumentStore
from .base import BaseService

logger = logging.getLogger(__name__)


class IdentityVerifier(Protocol):
    def verify(self, credential: str) -> str:
        """Return the verified subject identifier or raise ``ValueError``."""


class HmacTokenVerifier:
    """HS256 JWT verification against a shared secret."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("A shared secret is required for token verification")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def verify(self, credential: str) -> str:
        try:
            header_b64, payload_b64, signature_b64 = credential.split(".")
        except ValueError as exc:
            raise ValueError("Malformed JWT") from exc
        header = _b64url_to_json(header_b64)
        if header.get("alg") != "HS256":
            raise ValueError("Unsupported JWT alg")
        signing_input = f"{header_b64}.{payload_b64}".encode()
        expected = hmac.new(self._secret, signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(expected, _b64url_decode(signature_b64)):
            raise ValueError("Invalid JWT signature")
        claims = _b64url_to_json(payload_b64)
        exp = claims.get("exp")
        if exp is not None and float(exp) <= self._clock():
            raise ValueError("JWT expired")
        if self.issuer and claims.get("iss") != self.issuer:
            raise ValueError("Unexpected JWT issuer")
        if self.audience:
            audiences = claims.get("aud")
            audiences = audiences if isinstance(audiences, list) else [audiences]
            if self.audience not in audiences:
                raise ValueError("Unexpected JWT audience")
        subject = claims.get("sub")
        if not subject:
            raise ValueError("JWT has no subject")
        return str(subject)

    def issue(self, subject: str, *, ttl_seconds: int = 3600, **claims: Any) -> str:
        """Mint a token this verifier accepts; used by local tooling and tests."""
        payload: Dict[str, Any] = {"sub": subject, "exp": int(self._clock()) + ttl_seconds, **claims}
        if self.issuer:
            payload.setdefault("iss", self.issuer)
        if self.audience:
            payload.setdefault("aud", self.audience)
        header_b64 = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
        payload_b64 = _b64url_encode(json.dumps(payload).encode())
        signing_input = f"{header_b64}.{payload_b64}".encode()
        signature = hmac.new(self._secret, signing_input, hashlib.sha256).digest()
        return f"{header_b64}.{payload_b64}.{_b64url_encode(signature)}"


@dataclass
class IdentityService(BaseService):
    store: DocumentStore
    verifier: IdentityVerifier

    def authenticate(self, credential: Optional[str]) -> User:
        if not credential:
            raise Unauthenticated()
        try:
            subject = self.verifier.verify(credential)
        except (ValueError, TypeError) as exc:
            logger.info("Rejected bearer credential: %s", exc)
            raise Unauthenticated() from exc
        matches = self.store.query(USERS, "subject", subject)
        if len(matches) != 1 or matches[0].status != UserStatus.ACTIVE:
            logger.info("No active actor for subject %s", subject)
            raise Unauthenticated()
        return matches[0]


def _b64url_to_json(segment: str) -> dict:
    data = _b64url_decode(segment)
    try:
        decoded = json.loads(data.decode())
    except json.JSONDecodeError as exc:
        raise ValueError("Malformed JWT segment") from exc
    if not isinstance(decoded, dict):
        raise ValueError("Malformed JWT segment")
    return decoded


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (ValueError, TypeError) as exc:
        raise ValueError("Malformed JWT segment") from exc


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()
