from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..errors import SigningError

ALGORITHM = "RS256"
# iat is backdated by this much to tolerate clock skew with the verifier
CLOCK_SKEW_SECONDS = 60
LIFETIME_SECONDS = 10 * 60


@dataclass(frozen=True)
class Assertion:
    token: str
    issued_at: int
    expires_at: int
    issuer: str


class AssertionMinter:
    """Mint short-lived RS256 app assertions from a held private key.

    The key is parsed once; ``mint`` is a pure function of the wall clock and
    the key, so one minter is shared by every concurrent request.
    """

    def __init__(self, pem_data: bytes, clock: Callable[[], float] = time.time):
        try:
            key = serialization.load_pem_private_key(pem_data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"could not load signing key: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise SigningError("signing key must be an RSA private key")
        self._key = key
        self._clock = clock

    @classmethod
    def from_file(cls, path: Path | str) -> "AssertionMinter":
        try:
            pem_data = Path(path).read_bytes()
        except OSError as e:
            raise SigningError(f"could not read signing key {path}: {e}") from e
        return cls(pem_data)

    def __repr__(self) -> str:
        return "AssertionMinter(key=<redacted>)"

    def _now(self) -> int:
        try:
            now = int(self._clock())
        except (OSError, OverflowError, ValueError) as e:
            raise SigningError(f"could not read system clock: {e}") from e
        if now < CLOCK_SKEW_SECONDS:
            raise SigningError("system clock is set before the unix epoch")
        return now

    def mint(self, issuer: str) -> Assertion:
        if not issuer:
            raise SigningError("assertion issuer must not be empty")
        now = self._now()
        claims = {
            "iat": now - CLOCK_SKEW_SECONDS,
            "exp": now + LIFETIME_SECONDS,
            "iss": issuer,
        }
        try:
            token = jwt.encode(claims, self._key, algorithm=ALGORITHM)
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise SigningError(f"could not sign assertion: {e}") from e
        return Assertion(
            token=token,
            issued_at=claims["iat"],
            expires_at=claims["exp"],
            issuer=issuer,
        )
