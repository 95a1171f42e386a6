"""
Upload-authorization tokens.

An upload token is an HS256 JWT minted after a successful CAPTCHA check.
It is self-contained: validity is computed from its own signed claims on
every request, and there is no server-side revocation list. A token stays
usable, any number of times, until it expires.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Tuple

import jwt

logger = logging.getLogger("intake.upload_tokens")

UPLOAD_TOKEN_TYPE = "upload_token"
UPLOAD_TOKEN_TTL_SECONDS = 15 * 60

SIGNING_ALGORITHM = "HS256"
ACCEPTED_ALGORITHMS = ["HS256", "HS384", "HS512"]

REQUIRED_CLAIMS = ["exp", "iat", "type", "turnstile_token"]


@dataclass(frozen=True)
class IssuedUploadToken:
    token: str
    expires_at: int
    issued_at: int

    def expires_in(self, now: float) -> int:
        return max(0, self.expires_at - int(now))


class UploadTokenIssuer:
    """
    Mints and validates upload tokens with a single symmetric secret.

    The secret is supplied at construction; the issuer never reads the
    environment. The clock is injectable so expiry can be exercised
    without waiting.
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = UPLOAD_TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("Upload token signing secret must not be empty")
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, raw_captcha_token: str) -> IssuedUploadToken:
        """
        Sign a token bound to an already verified CAPTCHA token.

        The caller is responsible for the CAPTCHA check; nothing is
        re-verified here.
        """
        now = self._clock()
        issued_at = int(now)
        expires_at = issued_at + self.ttl_seconds

        claims = {
            "turnstile_token": raw_captcha_token,
            "type": UPLOAD_TOKEN_TYPE,
            "iat": issued_at,
            "exp": expires_at,
            "jti": f"upload_{int(now * 1_000_000_000)}_{secrets.token_hex(4)}",
        }
        token = jwt.encode(claims, self._secret, algorithm=SIGNING_ALGORITHM)

        logger.info(
            "upload_token_issued",
            extra={"jti": claims["jti"], "expires_at": expires_at},
        )
        return IssuedUploadToken(
            token=token,
            expires_at=expires_at,
            issued_at=issued_at,
        )

    def validate(self, token: str) -> Tuple[bool, str]:
        """
        Return (True, raw CAPTCHA token) for a valid upload token, else
        (False, "").

        A token is valid iff its signature verifies under an HMAC
        algorithm, its type claim is "upload_token", and the current time
        is strictly before its exp claim.
        """
        if not token:
            return False, ""

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=ACCEPTED_ALGORITHMS,
                options={
                    "require": REQUIRED_CLAIMS,
                    # expiry is checked below against the injected clock
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.InvalidTokenError as exc:
            logger.info(
                "upload_token_rejected",
                extra={"reason": type(exc).__name__},
            )
            return False, ""

        if claims.get("type") != UPLOAD_TOKEN_TYPE:
            logger.info(
                "upload_token_rejected",
                extra={"reason": "wrong_type"},
            )
            return False, ""

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            logger.info(
                "upload_token_rejected",
                extra={"reason": "malformed_exp"},
            )
            return False, ""

        if self._clock() >= exp:
            logger.info(
                "upload_token_rejected",
                extra={"reason": "expired", "jti": claims.get("jti")},
            )
            return False, ""

        raw_captcha_token = claims.get("turnstile_token")
        if not isinstance(raw_captcha_token, str):
            return False, ""

        return True, raw_captcha_token
