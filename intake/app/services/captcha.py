"""
CAPTCHA verification against the Cloudflare Turnstile siteverify endpoint.

A raw widget token is verified at most once per lifetime window: successful
verifications are remembered in a VerificationCache keyed by the raw token,
so repeated upload-token requests carrying the same widget token do not
incur another provider round trip until the entry expires.
"""

import logging
import threading
import time
from typing import Annotated, Callable, Optional

import httpx

logger = logging.getLogger("intake.captcha")

# Same window as the upload-token lifetime.
CAPTCHA_LIFETIME_SECONDS = 15 * 60
VERIFY_TIMEOUT_SECONDS = 10.0

Clock = Callable[[], float]


class VerificationCache:
    """
    Raw CAPTCHA token -> expiry timestamp, populated on success only.

    Entries expire lazily: a read past the expiry drops the entry and
    reports a miss. Writes purge every expired entry, which keeps the map
    bounded by the number of tokens verified within one lifetime window.
    """

    def __init__(
        self,
        ttl_seconds: float = CAPTCHA_LIFETIME_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def __contains__(self, raw_token: str) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._entries.get(raw_token)
            if expires_at is None:
                return False
            if now >= expires_at:
                del self._entries[raw_token]
                return False
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, raw_token: str) -> float:
        now = self._clock()
        expires_at = now + self._ttl
        with self._lock:
            expired = [k for k, exp in self._entries.items() if now >= exp]
            for key in expired:
                del self._entries[key]
            self._entries[raw_token] = expires_at
        return expires_at


class CaptchaVerifier:
    """
    Verifies raw Turnstile tokens.

    Fails closed: an unconfigured secret, an empty token, a transport
    error, a non-2xx status or an undecodable body all yield False.
    """

    def __init__(
        self,
        secret_key: str,
        http_client: Annotated[
            httpx.AsyncClient,
            "Persistent HTTP client",
        ],
        verify_url: str,
        cache: Optional[VerificationCache] = None,
        timeout: float = VERIFY_TIMEOUT_SECONDS,
    ) -> None:
        self._secret_key = secret_key
        self.client = http_client
        self.verify_url = verify_url
        self.cache = cache if cache is not None else VerificationCache()
        self.timeout = timeout

        if not secret_key:
            logger.warning("turnstile_secret_not_configured")

    async def verify(self, raw_token: str, client_ip: str = "") -> bool:
        if not self._secret_key:
            logger.warning("turnstile_verification_skipped_no_secret")
            return False

        if not raw_token:
            logger.info("turnstile_token_empty")
            return False

        if raw_token in self.cache:
            return True

        form = {
            "secret": self._secret_key,
            "response": raw_token,
        }
        if client_ip:
            form["remoteip"] = client_ip

        try:
            response = await self.client.post(
                self.verify_url,
                data=form,
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as exc:
            logger.warning(
                "turnstile_request_failed",
                extra={"error_type": type(exc).__name__, "error": str(exc)},
            )
            return False
        except ValueError as exc:
            logger.warning(
                "turnstile_response_undecodable",
                extra={"error": str(exc)},
            )
            return False

        if not isinstance(result, dict) or result.get("success") is not True:
            logger.info(
                "turnstile_verification_rejected",
                extra={
                    "error_codes": (
                        result.get("error-codes", [])
                        if isinstance(result, dict)
                        else []
                    ),
                },
            )
            return False

        expires_at = self.cache.add(raw_token)
        logger.info(
            "turnstile_verification_succeeded",
            extra={
                "hostname": result.get("hostname"),
                "cached_until": expires_at,
            },
        )
        return True
