# ================================================================
#  SP-API AUTH MODULE
#  ---------------------------------------------------------------
#  - Exchange the LWA refresh token for an access token
#  - Reuse the cached token until it is within the expiry margin
#  - A rejected refresh is fatal for the current operation
# ================================================================

import logging
import threading
import time
from typing import Callable, Optional

import requests

import config

logger = logging.getLogger("spapi_auth")

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class SpApiAuthError(RuntimeError):
    """Raised when the LWA token cannot be obtained (bad or missing credentials)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SpApiAuth:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 15,
    ):
        self.client_id = config.LWA_CLIENT_ID if client_id is None else client_id
        self.client_secret = config.LWA_CLIENT_SECRET if client_secret is None else client_secret
        self.refresh_token = config.LWA_REFRESH_TOKEN if refresh_token is None else refresh_token
        self._session = session or requests.Session()
        self._clock = clock
        self._timeout = timeout
        self._lwa_token: Optional[str] = None
        self._lwa_expiry: float = 0.0
        # Worker threads share one token; only one of them refreshes it.
        self._lock = threading.Lock()

    def missing_credentials(self) -> list[str]:
        missing = []
        if not self.client_id:
            missing.append("LWA_CLIENT_ID")
        if not self.client_secret:
            missing.append("LWA_CLIENT_SECRET")
        if not self.refresh_token:
            missing.append("LWA_REFRESH_TOKEN")
        return missing

    def token_is_fresh(self) -> bool:
        return bool(self._lwa_token) and self._clock() < self._lwa_expiry

    def invalidate(self) -> None:
        with self._lock:
            self._lwa_token = None
            self._lwa_expiry = 0.0

    def get_lwa_access_token(self) -> str:
        with self._lock:
            if self.token_is_fresh():
                return self._lwa_token
            return self._refresh_access_token()

    def _refresh_access_token(self) -> str:
        missing = self.missing_credentials()
        if missing:
            raise SpApiAuthError(f"SP-API credentials are not configured: {', '.join(missing)}")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            resp = self._session.post(LWA_TOKEN_URL, data=data, timeout=self._timeout)
        except requests.exceptions.RequestException as exc:
            logger.error("[Auth] Token request failed: %s", exc)
            raise SpApiAuthError(f"LWA token request failed: {exc}") from exc

        if resp.status_code != 200:
            logger.error("[Auth] Token request failed %s: %s", resp.status_code, resp.text)
            raise SpApiAuthError(
                f"Token refresh failed: {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            payload = resp.json()
            token = payload["access_token"]
        except (ValueError, KeyError) as exc:
            raise SpApiAuthError(f"Malformed LWA token response: {exc}", status_code=resp.status_code) from exc

        expires_in = payload.get("expires_in") or 3600
        self._lwa_token = token
        self._lwa_expiry = self._clock() + float(expires_in) - TOKEN_EXPIRY_MARGIN_SECONDS
        logger.info("[Auth] Successfully obtained LWA token (expires_in=%ss)", expires_in)
        return token
