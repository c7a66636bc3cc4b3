"""Client for the hosted auth service's password-reset flow."""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from errors import BackendError
from storage import raise_for_backend

logger = logging.getLogger(__name__)


class AuthClient:
    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def _headers(self, access_token: Optional[str] = None) -> dict:
        return {"apikey": self.api_key, "Authorization": f"Bearer {access_token or self.api_key}"}

    def _call(self, method: str, path: str, what: str, access_token: Optional[str] = None, **kwargs) -> dict:
        try:
            resp = self._client.request(
                method, f"{self.base_url}/auth/v1{path}", headers=self._headers(access_token), **kwargs
            )
        except httpx.HTTPError as e:
            raise BackendError(f"{what} failed: {e}") from e
        raise_for_backend(resp, what)
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def send_password_reset(self, email: str, redirect_to: str) -> None:
        email = (email or "").strip()
        if not email:
            raise BackendError("Email is required.")
        self._call("POST", "/recover", "Password reset", params={"redirect_to": redirect_to}, json={"email": email})
        logger.info("Password reset email requested for %s", email)

    def verify_recovery(self, token_hash: str) -> dict:
        """
        Exchange the token from the reset link for a session.
        Returns {"access_token", "email"}.
        """
        body = self._call("POST", "/verify", "Reset link verification",
                          json={"type": "recovery", "token_hash": token_hash})
        access_token = body.get("access_token")
        if not access_token:
            raise BackendError("Reset link is invalid or has expired.")
        user = body.get("user") or {}
        return {"access_token": access_token, "email": (user.get("email") or "").lower()}

    def update_password(self, access_token: str, password: str) -> dict:
        body = self._call("PUT", "/user", "Password update", access_token=access_token, json={"password": password})
        logger.info("Password updated for auth user %s", body.get("email", "?"))
        return body

    def close(self) -> None:
        self._client.close()
