from __future__ import annotations
"""Concierge API client.

Async HTTP access to the Concierge backend for the client runtime.

Usage:
    async with ConciergeApi("http://localhost:8000") as api:
        identity = HttpIdentityProvider(api)
        session = SessionLifecycleManager(identity, DashboardApi(api))
        session.start()
"""

import logging
import os
from typing import Any, Callable

import httpx

from concierge.client.otp_flow import OtpTransportError
from concierge.client.types import AuthEvent, Identity

logger = logging.getLogger(__name__)

CONCIERGE_API_URL = os.getenv("CONCIERGE_API_URL", "http://localhost:8000")


class ConciergeClientError(Exception):
    """Base exception for client errors."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


def _error_message(response: httpx.Response) -> tuple[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", None
    detail = data.get("detail") if isinstance(data, dict) else None
    if isinstance(detail, str):
        return detail, data
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"], data
    return f"HTTP {response.status_code}", data


class ConciergeApi:
    """Thin async wrapper over the backend's JSON endpoints.

    Attributes:
        base_url: Base URL of the Concierge backend
        token: Bearer token of the signed-in user, if any
    """

    def __init__(
        self,
        base_url: str = CONCIERGE_API_URL,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ConciergeApi":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def http(self) -> httpx.AsyncClient:
        return self._client

    def headers(self, token: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = token or self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        token: str | None = None,
    ) -> dict:
        response = await self._client.request(
            method=method,
            url=path,
            headers=self.headers(token),
            json=json,
        )
        if response.status_code >= 400:
            message, details = _error_message(response)
            raise ConciergeClientError(message, status_code=response.status_code, details=details)
        if response.status_code == 204:
            return {}
        return response.json()


# ===========================================================================
# Identity provider
# ===========================================================================

def _identity_from(data: dict, token: str) -> Identity:
    return Identity(
        user_id=data["user_id"],
        email=data["email"],
        name=data.get("name"),
        token=token,
    )


class HttpIdentityProvider:
    """Bearer-token identity backed by the /api/auth endpoints.

    Subscribers are called as ``callback(event, identity)``.
    """

    def __init__(self, api: ConciergeApi):
        self.api = api
        self._listeners: list[Callable[[AuthEvent, Identity | None], None]] = []

    def subscribe(self, callback: Callable[[AuthEvent, Identity | None], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: AuthEvent, identity: Identity | None):
        for callback in list(self._listeners):
            callback(event, identity)

    async def get_current_session(self) -> Identity | None:
        if not self.api.token:
            return None
        try:
            data = await self.api.request("GET", "/api/auth/me")
        except ConciergeClientError as e:
            if e.status_code == 401:
                self.api.token = None
                return None
            raise
        return _identity_from(data, self.api.token)

    async def send_code(self, email: str, name: str = "", resend: bool = False) -> None:
        try:
            await self.api.request(
                "POST",
                "/api/auth/otp/send",
                json={"email": email, "name": name or None, "resend": resend},
            )
        except ConciergeClientError as e:
            if e.status_code is not None and e.status_code < 500:
                raise OtpTransportError(e.message if e.status_code != 422 else "") from e
            raise

    async def verify_code(self, email: str, code: str) -> bool:
        data = await self.api.request(
            "POST", "/api/auth/otp/verify", json={"email": email, "code": code}
        )
        if not data.get("success"):
            return False
        self.api.token = data["token"]
        self._emit(AuthEvent.SIGNED_IN, _identity_from(data, data["token"]))
        return True

    async def refresh(self) -> Identity | None:
        data = await self.api.request("POST", "/api/auth/refresh")
        self.api.token = data["token"]
        identity = _identity_from(data, data["token"])
        self._emit(AuthEvent.TOKEN_REFRESHED, identity)
        return identity

    async def sign_out(self) -> None:
        try:
            if self.api.token:
                await self.api.request("POST", "/api/auth/logout")
        except (ConciergeClientError, httpx.HTTPError) as e:
            logger.warning(f"[auth] Logout request failed: {e}")
        finally:
            self.api.token = None
            self._emit(AuthEvent.SIGNED_OUT, None)


# ===========================================================================
# Dashboard data
# ===========================================================================

class DashboardApi:
    """Dependent data loaded after sign-in."""

    def __init__(self, api: ConciergeApi):
        self.api = api

    async def ensure_organization(self, identity: Identity) -> dict:
        return await self.api.request("POST", "/api/organizations/ensure", token=identity.token)

    async def list_agents(self, identity: Identity) -> list[dict]:
        data = await self.api.request("GET", "/api/agents", token=identity.token)
        return data.get("agents") or []

    async def get_subscription(self, identity: Identity) -> dict | None:
        data = await self.api.request("GET", "/api/subscription", token=identity.token)
        return data.get("subscription")

    async def get_current_organization(self, identity: Identity) -> dict | None:
        try:
            return await self.api.request("GET", "/api/organizations/current", token=identity.token)
        except ConciergeClientError as e:
            if e.status_code == 404:
                return None
            raise
