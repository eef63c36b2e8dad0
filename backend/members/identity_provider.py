"""
Identity Provider Client

Wraps the hosted identity provider's admin API (GoTrue-compatible):
- POST   /auth/v1/admin/users                  create a user
- PUT    /auth/v1/admin/users/{id}             update email/password
- DELETE /auth/v1/admin/users/{id}             delete a user
- POST   /auth/v1/token?grant_type=password    password sign-in

Admin calls authenticate with the service role key, so the caller's
administrator privilege is carried by this client's credentials.
"""

import logging
from typing import Optional, Dict, Any

import httpx

from config import get_settings

from .errors import IdentityProviderError
from .models import Identity, ProviderSession

logger = logging.getLogger(__name__)


class IdentityProviderClient:
    """
    Client for the identity provider.

    Owns the Identity lifecycle: nothing else in the service creates or
    deletes identities.
    """

    ADMIN_USERS_PATH = "/auth/v1/admin/users"
    TOKEN_PATH = "/auth/v1/token"

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        anon_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.service_role_key = service_role_key
        self.anon_key = anon_key or service_role_key
        self.timeout = timeout
        self._transport = transport

    def _admin_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
        }

    def _public_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "apikey": self.anon_key,
        }

    async def _request(
        self,
        method: str,
        path: str,
        headers: Dict[str, str],
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            ) as client:
                return await client.request(method, path, headers=headers, json=json, params=params)
        except httpx.TimeoutException:
            logger.error(f"Identity provider {method} {path} timed out")
            raise IdentityProviderError("Identity provider request timed out")
        except httpx.RequestError as e:
            logger.error(f"Identity provider {method} {path} request error: {e}")
            raise IdentityProviderError(f"Identity provider unreachable: {e}")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Pull the provider's error text out of a failed response."""
        try:
            body = response.json()
        except ValueError:
            return response.text or f"Identity provider returned {response.status_code}"

        if isinstance(body, dict):
            for key in ("msg", "message", "error_description", "error"):
                if body.get(key):
                    return str(body[key])
        return f"Identity provider returned {response.status_code}"

    @staticmethod
    def _parse_identity(response: httpx.Response) -> Identity:
        """Identity from a user payload, bare or wrapped in {"user": ...}."""
        try:
            body = response.json()
            return Identity.from_provider(body.get("user", body))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Identity provider returned an unreadable user payload: {e!r}")
            raise IdentityProviderError(f"Unexpected identity provider response: {e!r}", response.status_code)

    # ==================== ADMIN OPERATIONS ====================

    async def create_user(self, email: str, password: str, pre_confirmed: bool = True) -> Identity:
        """
        Create an identity.

        With pre_confirmed the identity can sign in immediately; no
        verification email is sent.

        Raises:
            IdentityProviderError: the provider rejected the request
        """
        response = await self._request(
            "POST",
            self.ADMIN_USERS_PATH,
            headers=self._admin_headers(),
            json={"email": email, "password": password, "email_confirm": pre_confirmed}
        )

        if response.status_code not in (200, 201):
            message = self._error_message(response)
            logger.warning(f"Identity create rejected ({response.status_code}): {message}")
            raise IdentityProviderError(message, response.status_code)

        identity = self._parse_identity(response)
        logger.info(f"Identity created: {identity.id}")
        return identity

    async def delete_user(self, identity_id: str) -> None:
        """
        Delete an identity.

        Raises:
            IdentityProviderError: the provider rejected the request
        """
        response = await self._request(
            "DELETE",
            f"{self.ADMIN_USERS_PATH}/{identity_id}",
            headers=self._admin_headers()
        )

        if response.status_code not in (200, 204):
            message = self._error_message(response)
            logger.warning(f"Identity delete rejected ({response.status_code}): {message}")
            raise IdentityProviderError(message, response.status_code)

        logger.info(f"Identity deleted: {identity_id}")

    async def update_user(
        self,
        identity_id: str,
        email: Optional[str] = None,
        password: Optional[str] = None
    ) -> Identity:
        """
        Change an identity's email and/or password.

        A new email is confirmed immediately, like a created identity.

        Raises:
            IdentityProviderError: the provider rejected the request
        """
        payload: Dict[str, Any] = {}
        if email:
            payload["email"] = email
            payload["email_confirm"] = True
        if password:
            payload["password"] = password

        response = await self._request(
            "PUT",
            f"{self.ADMIN_USERS_PATH}/{identity_id}",
            headers=self._admin_headers(),
            json=payload
        )

        if response.status_code != 200:
            message = self._error_message(response)
            logger.warning(f"Identity update rejected ({response.status_code}): {message}")
            raise IdentityProviderError(message, response.status_code)

        logger.info(f"Identity updated: {identity_id}")
        return self._parse_identity(response)

    # ==================== SIGN-IN ====================

    async def sign_in_with_password(self, email: str, password: str) -> ProviderSession:
        """
        Exchange email/password for provider tokens.

        Raises:
            IdentityProviderError: invalid credentials or provider failure
        """
        response = await self._request(
            "POST",
            self.TOKEN_PATH,
            headers=self._public_headers(),
            json={"email": email, "password": password},
            params={"grant_type": "password"}
        )

        if response.status_code != 200:
            raise IdentityProviderError(self._error_message(response), response.status_code)

        try:
            body = response.json()
            return ProviderSession(
                access_token=body["access_token"],
                token_type=body.get("token_type", "bearer"),
                expires_in=int(body.get("expires_in", 3600)),
                refresh_token=body.get("refresh_token"),
                identity=Identity.from_provider(body["user"])
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise IdentityProviderError(f"Unexpected identity provider response: {e!r}", response.status_code)


def get_identity_provider() -> IdentityProviderClient:
    """Dependency: identity provider client built from settings."""
    settings = get_settings()
    return IdentityProviderClient(
        base_url=settings.SUPABASE_URL,
        service_role_key=settings.SUPABASE_SERVICE_ROLE_KEY,
        anon_key=settings.SUPABASE_ANON_KEY or None,
        timeout=settings.IDENTITY_PROVIDER_TIMEOUT_SECONDS
    )
