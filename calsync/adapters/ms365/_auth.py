"""
MS365 authentication adapter.

Provides the authenticated Graph client used by every calendar component.
Tokens come from the centralized OAuth credential management in the Auth
service; this module only attaches them to outgoing requests and maps Graph
responses to CalendarError.
"""

import os
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ...services.auth_client import get_credential_token, AuthClientError
from .errors import CalendarError, ErrorKind, error_for_status, redact_text


logger = logging.getLogger(__name__)

GRAPH_BASE_URL = os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0")
GRAPH_TIMEOUT_SECONDS = float(os.getenv("GRAPH_TIMEOUT_SECONDS", "30"))


class CredentialTokenAuth(httpx.Auth):
    """
    httpx auth flow that uses the Auth service for token vending.

    On a 401 from Graph the token is refreshed once and the request replayed,
    covering tokens revoked before their advertised expiry.
    """

    def __init__(self, credential_id: str):
        """
        Args:
            credential_id: UUID of the credential in auth.credentials table
        """
        self.credential_id = credential_id

    def sync_auth_flow(self, request):
        raise RuntimeError("CredentialTokenAuth requires httpx.AsyncClient")

    async def async_auth_flow(self, request):
        token_data = await get_credential_token(self.credential_id)
        request.headers["Authorization"] = f"Bearer {token_data['access_token']}"
        response = yield request

        if response.status_code == 401:
            token_data = await get_credential_token(self.credential_id, force_refresh=True)
            request.headers["Authorization"] = f"Bearer {token_data['access_token']}"
            yield request


def endpoint_path(user_id: str, path: str) -> str:
    """
    Build a Graph path for the signed-in user or a specific user.

    Example:
        endpoint_path("me", "/events")          -> "/me/events"
        endpoint_path("a@contoso.com", "/events") -> "/users/a%40contoso.com/events"
    """
    if not user_id or user_id == "me":
        return f"/me{path}"
    return f"/users/{quote(user_id, safe='')}{path}"


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


class GraphClient:
    """
    Thin async client over the Graph REST surface.

    Successful responses are returned as parsed JSON dictionaries; empty
    bodies (204, 202 with no content) come back as {}. Non-2xx responses
    raise CalendarError classified by status code.

    Example:
        client = get_graph_client(credential_id)
        settings = await client.get("/me/mailboxSettings")
    """

    def __init__(self, http: httpx.AsyncClient):
        self._http = http

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        endpoint = redact_text(path.split("?", 1)[0])
        try:
            response = await self._http.request(
                method, path, json=json, params=params, headers=headers
            )
        except AuthClientError as e:
            raise CalendarError(
                f"Could not obtain a Graph token: {e}",
                kind=ErrorKind.OTHER,
                context={"endpoint": endpoint, "method": method},
                cause=e
            )
        except httpx.TransportError as e:
            raise CalendarError(
                f"Graph request failed: {e.__class__.__name__}",
                kind=ErrorKind.OTHER,
                context={"endpoint": endpoint, "method": method},
                cause=e
            )

        if response.is_success:
            logger.debug("%s %s -> %s", method, endpoint, response.status_code)
            if response.status_code == 204 or not response.content:
                return {}
            try:
                body = response.json()
            except ValueError:
                return {}
            return body if isinstance(body, dict) else {"value": body}

        message = redact_text(_error_message(response))
        logger.warning("%s %s -> %s", method, endpoint, response.status_code)
        raise error_for_status(
            response.status_code,
            f"Graph {method} {endpoint} failed ({response.status_code}): {message}",
            context={"endpoint": endpoint, "method": method},
            retry_after=_retry_after(response)
        )

    async def get(self, path: str, **kwargs) -> Dict[str, Any]:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
        return await self.request("POST", path, json=json, **kwargs)

    async def patch(self, path: str, json: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
        return await self.request("PATCH", path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs) -> Dict[str, Any]:
        return await self.request("DELETE", path, **kwargs)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def get_graph_client(
    credential_id: str,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> GraphClient:
    """
    Create a Microsoft Graph API client for the given credential.

    This is the only place a Graph client is constructed; components depend
    on GraphClient.get/post/patch/delete alone.

    Args:
        credential_id: UUID of the credential in auth.credentials table
        transport: Optional httpx transport (tests pass httpx.MockTransport)

    Returns:
        Configured GraphClient instance (caller closes it)

    Example:
        async with get_graph_client("37b08f02-62d8-4327-aac7-f20e13b7f440") as client:
            me = await client.get("/me")
    """
    http = httpx.AsyncClient(
        base_url=GRAPH_BASE_URL,
        auth=CredentialTokenAuth(credential_id),
        timeout=GRAPH_TIMEOUT_SECONDS,
        headers={"Content-Type": "application/json"},
        transport=transport
    )
    return GraphClient(http)
