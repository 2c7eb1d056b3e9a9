"""
Auth Service Client
Handles OAuth token vending requests to the Auth service. Calendar code never
acquires tokens itself; it asks the Auth service for a token bound to a
stored credential.
"""
import os
import time
import logging
import httpx
from typing import Optional

from .cache import TTLCache


logger = logging.getLogger(__name__)

# Configuration
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://auth:8000")
SERVICE_SECRET = os.getenv("SERVICE_SECRET")

# Tokens are reused until 5 minutes before they expire
TOKEN_EXPIRY_BUFFER_SECONDS = 300

_token_cache = TTLCache(ttl=TOKEN_EXPIRY_BUFFER_SECONDS, max_entries=1024, clock=time.time)


class AuthClientError(Exception):
    """Raised when Auth service token vending fails"""
    pass


async def get_credential_token(
    credential_id: str,
    force_refresh: bool = False,
    http_client: Optional[httpx.AsyncClient] = None
) -> dict:
    """
    Request OAuth token for a credential from Auth service.

    Args:
        credential_id: UUID of the credential
        force_refresh: If True, bypass cache and request new token
        http_client: Optional client to reuse (tests inject a mock transport)

    Returns:
        dict with:
            - access_token: str - The OAuth access token
            - expires_at: int - Unix timestamp when token expires
            - token_type: str - Token type (usually "Bearer")

    Raises:
        AuthClientError: If token request fails
    """
    if not SERVICE_SECRET:
        raise AuthClientError("SERVICE_SECRET not configured")

    if not force_refresh:
        cached = _token_cache.get(credential_id)
        if cached is not None:
            return cached

    url = f"{AUTH_SERVICE_URL}/auth/oauth/internal/credential-token"
    headers = {
        "X-Service-Token": SERVICE_SECRET,
        "Content-Type": "application/json"
    }
    data = {"credential_id": credential_id}

    try:
        if http_client is not None:
            response = await http_client.post(url, headers=headers, json=data)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(url, headers=headers, json=data)
        response.raise_for_status()
        token_data = response.json()
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            raise AuthClientError(
                f"Credential {credential_id} not found or not connected"
            )
        elif e.response.status_code == 401:
            raise AuthClientError("Invalid SERVICE_SECRET")
        else:
            raise AuthClientError(f"Auth service error: {e.response.status_code}")
    except httpx.RequestError as e:
        raise AuthClientError(f"Failed to reach Auth service: {str(e)}")

    if not token_data.get("access_token"):
        raise AuthClientError("Auth service returned no access token")

    # Cache until shortly before expiry; tokens that expire sooner are not cached
    lifetime = float(token_data.get("expires_at", 0)) - time.time() - TOKEN_EXPIRY_BUFFER_SECONDS
    if lifetime > 0:
        _token_cache.set(credential_id, token_data, ttl=lifetime)
    else:
        logger.debug("Token for credential %s expires too soon to cache", credential_id)

    return token_data


def clear_token_cache(credential_id: Optional[str] = None):
    """
    Clear token cache for a specific credential or all credentials.

    Useful when a token has been revoked or a credential disconnected.
    """
    _token_cache.invalidate(credential_id)


def get_cache_stats() -> dict:
    """Token cache statistics for monitoring."""
    return _token_cache.stats()
