"""Simple Google OAuth token refresh utility for the DV360 APIs."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

import requests

from dv360_ingestion.errors import AuthenticationError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"

# Refresh a little early so a token never expires mid-poll
EXPIRY_MARGIN = timedelta(minutes=5)


@dataclass
class Credentials:
    """OAuth credentials for the Bid Manager and Display & Video 360 APIs."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    expires_at: Optional[datetime] = None

    def can_refresh(self) -> bool:
        return all([self.refresh_token, self.client_id, self.client_secret])


def is_token_expired(credentials: Credentials, now: Optional[datetime] = None) -> bool:
    """Check if the access token is missing or about to expire."""
    if not credentials.access_token:
        return True

    # A token configured without expiry is trusted as-is
    if credentials.expires_at is None:
        return False

    now = now or datetime.now()
    return now >= credentials.expires_at - EXPIRY_MARGIN


def refresh_access_token(credentials: Credentials, timeout: int = 30) -> Tuple[str, datetime]:
    """
    Exchange the refresh token for a new access token.

    The new token and its expiration time are stored on ``credentials``.

    Raises:
        AuthenticationError: If the refresh request fails or is rejected
    """
    if not credentials.can_refresh():
        raise AuthenticationError(
            "Cannot refresh DV360 token: set sources.dv360.refresh_token, "
            "client_id and client_secret in .dlt/secrets.toml"
        )

    data = {
        "client_id": credentials.client_id,
        "client_secret": credentials.client_secret,
        "refresh_token": credentials.refresh_token,
        "grant_type": "refresh_token",
    }

    try:
        response = requests.post(GOOGLE_TOKEN_ENDPOINT, data=data, timeout=timeout)
    except requests.RequestException as e:
        raise AuthenticationError(f"Token refresh request failed: {e}") from e

    if response.status_code != 200:
        raise AuthenticationError(
            f"Token refresh failed: HTTP {response.status_code}: {response.text}"
        )

    response_data = response.json()
    new_token = response_data.get("access_token")
    expires_in = response_data.get("expires_in", 3600)

    if not new_token:
        raise AuthenticationError("Token refresh response did not contain an access_token")

    expiration_time = datetime.now() + timedelta(seconds=int(expires_in))
    credentials.access_token = new_token
    credentials.expires_at = expiration_time
    logger.info(f"DV360 API token refreshed (expires at {expiration_time.isoformat()})")
    return new_token, expiration_time


def refresh_token_if_needed(credentials: Credentials) -> str:
    """Return a valid access token, refreshing it first if it has expired."""
    if not is_token_expired(credentials):
        return credentials.access_token

    if not credentials.can_refresh():
        raise AuthenticationError(
            "DV360 access token not found. Set sources.dv360.access_token, or "
            "refresh_token/client_id/client_secret, in .dlt/secrets.toml"
        )

    new_token, _ = refresh_access_token(credentials)
    return new_token
