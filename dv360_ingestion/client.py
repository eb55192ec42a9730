"""
DV360 API Client

APIs:
  - Bid Manager API v2 (queries, reports) for performance reports
  - Display & Video 360 API v3 (sdfdownloadtasks, operations, media download)
    for Structured Data Files

Transport: aiohttp, one ClientSession per pipeline invocation
Authentication: OAuth access token (Authorization: Bearer ...), refreshed on
demand from the credentials carried by Settings

Transport failures are not retried here; they surface as TransportError.
"""

import asyncio
import logging
from typing import Any, BinaryIO, Dict, Optional
from urllib.parse import quote

import aiohttp

from dv360_ingestion.config import Settings
from dv360_ingestion.errors import AuthenticationError, TransportError
from dv360_ingestion.utils.token_refresh import refresh_token_if_needed

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class Dv360Client:
    """Thin async wrapper over the report and SDF endpoints."""

    def __init__(self, settings: Settings, session: aiohttp.ClientSession):
        self.settings = settings
        self.session = session

    # ------------------------------------------------------------------
    # Bid Manager (reports)
    # ------------------------------------------------------------------

    async def create_query(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request_json("POST", f"{self.settings.bid_manager_url}/queries", json=body)

    async def run_query(self, query_id: str) -> Dict[str, Any]:
        url = f"{self.settings.bid_manager_url}/queries/{query_id}:run"
        return await self.request_json("POST", url, params={"synchronous": "false"}, json={})

    async def get_report(self, query_id: str, report_id: str) -> Dict[str, Any]:
        url = f"{self.settings.bid_manager_url}/queries/{query_id}/reports/{report_id}"
        return await self.request_json("GET", url)

    async def download_report(self, url: str, destination: BinaryIO) -> int:
        # Report files are served from signed Cloud Storage URLs
        return await self.download(url, destination, authorized=False)

    # ------------------------------------------------------------------
    # Display & Video 360 (SDF)
    # ------------------------------------------------------------------

    async def create_sdf_task(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request_json("POST", f"{self.settings.display_video_url}/sdfdownloadtasks", json=body)

    async def get_operation(self, name: str) -> Dict[str, Any]:
        return await self.request_json("GET", f"{self.settings.display_video_url}/{name}")

    async def download_media(self, resource_name: str, destination: BinaryIO) -> int:
        url = f"{self.settings.download_url}/{quote(resource_name, safe='/')}"
        return await self.download(url, destination, params={"alt": "media"})

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _auth_headers(self) -> Dict[str, str]:
        # Token refresh is a blocking requests call
        access_token = await asyncio.to_thread(refresh_token_if_needed, self.settings.credentials)
        return {"Authorization": f"Bearer {access_token}"}

    async def request_json(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Execute a JSON API call.

        Raises:
            AuthenticationError: On HTTP 401/403
            TransportError: On other HTTP errors or network failures
        """
        headers = await self._auth_headers()
        headers["Content-Type"] = "application/json"

        try:
            async with self.session.request(method, url, params=params, json=json, headers=headers) as response:
                if response.status in (401, 403):
                    error_text = await response.text()
                    raise AuthenticationError(f"HTTP {response.status} from {url}: {error_text}")

                if response.status >= 400:
                    error_text = await response.text()
                    logger.error(f"HTTP {response.status} from {method} {url}: {error_text}")
                    raise TransportError(f"HTTP {response.status} from {method} {url}: {error_text}")

                return await response.json()

        except aiohttp.ClientError as e:
            raise TransportError(f"Network error calling {method} {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out calling {method} {url}") from e

    async def download(
        self,
        url: str,
        destination: BinaryIO,
        params: Optional[Dict[str, Any]] = None,
        authorized: bool = True,
    ) -> int:
        """Stream a response body into ``destination`` chunk by chunk. Returns bytes written."""
        headers = await self._auth_headers() if authorized else {}
        total_bytes = 0

        try:
            async with self.session.get(url, params=params, headers=headers) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    logger.error(f"HTTP {response.status} downloading {url}: {error_text}")
                    raise TransportError(f"HTTP {response.status} downloading {url}: {error_text}")

                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    destination.write(chunk)
                    total_bytes += len(chunk)

        except aiohttp.ClientError as e:
            raise TransportError(f"Network error downloading {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out downloading {url}") from e

        logger.info(f"Downloaded {total_bytes} bytes")
        return total_bytes


def create_session(settings: Settings) -> aiohttp.ClientSession:
    return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=settings.http_timeout))
