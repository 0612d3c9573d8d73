"""HTTP client for the handover backend sync and import endpoints."""

import logging
import urllib.parse
from typing import List, Optional

import httpx

from .errors import ApplicationError, HttpError, NetworkError
from .models import SyncRequest, SyncResult

logger = logging.getLogger(__name__)


class HandoverApiClient:
    """Client for the handover backend REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self) -> dict:
        """Get headers for backend calls."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        options = {"base_url": self.base_url, "headers": self._get_headers()}
        # Without an explicit timeout the httpx default applies.
        if self.timeout is not None:
            options["timeout"] = self.timeout
        if self._transport is not None:
            options["transport"] = self._transport
        return httpx.AsyncClient(**options)

    async def _request(self, method: str, path: str, payload: Optional[dict] = None):
        """
        Issue one request and return the decoded JSON body.

        Raises:
            NetworkError: connection failure or timeout
            HttpError: non-2xx response
            ApplicationError: body is not valid JSON
        """
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.warning(f"{method} {path} failed with HTTP {status_code}")
            raise HttpError(
                status_code,
                f"HTTP {status_code}: {exc.response.reason_phrase}",
                response_text=exc.response.text[:200],
            ) from exc
        except httpx.RequestError as exc:
            logger.warning(f"{method} {path} request error: {exc}")
            raise NetworkError(f"{type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise ApplicationError(f"Invalid JSON in response from {path}") from exc

    async def _request_object(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        data = await self._request(method, path, payload)
        if not isinstance(data, dict):
            raise ApplicationError(f"Unexpected response shape from {path}: {type(data).__name__}")
        return data

    async def post_sync(self, endpoint: str, request: SyncRequest) -> SyncResult:
        """
        Run one sync on the backend.

        Sends {"targetIds": "<comma-joined ids or empty>"} and expects
        {"success": bool, "stats": {"imported", "updated", "errors"}}.

        Raises:
            ApplicationError: backend reported success=false
        """
        data = await self._request_object("POST", endpoint, request.to_payload())
        result = SyncResult.from_payload(data)
        if not result.success:
            raise ApplicationError(result.message or "Backend reported sync failure")
        return result

    async def list_nursing_units(self) -> List[dict]:
        """
        Fetch the nursing units (enfermarias) known to the backend.
        Returns list of dicts with: codigo, nome
        """
        data = await self._request("GET", "/api/enfermarias")
        if isinstance(data, dict):
            data = data.get("data", [])
        return list(data or [])

    async def import_unit_evolutions(self, unit_code: str) -> SyncResult:
        """Import the latest patient evolutions for one nursing unit."""
        data = await self._request_object("POST", "/api/import/evolucoes", {"enfermaria": unit_code})
        result = SyncResult.from_payload(data)
        if not result.success:
            raise ApplicationError(result.message or f"Import failed for {unit_code}")
        return result

    async def sync_patient(self, leito: str) -> dict:
        """Sync a single bed from the external clinical system. Returns the patient record."""
        path = f"/api/sync/patient/{urllib.parse.quote(leito, safe='')}"
        return await self._request_object("POST", path)

    async def sync_patients(self, leitos: List[str]) -> List[dict]:
        """Sync several beds at once. Returns the patient records."""
        data = await self._request("POST", "/api/sync/patients", {"leitos": list(leitos)})
        if not isinstance(data, list):
            raise ApplicationError("Expected a list of patients from /api/sync/patients")
        return data

    async def get_patients(self) -> List[dict]:
        """Fetch the current patient census."""
        data = await self._request("GET", "/api/patients")
        if isinstance(data, dict):
            data = data.get("data", [])
        return list(data or [])
