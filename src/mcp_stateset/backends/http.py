"""HTTP backend: a remote export/import service.

Wire contract:
    GET  {endpoint}/export?includeSecrets=<bool>&orgId=<id>  -> OrgExport JSON
    POST {endpoint}/import {"bundle": OrgExport, "dryRun": bool, "strict": bool}
         -> {"counts": {...}, "datasetEntries": n, "skipped": n, "failures": [...]}
"""
import logging
from typing import Any, Optional

import httpx

from ..bundle.schema import OrgExport, ImportResult
from ..config.settings import BackendSettings
from ..errors import BackendError, BundleFormatError
from ..utils.connection import call_with_retry
from ..utils.logging_config import timed
from .base import StateBackend, redact_bundle

logger = logging.getLogger(__name__)


class HttpStateBackend(StateBackend):
    """Live state behind an HTTP service."""

    type_name = "http"

    def __init__(self, config: BackendSettings):
        super().__init__(config.org_id)
        if not config.endpoint:
            raise BackendError("The http backend requires backend.endpoint")
        self.config = config
        self._http: Optional[httpx.AsyncClient] = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self.config.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.org_id:
            headers["X-Org-Id"] = self.org_id
        return headers

    async def connect(self) -> bool:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.config.endpoint.rstrip("/"),
                timeout=httpx.Timeout(self.config.timeout),
                headers=self._headers(),
                follow_redirects=True,
            )
        self._connected = True
        logger.info(f"Connected to state service at {self.config.endpoint}")
        return True

    async def disconnect(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None
        self._connected = False

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if self._http is None:
            await self.connect()

        async def _send() -> httpx.Response:
            resp = await self._http.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp

        try:
            resp = await call_with_retry(
                _send, max_attempts=max(1, int(self.config.retries))
            )
        except httpx.HTTPStatusError as e:
            raise BackendError(
                f"{method} {path} failed with HTTP {e.response.status_code}: "
                f"{e.response.text[:200]}"
            ) from e
        except httpx.TransportError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

        try:
            return resp.json()
        except ValueError as e:
            raise BackendError(f"{method} {path} returned invalid JSON") from e

    @timed("export_state")
    async def export_state(self, include_secrets: bool = False) -> OrgExport:
        params = {"includeSecrets": "true" if include_secrets else "false"}
        if self.org_id:
            params["orgId"] = self.org_id
        data = await self._request("GET", "/export", params=params)
        try:
            bundle = OrgExport.coerce(data, source=f"{self.config.endpoint}/export")
        except BundleFormatError as e:
            raise BackendError(f"Export returned an invalid bundle: {e}") from e
        # The service should redact already; do it again locally
        return bundle if include_secrets else redact_bundle(bundle)

    @timed("import_state")
    async def import_state(
        self,
        bundle: OrgExport,
        dry_run: bool = False,
        strict: bool = False,
    ) -> ImportResult:
        payload = {"bundle": bundle.to_dict(), "dryRun": dry_run, "strict": strict}
        data = await self._request("POST", "/import", json=payload)
        if not isinstance(data, dict):
            raise BackendError("Import returned an unexpected payload")
        result = ImportResult.from_dict(data)
        result.dry_run = dry_run
        return result
