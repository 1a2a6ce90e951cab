"""
Regulatory compliance API client.

Reports plant-batch growth-phase changes to the external tracking system:

    POST {base}/plantbatches/growthphase
        {batch_id, external_batch_id, from_phase, to_phase, occurred_at}
    → 200 {"confirmation_id": "..."}

Every failure (timeout, transport error, non-2xx, malformed body)
is raised as ExternalSyncFailure; the sync worker decides whether to retry.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Optional

import httpx

from app.config import settings
from app.middleware.exceptions import ExternalSyncFailure

logger = logging.getLogger(__name__)


@dataclass
class PhaseChangeReport:
    """Payload for one growth-phase change."""
    batch_id: str
    external_batch_id: str
    from_phase: str
    to_phase: str
    occurred_at: str  # ISO-8601 UTC


class RegulatoryClient:
    """
    Thin async client for the regulator's plant-batch API.

    Usage:
        client = RegulatoryClient()
        confirmation_id = await client.report_phase_change(report)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.regulatory_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.regulatory_api_key
        self.timeout = timeout if timeout is not None else settings.regulatory_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, endpoint: str, data: dict) -> dict:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(url, headers=self._headers(), json=data)
        except httpx.TimeoutException as exc:
            raise ExternalSyncFailure(
                f"Regulatory API timed out after {self.timeout:.0f}s"
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ExternalSyncFailure(f"Regulatory API unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "Regulatory API error: %s - %s", response.status_code, response.text
            )
            raise ExternalSyncFailure(
                f"Regulatory API returned {response.status_code}: {response.text[:500]}"
            )

        try:
            return response.json() if response.text else {}
        except ValueError as exc:
            raise ExternalSyncFailure("Regulatory API returned invalid JSON") from exc

    async def report_phase_change(self, report: PhaseChangeReport) -> str:
        """Send one phase change and return the regulator's confirmation id."""
        data = await self._post("plantbatches/growthphase", asdict(report))
        if not isinstance(data, dict):
            raise ExternalSyncFailure("Regulatory API returned an unexpected response body")

        confirmation_id = data.get("confirmation_id")
        if not confirmation_id:
            raise ExternalSyncFailure("No confirmation_id in regulatory API response")

        logger.info(
            "Reported %s → %s for %s (confirmation %s)",
            report.from_phase,
            report.to_phase,
            report.external_batch_id,
            confirmation_id,
        )
        return str(confirmation_id)
