"""
Geolocation Client
==================
Resolves an IP address to an ISO country code through an HTTP lookup service.
"""

import logging
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import GeolocationError

logger = structlog.get_logger(__name__)
_std_logger = logging.getLogger(__name__)


class GeoLookup(BaseModel):
    """Subset of the lookup service response we rely on."""
    model_config = ConfigDict(extra="ignore")

    ip: Optional[str] = None
    country: Optional[str] = None


class GeoLocator:
    """
    Async geolocation client.

    ``api_url`` is a template containing ``{ip}``, e.g. ``https://ipinfo.io/{ip}/json``.
    Network errors are retried; the final failure raises GeolocationError.
    """

    def __init__(
        self,
        api_url: str,
        timeout: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": "apiguard-geolocation", "Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        before_sleep=before_sleep_log(_std_logger, logging.WARNING),
        reraise=True,
    )
    async def _fetch(self, ip: str) -> GeoLookup:
        response = await self.client.get(self.api_url.format(ip=ip))
        response.raise_for_status()
        return GeoLookup.model_validate(response.json())

    async def resolve_country(self, ip: str) -> Optional[str]:
        """Return the upper-case country code, or None when the service has none."""
        try:
            lookup = await self._fetch(ip)
        except (httpx.HTTPError, ValueError) as e:
            raise GeolocationError(f"Lookup failed for {ip}: {e}") from e
        country = (lookup.country or "").strip().upper()
        return country or None
