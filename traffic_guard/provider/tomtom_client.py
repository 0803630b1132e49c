"""
TomTom traffic client.

Fetches flow and incident data for one grid cell per call.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests

from traffic_guard.core.errors import ProviderError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.tomtom.com/traffic"
FLOW_PATH = "/services/4/flowSegmentData/absolute/10/json"
INCIDENTS_PATH = "/services/5/incidentDetails"
INCIDENT_FIELDS = (
    "{incidents{type,geometry{type,coordinates},"
    "properties{iconCategory,magnitudeOfDelay,events{description,code,iconCategory}}}}"
)

# Status codes TomTom uses for a missing, revoked or expired key
AUTH_FAILURE_CODES = (401, 403)


class TomTomTrafficClient:
    """Traffic provider backed by the TomTom Traffic APIs.

    Sole responsibility:
    - Talk to TomTom via HTTP
    - Convert cell bounds into flow point / incident bbox parameters
    - Return normalized ``{"flow", "incidents", "timestamp"}`` payloads

    Each instance owns its key and HTTP session. When TomTom rejects the
    key, ``key_provider`` (if given) is asked for a fresh one and the call
    is retried once.
    """

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        base_url: str = BASE_URL,
        session: Optional[requests.Session] = None,
        key_provider: Optional[Callable[[], str]] = None,
    ):
        """Initialize the client.

        Args:
            api_key: TomTom API key (required)
            timeout: Seconds to wait for each HTTP response
            base_url: Traffic API root
            session: HTTP session to reuse; a new one is created if omitted
            key_provider: Callable returning a replacement key after an auth failure

        Raises:
            ValueError: If api_key is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")

        self.api_key = api_key
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.key_provider = key_provider

    def fetch_traffic(self, bounds) -> Dict[str, Any]:
        """Fetch flow at the cell centre and incidents inside the cell.

        Args:
            bounds: Cell rectangle (lat_min, lat_max, lon_min, lon_max)

        Returns:
            {"flow": dict, "incidents": list, "timestamp": ISO string}

        Raises:
            ProviderError: On transport errors, bad status codes or bad JSON
        """
        center_lat = (bounds.lat_min + bounds.lat_max) / 2
        center_lon = (bounds.lon_min + bounds.lon_max) / 2

        flow = self._get(FLOW_PATH, {
            "point": f"{center_lat},{center_lon}",
            "unit": "KMPH",
        })
        incidents = self._get(INCIDENTS_PATH, {
            "bbox": f"{bounds.lon_min},{bounds.lat_min},{bounds.lon_max},{bounds.lat_max}",
            "fields": INCIDENT_FIELDS,
        })

        return {
            "flow": flow.get("flowSegmentData") or {},
            "incidents": incidents.get("incidents") or [],
            "timestamp": datetime.now().isoformat(),
        }

    def _get(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        response = self._request(path, params)

        if response.status_code in AUTH_FAILURE_CODES and self.key_provider is not None:
            logger.warning("TomTom rejected API key (HTTP %d), refreshing and retrying", response.status_code)
            self.api_key = self.key_provider()
            response = self._request(path, params)

        if response.status_code != 200:
            raise ProviderError(
                f"TomTom request to {path} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"TomTom returned invalid JSON for {path}: {e}")

    def _request(self, path: str, params: Dict[str, str]) -> requests.Response:
        try:
            return self.session.get(
                f"{self.base_url}{path}",
                params={"key": self.api_key, **params},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"TomTom request to {path} failed: {e}")
