"""
================================================================================
Microsoft Entra ID (Graph) Client
================================================================================

This module reads devices and their group memberships from Microsoft Graph for
one Entra tenant. The directory is only ever read. It handles:

1. OAuth2 Authentication (client credentials, form-encoded, one token per call)
2. Paging through /devices and /devices/{id}/memberOf (@odata.nextLink)
3. Rate limiting with adaptive backoff (Graph throttles with 429)
4. Flattening each device into the record the device mapper consumes

Device Record Shape:
--------------------
    {
        "displayName": "LAPTOP-001",
        "deviceOwnership": "Company",
        "enrollmentProfileName": "Autopilot",
        "enrollmentType": "...",
        "extensionAttributes": {...},
        "isCompliant": True,
        "isManaged": True,
        "managementType": "MDM",
        "memberOf": "Group A, Group B",
    }

Usage Example:
--------------
    from entra2action1.entra_client import EntraClient

    client = EntraClient(tenant)          # tenant.client_secret materialized
    devices = client.list_devices_with_groups()
"""

import time
from typing import Any, Dict, List, Optional

import requests  # HTTP library for making API calls

from .config import TenantConfig
from .errors import ApiError, AuthError
from .logger import get_logger
from .rate_limiter import AdaptiveRateLimiter

logger = get_logger("entra2action1.entra_client")

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
LOGIN_URL = "https://login.microsoftonline.com"

# Device properties requested with $select and copied into each record
DEVICE_FIELDS = [
    "displayName",
    "deviceOwnership",
    "enrollmentProfileName",
    "enrollmentType",
    "extensionAttributes",
    "isCompliant",
    "isManaged",
    "managementType",
]


class EntraClient:
    """
    Read-only Graph client for one Entra tenant.

    Attributes:
        tenant: TenantConfig with tenant_id, client_id and materialized secret
        max_retries: Maximum attempts per request
        retry_delay: Base delay between retries
        rate_limiter: AdaptiveRateLimiter shared by all requests of this client
    """

    def __init__(
        self,
        tenant: TenantConfig,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
    ):
        self.tenant = tenant
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.rate_limiter = rate_limiter or AdaptiveRateLimiter(
            name=f"Graph:{tenant.name}",
            base_interval=0.1,
            min_interval=0.02,
            max_interval=60.0,
        )
        self._access_token: Optional[str] = None

    @property
    def token_url(self) -> str:
        return f"{LOGIN_URL}/{self.tenant.tenant_id}/oauth2/v2.0/token"

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================

    def authenticate(self) -> str:
        """
        Request an app-only Graph token for this tenant.

        Returns:
            Access token string

        Raises:
            AuthError: Missing tenant fields, rejected credentials, network
                       failure, or no access_token in the response
        """
        missing = [
            name for name, value in (
                ("tenantId", self.tenant.tenant_id),
                ("clientId", self.tenant.client_id),
                ("clientSecret", self.tenant.client_secret),
            ) if not value
        ]
        if missing:
            raise AuthError(f"Entra tenant config is missing: {', '.join(missing)}")

        logger.info(f"[entra] Requesting access token for tenant {self.tenant.tenant_id}")
        logger.debug(
            f"[entra] Token request: tenantId={self.tenant.tenant_id} "
            f"clientId={self.tenant.client_id} scope={GRAPH_SCOPE}"
        )

        # Form-encoded, unlike Action1's JSON token request
        payload = {
            "client_id": self.tenant.client_id,
            "client_secret": self.tenant.client_secret,
            "grant_type": "client_credentials",
            "scope": GRAPH_SCOPE,
        }

        try:
            resp = requests.post(
                self.token_url,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=30,
            )
        except requests.RequestException as e:
            raise AuthError(f"[entra] Token request failed: {e}") from e

        try:
            data = resp.json() if resp.text else None
        except ValueError:
            data = None

        if not 200 <= resp.status_code < 300:
            description = data.get("error_description") if isinstance(data, dict) else None
            raise AuthError(
                f"[entra] HTTP {resp.status_code} POST {self.token_url}"
                + (f": {description}" if description else "")
            )

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("[entra] Token response does not contain access_token")
        self._access_token = token
        return token

    # =========================================================================
    # CORE REQUEST METHOD
    # =========================================================================

    def _get_json(self, url: str) -> Dict[str, Any]:
        """
        GET one Graph page with rate limiting and retries.

        A 401 refreshes the token once and repeats the request.

        Raises:
            AuthError: Token refresh failed
            ApiError: Non-retryable status, or retries exhausted
        """
        reauthenticated = False
        last_status = None

        for attempt in range(1, self.max_retries + 1):
            self.rate_limiter.wait()

            if not self._access_token:
                self.authenticate()
            headers = {"Authorization": f"Bearer {self._access_token}", "Accept": "application/json"}

            try:
                resp = requests.get(url, headers=headers, timeout=60)
            except requests.RequestException as e:
                self.rate_limiter.on_error()
                logger.warning(f"[entra] Request attempt {attempt} failed: {e}")
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay * 2 ** (attempt - 1))
                    continue
                raise ApiError(f"[entra] GET {url} failed after {self.max_retries} attempts: {e}") from e

            last_status = resp.status_code

            if resp.status_code == 200:
                self.rate_limiter.on_success()
                return resp.json() or {}

            if resp.status_code == 401 and not reauthenticated:
                logger.warning("[entra] Token rejected, re-authenticating...")
                self._access_token = None
                self.authenticate()
                reauthenticated = True
                continue

            if resp.status_code == 429:
                self.rate_limiter.on_rate_limit(resp.headers.get("Retry-After"))
                continue

            if resp.status_code >= 500 and attempt < self.max_retries:
                self.rate_limiter.on_error()
                logger.warning(f"[entra] Server error {resp.status_code}, retrying...")
                time.sleep(self.retry_delay * 2 ** (attempt - 1))
                continue

            self.rate_limiter.on_error()
            raise ApiError(f"[entra] HTTP {resp.status_code} GET {url}", status=resp.status_code)

        raise ApiError(f"[entra] GET {url} failed: max retries exceeded", status=last_status)

    def _get_all_pages(self, url: str, label: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 0
        next_url: Optional[str] = url

        while next_url:
            page += 1
            logger.debug(f"[entra] GET {label} page {page}: {next_url}")
            data = self._get_json(next_url)
            values = data.get("value") if isinstance(data.get("value"), list) else []
            items.extend(values)
            next_url = data.get("@odata.nextLink")
            logger.debug(
                f"[entra] {label} page {page}: got={len(values)} total={len(items)} "
                f"next={'yes' if next_url else 'no'}"
            )

        return items

    # =========================================================================
    # PUBLIC API METHODS
    # =========================================================================

    def list_devices(self) -> List[Dict[str, Any]]:
        """Get all devices with every property Graph returns (no $select)."""
        self.authenticate()
        logger.info("[entra] Listing devices...")
        devices = self._get_all_pages(f"{GRAPH_BASE_URL}/devices?$top=999", "devices")
        logger.info(f"[entra] Devices fetched: {len(devices)}")
        return devices

    def list_device_groups(self, device_id: str) -> List[Dict[str, Any]]:
        """
        Get the groups a device is a direct member of.

        Reuses the client's current token; one is requested if none is held yet.
        """
        url = (
            f"{GRAPH_BASE_URL}/devices/{device_id}/memberOf/microsoft.graph.group"
            f"?$top=999&$select=id,displayName"
        )
        return self._get_all_pages(url, f"memberOf({device_id})")

    def list_devices_with_groups(self) -> List[Dict[str, Any]]:
        """
        Get every device of the tenant enriched with its group names.

        One token is requested for the whole call and reused for the device
        listing and every memberOf lookup. A 401 mid-run refreshes it once.

        Returns:
            Flat device records (see module docstring) in Graph order

        Raises:
            AuthError: Token could not be obtained
            ApiError: Any page failed
        """
        started = time.monotonic()
        self.authenticate()

        select = ",".join(["id"] + DEVICE_FIELDS)
        logger.info("[entra] Listing devices ($select=...)")
        devices = self._get_all_pages(
            f"{GRAPH_BASE_URL}/devices?$top=999&$select={select}", "devices"
        )

        logger.info(f"[entra] Enriching {len(devices)} devices with memberOf groups...")

        records = []
        for device in devices:
            label = device.get("displayName") or device.get("id")
            groups = self.list_device_groups(device.get("id"))
            group_names = [g.get("displayName") or g.get("id") for g in groups]
            group_names = [name for name in group_names if name]

            logger.debug(f"[entra] Groups for device {label}: count={len(group_names)}")

            record = {name: device.get(name) for name in DEVICE_FIELDS}
            record["memberOf"] = ", ".join(group_names)
            records.append(record)

        logger.info(
            f"[entra] Devices enriched: {len(records)} "
            f"timeMs={(time.monotonic() - started) * 1000:.0f}"
        )
        logger.debug(f"[entra] Rate limiter stats: {self.rate_limiter.stats}")
        return records
