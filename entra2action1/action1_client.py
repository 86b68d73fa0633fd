"""
================================================================================
Action1 API Client
================================================================================

This module provides a Python client for the Action1 endpoint-management API.
It only talks to Action1; no matching or sync logic lives here. It handles:

1. OAuth2 Authentication (client credentials flow, JSON body)
2. Re-authentication when the token expires mid-run (401)
3. Rate limiting with adaptive backoff
4. Retry logic for transient failures (5xx, network errors)
5. Pagination of managed endpoints (ResultPage.next_page)

Action1 API Overview:
---------------------
- Base URL: https://app.action1.com/api/3.0 (region specific)
- Auth: OAuth2 client_credentials, POST {base}/oauth2/token
- Format: JSON
- Custom attributes are written as flat "custom:<name>" keys via PATCH

Main Endpoints Used:
-------------------
- GET   /organizations                          - List organizations
- GET   /endpoints/managed/{orgId}              - List managed endpoints (paged)
- GET   /endpoints/managed/{orgId}/{endpointId} - Get one endpoint
- PATCH /endpoints/managed/{orgId}/{endpointId} - Update custom attributes

Usage Example:
--------------
    from entra2action1.action1_client import Action1Client

    client = Action1Client(config.action1)   # client_secret already materialized
    client.authenticate()

    endpoints = client.list_managed_endpoints(org_id, page_size=50)
    client.patch_managed_endpoint(org_id, endpoints[0]["id"],
                                  {"custom:Entra Groups": "Group A, Group B"})
"""

import json
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlsplit

import requests  # HTTP library for making API calls

from .config import Action1Config
from .errors import ApiError, AuthError, PatchValidationError
from .logger import get_logger
from .rate_limiter import AdaptiveRateLimiter

logger = get_logger("entra2action1.action1_client")


# =============================================================================
# RESPONSE HELPERS
# =============================================================================

def _read_json(resp: requests.Response) -> Any:
    """Parse a response body; empty bodies give None, non-JSON gives {"_raw": text}."""
    if not resp.text:
        return None
    try:
        return resp.json()
    except ValueError:
        return {"_raw": resp.text}


def _error_hint(data: Any) -> str:
    """Pick the most useful human-readable message out of an Action1 error body."""
    if isinstance(data, dict):
        return data.get("developer_message") or data.get("user_message") or data.get("_raw") or ""
    return ""


# =============================================================================
# MAIN CLIENT CLASS
# =============================================================================

class Action1Client:
    """
    Client for the Action1 API.

    One instance is created per run. Its token is acquired once, before the
    job loop, and shared by every job (all organizations use the same app).

    Attributes:
        config: Action1Config with API URL, client_id and materialized secret
        max_retries: Maximum attempts for a request
        retry_delay: Base delay between retries (multiplied by attempt number)
        rate_limiter: AdaptiveRateLimiter instance for request throttling

    Example:
        >>> client = Action1Client(config.action1)
        >>> token = client.authenticate()
        >>> orgs = client.list_organizations()
    """

    def __init__(
        self,
        config: Action1Config,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
    ):
        self.config = config
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        # Access token storage (populated by authenticate())
        self._access_token: Optional[str] = None

        self.rate_limiter = rate_limiter or AdaptiveRateLimiter(
            name="Action1",
            base_interval=0.2,
            min_interval=0.05,
            max_interval=60.0,
        )

    # =========================================================================
    # PRIVATE HELPER METHODS
    # =========================================================================

    def _require_config(self):
        missing = []
        if not self.config.api_base_url:
            missing.append("action1.apiBaseUrl")
        if not self.config.client_id:
            missing.append("action1.clientId")
        if not self.config.client_secret:
            missing.append("action1.clientSecret")
        if missing:
            raise AuthError(f"Action1 config missing: {', '.join(missing)}")

    def _url(self, path: str) -> str:
        return f"{self.config.api_base_url.rstrip('/')}/{path.lstrip('/')}"

    def _absolutize(self, maybe_relative: str) -> str:
        """Action1 may return next_page as "/API/..." relative to the API origin."""
        if maybe_relative.startswith(("http://", "https://")):
            return maybe_relative
        parts = urlsplit(self.config.api_base_url)
        return f"{parts.scheme}://{parts.netloc}/{maybe_relative.lstrip('/')}"

    def _get_headers(self) -> Dict[str, str]:
        # Lazy authentication - only authenticate when needed
        if not self._access_token:
            self.authenticate()

        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================

    def authenticate(self) -> str:
        """
        Authenticate with Action1 using the OAuth2 client credentials flow.

        Returns:
            The new access token string

        Raises:
            AuthError: If config fields are missing, the request fails, or
                       the response has no access_token.

        Note:
            The client secret is sent in the body and never logged.
        """
        self._require_config()

        logger.info(f"[Action1] Requesting OAuth token: {self.config.token_url}")
        logger.debug(
            f"[Action1] Token request: clientId={self.config.client_id} "
            f"apiBaseUrl={self.config.api_base_url}"
        )

        payload = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        headers = {"Content-Type": "application/json", "Accept": "application/json"}

        started = time.monotonic()
        try:
            resp = requests.post(self.config.token_url, json=payload, headers=headers, timeout=30)
        except requests.RequestException as e:
            raise AuthError(f"[Action1] Authentication request failed: {e}") from e

        data = _read_json(resp)
        if not 200 <= resp.status_code < 300:
            hint = _error_hint(data)
            raise AuthError(
                f"[Action1] Authentication failed: HTTP {resp.status_code}" + (f" | {hint}" if hint else "")
            )

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("[Action1] OAuth token response missing access_token")

        self._access_token = token
        logger.debug(f"[Action1] Token received in {(time.monotonic() - started) * 1000:.0f}ms")
        return token

    # =========================================================================
    # CORE REQUEST METHOD
    # =========================================================================

    def _make_request(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make an authenticated request with rate limiting and retries.

        Args:
            method: HTTP method ("GET", "PATCH")
            url: Absolute URL
            body: Optional JSON body
            params: Optional query parameters

        Returns:
            Parsed JSON response (None for an empty body)

        Raises:
            ApiError: On a non-retryable status, or after all retries
        """
        reauthenticated = False
        last_status = None

        for attempt in range(1, self.max_retries + 1):
            self.rate_limiter.wait()

            headers = self._get_headers()
            if body is not None:
                headers["Content-Type"] = "application/json"

            logger.debug(
                f"[Action1] HTTP {method} {url}"
                + (f" | bodyBytes={len(json.dumps(body).encode('utf-8'))}" if body is not None else "")
            )

            try:
                resp = requests.request(
                    method,
                    url,
                    headers=headers,
                    json=body,
                    params=params,
                    timeout=60,
                )
            except requests.RequestException as e:
                self.rate_limiter.on_error()
                logger.warning(f"[Action1] Request attempt {attempt} failed: {e}")
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay * 2 ** (attempt - 1))
                    continue
                raise ApiError(
                    f"[Action1] {method} {url} failed after {self.max_retries} attempts: {e}"
                ) from e

            last_status = resp.status_code

            if 200 <= resp.status_code < 300:
                self.rate_limiter.on_success()
                return _read_json(resp)

            if resp.status_code == 401 and not reauthenticated:
                # Token expired during a long run - refresh once and retry
                logger.warning("[Action1] Token rejected, re-authenticating...")
                self._access_token = None
                self.authenticate()
                reauthenticated = True
                continue

            if resp.status_code == 429:
                self.rate_limiter.on_rate_limit(resp.headers.get("Retry-After"))
                continue

            if resp.status_code >= 500 and attempt < self.max_retries:
                self.rate_limiter.on_error()
                logger.warning(f"[Action1] Server error {resp.status_code}, retrying...")
                time.sleep(self.retry_delay * 2 ** (attempt - 1))
                continue

            # Client error (4xx) or final 5xx - not retryable
            self.rate_limiter.on_error()
            data = _read_json(resp)
            hint = _error_hint(data)
            message = f"[Action1] HTTP {resp.status_code} {method} {url}" + (f" | {hint}" if hint else "")
            logger.error(message)
            raise ApiError(message, status=resp.status_code, data=data)

        raise ApiError(
            f"[Action1] {method} {url} failed: max retries exceeded",
            status=last_status,
        )

    # =========================================================================
    # PUBLIC API METHODS
    # =========================================================================

    def list_organizations(self) -> List[Dict[str, Any]]:
        """
        Get all organizations the API app can see.

        Not needed for the sync itself (org IDs come from config) but used by
        the `orgs` command to help fill in the config.
        """
        logger.info("[Action1] Fetching organizations...")
        data = self._make_request("GET", self._url("/organizations"))
        # Handle both list response and ResultPage {"items": [...]} format
        if isinstance(data, list):
            return data
        return (data or {}).get("items", [])

    def list_managed_endpoints(
        self,
        org_id: str,
        page_size: int = 50,
        fields: str = "*",
        max_pages: int = 200,
        max_items: int = 50000,
    ) -> List[Dict[str, Any]]:
        """
        Get all managed endpoints of one organization, following next_page.

        Args:
            org_id: Action1 organization ID
            page_size: Items requested per page (Action1 maximum is 50)
            fields: Field selector; "*" includes custom attributes
            max_pages: Stop paging after this many pages
            max_items: Stop collecting after this many endpoints

        Returns:
            Endpoint dictionaries in API order

        Raises:
            ApiError: If any page request fails
        """
        if not org_id:
            raise ValueError("list_managed_endpoints: org_id is required")

        logger.debug(
            f"[Action1] list_managed_endpoints: orgId={org_id} limit={page_size} "
            f"fields={fields} maxPages={max_pages} maxItems={max_items}"
        )

        next_url: Optional[str] = self._url(f"/endpoints/managed/{quote(str(org_id), safe='')}")
        params: Optional[Dict[str, Any]] = {"limit": page_size, "fields": fields}
        items: List[Dict[str, Any]] = []
        page = 0

        while next_url:
            page += 1
            if page > max_pages:
                logger.warning(f"[Action1] Paging stopped: reached maxPages={max_pages} (org {org_id})")
                break

            logger.info(f"[Action1] GET endpoints page {page} (org {org_id})")
            data = self._make_request("GET", next_url, params=params) or {}
            page_items = data.get("items") if isinstance(data.get("items"), list) else []

            for endpoint in page_items:
                items.append(endpoint)
                if len(items) >= max_items:
                    logger.warning(f"[Action1] Paging stopped: reached maxItems={max_items} (org {org_id})")
                    return items

            next_page = data.get("next_page")
            next_url = self._absolutize(next_page) if next_page else None
            # next_page already carries the query string
            params = None

            logger.debug(
                f"[Action1] Endpoints page {page}: got={len(page_items)} "
                f"total={len(items)} next={'yes' if next_url else 'no'}"
            )

        logger.info(f"[Action1] Endpoints fetched (org {org_id}): {len(items)}")
        return items

    def get_managed_endpoint(self, org_id: str, endpoint_id: str) -> Dict[str, Any]:
        """Get one managed endpoint, including its custom attributes."""
        if not org_id or not endpoint_id:
            raise ValueError("get_managed_endpoint: org_id and endpoint_id are required")

        logger.info(f"[Action1] GET endpoint {endpoint_id} (org {org_id})")
        return self._make_request("GET", self._endpoint_url(org_id, endpoint_id))

    def patch_managed_endpoint(self, org_id: str, endpoint_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update custom attributes of one managed endpoint.

        Args:
            org_id: Action1 organization ID
            endpoint_id: Endpoint to update
            patch: Flat body, e.g. {"custom:Entra Groups": "Group A, Group B"}

        Returns:
            The updated endpoint record as returned by Action1

        Raises:
            PatchValidationError: If endpoint_id or the patch object is missing
            ApiError: If Action1 rejects the update
        """
        if not org_id:
            raise ValueError("patch_managed_endpoint: org_id is required")
        if not endpoint_id:
            raise PatchValidationError("patch_managed_endpoint: endpoint_id is required")
        if not isinstance(patch, dict):
            raise PatchValidationError("patch_managed_endpoint: patch object is required")

        logger.info(f"[Action1] PATCH endpoint {endpoint_id} (org {org_id})")
        logger.debug(
            f"[Action1] PATCH payload for endpoint {endpoint_id} (org {org_id}):\n"
            f"{json.dumps(patch, indent=2, default=str)}"
        )
        return self._make_request("PATCH", self._endpoint_url(org_id, endpoint_id), body=patch)

    def _endpoint_url(self, org_id: str, endpoint_id: str) -> str:
        return self._url(
            f"/endpoints/managed/{quote(str(org_id), safe='')}/{quote(str(endpoint_id), safe='')}"
        )
