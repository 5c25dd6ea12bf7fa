"""osu! API v2 client with rate limiting and retry logic.

This module wraps the osu! web API with client-credentials OAuth,
automatic rate limiting, retry with backoff on transient failures, and a
small exception hierarchy so feeds can tell "try again later" apart from
"this resource is gone".

Example:
    >>> from osu_complete.data.api import OsuApiClient
    >>> client = OsuApiClient(delay=0.25)
    >>> mapset = client.get_beatmapset(1)
    >>> page = client.get_scores("osu", cursor_string=None)
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

import requests
from requests.exceptions import RequestException, Timeout

from osu_complete.config import get_settings
from osu_complete.exceptions import OsuCompleteError

logger = logging.getLogger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================


class ExternalFetchError(OsuCompleteError):
    """Any failure fetching data from an external service."""

    pass


class OsuApiError(ExternalFetchError):
    """Base exception for osu! API errors."""

    pass


class OsuApiRateLimitError(OsuApiError):
    """Rate limit exceeded (HTTP 429)."""

    pass


class OsuApiNotFoundError(OsuApiError):
    """Resource not found (HTTP 404)."""

    pass


class OsuApiTimeoutError(OsuApiError):
    """Request timeout."""

    pass


# =============================================================================
# Constants
# =============================================================================

RETRIABLE_STATUS_CODES = {429, 500, 502, 503, 504}
NON_RETRIABLE_STATUS_CODES = {400, 403, 404, 422}

# Ruleset names as used by the API, indexed by ruleset id
RULESETS = ("osu", "taiko", "fruits", "mania")

# Newer score format (ended_at, ruleset_id, beatmap_id)
API_VERSION = "20240529"

# Maximum ids per beatmaps lookup
BEATMAPS_PER_REQUEST = 50


# =============================================================================
# osu! API Client
# =============================================================================


class OsuApiClient:
    """HTTP client for the osu! API v2.

    Provides:
    - Client-credentials OAuth with token refresh
    - Automatic rate limiting (configurable delay)
    - Retry logic with a fixed backoff ladder
    - Error classification into the ``OsuApiError`` family

    Attributes:
        base_url: Site root, e.g. ``https://osu.ppy.sh``.
        delay: Seconds between API calls.
        max_retries: Maximum retry attempts for transient errors.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        client_id: int | str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        delay: float | None = None,
        max_retries: int | None = None,
        timeout: float = 30.0,
        http: requests.Session | None = None,
    ) -> None:
        """Initialize API client.

        Args:
            client_id: OAuth client id (default from settings).
            client_secret: OAuth client secret (default from settings).
            base_url: Site root (default from settings).
            delay: Seconds between API calls (default from settings).
            max_retries: Maximum retry attempts (default from settings).
            timeout: Request timeout in seconds.
            http: Optional preconfigured ``requests.Session``.
        """
        settings = get_settings()
        self.client_id = client_id if client_id is not None else settings.osu_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.osu_client_secret
        )
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.delay = delay if delay is not None else settings.api_delay
        self.max_retries = (
            max_retries if max_retries is not None else settings.api_max_retries
        )
        self.timeout = timeout
        self.http = http or requests.Session()
        self._last_request_time: float = 0.0
        self._token: str | None = None
        self._token_expires_at: float = 0.0

        logger.debug(
            f"OsuApiClient initialized: base_url={self.base_url}, delay={self.delay}s, "
            f"max_retries={self.max_retries}, timeout={self.timeout}s"
        )

    # =========================================================================
    # Transport
    # =========================================================================

    def _apply_rate_limit(self) -> None:
        """Apply rate limiting delay if needed."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self.delay:
            sleep_time = self.delay - elapsed
            logger.debug(f"Rate limiting: sleeping {sleep_time:.2f}s")
            time.sleep(sleep_time)
        self._last_request_time = time.time()

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate backoff delay for retry attempts.

        Attempt 0 -> 5s, 1 -> 15s, 2 -> 60s, 3 -> 120s, 4+ -> 300s.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Backoff delay in seconds.
        """
        backoff_sequence = [5.0, 15.0, 60.0, 120.0, 300.0]
        if attempt < len(backoff_sequence):
            return backoff_sequence[attempt]
        return backoff_sequence[-1]

    def _get_token(self) -> str:
        """Return a valid access token, requesting a new one when expired."""
        if self._token and time.time() < self._token_expires_at:
            return self._token
        if not self.client_id or not self.client_secret:
            raise OsuApiError("OSU_CLIENT_ID and OSU_CLIENT_SECRET must be set")

        try:
            response = self.http.post(
                f"{self.base_url}/oauth/token",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "client_credentials",
                    "scope": "public",
                },
                timeout=self.timeout,
            )
        except RequestException as e:
            raise OsuApiError(f"Token request failed: {e}") from e
        if response.status_code != 200:
            raise OsuApiError(f"Token request failed with status {response.status_code}")

        data = response.json()
        self._token = data["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.time() + int(data.get("expires_in", 86400)) - 60
        logger.debug("Obtained new osu! API access token")
        return self._token

    def _request_with_retry(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Execute a GET request against ``/api/v2`` with retry logic.

        Args:
            path: Endpoint path, e.g. ``/beatmapsets/1``.
            params: Query parameters. List values are sent as ``key[]``.

        Returns:
            Decoded JSON body.

        Raises:
            OsuApiError: On permanent failure.
            OsuApiRateLimitError: If rate limit exceeded after retries.
            OsuApiNotFoundError: If resource not found.
            OsuApiTimeoutError: If request times out after retries.
        """
        url = f"{self.base_url}/api/v2{path}"
        query = _encode_params(params or {})
        last_error: Exception | None = None
        last_was_rate_limit = False
        last_was_timeout = False

        for attempt in range(self.max_retries + 1):
            self._apply_rate_limit()
            attempt_label = f"(attempt {attempt + 1}/{self.max_retries + 1})"

            try:
                logger.debug(f"API request: GET {path} {attempt_label}")
                response = self.http.get(
                    url,
                    params=query,
                    headers={
                        "Authorization": f"Bearer {self._get_token()}",
                        "Accept": "application/json",
                        "x-api-version": API_VERSION,
                    },
                    timeout=self.timeout,
                )
            except Timeout as e:
                last_error = e
                last_was_rate_limit = False
                last_was_timeout = True
                reason = "Request timeout"
            except RequestException as e:
                last_error = e
                last_was_rate_limit = False
                last_was_timeout = False
                reason = f"Request error: {e}"
            else:
                status_code = response.status_code
                if status_code < 400:
                    logger.debug(f"API request successful: GET {path}")
                    return response.json()

                if status_code == 401:
                    # Token revoked or expired early
                    self._token = None
                    last_error = OsuApiError(f"Unauthorized: GET {path}")
                    last_was_rate_limit = False
                    last_was_timeout = False
                    reason = "Unauthorized"
                elif status_code == 404:
                    logger.debug(f"Resource not found: GET {path}")
                    raise OsuApiNotFoundError(f"Resource not found: {path}")
                elif status_code in NON_RETRIABLE_STATUS_CODES:
                    logger.error(f"Non-retriable error {status_code} for GET {path}")
                    raise OsuApiError(f"API error {status_code}: {path}")
                else:
                    last_error = OsuApiError(f"API error {status_code}: {path}")
                    last_was_rate_limit = status_code == 429
                    last_was_timeout = False
                    reason = (
                        "Rate limit hit"
                        if last_was_rate_limit
                        else f"Retriable error {status_code}"
                    )

            timestamp = datetime.now().strftime("%H:%M:%S")
            if attempt < self.max_retries:
                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    f"[{timestamp}] {reason} for GET {path} {attempt_label}. "
                    f"Retrying in {backoff:.0f}s..."
                )
                time.sleep(backoff)
            else:
                logger.warning(
                    f"[{timestamp}] {reason} for GET {path} {attempt_label}. "
                    f"No retries remaining."
                )

        if last_was_timeout:
            raise OsuApiTimeoutError(
                f"Request timeout after {self.max_retries + 1} attempts: {path}"
            ) from last_error

        if last_was_rate_limit:
            raise OsuApiRateLimitError(
                f"Rate limit exceeded after {self.max_retries + 1} attempts: {path}"
            ) from last_error

        raise OsuApiError(
            f"API request failed after {self.max_retries + 1} attempts: {last_error}"
        ) from last_error

    # =========================================================================
    # Beatmaps
    # =========================================================================

    def get_beatmapset(self, beatmapset_id: int) -> dict[str, Any]:
        """Fetch a beatmapset including its beatmaps and converts."""
        logger.debug(f"Fetching beatmapset {beatmapset_id}")
        return self._request_with_retry(f"/beatmapsets/{beatmapset_id}")

    def get_beatmaps(self, ids: list[int]) -> list[dict[str, Any]]:
        """Fetch up to 50 beatmaps by id.

        Beatmaps the API can't return are simply missing from the result.
        """
        if not ids:
            return []
        if len(ids) > BEATMAPS_PER_REQUEST:
            raise ValueError(f"At most {BEATMAPS_PER_REQUEST} beatmap ids per request")
        data = self._request_with_retry("/beatmaps", {"ids": list(ids)})
        return data.get("beatmaps", [])

    def search_beatmapsets(
        self,
        cursor_string: str | None = None,
        sort: str = "ranked_desc",
        nsfw: bool = True,
    ) -> dict[str, Any]:
        """Search beatmapsets; returns ``beatmapsets`` and ``cursor_string``."""
        params: dict[str, Any] = {"sort": sort, "nsfw": str(nsfw).lower()}
        if cursor_string:
            params["cursor_string"] = cursor_string
        return self._request_with_retry("/beatmapsets/search", params)

    # =========================================================================
    # Users
    # =========================================================================

    def get_user(self, user_id: int) -> dict[str, Any]:
        """Fetch a user profile.

        Raises:
            OsuApiNotFoundError: If the user doesn't exist or is restricted.
        """
        return self._request_with_retry(f"/users/{user_id}", {"key": "id"})

    def get_user_beatmaps(
        self,
        user_id: int,
        kind: str = "most_played",
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Fetch a page of a user's beatmaps list (``most_played`` etc.)."""
        return self._request_with_retry(
            f"/users/{user_id}/beatmapsets/{kind}",
            {"limit": limit, "offset": offset},
        )

    def get_user_beatmaps_passed(
        self,
        user_id: int,
        beatmapset_ids: list[int],
        ruleset_id: int,
        exclude_converts: bool = False,
        no_diff_reduction: bool = False,
    ) -> list[dict[str, Any]]:
        """Fetch which beatmaps of the given sets a user has passed.

        The returned beatmaps carry ``mode`` of the original beatmap, not
        the convert mode, so callers key passes by ``ruleset_id``.
        """
        data = self._request_with_retry(
            f"/users/{user_id}/beatmaps-passed",
            {
                "beatmapset_ids": list(beatmapset_ids),
                "ruleset_id": ruleset_id,
                "exclude_converts": str(exclude_converts).lower(),
                "no_diff_reduction": str(no_diff_reduction).lower(),
            },
        )
        return data.get("beatmaps_passed", [])

    def get_user_scores(
        self,
        user_id: int,
        kind: str = "recent",
        mode: str = "osu",
        limit: int = 50,
        offset: int = 0,
        include_fails: bool = False,
    ) -> list[dict[str, Any]]:
        """Fetch a page of a user's scores."""
        return self._request_with_retry(
            f"/users/{user_id}/scores/{kind}",
            {
                "mode": mode,
                "limit": limit,
                "offset": offset,
                "include_fails": int(include_fails),
            },
        )

    # =========================================================================
    # Scores
    # =========================================================================

    def get_scores(
        self,
        ruleset: str,
        cursor_string: str | None = None,
    ) -> dict[str, Any]:
        """Fetch a page of the global recent scores feed for one ruleset.

        Returns:
            Dict with ``scores`` and the next ``cursor_string``.
        """
        params: dict[str, Any] = {"ruleset": ruleset}
        if cursor_string:
            params["cursor_string"] = cursor_string
        return self._request_with_retry("/scores", params)


def _encode_params(params: dict[str, Any]) -> list[tuple[str, Any]]:
    """Flatten list parameters into the ``key[]=v`` form the API expects."""
    encoded: list[tuple[str, Any]] = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            encoded.extend((f"{key}[]", item) for item in value)
        else:
            encoded.append((key, value))
    return encoded
