"""
Census API Client - Low-level API wrapper for Census Bureau endpoints.

Author: Mir Md Tasnim Alam
"""

import time
import logging
import threading
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cache import ResponseCache
from .config import CensusConfig
from .exceptions import (
    BadRequest,
    CensusAPIError,
    ConfigurationError,
    NotFound,
    RateLimited,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)


# Survey identifier -> dataset path under /data/{year}/
SURVEYS = {
    "acs1": "acs/acs1",
    "acs5": "acs/acs5",
    "acs1/subject": "acs/acs1/subject",
    "acs5/subject": "acs/acs5/subject",
    "acs1/profile": "acs/acs1/profile",
    "acs5/profile": "acs/acs5/profile",
}

# Geography level -> (API name, required parent filters)
GEOGRAPHY_LEVELS = {
    "us": ("us", []),
    "state": ("state", []),
    "county": ("county", []),
    "tract": ("tract", ["state"]),
    "block group": ("block group", ["state"]),
    "place": ("place", []),
    "zcta": ("zip code tabulation area", []),
    "congressional district": ("congressional district", []),
}

# Columns Census appends to identify each row's geography
GEO_COMPONENT_COLUMNS = {
    "us",
    "state",
    "county",
    "tract",
    "block group",
    "place",
    "zip code tabulation area",
    "congressional district",
    "GEO_ID",
}


def dataset_path(year: int, survey: str) -> str:
    """Endpoint path for a year/survey, e.g. '2022/acs/acs5'."""
    if survey not in SURVEYS:
        raise BadRequest(
            f"Unknown survey '{survey}'. Known surveys: {', '.join(SURVEYS)}"
        )
    return f"{year}/{SURVEYS[survey]}"


class CensusAPIClient:
    """
    Low-level client for Census Bureau APIs.

    Handles:
    - Request construction and parameter encoding
    - Splitting field lists over the per-request limit
    - Rate limiting and retry logic
    - Mapping HTTP failures onto the census_moe error taxonomy
    - Response caching
    """

    BASE_URL = "https://api.census.gov/data"

    # Census API accepts at most 50 fields per request, NAME included
    MAX_FIELDS_PER_REQUEST = 50

    DEFAULT_RETRY_AFTER = 60.0

    def __init__(self, config: CensusConfig, cache: Optional[ResponseCache] = None):
        """
        Initialize the API client.

        Args:
            config: Client configuration (API key, timeouts, retries).
            cache: Optional response cache.
        """
        self.config = config
        self.cache = cache
        self._last_request_time = 0.0
        self._rate_lock = threading.Lock()

        # Transient failures only; 429 is surfaced to the caller
        self.session = requests.Session()
        retries = Retry(
            total=config.max_retries,
            backoff_factor=config.backoff_factor,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET"]
        )
        self.session.mount("https://", HTTPAdapter(max_retries=retries))

    def get_data(
        self,
        fields: List[str],
        geography: str,
        year: int,
        survey: str = "acs5",
        state: Optional[str] = None,
        county: Optional[str] = None,
        use_cache: Optional[bool] = None
    ) -> List[List]:
        """
        Fetch tabular data for a list of fields.

        Field lists longer than the per-request limit are split over
        several requests and the results merged on geography.

        Args:
            fields: Field names to fetch (NAME is always added).
            geography: Geographic level (state, county, tract, ...).
            year: Data year.
            survey: Survey identifier (acs5, acs1, ...).
            state: State FIPS code (required for tract/block group).
            county: County FIPS code (optional filter; needs state).
            use_cache: Override the configured cache behavior.

        Returns:
            Raw API response as list of lists (first row is headers).
        """
        if not fields:
            raise BadRequest("At least one field must be requested")

        endpoint = dataset_path(year, survey)
        # Validate before any request goes out
        self._build_params(["NAME"], geography, state, county)

        fields = [f for f in dict.fromkeys(fields) if f != "NAME"]
        chunk_size = self.MAX_FIELDS_PER_REQUEST - 1
        chunks = [fields[i:i + chunk_size] for i in range(0, len(fields), chunk_size)] or [[]]

        if len(chunks) > 1:
            logger.info(f"Splitting {len(fields)} fields into {len(chunks)} requests")

        responses = [
            self._cached_request(
                endpoint, ["NAME"] + chunk, geography, year, survey,
                state, county, use_cache
            )
            for chunk in chunks
        ]
        return merge_responses(responses)

    def get_json(self, path: str) -> Any:
        """GET an arbitrary JSON document under BASE_URL (e.g. variables.json)."""
        return self._request(f"{self.BASE_URL}/{path}", {})

    def _cached_request(
        self,
        endpoint: str,
        fields: List[str],
        geography: str,
        year: int,
        survey: str,
        state: Optional[str],
        county: Optional[str],
        use_cache: Optional[bool]
    ) -> List[List]:
        use_cache = self.config.use_cache if use_cache is None else use_cache
        key = ResponseCache.make_key(
            endpoint=endpoint,
            year=year,
            survey=survey,
            geography=geography,
            filters={"state": state, "county": county, "get": fields}
        )

        if use_cache and self.cache is not None:
            entry = self.cache.get(key)
            if entry is not None:
                return entry.data

        data = self._make_request(endpoint, fields, geography, state, county)

        if self.cache is not None:
            self.cache.put(key, data)
        return data

    def _make_request(
        self,
        endpoint: str,
        fields: List[str],
        geography: str,
        state: Optional[str] = None,
        county: Optional[str] = None
    ) -> List[List]:
        """
        Make a data request.

        Args:
            endpoint: API endpoint path.
            fields: Fields to fetch.
            geography: Geographic level.
            state: State FIPS filter.
            county: County FIPS filter.

        Returns:
            Parsed JSON response.
        """
        url = f"{self.BASE_URL}/{endpoint}"
        params = self._build_params(fields, geography, state, county)
        data = self._request(url, params)

        if not isinstance(data, list) or not data or not isinstance(data[0], list):
            raise UpstreamUnavailable(f"Unexpected response shape from {endpoint}")
        return data

    def _request(self, url: str, params: Dict) -> Any:
        """
        Issue one GET with rate limiting and error mapping.

        Raises:
            UpstreamUnavailable: Network failure, timeout, or 5xx.
            RateLimited: HTTP 429.
            BadRequest: HTTP 400.
            NotFound: HTTP 404 or 204 (no data).
            ConfigurationError: Census rejected the API key.
        """
        self._apply_rate_limit()

        params = dict(params)
        params["key"] = self.config.api_key

        logger.debug(f"Requesting: {url}?{urlencode({k: v for k, v in params.items() if k != 'key'})}")

        try:
            response = self.session.get(url, params=params, timeout=self.config.timeout)
        except requests.exceptions.Timeout as e:
            logger.error(f"Request timed out after {self.config.timeout}s: {url}")
            raise UpstreamUnavailable(f"Request timed out: {url}") from e
        except requests.exceptions.RetryError as e:
            logger.error(f"Retries exhausted: {e}")
            raise UpstreamUnavailable(f"Census API unavailable after retries: {url}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {e}")
            raise UpstreamUnavailable(f"Request failed: {e}") from e

        self._raise_for_status(response, url)

        try:
            return response.json()
        except ValueError as e:
            text = response.text or ""
            if "invalid key" in text.lower() or "invalid_key" in response.url:
                raise ConfigurationError("Census API rejected the API key") from e
            logger.error(f"Non-JSON response from {url}: {text[:200]}")
            raise UpstreamUnavailable(f"Non-JSON response from {url}") from e

    def _raise_for_status(self, response: requests.Response, url: str) -> None:
        status = response.status_code
        if status == 200:
            return

        if status == 204:
            raise NotFound(f"No data for this query: {url}", status)
        if status == 400:
            logger.error(f"Bad request - check variable codes: {response.text}")
            raise BadRequest(response.text.strip() or "Bad request", status)
        if status == 404:
            logger.error(f"Endpoint not found - check year/product: {url}")
            raise NotFound(f"Endpoint not found: {url}", status)
        if status == 429:
            retry_after = self._parse_retry_after(response)
            logger.warning(f"Rate limited by Census API; retry after {retry_after}s")
            raise RateLimited("Census API rate limit exceeded", retry_after)
        if status >= 500:
            logger.error(f"Census API error {status}: {url}")
            raise UpstreamUnavailable(f"Census API returned {status}", status)

        raise CensusAPIError(f"Unexpected status {status}: {response.text[:200]}", status)

    def _parse_retry_after(self, response: requests.Response) -> float:
        value = response.headers.get("Retry-After")
        try:
            return max(float(value), 0.0)
        except (TypeError, ValueError):
            return self.DEFAULT_RETRY_AFTER

    def _build_params(
        self,
        fields: List[str],
        geography: str,
        state: Optional[str] = None,
        county: Optional[str] = None
    ) -> Dict:
        """Build API request parameters."""
        if geography not in GEOGRAPHY_LEVELS:
            raise BadRequest(f"Unsupported geography: {geography}")

        _, requires = GEOGRAPHY_LEVELS[geography]
        if county and not state:
            raise BadRequest("A county filter requires a state filter")
        if "state" in requires and not state:
            raise BadRequest(f"State required for {geography} queries")
        if county and geography in ["us", "state", "place", "zcta", "congressional district"]:
            raise BadRequest(f"County filter not supported for {geography} queries")
        if state and geography in ["us", "zcta"]:
            raise BadRequest(f"State filter not supported for {geography} queries")

        params = {
            "get": ",".join(fields),
        }

        # Build geography clause
        params["for"] = self._build_for_clause(geography, state, county)

        # Add parent filter for sub-state geographies
        if state and geography != "state":
            params["in"] = f"state:{state}"
            if county and geography in ["tract", "block group"]:
                params["in"] += f" county:{county}"
            elif geography == "block group":
                params["in"] += " county:*"

        return params

    def _build_for_clause(
        self,
        geography: str,
        state: Optional[str] = None,
        county: Optional[str] = None
    ) -> str:
        """Build the 'for' clause for geographic filtering."""
        api_name, _ = GEOGRAPHY_LEVELS[geography]

        if geography == "us":
            return "us:1"
        if geography == "state" and state:
            return f"state:{state}"
        if geography == "county" and county:
            return f"county:{county}"

        return f"{api_name}:*"

    def _apply_rate_limit(self) -> None:
        """Apply rate limiting between requests.

        Held under a lock so fan-out workers sharing this client are
        spaced at least request_delay apart.
        """
        with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self.config.request_delay:
                time.sleep(self.config.request_delay - elapsed)
            self._last_request_time = time.time()


def merge_responses(responses: List[List[List]]) -> List[List]:
    """
    Merge split responses column-wise on their geography columns.

    Every response must cover the same geographies.
    """
    if len(responses) == 1:
        return responses[0]

    first_header = responses[0][0]
    geo_cols = [
        c for c in first_header
        if c != "NAME" and all(c in r[0] for r in responses)
        and c in GEO_COMPONENT_COLUMNS
    ]

    header = list(first_header)
    merged: Dict[tuple, Dict[str, Any]] = {}
    order = []
    for row in responses[0][1:]:
        record = dict(zip(first_header, row))
        key = tuple(record[c] for c in geo_cols)
        if key not in merged:
            order.append(key)
        merged[key] = record

    for response in responses[1:]:
        response_header = response[0]
        new_cols = [c for c in response_header if c not in header]
        header.extend(new_cols)
        seen = set()
        for row in response[1:]:
            record = dict(zip(response_header, row))
            key = tuple(record[c] for c in geo_cols)
            if key not in merged:
                raise CensusAPIError(f"Geography {key} missing from earlier request chunk")
            merged[key].update({c: record[c] for c in new_cols})
            seen.add(key)
        missing = set(merged) - seen
        if missing:
            raise CensusAPIError(
                f"{len(missing)} geographies missing from a split request chunk"
            )

    return [header] + [[merged[key].get(c) for c in header] for key in order]
