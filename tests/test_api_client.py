"""Tests for the low-level Census API client."""

import time
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from census_moe.api_client import CensusAPIClient, dataset_path, merge_responses
from census_moe.config import CensusConfig
from census_moe.exceptions import (
    BadRequest,
    CensusAPIError,
    ConfigurationError,
    NotFound,
    RateLimited,
    UpstreamUnavailable,
)

from conftest import COUNTY_RESPONSE, make_response


def test_dataset_path():
    assert dataset_path(2022, "acs5") == "2022/acs/acs5"
    assert dataset_path(2019, "acs1/subject") == "2019/acs/acs1/subject"
    with pytest.raises(BadRequest):
        dataset_path(2022, "acs3")


def test_build_params_for_counties_in_state(client):
    params = client._build_params(["NAME", "B01003_001E"], "county", state="39")

    assert params == {"get": "NAME,B01003_001E", "for": "county:*", "in": "state:39"}


def test_build_params_for_single_county(client):
    params = client._build_params(["NAME"], "county", state="39", county="049")

    assert params["for"] == "county:049"
    assert params["in"] == "state:39"


def test_build_params_for_tracts_in_county(client):
    params = client._build_params(["NAME"], "tract", state="39", county="049")

    assert params["for"] == "tract:*"
    assert params["in"] == "state:39 county:049"


def test_build_params_block_groups_default_to_all_counties(client):
    params = client._build_params(["NAME"], "block group", state="39")

    assert params["in"] == "state:39 county:*"


def test_build_params_single_state(client):
    assert client._build_params(["NAME"], "state", state="06")["for"] == "state:06"
    assert client._build_params(["NAME"], "us")["for"] == "us:1"


@pytest.mark.parametrize(
    "geography,state,county",
    [
        ("county", None, "049"),
        ("tract", None, None),
        ("state", "39", "049"),
        ("zcta", "39", None),
        ("us", "39", None),
        ("galaxy", None, None),
    ],
)
def test_invalid_geography_filters_rejected_before_request(client, geography, state, county):
    with pytest.raises(BadRequest):
        client.get_data(["B01003_001E"], geography, 2022, state=state, county=county)

    client.session.get.assert_not_called()


def test_get_data_sends_key_and_returns_rows(client):
    client.session.get.return_value = make_response(COUNTY_RESPONSE)

    rows = client.get_data(["B15003_022E", "B15003_022M"], "county", 2022, state="39")

    assert rows == COUNTY_RESPONSE
    url = client.session.get.call_args.args[0]
    params = client.session.get.call_args.kwargs["params"]
    assert url == "https://api.census.gov/data/2022/acs/acs5"
    assert params["key"] == "test-key"
    assert params["get"] == "NAME,B15003_022E,B15003_022M"
    assert client.session.get.call_args.kwargs["timeout"] == client.config.timeout


@pytest.mark.parametrize(
    "status,error",
    [
        (400, BadRequest),
        (404, NotFound),
        (204, NotFound),
        (500, UpstreamUnavailable),
        (503, UpstreamUnavailable),
        (418, CensusAPIError),
    ],
)
def test_status_codes_map_to_errors(client, status, error):
    client.session.get.return_value = make_response(text="error: unknown variable 'B99999_001E'", status=status)

    with pytest.raises(error):
        client.get_data(["B99999_001E"], "state", 2022)


def test_bad_request_carries_upstream_message(client):
    client.session.get.return_value = make_response(
        text="error: unknown variable 'B99999_001E'", status=400
    )

    with pytest.raises(BadRequest, match="unknown variable"):
        client.get_data(["B99999_001E"], "state", 2022)


def test_rate_limited_carries_retry_after_and_is_not_retried(client):
    client.session.get.return_value = make_response(
        text="Too Many Requests", status=429, headers={"Retry-After": "120"}
    )

    with pytest.raises(RateLimited) as excinfo:
        client.get_data(["B01003_001E"], "state", 2022)

    assert excinfo.value.retry_after == 120.0
    assert excinfo.value.retriable
    assert client.session.get.call_count == 1


def test_rate_limited_default_cooldown(client):
    client.session.get.return_value = make_response(text="", status=429)

    with pytest.raises(RateLimited) as excinfo:
        client.get_data(["B01003_001E"], "state", 2022)

    assert excinfo.value.retry_after == CensusAPIClient.DEFAULT_RETRY_AFTER


@pytest.mark.parametrize(
    "exc",
    [
        requests.exceptions.ReadTimeout("timed out"),
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.RetryError("too many 503 error responses"),
    ],
)
def test_network_failures_are_upstream_unavailable(client, exc):
    client.session.get.side_effect = exc

    with pytest.raises(UpstreamUnavailable):
        client.get_data(["B01003_001E"], "state", 2022)


def test_invalid_key_page_is_configuration_error(client):
    client.session.get.return_value = make_response(
        text="<html><h1>Invalid Key</h1></html>",
        url="https://api.census.gov/data/invalid_key.html"
    )

    with pytest.raises(ConfigurationError):
        client.get_data(["B01003_001E"], "state", 2022)


def test_non_json_body_is_upstream_unavailable(client):
    client.session.get.return_value = make_response(text="<html>maintenance</html>")

    with pytest.raises(UpstreamUnavailable):
        client.get_data(["B01003_001E"], "state", 2022)


def test_session_retries_only_transient_statuses(config):
    client = CensusAPIClient(config)
    retry = client.session.get_adapter("https://api.census.gov").max_retries

    assert 429 not in retry.status_forcelist
    assert {500, 502, 503, 504} <= set(retry.status_forcelist)
    assert retry.total == config.max_retries


def test_long_field_lists_are_split_and_merged(client):
    fields = [f"B01001_{i:03d}E" for i in range(1, 61)]

    def fake_get(url, params, timeout):
        requested = params["get"].split(",")
        assert len(requested) <= CensusAPIClient.MAX_FIELDS_PER_REQUEST
        header = requested + ["state"]
        rows = [
            [f"State {s}"] + [str(i) for i, _ in enumerate(requested[1:])] + [s]
            for s in ("01", "02")
        ]
        return make_response([header] + rows)

    client.session.get.side_effect = fake_get

    rows = client.get_data(fields, "state", 2022)

    assert client.session.get.call_count == 2
    assert rows[0][0] == "NAME"
    assert set(fields) <= set(rows[0])
    assert len(rows) == 3
    assert [row[rows[0].index("state")] for row in rows[1:]] == ["01", "02"]


def test_merge_responses_rejects_missing_geography():
    first = [["NAME", "A", "state"], ["x", "1", "01"], ["y", "2", "02"]]
    second = [["NAME", "B", "state"], ["x", "3", "01"]]

    with pytest.raises(CensusAPIError):
        merge_responses([first, second])


def test_responses_are_cached(client):
    client.session.get.return_value = make_response(COUNTY_RESPONSE)

    client.get_data(["B15003_022E"], "county", 2022, state="39")
    rows = client.get_data(["B15003_022E"], "county", 2022, state="39")

    assert rows == COUNTY_RESPONSE
    assert client.session.get.call_count == 1


def test_cache_bypass_refetches(client):
    client.session.get.return_value = make_response(COUNTY_RESPONSE)

    client.get_data(["B15003_022E"], "county", 2022, state="39")
    client.get_data(["B15003_022E"], "county", 2022, state="39", use_cache=False)

    assert client.session.get.call_count == 2


def test_different_filters_use_different_cache_entries(client):
    client.session.get.return_value = make_response(COUNTY_RESPONSE)

    client.get_data(["B15003_022E"], "county", 2022, state="39")
    client.get_data(["B15003_022E"], "county", 2022, state="18")

    assert client.session.get.call_count == 2


def test_rate_limit_spaces_concurrent_requests():
    paced = CensusAPIClient(CensusConfig(api_key="test-key", cache_dir=None, request_delay=0.05))
    paced._last_request_time = time.time()

    start = time.time()
    with ThreadPoolExecutor(max_workers=4) as executor:
        list(executor.map(lambda _: paced._apply_rate_limit(), range(4)))

    assert time.time() - start >= 4 * 0.05 - 0.01
