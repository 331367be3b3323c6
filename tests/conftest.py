"""Shared fixtures: offline config and fake Census API responses."""

import json
from unittest.mock import MagicMock

import pytest

from census_moe.api_client import CensusAPIClient
from census_moe.cache import ResponseCache
from census_moe.config import CensusConfig
from census_moe.census_pipeline import CensusPipeline


def make_response(payload=None, status=200, headers=None, text=None, url="https://api.census.gov/data"):
    """Build a stand-in for requests.Response."""
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.url = url

    if text is not None:
        response.text = text
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.text = json.dumps(payload)
        response.json.return_value = payload

    return response


COUNTY_RESPONSE = [
    ["NAME", "B15003_022E", "B15003_022M", "state", "county"],
    ["Franklin County, Ohio", "4000", "300", "39", "049"],
    ["Cuyahoga County, Ohio", "-666666666", "-222222222", "39", "035"],
]

SUMMARY_RESPONSE = [
    ["NAME", "B15003_001E", "B15003_001M", "state", "county"],
    ["Cuyahoga County, Ohio", "20000", "-555555555", "39", "035"],
    ["Franklin County, Ohio", "10000", "500", "39", "049"],
]

VARIABLES_JSON = {
    "variables": {
        "for": {"label": "Census API FIPS 'for' clause", "concept": "Census API Geography Specification"},
        "in": {"label": "Census API FIPS 'in' clause", "concept": "Census API Geography Specification"},
        "B15003_001E": {
            "label": "Estimate!!Total:",
            "concept": "Educational Attainment for the Population 25 Years and Over",
            "predicateType": "int",
            "group": "B15003"
        },
        "B15003_022E": {
            "label": "Estimate!!Total:!!Bachelor's degree",
            "concept": "Educational Attainment for the Population 25 Years and Over",
            "predicateType": "int",
            "group": "B15003"
        },
        "B19013_001E": {
            "label": "Estimate!!Median household income in the past 12 months",
            "concept": "Median Household Income in the Past 12 Months",
            "predicateType": "int",
            "group": "B19013"
        },
    }
}


@pytest.fixture
def config(tmp_path):
    return CensusConfig(
        api_key="test-key",
        cache_dir=tmp_path / "cache",
        request_delay=0,
        max_retries=0,
        parallel_workers=2
    )


@pytest.fixture
def uncached_config():
    return CensusConfig(api_key="test-key", cache_dir=None, request_delay=0, max_retries=0)


@pytest.fixture
def cache(config):
    return ResponseCache(config.cache_dir)


@pytest.fixture
def client(config, cache):
    client = CensusAPIClient(config, cache)
    client.session = MagicMock()
    return client


@pytest.fixture
def pipeline(config):
    pipeline = CensusPipeline(config)
    pipeline.api_client.session = MagicMock()
    return pipeline
