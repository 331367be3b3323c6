"""Tests for CensusPipeline fetches, derivations, and reshaping."""

import math

import pytest

from census_moe.census_pipeline import estimate_and_moe_fields
from census_moe.exceptions import BadRequest, NotFound, UpstreamUnavailable
from census_moe.models import DerivedKind, QueryFilters

from conftest import COUNTY_RESPONSE, SUMMARY_RESPONSE, VARIABLES_JSON, make_response


OHIO_2022 = QueryFilters(year=2022, survey="acs5", state="39")


def route(responses):
    """side_effect returning a response chosen by the first requested field."""
    def fake_get(url, params, timeout):
        fields = params["get"].split(",")
        return responses[fields[1] if len(fields) > 1 else url]
    return fake_get


@pytest.mark.parametrize(
    "code,expected",
    [
        ("B15003_022", ("B15003_022E", "B15003_022M")),
        ("B15003_022E", ("B15003_022E", "B15003_022M")),
        ("B01001A_001E", ("B01001A_001E", "B01001A_001M")),
        ("S1501_C01_005E", ("S1501_C01_005E", "S1501_C01_005M")),
        ("DP02_0068PE", ("DP02_0068PE", "DP02_0068PM")),
        ("DP02_0068P", ("DP02_0068PE", "DP02_0068PM")),
        ("P1_001N", ("P1_001N", None)),
    ],
)
def test_estimate_and_moe_fields(code, expected):
    assert estimate_and_moe_fields(code) == expected


def test_fetch_estimates_one_record_per_geography_and_variable(pipeline):
    pipeline.api_client.session.get.return_value = make_response(COUNTY_RESPONSE)

    records = pipeline.fetch_estimates("county", ["B15003_022"], OHIO_2022)

    assert sorted(r.key for r in records) == [
        ("39035", "B15003_022E"),
        ("39049", "B15003_022E"),
    ]
    franklin = next(r for r in records if r.geography_id == "39049")
    assert franklin.estimate == 4000.0
    assert franklin.margin_of_error == 300.0
    assert franklin.geography_name == "Franklin County, Ohio"
    assert franklin.year == 2022
    assert franklin.survey == "acs5"


def test_missing_value_codes_become_nan(pipeline):
    pipeline.api_client.session.get.return_value = make_response(COUNTY_RESPONSE)

    records = pipeline.fetch_estimates("county", ["B15003_022E"], OHIO_2022)

    cuyahoga = next(r for r in records if r.geography_id == "39035")
    assert cuyahoga.is_missing
    assert math.isnan(cuyahoga.margin_of_error)


def test_profile_percent_fetches_its_moe(pipeline):
    pipeline.api_client.session.get.return_value = make_response([
        ["NAME", "DP02_0068PE", "DP02_0068PM", "state", "county"],
        ["Franklin County, Ohio", "45.1", "0.8", "39", "049"],
    ])

    records = pipeline.fetch_estimates(
        "county", ["DP02_0068PE"], QueryFilters(year=2022, survey="acs5/profile", state="39")
    )

    params = pipeline.api_client.session.get.call_args.kwargs["params"]
    assert params["get"] == "NAME,DP02_0068PE,DP02_0068PM"
    assert records[0].estimate == 45.1
    assert records[0].margin_of_error == 0.8


def test_duplicate_rows_are_collapsed(pipeline):
    duplicated = COUNTY_RESPONSE + [COUNTY_RESPONSE[1]]
    pipeline.api_client.session.get.return_value = make_response(duplicated)

    records = pipeline.fetch_estimates("county", ["B15003_022E"], OHIO_2022)

    assert len(records) == 2


def test_empty_variable_codes_rejected(pipeline):
    with pytest.raises(BadRequest):
        pipeline.fetch_estimates("county", [], OHIO_2022)

    pipeline.api_client.session.get.assert_not_called()


def test_county_without_state_rejected_before_request(pipeline):
    with pytest.raises(BadRequest):
        pipeline.fetch_estimates("tract", ["B01003_001E"], QueryFilters(year=2022, county="049"))

    pipeline.api_client.session.get.assert_not_called()


def test_unknown_variable_surfaces_upstream_rejection(pipeline):
    pipeline.api_client.session.get.return_value = make_response(
        text="error: unknown variable 'B99999_001E'", status=400
    )

    with pytest.raises(BadRequest):
        pipeline.fetch_estimates("county", ["B99999_001E"], OHIO_2022)


def test_validate_checks_catalog_before_fetch(pipeline):
    pipeline.api_client.session.get.return_value = make_response(VARIABLES_JSON)

    with pytest.raises(NotFound):
        pipeline.fetch_estimates("county", ["B99999_001E"], OHIO_2022, validate=True)

    # only the catalog request went out
    assert pipeline.api_client.session.get.call_count == 1


def test_summary_variable_joined_by_geography(pipeline):
    pipeline.api_client.session.get.side_effect = route({
        "B15003_022E": make_response(COUNTY_RESPONSE),
        "B15003_001E": make_response(SUMMARY_RESPONSE),
    })

    records = pipeline.fetch_estimates(
        "county", ["B15003_022"], OHIO_2022, summary_variable="B15003_001"
    )

    by_geo = {r.geography_id: r for r in records}
    assert by_geo["39049"].summary_estimate == 10000.0
    assert by_geo["39049"].summary_moe == 500.0
    assert by_geo["39035"].summary_estimate == 20000.0
    # controlled estimate: no sampling error
    assert by_geo["39035"].summary_moe == 0.0


def test_proportions_from_summary(pipeline):
    pipeline.api_client.session.get.side_effect = route({
        "B15003_022E": make_response(COUNTY_RESPONSE),
        "B15003_001E": make_response(SUMMARY_RESPONSE),
    })
    records = pipeline.fetch_estimates(
        "county", ["B15003_022"], OHIO_2022, summary_variable="B15003_001"
    )

    stats = {s.geography_id: s for s in pipeline.proportions_from_summary(records, "B15003_001E")}

    assert stats["39049"].value == pytest.approx(0.4)
    assert stats["39049"].margin_of_error == pytest.approx(0.02236, abs=1e-5)
    assert stats["39035"].valid is False


def test_derive_proportions_joins_on_geography_and_year(pipeline):
    response = [
        ["NAME", "B15003_022E", "B15003_022M", "B15003_001E", "B15003_001M", "state", "county"],
        ["Franklin County, Ohio", "4000", "300", "10000", "500", "39", "049"],
        ["Empty County, Ohio", "0", "10", "0", "10", "39", "999"],
    ]
    pipeline.api_client.session.get.return_value = make_response(response)
    records = pipeline.fetch_estimates("county", ["B15003_022", "B15003_001"], OHIO_2022)

    stats = pipeline.derive_proportions(records, "B15003_022", "B15003_001E")

    assert [s.geography_id for s in stats] == ["39049", "39999"]
    assert stats[0].kind is DerivedKind.PROPORTION
    assert stats[0].value == pytest.approx(0.4)
    assert stats[1].valid is False

    ratios = pipeline.derive_ratios(records, "B15003_022E", "B15003_001E")
    assert ratios[0].kind is DerivedKind.RATIO
    assert ratios[0].margin_of_error == pytest.approx(
        math.sqrt(300 ** 2 + 0.16 * 500 ** 2) / 10000
    )


def test_fetch_group_returns_estimate_moe_pairs(pipeline):
    response = [
        ["GEO_ID", "B15003_001E", "B15003_001EA", "B15003_001M", "B15003_001MA",
         "B15003_022E", "B15003_022EA", "B15003_022M", "B15003_022MA", "NAME", "state"],
        ["0400000US39", "8000000", None, "-555555555", "*****",
         "1500000", None, "9000", None, "Ohio", "39"],
    ]
    pipeline.api_client.session.get.return_value = make_response(response)

    records = pipeline.fetch_group("B15003", "state", QueryFilters(year=2022, state="39"))

    assert pipeline.api_client.session.get.call_args.kwargs["params"]["get"] == "NAME,group(B15003)"
    assert {r.variable_code for r in records} == {"B15003_001E", "B15003_022E"}
    total = next(r for r in records if r.variable_code == "B15003_001E")
    assert total.geography_id == "39"
    assert total.margin_of_error == 0.0


def test_time_series_fans_out_per_year(pipeline):
    pipeline.api_client.session.get.return_value = make_response(COUNTY_RESPONSE)

    records = pipeline.fetch_time_series("county", ["B15003_022E"], [2019, 2022], state="39")

    assert len(records) == 4
    assert {r.year for r in records} == {2019, 2022}
    urls = {c.args[0] for c in pipeline.api_client.session.get.call_args_list}
    assert urls == {
        "https://api.census.gov/data/2019/acs/acs5",
        "https://api.census.gov/data/2022/acs/acs5",
    }


def test_time_series_failure_returns_no_partial_results(pipeline):
    def fake_get(url, params, timeout):
        if "/2019/" in url:
            return make_response(text="", status=503)
        return make_response(COUNTY_RESPONSE)

    pipeline.api_client.session.get.side_effect = fake_get

    with pytest.raises(UpstreamUnavailable):
        pipeline.fetch_time_series("county", ["B15003_022E"], [2019, 2022], state="39")


def test_to_dataframe_wide_and_long(pipeline):
    pipeline.api_client.session.get.return_value = make_response(COUNTY_RESPONSE)
    records = pipeline.fetch_estimates("county", ["B15003_022E"], OHIO_2022)

    wide = pipeline.to_dataframe(records)
    franklin = wide.set_index("GEOID").loc["39049"]
    assert franklin["B15003_022E"] == 4000.0
    assert franklin["B15003_022E_moe"] == 300.0
    assert len(wide) == 2

    long = pipeline.to_dataframe(records, wide=False)
    assert list(long.columns[:5]) == ["GEOID", "NAME", "year", "survey", "variable"]
    assert len(long) == 2


def test_derived_to_dataframe(pipeline):
    pipeline.api_client.session.get.side_effect = route({
        "B15003_022E": make_response(COUNTY_RESPONSE),
        "B15003_001E": make_response(SUMMARY_RESPONSE),
    })
    records = pipeline.fetch_estimates(
        "county", ["B15003_022"], OHIO_2022, summary_variable="B15003_001"
    )

    df = pipeline.derived_to_dataframe(pipeline.proportions_from_summary(records))

    assert set(df["kind"]) == {"proportion"}
    assert df["valid"].tolist().count(False) == 1
