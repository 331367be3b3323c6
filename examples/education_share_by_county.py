"""
Example: Bachelor's Degree Share by County, with Margins of Error

Fetches bachelor's degree counts and the population 25+ for Ohio counties,
derives the share with its propagated MOE, compares two survey years,
joins county boundaries, and exports a GeoPackage for mapping.

Author: Mir Md Tasnim Alam
"""

import os
import sys
import logging
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from census_moe import CensusConfig, CensusPipeline, QueryFilters, RateLimited

logging.basicConfig(level=logging.INFO)

BACHELORS = "B15003_022E"
POP_25_PLUS = "B15003_001E"


def main():
    """Run the county education analysis for Ohio."""

    # Get your API key from: https://api.census.gov/data/key_signup.html
    config = CensusConfig.from_env(env_file=".env" if os.path.exists(".env") else None)
    pipeline = CensusPipeline(config)

    print("Searching the 2022 ACS 5-Year catalog for bachelor's degree variables...")
    print(pipeline.search_variables("bachelor's degree", 2022).head(10).to_string(index=False))

    try:
        records = pipeline.fetch_estimates(
            "county",
            [BACHELORS],
            QueryFilters(year=2022, survey="acs5", state="39"),
            summary_variable=POP_25_PLUS
        )
    except RateLimited as e:
        print(f"Rate limited; try again in {e.retry_after:.0f} seconds")
        return

    shares = pipeline.proportions_from_summary(records, POP_25_PLUS)
    shares_df = pipeline.derived_to_dataframe(shares)
    names = {r.geography_id: r.geography_name for r in records}
    shares_df["NAME"] = shares_df["GEOID"].map(names)

    fallback_count = int(shares_df["used_fallback"].sum())
    print(f"\n{len(shares_df)} counties; {fallback_count} used the ratio fallback MOE formula")

    print("\nTop 5 Counties by Bachelor's Degree Share (ACS 2018-2022):")
    for _, row in shares_df.nlargest(5, "value").iterrows():
        print(f"  {row['NAME']}: {row['value']:.1%} ± {row['moe']:.1%}")

    # Change since the 2013-2017 estimates
    series = pipeline.fetch_time_series(
        "county", [BACHELORS], [2017, 2022], state="39"
    )
    wide = pipeline.to_dataframe(series)
    change = pipeline.transformer.calculate_change(
        wide[wide["year"] == 2017],
        wide[wide["year"] == 2022],
        BACHELORS,
        moe=f"{BACHELORS}_moe"
    )
    significant = change[
        change[f"{BACHELORS}_change"].abs() > change[f"{BACHELORS}_change_moe"]
    ]
    print(f"\n{len(significant)} counties changed by more than the MOE of the difference")

    print("\nJoining county boundaries...")
    counties_geo = pipeline.join_tiger_geometries(shares_df, "county", year=2022, state="39")

    output_file = "ohio_bachelors_share_2022.gpkg"
    pipeline.export(counties_geo, output_file, format="geopackage", layer_name="bachelors_share")
    print(f"Output saved to: {output_file}")


if __name__ == "__main__":
    main()
