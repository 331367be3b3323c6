"""
Census Pipeline - Main Pipeline Class

Fetches ACS estimates with their margins of error as typed records,
derives proportions and ratios, and joins cartographic boundaries.

Author: Mir Md Tasnim Alam
"""

import re
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from concurrent.futures import ThreadPoolExecutor, as_completed

import pandas as pd
import geopandas as gpd

from .api_client import CensusAPIClient
from .cache import ResponseCache
from .config import CensusConfig
from .exceptions import BadRequest
from .exporters import DataExporter, Exportable, derived_to_frame, records_to_frame
from .geography import GeographyManager, geoid_from_row
from .models import DerivedStatistic, EstimateRecord, QueryFilters
from .moe import derive_proportion, derive_proportion_from_summary, derive_ratio
from .transformers import DataTransformer, coerce_estimate, coerce_moe
from .variables import VariableCatalog

logger = logging.getLogger(__name__)

# Bare ACS variable code, e.g. B15003_022, S1501_C01_005 or the
# Data Profile percent form DP02_0068P
_BARE_CODE = re.compile(r"^[A-Z]+\d+[A-Z]*(_C\d+)?_\d+P?$")


def estimate_and_moe_fields(code: str) -> Tuple[str, Optional[str]]:
    """
    Map a requested variable code to its (estimate, MOE) field names.

    B15003_022 and B15003_022E both map to (B15003_022E, B15003_022M).
    Data Profile percents pair the same way: DP02_0068PE -> DP02_0068PM.
    Codes with other suffixes have no MOE field.
    """
    if code.endswith("E") and _BARE_CODE.match(code[:-1]):
        return code, code[:-1] + "M"
    if _BARE_CODE.match(code):
        return code + "E", code + "M"
    return code, None


class CensusPipeline:
    """
    Main pipeline class for fetching Census estimates with MOEs.

    Example:
        >>> config = CensusConfig.from_env()
        >>> pipeline = CensusPipeline(config)
        >>> records = pipeline.fetch_estimates(
        ...     "county",
        ...     ["B15003_022"],
        ...     QueryFilters(year=2022, state="39"),
        ...     summary_variable="B15003_001"
        ... )
        >>> shares = pipeline.proportions_from_summary(records)
    """

    def __init__(self, config: CensusConfig):
        """
        Initialize the Census Pipeline.

        Args:
            config: Client configuration (API key, cache, retries, workers).
        """
        self.config = config

        self.cache = ResponseCache(config.cache_dir) if config.cache_dir else None
        self.api_client = CensusAPIClient(config, self.cache)
        self.catalog = VariableCatalog(self.api_client, self.cache)
        self.geography = GeographyManager(config.cache_dir, crs=config.crs)
        self.transformer = DataTransformer()
        self.exporter = DataExporter()

        logger.info(f"Census Pipeline initialized. Cache dir: {config.cache_dir}")

    def load_variables(
        self,
        year: int,
        survey: str = "acs5",
        use_cache: bool = True
    ) -> frozenset:
        """Variable catalog for a year/survey; see VariableCatalog.load_variables."""
        return self.catalog.load_variables(year, survey, use_cache)

    def search_variables(self, keyword: str, year: int, survey: str = "acs5") -> pd.DataFrame:
        return self.catalog.search(keyword, year, survey)

    def fetch_estimates(
        self,
        geography_level: str,
        variable_codes: Iterable[str],
        filters: QueryFilters,
        summary_variable: Optional[str] = None,
        validate: bool = False,
        use_cache: Optional[bool] = None
    ) -> List[EstimateRecord]:
        """
        Fetch estimates and margins of error as EstimateRecords.

        Args:
            geography_level: Geographic level (state, county, tract, ...).
            variable_codes: Variable codes, with or without the E suffix.
            filters: Year, survey, and optional state/county filters.
            summary_variable: Code whose estimate/MOE is attached to every
                record (e.g. a table total), fetched separately and joined
                by geography id.
            validate: Check codes against the variable catalog first.
            use_cache: Override the configured cache behavior.

        Returns:
            One record per (geography_id, variable_code); order not
            guaranteed.

        Example:
            >>> records = pipeline.fetch_estimates(
            ...     "tract",
            ...     ["B19013_001E"],
            ...     QueryFilters(year=2022, state="39", county="049")
            ... )
        """
        codes = list(dict.fromkeys(variable_codes))
        if not codes:
            raise BadRequest("variable_codes must not be empty")

        pairs = [estimate_and_moe_fields(c) for c in codes]

        if validate:
            requested = [e for e, _ in pairs] + [m for _, m in pairs if m]
            if summary_variable:
                summary_pair = estimate_and_moe_fields(summary_variable)
                requested += [f for f in summary_pair if f]
            self.catalog.validate_codes(requested, filters.year, filters.survey)

        logger.info(
            f"Fetching {filters.survey} {filters.year} data at {geography_level} level "
            f"({len(codes)} variables)"
        )

        raw = self.api_client.get_data(
            fields=[f for pair in pairs for f in pair if f],
            geography=geography_level,
            year=filters.year,
            survey=filters.survey,
            state=filters.state,
            county=filters.county,
            use_cache=use_cache
        )

        summary = None
        if summary_variable:
            summary = self._fetch_summary(summary_variable, geography_level, filters, use_cache)

        records = self._parse_api_response(raw, pairs, geography_level, filters, summary)

        logger.info(f"Fetched {len(records)} records")
        return records

    def fetch_group(
        self,
        table: str,
        geography_level: str,
        filters: QueryFilters,
        use_cache: Optional[bool] = None
    ) -> List[EstimateRecord]:
        """
        Fetch a whole table with group(<table>).

        Returns one record per estimate/MOE pair in the table.
        """
        logger.info(f"Fetching table {table} ({filters.survey} {filters.year}) at {geography_level} level")

        raw = self.api_client.get_data(
            fields=[f"group({table})"],
            geography=geography_level,
            year=filters.year,
            survey=filters.survey,
            state=filters.state,
            county=filters.county,
            use_cache=use_cache
        )

        header = set(raw[0]) if raw else set()
        pairs = [
            (field, field[:-1] + "M")
            for field in raw[0]
            if field.startswith(table) and field.endswith("E") and field[:-1] + "M" in header
        ] if raw else []

        records = self._parse_api_response(raw, pairs, geography_level, filters, None)
        logger.info(f"Fetched {len(records)} records for table {table}")
        return records

    def fetch_time_series(
        self,
        geography_level: str,
        variable_codes: Sequence[str],
        years: Sequence[int],
        survey: str = "acs5",
        state: Optional[str] = None,
        county: Optional[str] = None,
        summary_variable: Optional[str] = None
    ) -> List[EstimateRecord]:
        """
        Fetch the same variables for several survey years in parallel.

        Any failed year fails the whole call; no partial results.
        """
        logger.info(
            f"Fetching {len(years)} years with {self.config.parallel_workers} workers"
        )

        results: Dict[int, List[EstimateRecord]] = {}

        with ThreadPoolExecutor(max_workers=self.config.parallel_workers) as executor:
            futures = {
                executor.submit(
                    self.fetch_estimates,
                    geography_level,
                    variable_codes,
                    QueryFilters(year=year, survey=survey, state=state, county=county),
                    summary_variable
                ): year
                for year in years
            }

            try:
                for future in as_completed(futures):
                    year = futures[future]
                    results[year] = future.result()
                    logger.info(f"Completed year {year}")
            except Exception as e:
                logger.error(f"Error fetching year {futures[future]}: {e}")
                for pending in futures:
                    pending.cancel()
                raise

        return [record for year in sorted(results) for record in results[year]]

    def derive_proportions(
        self,
        records: Iterable[EstimateRecord],
        numerator_code: str,
        denominator_code: str,
        on_zero: str = "nan"
    ) -> List[DerivedStatistic]:
        """
        Proportions numerator / denominator for every geography and year
        that has both variables.
        """
        return self._derive_joined(records, numerator_code, denominator_code, derive_proportion, on_zero)

    def derive_ratios(
        self,
        records: Iterable[EstimateRecord],
        numerator_code: str,
        denominator_code: str,
        on_zero: str = "nan"
    ) -> List[DerivedStatistic]:
        """Ratios numerator / denominator joined by geography and year."""
        return self._derive_joined(records, numerator_code, denominator_code, derive_ratio, on_zero)

    def proportions_from_summary(
        self,
        records: Iterable[EstimateRecord],
        summary_code: str = "",
        on_zero: str = "nan"
    ) -> List[DerivedStatistic]:
        """Proportion of each record relative to its attached summary variable."""
        return [
            derive_proportion_from_summary(r, summary_code, on_zero)
            for r in records
        ]

    def to_dataframe(
        self,
        records: Iterable[EstimateRecord],
        wide: bool = True
    ) -> pd.DataFrame:
        """
        Records as a DataFrame.

        Wide form has one row per (GEOID, year) with `<code>` and
        `<code>_moe` columns; long form has one row per record.
        """
        return records_to_frame(records, wide=wide)

    def derived_to_dataframe(self, stats: Iterable[DerivedStatistic]) -> pd.DataFrame:
        return derived_to_frame(stats)

    def join_tiger_geometries(
        self,
        df: pd.DataFrame,
        geography: str,
        year: int = 2022,
        state: Optional[str] = None,
        county: Optional[str] = None,
        resolution: str = "500k"
    ) -> gpd.GeoDataFrame:
        """
        Join cartographic boundaries to Census data.

        Args:
            df: DataFrame with GEOID column.
            geography: Geographic level for geometry matching.
            year: TIGER/Line vintage year.
            state: State FIPS (required for tract/block group/place).
            county: County FIPS subset.
            resolution: Cartographic boundary resolution (500k, 5m, 20m).

        Returns:
            GeoDataFrame with geometry column added.
        """
        logger.info(f"Joining TIGER/Line {geography} geometries (year={year})")

        tiger_gdf = self.geography.get_tiger_boundaries(
            geography=geography,
            year=year,
            resolution=resolution,
            state=state,
            county=county
        )

        gdf = tiger_gdf[["GEOID", "geometry"]].merge(df, on="GEOID", how="right")
        gdf = gpd.GeoDataFrame(gdf, geometry="geometry", crs=tiger_gdf.crs)

        unmatched = int(gdf.geometry.isna().sum())
        if unmatched:
            logger.warning(f"{unmatched} records have no matching {geography} boundary")

        logger.info(f"Joined geometries for {len(gdf)} features")
        return gdf

    def export(
        self,
        data: Exportable,
        output: str,
        format: str = "geopackage",
        layer_name: Optional[str] = None,
        wide: bool = True
    ) -> Path:
        """
        Export data to various formats.

        Args:
            data: DataFrame or GeoDataFrame, or a list of EstimateRecords
                or DerivedStatistics.
            output: Output file path.
            format: Output format (csv, geopackage, geojson, parquet).
            layer_name: Layer name for GeoPackage output.
            wide: Shape used when flattening EstimateRecords.

        Returns:
            Path written.
        """
        return self.exporter.export(data, output, format, layer_name, wide=wide)

    def _fetch_summary(
        self,
        summary_variable: str,
        geography_level: str,
        filters: QueryFilters,
        use_cache: Optional[bool]
    ) -> Dict[str, Tuple[float, Optional[float]]]:
        """Fetch the summary variable and index it by geography id."""
        est_field, moe_field = estimate_and_moe_fields(summary_variable)
        raw = self.api_client.get_data(
            fields=[f for f in (est_field, moe_field) if f],
            geography=geography_level,
            year=filters.year,
            survey=filters.survey,
            state=filters.state,
            county=filters.county,
            use_cache=use_cache
        )

        header = raw[0]
        summary = {}
        for values in raw[1:]:
            row = dict(zip(header, values))
            summary[geoid_from_row(row, geography_level)] = (
                coerce_estimate(row.get(est_field)),
                coerce_moe(row.get(moe_field)) if moe_field else None
            )
        return summary

    def _parse_api_response(
        self,
        response: List[List],
        pairs: List[Tuple[str, Optional[str]]],
        geography_level: str,
        filters: QueryFilters,
        summary: Optional[Dict[str, Tuple[float, Optional[float]]]]
    ) -> List[EstimateRecord]:
        """Parse a Census API JSON response into EstimateRecords."""
        if not response:
            return []

        header = response[0]
        missing = [e for e, _ in pairs if e not in header]
        if missing:
            raise BadRequest(f"Response missing requested fields: {', '.join(missing)}")

        records: Dict[Tuple[str, str], EstimateRecord] = {}

        for values in response[1:]:
            row = dict(zip(header, values))
            geoid = geoid_from_row(row, geography_level)

            summary_est, summary_moe = None, None
            if summary is not None:
                if geoid not in summary:
                    logger.warning(f"No summary value for {geoid}")
                    summary_est, summary_moe = float("nan"), float("nan")
                else:
                    summary_est, summary_moe = summary[geoid]

            for est_field, moe_field in pairs:
                key = (geoid, est_field)
                if key in records:
                    logger.warning(f"Duplicate row for {key} in response; keeping first")
                    continue

                records[key] = EstimateRecord(
                    geography_id=geoid,
                    geography_name=row.get("NAME", ""),
                    variable_code=est_field,
                    estimate=coerce_estimate(row.get(est_field)),
                    margin_of_error=coerce_moe(row.get(moe_field)) if moe_field else float("nan"),
                    year=filters.year,
                    survey=filters.survey,
                    summary_estimate=summary_est,
                    summary_moe=summary_moe
                )

        return list(records.values())

    def _derive_joined(self, records, numerator_code, denominator_code, derive, on_zero):
        numerator_code, _ = estimate_and_moe_fields(numerator_code)
        denominator_code, _ = estimate_and_moe_fields(denominator_code)

        index = {(r.geography_id, r.year, r.variable_code): r for r in records}
        geo_years = {(g, y) for g, y, _ in index}

        derived = []
        for geoid, year in sorted(geo_years):
            num = index.get((geoid, year, numerator_code))
            den = index.get((geoid, year, denominator_code))
            if num is None or den is None:
                logger.debug(f"Skipping {geoid}/{year}: missing numerator or denominator")
                continue
            derived.append(derive(num, den, on_zero=on_zero))

        return derived
