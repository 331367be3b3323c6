"""
Data Exporters - Output handlers for the presentation layer.

Turns estimate and derived-statistic records into flat tables and writes
them where a plotting or mapping tool can pick them up. Every estimate
travels with its margin of error, and derived values keep their
fallback and validity flags.

Author: Mir Md Tasnim Alam
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd
import geopandas as gpd

from .models import DerivedStatistic, EstimateRecord

logger = logging.getLogger(__name__)

ESTIMATE_COLUMNS = [
    "GEOID", "NAME", "year", "survey", "variable",
    "estimate", "moe", "summary_est", "summary_moe"
]

DERIVED_COLUMNS = [
    "GEOID", "year", "kind", "numerator", "denominator",
    "value", "moe", "used_fallback", "valid"
]

Exportable = Union[
    pd.DataFrame,
    gpd.GeoDataFrame,
    Sequence[EstimateRecord],
    Sequence[DerivedStatistic]
]


def records_to_frame(records: Iterable[EstimateRecord], wide: bool = True) -> pd.DataFrame:
    """
    EstimateRecords as a DataFrame.

    Wide form has one row per (GEOID, year) with `<code>` and
    `<code>_moe` columns side by side; long form has one row per record.
    """
    records = list(records)
    if not wide:
        return pd.DataFrame(
            [
                (
                    r.geography_id, r.geography_name, r.year, r.survey, r.variable_code,
                    r.estimate, r.margin_of_error, r.summary_estimate, r.summary_moe
                )
                for r in records
            ],
            columns=ESTIMATE_COLUMNS
        )

    rows: Dict[Tuple[str, int], Dict] = {}
    for r in records:
        row = rows.setdefault(
            (r.geography_id, r.year),
            {"GEOID": r.geography_id, "NAME": r.geography_name, "year": r.year}
        )
        row[r.variable_code] = r.estimate
        row[f"{r.variable_code}_moe"] = r.margin_of_error
        if r.summary_estimate is not None:
            row["summary_est"] = r.summary_estimate
            row["summary_moe"] = r.summary_moe

    if not rows:
        return pd.DataFrame(columns=["GEOID", "NAME", "year"])
    return pd.DataFrame(list(rows.values()))


def derived_to_frame(stats: Iterable[DerivedStatistic]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            (
                s.geography_id, s.year, s.kind.value, s.numerator_code,
                s.denominator_code, s.value, s.margin_of_error,
                s.used_fallback, s.valid
            )
            for s in stats
        ],
        columns=DERIVED_COLUMNS
    )


def to_frame(data: Exportable, wide: bool = True) -> pd.DataFrame:
    """Accept a frame as-is, or build one from a record sequence."""
    if isinstance(data, pd.DataFrame):
        return data

    items = list(data)
    if all(isinstance(item, DerivedStatistic) for item in items):
        return derived_to_frame(items)
    if all(isinstance(item, EstimateRecord) for item in items):
        return records_to_frame(items, wide=wide)
    raise ValueError("Records must be all EstimateRecord or all DerivedStatistic")


def pair_moe_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Reorder so each `<col>_moe` (and its fallback flag) follows `<col>`."""
    columns = list(df.columns)
    trailing = {
        c for c in columns
        if (c.endswith("_moe") and c[:-4] in columns)
        or (c.endswith("_moe_fallback") and c[:-13] in columns)
    }

    ordered: List[str] = []
    for c in columns:
        if c in trailing:
            continue
        ordered.append(c)
        ordered.extend(x for x in (f"{c}_moe", f"{c}_moe_fallback") if x in trailing)

    return df[ordered]


class DataExporter:
    """
    Export Census estimates to files a plotting or mapping tool can read.

    Supported formats:
    - CSV (tabular data only)
    - GeoJSON (with geometries)
    - GeoPackage (with geometries, recommended)
    - Parquet (efficient columnar storage)
    """

    FORMATS = {
        "csv": ("_to_csv", False),
        "geopackage": ("_to_geopackage", True),
        "gpkg": ("_to_geopackage", True),
        "geojson": ("_to_geojson", True),
        "parquet": ("_to_parquet", False),
    }

    def export(
        self,
        data: Exportable,
        output: str,
        format: str = "geopackage",
        layer_name: Optional[str] = None,
        wide: bool = True
    ) -> Path:
        """
        Export estimates or derived statistics to a file.

        Args:
            data: DataFrame/GeoDataFrame, or a list of EstimateRecords
                or DerivedStatistics.
            output: Output file path.
            format: csv, geopackage (gpkg), geojson or parquet.
            layer_name: Layer name for GeoPackage output.
            wide: Shape used when flattening EstimateRecords.

        Returns:
            Path written.
        """
        format_lower = format.lower()
        if format_lower not in self.FORMATS:
            raise ValueError(f"Unsupported format: {format}")

        writer_name, needs_geometry = self.FORMATS[format_lower]
        frame = pair_moe_columns(to_frame(data, wide=wide))

        if needs_geometry and not isinstance(frame, gpd.GeoDataFrame):
            raise ValueError(
                f"{format} export requires a GeoDataFrame; "
                "join boundaries with CensusPipeline.join_tiger_geometries first"
            )

        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        writer = getattr(self, writer_name)
        if format_lower in ["geopackage", "gpkg"]:
            writer(frame, output_path, layer_name)
        else:
            writer(frame, output_path)

        logger.info(f"Exported {len(frame)} rows to {output_path}")
        return output_path

    def _to_csv(self, data: pd.DataFrame, path: Path) -> None:
        if isinstance(data, gpd.GeoDataFrame):
            data = pd.DataFrame(data.drop(columns=data.geometry.name))
        data.to_csv(path, index=False)

    def _to_geopackage(
        self,
        data: gpd.GeoDataFrame,
        path: Path,
        layer_name: Optional[str] = None
    ) -> None:
        data.to_file(path, driver="GPKG", layer=layer_name or path.stem)

    def _to_geojson(self, data: gpd.GeoDataFrame, path: Path) -> None:
        data.to_file(path, driver="GeoJSON")

    def _to_parquet(self, data: pd.DataFrame, path: Path) -> None:
        if isinstance(data, gpd.GeoDataFrame):
            data.to_parquet(path)
        else:
            data.to_parquet(path, index=False)
