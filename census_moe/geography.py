"""
Geography Manager - TIGER/Line boundaries and FIPS code utilities.

Author: Mir Md Tasnim Alam
"""

import os
import logging
import tempfile
from pathlib import Path
from typing import List, Optional

import geopandas as gpd
import requests

from .exceptions import BadRequest, NotFound, UpstreamUnavailable
from .models import GeographyUnit

logger = logging.getLogger(__name__)


# State FIPS codes
FIPS_CODES = {
    "01": "Alabama", "02": "Alaska", "04": "Arizona", "05": "Arkansas",
    "06": "California", "08": "Colorado", "09": "Connecticut", "10": "Delaware",
    "11": "District of Columbia", "12": "Florida", "13": "Georgia", "15": "Hawaii",
    "16": "Idaho", "17": "Illinois", "18": "Indiana", "19": "Iowa",
    "20": "Kansas", "21": "Kentucky", "22": "Louisiana", "23": "Maine",
    "24": "Maryland", "25": "Massachusetts", "26": "Michigan", "27": "Minnesota",
    "28": "Mississippi", "29": "Missouri", "30": "Montana", "31": "Nebraska",
    "32": "Nevada", "33": "New Hampshire", "34": "New Jersey", "35": "New Mexico",
    "36": "New York", "37": "North Carolina", "38": "North Dakota", "39": "Ohio",
    "40": "Oklahoma", "41": "Oregon", "42": "Pennsylvania", "44": "Rhode Island",
    "45": "South Carolina", "46": "South Dakota", "47": "Tennessee", "48": "Texas",
    "49": "Utah", "50": "Vermont", "51": "Virginia", "53": "Washington",
    "54": "West Virginia", "55": "Wisconsin", "56": "Wyoming", "72": "Puerto Rico"
}

# State name to FIPS lookup
STATE_NAME_TO_FIPS = {v.lower(): k for k, v in FIPS_CODES.items()}

STATE_ABBREV_TO_FIPS = {
    "al": "01", "ak": "02", "az": "04", "ar": "05", "ca": "06",
    "co": "08", "ct": "09", "de": "10", "dc": "11", "fl": "12",
    "ga": "13", "hi": "15", "id": "16", "il": "17", "in": "18",
    "ia": "19", "ks": "20", "ky": "21", "la": "22", "me": "23",
    "md": "24", "ma": "25", "mi": "26", "mn": "27", "ms": "28",
    "mo": "29", "mt": "30", "ne": "31", "nv": "32", "nh": "33",
    "nj": "34", "nm": "35", "ny": "36", "nc": "37", "nd": "38",
    "oh": "39", "ok": "40", "or": "41", "pa": "42", "ri": "44",
    "sc": "45", "sd": "46", "tn": "47", "tx": "48", "ut": "49",
    "vt": "50", "va": "51", "wa": "53", "wv": "54", "wi": "55",
    "wy": "56", "pr": "72"
}


def get_state_fips(state: str) -> str:
    """
    Get FIPS code for a state.

    Args:
        state: State name, abbreviation, or FIPS code.

    Returns:
        Two-digit FIPS code.
    """
    state = state.strip()

    # Already a FIPS code
    if state.zfill(2) in FIPS_CODES and state.isdigit():
        return state.zfill(2)

    state_lower = state.lower()
    if state_lower in STATE_NAME_TO_FIPS:
        return STATE_NAME_TO_FIPS[state_lower]
    if state_lower in STATE_ABBREV_TO_FIPS:
        return STATE_ABBREV_TO_FIPS[state_lower]

    raise ValueError(f"Unknown state: {state}")


class GeographyManager:
    """
    Manager for cartographic boundaries.

    Handles:
    - Cartographic boundary file downloading
    - Reprojection to a single session CRS
    - Geometry caching
    - Conversion to GeographyUnit records
    """

    CB_BASE_URL = "https://www2.census.gov/geo/tiger/GENZ{year}/shp"

    # Geography -> cartographic boundary file code
    FILE_CODES = {
        "state": "state",
        "county": "county",
        "tract": "tract",
        "block group": "bg",
        "place": "place",
        "zcta": "zcta520"  # 2020 ZCTAs
    }

    NATIONAL_LEVELS = ["state", "county", "zcta"]

    def __init__(self, cache_dir: Optional[Path] = None, crs: str = "EPSG:4326"):
        """
        Initialize geography manager.

        Args:
            cache_dir: Directory for caching downloaded boundaries.
                None disables caching.
            crs: CRS every returned boundary is projected to.
        """
        self.cache_dir = Path(cache_dir) / "tiger" if cache_dir else None
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.crs = crs

    def fetch_geometry(
        self,
        geography_level: str,
        year: int,
        state: Optional[str] = None,
        county: Optional[str] = None,
        resolution: str = "500k"
    ) -> List[GeographyUnit]:
        """
        Boundaries as GeographyUnit records, joinable on GEOID.

        Args:
            geography_level: Geographic level (state, county, tract, ...).
            year: Boundary vintage year.
            state: State FIPS filter (required for tract/block group/place).
            county: County FIPS filter.
            resolution: Cartographic boundary resolution (500k, 5m, 20m).
        """
        gdf = self.get_tiger_boundaries(geography_level, year, resolution, state, county)
        name_col = "NAME" if "NAME" in gdf.columns else "GEOID"
        return [
            GeographyUnit(id=row.GEOID, name=getattr(row, name_col), boundary=row.geometry)
            for row in gdf.itertuples(index=False)
        ]

    def get_tiger_boundaries(
        self,
        geography: str,
        year: int = 2022,
        resolution: str = "500k",
        state: Optional[str] = None,
        county: Optional[str] = None
    ) -> gpd.GeoDataFrame:
        """
        Download and load cartographic boundaries.

        Args:
            geography: Geographic level (state, county, tract, etc.)
            year: TIGER vintage year
            resolution: Cartographic boundary resolution (500k, 5m, 20m)
            state: State FIPS for tract/block group/place
            county: County FIPS to subset sub-county geographies

        Returns:
            GeoDataFrame with GEOID, NAME and geometry in self.crs
        """
        if county and not state:
            raise BadRequest("A county filter requires a state filter")
        if state and geography == "zcta":
            raise BadRequest("State filter not supported for zcta boundaries")

        url = self._build_tiger_url(geography, year, resolution, state)
        cache_path = self._get_cache_path(geography, year, resolution, state)

        if cache_path is not None and cache_path.exists():
            logger.info(f"Loading cached boundaries: {cache_path}")
            gdf = gpd.read_file(cache_path)
        else:
            gdf = self._download_shapefile(url)
            gdf = gdf.to_crs(self.crs)
            if cache_path is not None:
                self._write_cache(gdf, cache_path)

        gdf = self._standardize(gdf, geography)

        if state and geography in self.NATIONAL_LEVELS:
            gdf = gdf[gdf["GEOID"].str[:2] == state]
        if county:
            prefix = build_geoid(state, county)
            gdf = gdf[gdf["GEOID"].str[:5] == prefix]

        if gdf.crs is None or gdf.crs != self.crs:
            gdf = gdf.to_crs(self.crs) if gdf.crs is not None else gdf.set_crs(self.crs)

        return gdf.reset_index(drop=True)

    def _standardize(self, gdf: gpd.GeoDataFrame, geography: str) -> gpd.GeoDataFrame:
        """Ensure a GEOID column exists for joining."""
        if "GEOID" not in gdf.columns:
            if geography == "zcta" and "ZCTA5CE20" in gdf.columns:
                gdf = gdf.rename(columns={"ZCTA5CE20": "GEOID"})
            elif geography == "state" and "STATEFP" in gdf.columns:
                gdf = gdf.rename(columns={"STATEFP": "GEOID"})
            else:
                raise UpstreamUnavailable(f"No GEOID column in {geography} boundaries")
        return gdf

    def _build_tiger_url(
        self,
        geography: str,
        year: int,
        resolution: str,
        state: Optional[str] = None
    ) -> str:
        """Build URL for TIGER cartographic boundary file."""
        geo_code = self.FILE_CODES.get(geography)
        if not geo_code:
            raise BadRequest(f"Unsupported geography for TIGER: {geography}")

        # National vs state-level files
        if geography in self.NATIONAL_LEVELS:
            filename = f"cb_{year}_us_{geo_code}_{resolution}.zip"
        else:
            if not state:
                raise BadRequest(f"State required for {geography} boundaries")
            filename = f"cb_{year}_{state}_{geo_code}_{resolution}.zip"

        return f"{self.CB_BASE_URL.format(year=year)}/{filename}"

    def _get_cache_path(
        self,
        geography: str,
        year: int,
        resolution: str,
        state: Optional[str]
    ) -> Optional[Path]:
        """Get cache file path for boundaries."""
        if self.cache_dir is None:
            return None

        geo_slug = geography.replace(" ", "_")
        if state and geography not in self.NATIONAL_LEVELS:
            filename = f"{geo_slug}_{year}_{resolution}_{state}.gpkg"
        else:
            filename = f"{geo_slug}_{year}_{resolution}.gpkg"

        return self.cache_dir / filename

    def _write_cache(self, gdf: gpd.GeoDataFrame, cache_path: Path) -> None:
        """Write boundaries to a temporary file, then rename into place."""
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, suffix=".gpkg")
        os.close(fd)
        os.unlink(tmp_name)  # GPKG driver refuses to overwrite an empty file
        try:
            gdf.to_file(tmp_name, driver="GPKG")
            os.replace(tmp_name, cache_path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.info(f"Cached boundaries: {cache_path}")

    def _download_shapefile(self, url: str) -> gpd.GeoDataFrame:
        """Download a zipped shapefile and read it."""
        logger.info(f"Downloading: {url}")

        try:
            response = requests.get(url, timeout=60)
        except requests.exceptions.RequestException as e:
            raise UpstreamUnavailable(f"Boundary download failed: {e}") from e

        if response.status_code == 404:
            raise NotFound(f"No boundary file at {url}", 404)
        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"Boundary download returned {response.status_code}", response.status_code
            )

        with tempfile.TemporaryDirectory() as tmp_dir:
            zip_path = Path(tmp_dir) / url.rsplit("/", 1)[-1]
            zip_path.write_bytes(response.content)
            gdf = gpd.read_file(zip_path)

        return gdf


def parse_geoid(geoid: str) -> dict:
    """
    Parse a GEOID into component FIPS codes.

    Args:
        geoid: Full GEOID string

    Returns:
        Dict with state, county, tract, block_group as applicable
    """
    result = {}

    if len(geoid) >= 2:
        result["state"] = geoid[:2]
    if len(geoid) >= 5:
        result["county"] = geoid[2:5]
    if len(geoid) >= 11:
        result["tract"] = geoid[5:11]
    if len(geoid) >= 12:
        result["block_group"] = geoid[11:12]

    return result


def build_geoid(
    state: str,
    county: Optional[str] = None,
    tract: Optional[str] = None,
    block_group: Optional[str] = None
) -> str:
    """
    Build a GEOID from component FIPS codes.

    Args:
        state: 2-digit state FIPS
        county: 3-digit county FIPS
        tract: 6-digit tract code
        block_group: 1-digit block group code

    Returns:
        Concatenated GEOID
    """
    geoid = state
    if county:
        geoid += county
    if tract:
        geoid += tract
    if block_group:
        geoid += block_group

    return geoid


def geoid_from_row(row: dict, geography: str) -> str:
    """
    Build the GEOID for one Census API row from its geography columns.

    Args:
        row: Mapping of header -> value for one response row.
        geography: Geographic level of the query.
    """
    if geography == "us":
        return row.get("us", "1")
    if geography == "state":
        return row["state"]
    if geography == "county":
        return build_geoid(row["state"], row["county"])
    if geography == "tract":
        return build_geoid(row["state"], row["county"], row["tract"])
    if geography == "block group":
        return build_geoid(row["state"], row["county"], row["tract"], row["block group"])
    if geography == "place":
        return row["state"] + row["place"]
    if geography == "zcta":
        return row["zip code tabulation area"]
    if geography == "congressional district":
        return row["state"] + row["congressional district"]

    raise BadRequest(f"Unsupported geography: {geography}")
