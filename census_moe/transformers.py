"""
Data Transformers - Cleaning, derived rates, and vectorized MOE columns.

Author: Mir Md Tasnim Alam
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .moe import Z_90

logger = logging.getLogger(__name__)


# Census Bureau codes for missing/suppressed data
MISSING_CODES = {
    -666666666: "too few sample observations",
    -999999999: "no sample observations",
    -888888888: "not applicable",
    -222222222: "too many sample cases",
    -333333333: "median in top/bottom interval"
}

# MOE annotation: estimate is controlled, so there is no sampling error
CONTROLLED_MOE_CODE = -555555555


def coerce_estimate(value) -> float:
    """Convert an API estimate field to float; missing codes become NaN."""
    number = _to_float(value)
    if number in MISSING_CODES:
        return np.nan
    return number


def coerce_moe(value) -> float:
    """Convert an API MOE field to float; controlled MOEs become 0."""
    number = _to_float(value)
    if number == CONTROLLED_MOE_CODE:
        return 0.0
    if number in MISSING_CODES or number < 0:
        return np.nan
    return number


def _to_float(value) -> float:
    if value is None:
        return np.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return np.nan


class DataTransformer:
    """
    Transformer class for Census data frames.

    Provides methods for:
    - Missing value handling
    - Rates, proportions, and ratios with propagated MOEs
    - Coefficients of variation
    - Aggregation to coarser geographies
    - Change between survey years
    """

    def clean_missing_values(
        self,
        df: pd.DataFrame,
        strategy: str = "nan",
        fill_value: Optional[float] = None,
        moe_columns: Optional[List[str]] = None
    ) -> pd.DataFrame:
        """
        Handle Census missing value codes.

        Args:
            df: Input DataFrame
            strategy: 'nan' (convert to NaN), 'fill' (fill with value), 'drop' (drop rows)
            fill_value: Value to use when strategy='fill'
            moe_columns: MOE columns, where -555555555 means zero error

        Returns:
            Cleaned DataFrame
        """
        df = df.copy()

        for col in moe_columns or []:
            df[col] = df[col].replace(CONTROLLED_MOE_CODE, 0)

        df = df.replace(list(MISSING_CODES.keys()), np.nan)

        if strategy == "nan":
            pass  # Already converted
        elif strategy == "fill":
            df = df.fillna(fill_value)
        elif strategy == "drop":
            df = df.dropna()
        else:
            raise ValueError(f"Unknown strategy: {strategy}")

        return df

    def calculate_rates(
        self,
        df: pd.DataFrame,
        numerator: str,
        denominator: str,
        rate_name: str,
        per: int = 100,
        handle_zero: str = "nan"
    ) -> pd.DataFrame:
        """
        Calculate rates (e.g., percentage, per 1000, etc.)

        Args:
            df: Input DataFrame
            numerator: Column name for numerator
            denominator: Column name for denominator
            rate_name: Name for new rate column
            per: Rate multiplier (100 for percent, 1000 for per-1000, etc.)
            handle_zero: How to handle zero denominators ('nan', 'zero', 'inf')

        Returns:
            DataFrame with rate column added
        """
        df = df.copy()

        with np.errstate(divide='ignore', invalid='ignore'):
            rate = (df[numerator] / df[denominator]) * per

        if handle_zero == "nan":
            rate = rate.replace([np.inf, -np.inf], np.nan)
        elif handle_zero == "zero":
            rate = rate.replace([np.inf, -np.inf], 0)

        df[rate_name] = rate

        return df

    def add_proportion(
        self,
        df: pd.DataFrame,
        numerator: str,
        denominator: str,
        name: str,
        numerator_moe: Optional[str] = None,
        denominator_moe: Optional[str] = None
    ) -> pd.DataFrame:
        """
        Add a proportion column and its MOE.

        Adds `name`, `name_moe`, and `name_moe_fallback` (True where the
        ratio formula replaced a negative proportion radicand). Zero
        denominators give NaN.

        Args:
            df: Input DataFrame
            numerator: Numerator estimate column (subset of denominator)
            denominator: Denominator estimate column
            name: Output column name
            numerator_moe: Numerator MOE column (default f"{numerator}_moe")
            denominator_moe: Denominator MOE column (default f"{denominator}_moe")
        """
        df = df.copy()
        num, den, num_moe, den_moe = self._moe_inputs(
            df, numerator, denominator, numerator_moe, denominator_moe
        )

        with np.errstate(divide='ignore', invalid='ignore'):
            p = num / den
            radicand = num_moe ** 2 - p ** 2 * den_moe ** 2
            fallback = radicand < 0
            moe = np.where(
                fallback,
                np.sqrt(num_moe ** 2 + p ** 2 * den_moe ** 2),
                np.sqrt(np.abs(radicand))
            ) / den

        zero = den == 0
        df[name] = np.where(zero, np.nan, p)
        df[f"{name}_moe"] = np.where(zero, np.nan, moe)
        df[f"{name}_moe_fallback"] = fallback & ~zero

        if zero.any():
            logger.warning(f"{int(zero.sum())} zero denominators in {denominator}; {name} set to NaN")

        return df

    def add_ratio(
        self,
        df: pd.DataFrame,
        numerator: str,
        denominator: str,
        name: str,
        numerator_moe: Optional[str] = None,
        denominator_moe: Optional[str] = None
    ) -> pd.DataFrame:
        """Add a ratio column and its MOE (`name`, `name_moe`)."""
        df = df.copy()
        num, den, num_moe, den_moe = self._moe_inputs(
            df, numerator, denominator, numerator_moe, denominator_moe
        )

        with np.errstate(divide='ignore', invalid='ignore'):
            ratio = num / den
            moe = np.sqrt(num_moe ** 2 + ratio ** 2 * den_moe ** 2) / den

        zero = den == 0
        df[name] = np.where(zero, np.nan, ratio)
        df[f"{name}_moe"] = np.where(zero, np.nan, moe)

        return df

    def add_coefficient_of_variation(
        self,
        df: pd.DataFrame,
        estimate: str,
        moe: Optional[str] = None,
        name: Optional[str] = None
    ) -> pd.DataFrame:
        """Add CV in percent: (MOE / 1.645) / estimate * 100."""
        df = df.copy()
        moe = moe or f"{estimate}_moe"
        name = name or f"{estimate}_cv"

        with np.errstate(divide='ignore', invalid='ignore'):
            cv = (df[moe] / Z_90) / df[estimate] * 100

        df[name] = cv.replace([np.inf, -np.inf], np.nan)
        return df

    def calculate_change(
        self,
        df1: pd.DataFrame,
        df2: pd.DataFrame,
        variable: str,
        join_on: str = "GEOID",
        moe: Optional[str] = None,
        percent: bool = True
    ) -> pd.DataFrame:
        """
        Calculate change between two survey years.

        Args:
            df1: Earlier period data
            df2: Later period data
            variable: Variable to compare
            join_on: Column to join on
            moe: MOE column of variable; adds `{variable}_change_moe`
            percent: Include percent change

        Returns:
            DataFrame with change columns
        """
        columns = [join_on, variable] + ([moe] if moe else [])
        merged = df1[columns].merge(
            df2[columns],
            on=join_on,
            suffixes=("_t1", "_t2")
        )

        merged[f"{variable}_change"] = (
            merged[f"{variable}_t2"] - merged[f"{variable}_t1"]
        )

        if moe:
            merged[f"{variable}_change_moe"] = np.sqrt(
                merged[f"{moe}_t1"] ** 2 + merged[f"{moe}_t2"] ** 2
            )

        if percent:
            with np.errstate(divide='ignore', invalid='ignore'):
                merged[f"{variable}_pct_change"] = (
                    (merged[f"{variable}_t2"] - merged[f"{variable}_t1"]) /
                    merged[f"{variable}_t1"] * 100
                )
            merged[f"{variable}_pct_change"] = merged[f"{variable}_pct_change"].replace(
                [np.inf, -np.inf], np.nan
            )

        return merged

    def aggregate_to_geography(
        self,
        df: pd.DataFrame,
        to_geo: str,
        estimate_moe: Dict[str, str]
    ) -> pd.DataFrame:
        """
        Aggregate count estimates from finer to coarser geography.

        Estimates are summed; MOEs are combined as the root of summed
        squares.

        Args:
            df: Input DataFrame with GEOID
            to_geo: Target geography level
            estimate_moe: Dict mapping estimate columns to their MOE columns

        Returns:
            Aggregated DataFrame
        """
        geoid_lengths = {
            "state": 2,
            "county": 5,
            "tract": 11,
            "block group": 12
        }

        target_len = geoid_lengths.get(to_geo)
        if not target_len:
            raise ValueError(f"Unknown target geography: {to_geo}")

        df = df.copy()
        df["target_geoid"] = df["GEOID"].str[:target_len]

        squared = {moe: df[moe] ** 2 for moe in estimate_moe.values()}
        df = df.assign(**{f"__sq_{moe}": values for moe, values in squared.items()})

        agg = {est: "sum" for est in estimate_moe}
        agg.update({f"__sq_{moe}": "sum" for moe in estimate_moe.values()})

        result = df.groupby("target_geoid").agg(agg).reset_index()
        for moe in estimate_moe.values():
            result[moe] = np.sqrt(result.pop(f"__sq_{moe}"))

        return result.rename(columns={"target_geoid": "GEOID"})

    def _moe_inputs(self, df, numerator, denominator, numerator_moe, denominator_moe):
        num_moe = numerator_moe or f"{numerator}_moe"
        den_moe = denominator_moe or f"{denominator}_moe"
        return (
            df[numerator].to_numpy(dtype=float),
            df[denominator].to_numpy(dtype=float),
            df[num_moe].to_numpy(dtype=float),
            df[den_moe].to_numpy(dtype=float),
        )
