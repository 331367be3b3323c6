"""
Margin of Error Propagation - Census Bureau formulas for derived estimates.

Pure functions with no I/O. Formulas follow the ACS General Handbook,
"Calculating Measures of Error for Derived Estimates".

Author: Mir Md Tasnim Alam
"""

import math
import logging
from typing import NamedTuple, Optional

from .exceptions import DivisionByZero
from .models import DerivedKind, DerivedStatistic, EstimateRecord

logger = logging.getLogger(__name__)

# Z-score for the 90% confidence level Census publishes MOEs at
Z_90 = 1.645


class MoEResult(NamedTuple):
    moe: float
    used_fallback: bool


def proportion_moe_detail(
    numerator: float,
    denominator: float,
    numerator_moe: float,
    denominator_moe: float
) -> MoEResult:
    """
    MOE of a proportion p = numerator / denominator, with the branch used.

    The numerator must be a subset of the denominator. When the
    radicand numerator_moe^2 - p^2 * denominator_moe^2 is negative, the
    ratio formula (+ instead of -) is used and used_fallback is True.
    Missing (NaN) inputs give a NaN MOE with used_fallback False.

    Raises:
        DivisionByZero: If denominator is zero.
    """
    if denominator == 0:
        raise DivisionByZero("Proportion denominator estimate is zero")

    p = numerator / denominator
    radicand = numerator_moe ** 2 - (p ** 2 * denominator_moe ** 2)

    if math.isnan(radicand):
        return MoEResult(math.nan, False)

    if radicand >= 0:
        return MoEResult(math.sqrt(radicand) / denominator, False)

    return MoEResult(
        math.sqrt(numerator_moe ** 2 + p ** 2 * denominator_moe ** 2) / denominator,
        True
    )


def proportion_moe(
    numerator: float,
    denominator: float,
    numerator_moe: float,
    denominator_moe: float
) -> float:
    """
    MOE of a proportion.

    Args:
        numerator: Numerator estimate (subset of the denominator).
        denominator: Denominator estimate.
        numerator_moe: Numerator margin of error.
        denominator_moe: Denominator margin of error.

    Returns:
        Margin of error of numerator / denominator.

    Example:
        >>> round(proportion_moe(4000, 10000, 300, 500), 5)
        0.02236
    """
    return proportion_moe_detail(
        numerator, denominator, numerator_moe, denominator_moe
    ).moe


def ratio_moe(
    numerator_estimate: float,
    denominator_estimate: float,
    numerator_moe: float,
    denominator_moe: float
) -> float:
    """
    MOE of a ratio where the numerator is not a subset of the denominator.

    Raises:
        DivisionByZero: If denominator_estimate is zero.
    """
    if denominator_estimate == 0:
        raise DivisionByZero("Ratio denominator estimate is zero")

    ratio = numerator_estimate / denominator_estimate
    return math.sqrt(
        numerator_moe ** 2 + (ratio ** 2 * denominator_moe ** 2)
    ) / denominator_estimate


def sum_moe(*moes: float) -> float:
    """MOE of a sum of estimates: root of the summed squared MOEs."""
    return math.sqrt(sum(m ** 2 for m in moes))


def difference_moe(moe_a: float, moe_b: float) -> float:
    """MOE of a difference of two estimates."""
    return sum_moe(moe_a, moe_b)


def coefficient_of_variation(estimate: float, moe: float) -> float:
    """
    Coefficient of variation in percent: standard error / estimate * 100.

    Raises:
        DivisionByZero: If estimate is zero.
    """
    if estimate == 0:
        raise DivisionByZero("Cannot compute CV of a zero estimate")
    return (moe / Z_90) / estimate * 100


def derive_proportion(
    numerator: EstimateRecord,
    denominator: EstimateRecord,
    on_zero: str = "raise"
) -> DerivedStatistic:
    """
    Build a proportion statistic from two estimate records.

    Args:
        numerator: Numerator record.
        denominator: Denominator record for the same geography and year.
        on_zero: 'raise' to propagate DivisionByZero, 'nan' to return an
            invalid statistic instead.

    Returns:
        DerivedStatistic of kind PROPORTION.
    """
    _check_pair(numerator, denominator)
    return _derive(
        DerivedKind.PROPORTION,
        numerator.geography_id,
        numerator.year,
        numerator.estimate,
        denominator.estimate,
        numerator.margin_of_error,
        denominator.margin_of_error,
        numerator.variable_code,
        denominator.variable_code,
        on_zero
    )


def derive_ratio(
    numerator: EstimateRecord,
    denominator: EstimateRecord,
    on_zero: str = "raise"
) -> DerivedStatistic:
    """Build a ratio statistic from two estimate records."""
    _check_pair(numerator, denominator)
    return _derive(
        DerivedKind.RATIO,
        numerator.geography_id,
        numerator.year,
        numerator.estimate,
        denominator.estimate,
        numerator.margin_of_error,
        denominator.margin_of_error,
        numerator.variable_code,
        denominator.variable_code,
        on_zero
    )


def derive_proportion_from_summary(
    record: EstimateRecord,
    summary_code: str = "",
    on_zero: str = "raise"
) -> DerivedStatistic:
    """
    Proportion of a record relative to its attached summary variable.

    Raises:
        ValueError: If the record carries no summary estimate.
    """
    if record.summary_estimate is None:
        raise ValueError(
            f"Record {record.key} has no summary estimate; "
            "fetch with summary_variable set"
        )
    return _derive(
        DerivedKind.PROPORTION,
        record.geography_id,
        record.year,
        record.estimate,
        record.summary_estimate,
        record.margin_of_error,
        record.summary_moe if record.summary_moe is not None else math.nan,
        record.variable_code,
        summary_code,
        on_zero
    )


def _check_pair(a: EstimateRecord, b: EstimateRecord) -> None:
    if a.geography_id != b.geography_id or a.year != b.year:
        raise ValueError(
            f"Cannot combine {a.geography_id}/{a.year} with {b.geography_id}/{b.year}"
        )


def _derive(
    kind: DerivedKind,
    geography_id: str,
    year: int,
    num: float,
    den: float,
    num_moe: float,
    den_moe: float,
    num_code: str,
    den_code: str,
    on_zero: str
) -> DerivedStatistic:
    if on_zero not in ("raise", "nan"):
        raise ValueError(f"on_zero must be 'raise' or 'nan', got {on_zero}")

    def invalid() -> DerivedStatistic:
        return DerivedStatistic(
            geography_id=geography_id,
            year=year,
            value=math.nan,
            margin_of_error=math.nan,
            kind=kind,
            numerator_code=num_code,
            denominator_code=den_code,
            valid=False
        )

    if any(_is_missing(v) for v in (num, den, num_moe, den_moe)):
        return invalid()

    try:
        if kind is DerivedKind.PROPORTION:
            result = proportion_moe_detail(num, den, num_moe, den_moe)
        else:
            result = MoEResult(ratio_moe(num, den, num_moe, den_moe), False)
    except DivisionByZero:
        if on_zero == "raise":
            raise
        return invalid()

    if result.used_fallback:
        logger.debug(
            f"Proportion MOE for {geography_id} ({num_code}/{den_code}) "
            "used the ratio fallback formula"
        )

    return DerivedStatistic(
        geography_id=geography_id,
        year=year,
        value=num / den,
        margin_of_error=result.moe,
        kind=kind,
        numerator_code=num_code,
        denominator_code=den_code,
        used_fallback=result.used_fallback
    )


def _is_missing(value: Optional[float]) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))
