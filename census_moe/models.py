"""
Data Models - Immutable records for variables, estimates, and derived statistics.

Author: Mir Md Tasnim Alam
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from shapely.geometry.base import BaseGeometry


@dataclass(frozen=True)
class VariableDescriptor:
    """One entry of a dataset's variable catalog."""

    code: str
    label: str
    concept: str
    dataset_year: int
    survey: str
    group: str = ""
    predicate_type: str = ""

    @property
    def key(self) -> Tuple[str, int, str]:
        return (self.code, self.dataset_year, self.survey)

    @property
    def label_parts(self) -> Tuple[str, ...]:
        """Label path, e.g. ('Estimate', 'Total:', "Bachelor's degree")."""
        return tuple(p.rstrip(":") for p in self.label.split("!!") if p)

    def __hash__(self):
        return hash(self.key)

    def __eq__(self, other):
        if not isinstance(other, VariableDescriptor):
            return NotImplemented
        return self.key == other.key


@dataclass(frozen=True)
class QueryFilters:
    """Geographic and dataset filters for an estimate query."""

    year: int
    survey: str = "acs5"
    state: Optional[str] = None
    county: Optional[str] = None


@dataclass(frozen=True)
class EstimateRecord:
    """
    A published estimate and its margin of error for one geography,
    variable, and year.

    Missing values are NaN. summary_estimate / summary_moe carry the
    paired summary variable (e.g. a table total) when one was requested.
    """

    geography_id: str
    geography_name: str
    variable_code: str
    estimate: float
    margin_of_error: float
    year: int
    survey: str = "acs5"
    summary_estimate: Optional[float] = None
    summary_moe: Optional[float] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.geography_id, self.variable_code)

    @property
    def is_missing(self) -> bool:
        return math.isnan(self.estimate)


class DerivedKind(Enum):
    PROPORTION = "proportion"
    RATIO = "ratio"


@dataclass(frozen=True)
class DerivedStatistic:
    """
    Proportion or ratio computed from two estimates.

    valid is False when the inputs did not allow a defined result; value
    and margin_of_error are NaN in that case. used_fallback marks
    proportions whose MOE came from the ratio formula because the
    proportion radicand was negative.
    """

    geography_id: str
    year: int
    value: float
    margin_of_error: float
    kind: DerivedKind
    numerator_code: str = ""
    denominator_code: str = ""
    used_fallback: bool = False
    valid: bool = True

    def __post_init__(self):
        if self.valid and not self.margin_of_error >= 0:
            raise ValueError(
                f"Derived MOE must be non-negative, got {self.margin_of_error} "
                f"for {self.geography_id}"
            )


@dataclass(frozen=True)
class GeographyUnit:
    """A geographic unit with its boundary (Polygon or MultiPolygon)."""

    id: str
    name: str
    boundary: BaseGeometry
