"""
census-moe

Census Bureau API client with margin-of-error propagation for derived
estimates.

Author: Mir Md Tasnim Alam
https://github.com/tasnim966937
"""

from .census_pipeline import CensusPipeline, estimate_and_moe_fields
from .api_client import CensusAPIClient, SURVEYS
from .cache import ResponseCache
from .config import CensusConfig
from .exceptions import (
    BadRequest,
    CensusAPIError,
    CensusError,
    ConfigurationError,
    DivisionByZero,
    NotFound,
    RateLimited,
    UpstreamUnavailable
)
from .geography import (
    GeographyManager,
    FIPS_CODES,
    STATE_NAME_TO_FIPS,
    get_state_fips,
    parse_geoid,
    build_geoid
)
from .models import (
    DerivedKind,
    DerivedStatistic,
    EstimateRecord,
    GeographyUnit,
    QueryFilters,
    VariableDescriptor
)
from .moe import (
    coefficient_of_variation,
    derive_proportion,
    derive_ratio,
    difference_moe,
    proportion_moe,
    proportion_moe_detail,
    ratio_moe,
    sum_moe
)
from .transformers import DataTransformer
from .exporters import DataExporter
from .variables import VariableCatalog

__version__ = "1.0.0"
__author__ = "Mir Md Tasnim Alam"

__all__ = [
    "CensusPipeline",
    "CensusAPIClient",
    "CensusConfig",
    "ResponseCache",
    "VariableCatalog",
    "GeographyManager",
    "DataTransformer",
    "DataExporter",
    "SURVEYS",
    "FIPS_CODES",
    "STATE_NAME_TO_FIPS",
    "get_state_fips",
    "parse_geoid",
    "build_geoid",
    "estimate_and_moe_fields",
    "VariableDescriptor",
    "EstimateRecord",
    "DerivedStatistic",
    "DerivedKind",
    "GeographyUnit",
    "QueryFilters",
    "proportion_moe",
    "proportion_moe_detail",
    "ratio_moe",
    "sum_moe",
    "difference_moe",
    "coefficient_of_variation",
    "derive_proportion",
    "derive_ratio",
    "CensusError",
    "CensusAPIError",
    "ConfigurationError",
    "DivisionByZero",
    "UpstreamUnavailable",
    "RateLimited",
    "BadRequest",
    "NotFound"
]
