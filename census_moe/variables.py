"""
Variable Catalog - Load, cache, and search a dataset's variable list.

Author: Mir Md Tasnim Alam
"""

import logging
from typing import Dict, FrozenSet, Iterable, Optional

import pandas as pd

from .api_client import CensusAPIClient, dataset_path
from .cache import ResponseCache
from .exceptions import NotFound
from .models import VariableDescriptor

logger = logging.getLogger(__name__)

# Entries in variables.json that describe query clauses, not data
PSEUDO_VARIABLES = {"for", "in", "ucgid"}


class VariableCatalog:
    """
    Loader for Census variable catalogs (codes, labels, concepts).

    Example:
        >>> catalog = VariableCatalog(client, cache)
        >>> variables = catalog.load_variables(2022, "acs5")
        >>> catalog.search("bachelor", 2022, "acs5").head()
    """

    def __init__(self, client: CensusAPIClient, cache: Optional[ResponseCache] = None):
        self.client = client
        self.cache = cache

    def load_variables(
        self,
        year: int,
        survey: str = "acs5",
        use_cache: bool = True
    ) -> FrozenSet[VariableDescriptor]:
        """
        Fetch the variable catalog for a dataset year and survey.

        Args:
            year: Dataset year (e.g. 2022).
            survey: Survey identifier (acs5, acs1, ...).
            use_cache: Return a cached catalog without a network call
                when one exists for (year, survey).

        Returns:
            Frozen set of VariableDescriptor.

        Raises:
            BadRequest: Unknown survey identifier.
            NotFound: Year/survey combination not published.
            UpstreamUnavailable: Census API unreachable.
        """
        path = f"{dataset_path(year, survey)}/variables.json"
        key = ResponseCache.make_key(kind="variables", year=year, survey=survey)

        raw = None
        if use_cache and self.cache is not None:
            entry = self.cache.get(key)
            if entry is not None:
                logger.info(f"Loaded cached variable catalog for {survey} {year}")
                raw = entry.data

        if raw is None:
            logger.info(f"Fetching variable catalog for {survey} {year}")
            raw = self.client.get_json(path).get("variables", {})
            if self.cache is not None:
                self.cache.put(key, raw)

        return frozenset(
            self._parse_variable(code, info, year, survey)
            for code, info in raw.items()
            if code not in PSEUDO_VARIABLES
        )

    def get_variable(
        self,
        code: str,
        year: int,
        survey: str = "acs5"
    ) -> VariableDescriptor:
        """
        Look up one variable.

        Raises:
            NotFound: Code not in the catalog for this year/survey.
        """
        for variable in self.load_variables(year, survey):
            if variable.code == code:
                return variable
        raise NotFound(f"Variable {code} not found in {survey} {year}")

    def validate_codes(
        self,
        codes: Iterable[str],
        year: int,
        survey: str = "acs5"
    ) -> None:
        """
        Check that every code exists in the catalog.

        Raises:
            NotFound: Listing every unknown code.
        """
        known = {v.code for v in self.load_variables(year, survey)}
        unknown = sorted(set(codes) - known)
        if unknown:
            raise NotFound(
                f"Unknown variables for {survey} {year}: {', '.join(unknown)}"
            )

    def variables_in_group(
        self,
        table: str,
        year: int,
        survey: str = "acs5"
    ) -> Dict[str, VariableDescriptor]:
        """All variables of one table (e.g. B15003), keyed by code."""
        return {
            v.code: v
            for v in self.load_variables(year, survey)
            if v.group == table
        }

    def search(
        self,
        keyword: str,
        year: int,
        survey: str = "acs5"
    ) -> pd.DataFrame:
        """
        Search for Census variables by keyword.

        Args:
            keyword: Search term, matched against label and concept.
            year: Data year.
            survey: Survey identifier.

        Returns:
            DataFrame with matching variables, sorted by code.
        """
        keyword_lower = keyword.lower()

        results = [
            {
                "variable": v.code,
                "label": v.label,
                "concept": v.concept,
                "group": v.group
            }
            for v in self.load_variables(year, survey)
            if keyword_lower in v.label.lower() or keyword_lower in v.concept.lower()
        ]

        df = pd.DataFrame(results, columns=["variable", "label", "concept", "group"])
        return df.sort_values("variable").reset_index(drop=True)

    @staticmethod
    def _parse_variable(
        code: str,
        info: Dict,
        year: int,
        survey: str
    ) -> VariableDescriptor:
        return VariableDescriptor(
            code=code,
            label=info.get("label", ""),
            concept=info.get("concept", ""),
            dataset_year=year,
            survey=survey,
            group=info.get("group", "") if info.get("group") != "N/A" else "",
            predicate_type=info.get("predicateType", "")
        )
