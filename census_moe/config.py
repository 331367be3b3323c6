"""
Client Configuration - Explicit settings passed to every component.

Author: Mir Md Tasnim Alam
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from dotenv import dotenv_values

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

API_KEY_ENV_VAR = "CENSUS_API_KEY"


@dataclass
class CensusConfig:
    """
    Configuration for Census API access.

    Attributes:
        api_key: Census API key. Get one at
            https://api.census.gov/data/key_signup.html
        cache_dir: Directory for cached responses and boundaries.
            None disables caching.
        timeout: Per-request timeout in seconds.
        max_retries: Retries for transient network/5xx failures.
        backoff_factor: Exponential backoff factor between retries.
        request_delay: Minimum seconds between consecutive requests.
        parallel_workers: Worker count for multi-year fan-out.
        use_cache: Default cache behavior for fetches.
        crs: Coordinate reference system for all boundaries.
    """

    api_key: str
    cache_dir: Optional[Path] = field(
        default_factory=lambda: Path.home() / ".census_cache"
    )
    timeout: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 1.0
    request_delay: float = 0.5
    parallel_workers: int = 4
    use_cache: bool = True
    crs: str = "EPSG:4326"

    def __post_init__(self):
        if not self.api_key or not str(self.api_key).strip():
            raise ConfigurationError(
                f"No Census API key configured. Set {API_KEY_ENV_VAR} or pass api_key."
            )
        self.api_key = str(self.api_key).strip()

        if self.cache_dir is not None:
            self.cache_dir = Path(self.cache_dir)

        if self.parallel_workers < 1:
            raise ConfigurationError("parallel_workers must be at least 1")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries cannot be negative")

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        **overrides
    ) -> "CensusConfig":
        """
        Build configuration from the environment.

        The process environment wins over the dotenv file.

        Args:
            env_file: Optional dotenv-format file holding CENSUS_API_KEY.
            **overrides: Any other CensusConfig field.

        Returns:
            CensusConfig instance.

        Raises:
            ConfigurationError: If no API key is found.
        """
        api_key = os.environ.get(API_KEY_ENV_VAR)

        if not api_key and env_file is not None:
            env_path = Path(env_file)
            if not env_path.exists():
                raise ConfigurationError(f"Config file not found: {env_path}")
            api_key = dotenv_values(env_path).get(API_KEY_ENV_VAR)
            if api_key:
                logger.debug(f"Loaded {API_KEY_ENV_VAR} from {env_path}")

        if not api_key:
            raise ConfigurationError(
                f"{API_KEY_ENV_VAR} not found in environment"
                + (f" or {env_file}" if env_file else "")
            )

        return cls(api_key=api_key, **overrides)
