"""
Config stores configuration for the query engine, used by the CLI layer to build a
QueryOrchestrator and the options for each run.

Example:
{
    'cache': {
        'directory': '~/.cache/athena-cache',
        'freshness_window': '1h',
    },
    'athena': {
        'database': 'analytics',
        'workgroup': 'primary',
        'catalog': 'AwsDataCatalog',
        'output_location': 's3://aws-athena-query-results/',
    },
    'aws': {
        'region_name': 'eu-west-1',
        # Passed through to boto3.client(...)
    },
    'run': {
        'use_cache': True,
        'poll_interval_floor': 0.5,
        'poll_interval_cap': '10s',
        'timeout': '15m',
    }
}
"""
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from core.cache_data_model import DEFAULT_CATALOG, QueryRequest
from core.errors import ConfigError

DEFAULT_OUTPUT_LOCATION = "s3://aws-athena-query-results/"
DEFAULT_WORKGROUP = "primary"
DEFAULT_REGION = "eu-west-1"

_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)")


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse seconds or a humantime-style string ("90s", "30m", "1h30m") into seconds"""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"Duration must not be negative: {value!r}")
        return float(value)

    text = value.strip().lower()
    try:
        return parse_duration(float(text))
    except ValueError:
        pass

    compact = text.replace(" ", "")
    parts = _DURATION_PART.findall(compact)
    if not parts or "".join(n + u for n, u in parts) != compact:
        raise ConfigError(f"Invalid duration: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


@dataclass
class RunOptions:
    """Flat per-run knobs. Durations are seconds."""
    use_cache: bool = True
    cache_freshness_window: float = 3600.0
    poll_interval_floor: float = 0.5
    poll_interval_cap: float = 10.0
    timeout: float = 900.0
    poll_jitter: float = 0.2
    max_poll_retries: int = 3
    result_reuse_minutes: Optional[int] = None

    def __post_init__(self):
        for name in ("cache_freshness_window", "poll_interval_floor", "poll_interval_cap", "timeout"):
            setattr(self, name, parse_duration(getattr(self, name)))
        if self.poll_interval_floor <= 0:
            raise ConfigError("poll_interval_floor must be positive")
        if self.poll_interval_cap < self.poll_interval_floor:
            raise ConfigError("poll_interval_cap must be >= poll_interval_floor")
        if not 0 <= self.poll_jitter <= 1:
            raise ConfigError("poll_jitter must be between 0 and 1")
        if self.max_poll_retries < 0:
            raise ConfigError("max_poll_retries must not be negative")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "RunOptions":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigError(f"Unknown run options: {sorted(unknown)}")
        return cls(**values)


def default_cache_directory() -> Path:
    base = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return Path(base) / "athena-cache"


@dataclass
class CacheConfig:
    """Engine configuration assembled from a nested dict (see module docstring)"""
    cache_directory: Path = field(default_factory=default_cache_directory)
    freshness_window: float = 3600.0
    database: Optional[str] = None
    workgroup: Optional[str] = None
    catalog: Optional[str] = None
    output_location: Optional[str] = None
    aws: Dict[str, Any] = field(default_factory=dict)
    run: RunOptions = field(default_factory=RunOptions)

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "CacheConfig":
        cache = config.get("cache", {})
        athena = config.get("athena", {})
        run = dict(config.get("run", {}))
        freshness = parse_duration(cache.get("freshness_window", 3600))
        run.setdefault("cache_freshness_window", freshness)

        directory = cache.get("directory")
        return cls(
            cache_directory=Path(directory).expanduser() if directory else default_cache_directory(),
            freshness_window=freshness,
            database=athena.get("database"),
            workgroup=athena.get("workgroup"),
            catalog=athena.get("catalog"),
            output_location=athena.get("output_location"),
            aws=dict(config.get("aws", {})),
            run=RunOptions.from_dict(run),
        )

    def boto3_kwargs(self) -> Dict[str, Any]:
        kwargs = dict(self.aws)
        if "region_name" not in kwargs:
            kwargs["region_name"] = os.environ.get("AWS_REGION", DEFAULT_REGION)
        return kwargs

    def build_request(self, sql: str,
                      database: Optional[str] = None,
                      workgroup: Optional[str] = None,
                      output_location: Optional[str] = None,
                      catalog: Optional[str] = None) -> QueryRequest:
        """Resolve the request context: explicit argument > environment > config > default"""
        env = os.environ
        resolved_database = database or env.get("AWS_ATHENA_DATABASE") or self.database
        if not resolved_database:
            raise ConfigError("Database name is required but was not provided")

        return QueryRequest(
            sql=sql,
            database=resolved_database,
            workgroup=workgroup or env.get("AWS_ATHENA_WORKGROUP") or self.workgroup or DEFAULT_WORKGROUP,
            output_location=(output_location or env.get("AWS_ATHENA_OUTPUT_LOCATION")
                             or self.output_location or DEFAULT_OUTPUT_LOCATION),
            catalog=catalog or env.get("AWS_ATHENA_CATALOG") or self.catalog or DEFAULT_CATALOG,
        )
