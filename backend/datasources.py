import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from durations import BadParameter, format_duration, format_time, parse_compact_duration, parse_rfc3339

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the configuration file cannot be loaded."""


@dataclass(frozen=True)
class Datasource:
    url: str
    resolution: int  # ns between stored samples
    retention: int = 0  # ns, 0 means unlimited
    start_time: Optional[int] = None  # ns since epoch, not used for routing

    def __str__(self):
        parts = [f"url={self.url}", f"resolution={format_duration(self.resolution)}"]
        if self.retention:
            parts.append(f"retention={format_duration(self.retention)}")
        if self.start_time is not None:
            parts.append(f"startTime={format_time(self.start_time)}")
        return " ".join(parts)


class DatasourceEntry(BaseModel):
    """Schema for one entry of the `datasources` list."""
    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    resolution: str = Field(min_length=1)
    retention: Optional[str] = None
    startTime: Optional[str] = None


class ConfigFile(BaseModel):
    """Schema for the whole configuration file."""
    model_config = ConfigDict(extra="forbid")

    datasources: List[DatasourceEntry] = Field(min_length=1)


@dataclass(frozen=True)
class Config:
    datasources: Tuple[Datasource, ...]


def _parse_entry(index: int, entry: DatasourceEntry) -> Datasource:
    where = f"datasources[{index}]"

    parts = urlsplit(entry.url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"{where}.url: expected an absolute http(s) URL, got {entry.url!r}")

    try:
        resolution = parse_compact_duration(entry.resolution)
    except BadParameter as e:
        raise ConfigError(f"{where}.resolution: {e}") from None

    retention = 0
    if entry.retention:
        try:
            retention = parse_compact_duration(entry.retention)
        except BadParameter as e:
            raise ConfigError(f"{where}.retention: {e}") from None

    start_time = None
    if entry.startTime:
        try:
            start_time = parse_rfc3339(entry.startTime)
        except BadParameter as e:
            raise ConfigError(f"{where}.startTime: {e}") from None

    return Datasource(url=entry.url, resolution=resolution, retention=retention, start_time=start_time)


def parse_config(data) -> Config:
    """
    Validate already-decoded YAML data and turn it into a Config.

    Args:
        data: The object produced by the YAML loader, with string scalars

    Returns:
        Config: Datasources in file order
    """
    try:
        raw = ConfigFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from None

    return Config(datasources=tuple(_parse_entry(i, entry) for i, entry in enumerate(raw.datasources)))


def load_config(path: str) -> Config:
    """Read and validate a YAML configuration file."""
    try:
        with open(path, "r") as f:
            # BaseLoader keeps every scalar a string, so "startTime" and
            # "resolution: 0" reach the parsers unconverted
            data = yaml.load(f, Loader=yaml.BaseLoader)
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {path}: {e}") from None

    config = parse_config(data)
    logger.debug("Loaded %d datasources from %s", len(config.datasources), path)
    return config
