"""Exporter configuration.

Two sources are combined:

- A YAML document (``--config``) describing the Jira server and the list of
  metrics to poll.  It is parsed with PyYAML and validated with pydantic.
- Environment variables (and an optional ``.env`` file) loaded with
  pydantic-settings.  These carry the secrets and process-level knobs that
  should not live in the YAML file.

Example YAML::

    baseURL: https://jira.example.com
    login: exporter
    httpHeaders:
      X-Atlassian-Token: no-check
    metrics:
      - name: open_bugs
        help: Open bugs per component
        jql: project = CORE AND type = Bug AND resolution IS EMPTY
        interval: 10m
        groupBy: components
        labels:
          team: core
"""

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import IO, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jiravars.errors import ConfigurationError

DEFAULT_INTERVAL = "5m"
DEFAULT_MAX_RESULTS = 100
METRIC_PREFIX = "jira_"

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class _LiteralScalarLoader(yaml.SafeLoader):
    """SafeLoader that keeps every plain scalar except null as its literal text.

    Label and header values must reach Jira and Prometheus exactly as
    written, so ``true``, ``no`` or ``0x1F`` stay strings.  pydantic coerces
    the numeric fields (``timeout``, ``maxResults``) from their text.
    """


_KEPT_RESOLVERS = {"tag:yaml.org,2002:null", "tag:yaml.org,2002:merge"}
_LiteralScalarLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag in _KEPT_RESOLVERS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def parse_duration(value: str) -> float:
    """Parse a Go-style duration string into seconds.

    Accepts a sequence of decimal numbers each followed by a unit, such as
    ``"300ms"``, ``"1.5h"`` or ``"2h45m"``.  The bare string ``"0"`` is
    also accepted.

    Raises:
        ValueError: If *value* is not a valid duration.
    """
    text = value.strip()
    if text == "0":
        return 0.0
    if not text:
        raise ValueError("empty duration")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART_RE.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    return total


def _stringify_mapping(value: Any) -> Any:
    # Explicitly tagged scalars (!!int 3) still arrive as non-strings.
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    return value


class MetricDefinition(BaseModel):
    """One search to poll and the gauge it is published as.

    Attributes:
        name: Unique identifier; the gauge is published as ``jira_<name>``.
        help: Help text of the gauge.
        jql: JQL query sent to the search API.  Not validated locally.
        interval: Polling interval as a Go-style duration string.
        labels: Static labels attached to every sample of the gauge.
        group_by: Issue field whose values the issues are counted by.
                  ``None`` publishes a single total instead.
        group_label: Label name used for the ``group_by`` values.
        max_results: Upper bound on the number of issues inspected per poll.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    help: str = ""
    jql: str
    interval: str = DEFAULT_INTERVAL
    labels: dict[str, str] = Field(default_factory=dict)
    group_by: str | None = Field(default=None, alias="groupBy")
    group_label: str | None = Field(default=None, alias="groupLabel")
    max_results: int = Field(default=DEFAULT_MAX_RESULTS, alias="maxResults", gt=0)

    @field_validator("help", mode="before")
    @classmethod
    def _none_help(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("interval", mode="before")
    @classmethod
    def _default_interval(cls, value: Any) -> Any:
        if value is None or value == "":
            return DEFAULT_INTERVAL
        return value

    @field_validator("interval")
    @classmethod
    def _check_interval(cls, value: str) -> str:
        if parse_duration(value) <= 0:
            raise ValueError(f"interval must be positive, got {value!r}")
        return value

    @field_validator("labels", mode="before")
    @classmethod
    def _coerce_labels(cls, value: Any) -> Any:
        return _stringify_mapping(value)

    @property
    def interval_seconds(self) -> float:
        """The polling interval in seconds."""
        return parse_duration(self.interval)

    @property
    def metric_name(self) -> str:
        """Name of the published gauge family."""
        return f"{METRIC_PREFIX}{self.name}"

    @property
    def label_name(self) -> str | None:
        """Name of the dynamic label, or ``None`` for an ungrouped metric."""
        if self.group_by is None:
            return None
        if self.group_label:
            return self.group_label
        if self.group_by == "components":
            return "component"
        return self.group_by


class ExporterConfig(BaseModel):
    """Top-level YAML configuration.

    Attributes:
        base_url: Root URL of the Jira server.
        login: User name for basic authentication.
        password: Password or API token.  Falls back to ``JIRA_PASSWORD``.
        http_headers: Static headers sent with every search request.
        timeout: Per-request timeout in seconds.
        metrics: The metric definitions to poll.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    base_url: str = Field(alias="baseURL")
    login: str
    password: str | None = None
    http_headers: dict[str, str] = Field(default_factory=dict, alias="httpHeaders")
    timeout: float = Field(default=10.0, gt=0)
    metrics: list[MetricDefinition] = Field(default_factory=list)

    @field_validator("http_headers", mode="before")
    @classmethod
    def _coerce_headers(cls, value: Any) -> Any:
        return _stringify_mapping(value)

    @field_validator("metrics", mode="before")
    @classmethod
    def _none_metrics(cls, value: Any) -> Any:
        return [] if value is None else value


class Settings(BaseSettings):
    """Environment-driven settings.

    Attributes:
        JIRA_PASSWORD: Password used when the YAML file does not set one.
        LOG_LEVEL: Minimum log level when ``--verbose`` is not given.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    JIRA_PASSWORD: str | None = None
    LOG_LEVEL: str = "INFO"


def parse_configuration(text: str) -> ExporterConfig:
    """Parse and validate a YAML configuration document.

    Raises:
        ConfigurationError: If the document is not valid YAML or does not
            describe a valid configuration.
    """
    try:
        raw = yaml.load(text, Loader=_LiteralScalarLoader)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"failed to parse config data: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("config data must be a mapping")

    try:
        return ExporterConfig.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(f"invalid configuration: {problems}") from exc


def load_configuration(path: str, stdin: IO[str] | None = None) -> ExporterConfig:
    """Read the configuration from *path*, or from standard input for ``-``.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid.
    """
    try:
        if path == "-":
            text = (stdin or sys.stdin).read()
        else:
            text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"failed to read {path}: {exc}") from exc
    return parse_configuration(text)


def apply_credentials(config: ExporterConfig, settings: Settings) -> ExporterConfig:
    """Return *config* with a password, falling back to the environment.

    Raises:
        ConfigurationError: If neither the file nor the environment sets one.
    """
    if config.password:
        return config
    if not settings.JIRA_PASSWORD:
        raise ConfigurationError("JIRA_PASSWORD environment variable not set")
    return config.model_copy(update={"password": settings.JIRA_PASSWORD})
