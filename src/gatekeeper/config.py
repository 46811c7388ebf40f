"""Enforcer configuration.

Configuration is a plain dataclass that can be built in code, from a
mapping, from a YAML/JSON file, or from prefixed environment variables:

    GATEKEEPER_ENABLED=false
    GATEKEEPER_MAX_HIERARCHY_LEVEL=5
    GATEKEEPER_BATCH_PARALLEL_THRESHOLD=32

Example:
    >>> config = EnforcerConfig.from_env()
    >>> enforcer = Enforcer(model, config=config)
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from gatekeeper.core import GatekeeperError


class ConfigError(GatekeeperError):
    """Raised when configuration cannot be loaded or is invalid."""
    pass


_TRUE_VALUES = ("true", "yes", "1", "on")
_FALSE_VALUES = ("false", "no", "0", "off")


@dataclass
class EnforcerConfig:
    """Configuration for the Enforcer."""

    # When disabled every enforce call allows
    enabled: bool = True

    # Keep the role graph in sync on grouping policy writes
    auto_build_role_links: bool = True

    # Maximum inheritance hops for role lookups
    max_hierarchy_level: int = 10

    # Batches larger than this run on a thread pool
    batch_parallel_threshold: int = 10
    max_workers: int | None = None

    log_decisions: bool = False

    def __post_init__(self) -> None:
        if self.max_hierarchy_level < 0:
            raise ConfigError("max_hierarchy_level must be non-negative")
        if self.batch_parallel_threshold < 0:
            raise ConfigError("batch_parallel_threshold must be non-negative")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EnforcerConfig":
        """Create a config from a mapping. Unknown keys are rejected."""
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**{key: _coerce(key, known[key].type, value) for key, value in data.items()})

    @classmethod
    def from_file(cls, path: str | Path) -> "EnforcerConfig":
        """Load a config from a YAML or JSON file.

        The settings may sit at the top level or under an ``enforcer`` key.
        """
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
            if path.suffix.lower() == ".json":
                data = json.loads(content)
            else:
                data = yaml.safe_load(content) or {}
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e

        if not isinstance(data, Mapping):
            raise ConfigError(f"Config file {path} must contain a mapping")
        section = data.get("enforcer", data)
        return cls.from_dict(section)

    @classmethod
    def from_env(
        cls,
        prefix: str = "GATEKEEPER_",
        environ: Mapping[str, str] | None = None,
    ) -> "EnforcerConfig":
        """Create a config from environment variables named ``<prefix><FIELD>``."""
        environ = os.environ if environ is None else environ
        names = {f.name for f in fields(cls)}
        data = {}
        for key, value in environ.items():
            if key.startswith(prefix):
                name = key[len(prefix):].lower()
                if name in names:
                    data[name] = value
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _coerce(name: str, annotation: Any, value: Any) -> Any:
    """Coerce a raw value (often an environment string) to the field type."""
    kind = str(annotation)
    if not isinstance(value, str):
        if kind == "bool" and not isinstance(value, bool):
            raise ConfigError(f"'{name}' must be a boolean, got {value!r}")
        return value

    text = value.strip().lower()
    if kind == "bool":
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ConfigError(f"'{name}' must be a boolean, got {value!r}")

    if kind.startswith("int"):
        if "None" in kind and text in ("", "none", "null"):
            return None
        try:
            return int(text)
        except ValueError as e:
            raise ConfigError(f"'{name}' must be an integer, got {value!r}") from e

    return value
