"""Configuration environment: ordered sources bound into a ClientConfig.

This module provides:
- Origin: Where a configuration value came from
- YamlFileSource / PropertiesFileSource / EnvironmentSource: Configuration sources
- ConfigEnvironment: Merges sources (earlier wins) and binds the ``client`` tree
- ConfigurationHolder: Owns the current configuration and reloads it

Keys are dotted kebab-case paths such as ``client.idp-credentials.client-secret``.
List elements use indexes in flat sources: ``client.customer[0].connector-id``.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from docsync.core.config import ClientConfig, ConfigurationError, validate_config
from docsync.core.properties import load_properties

logger = logging.getLogger(__name__)

ROOT_KEY = "client"
CLIENT_SECRET_KEY = "client.idp-credentials.client-secret"
YAML_SUFFIXES = (".yml", ".yaml")
PROPERTIES_SUFFIX = ".properties"

_SEGMENT = re.compile(r"^(?P<name>[^\[\]]+)(?P<indexes>(?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")
_MISSING = object()


@dataclass(frozen=True)
class Origin:
    """Origin of a configuration value.

    Attributes:
        description: Human readable origin, used in log and error messages.
        path: Backing file, or None if the value does not come from a file.
    """

    description: str
    path: Path | None = None

    @property
    def is_file(self) -> bool:
        """Check if the value comes from a file."""
        return self.path is not None

    def __str__(self) -> str:
        return self.description


def key_path(key: str) -> list[str | int]:
    """Split a dotted key into its segments, list indexes as ints.

    Raises:
        ConfigurationError: If a segment is malformed.
    """
    path: list[str | int] = []
    for segment in key.split("."):
        match = _SEGMENT.match(segment)
        if not match:
            raise ConfigurationError(f"Invalid configuration key: '{key}'")
        path.append(match["name"])
        path.extend(int(index) for index in _INDEX.findall(match["indexes"]))
    return path


def lookup(tree: Any, key: str) -> Any:
    """Get the value at a dotted key in a nested tree, or ``None`` if absent."""
    node = tree
    for part in key_path(key):
        if isinstance(part, int):
            if not isinstance(node, list) or part >= len(node):
                return None
            node = node[part]
        else:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
    return node


def unflatten(flat: Mapping[str, str]) -> dict[str, Any]:
    """Turn flat dotted keys into a nested tree.

    Raises:
        ConfigurationError: If a key is both a value and a parent of other keys.
    """
    root: dict[Any, Any] = {}
    for key, value in flat.items():
        path = key_path(key)
        node = root
        for part in path[:-1]:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                raise ConfigurationError(f"Conflicting configuration key: '{key}'")
        if isinstance(node.get(path[-1]), dict):
            raise ConfigurationError(f"Conflicting configuration key: '{key}'")
        node[path[-1]] = value
    return _to_lists(root)


def _to_lists(node: Any) -> Any:
    if not isinstance(node, dict):
        return node
    converted = {key: _to_lists(value) for key, value in node.items()}
    if converted and all(isinstance(key, int) for key in converted):
        return [converted[index] for index in sorted(converted)]
    return converted


def merge(high: Any, low: Any) -> Any:
    """Deep-merge two trees; values from ``high`` win and lists are not merged."""
    if not isinstance(high, dict) or not isinstance(low, dict):
        return high
    merged = dict(low)
    for key, value in high.items():
        merged[key] = merge(value, low[key]) if key in low else value
    return merged


# === Sources ===


class ConfigSource:
    """A source of configuration values."""

    name = "source"

    def load(self) -> dict[str, Any]:
        """Read the source into a nested tree."""
        raise NotImplementedError

    def origin_of(self, key: str) -> Origin | None:
        """Get the origin of a dotted key, or None if this source lacks it."""
        raise NotImplementedError


class YamlFileSource(ConfigSource):
    """Configuration read from a YAML file."""

    name = "yaml"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, Any]:
        """Read the YAML document.

        Raises:
            ConfigurationError: If the file cannot be read or is not a mapping.
        """
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file '{self.path}': {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in '{self.path}': {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file '{self.path}' is not a mapping")
        return data

    def origin_of(self, key: str) -> Origin | None:
        if lookup(self.load(), key) is None:
            return None
        return Origin(f"YAML file '{self.path}'", self.path)


class PropertiesFileSource(ConfigSource):
    """Configuration read from a ``key=value`` properties file."""

    name = "properties"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load_flat(self) -> dict[str, str]:
        """Read the file into flat dotted keys.

        Raises:
            ConfigurationError: If the file cannot be read.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file '{self.path}': {e}") from e
        return load_properties(text)

    def load(self) -> dict[str, Any]:
        return unflatten(self.load_flat())

    def origin_of(self, key: str) -> Origin | None:
        if key not in self.load_flat():
            return None
        return Origin(f"properties file '{self.path}'", self.path)


def _scalar_keys(model: type[BaseModel], prefix: str) -> list[str]:
    """List the dotted keys of every non-collection field below a model."""
    keys: list[str] = []
    for name, field in model.model_fields.items():
        key = f"{prefix}.{field.alias or name}"
        annotation = field.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            keys.extend(_scalar_keys(annotation, key))
        elif getattr(annotation, "__origin__", None) in (list, dict):
            continue
        else:
            keys.append(key)
    return keys


def environment_variable_name(key: str) -> str:
    """Map a dotted key to its environment variable name.

    ``client.idp-credentials.client-secret`` becomes
    ``CLIENT_IDP_CREDENTIALS_CLIENT_SECRET``.
    """
    return re.sub(r"[.\-]", "_", key).upper()


class EnvironmentSource(ConfigSource):
    """Configuration read from process environment variables.

    Only scalar settings can be set this way; connectors and other lists
    must come from a file.
    """

    name = "environment"

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ
        self._keys = _scalar_keys(ClientConfig, ROOT_KEY)

    def _values(self) -> dict[str, str]:
        values: dict[str, str] = {}
        for key in self._keys:
            value = self._environ.get(environment_variable_name(key))
            if value is not None:
                values[key] = value
        return values

    def load(self) -> dict[str, Any]:
        return unflatten(self._values())

    def origin_of(self, key: str) -> Origin | None:
        variable = environment_variable_name(key)
        if variable not in self._environ:
            return None
        return Origin(f"environment variable '{variable}'")


def source_for_file(path: Path) -> ConfigSource:
    """Create the source matching a configuration file's extension.

    Raises:
        ConfigurationError: If the extension is not supported.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in YAML_SUFFIXES:
        return YamlFileSource(path)
    if suffix == PROPERTIES_SUFFIX:
        return PropertiesFileSource(path)
    raise ConfigurationError(f"Unsupported configuration file type: '{path}'")


# === Environment ===


def _describe_errors(error: ValidationError) -> list[str]:
    return [
        f"{ROOT_KEY}.{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in error.errors()
    ]


class ConfigEnvironment:
    """Ordered configuration sources; earlier sources take precedence."""

    def __init__(self, sources: Sequence[ConfigSource]) -> None:
        self.sources = list(sources)

    @classmethod
    def from_files(
        cls,
        files: Sequence[Path],
        environ: Mapping[str, str] | None = None,
        use_environment: bool = True,
    ) -> ConfigEnvironment:
        """Build an environment from configuration files.

        Environment variables come first, then the files in the given order.

        Args:
            files: YAML or properties files.
            environ: Environment mapping (defaults to ``os.environ``).
            use_environment: Include environment variables as a source.
        """
        sources: list[ConfigSource] = []
        if use_environment:
            sources.append(EnvironmentSource(environ))
        sources.extend(source_for_file(f) for f in files)
        return cls(sources)

    def tree(self) -> dict[str, Any]:
        """Read every source and merge the results."""
        merged: dict[str, Any] = {}
        for source in reversed(self.sources):
            merged = merge(source.load(), merged)
        return merged

    def load(self) -> ClientConfig:
        """Bind the merged ``client`` tree into a configuration.

        Raises:
            ConfigurationError: If the tree is missing or does not bind.
        """
        data = self.tree().get(ROOT_KEY)
        if not isinstance(data, dict):
            raise ConfigurationError(f"No '{ROOT_KEY}' configuration found")
        try:
            return ClientConfig.model_validate(data)
        except ValidationError as exc:
            problems = _describe_errors(exc)
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(problems)}", problems
            ) from exc

    def origins_of(self, key: str) -> list[Origin]:
        """Get the distinct origins of a dotted key across all sources."""
        origins: list[Origin] = []
        for source in self.sources:
            try:
                origin = source.origin_of(key)
            except ConfigurationError as e:
                logger.warning("Cannot inspect %s source for '%s': %s", source.name, key, e)
                continue
            if origin is not None and origin not in origins:
                origins.append(origin)
        return origins


ReloadListener = Callable[[ClientConfig], None]


class ConfigurationHolder:
    """Owns the current configuration.

    A reload binds and validates a complete new configuration before
    swapping it in; a failed reload leaves the previous one in force.
    """

    def __init__(self, environment: ConfigEnvironment) -> None:
        """Initialize the holder and bind the initial configuration.

        Raises:
            ConfigurationError: If the initial configuration does not bind.
        """
        self.environment = environment
        self._lock = threading.Lock()
        self._listeners: list[ReloadListener] = []
        self._current = environment.load()

    @property
    def current(self) -> ClientConfig:
        """Get the configuration in force."""
        with self._lock:
            return self._current

    def add_listener(self, listener: ReloadListener) -> None:
        """Register a callback run with the new configuration after each reload."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ReloadListener) -> None:
        """Unregister a reload callback."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def reload(self, prepare: Callable[[ClientConfig], None] | None = None) -> ClientConfig:
        """Re-read every source, validate and swap in the new configuration.

        Args:
            prepare: Runs on the bound configuration before it is validated,
                e.g. to create folders it names.

        Returns:
            The new configuration.

        Raises:
            ConfigurationError: If the new configuration is invalid or
                preparing it failed.
        """
        config = self.environment.load()
        if prepare is not None:
            prepare(config)
        problems = validate_config(config)
        if problems:
            raise ConfigurationError(
                f"Reloaded configuration is invalid: {'; '.join(problems)}", problems
            )

        with self._lock:
            self._current = config
        logger.info("Configuration reloaded")

        for listener in list(self._listeners):
            try:
                listener(config)
            except Exception:
                logger.exception("Configuration reload listener failed")
        return config
