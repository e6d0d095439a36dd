"""Loading of YAML run configurations."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml

from isiclim import ISICLIM_PACKAGE_DIR
from isiclim.catalog.cutout import BoundingBox
from isiclim.errors import ConfigurationError

DEFAULT_CONFIG: Path = ISICLIM_PACKAGE_DIR / "reasonable_default_config.yml"


class DetectDuplicateKeysYamlLoader(yaml.SafeLoader):
    """YAML loader that refuses mappings with duplicate keys.

    Raises:
        ValueError: If a duplicate key is found in the YAML mapping.
    """

    def construct_mapping(
        self, node: yaml.nodes.MappingNode, deep: bool = False
    ) -> dict:
        mapping = {}
        for key_node, value_node in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in mapping:
                raise ValueError(f"Duplicate key found: {key}")
            mapping[key] = self.construct_object(value_node, deep=deep)
        return mapping


def merge_config(base: dict, override: dict) -> dict:
    """Recursively merge two configurations.

    Nested dictionaries are merged key by key, any other value in `override` replaces
    the value in `base`. Neither input is modified.

    Args:
        base: The configuration to start from.
        override: The configuration whose values take precedence.

    Returns:
        The merged configuration.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML file into a dictionary.

    Raises:
        ConfigurationError: If the file does not exist, is not valid YAML or has no mapping at the top level.
    """
    try:
        with open(path, "r") as stream:
            config = yaml.load(stream, Loader=DetectDuplicateKeysYamlLoader)
    except (OSError, yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(
            f"Cannot read configuration file: {e}", parameters={"path": str(path)}
        ) from e
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError(
            "Configuration file must contain a mapping", parameters={"path": str(path)}
        )
    return config


def parse_config(
    config_path: dict | Path | str, current_directory: Path | None = None
) -> dict[str, Any]:
    """Parse a configuration, resolving any 'inherits' keys.

    The file named by 'inherits' is read first (environment variables in its path are
    expanded, relative paths are relative to the inheriting file) and the inheriting
    configuration is merged over it.

    Args:
        config_path: Path to the config file or a dict with the config.
        current_directory: Directory relative paths are resolved against.
            If None, the current working directory is used.

    Returns:
        The configuration without any remaining 'inherits' keys.
    """
    if current_directory is None:
        current_directory = Path.cwd()

    if isinstance(config_path, dict):
        config = copy.deepcopy(config_path)
    else:
        config = read_yaml(current_directory / config_path)
        current_directory = (current_directory / Path(config_path)).parent

    if "inherits" in config:
        inherit_path = Path(os.path.expandvars(config.pop("inherits")))
        if not inherit_path.is_absolute():
            inherit_path = current_directory / inherit_path
        inherited = parse_config(inherit_path.name, current_directory=inherit_path.parent)
        config = merge_config(inherited, config)
    return config


def load_config(config_path: dict | Path | str) -> dict[str, Any]:
    """Load a run configuration on top of the package defaults.

    Args:
        config_path: Path to the config file or a dict with the config.

    Returns:
        The complete configuration.

    Raises:
        ConfigurationError: If a mandatory setting is missing or a setting is invalid.
    """
    config = merge_config(parse_config(DEFAULT_CONFIG), parse_config(config_path))

    if not config.get("query"):
        raise ConfigurationError("The configuration must contain a 'query' section")
    climatology = config.get("climatology", {})
    for key in ("start_year", "end_year"):
        if not isinstance(climatology.get(key), int):
            raise ConfigurationError(
                f"climatology.{key} must be set to a year",
                parameters={key: climatology.get(key)},
            )
    if climatology["start_year"] > climatology["end_year"]:
        raise ConfigurationError(
            "climatology.start_year must not be after climatology.end_year",
            parameters={
                "start_year": climatology["start_year"],
                "end_year": climatology["end_year"],
            },
        )
    if climatology.get("format", "nc") not in ("nc", "csv"):
        raise ConfigurationError(
            "climatology.format must be 'nc' or 'csv'",
            parameters={"format": climatology.get("format")},
        )

    bbox = (config.get("cutout") or {}).get("bbox")
    if bbox is not None:
        try:
            BoundingBox.from_list(bbox)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"cutout.bbox is not a valid [south, north, west, east] box: {e}",
                parameters={"bbox": bbox},
            ) from e
    return config
