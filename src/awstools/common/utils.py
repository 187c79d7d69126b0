"""File loading and logging helpers shared by the command line tools."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

YAML_SUFFIXES = (".yaml", ".yml")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigurationError(Exception):
    """Raised when a configuration file is missing or invalid."""

    pass


def load_json(filename: Union[str, Path]) -> Any:
    """Load a JSON document from a file.

    Args:
        filename: Path to the JSON file

    Returns:
        Decoded document

    Raises:
        ConfigurationError: When the file cannot be read or parsed
    """
    try:
        with open(filename, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Invalid JSON in configuration file {filename}: {e}"
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Unable to read configuration file {filename}: {e}"
        ) from e


def load_yaml(filename: Union[str, Path]) -> Any:
    """Load a YAML document from a file.

    Args:
        filename: Path to the YAML file

    Returns:
        Decoded document, an empty dict for an empty file

    Raises:
        ConfigurationError: When the file cannot be read or parsed
    """
    try:
        with open(filename, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in configuration file {filename}: {e}"
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Unable to read configuration file {filename}: {e}"
        ) from e


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for a command line tool."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )
    if verbose:
        # botocore DEBUG output dumps every request and response
        logging.getLogger("botocore").setLevel(logging.INFO)
