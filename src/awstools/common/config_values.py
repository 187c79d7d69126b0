"""Configuration values backed by AWS secret and parameter stores.

A configuration mapping may contain placeholders that point at KMS
ciphertexts, SSM parameters, Secrets Manager secrets or local files. A
placeholder is recognised either by a key prefix::

    {"SSM_DB_HOST": "/prod/db/host"}

or by a value prefix::

    {"db_password": "secrets-manager://prod/db"}

ConfigValues turns a mapping into a tree of literals and Source
placeholders, then resolves the placeholders against AWS on refresh.
"""

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .kms import KMSError, decrypt_with_kms
from .utils import YAML_SUFFIXES, load_json, load_yaml

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY = 2
SSM_PATH_WILDCARD = "/*"


class ConfigValuesError(Exception):
    """Base exception for configuration value operations."""

    pass


class SourceResolutionError(ConfigValuesError):
    """Raised when a placeholder cannot be resolved."""

    pass


class ConfigRefreshError(ConfigValuesError):
    """Raised when every refresh attempt failed."""

    pass


class SourceType(str, Enum):
    """Providers a placeholder can be resolved from."""

    KMS = "KMS"
    SSM = "SSM"
    SECRETS_MANAGER = "SECRETS_MANAGER"
    FILE = "FILE"


# Scanned in declaration order, first match wins
DEFAULT_KEY_PREFIXES = {
    SourceType.KMS: "KMS_",
    SourceType.SSM: "SSM_",
    SourceType.SECRETS_MANAGER: "SECRETS_MANAGER_",
    SourceType.FILE: "FILE_",
}

DEFAULT_VALUE_PREFIXES = {
    SourceType.KMS: "kms://",
    SourceType.SSM: "ssm://",
    SourceType.SECRETS_MANAGER: "secrets-manager://",
    SourceType.FILE: "file://",
}


@dataclass(frozen=True)
class Source:
    """Placeholder for a value held by an external provider.

    An empty name marks a source whose mapping result is merged into the
    enclosing level instead of being nested under its own key.
    """

    type: SourceType
    name: str
    identifier: str


class RefreshState:
    """Clients shared by all placeholders of a single refresh.

    Each client is created on first use so that a refresh only talks to the
    services its placeholders need.
    """

    SERVICE_NAMES = {
        SourceType.SSM: "ssm",
        SourceType.SECRETS_MANAGER: "secretsmanager",
        SourceType.KMS: "kms",
    }

    def __init__(self, session: Optional[boto3.Session]) -> None:
        self.session = session
        self._clients: Dict[SourceType, Any] = {}

    def client(self, source_type: SourceType):
        """Get the client for a provider, creating it on first use."""
        if source_type not in self._clients:
            if self.session is None:
                raise ConfigValuesError(
                    f"An AWS session is required to resolve {source_type.value} values"
                )
            self._clients[source_type] = self.session.client(
                self.SERVICE_NAMES[source_type]
            )
        return self._clients[source_type]


class ConfigValues:
    """Placeholder tree with AWS-backed resolution.

    The tree is built once from a file or mapping and only replaced by
    clear() or set_from_map(); refresh() never mutates it.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        """Initialize an empty configuration.

        Args:
            max_retries: Number of refresh attempts made by
                         refresh_with_retries
            retry_delay: Base delay in seconds, doubled before each wait
        """
        self.static: Dict[str, Any] = {}
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.key_prefixes: Dict[SourceType, str] = dict(DEFAULT_KEY_PREFIXES)
        self.value_prefixes: Dict[SourceType, str] = dict(
            DEFAULT_VALUE_PREFIXES
        )

    def clear(self) -> None:
        """Drop all values and placeholders."""
        self.static = {}

    def set_from_json(self, filename: Union[str, Path]) -> None:
        """Load values from a JSON file.

        Raises:
            ConfigurationError: When the file cannot be read or parsed
            ConfigValuesError: When the document is not a mapping
        """
        self.set_from_map(self._require_mapping(load_json(filename), filename))

    def set_from_yaml(self, filename: Union[str, Path]) -> None:
        """Load values from a YAML file.

        Raises:
            ConfigurationError: When the file cannot be read or parsed
            ConfigValuesError: When the document is not a mapping
        """
        self.set_from_map(self._require_mapping(load_yaml(filename), filename))

    def set_from_file(self, filename: Union[str, Path]) -> None:
        """Load values from a JSON or YAML file, chosen by file suffix."""
        if Path(filename).suffix.lower() in YAML_SUFFIXES:
            self.set_from_yaml(filename)
        else:
            self.set_from_json(filename)

    @staticmethod
    def _require_mapping(document: Any, filename: Union[str, Path]) -> Dict:
        if not isinstance(document, dict):
            raise ConfigValuesError(
                f"Configuration file {filename} must contain a mapping at the top level"
            )
        return document

    def set_from_map(self, values: Dict[str, Any]) -> None:
        """Replace the placeholder tree with one generated from values."""
        self.static = self.generate_from_map(values)

    def generate_from_map(self, src: Dict[str, Any]) -> Dict[str, Any]:
        """Build a placeholder tree from a nested mapping.

        Args:
            src: Mapping of keys to literals, nested mappings or
                 provider-prefixed placeholders

        Returns:
            New mapping where recognised placeholders are Source instances
        """
        dst: Dict[str, Any] = {}

        for key, value in src.items():
            if isinstance(value, dict):
                dst[key] = self.generate_from_map(value)
            elif isinstance(value, str):
                dst_key, resolved = self._recognize(key, value)
                dst[dst_key] = resolved
            else:
                dst[key] = value

        return dst

    def _recognize(self, key: str, value: str):
        for source_type, prefix in self.key_prefixes.items():
            if key.startswith(prefix):
                remainder = key[len(prefix):]
                name = "" if remainder.startswith("_") else remainder
                return remainder, Source(source_type, name, value)

        for source_type, prefix in self.value_prefixes.items():
            if value.startswith(prefix):
                return key, Source(source_type, key, value[len(prefix):])

        return key, value

    def is_refreshable(self) -> bool:
        """Whether any placeholder needs resolving."""
        return _contains_source(self.static)

    def refresh(self, session: Optional[boto3.Session]) -> Dict[str, Any]:
        """Resolve every placeholder once.

        Args:
            session: boto3 session the provider clients are created from

        Returns:
            Resolved configuration mapping

        Raises:
            SourceResolutionError: When any placeholder fails to resolve
            ConfigValuesError: When an AWS placeholder is met without a session
        """
        return refresh_map(self.static, RefreshState(session))

    def refresh_with_retries(
        self, session: Optional[boto3.Session]
    ) -> Dict[str, Any]:
        """Resolve every placeholder, retrying the whole refresh on failure.

        Args:
            session: boto3 session the provider clients are created from

        Returns:
            Resolved configuration mapping

        Raises:
            ConfigRefreshError: When all max_retries attempts failed
            ConfigValuesError: When an AWS placeholder is met without a session
        """
        wait = self.retry_delay
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return self.refresh(session)
            except SourceResolutionError as e:
                last_error = e
                logger.warning(
                    f"Config refresh attempt {attempt}/{self.max_retries} failed: {e}"
                )

            if attempt < self.max_retries:
                wait = wait * 2
                time.sleep(wait)

        raise ConfigRefreshError("Failed to refresh config") from last_error


def _contains_source(tree: Dict[str, Any]) -> bool:
    for value in tree.values():
        if isinstance(value, Source):
            return True
        if isinstance(value, dict) and _contains_source(value):
            return True
    return False


def refresh_map(src: Dict[str, Any], state: RefreshState) -> Dict[str, Any]:
    """Resolve the placeholders of a tree built by generate_from_map.

    Args:
        src: Placeholder tree
        state: Clients shared across the refresh

    Returns:
        New mapping with every Source replaced by its value

    Raises:
        SourceResolutionError: When any placeholder fails to resolve
    """
    dst: Dict[str, Any] = {}

    for key, value in src.items():
        if isinstance(value, dict):
            dst[key] = refresh_map(value, state)
        elif isinstance(value, Source):
            resolved = resolve_source(value, state)
            if not value.name and isinstance(resolved, dict):
                dst.update(convert_map(resolved, ""))
            else:
                dst[key] = resolved
        else:
            dst[key] = value

    return dst


def resolve_source(source: Source, state: RefreshState) -> Union[str, Dict[str, str]]:
    """Fetch the value a placeholder points at.

    Raises:
        SourceResolutionError: When the provider call fails
    """
    try:
        if source.type == SourceType.FILE:
            return read_file(source.identifier)

        client = state.client(source.type)
        if source.type == SourceType.SSM:
            if source.identifier.endswith(SSM_PATH_WILDCARD):
                path = source.identifier[: -len(SSM_PATH_WILDCARD)]
                return ssm_get_parameters_by_path(client, path)
            return ssm_get_parameter(client, source.identifier)
        if source.type == SourceType.SECRETS_MANAGER:
            return secrets_manager_get_secret_value(client, source.identifier)
        if source.type == SourceType.KMS:
            return decrypt_with_kms(client, source.identifier).decode("utf-8")
    except (ClientError, BotoCoreError, KMSError, OSError, UnicodeDecodeError) as e:
        raise SourceResolutionError(
            f"Failed to resolve {source.type.value} value {source.name!r}: {e}"
        ) from e

    raise SourceResolutionError(f"Unknown source type: {source.type}")


def read_file(path: str) -> str:
    """Read the exact contents of a file.

    Bytes that are not valid UTF-8 are kept as surrogate escapes, so
    encoding the result with errors="surrogateescape" gives back the file.
    """
    with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def ssm_get_parameter(client, name: str) -> str:
    """Fetch one decrypted SSM parameter value."""
    response = client.get_parameter(Name=name, WithDecryption=True)
    return response["Parameter"]["Value"]


def ssm_get_parameters_by_path(client, path: str) -> Dict[str, str]:
    """Fetch all decrypted SSM parameters directly under a path.

    Returns:
        Mapping of the last segment of each parameter name to its value
    """
    result: Dict[str, str] = {}
    paginator = client.get_paginator("get_parameters_by_path")

    for page in paginator.paginate(Path=path, WithDecryption=True):
        for parameter in page.get("Parameters", []):
            key = parameter["Name"].split("/")[-1]
            result[key] = parameter["Value"]

    logger.debug(f"Loaded {len(result)} parameters under {path}")
    return result


def secrets_manager_get_secret_value(client, secret_id: str) -> Dict[str, str]:
    """Fetch the current version of a secret holding a JSON object of strings.

    Binary secrets are expected to hold the base64 encoded JSON document.

    Raises:
        SourceResolutionError: When the secret is not a JSON object of strings
    """
    response = client.get_secret_value(
        SecretId=secret_id, VersionStage="AWSCURRENT"
    )

    if response.get("SecretString") is not None:
        content = response["SecretString"]
    else:
        try:
            content = base64.b64decode(response["SecretBinary"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise SourceResolutionError(
                f"Secret {secret_id} binary is not valid base64: {e}"
            ) from e

    try:
        values = json.loads(content)
    except ValueError as e:
        raise SourceResolutionError(
            f"Secret {secret_id} is not valid JSON: {e}"
        ) from e

    if not isinstance(values, dict) or not all(
        isinstance(value, str) for value in values.values()
    ):
        raise SourceResolutionError(
            f"Secret {secret_id} must be a JSON object of strings"
        )
    return values


def convert_map(source: Dict[str, str], prefix: str) -> Dict[str, str]:
    """Upper-case the keys of a flat map, prefixing them when prefix is set."""
    result = {}
    for key, value in source.items():
        if prefix:
            result[f"{prefix}_{key.upper()}"] = value
        else:
            result[key.upper()] = value
    return result


def to_environment(resolved: Dict[str, Any]) -> Dict[str, str]:
    """Flatten a resolved configuration into environment variables.

    Nested mappings are folded into their parent key with convert_map.
    Non-string scalars and lists are JSON encoded, None becomes empty.
    """
    env: Dict[str, str] = {}

    for key, value in resolved.items():
        if isinstance(value, dict):
            env.update(convert_map(to_environment(value), key))
        elif isinstance(value, str):
            env[key] = value
        elif value is None:
            env[key] = ""
        else:
            env[key] = json.dumps(value, default=str)

    return env
