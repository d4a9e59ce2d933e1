"""
Configuration for MongoDB Diff Runs

Loads run settings from a YAML file, overlays MONGODIFF_* environment
variables, and optionally resolves connection strings from Vault.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional

import yaml

from mongodiff.utils.vault_client import VaultClient

logger = logging.getLogger(__name__)

ENV_PREFIX = "MONGODIFF_"


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""
    pass


@dataclass
class DiffConfig:
    """Settings for a diff or retry run."""

    source_uri: Optional[str] = None
    dest_uri: Optional[str] = None
    include_namespaces: List[str] = field(default_factory=list)
    threads: int = 8
    batch_size: int = 10000
    status_db_uri: Optional[str] = None
    status_db_name: str = "mongodiff"
    status_coll_name: str = "diff_status"
    report_interval: float = 5.0
    submit_timeout: float = 300.0
    metrics_port: Optional[int] = None
    vault_path: Optional[str] = None

    def validate(self, clusters: bool = True) -> "DiffConfig":
        """
        Check required settings and value ranges.

        Args:
            clusters: Require source_uri and dest_uri; commands that only
                read the status store need just status_uri

        Raises:
            ConfigError: On the first invalid setting
        """
        if clusters and not self.source_uri:
            raise ConfigError("source_uri is required")
        if clusters and not self.dest_uri:
            raise ConfigError("dest_uri is required")
        if not self.status_uri:
            raise ConfigError("status_db_uri or dest_uri is required")
        if self.threads < 1:
            raise ConfigError(f"threads must be at least 1, got {self.threads}")
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.report_interval <= 0:
            raise ConfigError(f"report_interval must be positive, got {self.report_interval}")
        if self.submit_timeout <= 0:
            raise ConfigError(f"submit_timeout must be positive, got {self.submit_timeout}")

        for ns in self.include_namespaces:
            database_name, _, collection_name = ns.partition(".")
            if not database_name or not collection_name:
                raise ConfigError(f"Invalid namespace {ns!r}, expected 'db.collection'")

        return self

    @property
    def status_uri(self) -> Optional[str]:
        """Status store connection string, defaulting to the destination cluster."""
        return self.status_db_uri or self.dest_uri

    def resolve_secrets(self, vault) -> "DiffConfig":
        """
        Fill connection strings from the Vault secret at vault_path.

        The secret may hold source_uri, dest_uri and status_db_uri; values
        already set are kept.

        Args:
            vault: VaultClient instance
        """
        if not self.vault_path:
            return self

        uris = vault.connection_uris(self.vault_path)
        for name in ("source_uri", "dest_uri", "status_db_uri"):
            if not getattr(self, name) and uris.get(name):
                setattr(self, name, uris[name])

        logger.info(f"Resolved connection strings from Vault path {self.vault_path}")
        return self


def _coerce(name: str, raw: Any) -> Any:
    if name == "include_namespaces":
        if raw is None:
            return []
        if isinstance(raw, str):
            return [ns.strip() for ns in raw.split(",") if ns.strip()]
        if not isinstance(raw, list):
            raise ConfigError(f"include_namespaces must be a list, got {type(raw).__name__}")
        return [str(ns) for ns in raw]

    if raw is None:
        return None

    if name in ("threads", "batch_size", "metrics_port"):
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {raw!r}") from None

    if name in ("report_interval", "submit_timeout"):
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a number, got {raw!r}") from None

    return str(raw)


def load_config(
    path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> DiffConfig:
    """
    Build a DiffConfig from file, environment and explicit overrides.

    Later sources win: YAML file, then MONGODIFF_<FIELD> environment
    variables, then overrides (None values in overrides are ignored).

    Args:
        path: Optional YAML file path
        environ: Environment mapping (defaults to os.environ)
        overrides: Explicit settings, e.g. from command-line flags

    Returns:
        Unvalidated DiffConfig

    Raises:
        ConfigError: If the file is unreadable or a value is malformed
    """
    environ = os.environ if environ is None else environ
    config = DiffConfig()
    known = {f.name for f in fields(DiffConfig)}
    values: Dict[str, Any] = {}

    if path:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        values.update({k: v for k, v in data.items() if k in known})
        logger.info(f"Loaded config file: {path}")

    for name in known:
        env_value = environ.get(ENV_PREFIX + name.upper())
        if env_value is not None:
            values[name] = env_value

    if overrides:
        values.update({k: v for k, v in overrides.items() if k in known and v is not None})

    for name, raw in values.items():
        setattr(config, name, _coerce(name, raw))

    return config


def load_run_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    clusters: bool = True,
    environ: Optional[Dict[str, str]] = None,
    vault_factory: Callable[[], Any] = VaultClient
) -> DiffConfig:
    """
    Load settings, fill connection strings from Vault and validate.

    Args:
        path: Optional YAML file path
        overrides: Explicit settings, e.g. from command-line flags
        clusters: Require source and destination connection strings
        environ: Environment mapping (defaults to os.environ)
        vault_factory: Builds the Vault client when vault_path is set

    Returns:
        Validated DiffConfig

    Raises:
        ConfigError: On invalid settings or missing Vault address or token
        VaultError: If Vault is unreachable or the secret is unusable
    """
    config = load_config(path, environ=environ, overrides=overrides)

    if config.vault_path:
        try:
            vault = vault_factory()
        except ValueError as e:
            raise ConfigError(str(e)) from e
        with vault:
            config.resolve_secrets(vault)

    return config.validate(clusters=clusters)
