# hostconfig.py -- Host provisioning configuration.
# Loads the TOML host file into pydantic models: explicit secrets,
# convenience toggles, roles, users, dry-run settings and manifest
# auto-configuration.

import os
from typing import Annotated

from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, ValidationError

from errors import ConfigurationError
from manifest import DEFAULT_RUNTIME_ROOT, FileMode, config_error, read_toml

DEFAULT_DRY_RUN_PATH = "/run/aegis-dry-run"


class SecretConfig(BaseModel):
    """An explicitly configured secret. None fields take registry defaults."""
    name: str
    source: str = Field(min_length=1)
    target: str | None = None
    user: str = "root"
    group: str = "root"
    mode: FileMode = 0o400
    phase: Annotated[int, Field(strict=True, ge=1)] | None = None
    identity: str | None = None
    identity_from: str | None = None
    role: str | None = None
    user_key: str | None = None
    encoding: str | None = None


class ToggleConfig(BaseModel):
    """Convenience switch for a common secret class (ssh keys, keytab)."""
    enable: StrictBool = False
    source: str | None = None
    target: str | None = None


class HostConfig(BaseModel):
    build_path: str = ""
    master_key_path: str = ""
    runtime_root: str = DEFAULT_RUNTIME_ROOT
    dry_run: StrictBool = False
    dry_run_path: str = DEFAULT_DRY_RUN_PATH
    auto_configure_from_manifest: StrictBool = False
    auto_discover: StrictBool = False
    manifest_path: str | None = None
    roles: list[str] = Field(default_factory=list)
    users: list[str] = Field(default_factory=list)
    user_group: str = "users"
    decrypt_backend: str = "age"
    age_binary: str = "age"
    unit_timeout: StrictInt | StrictFloat | None = None
    audit_file: str | None = None
    ssh_keys: ToggleConfig = Field(default_factory=ToggleConfig)
    keytab: ToggleConfig = Field(default_factory=ToggleConfig)
    secrets: dict[str, SecretConfig] = Field(default_factory=dict)

    def effective_manifest_path(self) -> str:
        """Return the configured manifest path or <build_path>/secrets.toml."""
        if self.manifest_path:
            return self.manifest_path
        return os.path.join(self.build_path, "secrets.toml")


def _resolve(base_dir: str, path: str | None) -> str | None:
    if not path:
        return None
    return os.path.join(base_dir, path)


def parse_config(data: dict, base_dir: str = ".") -> HostConfig:
    """Build a HostConfig from an already-decoded TOML mapping.

    Unknown keys are ignored; relative paths resolve against base_dir.
    Empty strings and a zero timeout mean "unset".

    Raises:
        ConfigurationError: If a known key has the wrong type or value.
    """
    data = dict(data)
    secrets = data.get("secrets")
    if isinstance(secrets, dict):
        # Table keys are the secret names.
        data["secrets"] = {
            name: {**entry, "name": name} if isinstance(entry, dict) else entry
            for name, entry in secrets.items()
        }
    try:
        cfg = HostConfig.model_validate(data)
    except ValidationError as e:
        raise config_error("host config", e)

    cfg.build_path = _resolve(base_dir, cfg.build_path) or ""
    cfg.manifest_path = _resolve(base_dir, cfg.manifest_path)
    cfg.unit_timeout = float(cfg.unit_timeout) if cfg.unit_timeout else None
    cfg.audit_file = cfg.audit_file or None
    for toggle in (cfg.ssh_keys, cfg.keytab):
        toggle.source = _resolve(base_dir, toggle.source)
    for secret in cfg.secrets.values():
        secret.source = _resolve(base_dir, secret.source)
    return cfg


def load_config(path: str) -> HostConfig:
    """Load a host configuration file.

    Args:
        path: Path to the TOML host config.

    Returns:
        The parsed HostConfig.

    Raises:
        ConfigurationError: If the file is missing, unreadable, malformed or
            invalid.
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Host config not found at {path}")
    data = read_toml(path, "host config")
    return parse_config(data, os.path.dirname(os.path.abspath(path)))
