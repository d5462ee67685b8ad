# manifest.py -- Host secrets manifest and per-user secondary manifest.
# Both are TOML documents validated through pydantic models. An absent host
# manifest is normal and yields an empty Manifest; an existing file that
# fails to parse or validate is a ConfigurationError.
#
# Example host manifest (<build_path>/secrets.toml):
#
#     [ssh-host-keys]
#     source = "ssh-host-keys.age"
#     target_dir = "/run/aegis/ssh"
#     mode = "0600"
#
#     [keytab]
#     source = "keytab.age"
#     encoding = "base64"
#
#     [secrets.myservice-token]
#     source = "secrets/myservice-token.age"
#     target = "/run/myservice/token"
#     user = "myservice"
#     group = "myservice"
#     mode = "0600"

import os
import tomllib
from dataclasses import dataclass, field
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from errors import ConfigurationError

DEFAULT_RUNTIME_ROOT = "/run/aegis"
DEFAULT_MODE = 0o400

# Per-section defaults; relative targets resolve under the runtime root.
SECTION_DEFAULTS = {
    "ssh-host-keys": {"source": "ssh-host-keys.age", "target_dir": "ssh", "mode": 0o600},
    "keytab": {"source": "keytab.age", "target": "keytab", "mode": 0o600, "encoding": "base64"},
    "nexus-key": {"source": "nexus-key.age", "target": "nexus-key", "mode": 0o400},
}


def octal_mode(value) -> int:
    """Convert an octal mode string like "0400" (or an int) to an int.

    Raises:
        ValueError: If the value is not a valid permission mode.
    """
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"{value!r} is not a permission mode")
    if isinstance(value, str):
        try:
            value = int(value, 8)
        except ValueError:
            raise ValueError(f"{value!r} is not an octal mode")
    if not 0 <= value <= 0o7777:
        raise ValueError(f"{value:o} is out of range")
    return value


FileMode = Annotated[int, BeforeValidator(octal_mode)]


def config_error(where: str, error: ValidationError) -> ConfigurationError:
    """Flatten a pydantic ValidationError into one ConfigurationError."""
    problems = "; ".join(
        f"{'.'.join(map(str, err['loc'])) or '<root>'}: {err['msg']}"
        for err in error.errors()
    )
    return ConfigurationError(f"{where}: {problems}")


def read_toml(path: str, what: str) -> dict:
    """Read a TOML file, mapping decode failures to ConfigurationError.

    Raises:
        ConfigurationError: If the file is unreadable, not UTF-8 or not TOML.
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Malformed {what} {path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {what} {path}: {e.strerror or e}")


class ManifestSection(BaseModel):
    """One manifest table as written; defaults are applied per section."""
    source: str | None = None
    target: str | None = None
    target_dir: str | None = None
    user: str = "root"
    group: str = "root"
    mode: FileMode | None = None
    encoding: str | None = None
    key_types: list[str] | None = None


class ManifestDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ssh_host_keys: ManifestSection | None = Field(default=None, alias="ssh-host-keys")
    keytab: ManifestSection | None = None
    nexus_key: ManifestSection | None = Field(default=None, alias="nexus-key")
    secrets: dict[str, ManifestSection] = Field(default_factory=dict)


@dataclass
class ManifestEntry:
    """A single secret described by the host manifest."""
    name: str
    source: str
    target: str
    user: str = "root"
    group: str = "root"
    mode: int = DEFAULT_MODE
    encoding: str | None = None
    key_types: list[str] | None = None


@dataclass
class Manifest:
    """A host's secret inventory as read from secrets.toml.

    `path` is None when no manifest file exists.
    """
    path: str | None = None
    ssh_host_keys: ManifestEntry | None = None
    keytab: ManifestEntry | None = None
    nexus_key: ManifestEntry | None = None
    secrets: dict[str, ManifestEntry] = field(default_factory=dict)

    def entries(self) -> list[ManifestEntry]:
        """Return every entry, fixed sections first, then secrets by name."""
        fixed = [self.ssh_host_keys, self.keytab, self.nexus_key]
        result = [e for e in fixed if e is not None]
        result.extend(self.secrets[name] for name in sorted(self.secrets))
        return result

    def is_empty(self) -> bool:
        return not self.entries()


def _entry(name: str, section: ManifestSection, base_dir: str, runtime_root: str, defaults: dict) -> ManifestEntry:
    source = os.path.join(base_dir, section.source or defaults.get("source", f"secrets/{name}.age"))

    target = section.target
    if target is None:
        target_dir = section.target_dir or defaults.get("target_dir")
        if target_dir is not None:
            target = os.path.join(runtime_root, target_dir, name)
        else:
            target = os.path.join(runtime_root, defaults.get("target", name))

    return ManifestEntry(
        name=name,
        source=source,
        target=target,
        user=section.user,
        group=section.group,
        mode=section.mode if section.mode is not None else defaults.get("mode", DEFAULT_MODE),
        encoding=section.encoding or defaults.get("encoding"),
        key_types=section.key_types,
    )


def load_manifest(path: str, runtime_root: str = DEFAULT_RUNTIME_ROOT) -> Manifest:
    """Load a host manifest, returning an empty Manifest if the file is absent.

    Unknown top-level keys are ignored. Sources are resolved relative to the
    manifest's directory; relative target defaults resolve under runtime_root.

    Args:
        path: Path to secrets.toml.
        runtime_root: Root directory for decrypted secrets.

    Returns:
        The parsed Manifest.

    Raises:
        ConfigurationError: If the file exists but cannot be parsed.
    """
    if not os.path.isfile(path):
        return Manifest()

    data = read_toml(path, "manifest")
    try:
        doc = ManifestDocument.model_validate(data)
    except ValidationError as e:
        raise config_error(f"Malformed manifest {path}", e)

    base_dir = os.path.dirname(os.path.abspath(path))
    manifest = Manifest(path=path)
    if doc.ssh_host_keys is not None:
        manifest.ssh_host_keys = _entry(
            "ssh-host-keys", doc.ssh_host_keys, base_dir, runtime_root, SECTION_DEFAULTS["ssh-host-keys"],
        )
    if doc.keytab is not None:
        manifest.keytab = _entry("keytab", doc.keytab, base_dir, runtime_root, SECTION_DEFAULTS["keytab"])
    if doc.nexus_key is not None:
        manifest.nexus_key = _entry(
            "nexus-key", doc.nexus_key, base_dir, runtime_root, SECTION_DEFAULTS["nexus-key"],
        )
    for name, section in doc.secrets.items():
        manifest.secrets[name] = _entry(name, section, base_dir, runtime_root, {})
    return manifest


def _plain_name(value: str) -> str:
    if not value or os.sep in value or value in (".", ".."):
        raise ValueError(f"{value!r} must be a plain file name")
    return value


PlainName = Annotated[str, AfterValidator(_plain_name)]


class UserManifestItem(BaseModel):
    name: PlainName
    type: Literal["env", "file"] = "file"
    target: str | None = None


class UserManifestDocument(BaseModel):
    secrets: dict[PlainName, UserManifestItem] = Field(default_factory=dict)


@dataclass
class UserManifestEntry:
    """One entry of a user's secondary manifest.

    `filename` is the opaque content-derived artifact name under the user's
    secrets directory; `target` is only honored for the "file" kind.
    """
    filename: str
    name: str
    kind: str
    target: str | None = None


def parse_user_manifest(path: str) -> list[UserManifestEntry]:
    """Parse a decrypted secondary manifest.

    Expected shape:

        [secrets."3f2a9c...age"]
        name = "GITHUB_TOKEN"
        type = "env"

    Returns:
        Entries sorted by filename.

    Raises:
        ConfigurationError: If the document or an entry is malformed.
    """
    data = read_toml(path, "secondary manifest")
    try:
        doc = UserManifestDocument.model_validate(data)
    except ValidationError as e:
        raise config_error("Malformed secondary manifest", e)

    return [
        UserManifestEntry(
            filename, item.name, item.type,
            item.target if item.type == "file" else None,
        )
        for filename, item in sorted(doc.secrets.items())
    ]
