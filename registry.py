# registry.py -- Secret descriptor registry.
# Normalizes explicit config, convenience toggles, role and user entries,
# manifest-derived entries and auto-discovered files into one validated
# descriptor list. Building descriptors never touches the filesystem;
# discover() is the only reader and runs once before the build.

import os
import threading
from dataclasses import dataclass, field, replace
from typing import ClassVar

from errors import ConfigurationError
from hostconfig import HostConfig
from manifest import Manifest

CIPHERTEXT_SUFFIX = ".age"

# Merge precedence, lowest first. A higher layer silently replaces a lower
# layer's descriptor with the same name; the replacement is reported in
# BuildResult.dropped.
ORIGIN_DISCOVERED = "discovered"
ORIGIN_MANIFEST = "manifest"
ORIGIN_EXPLICIT = "explicit"

_scan_lock = threading.Lock()


@dataclass(frozen=True)
class SecretDescriptor:
    """One decryptable artifact.

    `identity` is the path of the identity used to decrypt. When the identity
    is produced by another descriptor, `identity_from` names that descriptor
    and `identity` is its target.
    """
    kind: ClassVar[str] = "secret"

    name: str
    source: str
    target: str
    owner: str = "root"
    group: str = "root"
    mode: int = 0o400
    phase: int | None = 1
    identity: str = ""
    identity_from: str | None = None
    encoding: str | None = None
    origin: str = ORIGIN_EXPLICIT


@dataclass(frozen=True)
class RoleKeyDescriptor(SecretDescriptor):
    kind: ClassVar[str] = "role-key"

    role: str = ""


@dataclass(frozen=True)
class UserKeyDescriptor(SecretDescriptor):
    kind: ClassVar[str] = "user-key"

    user: str = ""


@dataclass(frozen=True)
class UserSecretsDescriptor(SecretDescriptor):
    """Higher-order unit expanding a user's secondary manifest.

    `source` is the user's secrets directory in the build output and
    `target` the user's runtime directory.
    """
    kind: ClassVar[str] = "user-secrets"

    user: str = ""


@dataclass
class Discovered:
    """Result of scanning a host build directory."""
    files: list[tuple[str, str]] = field(default_factory=list)
    ssh_keys_source: str | None = None
    keytab_source: str | None = None


@dataclass
class BuildResult:
    descriptors: list[SecretDescriptor]
    # (name, kept origin, dropped origin)
    dropped: list[tuple[str, str, str]] = field(default_factory=list)

    def get(self, name: str) -> SecretDescriptor | None:
        for d in self.descriptors:
            if d.name == name:
                return d
        return None


def role_key_name(role: str) -> str:
    return f"role-{role}"


def user_key_name(user: str) -> str:
    return f"user-key-{user}"


def user_secrets_name(user: str) -> str:
    return f"user-secrets-{user}"


def discover(build_path: str) -> Discovered:
    """Scan build_path for ciphertext files.

    Args:
        build_path: The host's build output directory.

    Returns:
        A Discovered record; empty if the directory does not exist.
    """
    found = Discovered()
    with _scan_lock:
        if not build_path or not os.path.isdir(build_path):
            return found
        for filename in sorted(os.listdir(build_path)):
            path = os.path.join(build_path, filename)
            if filename.endswith(CIPHERTEXT_SUFFIX) and os.path.isfile(path):
                found.files.append((filename[:-len(CIPHERTEXT_SUFFIX)], path))

        # ssh-keys.age is the older name for the same bundle
        for candidate in ("ssh-host-keys.age", "ssh-keys.age"):
            path = os.path.join(build_path, candidate)
            if os.path.isfile(path):
                found.ssh_keys_source = path
                break
        keytab = os.path.join(build_path, "keytab.age")
        if os.path.isfile(keytab):
            found.keytab_source = keytab
    return found


def _merge(layer: dict, descriptor: SecretDescriptor, dropped: list) -> None:
    existing = layer.get(descriptor.name)
    if existing is not None:
        dropped.append((descriptor.name, descriptor.origin, existing.origin))
    layer[descriptor.name] = descriptor


def _discovered_layer(config: HostConfig, discovered: Discovered) -> list[SecretDescriptor]:
    """Turn discovered files into phase-1 descriptors, one per ciphertext.

    A file backing the ssh or keytab toggle yields only the toggle's
    descriptor, so no name or source appears twice in this layer.
    """
    root = config.runtime_root
    result = []
    if discovered.ssh_keys_source and not config.ssh_keys.enable:
        result.append(SecretDescriptor(
            name="ssh-keys", source=discovered.ssh_keys_source,
            target=os.path.join(root, "ssh-keys"), origin=ORIGIN_DISCOVERED,
        ))
    if discovered.keytab_source and not config.keytab.enable:
        result.append(SecretDescriptor(
            name="keytab", source=discovered.keytab_source,
            target=config.keytab.target or os.path.join(root, "keytab"),
            origin=ORIGIN_DISCOVERED,
        ))
    names = {d.name for d in result}
    sources = {d.source for d in result}
    result.extend(
        SecretDescriptor(
            name=name, source=path, target=os.path.join(root, name),
            origin=ORIGIN_DISCOVERED,
        )
        for name, path in discovered.files
        if name not in names and path not in sources
    )
    return result


def _manifest_layer(manifest: Manifest) -> list[SecretDescriptor]:
    return [
        SecretDescriptor(
            name=entry.name, source=entry.source, target=entry.target,
            owner=entry.user, group=entry.group, mode=entry.mode,
            encoding=entry.encoding, origin=ORIGIN_MANIFEST,
        )
        for entry in manifest.entries()
    ]


def _explicit_layer(config: HostConfig, roles: list[str], users: list[str]) -> list[SecretDescriptor]:
    root = config.runtime_root
    build = config.build_path
    result: list[SecretDescriptor] = []

    for role in roles:
        result.append(RoleKeyDescriptor(
            name=role_key_name(role),
            source=os.path.normpath(os.path.join(build, "..", "roles", f"{role}{CIPHERTEXT_SUFFIX}")),
            target=os.path.join(root, "roles", role),
            role=role,
        ))

    for user in users:
        result.append(UserKeyDescriptor(
            name=user_key_name(user),
            source=os.path.join(build, "users", user, f".key{CIPHERTEXT_SUFFIX}"),
            target=os.path.join(root, "users", user, ".key"),
            group=config.user_group,
            user=user,
        ))
        result.append(UserSecretsDescriptor(
            name=user_secrets_name(user),
            source=os.path.join(build, "users", user),
            target=os.path.join(root, "users", user),
            owner=user,
            group=config.user_group,
            phase=None,
            identity_from=user_key_name(user),
            user=user,
        ))

    if config.ssh_keys.enable and config.ssh_keys.source:
        result.append(SecretDescriptor(
            name="ssh-keys", source=config.ssh_keys.source,
            target=config.ssh_keys.target or os.path.join(root, "ssh-keys"),
        ))
    if config.keytab.enable and config.keytab.source:
        result.append(SecretDescriptor(
            name="keytab", source=config.keytab.source,
            target=config.keytab.target or os.path.join(root, "keytab"),
        ))

    for name in sorted(config.secrets):
        sc = config.secrets[name]
        identity_from = sc.identity_from
        if sc.role:
            identity_from = role_key_name(sc.role)
        elif sc.user_key:
            identity_from = user_key_name(sc.user_key)
        result.append(SecretDescriptor(
            name=name,
            source=sc.source,
            target=sc.target or os.path.join(root, name),
            owner=sc.user,
            group=sc.group,
            mode=sc.mode,
            phase=sc.phase,
            identity=sc.identity or "",
            identity_from=identity_from,
            encoding=sc.encoding,
        ))
    return result


def _link_identities(merged: dict[str, SecretDescriptor]) -> None:
    """Turn identity paths that point at another descriptor's target into references."""
    by_target = {os.path.normpath(d.target): d.name for d in merged.values()}
    for name, d in list(merged.items()):
        if d.identity_from or not d.identity:
            continue
        producer = by_target.get(os.path.normpath(d.identity))
        if producer and producer != name:
            merged[name] = replace(d, identity_from=producer)


def _check_acyclic(merged: dict[str, SecretDescriptor]) -> list[str]:
    """Return descriptor names in dependency order (producers first).

    Raises:
        ConfigurationError: On an unknown producer or a cyclic reference.
    """
    for d in merged.values():
        if d.identity_from is not None and d.identity_from not in merged:
            raise ConfigurationError(
                f"Descriptor '{d.name}' takes its identity from unknown descriptor '{d.identity_from}'"
            )

    order: list[str] = []
    state: dict[str, str] = {}
    for start in sorted(merged):
        path = []
        node = start
        while node is not None and state.get(node) != "done":
            if state.get(node) == "visiting":
                cycle = " -> ".join(path[path.index(node):] + [node])
                raise ConfigurationError(f"Cyclic identity reference: {cycle}")
            state[node] = "visiting"
            path.append(node)
            node = merged[node].identity_from
        for name in reversed(path):
            state[name] = "done"
            order.append(name)
    return order


def _assign_phases(merged: dict[str, SecretDescriptor], order: list[str], master_key_path: str) -> None:
    for name in order:
        d = merged[name]
        if d.identity_from is None:
            phase = d.phase if d.phase is not None else 1
            identity = d.identity or master_key_path
            if not identity:
                raise ConfigurationError(
                    f"Descriptor '{name}' needs the master identity but master_key_path is not set"
                )
            merged[name] = replace(d, phase=phase, identity=identity)
            continue

        producer = merged[d.identity_from]
        phase = d.phase if d.phase is not None else producer.phase + 1
        if phase <= producer.phase:
            raise ConfigurationError(
                f"Descriptor '{name}' (phase {phase}) depends on '{producer.name}' "
                f"(phase {producer.phase}); a producer must be in an earlier phase"
            )
        merged[name] = replace(d, phase=phase, identity=producer.target)


def validate_phases(descriptors: list[SecretDescriptor]) -> None:
    """Check that phase numbers start at 1 and skip none.

    Raises:
        ConfigurationError: If a phase is missing or below 1.
    """
    phases = sorted({d.phase for d in descriptors})
    if not phases:
        return
    if phases[0] != 1 or phases != list(range(1, phases[-1] + 1)):
        listed = ", ".join(str(p) for p in phases)
        raise ConfigurationError(f"Invalid phase numbering: phases must be dense from 1, got {listed}")


def build_descriptors(
    config: HostConfig,
    manifest: Manifest,
    discovered: Discovered,
    roles: list[str] | None = None,
    users: list[str] | None = None,
) -> BuildResult:
    """Merge every secret source into one validated descriptor list.

    Precedence for a shared name: explicit config (including toggles and
    role/user keys) over manifest entries over discovered files. The lower
    precedence descriptor is dropped without error and listed in
    BuildResult.dropped.

    Args:
        config: Host configuration with explicit secrets and toggles.
        manifest: Host manifest (may be empty).
        discovered: Result of discover(), or an empty Discovered.
        roles: Role names; defaults to config.roles.
        users: User names; defaults to config.users.

    Returns:
        BuildResult with descriptors sorted by (phase, name).

    Raises:
        ConfigurationError: On unknown or cyclic identity references, a
            producer that is not in an earlier phase, or non-dense phases.
    """
    roles = config.roles if roles is None else roles
    users = config.users if users is None else users

    merged: dict[str, SecretDescriptor] = {}
    dropped: list[tuple[str, str, str]] = []
    for layer in (
        _discovered_layer(config, discovered),
        _manifest_layer(manifest),
        _explicit_layer(config, roles, users),
    ):
        for descriptor in layer:
            _merge(merged, descriptor, dropped)

    _link_identities(merged)
    order = _check_acyclic(merged)
    _assign_phases(merged, order, config.master_key_path)

    descriptors = sorted(merged.values(), key=lambda d: (d.phase, d.name))
    validate_phases(descriptors)
    return BuildResult(descriptors, dropped)
