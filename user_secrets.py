# user_secrets.py -- Per-user secondary manifest expansion.
# A user's build directory holds an encrypted index (secrets.toml.age) that
# maps opaque artifact filenames to logical secret names. Expansion decrypts
# the index with the user's deployment key, then places every listed
# artifact as an environment value or a file.

import os
import shutil
import tempfile
import threading

import audit
from crypto import DecryptionError
from errors import (
    CancelledError,
    ConfigurationError,
    DecryptFailure,
    DependencyBlockedError,
    EntryMissingWarning,
    PlacementError,
    ProvisionError,
    SecondaryManifestMissingWarning,
)
from manifest import UserManifestEntry, parse_user_manifest
from placement import Mode, Result, State, ensure_parent, place, remove_file, resolve_identity
from registry import SecretDescriptor, UserSecretsDescriptor

MANIFEST_ARTIFACT = "secrets.toml.age"
ENV_DIR = "env"
FILES_DIR = "files"


def entry_target(descriptor: UserSecretsDescriptor, entry: UserManifestEntry) -> str:
    """Return the production target for a secondary-manifest entry.

    env entries land in <user dir>/env/<name>. file entries use their
    explicit target when given (relative targets resolve under files/),
    otherwise <user dir>/files/<name>.
    """
    if entry.kind == "env":
        return os.path.join(descriptor.target, ENV_DIR, entry.name)
    files_dir = os.path.join(descriptor.target, FILES_DIR)
    if entry.target:
        return os.path.join(files_dir, entry.target)
    return os.path.join(files_dir, entry.name)


def entry_descriptor(descriptor: UserSecretsDescriptor, entry: UserManifestEntry) -> SecretDescriptor:
    return SecretDescriptor(
        name=f"{descriptor.name}/{entry.name}",
        source=os.path.join(descriptor.source, entry.filename),
        target=entry_target(descriptor, entry),
        owner=descriptor.owner,
        group=descriptor.group,
        mode=descriptor.mode,
        phase=descriptor.phase,
        identity=descriptor.identity,
        identity_from=descriptor.identity_from,
        origin=descriptor.origin,
    )


def _read_entries(descriptor, identity, base, mode, decryptor) -> list[UserManifestEntry]:
    """Decrypt the index into a transient directory, parse it, delete it."""
    ensure_parent(os.path.join(base, MANIFEST_ARTIFACT), descriptor.owner, descriptor.group, mode)
    work_dir = tempfile.mkdtemp(dir=base, prefix=".manifest-")
    try:
        plain = os.path.join(work_dir, "secrets.toml")
        decryptor.decrypt(identity, os.path.join(descriptor.source, MANIFEST_ARTIFACT), plain)
        return parse_user_manifest(plain)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)


def _failed(descriptor, base, error: ProvisionError, audit_file) -> list[Result]:
    audit.log_event(audit_file, descriptor.name, "expand", base, "failed", f"{error.kind}: {error}")
    return [Result(descriptor.name, base, State.FAILED, error.kind, str(error))]


def expand_user_secrets(
    descriptor: UserSecretsDescriptor,
    mode: Mode,
    decryptor,
    audit_file: str | None = None,
    blocked_by: str | None = None,
    cancel: threading.Event | None = None,
) -> list[Result]:
    """Decrypt a user's secondary manifest and place every entry.

    A missing index is a warning and no entry is placed. Rather than an
    empty list, the unit then returns a single SKIPPED result carrying the
    warning, so reports show the user was considered; SKIPPED never counts
    as a failure. A missing entry artifact is a per-entry warning. Other
    entries still run when one fails.

    Args:
        descriptor: The user-secrets unit; its identity is the user key.
        mode: Production or dry-run.
        decryptor: Object with decrypt(identity, source, output).
        audit_file: Audit log path, or None.
        blocked_by: Name of a failed user-key unit, if any.
        cancel: Event checked before the index is decrypted.

    Returns:
        One Result per entry, or a single Result for the unit itself when
        the expansion could not start.
    """
    base = mode.effective(descriptor.target)
    user_dir = descriptor.source

    if cancel is not None and cancel.is_set():
        return _failed(descriptor, base, CancelledError("Cancelled before expansion started"), audit_file)
    if blocked_by:
        return _failed(descriptor, base, DependencyBlockedError(
            f"User key '{blocked_by}' failed; not expanding secrets"), audit_file)
    identity = resolve_identity(descriptor, mode)
    if not os.path.isfile(identity):
        return _failed(descriptor, base, DependencyBlockedError(
            f"User key {identity} is not placed"), audit_file)

    if not os.path.isfile(os.path.join(user_dir, MANIFEST_ARTIFACT)):
        warning = SecondaryManifestMissingWarning(
            f"No secondary manifest for user '{descriptor.user}' in {user_dir}"
        )
        audit.log_event(audit_file, descriptor.name, "expand", base, "warning", str(warning))
        return [Result(descriptor.name, base, State.SKIPPED, warnings=[str(warning)])]

    try:
        entries = _read_entries(descriptor, identity, base, mode, decryptor)
    except DecryptionError as e:
        return _failed(descriptor, base, DecryptFailure(str(e)), audit_file)
    except ConfigurationError as e:
        return _failed(descriptor, base, e, audit_file)
    except OSError as e:
        return _failed(descriptor, base, PlacementError(f"Cannot read secondary manifest: {e}"), audit_file)

    results = []
    for entry in entries:
        entry_desc = entry_descriptor(descriptor, entry)
        if not os.path.isfile(entry_desc.source):
            warning = EntryMissingWarning(
                f"Artifact {entry.filename} for '{entry.name}' not found in {user_dir}"
            )
            target = mode.effective(entry_desc.target)
            remove_file(target)
            audit.log_event(audit_file, entry_desc.name, "expand", target, "skipped", str(warning))
            results.append(Result(entry_desc.name, target, State.SKIPPED, warnings=[str(warning)]))
            continue
        results.append(place(entry_desc, mode, decryptor, audit_file))

    placed = sum(1 for r in results if r.state == State.PLACED)
    audit.log_event(
        audit_file, descriptor.name, "expand", base, "complete",
        f"{placed}/{len(entries)} placed",
    )
    return results


def remove_user_secrets(
    descriptor: UserSecretsDescriptor,
    mode: Mode,
    decryptor,
    audit_file: str | None = None,
) -> list[Result]:
    """Remove everything expand_user_secrets placed for a user.

    The index is decrypted again to enumerate targets, which requires the
    user key to still be placed. When that is not possible the default
    env/ and files/ directories are cleared instead, and override targets
    outside them are left alone.
    """
    base = mode.effective(descriptor.target)
    identity = resolve_identity(descriptor, mode)
    entries = None
    reason = None
    if not os.path.isfile(os.path.join(descriptor.source, MANIFEST_ARTIFACT)):
        reason = "no secondary manifest"
    elif not os.path.isfile(identity):
        reason = f"user key {identity} is not placed"
    elif not os.path.isdir(base):
        reason = f"{base} does not exist"
    else:
        try:
            entries = _read_entries(descriptor, identity, base, mode, decryptor)
        except (DecryptionError, ConfigurationError, OSError) as e:
            reason = str(e)

    results = []
    if entries is not None:
        for entry in entries:
            target = mode.effective(entry_target(descriptor, entry))
            remove_file(target)
            results.append(Result(f"{descriptor.name}/{entry.name}", target, State.REMOVED))
    else:
        warning = f"Cannot enumerate secondary manifest ({reason}); clearing {ENV_DIR}/ and {FILES_DIR}/"
        for sub in (ENV_DIR, FILES_DIR):
            shutil.rmtree(os.path.join(base, sub), ignore_errors=True)
        results.append(Result(descriptor.name, base, State.REMOVED, warnings=[warning]))
        audit.log_event(audit_file, descriptor.name, "remove", base, "warning", warning)

    audit.log_event(audit_file, descriptor.name, "remove", base, "removed", f"{len(results)} targets")
    return results
