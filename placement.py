# placement.py -- Idempotent decrypt-and-place and its inverse.
# place() resolves the effective target, prepares the parent directory,
# removes any stale plaintext, decrypts, then applies ownership and mode.
# Dry-run mode redirects every path under a sandbox root and skips chown.

import base64
import binascii
import enum
import os
import shutil
import threading
from dataclasses import dataclass, field

import audit
from crypto import DecryptionError, write_atomic
from errors import (
    CancelledError,
    DecryptFailure,
    DependencyBlockedError,
    MissingSourceError,
    PlacementError,
    ProvisionError,
)
from hostconfig import DEFAULT_DRY_RUN_PATH
from manifest import DEFAULT_RUNTIME_ROOT
from registry import SecretDescriptor

DIR_MODE = 0o750
DRY_RUN_DIR_MODE = 0o700
DRY_RUN_FILE_MODE = 0o400


class State(str, enum.Enum):
    PENDING = "pending"
    DECRYPTING = "decrypting"
    PLACED = "placed"
    FAILED = "failed"
    REMOVED = "removed"
    SKIPPED = "skipped"


@dataclass
class Result:
    """Outcome of one unit of work."""
    name: str
    target: str
    state: State
    error_kind: str | None = None
    message: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state != State.FAILED


@dataclass(frozen=True)
class Mode:
    """Production or dry-run execution.

    In dry-run every path below runtime_root is mirrored under sandbox; any
    other absolute path is placed under sandbox with its leading slash
    stripped.
    """
    dry_run: bool = False
    sandbox: str = DEFAULT_DRY_RUN_PATH
    runtime_root: str = DEFAULT_RUNTIME_ROOT

    def effective(self, path: str) -> str:
        if not self.dry_run:
            return path
        full = os.path.normpath(os.path.abspath(path))
        sandbox = os.path.normpath(os.path.abspath(self.sandbox))
        root = os.path.normpath(os.path.abspath(self.runtime_root))
        if full == sandbox or full.startswith(sandbox + os.sep):
            return full
        if full == root:
            return sandbox
        if full.startswith(root + os.sep):
            return os.path.join(sandbox, os.path.relpath(full, root))
        return os.path.join(sandbox, full.lstrip(os.sep))


PRODUCTION = Mode()


def remove_file(path: str) -> bool:
    """Delete path if it exists. Returns True if something was removed."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True


def resolve_identity(descriptor: SecretDescriptor, mode: Mode) -> str:
    """Return the identity path to decrypt with.

    Identities produced by another descriptor live wherever that descriptor
    was placed, which is the sandbox in dry-run. The master identity is
    always read from its configured path.
    """
    if descriptor.identity_from:
        return mode.effective(descriptor.identity)
    return descriptor.identity


def ensure_parent(path: str, owner: str, group: str, mode: Mode) -> list[str]:
    """Create any missing directories above path.

    Newly created directories get owner/group and a restrictive mode; in
    dry-run the chown is skipped. Another unit creating the same directory
    concurrently is tolerated.

    Returns:
        The directories this call created.
    """
    missing = []
    d = os.path.dirname(path)
    while d and not os.path.isdir(d):
        missing.append(d)
        parent = os.path.dirname(d)
        if parent == d:
            break
        d = parent

    dir_mode = DRY_RUN_DIR_MODE if mode.dry_run else DIR_MODE
    created = []
    for d in reversed(missing):
        try:
            os.mkdir(d, dir_mode)
        except FileExistsError:
            continue
        os.chmod(d, dir_mode)
        if not mode.dry_run:
            shutil.chown(d, owner, group)
        created.append(d)
    return created


def _decode_base64(path: str) -> None:
    with open(path, "rb") as f:
        data = base64.b64decode(f.read(), validate=False)
    write_atomic(path, data)


def _apply_permissions(descriptor: SecretDescriptor, target: str, mode: Mode, audit_file: str | None) -> None:
    if mode.dry_run:
        os.chmod(target, DRY_RUN_FILE_MODE)
        audit.log_event(
            audit_file, descriptor.name, "place", target, "dry-run",
            f"would apply {descriptor.owner}:{descriptor.group} {descriptor.mode:04o} to {descriptor.target}",
        )
        return
    shutil.chown(target, descriptor.owner, descriptor.group)
    os.chmod(target, descriptor.mode)


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError("Cancelled before decryption started")


def _decrypt_and_place(descriptor, identity, target, mode, decryptor, audit_file) -> None:
    # Steps 3-5 run to completion once started; no cancellation in here.
    remove_file(target)

    if not os.path.isfile(descriptor.source):
        raise MissingSourceError(f"Ciphertext not found at {descriptor.source}")

    try:
        decryptor.decrypt(identity, descriptor.source, target)
    except DecryptionError as e:
        raise DecryptFailure(str(e))

    try:
        if descriptor.encoding == "base64":
            _decode_base64(target)
        elif descriptor.encoding:
            raise PlacementError(f"Unknown encoding '{descriptor.encoding}'")
        _apply_permissions(descriptor, target, mode, audit_file)
    except (OSError, LookupError, binascii.Error, PlacementError) as e:
        # Never leave plaintext with the wrong owner or mode behind.
        remove_file(target)
        if isinstance(e, PlacementError):
            raise
        raise PlacementError(f"Cannot finalize {target}: {e}")


def place(
    descriptor: SecretDescriptor,
    mode: Mode,
    decryptor,
    audit_file: str | None = None,
    blocked_by: str | None = None,
    cancel: threading.Event | None = None,
) -> Result:
    """Decrypt one descriptor into its effective target.

    Safe to repeat: the target is removed before each decrypt, so a second
    call with the same inputs yields the same content, owner and mode.

    Args:
        descriptor: The secret to place.
        mode: Production or dry-run.
        decryptor: Object with decrypt(identity, source, output).
        audit_file: Audit log path, or None.
        blocked_by: Name of a failed producer; short-circuits with
            DependencyBlockedError without touching the filesystem.
        cancel: Event checked up to the point decryption starts.

    Returns:
        A PLACED or FAILED Result.
    """
    target = mode.effective(descriptor.target)
    try:
        _check_cancel(cancel)
        if blocked_by:
            raise DependencyBlockedError(
                f"Identity producer '{blocked_by}' failed; not attempting decryption"
            )
        identity = resolve_identity(descriptor, mode)
        if descriptor.identity_from and not os.path.isfile(identity):
            raise DependencyBlockedError(
                f"Identity {identity} from '{descriptor.identity_from}' is not placed"
            )
        try:
            ensure_parent(target, descriptor.owner, descriptor.group, mode)
        except (OSError, LookupError) as e:
            raise PlacementError(f"Cannot prepare directory for {target}: {e}")
        _check_cancel(cancel)
        try:
            _decrypt_and_place(descriptor, identity, target, mode, decryptor, audit_file)
        except OSError as e:
            remove_file(target)
            raise PlacementError(f"Cannot place {target}: {e}")
    except ProvisionError as e:
        audit.log_event(audit_file, descriptor.name, "place", target, "failed", f"{e.kind}: {e}")
        return Result(descriptor.name, target, State.FAILED, e.kind, str(e))

    audit.log_event(audit_file, descriptor.name, "place", target, "placed")
    return Result(descriptor.name, target, State.PLACED)


def remove(descriptor: SecretDescriptor, mode: Mode, audit_file: str | None = None) -> Result:
    """Delete the descriptor's effective target; absence is not an error."""
    target = mode.effective(descriptor.target)
    try:
        existed = remove_file(target)
    except OSError as e:
        audit.log_event(audit_file, descriptor.name, "remove", target, "failed", str(e))
        return Result(descriptor.name, target, State.FAILED, PlacementError.kind, str(e))
    audit.log_event(
        audit_file, descriptor.name, "remove", target, "removed",
        None if existed else "already absent",
    )
    return Result(descriptor.name, target, State.REMOVED)
