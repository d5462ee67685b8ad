# errors.py -- Error taxonomy for secret provisioning.
# Every per-unit failure carries a short `kind` string so results and the
# audit log can report it without inspecting the exception class.


class ProvisionError(Exception):
    """Base exception for provisioning errors."""

    kind = "error"


class ConfigurationError(ProvisionError):
    """Malformed manifest or config, invalid phase numbering, cyclic identity.

    Fatal for the whole run; raised before any decryption starts.
    """

    kind = "configuration"


class MissingSourceError(ProvisionError):
    """The ciphertext for a descriptor does not exist."""

    kind = "missing-source"


class DependencyBlockedError(ProvisionError):
    """The descriptor producing this unit's identity failed or never ran."""

    kind = "dependency-blocked"


class DecryptFailure(ProvisionError):
    """The decrypt primitive rejected the identity or ciphertext."""

    kind = "decrypt"


class PlacementError(ProvisionError):
    """Filesystem work around the decrypt (directories, ownership, mode) failed."""

    kind = "placement"


class UnitTimeoutError(ProvisionError):
    kind = "timeout"


class CancelledError(ProvisionError):
    kind = "cancelled"


class SecondaryManifestMissingWarning(UserWarning):
    """A user has no encrypted secondary manifest. Zero secrets expanded."""


class EntryMissingWarning(UserWarning):
    """A secondary-manifest entry points at an absent artifact. Entry skipped."""
