# crypto.py -- Decrypt primitive backends for secret provisioning.
# The orchestrator treats decryption as opaque: given an identity file and a
# ciphertext file, produce a complete plaintext file or nothing at all.

import os
import shutil
import subprocess
import tempfile

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from errors import ConfigurationError

SEALED_MAGIC = b"aegis-sealed/v1\n"
SEALED_INFO = b"aegis-sealed/v1"
KEY_SIZE = 32
NONCE_SIZE = 12


class DecryptionError(Exception):
    """Raised when the identity cannot open the ciphertext."""
    pass


def decrypt_aes_gcm(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """Decrypt ciphertext with AES-256-GCM using the given key and nonce.

    Args:
        key: A 32-byte AES-256 key.
        nonce: The 12-byte nonce used during encryption.
        ciphertext: The ciphertext with appended GCM tag.

    Returns:
        The decrypted plaintext bytes.

    Raises:
        DecryptionError: If the key is wrong or the data has been tampered with.
    """
    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, ciphertext, None)
    except InvalidTag:
        raise DecryptionError("Decryption failed: invalid key or tampered data")


def derive_sealed_key(shared_secret: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    """Derive the AES-256 key for a sealed file from an X25519 exchange.

    Args:
        shared_secret: The raw X25519 shared secret.
        ephemeral_public: The sender's 32-byte ephemeral public key.
        recipient_public: The recipient's 32-byte public key.

    Returns:
        32 bytes (256-bit key).
    """
    hkdf = HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=ephemeral_public + recipient_public,
        info=SEALED_INFO,
    )
    return hkdf.derive(shared_secret)


def load_identity(identity_path: str) -> X25519PrivateKey:
    """Load a PEM-encoded X25519 private key from disk.

    Raises:
        DecryptionError: If the file is missing, unreadable or not an X25519 key.
    """
    try:
        with open(identity_path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise DecryptionError(f"Cannot read identity {identity_path}: {e.strerror}")
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError):
        raise DecryptionError(f"Identity {identity_path} is not a PEM private key")
    if not isinstance(key, X25519PrivateKey):
        raise DecryptionError(f"Identity {identity_path} is not an X25519 key")
    return key


def open_sealed(identity: X25519PrivateKey, blob: bytes) -> bytes:
    """Open a sealed blob with the recipient's private key.

    Layout: magic | ephemeral public key (32) | nonce (12) | ciphertext+tag.
    """
    header = len(SEALED_MAGIC) + KEY_SIZE + NONCE_SIZE
    if not blob.startswith(SEALED_MAGIC) or len(blob) < header:
        raise DecryptionError("Not a sealed file or truncated header")

    offset = len(SEALED_MAGIC)
    ephemeral_public = blob[offset:offset + KEY_SIZE]
    nonce = blob[offset + KEY_SIZE:header]
    ciphertext = blob[header:]

    recipient_public = identity.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    try:
        shared = identity.exchange(X25519PublicKey.from_public_bytes(ephemeral_public))
    except ValueError as e:
        raise DecryptionError(f"Invalid ephemeral key in sealed file: {e}")
    key = derive_sealed_key(shared, ephemeral_public, recipient_public)
    return decrypt_aes_gcm(key, nonce, ciphertext)


def write_atomic(output_path: str, data: bytes) -> None:
    """Write data to output_path through a temp file and rename.

    The temp file lives in the output's directory so the rename never
    crosses filesystems. On failure the temp file is removed.
    """
    dir_name = os.path.dirname(os.path.abspath(output_path))
    fd, tmp_path = tempfile.mkstemp(dir=dir_name, prefix=".decrypt-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, output_path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class SealedDecryptor:
    """In-process backend for X25519 sealed files."""

    name = "sealed"

    def decrypt(self, identity_path: str, ciphertext_path: str, output_path: str) -> None:
        identity = load_identity(identity_path)
        try:
            with open(ciphertext_path, "rb") as f:
                blob = f.read()
        except OSError as e:
            raise DecryptionError(f"Cannot read {ciphertext_path}: {e.strerror}")
        write_atomic(output_path, open_sealed(identity, blob))


class AgeDecryptor:
    """Backend that shells out to the age binary.

    age writes its output incrementally, so it is pointed at a file inside a
    private temp directory next to the target and the result is renamed into
    place only after age exits successfully.

    Args:
        binary: Name or path of the age executable.
    """

    name = "age"

    def __init__(self, binary: str = "age") -> None:
        self.binary = binary

    def decrypt(self, identity_path: str, ciphertext_path: str, output_path: str) -> None:
        dir_name = os.path.dirname(os.path.abspath(output_path))
        work_dir = tempfile.mkdtemp(dir=dir_name, prefix=".age-")
        tmp_output = os.path.join(work_dir, "out")
        try:
            try:
                r = subprocess.run(
                    [self.binary, "--decrypt",
                     "--identity", identity_path,
                     "--output", tmp_output,
                     ciphertext_path],
                    capture_output=True, text=True,
                )
            except FileNotFoundError:
                raise DecryptionError(f"age binary not found: {self.binary}")
            if r.returncode != 0:
                raise DecryptionError(r.stderr.strip() or f"age exited with status {r.returncode}")
            os.replace(tmp_output, output_path)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)


def make_decryptor(backend: str, age_binary: str = "age"):
    """Return a decryptor instance for the named backend.

    Args:
        backend: "age" or "sealed".
        age_binary: age executable, used by the "age" backend only.

    Raises:
        ConfigurationError: If the backend name is unknown.
    """
    if backend == "age":
        return AgeDecryptor(age_binary)
    if backend == "sealed":
        return SealedDecryptor()
    raise ConfigurationError(f"Unknown decrypt backend '{backend}'. Valid backends: age, sealed")
