import grp
import os
import pwd
import threading
import time

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from crypto import NONCE_SIZE, SEALED_MAGIC, SealedDecryptor, derive_sealed_key
from hostconfig import HostConfig

ME = pwd.getpwuid(os.getuid()).pw_name
MY_GROUP = grp.getgrgid(os.getgid()).gr_name


def _raw_public(key: X25519PrivateKey) -> bytes:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def pem(key: X25519PrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def seal(recipient: X25519PrivateKey, plaintext: bytes) -> bytes:
    """Encrypt plaintext to recipient in the format SealedDecryptor reads."""
    ephemeral = X25519PrivateKey.generate()
    ephemeral_public = _raw_public(ephemeral)
    shared = ephemeral.exchange(recipient.public_key())
    key = derive_sealed_key(shared, ephemeral_public, _raw_public(recipient))
    nonce = os.urandom(NONCE_SIZE)
    return SEALED_MAGIC + ephemeral_public + nonce + AESGCM(key).encrypt(nonce, plaintext, None)


class RecordingDecryptor:
    """SealedDecryptor that records every call, optionally slowing some down."""

    def __init__(self, delays=None):
        self.inner = SealedDecryptor()
        self.delays = delays or {}
        self.calls = []
        self._lock = threading.Lock()

    def decrypt(self, identity_path, ciphertext_path, output_path):
        start = time.monotonic()
        time.sleep(self.delays.get(os.path.basename(ciphertext_path), 0))
        try:
            self.inner.decrypt(identity_path, ciphertext_path, output_path)
        finally:
            with self._lock:
                self.calls.append((identity_path, ciphertext_path, start, time.monotonic()))

    def sources(self):
        return [os.path.basename(c[1]) for c in self.calls]


class Host:
    """A throwaway host: build output, runtime root, sandbox and master key."""

    def __init__(self, base):
        self.base = base
        self.build = base / "build" / "hosts" / "myhost"
        self.build.mkdir(parents=True)
        self.runtime = base / "run" / "aegis"
        self.sandbox = base / "run" / "aegis-dry-run"
        self.master = X25519PrivateKey.generate()
        self.master_path = base / "state" / "master-key"
        self.master_path.parent.mkdir()
        self.master_path.write_bytes(pem(self.master))

    def encrypt(self, rel, plaintext, recipient=None):
        path = self.build / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(plaintext, str):
            plaintext = plaintext.encode()
        path.write_bytes(seal(recipient or self.master, plaintext))
        return str(path)

    def config(self, **kw):
        values = dict(
            build_path=str(self.build),
            master_key_path=str(self.master_path),
            runtime_root=str(self.runtime),
            dry_run_path=str(self.sandbox),
            decrypt_backend="sealed",
            audit_file=str(self.base / "audit.log"),
        )
        values.update(kw)
        return HostConfig(**values)


@pytest.fixture
def host(tmp_path):
    return Host(tmp_path)


def snapshot(root):
    """Map every path under root to (is_dir, content-or-None)."""
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for d in dirnames:
            result[os.path.join(dirpath, d)] = (True, None)
        for f in filenames:
            p = os.path.join(dirpath, f)
            with open(p, "rb") as fh:
                result[p] = (False, fh.read())
    return result
