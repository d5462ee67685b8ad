import base64
import os
import stat
import threading

from conftest import ME, MY_GROUP, RecordingDecryptor, pem
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from crypto import NONCE_SIZE, SEALED_MAGIC
from placement import PRODUCTION, Mode, State, place, remove
from registry import SecretDescriptor


def _mode_bits(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def _descriptor(host, name="db", **kw):
    values = dict(
        name=name,
        source=str(host.build / f"{name}.age"),
        target=str(host.runtime / "app" / name),
        owner=ME,
        group=MY_GROUP,
        mode=0o440,
        identity=str(host.master_path),
    )
    values.update(kw)
    return SecretDescriptor(**values)


def _dry(host):
    return Mode(dry_run=True, sandbox=str(host.sandbox), runtime_root=str(host.runtime))


def test_place_decrypts_and_sets_mode(host):
    host.encrypt("db.age", "s3cret")
    d = _descriptor(host)

    r = place(d, PRODUCTION, RecordingDecryptor())
    assert r.state == State.PLACED
    assert r.target == d.target
    assert open(d.target).read() == "s3cret"
    assert _mode_bits(d.target) == 0o440
    # Newly created parent gets the restrictive directory mode
    assert _mode_bits(os.path.dirname(d.target)) == 0o750


def test_place_is_idempotent(host):
    host.encrypt("db.age", "s3cret")
    d = _descriptor(host)
    decryptor = RecordingDecryptor()

    first = place(d, PRODUCTION, decryptor)
    second = place(d, PRODUCTION, decryptor)
    assert first.state == second.state == State.PLACED
    assert open(d.target).read() == "s3cret"
    assert _mode_bits(d.target) == 0o440
    st = os.stat(d.target)
    assert (st.st_uid, st.st_gid) == (os.getuid(), os.getgid())


def test_missing_source_removes_stale_plaintext(host):
    d = _descriptor(host)
    os.makedirs(os.path.dirname(d.target))
    with open(d.target, "w") as f:
        f.write("stale")

    r = place(d, PRODUCTION, RecordingDecryptor())
    assert r.state == State.FAILED
    assert r.error_kind == "missing-source"
    assert not os.path.exists(d.target)


def test_decrypt_failure_leaves_no_file(host):
    other = X25519PrivateKey.generate()
    host.encrypt("db.age", "for someone else", recipient=other)
    d = _descriptor(host)

    r = place(d, PRODUCTION, RecordingDecryptor())
    assert r.state == State.FAILED
    assert r.error_kind == "decrypt"
    assert not os.path.exists(d.target)
    assert os.listdir(os.path.dirname(d.target)) == []


def test_blocked_unit_never_decrypts(host):
    host.encrypt("db.age", "s3cret")
    d = _descriptor(host, identity_from="role-key", identity=str(host.runtime / "roles" / "x"))
    decryptor = RecordingDecryptor()

    r = place(d, PRODUCTION, decryptor, blocked_by="role-key")
    assert r.state == State.FAILED
    assert r.error_kind == "dependency-blocked"
    assert decryptor.calls == []
    assert not host.runtime.exists()


def test_unplaced_producer_blocks(host):
    host.encrypt("db.age", "s3cret")
    d = _descriptor(host, identity_from="role-key", identity=str(host.runtime / "roles" / "x"))
    decryptor = RecordingDecryptor()

    r = place(d, PRODUCTION, decryptor)
    assert r.error_kind == "dependency-blocked"
    assert decryptor.calls == []


def test_identity_from_previous_phase(host):
    role = X25519PrivateKey.generate()
    host.encrypt("role-key.age", pem(role))
    host.encrypt("role-secret.age", "role-secret-data", recipient=role)
    key = _descriptor(host, "role-key", target=str(host.runtime / "roles" / "test-role"), mode=0o400)
    secret = _descriptor(host, "role-secret", identity=key.target, identity_from="role-key", phase=2)

    decryptor = RecordingDecryptor()
    assert place(key, PRODUCTION, decryptor).state == State.PLACED
    assert place(secret, PRODUCTION, decryptor).state == State.PLACED
    assert open(secret.target).read() == "role-secret-data"


def test_base64_encoding_is_decoded(host):
    raw = bytes(range(256))
    host.encrypt("keytab.age", base64.b64encode(raw))
    d = _descriptor(host, "keytab", encoding="base64")

    assert place(d, PRODUCTION, RecordingDecryptor()).state == State.PLACED
    with open(d.target, "rb") as f:
        assert f.read() == raw


def test_chown_failure_removes_plaintext(host):
    host.encrypt("db.age", "s3cret")
    d = _descriptor(host, owner="no-such-user-for-aegis-tests")
    os.makedirs(os.path.dirname(d.target))

    r = place(d, PRODUCTION, RecordingDecryptor())
    assert r.state == State.FAILED
    assert r.error_kind == "placement"
    assert not os.path.exists(d.target)


def test_dry_run_redirects_under_sandbox(host):
    host.encrypt("db.age", "s3cret")
    d = _descriptor(host, owner="root", group="root", mode=0o644)

    r = place(d, _dry(host), RecordingDecryptor(), audit_file=str(host.base / "audit.log"))
    assert r.state == State.PLACED
    assert r.target == str(host.sandbox / "app" / "db")
    assert open(r.target).read() == "s3cret"
    assert _mode_bits(r.target) == 0o400
    assert not host.runtime.exists()
    log = (host.base / "audit.log").read_text()
    assert "would apply root:root 0644" in log


def test_dry_run_paths_outside_runtime_root(host):
    mode = _dry(host)
    assert mode.effective("/etc/krb5.keytab") == os.path.join(str(host.sandbox), "etc", "krb5.keytab")
    assert mode.effective(str(host.runtime)) == str(host.sandbox)
    assert mode.effective(str(host.sandbox / "x")) == str(host.sandbox / "x")
    assert PRODUCTION.effective("/etc/krb5.keytab") == "/etc/krb5.keytab"


def test_cancel_before_decrypt_has_no_side_effects(host):
    host.encrypt("db.age", "s3cret")
    cancel = threading.Event()
    cancel.set()
    decryptor = RecordingDecryptor()

    r = place(_descriptor(host), PRODUCTION, decryptor, cancel=cancel)
    assert r.error_kind == "cancelled"
    assert decryptor.calls == []
    assert not host.runtime.exists()


def test_remove_is_idempotent(host):
    host.encrypt("db.age", "s3cret")
    d = _descriptor(host)
    place(d, PRODUCTION, RecordingDecryptor())

    assert remove(d, PRODUCTION).state == State.REMOVED
    assert not os.path.exists(d.target)
    assert remove(d, PRODUCTION).state == State.REMOVED


def test_shared_parent_created_concurrently(host):
    names = [f"s{i}" for i in range(8)]
    for n in names:
        host.encrypt(f"{n}.age", n)
    decryptor = RecordingDecryptor()
    results = []
    threads = [
        threading.Thread(target=lambda n=n: results.append(place(_descriptor(host, n), PRODUCTION, decryptor)))
        for n in names
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert all(r.state == State.PLACED for r in results)
    assert sorted(os.listdir(host.runtime / "app")) == names


def test_corrupt_sealed_header_is_decrypt_failure(host):
    (host.build / "db.age").write_bytes(SEALED_MAGIC + b"\x00" * 32 + b"\x01" * NONCE_SIZE + b"x" * 40)
    d = _descriptor(host)

    r = place(d, PRODUCTION, RecordingDecryptor())
    assert r.state == State.FAILED
    assert r.error_kind == "decrypt"
    assert not os.path.exists(d.target)
