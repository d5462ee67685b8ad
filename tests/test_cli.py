import pytest
from conftest import ME, MY_GROUP, pem
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from cli import main


@pytest.fixture
def host_toml(host):
    role = X25519PrivateKey.generate()
    host.encrypt("role-key.age", pem(role))
    host.encrypt("role-secret.age", "role-secret-data", recipient=role)
    path = host.base / "host.toml"
    path.write_text(
        f'build_path = "{host.build}"\n'
        f'master_key_path = "{host.master_path}"\n'
        f'runtime_root = "{host.runtime}"\n'
        f'dry_run_path = "{host.sandbox}"\n'
        f'audit_file = "{host.base / "audit.log"}"\n'
        'decrypt_backend = "sealed"\n'
        '\n'
        '[secrets.role-key]\n'
        f'source = "{host.build / "role-key.age"}"\n'
        f'target = "{host.runtime / "roles" / "test-role"}"\n'
        f'user = "{ME}"\n'
        f'group = "{MY_GROUP}"\n'
        '\n'
        '[secrets.role-secret]\n'
        f'source = "{host.build / "role-secret.age"}"\n'
        'identity_from = "role-key"\n'
        f'user = "{ME}"\n'
        f'group = "{MY_GROUP}"\n'
        'mode = "0440"\n'
    )
    return str(path)


def test_plan(host_toml, capsys):
    main(["--config", host_toml, "plan"])
    out = capsys.readouterr().out
    assert "Phase 1:" in out and "Phase 2:" in out
    assert "role-secret [secret]" in out
    assert "(identity from role-key)" in out


def test_provision_and_teardown(host, host_toml, capsys):
    main(["--config", host_toml, "provision"])
    out = capsys.readouterr().out
    assert f"placed role-secret -> {host.runtime / 'role-secret'}" in out
    assert (host.runtime / "role-secret").read_text() == "role-secret-data"

    main(["--config", host_toml, "status"])
    assert "present phase 2 role-secret" in capsys.readouterr().out

    main(["--config", host_toml, "teardown"])
    assert "removed role-key" in capsys.readouterr().out
    assert not (host.runtime / "role-secret").exists()


def test_dry_run_flag(host, host_toml, capsys):
    main(["--config", host_toml, "--dry-run", "provision"])
    assert (host.sandbox / "role-secret").read_text() == "role-secret-data"
    assert not host.runtime.exists()


def test_failure_exits_nonzero(host, host_toml, capsys):
    (host.build / "role-key.age").unlink()
    with pytest.raises(SystemExit) as exc:
        main(["--config", host_toml, "provision"])
    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "failed role-key: missing-source" in err
    assert "failed role-secret: dependency-blocked" in err


def test_place_single_unit(host, host_toml, capsys):
    main(["--config", host_toml, "place", "role-key"])
    assert "placed role-key" in capsys.readouterr().out

    with pytest.raises(SystemExit):
        main(["--config", host_toml, "place", "nope"])
    assert "No descriptor named 'nope'" in capsys.readouterr().err


def test_audit_log(host_toml, capsys):
    main(["--config", host_toml, "provision"])
    capsys.readouterr()
    main(["--config", host_toml, "audit-log", "--last", "1"])
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1
    assert "| system | phase |" in out[0]

    main(["--config", host_toml, "audit-log", "--unit", "role-key"])
    out = capsys.readouterr().out.strip().splitlines()
    assert out and all("| role-key | place |" in line for line in out)


def test_missing_config(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(tmp_path / "missing.toml"), "plan"])
    assert exc.value.code == 1
    assert "Error: Host config not found" in capsys.readouterr().err


def test_no_command(capsys):
    with pytest.raises(SystemExit):
        main([])
