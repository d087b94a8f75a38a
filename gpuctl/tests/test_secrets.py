import json
import stat

import pytest

from gpuctl.modules.cluster.errors import ConfigurationError
from gpuctl.modules.cluster.installer.secrets import (
    APPPROXY_API, MANAGER_STORAGE_PROXY, SECRET_SPECS, SecretsGenerator, generate_secret,
)


def test_secrets_have_enough_entropy():
    for spec in SECRET_SPECS:
        value = generate_secret(spec)
        if spec.encoding == 'hex':
            assert len(value) == 64
            int(value, 16)
        else:
            assert len(value) >= 43
        assert value != generate_secret(spec)


def test_first_run_generates_and_persists(tmp_path):
    bundle = SecretsGenerator(tmp_path / ".gpuctl").obtain()
    path = tmp_path / ".gpuctl" / "secrets.json"

    assert set(bundle.names()) == {spec.name for spec in SECRET_SPECS}
    assert json.loads(path.read_text()) == bundle.values
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_rerun_reuses_persisted_secrets(tmp_path):
    first = SecretsGenerator(tmp_path).obtain()
    second = SecretsGenerator(tmp_path).obtain()
    assert first.values == second.values


def test_rotate_regenerates_everything(tmp_path):
    first = SecretsGenerator(tmp_path).obtain()
    rotated = SecretsGenerator(tmp_path).obtain(rotate=True)
    for name in first.names():
        assert rotated[name] != first[name]
    assert SecretsGenerator(tmp_path).obtain().values == rotated.values


def test_missing_secrets_are_filled_in(tmp_path):
    (tmp_path / "secrets.json").write_text(json.dumps({MANAGER_STORAGE_PROXY: "kept"}))
    bundle = SecretsGenerator(tmp_path).obtain()
    assert bundle[MANAGER_STORAGE_PROXY] == "kept"
    assert bundle[APPPROXY_API]


def test_corrupt_secrets_file_is_reported(tmp_path):
    (tmp_path / "secrets.json").write_text("{not json")
    with pytest.raises(ConfigurationError):
        SecretsGenerator(tmp_path).obtain()


def test_dry_run_does_not_persist(tmp_path):
    SecretsGenerator(tmp_path / "state", dry_run=True).obtain()
    assert not (tmp_path / "state").exists()


def test_unknown_secret_lookup_raises(tmp_path):
    bundle = SecretsGenerator(tmp_path).generate()
    with pytest.raises(ConfigurationError):
        bundle["nope"]
