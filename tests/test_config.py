import json
import pytest
from wirekernel.config import ConnectionConfig, KernelSettings, env_flag
from wirekernel.errors import ConfigError

CONN = dict(transport="tcp", ip="127.0.0.1", shell_port=5001, iopub_port=5002, stdin_port=5003, control_port=5004, hb_port=5005,
    key="a0436f6c-1916-498b-8eb9-e81ab9368e84", signature_scheme="hmac-sha256", kernel_name="wirekernel")


def test_from_dict():
    cfg = ConnectionConfig.from_dict(CONN)
    assert cfg.port("hb") == 5005
    assert cfg.addr(cfg.shell_port) == "tcp://127.0.0.1:5001"
    assert cfg.key_bytes == CONN["key"].encode()
    assert cfg.kernel_name == "wirekernel"


def test_from_file(tmp_path):
    path = tmp_path / "kernel-1.json"
    path.write_text(json.dumps(CONN))
    assert ConnectionConfig.from_file(str(path)) == ConnectionConfig.from_dict(CONN)


def test_from_file_errors(tmp_path):
    with pytest.raises(ConfigError, match="cannot read"): ConnectionConfig.from_file(str(tmp_path / "missing.json"))
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigError, match="cannot read"): ConnectionConfig.from_file(str(bad))
    bad.write_text("[1, 2]")
    with pytest.raises(ConfigError, match="JSON object"): ConnectionConfig.from_file(str(bad))


def test_defaults_and_string_ports():
    data = {k: v for k, v in CONN.items() if k not in ("key", "signature_scheme", "kernel_name")} | dict(shell_port="6000")
    cfg = ConnectionConfig.from_dict(data)
    assert cfg.shell_port == 6000
    assert cfg.key == "" and cfg.signature_scheme == "hmac-sha256"


def test_ipc_addr():
    cfg = ConnectionConfig.from_dict(CONN | dict(transport="ipc", ip="/tmp/kernel"))
    assert cfg.addr(cfg.control_port) == "ipc:///tmp/kernel-5004"


def test_missing_fields():
    data = {k: v for k, v in CONN.items() if k not in ("hb_port", "ip")}
    with pytest.raises(ConfigError, match="ip, hb_port"): ConnectionConfig.from_dict(data)


def test_bad_port_and_scheme():
    with pytest.raises(ConfigError, match="invalid port"): ConnectionConfig.from_dict(CONN | dict(stdin_port="nope"))
    with pytest.raises(ConfigError, match="signature_scheme"): ConnectionConfig.from_dict(CONN | dict(signature_scheme="rsa"))


def test_config_is_immutable():
    cfg = ConnectionConfig.from_dict(CONN)
    with pytest.raises(AttributeError): cfg.key = "other"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("WIREKERNEL_IOPUB_QMAX", "50")
    monkeypatch.setenv("WIREKERNEL_IOPUB_SNDHWM", "7")
    monkeypatch.setenv("WIREKERNEL_STOP_ON_ERROR_TIMEOUT", "0.5")
    monkeypatch.setenv("WIREKERNEL_SHUTDOWN_LINGER", "250")
    monkeypatch.setenv("WIREKERNEL_INTROSPECTION_STATUS", "yes")
    monkeypatch.setenv("WIREKERNEL_USE_JEDI", "0")
    monkeypatch.setenv("WIREKERNEL_EXPERIMENTAL_COMPLETIONS", "false")
    s = KernelSettings.from_env()
    assert (s.iopub_qmax, s.iopub_sndhwm, s.stop_on_error_timeout, s.shutdown_linger) == (50, 7, 0.5, 250)
    assert s.introspection_status is True
    assert s.use_jedi is False
    assert s.experimental_completions is False


def test_settings_invalid_values_fall_back(monkeypatch):
    monkeypatch.setenv("WIREKERNEL_IOPUB_QMAX", "lots")
    monkeypatch.setenv("WIREKERNEL_STOP_ON_ERROR_TIMEOUT", "soon")
    monkeypatch.setenv("WIREKERNEL_INTROSPECTION_STATUS", "maybe")
    monkeypatch.delenv("WIREKERNEL_USE_JEDI", raising=False)
    s = KernelSettings.from_env()
    assert s.iopub_qmax == 10000
    assert s.stop_on_error_timeout == 0.0
    assert s.introspection_status is False
    assert s.use_jedi is None


def test_env_flag(monkeypatch):
    monkeypatch.setenv("X_FLAG", "on")
    assert env_flag("X_FLAG") is True
    monkeypatch.setenv("X_FLAG", "???")
    assert env_flag("X_FLAG") is None
    monkeypatch.delenv("X_FLAG")
    assert env_flag("X_FLAG") is None
