import pytest

from KaleRig.config import load_config


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("CONFIG_FILE", "RPC_URL", "RELAY_TOKEN", "LOG_LEVEL", "LOG_FILE", "WEB_PORT"):
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, text):
    path = tmp_path / "config.toml"
    path.write_text(text)
    return str(path)


def test_defaults_without_file():
    cfg = load_config()
    assert cfg["miner"]["difficulty"] == 6
    assert cfg["farm"]["poll_interval_secs"] == 5.0
    assert cfg["farm"]["allow_zero_stake"] is True
    assert cfg["harvester"]["background"] is True
    assert cfg["harvester"]["delay"] is None
    assert cfg["relay"]["enabled"] is False
    assert cfg["web"]["port"] == 3002
    assert cfg["farmers"] == []


def test_file_values_and_farmers(tmp_path):
    path = _write(
        tmp_path,
        """
[miner]
difficulty = 8
continuous = true

[harvester]
retry_count = -1
delay = 30

[harvester.tractor]
contract = "CTRACTOR"
frequency = 600

[relay]
url = "https://relay.example"
token = "secret-token"

[[farmers]]
secret = "SAAA"
stake = 500
min_work_time = 240
""",
    )
    cfg = load_config(path)
    assert cfg["miner"]["difficulty"] == 8
    assert cfg["miner"]["continuous"] is True
    assert cfg["harvester"]["retry_count"] == 0
    assert cfg["harvester"]["delay"] == 30.0
    assert cfg["harvester"]["tractor"] == {"contract": "CTRACTOR", "frequency": 600.0}
    assert cfg["relay"]["enabled"] is True
    assert cfg["farmers"] == [
        {"secret": "SAAA", "stake": 500, "difficulty": 0, "min_work_time": 240.0, "harvest_only": False}
    ]


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("CONFIG_FILE", _write(tmp_path, "[web]\nport = 1000\n"))
    monkeypatch.setenv("RPC_URL", "https://rpc.example")
    monkeypatch.setenv("WEB_PORT", "4000")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    cfg = load_config()
    assert cfg["stellar"]["rpc_url"] == "https://rpc.example"
    assert cfg["web"]["port"] == 4000
    assert cfg["logging"]["level"] == "DEBUG"


def test_farmer_without_secret_rejected(tmp_path):
    path = _write(tmp_path, "[[farmers]]\nstake = 10\n")
    with pytest.raises(ValueError):
        load_config(path)
