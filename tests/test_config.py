import pytest

from kairpodsd.config import Config, KnownDevice, config_path
from kairpodsd.errors import ConfigError

ADDRESS = "00:11:22:33:44:55"


@pytest.fixture
def cfg_file(tmp_path, monkeypatch):
    path = tmp_path / "sub" / "config.toml"
    monkeypatch.setenv("AIRPODS_CONFIG_PATH", str(path))
    return path


def test_config_path_override(cfg_file):
    assert config_path() == cfg_file


def test_load_creates_default(cfg_file):
    config = Config.load()
    assert cfg_file.exists()
    assert config == Config()
    assert config.poll_interval == 30
    assert config.connection_retry_count == 10
    assert config.reconnect_delay_sec == 10
    assert config.notification_retries == 3
    assert config.log_filter is None


def test_save_load_round_trip(cfg_file):
    config = Config(
        known_devices=[KnownDevice(address=ADDRESS, name="Test AirPods")],
        poll_interval=5,
        log_filter="debug",
    )
    config.save()
    assert Config.load() == config


def test_partial_file_uses_defaults(cfg_file):
    cfg_file.parent.mkdir(parents=True)
    cfg_file.write_text("poll_interval = 7\n", encoding="utf-8")
    config = Config.load()
    assert config.poll_interval == 7
    assert config.known_devices == []
    assert config.notification_retries == Config().notification_retries


def test_invalid_toml(cfg_file):
    cfg_file.parent.mkdir(parents=True)
    cfg_file.write_text("poll_interval = = 7\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        Config.load()


def test_wrong_type(cfg_file):
    cfg_file.parent.mkdir(parents=True)
    cfg_file.write_text('poll_interval = "often"\n', encoding="utf-8")
    with pytest.raises(ConfigError):
        Config.load()


def test_known_device_missing_name(cfg_file):
    cfg_file.parent.mkdir(parents=True)
    cfg_file.write_text(f'[[known_devices]]\naddress = "{ADDRESS}"\n', encoding="utf-8")
    with pytest.raises(ConfigError):
        Config.load()


def test_is_known_device():
    config = Config(known_devices=[KnownDevice(address=ADDRESS, name="Buds")])
    assert config.is_known_device(ADDRESS) == "Buds"
    assert config.is_known_device("00:00:00:00:00:00") is None