import pytest

from lxcupgrader.errors import UpgraderError
from lxcupgrader.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".lxcupgrader.yml"
    config_file.write_text(
        "resource_pool: Media-Server\nbackup_storage: nas-backups\nssh_connect_timeout: 5\n",
        encoding="utf-8",
    )

    loader = ConfigLoader()
    loaded = loader.load(str(config_file))

    assert loaded["resource_pool"] == "Media-Server"
    assert loaded["backup_storage"] == "nas-backups"
    assert loaded["ssh_connect_timeout"] == 5


def test_config_loader_returns_empty_mapping_without_path():
    assert ConfigLoader().load(None) == {}


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".lxcupgrader.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    loader = ConfigLoader()

    with pytest.raises(UpgraderError, match="Unknown configuration keys"):
        loader.load(str(config_file))


def test_config_loader_rejects_non_mapping(tmp_path):
    config_file = tmp_path / ".lxcupgrader.yml"
    config_file.write_text("- 301\n- 302\n", encoding="utf-8")

    with pytest.raises(UpgraderError, match="YAML mapping"):
        ConfigLoader().load(str(config_file))


def test_config_loader_missing_file_raises(tmp_path):
    with pytest.raises(UpgraderError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))
