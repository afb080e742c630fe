"""Tests for NSMConfig loading."""

from __future__ import annotations

import json
from pathlib import Path

from nsm.config import NSMConfig


class TestDefaults:
    def test_defaults(self):
        cfg = NSMConfig()
        assert cfg.port == 8080
        assert cfg.cms_port == 80
        assert cfg.max_backups == 20
        assert cfg.scan_budget == 30.0
        assert cfg.db_path == Path("./data") / "hosts.db"
        assert cfg.identity_path == Path("./data") / "identity.id"

    def test_explicit_db_file(self):
        assert NSMConfig(host_data_file="/srv/nsm.db").db_path == Path("/srv/nsm.db")


class TestLoad:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert NSMConfig.load(tmp_path / "nope.json") == NSMConfig()

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "nsm.json"
        path.write_text(json.dumps({"port": 9000, "colour": "blue"}))
        assert NSMConfig.load(path).port == 9000

    def test_malformed_file_gives_defaults(self, tmp_path):
        path = tmp_path / "nsm.json"
        path.write_text("{oops")
        assert NSMConfig.load(path) == NSMConfig()

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "cfg" / "nsm.json"
        NSMConfig(port=9100, host_ip="10.1.1.1").save(path)
        loaded = NSMConfig.load(path)
        assert loaded.port == 9100
        assert loaded.host_ip == "10.1.1.1"


class TestFromEnv:
    def test_env_overrides(self, tmp_path):
        cfg = NSMConfig.from_env({
            "NSM_DATA_DIR": str(tmp_path),
            "PORT": "9001",
            "NSM_HOST_IP": " 10.2.2.2 ",
            "NSM_LOG_LEVEL": "debug",
            "NSM_ENABLE_MDNS": "false",
        })
        assert cfg.db_path == tmp_path / "hosts.db"
        assert cfg.port == 9001
        assert cfg.host_ip == "10.2.2.2"
        assert cfg.log_level == "DEBUG"
        assert cfg.enable_mdns is False

    def test_nsm_port_beats_port(self):
        assert NSMConfig.from_env({"PORT": "1", "NSM_PORT": "2"}).port == 2

    def test_bad_port_ignored(self):
        assert NSMConfig.from_env({"PORT": "eighty"}).port == 8080

    def test_config_file_then_env(self, tmp_path):
        path = tmp_path / "nsm.json"
        path.write_text(json.dumps({"port": 7000, "cms_port": 8000}))
        cfg = NSMConfig.from_env({"NSM_CONFIG": str(path), "PORT": "7001"})
        assert cfg.port == 7001
        assert cfg.cms_port == 8000
