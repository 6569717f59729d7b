"""Tests for settings and provider launch spec loading."""

import json

import pytest

from tool_gateway.config import Settings, get_settings, load_launch_specs


class TestSettings:

    def test_defaults(self, monkeypatch):
        for key in ("PORT", "STARTUP_POLICY", "CALL_ORDERING", "HEARTBEAT_INTERVAL"):
            monkeypatch.delenv(key, raising=False)
        settings = Settings(_env_file=None)

        assert settings.port == 3006
        assert settings.heartbeat_interval == 15.0
        assert settings.session_heartbeat_interval == 30.0
        assert settings.restart_max_attempts == 5
        assert settings.startup_policy == "wait"
        assert settings.call_ordering == "interleave"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("PORT", "4000")
        monkeypatch.setenv("startup_policy", "fail_fast")

        settings = Settings(_env_file=None)

        assert settings.port == 4000
        assert settings.startup_policy == "fail_fast"

    def test_invalid_policy_rejected(self, monkeypatch):
        monkeypatch.setenv("CALL_ORDERING", "random")
        with pytest.raises(ValueError):
            Settings(_env_file=None)

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestLoadLaunchSpecs:

    def test_none_path(self):
        assert load_launch_specs(None) == []

    def test_providers_key(self, tmp_path):
        path = tmp_path / "providers.json"
        path.write_text(json.dumps({
            "providers": {
                "news": {"command": "python", "args": ["news.py"], "env": {"API_KEY": "x"}},
                "files": {
                    "command": "node",
                    "args": ["files.js"],
                    "tools": [{"name": "read_file", "inputSchema": {"type": "object"}}],
                },
            }
        }))

        specs = load_launch_specs(path)

        assert [s.id for s in specs] == ["news", "files"]
        assert specs[0].env == {"API_KEY": "x"}
        assert specs[0].tools is None
        assert specs[1].tools[0].name == "read_file"
        assert specs[1].tools[0].input_schema == {"type": "object"}

    def test_mcp_servers_key(self, tmp_path):
        path = tmp_path / "claude_desktop_config.json"
        path.write_text(json.dumps({"mcpServers": {"web": {"command": "web-provider"}}}))

        specs = load_launch_specs(path)

        assert specs[0].id == "web"
        assert specs[0].args == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="Cannot read"):
            load_launch_specs(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{")
        with pytest.raises(ValueError):
            load_launch_specs(path)

    @pytest.mark.parametrize("content", [[], {"providers": []}, {"providers": {"x": "cmd"}}])
    def test_wrong_shape(self, tmp_path, content):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps(content))
        with pytest.raises(ValueError):
            load_launch_specs(path)

    def test_entry_without_command(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"providers": {"x": {"args": []}}}))
        with pytest.raises(ValueError, match="'x'"):
            load_launch_specs(path)
