"""Tests for CLI argument and input handling."""

import json
import logging
from unittest.mock import patch

import pytest

from b24_auth import HookAuth, OAuthAuth
from b24_http import MAX_BATCH_COMMANDS
from cli import build_client, load_batch_file, parse_args, parse_params, run
from config import AppConfig


class TestParseArgs:

    def test_call_with_params(self):
        args = parse_args(["call", "crm.deal.get", "-p", "id=5", "--json", '{"select": ["ID"]}'])
        assert args.command == "call"
        assert args.method == "crm.deal.get"
        assert args.param == ["id=5"]

    def test_list_item_key(self):
        args = parse_args(["--webhook", "https://a.b/rest/1/s", "list", "crm.item.list", "--item-key", "items"])
        assert args.item_key == "items"
        assert args.webhook == "https://a.b/rest/1/s"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])


class TestParseParams:

    def test_merges_json_and_pairs(self):
        params = parse_params(["id=5"], '{"select": ["ID"], "id": 1}')
        assert params == {"select": ["ID"], "id": "5"}

    def test_rejects_bad_pair(self):
        with pytest.raises(ValueError):
            parse_params(["novalue"], None)

    def test_rejects_non_object_json(self):
        with pytest.raises(ValueError):
            parse_params([], "[1, 2]")


class TestLoadBatchFile:

    def test_reads_commands(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"me": "user.current", "deal": ["crm.deal.get", {"id": 1}]}))

        assert load_batch_file(path) == {
            "me": ("user.current", {}),
            "deal": ("crm.deal.get", {"id": 1}),
        }

    def test_rejects_non_object(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text("[]")
        with pytest.raises(ValueError):
            load_batch_file(path)

    @pytest.mark.parametrize("command", [
        {"a": 5},
        ["crm.deal.get"],
        ["crm.deal.get", {"id": 1}, "extra"],
        [5, {"id": 1}],
    ])
    def test_rejects_malformed_command(self, tmp_path, command):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"bad": command}))
        with pytest.raises(ValueError, match="bad"):
            load_batch_file(path)

    def test_rejects_non_object_params(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"deal": ["crm.deal.get", [1, 2]]}))
        with pytest.raises(ValueError, match="JSON object"):
            load_batch_file(path)

    def test_null_params_become_empty(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"me": ["user.current", None]}))
        assert load_batch_file(path) == {"me": ("user.current", {})}

    def test_rejects_more_commands_than_one_batch_holds(self, tmp_path):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({f"c{i}": "user.current" for i in range(MAX_BATCH_COMMANDS + 1)}))
        with pytest.raises(ValueError, match="at most"):
            load_batch_file(path)

    @pytest.mark.asyncio
    async def test_run_reports_bad_batch_file(self, tmp_path, webhook_url):
        path = tmp_path / "batch.json"
        path.write_text(json.dumps({"a": 5}))
        args = parse_args(["--config", str(tmp_path / "config.toml"), "--webhook", webhook_url, "batch", str(path)])

        with patch("cli.setup_logging", return_value=logging.getLogger("b24_rest_cli_test")):
            assert await run(args) == 2


class TestBuildClient:

    def test_webhook_argument(self, tmp_path, webhook_url):
        client = build_client(AppConfig(project_root=tmp_path), webhook_url)
        assert isinstance(client.auth, HookAuth)

    def test_oauth_from_env(self, tmp_path, monkeypatch):
        for key in ("B24_WEBHOOK_URL", "B24_CLIENT_ID", "B24_CLIENT_SECRET", "B24_REFRESH_TOKEN", "B24_DOMAIN"):
            monkeypatch.setenv(key, "")
            monkeypatch.delenv(key)
        monkeypatch.setenv("B24_CLIENT_ID", "local.app")
        monkeypatch.setenv("B24_CLIENT_SECRET", "secret")
        monkeypatch.setenv("B24_REFRESH_TOKEN", "refresh")
        monkeypatch.setenv("B24_DOMAIN", "portal.bitrix24.com")

        client = build_client(AppConfig(project_root=tmp_path), None)

        assert isinstance(client.auth, OAuthAuth)
        assert client.get_target_origin() == "https://portal.bitrix24.com"
