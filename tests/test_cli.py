"""Tests for the command-line interface."""

import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fmtc_crawler import cli
from fmtc_crawler.models import DisplayFilter, JobResult, MerchantDetail


@pytest.fixture(autouse=True)
def restore_logging():
    """main() reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("FMTC_USERNAME", "buyer@example.com")
    monkeypatch.setenv("FMTC_PASSWORD", "secret")
    monkeypatch.setenv("FMTC_SESSION_DIR", str(tmp_path / "sessions"))
    monkeypatch.delenv("FMTC_DATABASE_PATH", raising=False)
    monkeypatch.delenv("FMTC_RECAPTCHA_MODE", raising=False)
    return tmp_path


def done_result(**kwargs):
    values = dict(
        success=True,
        execution_id="exec",
        final_state="done",
        merchants=[MerchantDetail(source_url="https://x", name="Acme", fmtc_id="9")],
    )
    values.update(kwargs)
    return JobResult(**values)


class TestBuilders:
    """Argument and job-file handling."""

    def test_build_search_params_flags_override_job(self):
        args = MagicMock(free_text="shoes", network_id=None, provider_id=None,
                         category="Clothing", country=None, ship_to_country=None,
                         display="accepting")
        params = cli.build_search_params(args, {"search": {"country": "US", "category": "Pets"}})

        assert params.free_text == "shoes"
        assert params.category == "Clothing"
        assert params.country == "US"
        assert params.display_filter == DisplayFilter.ACCEPTING

    def test_build_targets_skips_entries_without_address(self):
        targets = cli.build_targets([{"id": 5, "name": "Five"}, {"name": "Nothing"}, {"url": "https://x"}])
        assert [(t.merchant_id, t.merchant_url) for t in targets] == [("5", None), (None, "https://x")]

    def test_build_config_flags(self, env):
        args = MagicMock(max_pages=3, headed=True, captcha_mode="skip", download_images=True)
        config = cli.build_config(args, {"config": {"max_pages": 8, "captcha": {"manual_timeout": 30}}})

        assert config.max_pages == 3
        assert config.headless is False
        assert config.captcha.mode == "skip"
        assert config.captcha.manual_timeout == 30
        assert config.download_images is True


class TestCommands:
    """Subcommands with the orchestrator mocked out."""

    def test_crawl_writes_output(self, env, capsys):
        """Results are written as JSON and the exit code reflects success."""
        output = env / "out.json"
        job_file = env / "job.yaml"
        job_file.write_text("search:\n  category: Clothing\nconfig:\n  max_pages: 2\n")

        with patch.object(cli, "CrawlOrchestrator") as orchestrator_cls:
            orchestrator_cls.return_value.run = AsyncMock(return_value=done_result())
            code = cli.main(["crawl", "-c", str(job_file), "--max-pages", "4", "-f", str(output)])

        assert code == 0
        config = orchestrator_cls.call_args.args[0]
        assert config.max_pages == 4
        job = orchestrator_cls.return_value.run.call_args.args[0]
        assert job.search_params.category == "Clothing"
        assert job.credentials.username == "buyer@example.com"
        assert json.loads(output.read_text())["merchants"][0]["name"] == "Acme"

    def test_crawl_failure_exit_code(self, env, capsys):
        with patch.object(cli, "CrawlOrchestrator") as orchestrator_cls:
            orchestrator_cls.return_value.run = AsyncMock(
                return_value=done_result(success=False, final_state="failed", merchants=[])
            )
            assert cli.main(["crawl"]) == 1

        assert json.loads(capsys.readouterr().out)["success"] is False

    def test_refresh_prints_contract(self, env, capsys):
        with patch.object(cli, "MerchantRefresher") as refresher_cls:
            refresher_cls.return_value.refresh = AsyncMock(return_value=done_result())
            code = cli.main(["refresh", "--merchant-id", "9", "--merchant-name", "Acme"])

        assert code == 0
        request = refresher_cls.return_value.refresh.call_args.args[0]
        assert request.targets[0].merchant_id == "9"
        contract = json.loads(capsys.readouterr().out)
        assert contract["merchantData"]["fmtc_id"] == "9"

    def test_refresh_requires_target(self, env):
        with pytest.raises(SystemExit):
            cli.main(["refresh"])

    def test_invalid_config_is_reported(self, env, capsys):
        assert cli.main(["crawl", "--max-pages", "500"]) == 1
        assert "Error" in capsys.readouterr().err

    def test_sessions_list_empty(self, env, capsys):
        assert cli.main(["sessions", "list"]) == 0
        assert json.loads(capsys.readouterr().out) == {"sessions": []}

    def test_sessions_delete_requires_identity(self, env, capsys):
        assert cli.main(["sessions", "delete"]) == 1

    def test_no_command_prints_help(self, env, capsys):
        assert cli.main([]) == 1
        assert "usage" in capsys.readouterr().out
