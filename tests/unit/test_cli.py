"""Unit tests for the command-line entry point."""
import json
import sys

import pytest
from loguru import logger

from market_fusion import cli
from market_fusion.core.config import FusionConfig
from market_fusion.db.market_data_store import SQLiteMarketDataStore
from market_fusion.services.data.aggregator import AggregationOrchestrator


@pytest.fixture(autouse=True)
def restore_logging():
    """main() reconfigures loguru; put the default sink back afterwards."""
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("COINMARKETCAP_API_KEY", "COINGECKO_API_KEY", "NEWS_API_KEY", "MARKET_FUSION_DB_PATH"):
        monkeypatch.setenv(name, "unset")
        monkeypatch.delenv(name)
    path = tmp_path / "fusion.yaml"
    path.write_text(f"symbols: [bitcoin]\ndb_path: {tmp_path / 'market.db'}\n")
    return path


class TestBuildSources:

    def test_coinmarketcap_requires_key(self):
        sources = cli.build_sources(FusionConfig())

        assert [s.source_id for s in sources] == ["coingecko", "binance"]

    def test_all_providers_with_keys(self):
        sources = cli.build_sources(FusionConfig(coinmarketcap_api_key="cmc_key", max_redirects=1))

        assert [s.source_id for s in sources] == ["coingecko", "coinmarketcap", "binance"]
        assert all(s.session.max_redirects == 1 for s in sources)


class TestMain:

    def test_invalid_config_exits_2(self, tmp_path, capsys):
        exit_code = cli.main(["--config", str(tmp_path / "missing.yaml"), "status"])

        assert exit_code == 2
        assert "Configuration error" in capsys.readouterr().err

    def test_status_prints_sources_and_health(self, config_file, capsys):
        """Test status reports every source and the health check as JSON."""
        # ACT
        exit_code = cli.main(["--config", str(config_file), "--env-file", str(config_file.parent / "none.env"), "status"])

        # ASSERT
        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert [s["name"] for s in output["sources"]["sources"]] == ["coingecko", "binance"]
        assert output["health"]["metrics"]["active_symbols"] == 1

    def test_status_ping_reports_reachability(self, config_file, capsys, monkeypatch, stub_source):
        def build(config):
            return AggregationOrchestrator([stub_source("binance", price=101.0)], SQLiteMarketDataStore(config.db_path), config)

        monkeypatch.setattr(cli, "build_orchestrator", build)

        exit_code = cli.main([
            "--config", str(config_file), "--env-file", str(config_file.parent / "none.env"), "status", "--ping"
        ])

        assert exit_code == 0
        assert json.loads(capsys.readouterr().out)["reachable"] == {"binance": True}

    def test_cycle_runs_once(self, config_file, capsys, monkeypatch, stub_source):
        """Test the cycle command persists and prints the report."""
        # ARRANGE
        def build(config):
            return AggregationOrchestrator(
                [stub_source("coingecko", price=100.0), stub_source("binance", price=101.0)],
                SQLiteMarketDataStore(config.db_path),
                config
            )

        monkeypatch.setattr(cli, "build_orchestrator", build)

        # ACT
        exit_code = cli.main(["--config", str(config_file), "--env-file", str(config_file.parent / "none.env"), "cycle"])

        # ASSERT
        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["persisted"] == ["bitcoin"]

    def test_backfill_with_failures_exits_1(self, config_file, capsys, monkeypatch, stub_source):
        def build(config):
            return AggregationOrchestrator([stub_source("binance", price=101.0)], SQLiteMarketDataStore(config.db_path), config)

        monkeypatch.setattr(cli, "build_orchestrator", build)

        exit_code = cli.main([
            "--config", str(config_file), "--env-file", str(config_file.parent / "none.env"),
            "backfill", "--symbols", "bitcoin", "--days", "1"
        ])

        assert exit_code == 1
        assert json.loads(capsys.readouterr().out)["failed"] == ["bitcoin"]

    def test_subcommand_is_required(self):
        with pytest.raises(SystemExit):
            cli.main([])
