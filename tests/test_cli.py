"""
CLI Tests.
"""

import json
from argparse import Namespace

import pytest

from chain_stream.cli import create_parser, load_config, print_update
from chain_stream.config import set_config
from chain_stream.models import Network, StreamStats, StreamStatus


@pytest.fixture(autouse=True)
def reset_global_config(monkeypatch):
    monkeypatch.delenv("CHAIN_STREAM_NETWORK", raising=False)
    monkeypatch.delenv("CHAIN_STREAM_POLL_MS", raising=False)
    yield
    set_config(None)


class TestParser:
    def test_defaults(self):
        args = create_parser().parse_args([])

        assert args.network is None
        assert args.once is False
        assert args.gas is False
        assert args.log_level == "INFO"

    def test_once_and_gas_are_exclusive(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--once", "--gas"])

    def test_unknown_network_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--network", "devnet"])


class TestLoadConfig:
    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("CHAIN_STREAM_POLL_MS", "800")
        args = create_parser().parse_args(["--network", "testnet", "--poll-ms", "450"])

        config = load_config(args)

        assert config.network == Network.TESTNET
        assert config.poll_interval_ms == 450

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "stream.yaml"
        path.write_text("poll_interval_ms: 700\n")

        config = load_config(Namespace(config=str(path), network=None, poll_ms=None))

        assert config.poll_interval_ms == 700


def test_print_update(capsys):
    print_update(
        StreamStats(block_height=1000, tps=38, avg_block_time_ms=99),
        StreamStatus(connected=True),
    )

    line = json.loads(capsys.readouterr().out)

    assert line["block_height"] == 1000
    assert line["tps"] == 38
    assert line["connected"] is True
    assert line["epoch"] is None
