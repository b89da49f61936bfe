"""
Unit tests for the connect_exporter command line.
"""

import json
import shlex
import sys
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add scripts directory to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "scripts"))

import connect_exporter  # noqa: E402


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep main() from replacing the root log handlers."""
    monkeypatch.setattr(connect_exporter, "setup_logging", Mock())
    for name in ("KAFKA_CONNECT_URLS", "KAFKA_CONNECT_TARGETS_FILE", "RULES_FILE"):
        monkeypatch.delenv(name, raising=False)


def usage_lines():
    return [
        line.strip()
        for line in connect_exporter.__doc__.splitlines()
        if line.strip().startswith("./scripts/connect_exporter.py")
    ]


class TestParser:

    def test_docstring_has_usage_lines(self):
        assert len(usage_lines()) >= 4

    @pytest.mark.parametrize("line", usage_lines())
    def test_usage_lines_parse(self, line):
        args = connect_exporter.build_parser().parse_args(shlex.split(line)[1:])

        assert args.command == line.split()[1]

    @pytest.mark.parametrize("command", ["run", "poll", "check-config"])
    def test_shared_options_follow_every_subcommand(self, command):
        args = connect_exporter.build_parser().parse_args(
            [command, "--urls", "http://connect-a:8083", "--rules-file", "rules.yaml", "-v"]
        )

        assert args.urls == "http://connect-a:8083"
        assert args.rules_file == "rules.yaml"
        assert args.verbose

    def test_run_only_options(self):
        args = connect_exporter.build_parser().parse_args(["run", "--bind-addr", "127.0.0.1:9500"])

        assert args.bind_addr == "127.0.0.1:9500"
        assert connect_exporter.build_config(args).bind_addr == "127.0.0.1:9500"


class TestMain:

    def test_no_command_prints_help(self, capsys):
        assert connect_exporter.main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_check_config(self, capsys, tmp_path):
        rules = tmp_path / "rules.yaml"
        rules.write_text(
            "conditions:\n"
            "  - alert: SlotLag\n"
            "    kind: lag_threshold\n"
            "    threshold: 1GB\n"
        )

        code = connect_exporter.main([
            "check-config", "--urls", "http://connect-a:8083", "--rules-file", str(rules),
        ])

        output = json.loads(capsys.readouterr().out)
        assert code == 0
        assert output["endpoints"] == [{"name": "connect-a:8083", "url": "http://connect-a:8083"}]
        assert output["rules"]["total_alerts"] == 1

    def test_invalid_rules_file_exits_with_1(self, tmp_path):
        code = connect_exporter.main(["check-config", "--rules-file", str(tmp_path / "missing.yaml")])

        assert code == 1
