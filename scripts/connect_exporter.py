#!/usr/bin/env python3
"""
Kafka Connect Status Exporter and Replication-Lag Alert Evaluator

Polls Kafka Connect REST APIs, exposes connector/task status as Prometheus
metrics, and evaluates replication-lag and connector-health alert
conditions, pushing alert events to Alertmanager or a webhook.

Usage:
    ./scripts/connect_exporter.py run
    ./scripts/connect_exporter.py run --urls http://connect-1:8083,http://connect-2:8083
    ./scripts/connect_exporter.py poll
    ./scripts/connect_exporter.py check-config --rules-file rules.yaml
    ./scripts/connect_exporter.py export-rules --output rules.yaml --alertmanager-output am.yaml

Configuration is read from the environment (KAFKA_CONNECT_URLS, BIND_ADDR,
SCRAPE_INTERVAL_SECS, RULES_FILE, ALERTMANAGER_URL, LAG_SOURCE_DSN, ...);
command line flags override it.
"""

import sys
import argparse
import json
import logging
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.exporter.service import ExporterService, load_rules, load_targets
from src.exporter.normalizer import StateNormalizer
from src.exporter.poller import StatusPoller
from src.monitoring.alerts import AlertRuleGenerator
from src.utils.config import ConfigError, ExporterConfig
from src.utils.logging_config import setup_logging

logger = logging.getLogger("connect_exporter")


def build_config(args) -> ExporterConfig:
    """Environment configuration with command line overrides applied."""
    return ExporterConfig.from_env().with_overrides(
        connect_urls=args.urls,
        targets_file=args.targets_file,
        rules_file=args.rules_file,
        bind_addr=getattr(args, "bind_addr", None),
        alertmanager_url=getattr(args, "alertmanager_url", None),
    )


def cmd_run(config: ExporterConfig) -> int:
    service = ExporterService.from_config(config)
    service.run_forever()
    return 0


def cmd_poll(config: ExporterConfig) -> int:
    """Poll every endpoint once and print the normalized statuses as JSON."""
    endpoints = load_targets(config)
    poller = StatusPoller(timeout=config.poll_timeout, max_workers=config.max_workers)
    try:
        results = poller.poll_once(endpoints)
    finally:
        poller.close(grace_seconds=config.shutdown_grace)

    normalizer = StateNormalizer()
    output = []
    for result in results:
        if result.ok:
            status = normalizer.normalize(result.endpoint, result.raw, result.raw.fetched_at)
            output.append({
                "endpoint": status.endpoint,
                "instance": status.instance,
                "up": True,
                "connectors": {
                    c.connector: {
                        "state": c.state.value,
                        "type": c.connector_type,
                        "tasks": {
                            str(t.task_id): t.state.value
                            for t in status.tasks if t.connector == c.connector
                        },
                    }
                    for c in status.connectors
                },
            })
        else:
            output.append({
                "endpoint": result.endpoint.name,
                "instance": result.endpoint.instance,
                "up": False,
                "error": result.error.kind,
                "message": result.error.message,
            })

    print(json.dumps(output, indent=2))
    return 0 if all(r.ok for r in results) else 2


def cmd_check_config(config: ExporterConfig) -> int:
    endpoints = load_targets(config)
    conditions, inhibit_rules = load_rules(config)
    summary = AlertRuleGenerator(conditions, inhibit_rules).get_alert_summary()

    print(json.dumps({
        "config": config.as_dict(),
        "endpoints": [{"name": e.name, "url": e.url} for e in endpoints],
        "rules": summary,
    }, indent=2))
    return 0


def cmd_export_rules(config: ExporterConfig, output: str, alertmanager_output: str = None) -> int:
    conditions, inhibit_rules = load_rules(config)
    generator = AlertRuleGenerator(
        conditions,
        inhibit_rules,
        evaluation_interval=config.evaluation_interval,
    )
    generator.export_to_yaml(output, alertmanager_output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Command line parser; the shared options are accepted after every subcommand."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--urls", help="Comma-separated Kafka Connect URLs")
    common.add_argument("--targets-file", help="YAML/JSON endpoint file")
    common.add_argument("--rules-file", help="YAML conditions/inhibit_rules file")
    common.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    common.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")

    parser = argparse.ArgumentParser(
        description="Kafka Connect Status Exporter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Run command
    run_parser = subparsers.add_parser("run", parents=[common], help="Run the exporter and alert evaluator")
    run_parser.add_argument("--bind-addr", help="Metrics listen address (host:port)")
    run_parser.add_argument("--alertmanager-url", help="Alertmanager base URL")

    # Poll command
    subparsers.add_parser("poll", parents=[common], help="Poll all endpoints once and print statuses")

    # Check-config command
    subparsers.add_parser("check-config", parents=[common], help="Validate endpoints and rules, then exit")

    # Export-rules command
    export_parser = subparsers.add_parser(
        "export-rules", parents=[common], help="Write Prometheus/Alertmanager rule files"
    )
    export_parser.add_argument("--output", required=True, help="Prometheus rule file to write")
    export_parser.add_argument("--alertmanager-output", help="Alertmanager fragment to write")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(
        level="DEBUG" if args.verbose else None,
        json_logging=True if args.json_logs else None,
    )

    try:
        config = build_config(args)

        if args.command == "run":
            return cmd_run(config)
        elif args.command == "poll":
            return cmd_poll(config)
        elif args.command == "check-config":
            return cmd_check_config(config)
        elif args.command == "export-rules":
            return cmd_export_rules(config, args.output, args.alertmanager_output)

    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
