"""
Exporter service: wires the registry, poller, snapshot store, detector,
alert state machine and router together and runs the two loops.

The poll loop and the evaluation loop run on their own threads with their
own intervals. The poll loop only ever publishes whole snapshots; the
evaluation loop is the only thread touching detector history and alert
state, and always finishes its current tick before shutting down.
"""

import logging
import signal
import threading
import time
from typing import Callable, List, Optional, Sequence

from src.alerting.conditions import (
    DEFAULT_INHIBIT_RULE_DEFINITIONS,
    Condition,
    default_conditions,
    load_rules_document,
    parse_conditions,
)
from src.alerting.detector import LagGrowthDetector, uses_lag_feed
from src.alerting.dispatchers import AlertmanagerDispatcher, LoggingDispatcher, WebhookDispatcher
from src.alerting.inhibition import InhibitionRule, Inhibitor, parse_inhibit_rules
from src.alerting.lag_feed import LagFeed, PostgresLagFeed, PrometheusLagFeed
from src.alerting.router import Notification, NotificationRouter
from src.alerting.state_machine import AlertStateMachine
from src.exporter.collector import SnapshotCollector
from src.exporter.normalizer import StateNormalizer
from src.exporter.poller import StatusPoller
from src.exporter.registry import Endpoint, TargetRegistry, load_endpoints_file, parse_endpoint_list
from src.exporter.snapshot import SnapshotStore, StatusSnapshot
from src.monitoring.metrics import ExporterMetrics
from src.utils.config import ExporterConfig
from src.utils.correlation import CycleContext

logger = logging.getLogger(__name__)


def load_targets(config: ExporterConfig) -> List[Endpoint]:
    """Endpoints from the targets file when set, else from KAFKA_CONNECT_URLS."""
    if config.targets_file:
        return load_endpoints_file(config.targets_file)
    return parse_endpoint_list(config.connect_urls)


def load_rules(config: ExporterConfig):
    """
    Conditions and inhibition rules from RULES_FILE, or the built-in set.

    Raises:
        ConfigError: On any malformed definition
    """
    if config.rules_file:
        document = load_rules_document(config.rules_file)
        conditions = parse_conditions(document["conditions"])
        inhibit_rules = parse_inhibit_rules(document.get("inhibit_rules", []))
    else:
        conditions = default_conditions()
        inhibit_rules = parse_inhibit_rules(DEFAULT_INHIBIT_RULE_DEFINITIONS)
    return conditions, inhibit_rules


def build_dispatcher(config: ExporterConfig):
    if config.alertmanager_url:
        return AlertmanagerDispatcher(config.alertmanager_url, timeout=config.dispatch_timeout)
    if config.webhook_url:
        return WebhookDispatcher(config.webhook_url, timeout=config.dispatch_timeout)
    logger.warning("No alert router configured; notifications will only be logged")
    return LoggingDispatcher()


def build_lag_feed(config: ExporterConfig) -> Optional[LagFeed]:
    if config.lag_source_dsn:
        return PostgresLagFeed(config.lag_source_dsn)
    if config.lag_prometheus_url:
        return PrometheusLagFeed(config.lag_prometheus_url)
    return None


class ExporterService:
    """Runs the poll loop, the evaluation loop and the metrics endpoint."""

    def __init__(
        self,
        targets: TargetRegistry,
        poller: StatusPoller,
        conditions: Sequence[Condition],
        inhibit_rules: Sequence[InhibitionRule] = (),
        dispatcher=None,
        lag_feed: Optional[LagFeed] = None,
        config: Optional[ExporterConfig] = None,
        metrics: Optional[ExporterMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ExporterConfig()
        self.targets = targets
        self.poller = poller
        self.lag_feed = lag_feed
        self.metrics = metrics or ExporterMetrics()
        self.clock = clock

        self.store = SnapshotStore()
        self.normalizer = StateNormalizer()
        self.detector = LagGrowthDetector(
            conditions,
            # The feed is read once per tick, so samples can arrive that often
            expected_sample_interval=min(self.config.lag_sample_interval, self.config.evaluation_interval),
            stale_after=self.config.stale_after,
            metrics=self.metrics.alerting,
        )
        self.state_machine = AlertStateMachine(
            conditions,
            resolved_retention=self.config.resolved_retention,
            metrics=self.metrics.alerting,
        )
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.router = NotificationRouter(self.dispatcher, Inhibitor(inhibit_rules), metrics=self.metrics.alerting)

        self.metrics.register_collector(SnapshotCollector(self.store))

        if uses_lag_feed(conditions) and lag_feed is None:
            logger.warning("Replication lag conditions are configured but no lag feed is set")

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._http_server = None

    @classmethod
    def from_config(cls, config: ExporterConfig) -> "ExporterService":
        """
        Build a service from configuration.

        Raises:
            ConfigError: Before anything starts, if endpoints or rules are invalid
        """
        targets = TargetRegistry(load_targets(config))
        conditions, inhibit_rules = load_rules(config)
        metrics = ExporterMetrics()
        poller = StatusPoller(
            timeout=config.poll_timeout,
            max_workers=config.max_workers,
            metrics=metrics.poll,
        )
        return cls(
            targets=targets,
            poller=poller,
            conditions=conditions,
            inhibit_rules=inhibit_rules,
            dispatcher=build_dispatcher(config),
            lag_feed=build_lag_feed(config),
            config=config,
            metrics=metrics,
        )

    def run_poll_cycle(self) -> StatusSnapshot:
        """Poll every endpoint once and publish the resulting snapshot."""
        with CycleContext("poll"):
            generation = self.targets.generation
            endpoints = self.targets.current_targets()
            results = self.poller.poll_once(endpoints)

            # Endpoints removed by a reload while the cycle ran
            kept = [r for r in results if self.targets.contains(r.endpoint)]
            discarded = len(results) - len(kept)
            if discarded:
                logger.info(f"Discarded {discarded} results for endpoints removed during the cycle")

            now = self.clock()
            statuses = self.normalizer.normalize_results(kept, now)
            snapshot = self.store.publish(statuses, generation=self.targets.generation, now=now)
            self.metrics.poll.record_cycle(discarded)

            if generation != self.targets.generation:
                logger.debug(f"Registry reloaded during cycle (generation {generation} -> {snapshot.generation})")
            return snapshot

    def run_evaluation_tick(self, now: Optional[float] = None) -> List[Notification]:
        """Read lag samples, evaluate conditions, advance alert state and dispatch."""
        with CycleContext("eval"):
            started = time.monotonic()
            now = self.clock() if now is None else now

            if self.lag_feed is not None:
                samples = self.lag_feed.read()
                accepted = self.detector.ingest(samples)
                logger.debug(f"Ingested {accepted}/{len(samples)} lag samples")

            snapshot = self.store.current()
            results = self.detector.evaluate(now, snapshot)
            transitions = self.state_machine.process(results, now, held=self.detector.held_instances(snapshot))
            notifications = self.router.flush(self.state_machine.instances(), now)

            self.metrics.alerting.record_evaluation(time.monotonic() - started)
            logger.debug(
                f"Evaluation tick: transitions={len(transitions)}, notifications={len(notifications)}"
            )
            return notifications

    def reload_targets(self) -> int:
        """Re-read the endpoint configuration and swap the registry contents."""
        return self.targets.reload(load_targets(self.config))

    def _loop(self, name: str, interval: float, step: Callable[[], object]) -> None:
        logger.info(f"{name} loop started (interval={interval}s)")
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                step()
            except Exception:
                logger.exception(f"{name} iteration failed")
            self._stop.wait(max(0.0, interval - (time.monotonic() - started)))
        logger.info(f"{name} loop stopped")

    def start(self, serve_http: bool = True) -> None:
        """Run one poll, start the metrics server and both loops."""
        self._stop.clear()

        # Serve a populated snapshot from the first scrape on
        self.run_poll_cycle()

        if serve_http:
            host, port = self.config.bind_address()
            self._http_server = self.metrics.start_server(port, addr=host)

        self._threads = [
            threading.Thread(
                target=self._loop,
                args=("poll", self.config.scrape_interval, self.run_poll_cycle),
                name="poll-loop",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=("evaluation", self.config.evaluation_interval, self.run_evaluation_tick),
                name="evaluation-loop",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

        logger.info(
            f"Exporter started: endpoints={len(self.targets.current_targets())}, "
            f"bind={self.config.bind_addr}"
        )

    def stop(self) -> None:
        """Stop both loops, letting the current evaluation tick finish."""
        logger.info("Stopping exporter")
        self._stop.set()

        grace = self.config.shutdown_grace
        for thread in self._threads:
            if thread.name == "evaluation-loop":
                # A tick in progress must complete to keep alert state consistent
                thread.join()

        self.poller.close(grace_seconds=grace)
        for thread in self._threads:
            if thread.name == "poll-loop":
                thread.join(grace)
                if thread.is_alive():
                    logger.warning("Poll loop did not stop within the grace period")

        if self.lag_feed is not None:
            self.lag_feed.close()
        if hasattr(self.dispatcher, "close"):
            self.dispatcher.close()

        if isinstance(self._http_server, tuple):
            server, _ = self._http_server
            server.shutdown()
            server.server_close()
        self._http_server = None
        logger.info("Exporter stopped")

    def run_forever(self) -> None:
        """Start, then block until SIGINT/SIGTERM; SIGHUP reloads the targets."""
        def handle_stop(signum, frame):
            logger.info(f"Received signal {signum}")
            self._stop.set()

        def handle_reload(signum, frame):
            try:
                self.reload_targets()
            except ValueError as e:
                logger.error(f"Target reload failed, keeping current targets: {e}")

        signal.signal(signal.SIGINT, handle_stop)
        signal.signal(signal.SIGTERM, handle_stop)
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, handle_reload)

        self.start()
        while not self._stop.is_set():
            self._stop.wait(1.0)
        self.stop()
