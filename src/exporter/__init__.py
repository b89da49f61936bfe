"""
Kafka Connect Status Exporter

Polls Kafka Connect REST APIs across clusters and exposes connector and
task status as Prometheus metrics.

Main components:
- registry: Endpoints to poll (reloadable)
- poller: Concurrent, failure-isolated status polling
- normalizer: Uniform connector/task status model
- snapshot: Immutable, atomically swapped status snapshots
- collector: Prometheus exposition of the current snapshot
- service: Poll and evaluation loops

Usage:
    from src.exporter.service import ExporterService
    from src.utils.config import ExporterConfig

    service = ExporterService.from_config(ExporterConfig.from_env())
    service.run_forever()
"""

from src.exporter.registry import Endpoint, Reachability, TargetRegistry
from src.exporter.poller import StatusPoller, PollResult, PollError
from src.exporter.normalizer import ConnectorState, StateNormalizer
from src.exporter.snapshot import SnapshotStore, StatusSnapshot

__all__ = [
    "Endpoint",
    "Reachability",
    "TargetRegistry",
    "StatusPoller",
    "PollResult",
    "PollError",
    "ConnectorState",
    "StateNormalizer",
    "SnapshotStore",
    "StatusSnapshot",
]

__version__ = "1.0.0"
