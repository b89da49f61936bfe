"""
Lag/Growth Detector

Evaluates every configured Condition once per evaluation tick against the
replication-lag history and the latest connector status snapshot, and
returns the raw predicate results. It holds no alert state; the only state
it keeps is a bounded ring buffer of lag samples per slot, used for the
growth-rate lookback.

Lookback semantics: the "past" sample of a growth window is the closest
retained sample at or before now - window. A slot whose history does not
reach back that far is not eligible to fire.

Connector and task conditions cannot be judged for an endpoint that did not
answer its last poll. Those instances are reported by held_instances() so
the state machine leaves their alerts as they are instead of resolving them.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from src.alerting.conditions import ENDPOINT_SCOPED_KINDS, LAG_KINDS, Condition, ConditionKind
from src.alerting.lag_feed import LagSample
from src.exporter.normalizer import ConnectorState
from src.exporter.snapshot import StatusSnapshot

logger = logging.getLogger(__name__)


LabelSet = Tuple[Tuple[str, str], ...]


def label_set(labels: Dict[str, str]) -> LabelSet:
    """Hashable, order-independent form of a label dict."""
    return tuple(sorted(labels.items()))


@dataclass(frozen=True)
class PredicateResult:
    """A condition that holds for one entity at this tick."""

    condition: Condition
    entity: LabelSet
    value: float

    @property
    def entity_labels(self) -> Dict[str, str]:
        return dict(self.entity)


class SlotHistory:
    """
    Lag samples for one slot, oldest first.

    Samples are strictly increasing in time; anything not newer than the
    latest retained sample is rejected. Retention is by time. The capacity
    is a hard cap for feeds that sample far faster than expected: when it is
    reached every second sample is dropped, which halves the resolution but
    keeps the full lookback span.
    """

    def __init__(self, capacity: int, lookback: float):
        self.capacity = max(capacity, 2)
        self.lookback = lookback
        self.samples: Deque[LagSample] = deque()
        self.thinned = 0

    def add(self, sample: LagSample) -> bool:
        """Append a sample; False if it was out of order and discarded."""
        if self.samples and sample.timestamp <= self.samples[-1].timestamp:
            return False
        self.samples.append(sample)
        self.evict(sample.timestamp)
        if len(self.samples) > self.capacity:
            self._thin()
        return True

    def _thin(self) -> None:
        last = len(self.samples) - 1
        kept = [s for i, s in enumerate(self.samples) if i % 2 == 0 or i == last]
        self.thinned += len(self.samples) - len(kept)
        self.samples = deque(kept)

    def evict(self, now: float) -> None:
        """
        Drop samples older than the lookback.

        The newest sample at or before the lookback boundary is kept so a
        window of exactly `lookback` can still be anchored.
        """
        boundary = now - self.lookback
        while len(self.samples) >= 2 and self.samples[1].timestamp <= boundary:
            self.samples.popleft()

    @property
    def latest(self) -> Optional[LagSample]:
        return self.samples[-1] if self.samples else None

    def at_or_before(self, timestamp: float) -> Optional[LagSample]:
        for sample in reversed(self.samples):
            if sample.timestamp <= timestamp:
                return sample
        return None

    def __len__(self) -> int:
        return len(self.samples)


class LagGrowthDetector:
    """
    Generic evaluator for data-driven conditions.

    Owned by the evaluation loop: ingest() and evaluate() must only be
    called from that one thread.
    """

    def __init__(
        self,
        conditions: Sequence[Condition],
        expected_sample_interval: float = 30.0,
        stale_after: float = 300.0,
        metrics=None,
    ):
        """
        Initialize the detector.

        Args:
            conditions: Conditions to evaluate each tick
            expected_sample_interval: Shortest expected spacing of lag
                samples; sizes the per-slot buffer cap
            stale_after: A slot whose latest sample is older than this is
                treated as having no data
            metrics: Optional AlertingMetrics
        """
        self.conditions = list(conditions)
        self.stale_after = stale_after
        self.metrics = metrics
        self.max_lookback = max((c.lookback_seconds for c in self.conditions), default=0.0)
        self.capacity = math.ceil(self.max_lookback / expected_sample_interval) * 2 + 2
        self._histories: Dict[str, SlotHistory] = {}

        self._evaluators: Dict[ConditionKind, Callable[[Condition, float, StatusSnapshot], List[PredicateResult]]] = {
            ConditionKind.LAG_THRESHOLD: self._eval_lag_threshold,
            ConditionKind.INACTIVE_WITH_LAG: self._eval_inactive_with_lag,
            ConditionKind.LAG_GROWTH: self._eval_lag_growth,
            ConditionKind.CONNECTOR_FAILED: self._eval_connector_failed,
            ConditionKind.TASK_FAILED: self._eval_task_failed,
            ConditionKind.ENDPOINT_DOWN: self._eval_endpoint_down,
        }

        logger.info(
            f"LagGrowthDetector initialized: conditions={len(self.conditions)}, "
            f"max_lookback={self.max_lookback}s, buffer_capacity={self.capacity}"
        )

    def history(self, slot_name: str) -> Optional[SlotHistory]:
        return self._histories.get(slot_name)

    def ingest(self, samples: Iterable[LagSample]) -> int:
        """
        Add lag samples to the per-slot histories.

        Returns:
            Number of samples accepted
        """
        accepted = 0
        for sample in sorted(samples, key=lambda s: s.timestamp):
            history = self._histories.get(sample.slot_name)
            if history is None:
                history = SlotHistory(self.capacity, self.max_lookback)
                self._histories[sample.slot_name] = history

            thinned = history.thinned
            if history.add(sample):
                accepted += 1
                if history.thinned > thinned:
                    self._report_thinning(sample.slot_name, history, history.thinned - thinned)
            else:
                logger.debug(
                    f"Discarding out-of-order lag sample for {sample.slot_name} "
                    f"at {sample.timestamp}"
                )
                if self.metrics is not None:
                    self.metrics.record_discarded_sample("out_of_order")
        return accepted

    def _report_thinning(self, slot_name: str, history: SlotHistory, dropped: int) -> None:
        # Every thinned sample lies inside the lookback window
        message = (
            f"Lag history of {slot_name} reached {history.capacity} samples within "
            f"{self.max_lookback}s; dropped {dropped} samples to keep the window span"
        )
        if history.thinned == dropped:
            logger.warning(message)
        else:
            logger.debug(message)
        if self.metrics is not None:
            for _ in range(dropped):
                self.metrics.record_discarded_sample("buffer_full")

    def held_instances(self, snapshot: StatusSnapshot) -> Dict[str, FrozenSet[str]]:
        """
        Instances whose connector and task state is unknown this tick.

        An endpoint that could not be polled reports no connectors; that
        silence must not read as every connector on it having recovered.

        Returns:
            Condition name -> `instance` label values whose alerts must be
            left unchanged. Only endpoint-scoped conditions appear.
        """
        down = frozenset(status.instance for status in snapshot.endpoints.values() if not status.up)
        if not down:
            return {}
        return {c.name: down for c in self.conditions if c.kind in ENDPOINT_SCOPED_KINDS}

    def evaluate(self, now: float, snapshot: StatusSnapshot) -> Dict[str, List[PredicateResult]]:
        """
        Run every condition once.

        Returns:
            Condition name -> predicate results that are true at `now`.
            Every condition has an entry; a condition whose evaluation
            raised is reported with no true results.
        """
        self._expire(now)

        results: Dict[str, List[PredicateResult]] = {}
        for condition in self.conditions:
            try:
                results[condition.name] = self._evaluators[condition.kind](condition, now, snapshot)
            except Exception:
                logger.exception(f"Evaluation of {condition.name} failed; treating as false")
                if self.metrics is not None:
                    self.metrics.record_evaluation_error(condition.name)
                results[condition.name] = []
        return results

    def _expire(self, now: float) -> None:
        horizon = max(self.max_lookback, self.stale_after)
        for slot in list(self._histories):
            history = self._histories[slot]
            latest = history.latest
            if latest is None or now - latest.timestamp > horizon:
                logger.info(f"Forgetting replication slot {slot}: no samples for {horizon}s")
                del self._histories[slot]
            else:
                history.evict(now)

    def _fresh_latest(self, now: float):
        for slot in sorted(self._histories):
            history = self._histories[slot]
            latest = history.latest
            if latest is not None and now - latest.timestamp <= self.stale_after:
                yield slot, history, latest

    def _eval_lag_threshold(self, condition: Condition, now: float, snapshot: StatusSnapshot) -> List[PredicateResult]:
        return [
            PredicateResult(condition, label_set({"slot_name": slot}), latest.lag_bytes)
            for slot, _, latest in self._fresh_latest(now)
            if latest.lag_bytes > condition.threshold_bytes
        ]

    def _eval_inactive_with_lag(self, condition: Condition, now: float, snapshot: StatusSnapshot) -> List[PredicateResult]:
        return [
            PredicateResult(condition, label_set({"slot_name": slot}), latest.lag_bytes)
            for slot, _, latest in self._fresh_latest(now)
            if not latest.active and latest.lag_bytes > condition.threshold_bytes
        ]

    def _eval_lag_growth(self, condition: Condition, now: float, snapshot: StatusSnapshot) -> List[PredicateResult]:
        results = []
        for slot, history, latest in self._fresh_latest(now):
            if latest.active:
                continue

            past = history.at_or_before(now - condition.window_seconds)
            if past is None:
                logger.debug(f"{condition.name}: slot {slot} has too little history, not eligible")
                continue

            growth = latest.lag_bytes - past.lag_bytes
            if growth <= condition.delta_bytes:
                continue
            if condition.min_lag_bytes is not None and latest.lag_bytes <= condition.min_lag_bytes:
                continue

            results.append(PredicateResult(condition, label_set({"slot_name": slot}), growth))
        return results

    def _eval_connector_failed(self, condition: Condition, now: float, snapshot: StatusSnapshot) -> List[PredicateResult]:
        found = {}
        for connector in snapshot.connectors():
            if connector.state is ConnectorState.FAILED:
                entity = label_set({"instance": connector.instance, "connector": connector.connector})
                found[entity] = PredicateResult(condition, entity, 1.0)
        return list(found.values())

    def _eval_task_failed(self, condition: Condition, now: float, snapshot: StatusSnapshot) -> List[PredicateResult]:
        found = {}
        for task in snapshot.tasks():
            if task.state is ConnectorState.FAILED:
                entity = label_set({
                    "instance": task.instance,
                    "connector": task.connector,
                    "task": str(task.task_id),
                })
                found[entity] = PredicateResult(condition, entity, 1.0)
        return list(found.values())

    def _eval_endpoint_down(self, condition: Condition, now: float, snapshot: StatusSnapshot) -> List[PredicateResult]:
        return [
            PredicateResult(condition, label_set({"instance": status.instance}), 0.0)
            for status in snapshot.endpoints.values()
            if not status.up
        ]


def uses_lag_feed(conditions: Sequence[Condition]) -> bool:
    return any(c.kind in LAG_KINDS for c in conditions)
