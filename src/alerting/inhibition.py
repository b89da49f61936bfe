"""
Inhibition rules.

A rule suppresses notification of a target alert while a source alert
with the same values for the `equal` labels is firing. Rules are checked
at dispatch time only; suppressed alerts keep moving through their states.
The matcher format follows Alertmanager's inhibit_rules
(source_match / source_match_re / target_match / target_match_re / equal).
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Pattern, Tuple

from src.utils.config import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabelMatcher:
    """Equality and anchored-regex matchers over a label dict."""

    equals: Tuple[Tuple[str, str], ...] = ()
    regexes: Tuple[Tuple[str, Pattern], ...] = ()

    def matches(self, labels: Dict[str, str]) -> bool:
        for name, value in self.equals:
            if labels.get(name, "") != value:
                return False
        for name, pattern in self.regexes:
            if not pattern.fullmatch(labels.get(name, "")):
                return False
        return True

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {
            "match": dict(self.equals),
            "match_re": {name: pattern.pattern for name, pattern in self.regexes},
        }


@dataclass(frozen=True)
class InhibitionRule:
    source: LabelMatcher
    target: LabelMatcher
    equal: Tuple[str, ...] = field(default=())

    def inhibits(self, target_labels: Dict[str, str], source_labels: Dict[str, str]) -> bool:
        if not self.target.matches(target_labels) or not self.source.matches(source_labels):
            return False
        return all(target_labels.get(name, "") == source_labels.get(name, "") for name in self.equal)


def _parse_matcher(definition: Dict[str, Any], prefix: str, index: int) -> LabelMatcher:
    equals = definition.get(f"{prefix}_match") or {}
    regexes = definition.get(f"{prefix}_match_re") or {}
    if not isinstance(equals, dict) or not isinstance(regexes, dict):
        raise ConfigError(f"inhibit_rules[{index}]: {prefix} matchers must be mappings")
    if not equals and not regexes:
        raise ConfigError(f"inhibit_rules[{index}]: {prefix}_match or {prefix}_match_re is required")

    compiled = []
    for name, pattern in regexes.items():
        try:
            compiled.append((str(name), re.compile(str(pattern))))
        except re.error as e:
            raise ConfigError(f"inhibit_rules[{index}]: invalid regex for {name}: {e}")

    return LabelMatcher(
        equals=tuple(sorted((str(k), str(v)) for k, v in equals.items())),
        regexes=tuple(sorted(compiled, key=lambda item: item[0])),
    )


def parse_inhibit_rules(definitions: Iterable[Dict[str, Any]]) -> List[InhibitionRule]:
    """
    Parse Alertmanager-style inhibit rule mappings.

    Raises:
        ConfigError: On missing matchers, bad regexes or a non-list `equal`
    """
    rules = []
    for index, definition in enumerate(definitions):
        if not isinstance(definition, dict):
            raise ConfigError(f"inhibit_rules[{index}] must be a mapping")

        equal = definition.get("equal") or []
        if not isinstance(equal, list) or not all(isinstance(e, str) for e in equal):
            raise ConfigError(f"inhibit_rules[{index}].equal must be a list of label names")

        rules.append(InhibitionRule(
            source=_parse_matcher(definition, "source", index),
            target=_parse_matcher(definition, "target", index),
            equal=tuple(equal),
        ))
    return rules


class Inhibitor:
    """Checks alerts against the inhibition rules."""

    def __init__(self, rules: Iterable[InhibitionRule] = ()):
        self.rules = list(rules)

    def is_inhibited(self, target, firing) -> bool:
        """
        True if any firing alert inhibits target.

        Args:
            target: AlertInstance about to be dispatched
            firing: AlertInstances currently in the firing state
        """
        for rule in self.rules:
            if not rule.target.matches(target.labels):
                continue
            for source in firing:
                if source is target:
                    continue
                if rule.inhibits(target.labels, source.labels):
                    logger.debug(
                        f"{target.alertname} {dict(target.entity)} inhibited by "
                        f"{source.alertname} {dict(source.entity)}"
                    )
                    return True
        return False
