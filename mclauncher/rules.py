import functools
import logging
import platform
import re
from typing import Any, Dict, Iterable, Optional, Tuple

from .models import ArchCondition, Condition, FeatureCondition, OsCondition, OsVersionCondition, Platform, Rule

log = logging.getLogger(__name__)


def get_os_name() -> str:
    """Gets the current OS name ('windows', 'osx', 'linux')."""
    system = platform.system()
    if system == 'Windows': return 'windows'
    elif system == 'Darwin': return 'osx'
    elif system == 'Linux': return 'linux'
    else: raise OSError(f"Unsupported platform: {system}")


def get_arch_name() -> str:
    """Gets the current architecture name ('x64', 'x86', 'arm64', 'arm32')."""
    machine = platform.machine().lower()
    if machine in ['amd64', 'x86_64']: return 'x64'
    elif machine in ['i386', 'i686']: return 'x86'
    elif machine in ['arm64', 'aarch64']: return 'arm64'
    elif machine.startswith('arm') and '64' not in machine: return 'arm32'
    else:
        log.warning(f"Unsupported architecture: {platform.machine()}. Falling back to 'x64'. This might cause issues.")
        return 'x64'


def current_platform(features: Optional[Dict[str, bool]] = None) -> Platform:
    return Platform(
        os_family=get_os_name(),
        arch=get_arch_name(),
        os_version=platform.version(),
        features=dict(features or {}),
    )


# --- Parsing ---

def parse_rule(raw: Any) -> Rule:
    """Turns one manifest rule object into a ``Rule``.

    ``{"action": "allow", "os": {"name": "linux", "arch": "x86"}, "features": {...}}``
    becomes one condition per constraint; all of them must hold for the rule to match.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"rule must be an object, got {type(raw).__name__}")
    action = raw.get('action', 'allow')
    if action not in ('allow', 'disallow'):
        raise ValueError(f"unknown rule action: {action}")

    conditions = []
    os_rule = raw.get('os')
    if os_rule is not None:
        if not isinstance(os_rule, dict):
            raise ValueError("rule 'os' must be an object")
        if 'name' in os_rule:
            conditions.append(OsCondition(name=os_rule['name']))
        if 'arch' in os_rule:
            conditions.append(ArchCondition(arch=os_rule['arch']))
        if 'version' in os_rule:
            conditions.append(OsVersionCondition(pattern=os_rule['version']))

    features = raw.get('features')
    if features is not None:
        if not isinstance(features, dict):
            raise ValueError("rule 'features' must be an object")
        for name, expected in features.items():
            conditions.append(FeatureCondition(name=name, expected=bool(expected)))

    return Rule(action=action, conditions=tuple(conditions))


def parse_rules(raw: Any) -> Tuple[Rule, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValueError("rules must be a list")
    return tuple(parse_rule(r) for r in raw)


# --- Evaluation ---

def condition_matches(condition: Condition, target: Platform) -> bool:
    if isinstance(condition, OsCondition):
        return condition.name == target.os_family
    if isinstance(condition, ArchCondition):
        return condition.arch == target.arch
    if isinstance(condition, OsVersionCondition):
        try:
            return re.search(condition.pattern, target.os_version) is not None
        except re.error:
            log.warning(f"Invalid OS version pattern in rule: {condition.pattern!r}")
            return False
    if isinstance(condition, FeatureCondition):
        return target.features.get(condition.name, False) == condition.expected
    return False


def rule_matches(rule: Rule, target: Platform) -> bool:
    return all(condition_matches(c, target) for c in rule.conditions)


def evaluate_with_specificity(rules: Iterable[Rule], target: Platform) -> Tuple[bool, int]:
    """Folds the rules in order, the last matching rule deciding the outcome.

    An empty rule list allows everything; a non-empty one allows nothing unless some
    rule matches. Returns the outcome together with the number of conditions of
    the deciding rule (0 when no rule matched).
    """
    def step(state: Tuple[bool, int], rule: Rule) -> Tuple[bool, int]:
        if rule_matches(rule, target):
            return rule.action == 'allow', len(rule.conditions)
        return state

    rules = tuple(rules)
    return functools.reduce(step, rules, (not rules, 0))


def evaluate(rules: Iterable[Rule], target: Platform) -> bool:
    return evaluate_with_specificity(rules, target)[0]
