"""
Pattern Matching
Evaluates ordered inbound and outbound routing rules against call numbers
"""

import re
from functools import lru_cache
from typing import Iterable, List, Optional

from call_router.core.logging import get_logger
from call_router.models.call import CallContext, CallDirection
from call_router.models.routing import ConfigSnapshot, OutboundRule, RoutingRule, check_pattern

logger = get_logger(__name__)

NON_DIGITS = re.compile(r"\D")


def normalize_number(number: Optional[str]) -> str:
    """Strip everything but digits: '+1 (800) 555-1234' -> '18005551234'"""
    if not number:
        return ""
    return NON_DIGITS.sub("", number)


def validate_pattern(pattern: str) -> bool:
    try:
        check_pattern(pattern)
    except ValueError:
        return False
    return _compile(pattern.strip(), True) is not None


@lru_cache(maxsize=1024)
def _compile(pattern: str, allow_exact: bool) -> Optional[re.Pattern]:
    """
    Translate a number pattern into a regex over normalized digits.

    '?' and 'X' match one digit, '*' any run of digits and '[..]' a digit
    class; other punctuation is formatting. A leading '+' means the whole
    number must match, anything else matches as a prefix.
    """
    exact = allow_exact and pattern.startswith("+")
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "[":
            end = pattern.find("]", i)
            if end == -1:
                return None
            digits = re.sub(r"[^\d\-]", "", pattern[i + 1:end])
            if not digits:
                return None
            parts.append(f"[{digits}]")
            i = end + 1
            continue
        if char.isdigit():
            parts.append(char)
        elif char in "?Xx":
            parts.append(r"\d")
        elif char == "*":
            parts.append(r"\d*")
        i += 1

    if not parts:
        return None

    try:
        return re.compile("".join(parts) + ("$" if exact else ""))
    except re.error as e:
        logger.warning(f"Unusable number pattern {pattern}: {e}")
        return None


def pattern_matches(pattern: str, number: Optional[str], allow_exact: bool = True) -> bool:
    """Check a number against a pattern; with allow_exact off every pattern is a prefix"""
    pattern = pattern.strip()
    if pattern == "*":
        return True

    digits = normalize_number(number)
    if not digits:
        return False

    compiled = _compile(pattern, allow_exact)
    if compiled is None:
        return False
    return compiled.match(digits) is not None


def order_rules(rules: Iterable) -> List:
    """Enabled rules, highest priority first, ties broken by id"""
    return sorted(
        (rule for rule in rules if rule.enabled),
        key=lambda rule: (-rule.priority, rule.id)
    )


class PatternMatcher:
    """Inbound rule evaluation"""

    def match(self, snapshot: ConfigSnapshot, tenant_id: int, call: CallContext) -> Optional[RoutingRule]:
        """Return the first matching enabled rule for the tenant, or None"""
        number = call.to_number if call.direction == CallDirection.INBOUND else call.from_number

        for rule in order_rules(snapshot.routing_rules_for(tenant_id)):
            if pattern_matches(rule.pattern, number):
                logger.debug(f"Rule {rule.id} ({rule.pattern}) matched {number}")
                return rule

        logger.info(f"No routing rule matched {number} for tenant {tenant_id}")
        return None


class OutboundRuleMatcher:
    """
    Outbound rule evaluation.

    The caller id follows the normal exact-or-prefix pattern semantics; the
    destination pattern is always a prefix. Both must match.
    """

    def match(self, snapshot: ConfigSnapshot, tenant_id: int, call: CallContext) -> Optional[OutboundRule]:
        for rule in order_rules(snapshot.outbound_rules_for(tenant_id)):
            if not pattern_matches(rule.caller_id, call.from_number):
                continue
            if not pattern_matches(rule.destination_pattern, call.to_number, allow_exact=False):
                continue
            logger.debug(f"Outbound rule {rule.id} matched {call.from_number} -> {call.to_number}")
            return rule
        return None

    def is_outbound_caller(self, snapshot: ConfigSnapshot, tenant_id: int, caller: str) -> bool:
        """A caller id that belongs to an outbound rule marks the call as outbound"""
        return any(
            pattern_matches(rule.caller_id, caller)
            for rule in order_rules(snapshot.outbound_rules_for(tenant_id))
        )
