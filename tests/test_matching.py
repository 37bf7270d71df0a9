"""
Tests for number patterns and rule evaluation
"""

import pytest


class TestPatternSyntax:
    """Tests for pattern compilation and number normalization"""

    def test_normalize_number_keeps_digits(self):
        from call_router.services.matching import normalize_number

        assert normalize_number("+1 (800) 555-1234") == "18005551234"
        assert normalize_number(None) == ""
        assert normalize_number("") == ""

    def test_plus_prefix_is_exact_match(self):
        from call_router.services.matching import pattern_matches

        assert pattern_matches("+18005550001", "+1 (800) 555-0001")
        assert not pattern_matches("+18005550001", "+180055500012")

    def test_plain_digits_match_as_prefix(self):
        from call_router.services.matching import pattern_matches

        assert pattern_matches("1800555", "+18005550123")
        assert not pattern_matches("1800555", "+18885550123")

    def test_wildcards(self):
        from call_router.services.matching import pattern_matches

        assert pattern_matches("+1800XXX0001", "+18005550001")
        assert pattern_matches("+1800???0001", "+18009990001")
        assert pattern_matches("+1800*0001", "+18005550001")
        assert pattern_matches("+1[2-9]00", "+1500")
        assert not pattern_matches("+1[2-9]00", "+1100")

    def test_star_alone_matches_everything(self):
        from call_router.services.matching import pattern_matches

        assert pattern_matches("*", "+15551234567")
        assert pattern_matches("*", None)

    def test_empty_number_never_matches(self):
        from call_router.services.matching import pattern_matches

        assert not pattern_matches("1800", "")
        assert not pattern_matches("1800", None)

    def test_prefix_only_mode_ignores_plus(self):
        from call_router.services.matching import pattern_matches

        assert pattern_matches("+44", "+447700900123", allow_exact=False)
        assert not pattern_matches("+44", "+447700900123")

    @pytest.mark.parametrize("pattern", ["+18005550001", "1800*", "+1 (800) XXX-0001", "[2-9]XX"])
    def test_valid_patterns(self, pattern):
        from call_router.services.matching import validate_pattern

        assert validate_pattern(pattern)

    @pytest.mark.parametrize("pattern", ["", "abc", "1" * 21, "[", "()", "+1800#"])
    def test_invalid_patterns(self, pattern):
        from call_router.services.matching import validate_pattern

        assert not validate_pattern(pattern)

    def test_rule_model_rejects_invalid_pattern(self):
        from call_router.models.routing import RoutingRule

        with pytest.raises(ValueError):
            RoutingRule(id=1, tenant_id=1, pattern="not-a-number", target_type="agent", target_id=1)


class TestPatternMatcher:
    """Tests for inbound rule selection"""

    def _call(self, to_number, from_number="+15551234567"):
        from call_router.models.call import CallContext

        return CallContext(session_token="s-1", from_number=from_number, to_number=to_number)

    def test_highest_priority_rule_wins(self, snapshot):
        from call_router.services.matching import PatternMatcher

        rule = PatternMatcher().match(snapshot, 1, self._call("+18005550001"))
        assert rule.id == 1

    def test_falls_back_to_lower_priority_prefix(self, snapshot):
        from call_router.services.matching import PatternMatcher

        rule = PatternMatcher().match(snapshot, 1, self._call("+18005550099"))
        assert rule.id == 20

    def test_disabled_rule_is_skipped(self, snapshot):
        from call_router.services.matching import PatternMatcher

        rule = PatternMatcher().match(snapshot, 1, self._call("+18005550009"))
        assert rule.id == 20

    def test_no_match_returns_none(self, snapshot):
        from call_router.services.matching import PatternMatcher

        assert PatternMatcher().match(snapshot, 1, self._call("+442071234567")) is None

    def test_rules_are_tenant_scoped(self, snapshot):
        from call_router.services.matching import PatternMatcher

        rule = PatternMatcher().match(snapshot, 2, self._call("+18005550001"))
        assert rule.id == 30
        assert PatternMatcher().match(snapshot, 3, self._call("+18005550001")) is None

    def test_equal_priority_breaks_tie_by_id(self):
        from call_router.models.routing import ConfigSnapshot
        from call_router.services.matching import PatternMatcher

        snapshot = ConfigSnapshot.model_validate({
            "routing_rules": [
                {"id": 5, "tenant_id": 1, "pattern": "1800", "target_type": "agent", "target_id": 1},
                {"id": 3, "tenant_id": 1, "pattern": "1800", "target_type": "agent", "target_id": 2},
            ]
        })
        rule = PatternMatcher().match(snapshot, 1, self._call("+18005550001"))
        assert rule.id == 3

    def test_outbound_call_matches_on_caller(self):
        from call_router.models.call import CallContext, CallDirection
        from call_router.models.routing import ConfigSnapshot
        from call_router.services.matching import PatternMatcher

        snapshot = ConfigSnapshot.model_validate({
            "routing_rules": [
                {"id": 1, "tenant_id": 1, "pattern": "+15550001111", "target_type": "agent", "target_id": 1},
            ]
        })
        call = CallContext(
            session_token="s-2",
            from_number="+15550001111",
            to_number="+442071234567",
            direction=CallDirection.OUTBOUND
        )
        assert PatternMatcher().match(snapshot, 1, call).id == 1


class TestOutboundRuleMatcher:
    """Tests for outbound rule selection"""

    def _call(self, from_number, to_number):
        from call_router.models.call import CallContext, CallDirection

        return CallContext(
            session_token="s-out",
            from_number=from_number,
            to_number=to_number,
            direction=CallDirection.OUTBOUND
        )

    def test_caller_and_destination_must_match(self, snapshot):
        from call_router.services.matching import OutboundRuleMatcher

        matcher = OutboundRuleMatcher()
        assert matcher.match(snapshot, 1, self._call("+15550001111", "+447700900123")).id == 1
        assert matcher.match(snapshot, 1, self._call("+15550001111", "+33612345678")).id == 2
        assert matcher.match(snapshot, 1, self._call("+15550001111", "+4915112345678")) is None
        assert matcher.match(snapshot, 1, self._call("+15550001112", "+447700900123")) is None

    def test_is_outbound_caller(self, snapshot):
        from call_router.services.matching import OutboundRuleMatcher

        matcher = OutboundRuleMatcher()
        assert matcher.is_outbound_caller(snapshot, 1, "+15550001111")
        assert not matcher.is_outbound_caller(snapshot, 1, "+15551234567")
        assert not matcher.is_outbound_caller(snapshot, 2, "+15550001111")
