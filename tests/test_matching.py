"""Match engine: 1:1 verification and 1:N identification."""

import itertools

import pytest

from conftest import template_for

from fpservice.config import EngineSettings
from fpservice.errors import ErrorCode, FingerprintError
from fpservice.matching import MatchEngine
from fpservice.models import CaptureAttempt, ScanPurpose


@pytest.fixture
def matcher(engine):
    return MatchEngine(engine, EngineSettings())


def pool(*users):
    return [(user, template_for(user)) for user in users]


class TestVerify:

    def test_match_above_threshold(self, matcher, engine):
        engine.scores[("probe", "alice")] = 95.5
        result = matcher.verify(template_for("probe"), template_for("alice"), 70.0, user_id="alice")
        assert result.match is True
        assert result.confidence == 95.5
        assert result.threshold == 70.0
        assert result.user_id == "alice"
        assert result.candidates_checked == 1
        assert result.elapsed_ms >= 0.0

    def test_no_match_below_threshold_is_a_result(self, matcher, engine):
        engine.scores[("probe", "alice")] = 45.2
        result = matcher.verify(template_for("probe"), template_for("alice"), 70.0, user_id="alice")
        assert result.match is False
        assert result.confidence == 45.2

    def test_threshold_is_inclusive(self, matcher, engine):
        engine.scores[("probe", "alice")] = 70.0
        assert matcher.verify(template_for("probe"), template_for("alice"), 70.0).match is True

    def test_default_threshold(self, matcher):
        result = matcher.verify(template_for("alice"), template_for("alice"))
        assert result.threshold == 70.0

    def test_self_match(self, matcher):
        result = matcher.verify(template_for("alice"), template_for("alice"), 99.0)
        assert result.match is True
        assert result.confidence == 100.0

    def test_missing_stored_template(self, matcher):
        with pytest.raises(FingerprintError) as exc_info:
            matcher.verify(template_for("alice"), b"", user_id="alice")
        assert exc_info.value.code == ErrorCode.USER_NOT_FOUND

    def test_low_quality_probe_rejected(self, matcher, engine):
        probe = CaptureAttempt("a1", "s1", ScanPurpose.VERIFY, quality=30, min_quality=50)
        with pytest.raises(FingerprintError) as exc_info:
            matcher.verify(probe, template_for("alice"))
        assert exc_info.value.code == ErrorCode.LOW_QUALITY
        assert engine.compare_calls == 0

    def test_empty_probe(self, matcher):
        with pytest.raises(FingerprintError) as exc_info:
            matcher.verify(b"", template_for("alice"))
        assert exc_info.value.code == ErrorCode.INVALID_REQUEST

    def test_compare_failure(self, engine):
        class BrokenEngine(type(engine)):
            def compare(self, a, b):
                raise RuntimeError("matcher crashed")

        with pytest.raises(FingerprintError) as exc_info:
            MatchEngine(BrokenEngine()).verify(template_for("a"), template_for("b"))
        assert exc_info.value.code == ErrorCode.MATCH_FAILED


class TestIdentify:

    def test_best_candidate_wins(self, matcher, engine):
        engine.scores[("probe", "bob")] = 88.3
        engine.scores[("probe", "carol")] = 55.0

        result = matcher.identify(template_for("probe"), pool("alice", "bob", "carol"), 60.0)

        assert result.match is True
        assert result.user_id == "bob"
        assert result.confidence == 88.3
        assert result.candidates_checked == 3
        assert result.top_matches[0] == ("bob", 88.3)
        assert [user for user, _ in result.top_matches] == ["bob", "carol", "alice"]

    def test_nobody_above_threshold(self, matcher, engine):
        engine.scores[("probe", "bob")] = 58.0
        result = matcher.identify(template_for("probe"), pool("alice", "bob"), 60.0)
        assert result.match is False
        assert result.user_id is None
        assert result.confidence == 58.0

    def test_empty_pool(self, matcher):
        result = matcher.identify(template_for("probe"), [], 60.0)
        assert result.match is False
        assert result.confidence == 0.0
        assert result.candidates_checked == 0
        assert result.top_matches == []

    def test_tie_goes_to_lowest_user_id(self, matcher, engine):
        engine.scores[("probe", "zed")] = 80.0
        engine.scores[("probe", "amy")] = 80.0
        result = matcher.identify(template_for("probe"), pool("zed", "amy"), 60.0)
        assert result.user_id == "amy"

    def test_top_matches_limited(self, matcher):
        users = [f"user-{i}" for i in range(8)]
        result = matcher.identify(template_for("probe"), pool(*users), 60.0)
        assert len(result.top_matches) == 5
        assert result.candidates_checked == 8

    def test_candidate_subset(self, matcher, engine):
        engine.scores[("probe", "bob")] = 90.0
        engine.scores[("probe", "carol")] = 75.0
        result = matcher.identify(template_for("probe"), pool("alice", "bob", "carol"), 60.0,
                                  candidate_user_ids=["alice", "carol"])
        assert result.user_id == "carol"
        assert result.candidates_checked == 2

    def test_default_threshold(self, matcher):
        result = matcher.identify(template_for("alice"), pool("alice"))
        assert result.threshold == 70.0

    def test_timeout(self, engine):
        ticks = itertools.count()
        matcher = MatchEngine(engine, EngineSettings(), clock=lambda: float(next(ticks)))
        with pytest.raises(FingerprintError) as exc_info:
            matcher.identify(template_for("probe"), pool("a", "b", "c"), 60.0, timeout_ms=1500)
        assert exc_info.value.code == ErrorCode.OPERATION_TIMEOUT
        assert exc_info.value.details["candidatesChecked"] == 1
