from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ciflow import triggers
from ciflow.errors import ConfigError, MALFORMED_CRON
from ciflow.model import Event, EventKind, TriggerRule
from ciflow.triggers import Accepted, CronExpression, Rejected

MONDAY_3AM = datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)  # 2024-01-01 was a Monday

RULES = (
    TriggerRule(kind=EventKind.PUSH, branches=("main", "release/*"), branches_ignore=("release/old*",)),
    TriggerRule(kind=EventKind.PULL_REQUEST, branches=("main",)),
    TriggerRule(kind=EventKind.TAG, tags=("v*",)),
    TriggerRule(kind=EventKind.SCHEDULE, cron="0 3 * * mon-fri"),
)


def test_push_to_matching_branch_is_accepted():
    decision = triggers.evaluate(Event(kind=EventKind.PUSH, branch="release/2.0"), RULES)
    assert isinstance(decision, Accepted)
    assert decision.accepted
    assert decision.rule is RULES[0]


def test_branches_ignore_wins():
    decision = triggers.evaluate(Event(kind=EventKind.PUSH, branch="release/old-1"), RULES)
    assert decision == Rejected(reason="no-matching-rule")


def test_rejection_is_a_value():
    decision = triggers.evaluate(Event(kind=EventKind.PUSH, branch="feature/x"), RULES)
    assert isinstance(decision, Rejected)
    assert not decision.accepted
    assert decision.reason == triggers.NO_MATCHING_RULE


def test_pull_request_matches_target_branch():
    assert triggers.evaluate(Event(kind=EventKind.PULL_REQUEST, branch="main"), RULES).accepted
    assert not triggers.evaluate(Event(kind=EventKind.PULL_REQUEST, branch="develop"), RULES).accepted


def test_tag_rule():
    assert triggers.evaluate(Event(kind=EventKind.TAG, tag="v1.0.0"), RULES).accepted
    assert not triggers.evaluate(Event(kind=EventKind.TAG, tag="nightly"), RULES).accepted
    assert not triggers.evaluate(Event(kind=EventKind.TAG), RULES).accepted


def test_schedule_rule_matches_timestamp():
    assert triggers.evaluate(Event(kind=EventKind.SCHEDULE, timestamp=MONDAY_3AM), RULES).accepted
    saturday = MONDAY_3AM + timedelta(days=5)
    assert not triggers.evaluate(Event(kind=EventKind.SCHEDULE, timestamp=saturday), RULES).accepted


def test_rules_are_or_combined_and_first_match_reported():
    rules = (
        TriggerRule(kind=EventKind.PUSH, branches=("main",)),
        TriggerRule(kind=EventKind.PUSH),
    )
    decision = triggers.evaluate(Event(kind=EventKind.PUSH, branch="main"), rules)
    assert decision.rule is rules[0]
    decision = triggers.evaluate(Event(kind=EventKind.PUSH, branch="dev"), rules)
    assert decision.rule is rules[1]


def test_no_rules_rejects():
    assert triggers.evaluate(Event(kind=EventKind.PUSH, branch="main"), ()) == Rejected("no-matching-rule")


class TestCron:
    def test_every_minute(self):
        assert CronExpression.parse("* * * * *").matches(MONDAY_3AM)

    def test_steps_and_lists(self):
        cron = CronExpression.parse("*/15 1,3,5 * * *")
        assert cron.matches(MONDAY_3AM.replace(minute=45))
        assert not cron.matches(MONDAY_3AM.replace(minute=10))
        assert not cron.matches(MONDAY_3AM.replace(hour=4))

    def test_month_and_day_names(self):
        cron = CronExpression.parse("0 3 * jan mon")
        assert cron.matches(MONDAY_3AM)
        assert not cron.matches(MONDAY_3AM + timedelta(days=1))

    def test_sunday_as_seven(self):
        sunday = MONDAY_3AM - timedelta(days=1)
        assert CronExpression.parse("0 3 * * 7").matches(sunday)
        assert CronExpression.parse("0 3 * * 0").matches(sunday)

    def test_dom_dow_or_rule(self):
        # 15th of the month OR any Friday
        cron = CronExpression.parse("0 3 15 * fri")
        assert cron.matches(MONDAY_3AM.replace(day=15))
        assert cron.matches(MONDAY_3AM.replace(day=5))  # 2024-01-05 was a Friday
        assert not cron.matches(MONDAY_3AM.replace(day=4))

    def test_timestamp_converted_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        assert CronExpression.parse("0 3 * * *").matches(datetime(2024, 1, 1, 5, 0, tzinfo=plus_two))

    @pytest.mark.parametrize("source", ["* * * *", "60 * * * *", "* * * * funday", "*/0 * * * *", "5-1 * * * *"])
    def test_malformed(self, source):
        with pytest.raises(ConfigError) as exc:
            CronExpression.parse(source)
        assert exc.value.kind == MALFORMED_CRON


def test_validate_rules_rejects_bad_cron():
    with pytest.raises(ConfigError):
        triggers.validate_rules([TriggerRule(kind=EventKind.SCHEDULE, cron="not a cron")])
    with pytest.raises(ConfigError):
        triggers.validate_rules([TriggerRule(kind=EventKind.SCHEDULE)])


def test_cron_is_parsed_once_per_rule_set(monkeypatch):
    calls = []
    real_parse = CronExpression.parse

    def counting_parse(source):
        calls.append(source)
        return real_parse(source)

    triggers.parse_cron.cache_clear()
    monkeypatch.setattr(CronExpression, "parse", counting_parse)

    rules = triggers.validate_rules([TriggerRule(kind=EventKind.SCHEDULE, cron="15 4 * * 1-5")])
    for day in range(7):
        triggers.evaluate(Event(kind=EventKind.SCHEDULE, timestamp=MONDAY_3AM + timedelta(days=day)), rules)

    assert calls == ["15 4 * * 1-5"]
