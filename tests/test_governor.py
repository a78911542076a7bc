# Copyright (c) Syntropy Systems
"""Tests for usage metering, pricing and budgets."""

from __future__ import annotations

import threading

import pytest

from conclave.governor import BudgetGovernor, PricingTable, build_cost_report, classify, format_cost_report
from conclave.models.experiment import BudgetPolicy, PricingEntry, SimTime
from conclave.models.usage import BudgetScope, BudgetStatus

SPRING_1901 = SimTime(year=1901, season="SPRING", phase="MOVEMENT")


class TestPricing:
    """Tests for the pricing table."""

    def test_dated_model_matches_family(self) -> None:
        table = PricingTable()

        assert table.price("claude-3-haiku-20240307", 1_000_000, 0) == table.price(
            "claude-3-haiku", 1_000_000, 0
        )
        assert table.price("claude-3-haiku", 1_000_000, 0) == pytest.approx(0.25)

    def test_unknown_model_is_free(self) -> None:
        assert PricingTable().price("unknown-xyz", 1_000_000, 1_000_000) == 0

    def test_longest_key_wins(self) -> None:
        # Both "gpt-4o" and "gpt-4o-mini" occur in the id
        entry = PricingTable().lookup("gpt-4o-mini-2024-07-18")

        assert entry is not None
        assert entry.key == "gpt-4o-mini"

    def test_org_prefixed_id_matches(self) -> None:
        entry = PricingTable().lookup("openai/GPT-4o-2024-08-06")

        assert entry is not None
        assert entry.key == "gpt-4o"

    def test_custom_overrides_default(self) -> None:
        table = PricingTable([PricingEntry(key="gpt-4o", input_per_million=1, output_per_million=2)])

        assert table.price("gpt-4o", 1_000_000, 1_000_000) == pytest.approx(3.0)

    def test_custom_wins_ties(self) -> None:
        table = PricingTable(
            [PricingEntry(key="house-model", input_per_million=7, output_per_million=7)]
        )

        assert table.price("house-model-v2", 1_000_000, 0) == pytest.approx(7.0)


class TestClassify:
    """Tests for status classification."""

    def test_no_ceiling(self) -> None:
        assert classify(1_000.0, None, 0.8) == BudgetStatus.OK

    @pytest.mark.parametrize(
        ("cost", "status"),
        [
            (0.79, BudgetStatus.OK),
            (0.8, BudgetStatus.WARNING),
            (0.99, BudgetStatus.WARNING),
            (1.0, BudgetStatus.EXCEEDED),
            (5.0, BudgetStatus.EXCEEDED),
        ],
    )
    def test_thresholds(self, cost: float, status: BudgetStatus) -> None:
        assert classify(cost, 1.0, 0.8) == status


class TestBudgetGovernor:
    """Tests for BudgetGovernor."""

    def test_large_record_exceeds_participant_budget(self) -> None:
        governor = BudgetGovernor("job-1", BudgetPolicy(max_participant_cost=0.0001))

        _ = governor.record(
            "ENGLAND", "claude-3-opus", "movement", "orders", SPRING_1901, 100_000, 10_000
        )
        check = governor.check_budget("ENGLAND")

        assert check.allowed is False
        assert check.participant_status == BudgetStatus.EXCEEDED
        assert check.exceeded_scope == BudgetScope.PARTICIPANT
        assert check.message is not None
        assert "ENGLAND" in check.message

    def test_other_participants_unaffected_by_participant_ceiling(self) -> None:
        governor = BudgetGovernor("job-1", BudgetPolicy(max_participant_cost=0.0001))
        _ = governor.record("ENGLAND", "gpt-4o", "movement", "orders", None, 100_000, 0)

        assert governor.check_budget("FRANCE").allowed is True

    def test_job_ceiling_blocks_everyone(self) -> None:
        governor = BudgetGovernor("job-1", BudgetPolicy(max_job_cost=0.5))
        _ = governor.record("ENGLAND", "gpt-4o", "movement", "orders", None, 200_000, 0)

        check = governor.check_budget("FRANCE")

        assert check.allowed is False
        assert check.job_status == BudgetStatus.EXCEEDED
        assert check.exceeded_scope == BudgetScope.JOB

    def test_record_never_skipped(self) -> None:
        governor = BudgetGovernor("job-1", BudgetPolicy(max_job_cost=0.01))
        for _ in range(3):
            _ = governor.record("ENGLAND", "gpt-4o", "movement", "orders", None, 100_000, 0)

        assert len(governor.records()) == 3
        assert governor.job_cost() == pytest.approx(0.75)
        assert governor.participant_cost("ENGLAND") == pytest.approx(0.75)

    def test_callbacks_fire_once_per_upward_transition(self) -> None:
        governor = BudgetGovernor("job-1", BudgetPolicy(max_participant_cost=1.2))
        seen: list[tuple[BudgetScope, str, BudgetStatus]] = []
        governor.on_budget_status(lambda scope, entity, status, cost: seen.append((scope, entity, status)))

        # 0.25 per call with gpt-4o input pricing; warns at 0.96
        for _ in range(8):
            _ = governor.record("ENGLAND", "gpt-4o", "movement", "orders", None, 100_000, 0)

        assert seen == [
            (BudgetScope.PARTICIPANT, "ENGLAND", BudgetStatus.WARNING),
            (BudgetScope.PARTICIPANT, "ENGLAND", BudgetStatus.EXCEEDED),
        ]

    def test_job_scope_callback(self) -> None:
        governor = BudgetGovernor("job-7", BudgetPolicy(max_job_cost=0.5))
        seen: list[tuple[BudgetScope, str, BudgetStatus, float]] = []
        governor.on_budget_status(lambda *args: seen.append(args))

        _ = governor.record("ENGLAND", "gpt-4o", "movement", "orders", None, 100_000, 0)
        _ = governor.record("FRANCE", "gpt-4o", "movement", "orders", None, 100_000, 0)

        assert len(seen) == 1
        scope, entity, status, cost = seen[0]
        assert (scope, entity, status) == (BudgetScope.JOB, "job-7", BudgetStatus.EXCEEDED)
        assert cost == pytest.approx(0.5)

    def test_unknown_model_records_zero_cost(self) -> None:
        governor = BudgetGovernor("job-1", BudgetPolicy(max_job_cost=0.01))
        record = governor.record("ENGLAND", "mock", "movement", "orders", None, 100, 50)

        assert record.cost == 0
        assert governor.check_budget("ENGLAND").allowed is True

    def test_concurrent_records_are_atomic(self) -> None:
        governor = BudgetGovernor("job-1")
        errors: list[str] = []

        def worker() -> None:
            try:
                for _ in range(200):
                    _ = governor.record("ENGLAND", "gpt-4o", "movement", "orders", None, 1_000, 0)
            except Exception as e:  # noqa: BLE001
                errors.append(str(e))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(governor.records()) == 800
        assert governor.job_cost() == pytest.approx(800 * 0.0025)


class TestCostReport:
    """Tests for cost reports."""

    def test_empty_report_has_no_superlatives(self) -> None:
        report = BudgetGovernor("job-1").report()

        assert report.totals.requests == 0
        assert report.most_expensive_participant is None
        assert report.chattiest_participant is None
        assert report.most_expensive_stage is None

    def test_report_groups_and_superlatives(self) -> None:
        governor = BudgetGovernor("job-1")
        _ = governor.record("ENGLAND", "gpt-4o", "diplomacy", "negotiation", None, 100_000, 0)
        _ = governor.record("FRANCE", "mock", "movement", "orders", None, 100, 50)
        _ = governor.record("FRANCE", "mock", "movement", "orders", None, 100, 50)

        report = governor.report()

        assert report.totals.requests == 3
        assert report.totals.input_units == 100_200
        assert [p.participant for p in report.by_participant] == ["ENGLAND", "FRANCE"]
        assert report.most_expensive_participant is not None
        assert report.most_expensive_participant.participant == "ENGLAND"
        assert report.chattiest_participant is not None
        assert report.chattiest_participant.participant == "FRANCE"
        assert report.chattiest_participant.requests == 2
        assert report.most_expensive_stage is not None
        assert report.most_expensive_stage.stage == "diplomacy"

        mock_usage = next(m for m in report.by_model if m.model == "mock")
        assert mock_usage.average_input_units == 100
        assert mock_usage.average_output_units == 50

    def test_ties_go_to_first_seen(self) -> None:
        governor = BudgetGovernor("job-1")
        _ = governor.record("TURKEY", "mock", "movement", "orders", None, 100, 50)
        _ = governor.record("AUSTRIA", "mock", "retreat", "orders", None, 100, 50)

        report = build_cost_report("job-1", governor.records())

        assert report.chattiest_participant is not None
        assert report.chattiest_participant.participant == "TURKEY"
        assert report.most_expensive_participant is not None
        assert report.most_expensive_participant.participant == "TURKEY"
        assert report.most_expensive_stage is not None
        assert report.most_expensive_stage.stage == "movement"

    def test_format_cost_report(self) -> None:
        governor = BudgetGovernor("job-1")
        _ = governor.record("ENGLAND", "gpt-4o", "movement", "orders", None, 100_000, 0)

        text = format_cost_report(governor.report())

        assert "TOKEN USAGE & COST REPORT" in text
        assert "Job: job-1" in text
        assert "Total Cost: $0.2500" in text
        assert "BY PARTICIPANT" in text
