"""Tests for cli/cli/app.py -- the billing operator CLI.

Uses typer.testing.CliRunner against a seeded SQLite file.  Stripe is
replaced by the ``mock_processor`` fixture, so jobs run the real services
end to end without network access.
"""

from __future__ import annotations

import json
from datetime import timedelta

from billing_core.models import AlertType
from billing_core.pricing import month_start, next_month_start
from billing_core.state.repository import AlertRepository, PlanRepository, PriceQueueRepository
from typer.testing import CliRunner

from cli.app import app

runner = CliRunner()


def _invoke(database_url: str, *args: str, json_mode: bool = True):
    options = ["--database-url", database_url]
    if json_mode:
        options.append("--json")
    return runner.invoke(app, [*options, *args])


# ---------------------------------------------------------------------------
# apply-prices
# ---------------------------------------------------------------------------


class TestApplyPrices:
    def test_applies_started_month(self, database_url, seeded, mock_processor, stripe_client, query_db, today):
        result = _invoke(database_url, "apply-prices", "--date", today.isoformat())

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload == {"considered": 1, "applied": 1, "failed": 0, "errors": []}
        mock_processor.for_account.assert_called_with("acct_cli")
        assert stripe_client.create_price.await_args.kwargs["unit_amount"] == 4500

        async def _check(session):
            plan = await PlanRepository(session).get(seeded.dynamic_plan_id)
            item = await PriceQueueRepository(session).get_for_month(plan.id, month_start(today))
            return plan.stripe_price_id, item.applied

        assert query_db(_check) == ("price_cli_1", True)

    def test_second_run_has_nothing_due(self, database_url, seeded, mock_processor, today):
        _invoke(database_url, "apply-prices", "--date", today.isoformat())

        result = _invoke(database_url, "apply-prices", "--date", today.isoformat())

        assert result.exit_code == 0
        assert json.loads(result.stdout)["considered"] == 0

    def test_failure_exits_3_and_raises_alert(
        self, database_url, seeded, mock_processor, stripe_client, query_db, today
    ):
        stripe_client.create_price.side_effect = RuntimeError("stripe down")

        result = _invoke(database_url, "apply-prices", "--date", today.isoformat())

        assert result.exit_code == 3
        assert json.loads(result.stdout)["failed"] == 1

        async def _alerts(session):
            return await AlertRepository(session).list_alerts(alert_type=AlertType.PRICE_APPLY_FAILED.value)

        assert len(query_db(_alerts)) == 1

    def test_human_output(self, database_url, seeded, mock_processor, today):
        result = _invoke(database_url, "apply-prices", "--date", today.isoformat(), json_mode=False)

        assert result.exit_code == 0
        assert "Scheduled Prices" in result.output

    def test_invalid_date(self, database_url, seeded, mock_processor):
        result = _invoke(database_url, "apply-prices", "--date", "July 1st")

        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# check-missing-prices
# ---------------------------------------------------------------------------


class TestCheckMissingPrices:
    def test_reminder_seven_days_out(self, database_url, seeded, today):
        reminder_day = next_month_start(today) - timedelta(days=7)

        result = _invoke(database_url, "check-missing-prices", "--date", reminder_day.isoformat())

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["plans_checked"] == 1
        assert payload["alerts_raised"] == 1

    def test_quiet_day(self, database_url, seeded, today):
        quiet_day = next_month_start(today) - timedelta(days=5)

        result = _invoke(database_url, "check-missing-prices", "--date", quiet_day.isoformat())

        assert result.exit_code == 0
        assert json.loads(result.stdout)["alerts_raised"] == 0


# ---------------------------------------------------------------------------
# resolve-price
# ---------------------------------------------------------------------------


class TestResolvePrice:
    def test_fixed_plan(self, database_url, seeded):
        result = _invoke(database_url, "resolve-price", "--plan-id", seeded.fixed_plan_id)

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["price_id"] == "price_fixed"
        assert payload["amount"] == 3000
        assert payload["currency"] == "usd"

    def test_dynamic_plan_after_apply(self, database_url, seeded, mock_processor, today):
        _invoke(database_url, "apply-prices", "--date", today.isoformat())

        result = _invoke(database_url, "resolve-price", "--plan-id", seeded.dynamic_plan_id, "--at", today.isoformat())

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["price_id"] == "price_cli_1"
        assert payload["amount"] == 4500

    def test_unapplied_month_exits_3(self, database_url, seeded):
        result = _invoke(database_url, "resolve-price", "--plan-id", seeded.dynamic_plan_id)

        assert result.exit_code == 3

    def test_unknown_plan(self, database_url, seeded):
        result = _invoke(database_url, "resolve-price", "--plan-id", "missing")

        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# resume-paused / replay-events
# ---------------------------------------------------------------------------


class TestResumePaused:
    def test_nothing_paused(self, database_url, seeded, mock_processor):
        result = _invoke(database_url, "resume-paused", "--plan-id", seeded.fixed_plan_id)

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["price_id"] == "price_fixed"
        assert payload["considered"] == 0
        assert payload["errored"] == 0

    def test_no_current_price(self, database_url, seeded, mock_processor):
        result = _invoke(database_url, "resume-paused", "--plan-id", seeded.dynamic_plan_id)

        assert result.exit_code == 3

    def test_unknown_plan(self, database_url, seeded, mock_processor):
        result = _invoke(database_url, "resume-paused", "--plan-id", "missing")

        assert result.exit_code == 3


class TestReplayEvents:
    def test_no_failed_events(self, database_url, seeded, mock_processor):
        result = _invoke(database_url, "replay-events")

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == []

    def test_unknown_event(self, database_url, seeded, mock_processor):
        result = _invoke(database_url, "replay-events", "--event-id", "evt_missing")

        assert result.exit_code == 3
