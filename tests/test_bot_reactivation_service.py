from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from unittest.mock import patch

import pytz
from sqlalchemy.orm import Query

from virtualvoices.config import settings
from virtualvoices.database import DynamicRecord, dispose_tenant_engines, tenant_session
from virtualvoices.services import bot_reactivation
from virtualvoices.services.bot_reactivation import BotReactivationService

C_NAME = "quicklearning"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=pytz.utc)


def minutes_ago(minutes: int) -> str:
    return (NOW - timedelta(minutes=minutes)).isoformat()


def add_record(data: Dict[str, Any], table_slug: str = "prospectos", c_name: str = C_NAME) -> str:
    with tenant_session(c_name) as db:
        record = DynamicRecord(table_slug=table_slug, c_name=c_name, data=data, created_by="test")
        db.add(record)
        db.commit()
        return record.id


def load_record(record_id: str, c_name: str = C_NAME) -> Tuple[Dict[str, Any], Optional[str]]:
    with tenant_session(c_name) as db:
        record = db.query(DynamicRecord).filter(DynamicRecord.id == record_id).first()
        return dict(record.data), record.updated_by


class _TenantDatabaseTestCase(unittest.TestCase):
    def setUp(self) -> None:
        dispose_tenant_engines()
        patcher = patch.object(settings, "database_url", "sqlite://")
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(dispose_tenant_engines)

    def check(self, dry_run: bool = False):
        with tenant_session(C_NAME) as db:
            return BotReactivationService(db, C_NAME).check_and_reactivate_bots(dry_run=dry_run, now=NOW)


class CheckAndReactivateTests(_TenantDatabaseTestCase):
    def test_reactivates_only_prospects_past_their_threshold(self) -> None:
        stale = add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "number": 5215500000001})
        fresh = add_record({"ia": False, "iaDeactivatedAt": minutes_ago(30), "number": 5215500000002})
        patient = add_record({
            "ia": False,
            "iaDeactivatedAt": minutes_ago(90),
            "inactivityThreshold": 120,
            "number": 5215500000003,
        })
        talking = add_record({
            "ia": False,
            "iaDeactivatedAt": minutes_ago(90),
            "lastmessagedate": minutes_ago(10),
            "number": 5215500000004,
        })
        add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "autoReactivationEnabled": False})
        add_record({"ia": False, "number": 5215500000006})
        add_record({"ia": True, "number": 5215500000007})

        stats = self.check()

        self.assertEqual(stats.total_checked, 4)
        self.assertEqual(stats.reactivated, 1)
        self.assertEqual(stats.failed, 0)
        self.assertEqual(len(stats.results), 1)
        self.assertEqual(stats.results[0].record_id, stale)
        self.assertEqual(stats.results[0].number, "5215500000001")
        self.assertEqual(stats.results[0].inactive_minutes, 90)
        self.assertTrue(stats.results[0].success)

        data, updated_by = load_record(stale)
        self.assertTrue(data["ia"])
        self.assertNotIn("iaDeactivatedAt", data)
        self.assertEqual(updated_by, "bot-auto-reactivation")

        for record_id in (fresh, patient, talking):
            data, _ = load_record(record_id)
            self.assertFalse(data["ia"])
            self.assertIn("iaDeactivatedAt", data)

    def test_threshold_is_inclusive(self) -> None:
        record_id = add_record({"ia": False, "iaDeactivatedAt": minutes_ago(60), "number": "1"})
        stats = self.check()
        self.assertEqual(stats.reactivated, 1)
        self.assertTrue(load_record(record_id)[0]["ia"])

    def test_fractional_thresholds_are_compared_unrounded(self) -> None:
        half = add_record({
            "ia": False,
            "iaDeactivatedAt": (NOW - timedelta(seconds=10)).isoformat(),
            "inactivityThreshold": 0.5,
            "number": "1",
        })
        almost = add_record({
            "ia": False,
            "iaDeactivatedAt": minutes_ago(30),
            "inactivityThreshold": 30.5,
            "number": "2",
        })
        due = add_record({
            "ia": False,
            "iaDeactivatedAt": minutes_ago(31),
            "inactivityThreshold": 30.5,
            "number": "3",
        })

        stats = self.check()

        self.assertEqual(stats.total_checked, 3)
        self.assertEqual([r.record_id for r in stats.results], [due])
        self.assertFalse(load_record(half)[0]["ia"])
        self.assertFalse(load_record(almost)[0]["ia"])
        self.assertTrue(load_record(due)[0]["ia"])

    def test_candidates_are_selected_in_the_query(self) -> None:
        wanted = add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "number": "1"})
        add_record({"ia": True, "iaDeactivatedAt": minutes_ago(90), "number": "2"})
        add_record({"number": "3"})
        add_record({"ia": False, "number": "4"})
        add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90)}, table_slug="alumnos")

        with tenant_session(C_NAME) as db:
            loaded = []
            service = BotReactivationService(db, C_NAME)
            original_all = Query.all

            def record_all(query):
                rows = original_all(query)
                loaded.extend(rows)
                return rows

            with patch.object(Query, "all", record_all):
                candidates = service._candidates()

            self.assertEqual([p.id for p in candidates], [wanted])
            self.assertEqual([p.id for p in loaded], [wanted])

    def test_prospect_changed_after_the_scan_is_left_alone(self) -> None:
        record_id = add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "number": "1"})

        with tenant_session(C_NAME) as db:
            service = BotReactivationService(db, C_NAME)
            original_refresh = db.refresh

            def message_arrives(instance, **kwargs):
                original_refresh(instance, **kwargs)
                instance.data = {**instance.data, "lastmessagedate": NOW.isoformat()}

            with patch.object(db, "refresh", side_effect=message_arrives) as refresh:
                stats = service.check_and_reactivate_bots(now=NOW)

            refresh.assert_called_once()
            self.assertTrue(refresh.call_args.kwargs["with_for_update"])

        self.assertEqual(stats.total_checked, 1)
        self.assertEqual(stats.reactivated, 0)
        self.assertEqual(stats.failed, 0)
        self.assertFalse(load_record(record_id)[0]["ia"])

    def test_dry_run_reports_without_writing(self) -> None:
        record_id = add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "number": "5215511111111"})

        stats = self.check(dry_run=True)

        self.assertEqual(stats.reactivated, 1)
        self.assertTrue(stats.results[0].success)
        data, updated_by = load_record(record_id)
        self.assertFalse(data["ia"])
        self.assertEqual(data["iaDeactivatedAt"], minutes_ago(90))
        self.assertIsNone(updated_by)

    def test_broken_record_does_not_block_the_batch(self) -> None:
        add_record({"ia": False, "iaDeactivatedAt": "not-a-date", "number": 111})
        good = add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "number": 222})

        stats = self.check()

        self.assertEqual(stats.total_checked, 2)
        self.assertEqual(stats.failed, 1)
        self.assertEqual(stats.reactivated, 1)
        self.assertEqual(stats.errors[0].number, "111")
        self.assertIn("not-a-date", stats.errors[0].error)
        self.assertTrue(load_record(good)[0]["ia"])

    def test_other_tables_are_ignored(self) -> None:
        record_id = add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90)}, table_slug="alumnos")
        stats = self.check()
        self.assertEqual(stats.total_checked, 0)
        self.assertFalse(load_record(record_id)[0]["ia"])

    def test_second_run_is_a_no_op(self) -> None:
        add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "number": "1"})
        self.assertEqual(self.check().reactivated, 1)

        stats = self.check()
        self.assertEqual(stats.total_checked, 0)
        self.assertEqual(stats.reactivated, 0)


class DeactivationTrackingTests(_TenantDatabaseTestCase):
    def test_deactivate_then_reactivate_after_threshold(self) -> None:
        record_id = add_record({"ia": True, "number": "5215522222222"})

        with tenant_session(C_NAME) as db:
            result = BotReactivationService(db, C_NAME).deactivate_bot(
                record_id, now=NOW - timedelta(minutes=61)
            )
        self.assertTrue(result.success)

        data, updated_by = load_record(record_id)
        self.assertFalse(data["ia"])
        self.assertEqual(data["iaDeactivatedAt"], minutes_ago(61))
        self.assertEqual(data["inactivityThreshold"], 60)
        self.assertTrue(data["autoReactivationEnabled"])
        self.assertEqual(updated_by, "bot-deactivation-tracker")

        stats = self.check()
        self.assertEqual(stats.reactivated, 1)
        self.assertTrue(load_record(record_id)[0]["ia"])

    def test_track_deactivation_keeps_ia_flag_untouched(self) -> None:
        record_id = add_record({"ia": False, "number": "1"})

        with tenant_session(C_NAME) as db:
            result = BotReactivationService(db, C_NAME).track_bot_deactivation(
                record_id, inactivity_threshold=15, auto_reactivation_enabled=False, now=NOW
            )

        self.assertTrue(result.success)
        data, _ = load_record(record_id)
        self.assertFalse(data["ia"])
        self.assertEqual(data["iaDeactivatedAt"], NOW.isoformat())
        self.assertEqual(data["inactivityThreshold"], 15)
        self.assertFalse(data["autoReactivationEnabled"])

    def test_track_deactivation_of_unknown_record(self) -> None:
        result = bot_reactivation.track_bot_deactivation("missing", C_NAME)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Record not found")

    def test_last_message_timestamp_matches_numbers_as_strings(self) -> None:
        record_id = add_record({"ia": False, "number": 5215512345678})

        with tenant_session(C_NAME) as db:
            service = BotReactivationService(db, C_NAME)
            self.assertTrue(service.update_last_message_timestamp("5215512345678", now=NOW))
            self.assertFalse(service.update_last_message_timestamp("5210000000000", now=NOW))

        data, updated_by = load_record(record_id)
        self.assertEqual(data["lastmessagedate"], NOW.isoformat())
        self.assertIsNone(updated_by)

    def test_last_message_timestamp_ignores_other_tables(self) -> None:
        student = add_record({"ia": False, "number": "5215599999999"}, table_slug="alumnos")
        prospect = add_record({"ia": False, "number": " 5215599999999 "})

        self.assertTrue(bot_reactivation.update_last_message_timestamp("5215599999999", C_NAME))

        self.assertNotIn("lastmessagedate", load_record(student)[0])
        self.assertIn("lastmessagedate", load_record(prospect)[0])


class ManualReactivationTests(_TenantDatabaseTestCase):
    def test_manual_reactivation_clears_tracking(self) -> None:
        record_id = add_record({
            "ia": False,
            "iaDeactivatedAt": minutes_ago(5),
            "inactivityThreshold": 30,
            "autoReactivationEnabled": True,
            "number": "1",
        })

        result = bot_reactivation.manually_reactivate_bot(record_id, C_NAME, updated_by="advisor-7")

        self.assertTrue(result.success)
        data, updated_by = load_record(record_id)
        self.assertEqual(data, {"ia": True, "number": "1"})
        self.assertEqual(updated_by, "advisor-7")

        again = bot_reactivation.manually_reactivate_bot(record_id, C_NAME)
        self.assertFalse(again.success)
        self.assertEqual(again.error, "Record not found or already active")

    def test_manual_reactivation_of_unknown_record(self) -> None:
        result = bot_reactivation.manually_reactivate_bot("missing", C_NAME)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Record not found or already active")


class ReactivationStatusTests(_TenantDatabaseTestCase):
    def status(self, phone_number):
        with tenant_session(C_NAME) as db:
            return BotReactivationService(db, C_NAME).get_reactivation_status(phone_number, now=NOW)

    def test_unknown_prospect(self) -> None:
        self.assertIsNone(self.status("5210000000000"))

    def test_active_bot(self) -> None:
        add_record({"number": "5215533333333"})
        status = self.status("5215533333333")
        self.assertTrue(status.bot_active)
        self.assertIsNone(status.inactive_minutes)

    def test_inactive_bot_countdown(self) -> None:
        add_record({
            "ia": False,
            "iaDeactivatedAt": minutes_ago(45),
            "lastmessagedate": minutes_ago(20),
            "number": 5215544444444,
        })

        status = self.status("5215544444444")

        self.assertFalse(status.bot_active)
        self.assertEqual(status.deactivated_at, NOW - timedelta(minutes=45))
        self.assertEqual(status.last_message_date, NOW - timedelta(minutes=20))
        self.assertEqual(status.inactive_minutes, 20)
        self.assertEqual(status.threshold_minutes, 60)
        self.assertEqual(status.minutes_until_reactivation, 40)
        self.assertTrue(status.auto_reactivation_enabled)

    def test_overdue_countdown_stops_at_zero(self) -> None:
        add_record({"ia": False, "iaDeactivatedAt": minutes_ago(300), "number": "9"})
        self.assertEqual(self.status("9").minutes_until_reactivation, 0)

    def test_fractional_threshold_countdown(self) -> None:
        add_record({
            "ia": False,
            "iaDeactivatedAt": minutes_ago(30),
            "inactivityThreshold": 30.5,
            "number": "6",
        })
        status = self.status("6")
        self.assertEqual(status.threshold_minutes, 30.5)
        self.assertEqual(status.minutes_until_reactivation, 1)

    def test_untracked_deactivation(self) -> None:
        add_record({"ia": False, "autoReactivationEnabled": False, "number": "8"})
        status = self.status("8")
        self.assertFalse(status.bot_active)
        self.assertIsNone(status.inactive_minutes)
        self.assertIsNone(status.minutes_until_reactivation)
        self.assertFalse(status.auto_reactivation_enabled)


class ReactivationSettingsTests(_TenantDatabaseTestCase):
    def test_rejects_invalid_settings(self) -> None:
        record_id = add_record({"ia": False, "number": "1"})
        result = bot_reactivation.update_reactivation_settings(
            record_id, C_NAME, auto_reactivation_enabled="yes", inactivity_threshold=0
        )
        self.assertFalse(result.success)
        self.assertEqual(result.message, "No valid settings provided")

    def test_accepts_fractional_threshold(self) -> None:
        record_id = add_record({"ia": False, "number": "1"})

        result = bot_reactivation.update_reactivation_settings(record_id, C_NAME, inactivity_threshold=30.5)

        self.assertTrue(result.success)
        self.assertEqual(load_record(record_id)[0]["inactivityThreshold"], 30.5)

        rejected = bot_reactivation.update_reactivation_settings(
            record_id, C_NAME, inactivity_threshold=float("inf")
        )
        self.assertEqual(rejected.message, "No valid settings provided")

    def test_updates_settings(self) -> None:
        record_id = add_record({"ia": False, "number": "1"})

        result = bot_reactivation.update_reactivation_settings(
            record_id, C_NAME, auto_reactivation_enabled=False, inactivity_threshold=30
        )

        self.assertTrue(result.success)
        self.assertEqual(result.updated, {"autoReactivationEnabled": False, "inactivityThreshold": 30})
        data, updated_by = load_record(record_id)
        self.assertFalse(data["autoReactivationEnabled"])
        self.assertEqual(data["inactivityThreshold"], 30)
        self.assertEqual(updated_by, "reactivation-settings-update")

        unchanged = bot_reactivation.update_reactivation_settings(
            record_id, C_NAME, auto_reactivation_enabled=False
        )
        self.assertFalse(unchanged.success)
        self.assertEqual(unchanged.message, "Record not found or no changes made")


class CompanyEntryPointTests(_TenantDatabaseTestCase):
    def test_check_runs_on_company_database(self) -> None:
        add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "number": "1"})
        stats = bot_reactivation.check_and_reactivate_bots(C_NAME, now=NOW)
        self.assertEqual(stats.reactivated, 1)

    def test_companies_are_isolated(self) -> None:
        add_record({"ia": False, "iaDeactivatedAt": minutes_ago(90), "number": "1"})
        stats = bot_reactivation.check_and_reactivate_bots("othercompany", now=NOW)
        self.assertEqual(stats.total_checked, 0)

    def test_company_failure_is_reported_as_system_error(self) -> None:
        stats = bot_reactivation.check_and_reactivate_bots("not a slug!", now=NOW)
        self.assertEqual(stats.total_checked, 0)
        self.assertEqual(len(stats.errors), 1)
        self.assertEqual(stats.errors[0].number, "SYSTEM")

    def test_status_and_timestamp_wrappers(self) -> None:
        add_record({"ia": False, "iaDeactivatedAt": minutes_ago(10), "number": "77"})
        self.assertTrue(bot_reactivation.update_last_message_timestamp("77", C_NAME))
        status = bot_reactivation.get_reactivation_status("77", C_NAME)
        self.assertFalse(status.bot_active)
        self.assertIsNotNone(status.last_message_date)
        self.assertIsNone(bot_reactivation.get_reactivation_status("77", "not a slug!"))


if __name__ == "__main__":
    unittest.main()
