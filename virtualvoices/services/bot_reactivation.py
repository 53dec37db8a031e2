"""
Bot auto-reactivation service

Prospects (DynamicRecords of the "prospectos" table) are handed over to a human
advisor by switching the AI bot off (data.ia = false). Once the conversation has
been quiet for longer than the prospect's inactivity threshold the bot is
switched back on.

Fields used in the record payload:
- data.ia: bool - bot is active for this prospect (missing means active)
- data.iaDeactivatedAt: timestamp - when the bot was switched off
- data.lastmessagedate: timestamp - last message of the conversation
- data.inactivityThreshold: number - minutes of inactivity before reactivation (default 60)
- data.autoReactivationEnabled: bool - per-prospect toggle (default true)
- data.number: WhatsApp number of the prospect
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union
from sqlalchemy import String, cast, func
from sqlalchemy.orm import Query, Session
from sqlalchemy.sql.elements import ColumnElement

from ..config import settings
from ..database import DynamicRecord, tenant_session
from ..models import (
    OperationResult,
    ReactivationError,
    ReactivationResult,
    ReactivationStats,
    ReactivationStatus,
    SettingsUpdateResult,
)
from ..utils.inactivity import (
    format_timestamp,
    inactive_minutes,
    is_bot_active,
    is_reactivation_candidate,
    last_activity_time,
    minutes_until_reactivation,
    parse_timestamp,
    threshold_minutes,
    utcnow,
)

logger = logging.getLogger(__name__)

AUTO_REACTIVATION_USER = "bot-auto-reactivation"
DEACTIVATION_TRACKER_USER = "bot-deactivation-tracker"
MANUAL_REACTIVATION_USER = "manual-reactivation"
SETTINGS_UPDATE_USER = "reactivation-settings-update"

TRACKING_FIELDS = ("iaDeactivatedAt", "inactivityThreshold", "autoReactivationEnabled")

PhoneNumber = Union[str, int]


class BotReactivationService:
    """Bot reactivation operations on one company database"""

    def __init__(self, db: Session, c_name: str):
        self.db = db
        self.c_name = c_name
        self.table_slug = settings.prospects_table_slug
        self.default_threshold = settings.default_inactivity_threshold_minutes
        logger.debug(f"BotReactivationService initialized for {c_name} (table={self.table_slug})")

    def _prospects(self) -> Query:
        return self.db.query(DynamicRecord).filter(
            DynamicRecord.table_slug == self.table_slug
        ).order_by(DynamicRecord.created_at)

    @staticmethod
    def _data_text(key: str) -> ColumnElement:
        # SQLite extracts JSON scalars with their type (false -> 0), PostgreSQL as text
        return cast(DynamicRecord.data[key].as_string(), String)

    def _candidates(self) -> List[DynamicRecord]:
        """Prospects with the bot switched off and the deactivation tracked"""
        rows = self._prospects().filter(
            self._data_text("ia").in_(("false", "0")),
            DynamicRecord.data["iaDeactivatedAt"].as_string().is_not(None)
        ).all()
        return [p for p in rows if is_reactivation_candidate(p.data or {})]

    def _get_record(self, record_id: str, for_update: bool = False) -> Optional[DynamicRecord]:
        query = self.db.query(DynamicRecord).filter(DynamicRecord.id == record_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _find_prospect_by_number(self, phone_number: PhoneNumber, for_update: bool = False) -> Optional[DynamicRecord]:
        # Numbers are stored as ints by some importers and as strings by others
        query = self._prospects().filter(
            func.trim(self._data_text("number")) == str(phone_number).strip()
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def _apply_changes(
        record: DynamicRecord,
        updated_by: Optional[str],
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Iterable[str] = ()
    ) -> bool:
        """Write payload changes, returns False when the payload would stay the same"""
        data = dict(record.data or {})
        before = dict(data)

        data.update(set_fields or {})
        for field in unset_fields:
            data.pop(field, None)

        if data == before:
            return False

        # Reassign instead of mutating so SQLAlchemy sees the JSON change
        record.data = data
        if updated_by:
            record.updated_by = updated_by
        return True

    def _inactivity(self, data: Dict[str, Any], current_time: datetime):
        """(inactive minutes, threshold) of a candidate payload"""
        threshold = threshold_minutes(data, self.default_threshold)
        last_activity = last_activity_time(
            parse_timestamp(data.get("iaDeactivatedAt")),
            parse_timestamp(data.get("lastmessagedate"))
        )
        return inactive_minutes(last_activity, current_time), threshold

    def _still_due(self, prospect: DynamicRecord, current_time: datetime) -> bool:
        """Re-read the prospect under a row lock and check it again before writing"""
        self.db.refresh(prospect, with_for_update=True)
        data = prospect.data or {}
        if not is_reactivation_candidate(data):
            return False
        minutes, threshold = self._inactivity(data, current_time)
        return minutes >= threshold

    def check_and_reactivate_bots(self, dry_run: bool = False, now: Optional[datetime] = None) -> ReactivationStats:
        """Reactivate the bot of every prospect that has been inactive past its threshold"""
        stats = ReactivationStats()

        candidates = self._candidates()
        stats.total_checked = len(candidates)
        logger.info(f"🔍 [Bot Reactivation] Checking {stats.total_checked} deactivated prospects for {self.c_name}...")

        for prospect in candidates:
            number = "unknown"
            try:
                data = prospect.data or {}
                if data.get("number") is not None:
                    number = str(data["number"])

                current_time = now or utcnow()
                minutes, threshold = self._inactivity(data, current_time)

                if minutes < threshold:
                    logger.info(f"⏳ [Bot Reactivation] Prospect {number}: {minutes}min inactive, needs {threshold - minutes}min more")
                    continue

                logger.info(f"✅ [Bot Reactivation] Prospect {number}: {minutes}min inactive (threshold: {threshold}min)")

                if dry_run:
                    logger.info(f"[DRY RUN] Would reactivate bot for {number} ({minutes}min inactive)")
                else:
                    # A message or a manual change may have landed since the scan
                    if not self._still_due(prospect, current_time):
                        self.db.rollback()
                        logger.info(f"⏭️ [Bot Reactivation] Prospect {number} changed since the scan, skipped")
                        continue

                    self._apply_changes(
                        prospect,
                        AUTO_REACTIVATION_USER,
                        set_fields={"ia": True},
                        unset_fields=("iaDeactivatedAt",)
                    )
                    self.db.commit()
                    logger.info(f"✅ [Bot Reactivation] Successfully reactivated bot for {number}")

                stats.reactivated += 1
                stats.results.append(ReactivationResult(
                    record_id=str(prospect.id),
                    number=number,
                    reactivated_at=current_time,
                    inactive_minutes=minutes,
                    success=True
                ))

            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ [Bot Reactivation] Error processing prospect {number}: {e}", exc_info=True)
                stats.failed += 1
                stats.errors.append(ReactivationError(number=number, error=str(e)))

        logger.info(f"✅ [Bot Reactivation] Completed for {self.c_name}: {stats.reactivated} reactivated, {stats.failed} failed")
        return stats

    def track_bot_deactivation(
        self,
        record_id: str,
        inactivity_threshold: Optional[float] = None,
        auto_reactivation_enabled: Optional[bool] = None,
        now: Optional[datetime] = None
    ) -> OperationResult:
        """Start the inactivity clock, call it whenever data.ia is set to false"""
        return self._deactivate(
            record_id,
            {},
            inactivity_threshold,
            auto_reactivation_enabled,
            now
        )

    def deactivate_bot(
        self,
        record_id: str,
        inactivity_threshold: Optional[float] = None,
        auto_reactivation_enabled: Optional[bool] = None,
        now: Optional[datetime] = None
    ) -> OperationResult:
        """Hand the conversation over to a human advisor: switch the bot off and track it"""
        return self._deactivate(
            record_id,
            {"ia": False},
            inactivity_threshold,
            auto_reactivation_enabled,
            now
        )

    def _deactivate(
        self,
        record_id: str,
        extra_fields: Dict[str, Any],
        inactivity_threshold: Optional[float],
        auto_reactivation_enabled: Optional[bool],
        now: Optional[datetime]
    ) -> OperationResult:
        try:
            record = self._get_record(record_id, for_update=True)
            if record is None:
                logger.warning(f"⚠️ [Bot Reactivation] Record {record_id} not found, deactivation not tracked")
                return OperationResult(success=False, message="Record not found", error="Record not found")

            fields = dict(extra_fields)
            fields.update({
                "iaDeactivatedAt": format_timestamp(now or utcnow()),
                "inactivityThreshold": inactivity_threshold or self.default_threshold,
                "autoReactivationEnabled": auto_reactivation_enabled is not False,
            })
            self._apply_changes(record, DEACTIVATION_TRACKER_USER, set_fields=fields)
            self.db.commit()

            logger.info(f"📝 [Bot Reactivation] Tracked deactivation for record {record_id}")
            return OperationResult(success=True, message="Deactivation tracked")

        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ [Bot Reactivation] Failed to track deactivation: {e}", exc_info=True)
            return OperationResult(success=False, message="Failed to track deactivation", error=str(e))

    def update_last_message_timestamp(self, phone_number: PhoneNumber, now: Optional[datetime] = None) -> bool:
        """Reset the inactivity clock, call it on every incoming/outgoing message"""
        try:
            prospect = self._find_prospect_by_number(phone_number, for_update=True)
            if prospect is None:
                logger.debug(f"No prospect with number {phone_number} in {self.c_name}")
                return False

            self._apply_changes(
                prospect,
                None,
                set_fields={"lastmessagedate": format_timestamp(now or utcnow())}
            )
            self.db.commit()
            return True

        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ [Bot Reactivation] Failed to update last message timestamp: {e}", exc_info=True)
            return False

    def manually_reactivate_bot(self, record_id: str, updated_by: str = MANUAL_REACTIVATION_USER) -> OperationResult:
        """Switch the bot back on and drop the auto-reactivation tracking"""
        try:
            record = self._get_record(record_id, for_update=True)
            changed = record is not None and self._apply_changes(
                record,
                updated_by,
                set_fields={"ia": True},
                unset_fields=TRACKING_FIELDS
            )

            if not changed:
                self.db.rollback()
                logger.warning("⚠️ [Bot Reactivation] Manual reactivation found no record to update")
                return OperationResult(
                    success=False,
                    message="Failed to reactivate bot",
                    error="Record not found or already active"
                )

            self.db.commit()
            logger.info(f"✅ [Bot Reactivation] Manually reactivated bot for record {record_id}")
            return OperationResult(success=True, message="Bot reactivated successfully")

        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ [Bot Reactivation] Manual reactivation failed: {e}", exc_info=True)
            return OperationResult(success=False, message="Error reactivating bot", error=str(e))

    def get_reactivation_status(self, phone_number: PhoneNumber, now: Optional[datetime] = None) -> Optional[ReactivationStatus]:
        """Bot state of a prospect, None when the prospect does not exist"""
        try:
            prospect = self._find_prospect_by_number(phone_number)
            if prospect is None:
                return None

            data = prospect.data or {}
            if is_bot_active(data):
                return ReactivationStatus(bot_active=True)

            deactivated_at = parse_timestamp(data.get("iaDeactivatedAt"))
            last_message_date = parse_timestamp(data.get("lastmessagedate"))
            threshold = threshold_minutes(data, self.default_threshold)

            minutes = None
            minutes_left = None
            if deactivated_at is not None:
                minutes = inactive_minutes(last_activity_time(deactivated_at, last_message_date), now or utcnow())
                minutes_left = minutes_until_reactivation(threshold, minutes)

            return ReactivationStatus(
                bot_active=False,
                deactivated_at=deactivated_at,
                last_message_date=last_message_date,
                inactive_minutes=minutes,
                threshold_minutes=threshold,
                minutes_until_reactivation=minutes_left,
                auto_reactivation_enabled=data.get("autoReactivationEnabled") is not False
            )

        except Exception as e:
            logger.error(f"❌ [Bot Reactivation] Failed to get status: {e}", exc_info=True)
            return None

    def update_reactivation_settings(
        self,
        record_id: str,
        auto_reactivation_enabled: Optional[bool] = None,
        inactivity_threshold: Optional[float] = None
    ) -> SettingsUpdateResult:
        """Change the per-prospect toggle and/or threshold"""
        fields: Dict[str, Any] = {}
        if isinstance(auto_reactivation_enabled, bool):
            fields["autoReactivationEnabled"] = auto_reactivation_enabled
        if (
            isinstance(inactivity_threshold, (int, float))
            and not isinstance(inactivity_threshold, bool)
            and math.isfinite(inactivity_threshold)
            and inactivity_threshold > 0
        ):
            fields["inactivityThreshold"] = inactivity_threshold

        if not fields:
            return SettingsUpdateResult(success=False, message="No valid settings provided")

        try:
            record = self._get_record(record_id, for_update=True)
            if record is None or not self._apply_changes(record, SETTINGS_UPDATE_USER, set_fields=fields):
                self.db.rollback()
                return SettingsUpdateResult(success=False, message="Record not found or no changes made")

            self.db.commit()
            logger.info(f"⚙️ [Bot Reactivation] Updated settings for record {record_id}: {fields}")
            return SettingsUpdateResult(success=True, message="Settings updated successfully", updated=fields)

        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ [Bot Reactivation] Error updating settings: {e}", exc_info=True)
            return SettingsUpdateResult(success=False, message="Error updating settings", error=str(e))


# Company-level entry points, each one opens its own session on the company database

def check_and_reactivate_bots(c_name: str, dry_run: bool = False, now: Optional[datetime] = None) -> ReactivationStats:
    try:
        with tenant_session(c_name) as db:
            return BotReactivationService(db, c_name).check_and_reactivate_bots(dry_run=dry_run, now=now)
    except Exception as e:
        logger.error(f"❌ [Bot Reactivation] Fatal error for {c_name}: {e}", exc_info=True)
        stats = ReactivationStats()
        stats.errors.append(ReactivationError(number="SYSTEM", error=str(e)))
        return stats


def track_bot_deactivation(
    record_id: str,
    c_name: str,
    inactivity_threshold: Optional[float] = None,
    auto_reactivation_enabled: Optional[bool] = None
) -> OperationResult:
    try:
        with tenant_session(c_name) as db:
            return BotReactivationService(db, c_name).track_bot_deactivation(
                record_id, inactivity_threshold, auto_reactivation_enabled
            )
    except Exception as e:
        logger.error(f"❌ [Bot Reactivation] Failed to track deactivation for {c_name}: {e}", exc_info=True)
        return OperationResult(success=False, message="Failed to track deactivation", error=str(e))


def deactivate_bot(
    record_id: str,
    c_name: str,
    inactivity_threshold: Optional[float] = None,
    auto_reactivation_enabled: Optional[bool] = None
) -> OperationResult:
    try:
        with tenant_session(c_name) as db:
            return BotReactivationService(db, c_name).deactivate_bot(
                record_id, inactivity_threshold, auto_reactivation_enabled
            )
    except Exception as e:
        logger.error(f"❌ [Bot Reactivation] Failed to deactivate bot for {c_name}: {e}", exc_info=True)
        return OperationResult(success=False, message="Failed to deactivate bot", error=str(e))


def update_last_message_timestamp(phone_number: PhoneNumber, c_name: str) -> bool:
    try:
        with tenant_session(c_name) as db:
            return BotReactivationService(db, c_name).update_last_message_timestamp(phone_number)
    except Exception as e:
        logger.error(f"❌ [Bot Reactivation] Failed to update last message timestamp for {c_name}: {e}", exc_info=True)
        return False


def manually_reactivate_bot(record_id: str, c_name: str, updated_by: str = MANUAL_REACTIVATION_USER) -> OperationResult:
    try:
        with tenant_session(c_name) as db:
            return BotReactivationService(db, c_name).manually_reactivate_bot(record_id, updated_by)
    except Exception as e:
        logger.error(f"❌ [Bot Reactivation] Manual reactivation failed for {c_name}: {e}", exc_info=True)
        return OperationResult(success=False, message="Error reactivating bot", error=str(e))


def get_reactivation_status(phone_number: PhoneNumber, c_name: str) -> Optional[ReactivationStatus]:
    try:
        with tenant_session(c_name) as db:
            return BotReactivationService(db, c_name).get_reactivation_status(phone_number)
    except Exception as e:
        logger.error(f"❌ [Bot Reactivation] Failed to get status for {c_name}: {e}", exc_info=True)
        return None


def update_reactivation_settings(
    record_id: str,
    c_name: str,
    auto_reactivation_enabled: Optional[bool] = None,
    inactivity_threshold: Optional[float] = None
) -> SettingsUpdateResult:
    try:
        with tenant_session(c_name) as db:
            return BotReactivationService(db, c_name).update_reactivation_settings(
                record_id, auto_reactivation_enabled, inactivity_threshold
            )
    except Exception as e:
        logger.error(f"❌ [Bot Reactivation] Error updating settings for {c_name}: {e}", exc_info=True)
        return SettingsUpdateResult(success=False, message="Error updating settings", error=str(e))
