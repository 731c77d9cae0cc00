"""
Usage Ledger: monthly transcription minutes per user with a hard cap.

Quota checks reserve the estimated minutes on the (user, month) record so that
concurrent requests from the same user cannot jointly overshoot the cap. The
reservation is reconciled with the provider-reported duration on commit, or
released when the provider call fails. Every write is a compare-and-swap on the
record version; lost races are retried.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple
from prometheus_client import Counter
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from clinic_scribe.config import settings
from clinic_scribe.core.errors import QuotaExceededError, StorageFailure
from clinic_scribe.core.logging import get_logger, audit_logger
from clinic_scribe.models.domain import UsageRecord
from clinic_scribe.storage.usage_store import UsageStore

logger = get_logger(__name__)

quota_denials = Counter('quota_denials_total', 'Transcriptions refused because of the monthly cap')
transcription_minutes = Counter('transcription_minutes_total', 'Transcription minutes committed to the ledger')


class ReservationConflict(Exception):
    """Another writer updated the usage record between read and write."""


@dataclass(frozen=True)
class Reservation:
    user_id: str
    year: int
    month: int
    minutes: float
    # False when the check failed open and nothing was written to the record
    tracked: bool = True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedger:
    """Gatekeeper and accountant for transcription minutes"""

    def __init__(
        self,
        store: UsageStore,
        cap_minutes: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.cap_minutes = settings.monthly_quota_minutes if cap_minutes is None else cap_minutes
        self.clock = clock or _utcnow

    def _current_month(self) -> Tuple[int, int]:
        now = self.clock()
        return now.year, now.month

    def check_quota(self, user_id: str, estimated_minutes: float) -> Reservation:
        """
        Allows the request and reserves ``estimated_minutes`` when
        committed + reserved + estimate stays within the cap, otherwise raises
        QuotaExceededError. A failing usage lookup counts as zero usage.
        """
        year, month = self._current_month()
        estimated_minutes = max(float(estimated_minutes), 0.0)
        try:
            reservation = self._reserve(user_id, year, month, estimated_minutes)
        except QuotaExceededError as e:
            quota_denials.inc()
            logger.warning(
                "Transcription quota exceeded",
                user_id=user_id,
                used_minutes=e.used_minutes,
                requested_minutes=e.requested_minutes,
                cap_minutes=e.cap_minutes,
            )
            raise
        except Exception as e:
            logger.warning(f"Usage lookup failed for user {user_id}, treating usage as zero: {e}")
            if estimated_minutes > self.cap_minutes:
                quota_denials.inc()
                raise QuotaExceededError(0.0, estimated_minutes, self.cap_minutes)
            return Reservation(user_id, year, month, estimated_minutes, tracked=False)

        logger.info(
            "Quota check passed",
            user_id=user_id,
            estimated_minutes=round(estimated_minutes, 2),
        )
        return reservation

    @retry(
        stop=stop_after_attempt(settings.reservation_max_attempts),
        retry=retry_if_exception_type(ReservationConflict),
        reraise=True,
    )
    def _reserve(self, user_id: str, year: int, month: int, estimated_minutes: float) -> Reservation:
        record = self.store.get(user_id, year, month)
        current = record or UsageRecord(user_id=user_id, year=year, month=month)
        accumulated = current.minutes_used + current.minutes_reserved

        if accumulated + estimated_minutes > self.cap_minutes:
            raise QuotaExceededError(accumulated, estimated_minutes, self.cap_minutes)

        updated = current.model_copy(update={"minutes_reserved": current.minutes_reserved + estimated_minutes})
        if not self.store.compare_and_swap(record.version if record else None, updated):
            raise ReservationConflict(f"usage record {user_id}/{year}-{month:02d} changed")
        return Reservation(user_id, year, month, estimated_minutes)

    def commit_usage(
        self,
        user_id: str,
        actual_minutes: float,
        reservation: Optional[Reservation] = None,
    ) -> None:
        """
        Adds ``actual_minutes`` to the month's record and drops the matching
        reservation. Never raises: the transcription this accounts for already
        succeeded.
        """
        if reservation is not None:
            year, month = reservation.year, reservation.month
            release = reservation.minutes if reservation.tracked else 0.0
        else:
            year, month = self._current_month()
            release = 0.0
        actual_minutes = max(float(actual_minutes), 0.0)

        try:
            record = self._apply(user_id, year, month, actual_minutes, release)
        except Exception as e:
            logger.error(f"Error updating transcription usage for user {user_id}: {e}", exc_info=True)
            if reservation is not None and reservation.tracked:
                self.release(reservation)
            return

        transcription_minutes.inc(actual_minutes)
        audit_logger.log_usage_commit(user_id, year, month, actual_minutes, record.minutes_used)

    def release(self, reservation: Reservation) -> None:
        """Returns reserved minutes after a failed provider call."""
        if not reservation.tracked:
            return
        try:
            self._apply(reservation.user_id, reservation.year, reservation.month, 0.0, reservation.minutes)
            logger.info("Released usage reservation", user_id=reservation.user_id, minutes=reservation.minutes)
        except Exception as e:
            logger.error(f"Failed to release usage reservation for user {reservation.user_id}: {e}", exc_info=True)

    @retry(
        stop=stop_after_attempt(settings.reservation_max_attempts),
        retry=retry_if_exception_type(ReservationConflict),
        reraise=True,
    )
    def _apply(self, user_id: str, year: int, month: int, add_minutes: float, release_minutes: float) -> UsageRecord:
        record = self.store.get(user_id, year, month)
        current = record or UsageRecord(user_id=user_id, year=year, month=month)
        updated = current.model_copy(update={
            "minutes_used": current.minutes_used + add_minutes,
            "minutes_reserved": max(current.minutes_reserved - release_minutes, 0.0),
        })
        if not self.store.compare_and_swap(record.version if record else None, updated):
            raise ReservationConflict(f"usage record {user_id}/{year}-{month:02d} changed")
        return updated

    def monthly_usage(self, user_id: str, year: Optional[int] = None, month: Optional[int] = None) -> List[UsageRecord]:
        """Display-only listing, newest month first. Not used for enforcement."""
        try:
            records = self.store.list_for_user(user_id)
        except Exception as e:
            logger.error(f"Error fetching usage data for user {user_id}: {e}", exc_info=True)
            raise StorageFailure("Failed to fetch usage data") from e
        if year is not None and month is not None:
            records = [r for r in records if r.year == year and r.month == month]
        return records
