"""
Fallback polling of the payout processor for offramp orders stuck in flight.

Each cycle takes a bounded batch of PROCESSING/SETTLING orders, oldest
dispatch first, and asks the processor for their status. Orders that stay
in flight past the attempt or age ceiling are forced to TIMEOUT. A failure
on one order never stops the rest of the batch.
"""
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta, timezone as datetime_timezone
from typing import Callable, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone
from loguru import logger

from ramp import alerts
from ramp.dispatcher import SettlementDispatcher
from ramp.errors import ReconciliationTimeout
from ramp.models import OfframpOrder
from ramp.rails import PayoutProcessor


@dataclass
class PollSummary:
    polled: int = 0
    changed: int = 0
    unchanged: int = 0
    timed_out: int = 0
    errors: int = 0
    skipped: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


class ReconciliationPoller:
    def __init__(
        self,
        dispatcher: Optional[SettlementDispatcher] = None,
        payouts: Optional[PayoutProcessor] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        max_age_seconds: Optional[int] = None,
        interval_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.dispatcher = dispatcher or SettlementDispatcher()
        self.payouts = payouts or self.dispatcher.payouts
        self.batch_size = batch_size or getattr(settings, 'RECONCILIATION_BATCH_SIZE', 10)
        self.max_attempts = max_attempts or getattr(settings, 'RECONCILIATION_MAX_ATTEMPTS', 720)
        self.max_age = timedelta(seconds=max_age_seconds or getattr(settings, 'RECONCILIATION_MAX_AGE_SECONDS', 21600))
        self.interval_seconds = interval_seconds or getattr(settings, 'RECONCILIATION_INTERVAL_SECONDS', 30)
        self.clock = clock or timezone.now
        self.last_run_at: Optional[datetime] = None
        self._cycle_lock = threading.Lock()

    def pending_batch(self):
        return list(
            OfframpOrder.objects.filter(status__in=OfframpOrder.IN_FLIGHT_STATUSES)
            .order_by(F('processed_at').asc(nulls_first=True), 'created_at')[:self.batch_size]
        )

    def poll_once(self) -> PollSummary:
        summary = PollSummary()
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug('Reconciliation cycle already running, skipping')
            summary.skipped = True
            return summary
        try:
            for order in self.pending_batch():
                summary.polled += 1
                try:
                    self._reconcile(order, summary)
                except Exception as exc:
                    summary.errors += 1
                    logger.error('Reconciliation of {} failed: {}', order.reference, exc)
            self.last_run_at = self.clock()
        finally:
            self._cycle_lock.release()

        if summary.polled:
            logger.info('Reconciliation cycle: {}', summary.as_dict())
        return summary

    def _reconcile(self, order: OfframpOrder, summary: PollSummary) -> None:
        now = self.clock()
        OfframpOrder.objects.filter(
            pk=order.pk, status__in=OfframpOrder.IN_FLIGHT_STATUSES,
        ).update(poll_attempts=F('poll_attempts') + 1, last_polled_at=now)

        changed = False
        query_error: Optional[Exception] = None
        if not order.external_transfer_id:
            logger.warning('Order {} is {} without an external transfer id', order.reference, order.status)
        else:
            try:
                payout_status = self.payouts.get_transfer_status(order.external_transfer_id)
            except Exception as exc:
                query_error = exc
            else:
                changed = self.dispatcher.apply_payout_status(order.pk, payout_status.status, payout_status.reason)

        # The processor's answer always wins over the deadline.
        order.refresh_from_db()
        if not order.is_terminal:
            try:
                self._check_deadline(order, now)
            except ReconciliationTimeout as exc:
                if query_error is not None:
                    logger.warning('Status query for {} failed before timeout: {}', order.reference, query_error)
                if self._time_out(order, exc):
                    summary.timed_out += 1
                return

        if query_error is not None:
            raise query_error
        if changed:
            summary.changed += 1
        else:
            summary.unchanged += 1

    def _check_deadline(self, order: OfframpOrder, now: datetime) -> None:
        if order.poll_attempts >= self.max_attempts:
            raise ReconciliationTimeout(
                f'Payout not confirmed after {order.poll_attempts} status checks')
        started = order.processed_at or order.created_at
        if now - started > self.max_age:
            raise ReconciliationTimeout(
                f'Payout not confirmed within {int(self.max_age.total_seconds())} seconds')

    def _time_out(self, order: OfframpOrder, exc: ReconciliationTimeout) -> bool:
        with transaction.atomic():
            order = OfframpOrder.objects.select_for_update().get(pk=order.pk)
            if order.is_terminal:
                return False
            order.transition(
                OfframpOrder.Status.TIMEOUT, reason=exc.message, error_code='RECONCILIATION_TIMEOUT')
            order.save()
        logger.warning('Offramp order {} timed out: {}', order.reference, exc.message)
        alerts.alert_operator(
            alerts.RECONCILIATION_TIMEOUT,
            'Bank payout was never confirmed',
            {
                'reference': order.reference,
                'externalTransferId': order.external_transfer_id,
                'fiatAmount': order.fiat_amount,
                'reason': exc.message,
            },
        )
        return True

    def stats(self) -> dict:
        start_of_day = datetime.combine(self.clock().date(), time.min, tzinfo=datetime_timezone.utc)
        today = OfframpOrder.objects.filter(completed_at__gte=start_of_day)
        return {
            'interval_seconds': self.interval_seconds,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None,
            'processing': OfframpOrder.objects.filter(status=OfframpOrder.Status.PROCESSING).count(),
            'settling': OfframpOrder.objects.filter(status=OfframpOrder.Status.SETTLING).count(),
            'completed_today': today.filter(status=OfframpOrder.Status.COMPLETED).count(),
            'failed_today': OfframpOrder.objects.filter(
                status__in=[OfframpOrder.Status.FAILED, OfframpOrder.Status.TIMEOUT],
                updated_at__gte=start_of_day,
            ).count(),
        }
