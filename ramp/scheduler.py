"""
Background jobs: payout reconciliation and authorization challenge sweeping.
"""
from typing import Optional, Type

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from ramp.authorization import TransactionAuthorizer
from ramp.reconciliation import ReconciliationPoller

CHALLENGE_SWEEP_SECONDS = 60


class SettlementScheduler:
    """Owns the APScheduler instance running the settlement jobs."""

    def __init__(
        self,
        poller: ReconciliationPoller,
        authorizer: Optional[TransactionAuthorizer] = None,
        scheduler_class: Type[BaseScheduler] = BackgroundScheduler,
    ):
        self.poller = poller
        self.authorizer = authorizer or TransactionAuthorizer()
        self.scheduler = scheduler_class(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60,
            },
            timezone='UTC',
        )
        self.setup_jobs()

    def setup_jobs(self) -> None:
        self.scheduler.add_job(
            self.poller.poll_once,
            trigger=IntervalTrigger(seconds=self.poller.interval_seconds),
            id='reconcile_offramp_payouts',
            name='Reconcile offramp payouts',
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.authorizer.sweep_expired,
            trigger=IntervalTrigger(seconds=CHALLENGE_SWEEP_SECONDS),
            id='sweep_authorization_challenges',
            name='Sweep expired authorization challenges',
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        logger.info('Starting settlement scheduler: reconciliation every {}s', self.poller.interval_seconds)
        self.scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info('Settlement scheduler stopped')
