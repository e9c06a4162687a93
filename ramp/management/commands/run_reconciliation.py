from apscheduler.schedulers.blocking import BlockingScheduler
from django.core.management.base import BaseCommand

from ramp.reconciliation import ReconciliationPoller
from ramp.scheduler import SettlementScheduler


class Command(BaseCommand):
    help = 'Poll the payout processor for in-flight offramp orders and sweep expired challenges.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Run a single reconciliation cycle and exit.',
        )

    def handle(self, *args, **options):
        poller = ReconciliationPoller()
        if options['once']:
            summary = poller.poll_once()
            self.stdout.write(self.style.SUCCESS(f'Reconciliation cycle: {summary.as_dict()}'))
            return

        scheduler = SettlementScheduler(poller, scheduler_class=BlockingScheduler)
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            scheduler.shutdown(wait=False)
