"""
Management command to deliver due scheduled callbacks (expiry, reminders, tax recording).
"""
import time

from django.core.management.base import BaseCommand

from apps.orders.providers import get_order_processor
from apps.orders.scheduling import CallbackRunner


class Command(BaseCommand):
    help = 'Deliver due order callbacks to the order processor'

    def add_arguments(self, parser):
        parser.add_argument(
            '--limit',
            type=int,
            default=100,
            help='Maximum number of callbacks to deliver in one run',
        )
        parser.add_argument(
            '--loop',
            action='store_true',
            help='Run in loop (for production)',
        )
        parser.add_argument(
            '--interval',
            type=int,
            default=30,
            help='Interval between loops in seconds',
        )

    def handle(self, *args, **options):
        limit = options['limit']
        runner = CallbackRunner(get_order_processor())

        if not options['loop']:
            processed = runner.run_due(limit=limit)
            self.stdout.write(self.style.SUCCESS(f'Delivered {processed} callbacks'))
            return

        interval = options['interval']
        self.stdout.write(f'Starting callback runner in loop mode (interval: {interval}s)')
        while True:
            try:
                processed = runner.run_due(limit=limit)
                if processed > 0:
                    self.stdout.write(self.style.SUCCESS(f'Delivered {processed} callbacks'))
                time.sleep(interval)
            except KeyboardInterrupt:
                self.stdout.write(self.style.WARNING('Stopped by user'))
                break
