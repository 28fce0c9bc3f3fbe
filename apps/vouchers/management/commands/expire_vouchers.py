"""
Expires vouchers whose validity window has passed
"""
from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.vouchers import store
from apps.vouchers.services import cleanup_expired_vouchers
from apps.vouchers.tasks import expire_vouchers_task, run_sync_fallback


class Command(BaseCommand):
    help = "Moves published/claimed vouchers past their valid_until date to expired"

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Only list the vouchers that would be expired'
        )
        parser.add_argument(
            '--queue',
            action='store_true',
            help='Hand the sweep to Celery instead of running it here'
        )

    def handle(self, *args, **options):
        if options['dry_run']:
            voucher_ids = store.find_expired_voucher_ids(timezone.now())
            for voucher_id in voucher_ids:
                self.stdout.write(str(voucher_id))
            self.stdout.write(self.style.NOTICE(f'{len(voucher_ids)} vouchers would be expired'))
            return

        if options['queue']:
            run_sync_fallback(expire_vouchers_task)
            self.stdout.write(self.style.SUCCESS('Expiry sweep queued'))
            return

        result = cleanup_expired_vouchers()
        for item in result.results:
            if not item.success:
                self.stdout.write(self.style.WARNING(f'{item.voucher_id}: {item.error}'))

        self.stdout.write(
            self.style.SUCCESS(f'Expired {result.success_count} of {result.processed_count} vouchers')
        )
