from datetime import timedelta
from io import StringIO

from django.core.management import call_command
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from apps.vouchers import lifecycle, services
from apps.vouchers.exceptions import BusinessRuleViolation, ResourceNotFound, ValidationError
from apps.vouchers.models import Voucher, VoucherState
from apps.vouchers.tasks import expire_vouchers_task
from .helpers import make_business, make_voucher

ALLOWED = {
    ('draft', 'published'),
    ('published', 'claimed'),
    ('published', 'expired'),
    ('claimed', 'redeemed'),
    ('claimed', 'expired'),
    ('redeemed', 'expired'),
}


class TransitionTableTestCase(SimpleTestCase):
    def test_every_pair(self):
        """Listed pairs succeed, every other pair is a business rule violation"""
        for current in VoucherState.values:
            for target in VoucherState.values:
                with self.subTest(current=current, target=target):
                    if (current, target) in ALLOWED:
                        self.assertEqual(lifecycle.transition(current, target), target)
                    else:
                        with self.assertRaises(BusinessRuleViolation):
                            lifecycle.transition(current, target)

    def test_reason_names_allowed_targets(self):
        with self.assertRaises(BusinessRuleViolation) as ctx:
            lifecycle.transition('published', 'redeemed')
        self.assertEqual(
            ctx.exception.reason,
            'Cannot transition from published to redeemed. Allowed transitions: claimed, expired',
        )

    def test_terminal_state(self):
        self.assertEqual(lifecycle.allowed_transitions('expired'), [])
        with self.assertRaises(BusinessRuleViolation) as ctx:
            lifecycle.transition('expired', 'published')
        self.assertIn('Allowed transitions: none', ctx.exception.reason)

    def test_unknown_state(self):
        with self.assertRaises(ValidationError):
            lifecycle.transition('draft', 'archived')


class VoucherLifecycleTestCase(TestCase):
    def setUp(self):
        self.business = make_business()

    def test_create_starts_in_draft_with_codes(self):
        voucher = make_voucher(self.business, static_code='coffee20')
        self.assertEqual(voucher.state, VoucherState.DRAFT)
        self.assertEqual(voucher.redemptions_count, 0)
        self.assertEqual(sorted(voucher.codes.values_list('type', flat=True)), ['qr', 'short', 'static'])
        self.assertTrue(voucher.codes.filter(type='qr', code=voucher.qr_code).exists())
        self.assertTrue(voucher.codes.filter(type='static', code='COFFEE20').exists())

    def test_create_validation(self):
        cases = [
            {'discount_value': 0},
            {'discount_value': 150},
            {'discount_type': 'bogo'},
            {'max_redemptions': 0},
            {'title': ''},
            {'valid_from': timezone.now(), 'valid_until': timezone.now() - timedelta(days=1)},
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    make_voucher(self.business, **overrides)

    def test_create_for_unknown_business(self):
        with self.assertRaises(ResourceNotFound):
            services.create_voucher(
                business_id='5f0c6a8e-4d0b-4b52-9a51-7b5c1f0e9d11',
                title='Ghost', discount_type='fixed', discount_value=5,
            )

    def test_publish(self):
        voucher = make_voucher(self.business)
        services.publish_voucher(voucher.id)
        voucher.refresh_from_db()
        self.assertEqual(voucher.state, VoucherState.PUBLISHED)

    def test_publish_before_window_opens(self):
        start = timezone.now() + timedelta(days=3)
        voucher = make_voucher(self.business, valid_from=start)
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.publish_voucher(voucher.id)
        self.assertTrue(ctx.exception.reason.startswith('Voucher becomes valid at'))
        voucher.refresh_from_db()
        self.assertEqual(voucher.state, VoucherState.DRAFT)

    def test_publish_after_window_closed(self):
        voucher = make_voucher(self.business, valid_from=timezone.now() - timedelta(days=10),
                               valid_until=timezone.now() - timedelta(days=1))
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.publish_voucher(voucher.id)
        self.assertTrue(ctx.exception.reason.startswith('Voucher expired at'))

    def test_expire(self):
        voucher = make_voucher(self.business, publish=True)
        services.expire_voucher(voucher.id)
        voucher.refresh_from_db()
        self.assertEqual(voucher.state, VoucherState.EXPIRED)

        with self.assertRaises(BusinessRuleViolation):
            services.publish_voucher(voucher.id)

    def test_draft_cannot_expire(self):
        voucher = make_voucher(self.business)
        with self.assertRaises(BusinessRuleViolation):
            services.expire_voucher(voucher.id)

    def test_suspend_and_resume(self):
        voucher = make_voucher(self.business, publish=True)
        services.suspend_voucher(voucher.id, reason='fraud review')
        voucher.refresh_from_db()
        self.assertEqual(voucher.state, VoucherState.SUSPENDED)

        # no normal transition leaves suspended
        with self.assertRaises(BusinessRuleViolation):
            services.publish_voucher(voucher.id)

        services.resume_voucher(voucher.id)
        voucher.refresh_from_db()
        self.assertEqual(voucher.state, VoucherState.PUBLISHED)

    def test_suspend_requires_live_voucher(self):
        voucher = make_voucher(self.business)
        with self.assertRaises(BusinessRuleViolation):
            services.suspend_voucher(voucher.id)
        with self.assertRaises(BusinessRuleViolation):
            services.resume_voucher(voucher.id)

    def test_stale_state_update_is_rejected(self):
        """A transition computed from an outdated state writes nothing"""
        voucher = make_voucher(self.business, publish=True)
        Voucher.objects.filter(id=voucher.id).update(state=VoucherState.EXPIRED)

        from apps.vouchers import store
        self.assertFalse(store.update_voucher_state(voucher.id, VoucherState.PUBLISHED, VoucherState.CLAIMED))
        voucher.refresh_from_db()
        self.assertEqual(voucher.state, VoucherState.EXPIRED)

    def test_delete(self):
        voucher = make_voucher(self.business)
        services.delete_voucher(voucher.id)
        voucher.refresh_from_db()
        self.assertIsNotNone(voucher.deleted_at)
        with self.assertRaises(ResourceNotFound):
            services.get_voucher(voucher.id)

    def test_published_voucher_cannot_be_deleted(self):
        voucher = make_voucher(self.business, publish=True)
        with self.assertRaises(BusinessRuleViolation):
            services.delete_voucher(voucher.id)

    def test_cache_is_invalidated_after_commit(self):
        voucher = make_voucher(self.business)
        self.assertEqual(services.get_voucher(voucher.id).state, VoucherState.DRAFT)

        with self.captureOnCommitCallbacks(execute=True):
            services.publish_voucher(voucher.id)

        self.assertEqual(services.get_voucher(voucher.id).state, VoucherState.PUBLISHED)

    def test_get_voucher_localized(self):
        voucher = make_voucher(self.business)
        localized = services.get_voucher(voucher.id, language='es')
        self.assertEqual(localized.title, '20% de descuento en café')
        self.assertEqual(services.get_voucher(voucher.id).title['en'], '20% off any coffee')

    def test_get_voucher_bad_id(self):
        with self.assertRaises(ValidationError):
            services.get_voucher('nope')


class ExpirySweepTestCase(TestCase):
    def setUp(self):
        business = make_business()
        self.stale = make_voucher(business, publish=True)
        self.fresh = make_voucher(business, publish=True, valid_until=timezone.now() + timedelta(days=5))
        self.draft = make_voucher(business)
        past = timezone.now() - timedelta(hours=1)
        Voucher.objects.filter(id__in=[self.stale.id, self.draft.id]).update(valid_until=past)

    def _states(self):
        return {v.id: v.state for v in Voucher.objects.all()}

    def test_cleanup_expired_vouchers(self):
        result = services.cleanup_expired_vouchers()
        self.assertEqual(result.processed_count, 1)
        self.assertEqual(result.success_count, 1)

        states = self._states()
        self.assertEqual(states[self.stale.id], VoucherState.EXPIRED)
        self.assertEqual(states[self.fresh.id], VoucherState.PUBLISHED)
        self.assertEqual(states[self.draft.id], VoucherState.DRAFT)

    def test_management_command(self):
        out = StringIO()
        call_command('expire_vouchers', '--dry-run', stdout=out)
        self.assertIn(str(self.stale.id), out.getvalue())
        self.assertEqual(self._states()[self.stale.id], VoucherState.PUBLISHED)

        out = StringIO()
        call_command('expire_vouchers', stdout=out)
        self.assertIn('Expired 1 of 1 vouchers', out.getvalue())
        self.assertEqual(self._states()[self.stale.id], VoucherState.EXPIRED)

    def test_celery_task(self):
        result = expire_vouchers_task.apply().get()
        self.assertEqual(result, {'processed': 1, 'expired': 1, 'failed': 0})
