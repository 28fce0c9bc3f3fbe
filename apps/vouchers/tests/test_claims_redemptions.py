import copy
import threading
import unittest
import uuid
from datetime import timedelta
from unittest import mock

from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase
from django.utils import timezone

from apps.vouchers import services, store
from apps.vouchers.exceptions import BusinessRuleViolation, ValidationError
from apps.vouchers.models import ClaimStatus, CustomerVoucher, Voucher, VoucherScan, VoucherState
from .helpers import make_business, make_voucher


class ClaimRedeemScenarioTestCase(TestCase):
    def setUp(self):
        self.business = make_business()
        self.user_a = uuid.uuid4()
        self.user_b = uuid.uuid4()

    def test_single_redemption_voucher(self):
        """Claim is independent of the global counter, redemption is not"""
        voucher = make_voucher(self.business, max_redemptions=1, max_redemptions_per_user=1)
        self.assertEqual(voucher.state, VoucherState.DRAFT)
        services.publish_voucher(voucher.id)

        claim = services.claim_voucher(voucher.id, self.user_a)
        self.assertEqual(claim.status, ClaimStatus.CLAIMED)

        redeemed = services.redeem_voucher(voucher.id, self.user_a)
        self.assertEqual(redeemed.redemptions_count, 1)
        self.assertEqual(CustomerVoucher.objects.get(customer_id=self.user_a).status, ClaimStatus.REDEEMED)

        claim_b = services.claim_voucher(voucher.id, self.user_b)
        self.assertEqual(claim_b.status, ClaimStatus.CLAIMED)

        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.redeem_voucher(voucher.id, self.user_b)
        self.assertEqual(ctx.exception.reason, 'Maximum redemptions reached')

        voucher.refresh_from_db()
        self.assertEqual(voucher.redemptions_count, 1)
        self.assertEqual(voucher.claim_count, 2)
        self.assertEqual(CustomerVoucher.objects.get(customer_id=self.user_b).status, ClaimStatus.CLAIMED)

    def test_redeem_before_claim(self):
        voucher = make_voucher(self.business, publish=True)
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.redeem_voucher(voucher.id, self.user_a)
        self.assertEqual(ctx.exception.reason, 'Voucher not claimed')

        voucher.refresh_from_db()
        self.assertEqual(voucher.redemptions_count, 0)
        self.assertFalse(CustomerVoucher.objects.exists())

    def test_duplicate_claim(self):
        voucher = make_voucher(self.business, publish=True)
        services.claim_voucher(voucher.id, self.user_a)
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.claim_voucher(voucher.id, self.user_a)
        self.assertEqual(ctx.exception.reason, 'Voucher already claimed')

        voucher.refresh_from_db()
        self.assertEqual(voucher.claim_count, 1)
        self.assertEqual(CustomerVoucher.objects.filter(voucher=voucher).count(), 1)

    def test_store_claim_insert_is_insert_if_absent(self):
        """The unique constraint decides, not a prior read"""
        voucher = make_voucher(self.business, publish=True)
        store.insert_claim(self.user_a, voucher.id)
        with self.assertRaises(BusinessRuleViolation):
            store.insert_claim(self.user_a, voucher.id)
        self.assertEqual(CustomerVoucher.objects.count(), 1)

    def test_redeem_twice(self):
        voucher = make_voucher(self.business, publish=True)
        services.claim_voucher(voucher.id, self.user_a)
        services.redeem_voucher(voucher.id, self.user_a)
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.redeem_voucher(voucher.id, self.user_a)
        self.assertEqual(ctx.exception.reason, 'Voucher already redeemed')

    def test_exactly_k_of_n_redemptions(self):
        voucher = make_voucher(self.business, publish=True, max_redemptions=3)
        users = [uuid.uuid4() for _ in range(5)]
        for user in users:
            services.claim_voucher(voucher.id, user)

        succeeded = 0
        for user in users:
            try:
                services.redeem_voucher(voucher.id, user)
                succeeded += 1
            except BusinessRuleViolation:
                pass

        self.assertEqual(succeeded, 3)
        voucher.refresh_from_db()
        self.assertEqual(voucher.redemptions_count, 3)
        self.assertEqual(CustomerVoucher.objects.filter(status=ClaimStatus.REDEEMED).count(), 3)

    def test_stale_counter_snapshot_cannot_overshoot(self):
        """Pre-check passes on an old snapshot, the conditional update still refuses"""
        voucher = make_voucher(self.business, publish=True, max_redemptions=1)
        services.claim_voucher(voucher.id, self.user_a)
        services.claim_voucher(voucher.id, self.user_b)
        stale = copy.copy(Voucher.objects.get(id=voucher.id))

        services.redeem_voucher(voucher.id, self.user_a)

        with mock.patch('apps.vouchers.store.get_voucher', return_value=stale):
            with self.assertRaises(BusinessRuleViolation) as ctx:
                services.redeem_voucher(voucher.id, self.user_b)
        self.assertEqual(ctx.exception.reason, 'Maximum redemptions reached')

        voucher.refresh_from_db()
        self.assertEqual(voucher.redemptions_count, 1)
        claim_b = CustomerVoucher.objects.get(customer_id=self.user_b)
        self.assertEqual(claim_b.status, ClaimStatus.CLAIMED)
        self.assertIsNone(claim_b.redeemed_at)

    def test_stale_claim_snapshot_cannot_redeem_twice(self):
        voucher = make_voucher(self.business, publish=True)
        services.claim_voucher(voucher.id, self.user_a)
        stale_claim = CustomerVoucher.objects.get(customer_id=self.user_a)

        services.redeem_voucher(voucher.id, self.user_a)

        with mock.patch('apps.vouchers.store.find_claim', return_value=stale_claim):
            with self.assertRaises(BusinessRuleViolation) as ctx:
                services.redeem_voucher(voucher.id, self.user_a)
        self.assertEqual(ctx.exception.reason, 'Voucher already redeemed')

        voucher.refresh_from_db()
        self.assertEqual(voucher.redemptions_count, 1)

    def test_redemption_writes_audit_scan(self):
        voucher = make_voucher(self.business, publish=True)
        services.claim_voucher(voucher.id, self.user_a)
        result = services.redeem_voucher(voucher.id, self.user_a, redemption_code='POS-778')

        self.assertEqual(result.redemption_code, 'POS-778')
        scan = VoucherScan.objects.get(voucher=voucher)
        self.assertEqual(scan.scan_type, 'business')
        self.assertEqual(scan.scan_source, 'share')
        self.assertEqual(scan.user_id, self.user_a)
        self.assertEqual(scan.metadata['claim_id'], str(result.claim_id))

    def test_audit_failure_does_not_fail_redemption(self):
        voucher = make_voucher(self.business, publish=True)
        services.claim_voucher(voucher.id, self.user_a)

        with mock.patch('apps.vouchers.store.record_scan', side_effect=DatabaseError('scan table locked')):
            result = services.redeem_voucher(voucher.id, self.user_a)

        self.assertEqual(result.redemptions_count, 1)
        self.assertFalse(VoucherScan.objects.exists())

    def test_generated_redemption_code(self):
        voucher = make_voucher(self.business, publish=True)
        services.claim_voucher(voucher.id, self.user_a)
        result = services.redeem_voucher(voucher.id, self.user_a)
        self.assertEqual(len(result.redemption_code), 8)

    def test_claim_requires_live_voucher(self):
        draft = make_voucher(self.business)
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.claim_voucher(draft.id, self.user_a)
        self.assertEqual(ctx.exception.reason, 'Voucher is draft')

        published = make_voucher(self.business, publish=True)
        Voucher.objects.filter(id=published.id).update(valid_until=timezone.now() - timedelta(minutes=1))
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.claim_voucher(published.id, self.user_a)
        self.assertEqual(ctx.exception.reason, 'Voucher has expired')

    def test_redeem_on_expired_voucher(self):
        voucher = make_voucher(self.business, publish=True)
        services.claim_voucher(voucher.id, self.user_a)
        services.expire_voucher(voucher.id)
        with self.assertRaises(BusinessRuleViolation):
            services.redeem_voucher(voucher.id, self.user_a)

    def test_user_id_required(self):
        voucher = make_voucher(self.business, publish=True)
        with self.assertRaises(ValidationError):
            services.claim_voucher(voucher.id, None)
        with self.assertRaises(ValidationError):
            services.redeem_voucher(voucher.id, '')

    def test_wallet(self):
        first = make_voucher(self.business, publish=True)
        second = make_voucher(self.business, publish=True)
        services.claim_voucher(first.id, self.user_a)
        services.claim_voucher(second.id, self.user_a)
        services.redeem_voucher(second.id, self.user_a)

        redeemed = services.list_customer_vouchers(self.user_a, status='redeemed', language='es')
        self.assertEqual([c.voucher_id for c in redeemed], [second.id])
        self.assertEqual(redeemed[0].voucher.title, '20% de descuento en café')
        self.assertEqual(len(services.list_customer_vouchers(self.user_a)), 2)

        with self.assertRaises(ValidationError):
            services.list_customer_vouchers(self.user_a, status='lost')


@unittest.skipUnless(connection.vendor == 'postgresql', 'needs row level locking')
class ConcurrentRedemptionTestCase(TransactionTestCase):
    """
    Real concurrent attempts against one voucher.

    sqlite serializes writers, so these run only when the settings point at
    PostgreSQL: export POSTGRES_DB (and POSTGRES_USER, POSTGRES_PASSWORD,
    POSTGRES_HOST as needed) before running pytest.
    """

    def _run_concurrently(self, func, args_list):
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(args_list))

        def worker(*args):
            barrier.wait()
            try:
                func(*args)
                ok = True
            except BusinessRuleViolation:
                ok = False
            finally:
                connection.close()
            with lock:
                outcomes.append(ok)

        threads = [threading.Thread(target=worker, args=args) for args in args_list]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return outcomes

    def test_concurrent_redemptions_respect_limit(self):
        voucher = make_voucher(make_business(), publish=True, max_redemptions=3)
        users = [uuid.uuid4() for _ in range(10)]
        for user in users:
            services.claim_voucher(voucher.id, user)

        outcomes = self._run_concurrently(services.redeem_voucher, [(voucher.id, u) for u in users])

        self.assertEqual(outcomes.count(True), 3)
        voucher.refresh_from_db()
        self.assertEqual(voucher.redemptions_count, 3)

    def test_concurrent_duplicate_claims(self):
        voucher = make_voucher(make_business(), publish=True)
        user = uuid.uuid4()

        outcomes = self._run_concurrently(services.claim_voucher, [(voucher.id, user)] * 8)

        self.assertEqual(outcomes.count(True), 1)
        self.assertEqual(CustomerVoucher.objects.filter(voucher=voucher).count(), 1)
