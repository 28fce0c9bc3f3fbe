import uuid
from unittest import mock

from django.test import TestCase

from apps.vouchers import services
from apps.vouchers.exceptions import ValidationError
from apps.vouchers.models import Voucher, VoucherState
from .helpers import make_business, make_voucher


class BatchProcessTestCase(TestCase):
    def setUp(self):
        self.business = make_business()
        self.published = make_voucher(self.business, publish=True)
        self.draft = make_voucher(self.business)
        self.missing = uuid.uuid4()

    def test_expire_mixed_batch(self):
        result = services.batch_process([self.published.id, self.draft.id, self.missing], 'expire')

        self.assertEqual(result.processed_count, 3)
        self.assertEqual(result.success_count, 1)
        self.assertEqual(result.failed_count, 2)

        by_id = {r.voucher_id: r for r in result.results}
        self.assertTrue(by_id[str(self.published.id)].success)
        self.assertTrue(by_id[str(self.draft.id)].error.startswith('Cannot transition from draft to expired'))
        self.assertEqual(by_id[str(self.missing)].error, 'Voucher not found')

        self.assertEqual(Voucher.objects.get(id=self.published.id).state, VoucherState.EXPIRED)
        self.assertEqual(Voucher.objects.get(id=self.draft.id).state, VoucherState.DRAFT)

    def test_activate(self):
        result = services.batch_process([self.draft.id, self.published.id], 'activate')
        self.assertEqual(result.success_count, 1)
        self.assertEqual(Voucher.objects.get(id=self.draft.id).state, VoucherState.PUBLISHED)

    def test_validate(self):
        result = services.batch_process([self.published.id, self.draft.id, 'not-a-uuid'], 'validate')
        self.assertEqual([r.success for r in result.results], [True, False, False])
        self.assertEqual(result.results[1].error, 'Voucher is draft')
        self.assertEqual(result.results[2].error, 'Voucher not found')

    def test_unexpected_error_is_reported_per_item(self):
        with mock.patch('apps.vouchers.services.expire_voucher', side_effect=[RuntimeError('boom'), None]):
            result = services.batch_process([self.published.id, self.draft.id], 'expire')
        self.assertEqual(result.failed_count, 1)
        self.assertEqual(result.results[0].error, 'boom')
        self.assertTrue(result.results[1].success)

    def test_unknown_operation(self):
        with self.assertRaises(ValidationError):
            services.batch_process([self.published.id], 'delete')

    def test_empty_batch(self):
        result = services.batch_process([], 'expire')
        self.assertEqual(result.processed_count, 0)
        self.assertEqual(result.results, [])
