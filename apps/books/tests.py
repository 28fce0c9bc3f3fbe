import shutil
import tempfile
from datetime import datetime, timezone as dt_timezone
from unittest import mock

from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings

from apps.books import services
from apps.books.models import VoucherBook, VoucherBookEntry, VoucherBookStatus
from apps.vouchers import services as voucher_services
from apps.vouchers.codes import validate_batch_code
from apps.vouchers.exceptions import BusinessRuleViolation, ResourceNotFound, ValidationError
from apps.vouchers.keys import EphemeralKeyProvider
from apps.vouchers.models import Voucher, VoucherCode
from apps.vouchers.tests.helpers import make_business, make_voucher
from apps.vouchers.tokens import TokenService


class BookTransitionTestCase(SimpleTestCase):
    def test_transition_table(self):
        allowed = {
            ('draft', 'ready_for_print'), ('draft', 'archived'),
            ('ready_for_print', 'published'), ('ready_for_print', 'draft'), ('ready_for_print', 'archived'),
            ('published', 'archived'),
        }
        for current in VoucherBookStatus.values:
            for target in VoucherBookStatus.values:
                with self.subTest(current=current, target=target):
                    check = services.validate_transition(current, target)
                    self.assertEqual(check.allowed, (current, target) in allowed)

    def test_rejection_lists_allowed_targets(self):
        check = services.validate_transition('published', 'draft')
        self.assertEqual(check.reason, 'Cannot transition from published to draft. Allowed transitions: archived')

    def test_readiness_reports_every_missing_field(self):
        book = VoucherBook(title='Summer deals', month=6, year=2030, voucher_count=0)
        check = services.validate_ready_for_publication(book)
        self.assertFalse(check.allowed)
        self.assertEqual(check.required_fields, ['description', 'voucher_count'])

        book.description = 'Best offers in town'
        book.voucher_count = 4
        self.assertTrue(services.validate_ready_for_publication(book).allowed)


class BookAssemblyTestCase(TestCase):
    def setUp(self):
        self.business = make_business()
        self.vouchers = [make_voucher(self.business, publish=True) for _ in range(3)]
        self.book = services.create_book(title='June deals', month=6, year=2030)

    def test_create_defaults(self):
        self.assertEqual(self.book.status, VoucherBookStatus.DRAFT)
        self.assertEqual(self.book.total_pages, 24)
        self.assertEqual(self.book.voucher_count, 0)

    def test_create_validation(self):
        with self.assertRaises(BusinessRuleViolation):
            services.create_book(title='june DEALS', month=6, year=2030)
        with self.assertRaises(ValidationError):
            services.create_book(title='Other', month=13, year=2030)
        with self.assertRaises(ValidationError):
            services.create_book(title='  ', month=6, year=2030)
        # same title in another month is fine
        services.create_book(title='June deals', month=7, year=2030)

    def test_add_and_remove(self):
        first = services.add_voucher_to_book(self.book.id, self.vouchers[0].id)
        second = services.add_voucher_to_book(self.book.id, self.vouchers[1].id)
        third = services.add_voucher_to_book(self.book.id, self.vouchers[2].id)
        self.assertEqual([(e.page_number, e.position) for e in (first, second, third)], [(2, 0), (2, 1), (3, 0)])
        self.assertEqual(services.get_book(self.book.id).voucher_count, 3)

        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.add_voucher_to_book(self.book.id, self.vouchers[0].id)
        self.assertEqual(ctx.exception.reason, 'Voucher is already in this book')

        services.remove_voucher_from_book(self.book.id, self.vouchers[1].id)
        self.assertEqual(services.get_book(self.book.id).voucher_count, 2)
        with self.assertRaises(ResourceNotFound):
            services.remove_voucher_from_book(self.book.id, self.vouchers[1].id)

    def test_removed_slot_is_reused(self):
        services.add_voucher_to_book(self.book.id, self.vouchers[0].id)
        kept = services.add_voucher_to_book(self.book.id, self.vouchers[1].id)
        services.remove_voucher_from_book(self.book.id, self.vouchers[0].id)

        added = services.add_voucher_to_book(self.book.id, self.vouchers[2].id)

        self.assertEqual((added.page_number, added.position), (2, 0))
        self.assertNotEqual((added.page_number, added.position), (kept.page_number, kept.position))
        slots = list(VoucherBookEntry.objects.filter(book=self.book).values_list('page_number', 'position'))
        self.assertEqual(len(slots), len(set(slots)))

    def test_only_published_vouchers(self):
        draft = make_voucher(self.business)
        with self.assertRaises(BusinessRuleViolation):
            services.add_voucher_to_book(self.book.id, draft.id)

    def test_book_runs_out_of_slots(self):
        small = services.create_book(title='Pocket edition', month=6, year=2030, total_pages=3)
        services.add_voucher_to_book(small.id, self.vouchers[0].id)
        services.add_voucher_to_book(small.id, self.vouchers[1].id)
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.add_voucher_to_book(small.id, self.vouchers[2].id)
        self.assertEqual(ctx.exception.reason, 'Book has no free voucher slots left')

    def test_publish_flow(self):
        services.add_voucher_to_book(self.book.id, self.vouchers[0].id)

        with self.assertRaises(BusinessRuleViolation):
            services.publish_book(self.book.id)

        services.update_book_status(self.book.id, VoucherBookStatus.READY_FOR_PRINT)
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.publish_book(self.book.id)
        self.assertEqual(ctx.exception.detail, 'description')

        services.update_book(self.book.id, description='Thirty offers from local shops')
        book = services.publish_book(self.book.id)
        self.assertEqual(book.status, VoucherBookStatus.PUBLISHED)
        self.assertIsNotNone(book.published_at)

        with self.assertRaises(BusinessRuleViolation):
            services.update_book(self.book.id, title='Renamed')
        with self.assertRaises(BusinessRuleViolation):
            services.add_voucher_to_book(self.book.id, self.vouchers[1].id)

        self.assertEqual(services.archive_book(self.book.id).status, VoucherBookStatus.ARCHIVED)

    def test_update_rejects_unknown_fields(self):
        with self.assertRaises(ValidationError):
            services.update_book(self.book.id, status='published')

    def test_delete(self):
        services.delete_book(self.book.id)
        with self.assertRaises(ResourceNotFound):
            services.get_book(self.book.id)

        other = services.create_book(title='July deals', month=7, year=2030)
        services.archive_book(other.id)
        with self.assertRaises(BusinessRuleViolation):
            services.delete_book(other.id)


class VouchersForBookTestCase(TestCase):
    def setUp(self):
        self.business = make_business()
        self.other = make_business('Tea House')

    def _window(self, voucher, valid_from=None, valid_until=None):
        Voucher.objects.filter(id=voucher.id).update(valid_from=valid_from, valid_until=valid_until)

    def test_month_overlap(self):
        open_ended = make_voucher(self.business, publish=True)
        ended_before = make_voucher(self.business, publish=True)
        self._window(ended_before, valid_until=datetime(2030, 5, 15, tzinfo=dt_timezone.utc))
        starts_after = make_voucher(self.business, publish=True)
        self._window(starts_after, valid_from=datetime(2030, 7, 2, tzinfo=dt_timezone.utc))
        starts_mid_month = make_voucher(self.business, publish=True)
        self._window(starts_mid_month, valid_from=datetime(2030, 6, 20, tzinfo=dt_timezone.utc))
        make_voucher(self.business)
        make_voucher(self.other, publish=True)

        found = services.get_vouchers_for_book([self.business.id], 6, 2030, language='es')

        self.assertEqual({v.voucher_id for v in found}, {str(open_ended.id), str(starts_mid_month.id)})
        self.assertTrue(all(v.business_name == 'Coffee Fox' for v in found))
        self.assertEqual(found[0].title, '20% de descuento en café')
        self.assertEqual(found[0].discount, '20%')

    def test_business_name_is_advisory(self):
        make_voucher(self.business, publish=True)
        with mock.patch('apps.businesses.directory.get_business', side_effect=DatabaseError('down')):
            found = services.get_vouchers_for_book([self.business.id], 6, 2030)
        self.assertEqual(len(found), 1)
        self.assertIsNone(found[0].business_name)

    def test_bad_period(self):
        with self.assertRaises(ValidationError):
            services.get_vouchers_for_book([self.business.id], 0, 2030)


class BookPdfTestCase(TestCase):
    def setUp(self):
        self.media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_root, ignore_errors=True)
        self.token_service = TokenService(key_provider=EphemeralKeyProvider())

        business = make_business()
        self.vouchers = [make_voucher(business, publish=True) for _ in range(3)]
        self.book = services.create_book(title='June deals', month=6, year=2030, description='Local offers')
        for voucher in self.vouchers:
            services.add_voucher_to_book(self.book.id, voucher.id)

    def test_generate_pdf(self):
        with override_settings(MEDIA_ROOT=self.media_root):
            pdf = services.generate_book_pdf(self.book.id, language='es', token_service=self.token_service)

        self.assertTrue(pdf.content.startswith(b'%PDF'))
        self.assertTrue(validate_batch_code(pdf.batch_code))
        self.assertIn('-2030-06-', pdf.batch_code)
        self.assertEqual(pdf.missing_voucher_ids, [])

        self.assertEqual(pdf.book.status, VoucherBookStatus.READY_FOR_PRINT)
        self.assertEqual(pdf.book.batch_code, pdf.batch_code)
        self.assertTrue(pdf.book.pdf_path.endswith('.pdf'))

        printed = VoucherCode.objects.filter(metadata__batch_id=pdf.batch_code)
        self.assertEqual(printed.count(), 6)

    def test_printed_codes_resolve(self):
        with override_settings(MEDIA_ROOT=self.media_root):
            services.generate_book_pdf(self.book.id, token_service=self.token_service)

        for voucher in self.vouchers:
            printed = VoucherCode.objects.filter(voucher=voucher, metadata__book_id=str(self.book.id))
            for code in printed:
                with self.subTest(type=code.type):
                    self.assertEqual(voucher_services.get_voucher_by_code(code.code).id, voucher.id)
            qr = printed.get(type='qr')
            self.assertTrue(self.token_service.verify_token(qr.code).valid)

    def test_unsigned_vouchers_are_reported(self):
        real = self.token_service.generate_batch_tokens

        def drop_first(requests, batch_id=None):
            results = real(requests, batch_id=batch_id)
            results.pop(str(self.vouchers[0].id), None)
            return results

        with mock.patch.object(self.token_service, 'generate_batch_tokens', side_effect=drop_first):
            with override_settings(MEDIA_ROOT=self.media_root):
                pdf = services.generate_book_pdf(self.book.id, token_service=self.token_service)

        self.assertEqual(pdf.missing_voucher_ids, [str(self.vouchers[0].id)])
        self.assertFalse(VoucherCode.objects.filter(voucher=self.vouchers[0],
                                                    metadata__batch_id=pdf.batch_code).exists())

    def test_archived_book_cannot_be_printed(self):
        services.archive_book(self.book.id)
        with self.assertRaises(BusinessRuleViolation) as ctx:
            services.generate_book_pdf(self.book.id, token_service=self.token_service)
        self.assertEqual(ctx.exception.reason, 'Archived books cannot be printed')

    def test_empty_book(self):
        empty = services.create_book(title='Empty', month=6, year=2030)
        with self.assertRaises(BusinessRuleViolation):
            services.generate_book_pdf(empty.id, token_service=self.token_service)
