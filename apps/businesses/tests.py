import uuid
from unittest import mock

from django.db import DatabaseError
from django.test import TestCase

from apps.businesses import directory
from apps.businesses.models import Business, Category
from apps.vouchers.exceptions import ResourceNotFound


class BusinessModelTestCase(TestCase):
    def test_slug_is_unique(self):
        first = Business.objects.create(name='Coffee Fox')
        second = Business.objects.create(name='Coffee Fox')
        self.assertEqual(first.slug, 'coffee-fox')
        self.assertEqual(second.slug, 'coffee-fox-2')

    def test_category_slug(self):
        self.assertEqual(Category.objects.create(name='Food & Drink').slug, 'food-drink')


class DirectoryTestCase(TestCase):
    def setUp(self):
        self.owner = uuid.uuid4()
        self.business = Business.objects.create(name='Coffee Fox', owner_id=self.owner)

    def test_get_business(self):
        self.assertEqual(directory.get_business(self.business.id), self.business)
        self.assertEqual(directory.get_business(str(self.business.id)), self.business)

    def test_inactive_or_unknown_business(self):
        closed = Business.objects.create(name='Closed Bakery', is_active=False)
        for business_id in [closed.id, uuid.uuid4(), 'not-a-uuid']:
            with self.subTest(business_id=business_id):
                with self.assertRaises(ResourceNotFound):
                    directory.get_business(business_id)
                self.assertFalse(directory.business_exists(business_id))

    def test_category_exists(self):
        category = Category.objects.create(name='Coffee')
        self.assertTrue(directory.category_exists(category.id))
        self.assertFalse(directory.category_exists(uuid.uuid4()))
        self.assertFalse(directory.category_exists('garbage'))

    def test_is_business_owner(self):
        self.assertTrue(directory.is_business_owner(self.business.id, self.owner))
        self.assertFalse(directory.is_business_owner(self.business.id, uuid.uuid4()))
        self.assertFalse(directory.is_business_owner(self.business.id, 'nobody'))

    def test_business_name(self):
        self.assertEqual(directory.get_business_name(self.business.id), 'Coffee Fox')
        self.assertIsNone(directory.get_business_name(uuid.uuid4()))

    def test_business_name_lookup_failure_is_unknown(self):
        with mock.patch('apps.businesses.directory.get_business', side_effect=DatabaseError('down')):
            self.assertIsNone(directory.get_business_name(self.business.id))
