import uuid

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from apps.vouchers.models import Voucher


class VoucherBookStatus(models.TextChoices):
    DRAFT = 'draft', 'Draft'
    READY_FOR_PRINT = 'ready_for_print', 'Ready for print'
    PUBLISHED = 'published', 'Published'
    ARCHIVED = 'archived', 'Archived'


class VoucherBook(models.Model):
    """Printable monthly bundle of vouchers"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    edition = models.CharField(max_length=80, blank=True)
    month = models.PositiveSmallIntegerField(null=True, blank=True,
                                             validators=[MinValueValidator(1), MaxValueValidator(12)])
    year = models.PositiveSmallIntegerField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=VoucherBookStatus.choices,
                              default=VoucherBookStatus.DRAFT, db_index=True)
    total_pages = models.PositiveIntegerField(default=24)
    voucher_count = models.PositiveIntegerField(default=0)

    cover_image_url = models.URLField(blank=True)
    back_image_url = models.URLField(blank=True)
    pdf_path = models.CharField(max_length=500, blank=True)
    pdf_generated_at = models.DateTimeField(null=True, blank=True)
    batch_code = models.CharField(max_length=40, blank=True)

    created_by = models.UUIDField(null=True, blank=True)
    published_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-year', '-month', 'title']

    def __str__(self):
        if self.month and self.year:
            return f"{self.title} ({self.year}-{self.month:02d})"
        return self.title

    @property
    def is_editable(self) -> bool:
        return self.status in (VoucherBookStatus.DRAFT, VoucherBookStatus.READY_FOR_PRINT)


class VoucherBookEntry(models.Model):
    """Voucher placed on a page of a book"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    book = models.ForeignKey(VoucherBook, on_delete=models.CASCADE, related_name='entries')
    voucher = models.ForeignKey(Voucher, on_delete=models.PROTECT, related_name='book_entries')
    page_number = models.PositiveIntegerField(default=1)
    position = models.PositiveSmallIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['page_number', 'position']
        constraints = [
            models.UniqueConstraint(fields=['book', 'voucher'], name='unique_book_voucher'),
        ]

    def __str__(self):
        return f"{self.book_id} p{self.page_number}: {self.voucher_id}"
