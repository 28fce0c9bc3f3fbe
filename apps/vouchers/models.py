import uuid

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from apps.businesses.models import Business, Category


class VoucherState(models.TextChoices):
    DRAFT = 'draft', 'Draft'
    PUBLISHED = 'published', 'Published'
    CLAIMED = 'claimed', 'Claimed'
    REDEEMED = 'redeemed', 'Redeemed'
    EXPIRED = 'expired', 'Expired'
    SUSPENDED = 'suspended', 'Suspended'


class DiscountType(models.TextChoices):
    PERCENTAGE = 'percentage', 'Percentage'
    FIXED = 'fixed', 'Fixed amount'


class VoucherCodeType(models.TextChoices):
    QR = 'qr', 'QR'
    SHORT = 'short', 'Short'
    STATIC = 'static', 'Static'


class ClaimStatus(models.TextChoices):
    CLAIMED = 'claimed', 'Claimed'
    REDEEMED = 'redeemed', 'Redeemed'
    EXPIRED = 'expired', 'Expired'


class ScanType(models.TextChoices):
    CUSTOMER = 'customer', 'Customer'
    BUSINESS = 'business', 'Business'


class ScanSource(models.TextChoices):
    CAMERA = 'camera', 'Camera'
    GALLERY = 'gallery', 'Gallery'
    LINK = 'link', 'Link'
    SHARE = 'share', 'Share'


class Voucher(models.Model):
    """Discount or offer published by a business"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    business = models.ForeignKey(Business, on_delete=models.PROTECT, related_name='vouchers')
    category = models.ForeignKey(Category, on_delete=models.SET_NULL, null=True, blank=True, related_name='vouchers')
    state = models.CharField(max_length=16, choices=VoucherState.choices, default=VoucherState.DRAFT, db_index=True)

    # translations keyed by language tag: {"en": "...", "es": "..."}
    title = models.JSONField(default=dict, blank=True)
    description = models.JSONField(default=dict, blank=True)
    terms = models.JSONField(default=dict, blank=True)

    discount_type = models.CharField(max_length=16, choices=DiscountType.choices, default=DiscountType.PERCENTAGE)
    discount_value = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default='USD')

    valid_from = models.DateTimeField(null=True, blank=True)
    valid_until = models.DateTimeField(null=True, blank=True, db_index=True)

    max_redemptions = models.PositiveIntegerField(null=True, blank=True, help_text="Unlimited when empty")
    max_redemptions_per_user = models.PositiveIntegerField(default=1)
    redemptions_count = models.PositiveIntegerField(default=0)
    scan_count = models.PositiveIntegerField(default=0)
    claim_count = models.PositiveIntegerField(default=0)

    qr_code = models.CharField(max_length=1024, unique=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [models.Index(fields=['business', 'state'], name='voucher_business_state_idx')]
        constraints = [
            models.CheckConstraint(
                condition=Q(max_redemptions__isnull=True) | Q(redemptions_count__lte=F('max_redemptions')),
                name='voucher_redemptions_within_limit',
            ),
        ]

    def __str__(self):
        return f"{self.display_title()} ({self.state})"

    def display_title(self, language: str = 'en') -> str:
        titles = self.title or {}
        return titles.get(language) or next(iter(titles.values()), '') or str(self.id)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_expired(self, now=None) -> bool:
        now = now or timezone.now()
        return bool(self.valid_until and self.valid_until < now)

    def is_not_yet_valid(self, now=None) -> bool:
        now = now or timezone.now()
        return bool(self.valid_from and self.valid_from > now)

    def has_redemption_capacity(self) -> bool:
        if self.max_redemptions is None:
            return True
        return self.redemptions_count < self.max_redemptions

    def discount_display(self) -> str:
        value = self.discount_value.normalize() if self.discount_value is not None else 0
        if self.discount_type == DiscountType.PERCENTAGE:
            return f"{value:f}%"
        return f"{value:f} {self.currency}"


class VoucherCode(models.Model):
    """Machine readable code bound to a voucher"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    voucher = models.ForeignKey(Voucher, on_delete=models.CASCADE, related_name='codes')
    code = models.CharField(max_length=1024, unique=True)
    type = models.CharField(max_length=8, choices=VoucherCodeType.choices)
    is_active = models.BooleanField(default=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=['type', 'is_active'], name='vouchercode_type_active_idx')]

    def __str__(self):
        return f"{self.type}:{self.code[:24]}"


class CustomerVoucher(models.Model):
    """Voucher added to a customer's wallet"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer_id = models.UUIDField(db_index=True)
    voucher = models.ForeignKey(Voucher, on_delete=models.PROTECT, related_name='claims')
    status = models.CharField(max_length=16, choices=ClaimStatus.choices, default=ClaimStatus.CLAIMED)
    claimed_at = models.DateTimeField(default=timezone.now)
    redeemed_at = models.DateTimeField(null=True, blank=True)
    redemption_code = models.CharField(max_length=1024, blank=True)

    class Meta:
        ordering = ['-claimed_at']
        constraints = [
            models.UniqueConstraint(fields=['customer_id', 'voucher'], name='unique_customer_voucher_claim'),
        ]

    def __str__(self):
        return f"{self.customer_id} / {self.voucher_id} ({self.status})"


class VoucherScan(models.Model):
    """Immutable scan/redemption analytics event"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    voucher = models.ForeignKey(Voucher, on_delete=models.PROTECT, related_name='scans')
    user_id = models.UUIDField(null=True, blank=True)
    business_id = models.UUIDField(null=True, blank=True)
    scan_type = models.CharField(max_length=16, choices=ScanType.choices)
    scan_source = models.CharField(max_length=16, choices=ScanSource.choices)
    device_info = models.JSONField(default=dict, blank=True)
    location = models.JSONField(default=dict, blank=True)
    user_agent = models.CharField(max_length=512, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    scanned_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-scanned_at']
        indexes = [models.Index(fields=['voucher', 'scanned_at'], name='voucherscan_voucher_time_idx')]

    def __str__(self):
        return f"{self.scan_type}/{self.scan_source} {self.voucher_id}"
