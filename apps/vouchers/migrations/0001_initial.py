import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('businesses', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Voucher',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('state', models.CharField(choices=[('draft', 'Draft'), ('published', 'Published'), ('claimed', 'Claimed'), ('redeemed', 'Redeemed'), ('expired', 'Expired'), ('suspended', 'Suspended')], db_index=True, default='draft', max_length=16)),
                ('title', models.JSONField(blank=True, default=dict)),
                ('description', models.JSONField(blank=True, default=dict)),
                ('terms', models.JSONField(blank=True, default=dict)),
                ('discount_type', models.CharField(choices=[('percentage', 'Percentage'), ('fixed', 'Fixed amount')], default='percentage', max_length=16)),
                ('discount_value', models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ('currency', models.CharField(default='USD', max_length=3)),
                ('valid_from', models.DateTimeField(blank=True, null=True)),
                ('valid_until', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('max_redemptions', models.PositiveIntegerField(blank=True, help_text='Unlimited when empty', null=True)),
                ('max_redemptions_per_user', models.PositiveIntegerField(default=1)),
                ('redemptions_count', models.PositiveIntegerField(default=0)),
                ('scan_count', models.PositiveIntegerField(default=0)),
                ('claim_count', models.PositiveIntegerField(default=0)),
                ('qr_code', models.CharField(max_length=1024, unique=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('business', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='vouchers', to='businesses.business')),
                ('category', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='vouchers', to='businesses.category')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['business', 'state'], name='voucher_business_state_idx')],
                'constraints': [models.CheckConstraint(condition=models.Q(('max_redemptions__isnull', True), ('redemptions_count__lte', models.F('max_redemptions')), _connector='OR'), name='voucher_redemptions_within_limit')],
            },
        ),
        migrations.CreateModel(
            name='VoucherCode',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(max_length=1024, unique=True)),
                ('type', models.CharField(choices=[('qr', 'QR'), ('short', 'Short'), ('static', 'Static')], max_length=8)),
                ('is_active', models.BooleanField(default=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='codes', to='vouchers.voucher')),
            ],
            options={
                'indexes': [models.Index(fields=['type', 'is_active'], name='vouchercode_type_active_idx')],
            },
        ),
        migrations.CreateModel(
            name='CustomerVoucher',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('customer_id', models.UUIDField(db_index=True)),
                ('status', models.CharField(choices=[('claimed', 'Claimed'), ('redeemed', 'Redeemed'), ('expired', 'Expired')], default='claimed', max_length=16)),
                ('claimed_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('redeemed_at', models.DateTimeField(blank=True, null=True)),
                ('redemption_code', models.CharField(blank=True, max_length=1024)),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='claims', to='vouchers.voucher')),
            ],
            options={
                'ordering': ['-claimed_at'],
                'constraints': [models.UniqueConstraint(fields=('customer_id', 'voucher'), name='unique_customer_voucher_claim')],
            },
        ),
        migrations.CreateModel(
            name='VoucherScan',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('user_id', models.UUIDField(blank=True, null=True)),
                ('business_id', models.UUIDField(blank=True, null=True)),
                ('scan_type', models.CharField(choices=[('customer', 'Customer'), ('business', 'Business')], max_length=16)),
                ('scan_source', models.CharField(choices=[('camera', 'Camera'), ('gallery', 'Gallery'), ('link', 'Link'), ('share', 'Share')], max_length=16)),
                ('device_info', models.JSONField(blank=True, default=dict)),
                ('location', models.JSONField(blank=True, default=dict)),
                ('user_agent', models.CharField(blank=True, max_length=512)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('scanned_at', models.DateTimeField(auto_now_add=True)),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='scans', to='vouchers.voucher')),
            ],
            options={
                'ordering': ['-scanned_at'],
                'indexes': [models.Index(fields=['voucher', 'scanned_at'], name='voucherscan_voucher_time_idx')],
            },
        ),
    ]
