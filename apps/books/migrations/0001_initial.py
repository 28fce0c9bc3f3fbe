import uuid

import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('vouchers', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='VoucherBook',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('title', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('edition', models.CharField(blank=True, max_length=80)),
                ('month', models.PositiveSmallIntegerField(blank=True, null=True, validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(12)])),
                ('year', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('status', models.CharField(choices=[('draft', 'Draft'), ('ready_for_print', 'Ready for print'), ('published', 'Published'), ('archived', 'Archived')], db_index=True, default='draft', max_length=20)),
                ('total_pages', models.PositiveIntegerField(default=24)),
                ('voucher_count', models.PositiveIntegerField(default=0)),
                ('cover_image_url', models.URLField(blank=True)),
                ('back_image_url', models.URLField(blank=True)),
                ('pdf_path', models.CharField(blank=True, max_length=500)),
                ('pdf_generated_at', models.DateTimeField(blank=True, null=True)),
                ('batch_code', models.CharField(blank=True, max_length=40)),
                ('created_by', models.UUIDField(blank=True, null=True)),
                ('published_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'ordering': ['-year', '-month', 'title'],
            },
        ),
        migrations.CreateModel(
            name='VoucherBookEntry',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('page_number', models.PositiveIntegerField(default=1)),
                ('position', models.PositiveSmallIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('book', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='entries', to='books.voucherbook')),
                ('voucher', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='book_entries', to='vouchers.voucher')),
            ],
            options={
                'ordering': ['page_number', 'position'],
                'constraints': [models.UniqueConstraint(fields=('book', 'voucher'), name='unique_book_voucher')],
            },
        ),
    ]
