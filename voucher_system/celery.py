"""
Celery application for scheduled voucher work (expiry sweeps)
"""

import os

from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'voucher_system.settings')

app = Celery('voucher_system')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
