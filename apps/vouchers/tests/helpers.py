import uuid

from apps.businesses.models import Business
from apps.vouchers import services
from apps.vouchers.models import DiscountType, Voucher


def make_business(name='Coffee Fox', **kwargs):
    kwargs.setdefault('owner_id', uuid.uuid4())
    return Business.objects.create(name=name, **kwargs)


def make_voucher(business, publish=False, **overrides):
    params = {
        'business_id': business.id,
        'title': {'en': '20% off any coffee', 'es': '20% de descuento en café'},
        'description': {'en': 'Valid at the counter', 'es': 'Válido en caja'},
        'discount_type': DiscountType.PERCENTAGE,
        'discount_value': 20,
    }
    params.update(overrides)
    voucher = services.create_voucher(**params)
    if publish:
        services.publish_voucher(voucher.id)
    return Voucher.objects.get(id=voucher.id)
