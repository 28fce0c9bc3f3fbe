"""
Voucher book lifecycle: assembling vouchers into printable monthly books.

    draft -> ready_for_print -> published -> archived
      ^            |
      +------------+        (draft and ready_for_print can also be archived)
"""
import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from apps.businesses.directory import get_business_name
from apps.vouchers import store as voucher_store
from apps.vouchers.codes import generate_batch_code
from apps.vouchers.exceptions import BusinessRuleViolation, ResourceNotFound, ValidationError
from apps.vouchers.localization import localize
from apps.vouchers.models import VoucherCodeType, VoucherState
from apps.vouchers.tokens import GeneratedCode, TokenService, get_token_service
from .models import VoucherBook, VoucherBookEntry, VoucherBookStatus
from .printing import PrintedVoucher, render_book_pdf

logger = logging.getLogger(__name__)

TRANSITIONS = {
    VoucherBookStatus.DRAFT: [VoucherBookStatus.READY_FOR_PRINT, VoucherBookStatus.ARCHIVED],
    VoucherBookStatus.READY_FOR_PRINT: [VoucherBookStatus.PUBLISHED, VoucherBookStatus.DRAFT,
                                        VoucherBookStatus.ARCHIVED],
    VoucherBookStatus.PUBLISHED: [VoucherBookStatus.ARCHIVED],
    VoucherBookStatus.ARCHIVED: [],
}

# page 1 is the cover, the last page is the back cover
FIRST_VOUCHER_PAGE = 2


@dataclass
class TransitionCheck:
    allowed: bool
    reason: str = ''
    required_fields: List[str] = field(default_factory=list)


@dataclass
class VoucherForBook:
    voucher_id: str
    business_id: str
    business_name: Optional[str]
    title: object
    description: object
    terms: object
    discount: str
    valid_from: Optional[datetime]
    valid_until: Optional[datetime]


@dataclass
class BookPdf:
    book: VoucherBook
    content: bytes
    batch_code: str
    path: str
    missing_voucher_ids: List[str] = field(default_factory=list)


def validate_transition(current: str, target: str) -> TransitionCheck:
    allowed = [s.value for s in TRANSITIONS.get(current, [])]
    if target not in allowed:
        return TransitionCheck(
            allowed=False,
            reason=f"Cannot transition from {current} to {target}. Allowed transitions: {', '.join(allowed)}",
        )
    return TransitionCheck(allowed=True)


def validate_ready_for_publication(book) -> TransitionCheck:
    """Lists every missing or invalid field instead of stopping at the first"""
    missing = []
    if not book.title:
        missing.append('title')
    if not book.description:
        missing.append('description')
    if not book.month:
        missing.append('month')
    if not book.year:
        missing.append('year')
    if not book.total_pages or book.total_pages < 1:
        missing.append('total_pages')
    if not book.voucher_count or book.voucher_count < 1:
        missing.append('voucher_count')

    if missing:
        return TransitionCheck(
            allowed=False,
            reason='Book is missing required fields for publication',
            required_fields=missing,
        )
    return TransitionCheck(allowed=True)


def get_book(book_id) -> VoucherBook:
    try:
        book = VoucherBook.objects.filter(id=book_id, deleted_at__isnull=True).first()
    except (DjangoValidationError, ValueError):
        book = None
    if book is None:
        raise ResourceNotFound('Voucher book not found', detail=str(book_id))
    return book


def _check_period(month, year):
    if not month or not 1 <= int(month) <= 12:
        raise ValidationError('Month must be between 1 and 12', detail=str(month))
    if not year or int(year) < 2000:
        raise ValidationError('Invalid book year', detail=str(year))


def _require_editable(book: VoucherBook):
    if not book.is_editable:
        raise BusinessRuleViolation(f"Cannot modify a book that is {book.status}")


@transaction.atomic
def create_book(*, title: str, month: int, year: int, description: str = '', edition: str = '',
                total_pages: Optional[int] = None, cover_image_url: str = '', back_image_url: str = '',
                created_by=None) -> VoucherBook:
    title = (title or '').strip()
    if not title:
        raise ValidationError('Book title is required')
    _check_period(month, year)
    total_pages = settings.VOUCHER_BOOK_DEFAULT_PAGES if total_pages is None else total_pages
    if total_pages < 1:
        raise ValidationError('A book needs at least one page')

    if VoucherBook.objects.filter(title__iexact=title, year=year, month=month, deleted_at__isnull=True).exists():
        raise BusinessRuleViolation(f"A book titled '{title}' already exists for {year}-{int(month):02d}")

    book = VoucherBook.objects.create(
        title=title,
        description=description,
        edition=edition,
        month=month,
        year=year,
        total_pages=total_pages,
        cover_image_url=cover_image_url,
        back_image_url=back_image_url,
        created_by=created_by,
    )
    logger.info(f"Created voucher book {book.id} '{title}' for {year}-{int(month):02d}")
    return book


EDITABLE_FIELDS = ('title', 'description', 'edition', 'total_pages', 'cover_image_url', 'back_image_url')


def update_book(book_id, **changes) -> VoucherBook:
    """Edits descriptive fields while the book is still being assembled"""
    book = get_book(book_id)
    _require_editable(book)

    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError('Fields cannot be edited', detail=', '.join(sorted(unknown)))
    if 'title' in changes and not (changes['title'] or '').strip():
        raise ValidationError('Book title is required')
    if 'total_pages' in changes and (changes['total_pages'] or 0) < 1:
        raise ValidationError('A book needs at least one page')

    for name, value in changes.items():
        setattr(book, name, value)
    book.save(update_fields=list(changes) + ['updated_at'])
    return book


def _next_slot(book: VoucherBook):
    """First unoccupied (page, position), filling pages in order"""
    per_page = max(1, settings.VOUCHER_BOOK_VOUCHERS_PER_PAGE)
    occupied = set(book.entries.values_list('page_number', 'position'))
    for page_number in range(FIRST_VOUCHER_PAGE, book.total_pages):
        for position in range(per_page):
            if (page_number, position) not in occupied:
                return page_number, position
    raise BusinessRuleViolation('Book has no free voucher slots left')


@transaction.atomic
def add_voucher_to_book(book_id, voucher_id, page_number: Optional[int] = None,
                        position: Optional[int] = None) -> VoucherBookEntry:
    book = get_book(book_id)
    book = VoucherBook.objects.select_for_update().get(id=book.id)
    _require_editable(book)

    voucher = voucher_store.get_voucher(voucher_id)
    if voucher is None:
        raise ResourceNotFound('Voucher not found', detail=str(voucher_id))
    if voucher.state != VoucherState.PUBLISHED:
        raise BusinessRuleViolation(f"Only published vouchers can be added to a book, voucher is {voucher.state}")

    if page_number is None:
        page_number, position = _next_slot(book)

    try:
        with transaction.atomic():
            entry = VoucherBookEntry.objects.create(
                book=book, voucher=voucher, page_number=page_number, position=position or 0,
            )
    except IntegrityError:
        raise BusinessRuleViolation('Voucher is already in this book')

    VoucherBook.objects.filter(id=book.id).update(voucher_count=F('voucher_count') + 1, updated_at=timezone.now())
    logger.info(f"Voucher {voucher.id} added to book {book.id} (page {page_number})")
    return entry


@transaction.atomic
def remove_voucher_from_book(book_id, voucher_id) -> None:
    book = get_book(book_id)
    _require_editable(book)

    deleted, _ = VoucherBookEntry.objects.filter(book=book, voucher_id=voucher_id).delete()
    if not deleted:
        raise ResourceNotFound('Voucher is not in this book', detail=str(voucher_id))

    VoucherBook.objects.filter(id=book.id, voucher_count__gt=0).update(
        voucher_count=F('voucher_count') - 1, updated_at=timezone.now(),
    )
    logger.info(f"Voucher {voucher_id} removed from book {book.id}")


def update_book_status(book_id, status: str) -> VoucherBook:
    book = get_book(book_id)
    check = validate_transition(book.status, status)
    if not check.allowed:
        raise BusinessRuleViolation(check.reason)

    changes = {'status': status, 'updated_at': timezone.now()}
    if status == VoucherBookStatus.PUBLISHED:
        readiness = validate_ready_for_publication(book)
        if not readiness.allowed:
            raise BusinessRuleViolation(readiness.reason, detail=', '.join(readiness.required_fields))
        changes['published_at'] = timezone.now()

    if not VoucherBook.objects.filter(id=book.id, status=book.status).update(**changes):
        raise BusinessRuleViolation('Voucher book was modified concurrently, retry the operation')

    logger.info(f"Voucher book {book.id}: {book.status} -> {status}")
    book.refresh_from_db()
    return book


def publish_book(book_id) -> VoucherBook:
    return update_book_status(book_id, VoucherBookStatus.PUBLISHED)


def archive_book(book_id) -> VoucherBook:
    return update_book_status(book_id, VoucherBookStatus.ARCHIVED)


def delete_book(book_id) -> None:
    """Soft delete, only for drafts"""
    book = get_book(book_id)
    if book.status != VoucherBookStatus.DRAFT:
        raise BusinessRuleViolation(f"Only draft books can be deleted, book is {book.status}")
    VoucherBook.objects.filter(id=book.id).update(deleted_at=timezone.now())
    logger.info(f"Voucher book {book.id} deleted")


def _month_bounds(month: int, year: int):
    tz = timezone.get_current_timezone()
    last_day = calendar.monthrange(year, month)[1]
    start = timezone.make_aware(datetime(year, month, 1), tz)
    end = timezone.make_aware(datetime.combine(datetime(year, month, last_day), time.max), tz)
    return start, end


def get_vouchers_for_book(business_ids, month: int, year: int,
                          language: Optional[str] = None) -> List[VoucherForBook]:
    """
    Published vouchers of the given businesses that are valid at some point
    during the month. Business names are advisory and may be None.
    """
    _check_period(month, year)
    start, end = _month_bounds(int(month), int(year))

    names = {}
    result = []
    for voucher in voucher_store.find_published_vouchers_for_businesses(business_ids, now=start):
        if voucher.valid_from and voucher.valid_from > end:
            continue
        if voucher.business_id not in names:
            names[voucher.business_id] = get_business_name(voucher.business_id)
        shown = localize(voucher, language)
        result.append(VoucherForBook(
            voucher_id=str(voucher.id),
            business_id=str(voucher.business_id),
            business_name=names[voucher.business_id],
            title=shown.title,
            description=shown.description,
            terms=shown.terms,
            discount=voucher.discount_display(),
            valid_from=voucher.valid_from,
            valid_until=voucher.valid_until,
        ))

    logger.info(f"Found {len(result)} vouchers for {len(names)} businesses in {year}-{int(month):02d}")
    return result


def generate_book_pdf(book_id, language: Optional[str] = None,
                      token_service: Optional[TokenService] = None) -> BookPdf:
    """
    Signs one batch of tokens for the book's vouchers and renders the PDF.

    Vouchers whose token could not be signed are left out and reported in
    ``missing_voucher_ids``. A draft book moves to ready_for_print.
    """
    book = get_book(book_id)
    if book.status == VoucherBookStatus.ARCHIVED:
        raise BusinessRuleViolation('Archived books cannot be printed')

    entries = list(book.entries.select_related('voucher', 'voucher__business'))
    if not entries:
        raise BusinessRuleViolation('Book has no vouchers to print')

    service = token_service or get_token_service()
    batch_code = generate_batch_code(year=book.year, month=book.month, sequence_length=6)
    tokens = service.generate_batch_tokens([entry.voucher_id for entry in entries], batch_id=batch_code)
    missing = [str(entry.voucher_id) for entry in entries if str(entry.voucher_id) not in tokens]
    if missing:
        logger.warning(f"Book {book.id}: no token for vouchers {', '.join(missing)}")

    items = []
    names = {}
    stamp = timezone.now().isoformat()
    with transaction.atomic():
        for entry in entries:
            token = tokens.get(str(entry.voucher_id))
            if token is None:
                continue
            voucher_store.add_voucher_codes(entry.voucher_id, [
                GeneratedCode(VoucherCodeType.QR, token.qr_payload,
                              {'batch_id': batch_code, 'book_id': str(book.id), 'generated_at': stamp}),
                GeneratedCode(VoucherCodeType.SHORT, token.short_code,
                              {'batch_id': batch_code, 'book_id': str(book.id), 'generated_at': stamp}),
            ])
            business_id = entry.voucher.business_id
            if business_id not in names:
                names[business_id] = get_business_name(business_id)
            items.append(PrintedVoucher(
                voucher=entry.voucher,
                qr_payload=token.qr_payload,
                short_code=token.short_code,
                business_name=names[business_id],
            ))

    content = render_book_pdf(book, items, batch_code, language)
    path = default_storage.save(f"voucher_books/{book.id}/{batch_code}.pdf", ContentFile(content))

    VoucherBook.objects.filter(id=book.id).update(
        pdf_path=path, pdf_generated_at=timezone.now(), batch_code=batch_code, updated_at=timezone.now(),
    )
    if book.status == VoucherBookStatus.DRAFT:
        update_book_status(book.id, VoucherBookStatus.READY_FOR_PRINT)

    book.refresh_from_db()
    logger.info(f"Generated PDF for book {book.id}: {len(items)} vouchers, batch {batch_code}")
    return BookPdf(book=book, content=content, batch_code=batch_code, path=path, missing_voucher_ids=missing)
