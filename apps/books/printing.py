"""
PDF rendering for voucher books (reportlab + qrcode).

Layout on A5: a cover page, voucher pages holding VOUCHER_BOOK_VOUCHERS_PER_PAGE
coupons each (QR code with the signed token, short code underneath), and a
back page.
"""
import calendar
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional

import qrcode
from django.conf import settings
from reportlab.lib.colors import black, white, HexColor
from reportlab.lib.pagesizes import A5
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from apps.vouchers.localization import resolve_text

BRAND_COLOR = HexColor('#111827')
MARGIN = 12 * mm


@dataclass
class PrintedVoucher:
    voucher: object
    qr_payload: str
    short_code: str
    business_name: Optional[str] = None


def _qr_image(payload: str) -> ImageReader:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=4,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return ImageReader(buffer)


def _wrap(c, text: str, font: str, size: int, max_width: float) -> List[str]:
    lines = []
    current = ''
    for word in (text or '').split():
        candidate = f"{current} {word}" if current else word
        if c.stringWidth(candidate, font, size) <= max_width:
            current = candidate
        else:
            if current:
                lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def _draw_cover(c, book, width, height):
    c.setFillColor(BRAND_COLOR)
    c.rect(0, 0, width, height, fill=1, stroke=0)
    c.setFillColor(white)

    y = height - 60 * mm
    c.setFont("Helvetica-Bold", 22)
    for line in _wrap(c, book.title, "Helvetica-Bold", 22, width - 2 * MARGIN):
        c.drawString(MARGIN, y, line)
        y -= 28

    c.setFont("Helvetica", 13)
    if book.month and book.year:
        c.drawString(MARGIN, y - 6, f"{calendar.month_name[book.month]} {book.year}")
        y -= 22
    if book.edition:
        c.drawString(MARGIN, y - 6, book.edition)
        y -= 22

    c.setFont("Helvetica", 10)
    for line in _wrap(c, book.description, "Helvetica", 10, width - 2 * MARGIN)[:8]:
        y -= 14
        c.drawString(MARGIN, y, line)


def _draw_voucher(c, item: PrintedVoucher, x, y, slot_width, slot_height, language):
    voucher = item.voucher
    c.setStrokeColor(black)
    c.setDash(4, 3)
    c.rect(x, y, slot_width, slot_height, fill=0, stroke=1)
    c.setDash()

    qr_size = min(slot_height - 16 * mm, 48 * mm)
    qr_x = x + slot_width - qr_size - 4 * mm
    qr_y = y + slot_height - qr_size - 4 * mm
    c.drawImage(_qr_image(item.qr_payload), qr_x, qr_y, width=qr_size, height=qr_size)

    c.setFillColor(black)
    c.setFont("Courier-Bold", 12)
    c.drawCentredString(qr_x + qr_size / 2, qr_y - 12, item.short_code)

    text_width = slot_width - qr_size - 12 * mm
    tx = x + 4 * mm
    ty = y + slot_height - 10 * mm

    c.setFont("Helvetica-Bold", 18)
    c.drawString(tx, ty, voucher.discount_display())
    ty -= 20

    c.setFont("Helvetica-Bold", 11)
    for line in _wrap(c, resolve_text(voucher.title, language), "Helvetica-Bold", 11, text_width)[:3]:
        c.drawString(tx, ty, line)
        ty -= 14

    c.setFont("Helvetica", 8)
    for line in _wrap(c, resolve_text(voucher.description, language), "Helvetica", 8, text_width)[:4]:
        c.drawString(tx, ty, line)
        ty -= 10

    c.setFont("Helvetica", 7)
    footer_y = y + 4 * mm
    if item.business_name:
        c.drawString(tx, footer_y + 10, item.business_name[:60])
    if voucher.valid_until:
        c.drawString(tx, footer_y, f"Valid until {voucher.valid_until.strftime('%d.%m.%Y')}")


def _draw_back(c, batch_code, width):
    c.setFillColor(BRAND_COLOR)
    c.rect(0, 0, width, 40 * mm, fill=1, stroke=0)
    c.setFillColor(white)
    c.setFont("Helvetica", 9)
    c.drawString(MARGIN, 24 * mm, "Scan the QR code or type the short code in the app to claim a voucher.")
    c.drawString(MARGIN, 16 * mm, f"Print run {batch_code}")


def render_book_pdf(book, items: List[PrintedVoucher], batch_code: str,
                    language: Optional[str] = None) -> bytes:
    """Renders the whole book and returns the PDF bytes"""
    per_page = max(1, settings.VOUCHER_BOOK_VOUCHERS_PER_PAGE)
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=A5)
    c.setTitle(book.title)
    c.setSubject(f"Voucher book {batch_code}")
    width, height = A5

    _draw_cover(c, book, width, height)
    c.showPage()

    slot_width = width - 2 * MARGIN
    slot_height = (height - 2 * MARGIN - (per_page - 1) * 6 * mm) / per_page
    for start in range(0, len(items), per_page):
        for index, item in enumerate(items[start:start + per_page]):
            y = height - MARGIN - (index + 1) * slot_height - index * 6 * mm
            _draw_voucher(c, item, MARGIN, y, slot_width, slot_height, language)
        c.setFont("Helvetica", 7)
        c.drawCentredString(width / 2, 6 * mm, str(start // per_page + 2))
        c.showPage()

    _draw_back(c, batch_code, width)
    c.showPage()
    c.save()
    return buffer.getvalue()
