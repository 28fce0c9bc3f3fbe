import copy
from typing import Optional

from django.conf import settings

TRANSLATED_FIELDS = ('title', 'description', 'terms')


def resolve_text(translations, language: Optional[str] = None) -> str:
    """Picks the requested language, then the default one, then anything"""
    if not translations:
        return ''
    if isinstance(translations, str):
        return translations
    language = language or settings.VOUCHER_DEFAULT_LANGUAGE
    for candidate in (language, language.split('-')[0], settings.VOUCHER_DEFAULT_LANGUAGE):
        if translations.get(candidate):
            return translations[candidate]
    return next((value for value in translations.values() if value), '')


def localize(voucher, language: Optional[str] = None):
    """
    Returns a shallow copy of the voucher with translated fields resolved to
    plain strings. The original instance is left untouched.
    """
    if voucher is None or not language:
        return voucher
    localized = copy.copy(voucher)
    for name in TRANSLATED_FIELDS:
        setattr(localized, name, resolve_text(getattr(voucher, name), language))
    localized.language = language
    return localized
