# Part of Plinth, see License file for full copyright and licensing details.
"""
Number formatting.

The helpers take the separators as arguments, or a babel ``locale``
(``'fr_FR'``) to use the ones of the language. Values which are not
numbers are given back untouched.
"""
import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import babel.numbers

__all__ = [
    'number_to_currency',
    'number_to_human',
    'number_to_human_size',
    'number_to_percentage',
    'number_to_phone',
    'number_with_delimiter',
    'number_with_precision',
]

STORAGE_UNITS = ['Bytes', 'KB', 'MB', 'GB', 'TB', 'PB', 'EB']
DECIMAL_UNITS = {0: '', 3: 'Thousand', 6: 'Million', 9: 'Billion', 12: 'Trillion', 15: 'Quadrillion'}


def _to_decimal(number):
    if isinstance(number, bool) or number is None:
        return None
    if isinstance(number, float):
        return Decimal(repr(number))
    try:
        return Decimal(str(number).strip())
    except InvalidOperation:
        return None


def _separators(locale, delimiter, separator):
    if locale:
        delimiter = babel.numbers.get_group_symbol(locale) if delimiter is None else delimiter
        separator = babel.numbers.get_decimal_symbol(locale) if separator is None else separator
    return (',' if delimiter is None else delimiter), ('.' if separator is None else separator)


def _delimit(digits, delimiter):
    return re.sub(r'(\d)(?=(\d{3})+$)', lambda m: m.group(1) + delimiter, digits)


def _format(value, decimals, delimiter, separator, strip_insignificant_zeros=False):
    text = f'{value:.{max(decimals, 0)}f}'
    negative = text.startswith('-')
    integer, _, fraction = text.lstrip('-').partition('.')
    if strip_insignificant_zeros:
        fraction = fraction.rstrip('0')
    result = _delimit(integer, delimiter)
    if fraction:
        result += separator + fraction
    return ('-' if negative and value != 0 else '') + result


def _round(value, precision, significant):
    """ ``value`` rounded and the count of decimals to show. """
    if significant and precision > 0:
        digits = 1 if value == 0 else int(math.floor(math.log10(abs(value)))) + 1
        decimals = precision - digits
    else:
        decimals = precision
    quantum = Decimal(1).scaleb(-decimals)
    rounded = value.quantize(quantum, rounding=ROUND_HALF_UP) if decimals >= 0 else \
        (value / quantum).quantize(Decimal(1), rounding=ROUND_HALF_UP) * quantum
    return rounded, max(decimals, 0)


def number_with_delimiter(number, delimiter=None, separator=None, locale=None):
    """ ``number_with_delimiter(12345678.05)`` -> ``'12,345,678.05'`` """
    value = _to_decimal(number)
    if value is None:
        return number
    delimiter, separator = _separators(locale, delimiter, separator)
    integer, _, fraction = str(number).strip().lstrip('-').partition('.')
    result = _delimit(integer, delimiter)
    if fraction:
        result += separator + fraction
    return ('-' if value < 0 else '') + result


def number_with_precision(number, precision=3, significant=False, strip_insignificant_zeros=False,
                          delimiter='', separator=None, locale=None):
    """
    ``number_with_precision(111.2345, precision=2)`` -> ``'111.23'``

    :param significant: ``precision`` counts the significant digits,
        ``number_with_precision(111.2345, precision=2, significant=True)``
        -> ``'110'``
    """
    value = _to_decimal(number)
    if value is None:
        return number
    delimiter, separator = _separators(locale, delimiter, separator)
    rounded, decimals = _round(value, precision, significant)
    return _format(rounded, decimals, delimiter, separator, strip_insignificant_zeros)


def number_to_currency(number, unit='$', precision=2, format='%u%n', negative_format=None,
                       delimiter=None, separator=None, locale=None, currency=None, strip_insignificant_zeros=False):
    """
    ``number_to_currency(1234567.891)`` -> ``'$1,234,567.89'``

    With ``locale`` and ``currency`` the babel pattern of the locale is
    used: ``number_to_currency(1234.5, locale='fr_FR', currency='EUR')``
    -> ``'1 234,50 €'``.
    """
    value = _to_decimal(number)
    if value is None:
        return number
    if locale and currency:
        return babel.numbers.format_currency(value, currency, locale=locale)
    delimiter, separator = _separators(locale, delimiter, separator)
    if negative_format is None:
        negative_format = '-' + format
    rounded, decimals = _round(abs(value), precision, False)
    formatted = _format(rounded, decimals, delimiter, separator, strip_insignificant_zeros)
    pattern = negative_format if value < 0 and rounded != 0 else format
    return pattern.replace('%n', formatted).replace('%u', unit)


def number_to_percentage(number, precision=3, format='%n%', significant=False,
                         strip_insignificant_zeros=False, delimiter='', separator=None, locale=None):
    """ ``number_to_percentage(100)`` -> ``'100.000%'`` """
    formatted = number_with_precision(number, precision, significant, strip_insignificant_zeros,
                                      delimiter, separator, locale)
    if formatted is number:
        return number
    return format.replace('%n', formatted)


def number_to_human_size(number, precision=3, significant=True, strip_insignificant_zeros=True,
                         delimiter='', separator=None, locale=None):
    """ ``number_to_human_size(1234)`` -> ``'1.21 KB'``, base 1024. """
    value = _to_decimal(number)
    if value is None:
        return number
    if value < 1024:
        count = int(value)
        return f"{count} {'Byte' if count == 1 else 'Bytes'}"
    exponent = min(int(math.log(value, 1024)), len(STORAGE_UNITS) - 1)
    human = value / (Decimal(1024) ** exponent)
    formatted = number_with_precision(human, precision, significant, strip_insignificant_zeros,
                                      delimiter, separator, locale)
    return f'{formatted} {STORAGE_UNITS[exponent]}'


def number_to_human(number, precision=3, significant=True, strip_insignificant_zeros=True,
                    delimiter='', separator=None, units=None, locale=None):
    """
    ``number_to_human(1234567)`` -> ``'1.23 Million'``

    :param units: ``{exponent: unit}`` replacing the default units
        (``{3: 'k', 6: 'M'}``)
    """
    value = _to_decimal(number)
    if value is None:
        return number
    units = DECIMAL_UNITS if units is None else {0: '', **units}
    rounded, _ = _round(value, precision, significant)
    exponent = 0 if rounded == 0 else int(math.floor(math.log10(abs(rounded))))
    exponent = max((e for e in units if e <= max(exponent, 0)), default=0)
    human = value / (Decimal(10) ** exponent)
    formatted = number_with_precision(human, precision, significant, strip_insignificant_zeros,
                                      delimiter, separator, locale)
    unit = units.get(exponent, '')
    return f'{formatted} {unit}'.strip()


def number_to_phone(number, area_code=False, delimiter='-', extension=None, country_code=None):
    """
    ``number_to_phone(5551234)`` -> ``'555-1234'``,
    ``number_to_phone(1235551234, area_code=True)`` -> ``'(123) 555-1234'``
    """
    if number is None:
        return None
    digits = re.sub(r'\D', '', str(number))
    if not digits:
        return number
    if area_code:
        formatted = re.sub(r'(\d{1,3})(\d{3})(\d{4}$)', r'(\1) \2' + delimiter + r'\3', digits)
    else:
        formatted = re.sub(r'(\d{0,3})(\d{3})(\d{4})$', r'\1' + delimiter + r'\2' + delimiter + r'\3', digits)
        if delimiter and formatted.startswith(delimiter):
            formatted = formatted[len(delimiter):]
    if country_code:
        formatted = f'+{country_code}' + ('' if area_code else delimiter) + formatted
    if extension:
        formatted += f' x {extension}'
    return formatted
