# Part of Plinth, see License file for full copyright and licensing details.
from datetime import date, datetime, timezone

from .tag import content_tag

__all__ = [
    'distance_of_time_in_words',
    'time_ago_in_words',
    'time_tag',
]

MINUTES_IN_YEAR = 525600
MINUTES_IN_QUARTER_YEAR = 131400
MINUTES_IN_THREE_QUARTERS_YEAR = 394200


def _seconds(value):
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp()
    return float(value)


def _plural(count, word):
    return f'{count} {word}' if count == 1 else f'{count} {word}s'


def distance_of_time_in_words(from_time, to_time=0, include_seconds=False):
    """
    The approximate distance between two times (datetimes, dates or
    seconds): ``'less than a minute'``, ``'3 minutes'``, ``'about 1
    hour'``, ``'2 days'``, ``'over 1 year'``...

    :param include_seconds: more precise wording under a minute
    """
    distance = abs(_seconds(to_time) - _seconds(from_time))
    seconds = round(distance)
    minutes = round(distance / 60)

    if minutes <= 1:
        if not include_seconds:
            return 'less than a minute' if minutes == 0 else '1 minute'
        if seconds <= 4:
            return 'less than 5 seconds'
        if seconds <= 9:
            return 'less than 10 seconds'
        if seconds <= 19:
            return 'less than 20 seconds'
        if seconds <= 39:
            return 'half a minute'
        if seconds <= 59:
            return 'less than a minute'
        return '1 minute'
    if minutes <= 44:
        return f'{minutes} minutes'
    if minutes <= 89:
        return 'about 1 hour'
    if minutes <= 1439:
        # 90 mins up to 24 hours
        return f'about {_plural(round(minutes / 60), "hour")}'
    if minutes <= 2519:
        # 24 hours up to 42 hours
        return '1 day'
    if minutes <= 43199:
        # 42 hours up to 30 days
        return _plural(round(minutes / 1440), 'day')
    if minutes <= 86399:
        # 30 days up to 60 days
        return f'about {_plural(round(minutes / 43200), "month")}'
    if minutes <= 525599:
        # 60 days up to 365 days
        return _plural(round(minutes / 43200), 'month')

    years, remainder = divmod(minutes, MINUTES_IN_YEAR)
    if remainder < MINUTES_IN_QUARTER_YEAR:
        return f'about {_plural(years, "year")}'
    if remainder < MINUTES_IN_THREE_QUARTERS_YEAR:
        return f'over {_plural(years, "year")}'
    return f'almost {_plural(years + 1, "year")}'


def time_ago_in_words(from_time, include_seconds=False):
    """ :func:`distance_of_time_in_words` from ``from_time`` to now. """
    return distance_of_time_in_words(from_time, datetime.now(timezone.utc), include_seconds)


def time_tag(date_or_time, content=None, format=None, **attrs):
    """
    ``<time datetime="2024-03-01">March 01, 2024</time>``

    :param format: strftime pattern of the content
    """
    is_datetime = isinstance(date_or_time, datetime)
    attrs.setdefault('datetime', date_or_time.isoformat())
    if content is None:
        format = format or ('%B %d, %Y %H:%M' if is_datetime else '%B %d, %Y')
        content = date_or_time.strftime(format)
    return content_tag('time', content, attrs)
