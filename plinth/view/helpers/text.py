# Part of Plinth, see License file for full copyright and licensing details.
import re
import threading

import markupsafe
from markupsafe import Markup

from .. import current_view
from ...tools import inflector
from .tag import tag_options

__all__ = [
    'current_cycle',
    'cycle',
    'excerpt',
    'highlight',
    'pluralize',
    'reset_cycle',
    'simple_format',
    'truncate',
    'word_wrap',
]

# cycles used outside of a template rendering
_local = threading.local()


def truncate(text, length=30, omission='...', separator=None, escape=True):
    """
    ``truncate('Once upon a time in a world far far away')`` ->
    ``'Once upon a time in a world...'``

    :param separator: cut at the last separator before ``length``
    """
    if text is None:
        return None
    text = str(text)
    if len(text) > length:
        stop = length - len(omission)
        if separator:
            index = text.rfind(separator, 0, stop + 1)
            stop = index if index > 0 else stop
        text = text[:max(stop, 0)] + omission
    return markupsafe.escape(text) if escape else text


def pluralize(count, singular, plural=None):
    """ ``pluralize(2, 'person')`` -> ``'2 people'`` """
    if count == 1 or count == '1':
        word = singular
    else:
        word = plural or inflector.pluralize(singular)
    return f'{count or 0} {word}'


def _split_paragraphs(text):
    text = re.sub(r'\r\n?', '\n', str(text or '')).strip('\n')
    if not text:
        return []
    return [re.sub(r'([^\n]\n)(?=[^\n])', lambda m: m.group(1), p) for p in re.split(r'\n\n+', text)]


def simple_format(text, html_options=None, wrapper_tag='p', escape=True):
    """ Paragraphs (``<p>``) of the blocks separated by blank lines, the
    single new lines becoming ``<br />``. """
    options = tag_options(html_options or {})
    paragraphs = _split_paragraphs(text)
    if not paragraphs:
        return Markup(f'<{wrapper_tag}{options}></{wrapper_tag}>')
    html = []
    for paragraph in paragraphs:
        content = markupsafe.escape(paragraph) if escape else Markup(paragraph)
        content = Markup(str(content).replace('\n', '\n<br />'))
        html.append(f'<{wrapper_tag}{options}>{content}</{wrapper_tag}>')
    return Markup('\n\n'.join(html))


def highlight(text, phrases, highlighter='<mark>\\1</mark>'):
    """ Wrap the ``phrases`` found in ``text``, case insensitive:
    ``highlight('You searched for: rails', 'rails')`` -> ``'You searched
    for: <mark>rails</mark>'`` """
    text = markupsafe.escape(text or '')
    phrases = [phrases] if isinstance(phrases, str) else list(phrases or [])
    phrases = [str(markupsafe.escape(p)) for p in phrases if p]
    if not text or not phrases:
        return Markup(text)
    pattern = '|'.join(re.escape(p) for p in phrases)
    return Markup(re.sub(f'({pattern})', highlighter, str(text), flags=re.IGNORECASE))


def excerpt(text, phrase, radius=100, omission='...', separator=''):
    """ The part of ``text`` around the first ``phrase``, ``None`` when
    not found. """
    if not text or not phrase:
        return None
    match = re.search(re.escape(phrase), text, flags=re.IGNORECASE)
    if match is None:
        return None
    if separator:
        first_part, second_part = text[:match.start()], text[match.end():]
        before = first_part.split(separator)
        after = second_part.split(separator)
        prefix = omission if len(before) > radius + 1 else ''
        postfix = omission if len(after) > radius + 1 else ''
        before = before[-(radius + 1):] if radius else before[-1:]
        after = after[:radius + 1] if radius else after[:1]
        return prefix + separator.join(before) + match.group(0) + separator.join(after) + postfix
    start = max(match.start() - radius, 0)
    end = min(match.end() + radius, len(text))
    prefix = omission if start > 0 else ''
    postfix = omission if end < len(text) else ''
    return prefix + text[start:end].strip() + postfix


def word_wrap(text, line_width=80, break_sequence='\n'):
    """ Wrap the lines of ``text`` at ``line_width``, words are never
    cut. """
    lines = []
    for line in str(text).split('\n'):
        if len(line) <= line_width:
            lines.append(line)
            continue
        lines.append(re.sub(rf'(.{{1,{line_width}}})(\s+|$)', lambda m: m.group(1) + break_sequence,
                            line).rstrip(break_sequence))
    return break_sequence.join(lines)


class Cycle:
    def __init__(self, values):
        self.values = list(values)
        self.index = 0

    def __str__(self):
        value = self.values[self.index]
        self.index = (self.index + 1) % len(self.values)
        return str(value)

    def current_value(self):
        return self.values[self.index - 1]


def _cycles():
    view = current_view()
    if view is not None:
        return view._cycles
    if not hasattr(_local, 'cycles'):
        _local.cycles = {}
    return _local.cycles


def cycle(*values, name='default'):
    """ The next of ``values`` each call, e.g. ``cycle('odd', 'even')`` for
    table rows. """
    cycles = _cycles()
    current = cycles.get(name)
    if current is None or current.values != list(values):
        current = cycles[name] = Cycle(values)
    return str(current)


def current_cycle(name='default'):
    current = _cycles().get(name)
    return current.current_value() if current is not None else None


def reset_cycle(name='default'):
    _cycles().pop(name, None)
    return ''
