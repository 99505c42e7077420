# Part of Plinth, see License file for full copyright and licensing details.
"""
HTML tags.

All the helpers return :class:`~markupsafe.Markup`; their string arguments
are escaped unless they are ``Markup`` already.
"""
import json
import re

import markupsafe
from markupsafe import Markup

from ...tools import unique

__all__ = [
    'cdata_section',
    'class_names',
    'content_tag',
    'escape_once',
    'tag',
    'tag_options',
    'token_list',
]

BOOLEAN_ATTRIBUTES = frozenset({
    'allowfullscreen', 'allowpaymentrequest', 'async', 'autofocus', 'autoplay',
    'checked', 'compact', 'controls', 'declare', 'default', 'defaultchecked',
    'defaultmuted', 'defaultselected', 'defer', 'disabled', 'enabled',
    'formnovalidate', 'hidden', 'indeterminate', 'inert', 'ismap', 'itemscope',
    'loop', 'multiple', 'muted', 'nohref', 'nomodule', 'noresize', 'noshade',
    'novalidate', 'nowrap', 'open', 'pauseonexit', 'playsinline', 'readonly',
    'required', 'reversed', 'scoped', 'seamless', 'selected', 'sortable',
    'truespeed', 'typemustmatch', 'visible',
})
TAG_PREFIXES = frozenset({'aria', 'data'})

_ESCAPE_ONCE_RE = re.compile(r'["><\']|&(?!([a-zA-Z]+|(#\d+)|(#[xX][\dA-Fa-f]+));)')
_ESCAPE_ONCE_MAP = {'&': '&amp;', '"': '&quot;', '>': '&gt;', '<': '&lt;', "'": '&#39;'}


def attribute_name(key):
    """ ``class_`` -> ``class``, ``http_equiv`` -> ``http-equiv`` """
    return key.rstrip('_').replace('_', '-')


def escape_once(html):
    """ Escape ``html`` keeping the entities it already holds:
    ``escape_once('1 &lt; 2 & 3')`` -> ``'1 &lt; 2 &amp; 3'``. """
    return Markup(_ESCAPE_ONCE_RE.sub(lambda m: _ESCAPE_ONCE_MAP[m.group(0)], str(html)))


def token_list(*args):
    """
    The space separated tokens of ``args``: strings, lists, and dicts of
    ``token: condition``::

        class_names('btn', {'active': is_active, 'disabled': False})
        # 'btn active'
    """
    tokens = []
    for arg in args:
        if not arg:
            continue
        if isinstance(arg, dict):
            tokens.extend(str(key) for key, value in arg.items() if value)
        elif isinstance(arg, (list, tuple, set)):
            tokens.extend(token_list(*arg).split())
        else:
            tokens.extend(str(arg).split())
    return ' '.join(unique(tokens))

class_names = token_list


def _attribute_value(key, value, escape_value):
    if isinstance(value, (list, tuple, set)) or (key == 'class' and isinstance(value, dict)):
        value = token_list(value) if key == 'class' else ' '.join(map(str, value))
    elif not isinstance(value, str):
        value = str(value)
    return markupsafe.escape(value) if escape_value else value


def tag_options(options, escape=True):
    """
    The attributes of ``options``, with their leading space.

    * ``True`` boolean attributes are written ``disabled="disabled"``,
      ``None`` and ``False`` values are omitted;
    * ``data={'user_id': 1}`` and ``aria={...}`` expand into ``data-user-id``
      attributes, non string values being JSON encoded.
    """
    if not options:
        return Markup('')
    attrs = []
    for key, value in options.items():
        key = attribute_name(str(key))
        if key in TAG_PREFIXES and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                if sub_value is None:
                    continue
                if not isinstance(sub_value, (str, Markup)):
                    sub_value = json.dumps(sub_value)
                attrs.append(_tag_option(f'{key}-{attribute_name(str(sub_key))}', sub_value, escape))
        elif key in BOOLEAN_ATTRIBUTES:
            if value:
                attrs.append(_tag_option(key, key, escape))
        elif value is not None and value is not False:
            attrs.append(_tag_option(key, value, escape))
    if not attrs:
        return Markup('')
    return Markup(' ' + ' '.join(attrs))

def _tag_option(key, value, escape_value):
    value = _attribute_value(key, value, escape_value)
    return f'{key}="{value}"'


def tag(name, options=None, /, open=False, escape=True, **attrs):
    """ A void tag: ``tag('br')`` -> ``<br />``, ``tag('input', open=True,
    type='text')`` -> ``<input type="text">``. """
    options = dict(options or {}, **attrs)
    return Markup(f'<{name}{tag_options(options, escape)}{">" if open else " />"}')


def content_tag(name, content=None, options=None, /, escape=True, caller=None, **attrs):
    """
    An element with its content:
    ``content_tag('p', 'Hello', class_='lead')`` ->
    ``<p class="lead">Hello</p>``. Usable with a ``{% call %}`` block.
    """
    if caller is not None:
        content = caller()
    options = dict(options or {}, **attrs)
    if content is None:
        content = ''
    if escape:
        content = markupsafe.escape(content)
    return Markup(f'<{name}{tag_options(options, escape)}>{content}</{name}>')


def cdata_section(content):
    """ ``<![CDATA[content]]>``, splitting the ``]]>`` of ``content``. """
    splitted = str(content).replace(']]>', ']]]]><![CDATA[>')
    return Markup(f'<![CDATA[{splitted}]]>')
