# Part of Plinth, see License file for full copyright and licensing details.
"""
Form tags not bound to a record.

``form_tag`` gives the opening tag with its hidden fields, or the whole
form around the body of a ``{% call %}`` block::

    {% call form_tag(photos_path(), multipart=True) %}
      {{ label_tag('title') }} {{ text_field_tag('title', params.title) }}
      {{ submit_tag('Upload') }}
    {% endcall %}
"""
import re

import markupsafe
from markupsafe import Markup

from .. import current_view
from ...tools.inflector import humanize
from .tag import content_tag, tag, tag_options
from .url import url_for

__all__ = [
    'button_tag',
    'check_box_tag',
    'email_field_tag',
    'field_set_tag',
    'form_tag',
    'hidden_field_tag',
    'label_tag',
    'number_field_tag',
    'options_for_select',
    'password_field_tag',
    'radio_button_tag',
    'select_tag',
    'submit_tag',
    'text_area_tag',
    'text_field_tag',
]


def sanitize_to_id(name):
    """ ``photo[tags][]`` -> ``photo_tags_`` """
    return re.sub(r'[^-a-zA-Z0-9:.]', '_', str(name).replace(']', ''))


def _hidden(name, value):
    return tag('input', type='hidden', name=name, value=value, autocomplete='off')


def form_tag(url='', method='post', multipart=False, authenticity_token=None, caller=None, **attrs):
    """
    The ``<form>`` opening tag with the ``_method`` and
    ``authenticity_token`` hidden fields.

    :param method: ``get``, ``post``, or ``patch``/``put``/``delete``
        sent as ``post`` with the ``_method`` override
    :param authenticity_token: the token to embed, ``False`` for none;
        a fresh one when forgery protection is on by default
    """
    method = (method or 'post').lower()
    attrs['action'] = url_for(url)
    attrs['method'] = 'get' if method == 'get' else 'post'
    attrs.setdefault('accept-charset', 'UTF-8')
    if multipart:
        attrs['enctype'] = 'multipart/form-data'

    extras = []
    if method not in ('get', 'post'):
        extras.append(_hidden('_method', method))
    if method != 'get':
        if authenticity_token is None:
            view = current_view()
            if view is not None and view.protect_against_forgery():
                authenticity_token = view.form_authenticity_token()
        if authenticity_token:
            extras.append(_hidden('authenticity_token', authenticity_token))

    html = Markup(f'<form{tag_options(attrs)}>') + Markup(''.join(extras))
    if caller is not None:
        return html + caller() + Markup('</form>')
    return html


def _field(type_, name, value=None, **attrs):
    options = {'type': type_, 'name': name, 'id': sanitize_to_id(name), 'value': value}
    options.update(attrs)
    return tag('input', options)


def text_field_tag(name, value=None, **attrs):
    """ ``<input type="text" name="name" id="name" value="value" />`` """
    return _field('text', name, value, **attrs)


def password_field_tag(name='password', value=None, **attrs):
    return _field('password', name, value, **attrs)


def hidden_field_tag(name, value=None, **attrs):
    attrs.setdefault('autocomplete', 'off')
    return _field('hidden', name, value, **attrs)


def email_field_tag(name, value=None, **attrs):
    return _field('email', name, value, **attrs)


def number_field_tag(name, value=None, min=None, max=None, step=None, in_=None, **attrs):
    """ ``in_=range(1, 10)`` gives ``min`` and ``max``. """
    if in_ is not None:
        min, max = in_[0], in_[-1]
    return _field('number', name, value, min=min, max=max, step=step, **attrs)


def text_area_tag(name, content=None, size=None, escape=True, **attrs):
    """ ``size='25x10'`` gives ``cols`` and ``rows``. """
    if size:
        attrs['cols'], attrs['rows'] = str(size).split('x')
    options = {'name': name, 'id': sanitize_to_id(name)}
    options.update(attrs)
    content = '' if content is None else content
    content = markupsafe.escape(content) if escape else Markup(content)
    return content_tag('textarea', Markup('\n') + content, options)


def check_box_tag(name, value='1', checked=False, **attrs):
    return _field('checkbox', name, value, checked=checked, **attrs)


def radio_button_tag(name, value, checked=False, **attrs):
    attrs.setdefault('id', f'{sanitize_to_id(name)}_{sanitize_to_id(value)}')
    return _field('radio', name, value, checked=checked, **attrs)


def label_tag(name=None, content=None, caller=None, **attrs):
    """ ``label_tag('first_name')`` -> ``<label for="first_name">First
    name</label>`` """
    if caller is not None:
        content = caller()
    if content is None:
        content = humanize(str(name)) if name else ''
    if name and 'for' not in attrs and 'for_' not in attrs:
        attrs['for'] = sanitize_to_id(name)
    return content_tag('label', content, attrs)


def submit_tag(value='Save changes', name='commit', **attrs):
    """ ``data={'disable_with': ...}`` defaults to the button value. """
    data = dict(attrs.pop('data', None) or {})
    data.setdefault('disable_with', value)
    if data['disable_with'] is False:
        del data['disable_with']
    return tag('input', {'type': 'submit', 'name': name, 'value': value, 'data': data}, **attrs)


def button_tag(content='Button', caller=None, **attrs):
    if caller is not None:
        content = caller()
    options = {'name': 'button', 'type': 'submit'}
    options.update(attrs)
    return content_tag('button', content, options)


def _option_text_and_value(option):
    if isinstance(option, (list, tuple)) and len(option) >= 2:
        return option[0], option[1]
    return option, option


def options_for_select(container, selected=None, disabled=None):
    """
    The ``<option>`` tags of ``container``: values, ``(text, value)``
    pairs or a ``{text: value}`` dict.

    :param selected: value or list of values
    :param disabled: value or list of values
    """
    if isinstance(container, dict):
        container = list(container.items())

    def as_set(value):
        if value is None:
            return set()
        if isinstance(value, (list, tuple, set)):
            return {str(v) for v in value}
        return {str(value)}
    selected, disabled = as_set(selected), as_set(disabled)

    options = []
    for option in container:
        text, value = _option_text_and_value(option)
        options.append(content_tag('option', text, {
            'value': value,
            'selected': str(value) in selected,
            'disabled': str(value) in disabled,
        }))
    return Markup('\n').join(options)


def select_tag(name, option_tags=None, include_blank=False, prompt=None, multiple=False, **attrs):
    """ ``select_tag('count', options_for_select([1, 2, 3], 2))`` """
    html_name = f'{name}[]' if multiple and not str(name).endswith('[]') else name
    option_tags = Markup(option_tags or '')
    if include_blank:
        text = '' if include_blank is True else include_blank
        option_tags = content_tag('option', text, value='', label=' ' if not text else None) + option_tags
    if prompt:
        option_tags = content_tag('option', prompt, value='') + option_tags
    options = {'name': html_name, 'id': sanitize_to_id(name), 'multiple': multiple}
    options.update(attrs)
    return content_tag('select', option_tags, options)


def field_set_tag(legend=None, caller=None, **attrs):
    content = caller() if caller is not None else ''
    inner = content_tag('legend', legend) if legend else Markup('')
    return content_tag('fieldset', inner + Markup(content), attrs)
