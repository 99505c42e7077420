# Part of Plinth, see License file for full copyright and licensing details.
from urllib.parse import quote, urlsplit

import markupsafe
from markupsafe import Markup

from .. import current_view
from .tag import content_tag, tag

__all__ = [
    'button_to',
    'is_current_page',
    'link_to',
    'link_to_if',
    'link_to_unless',
    'link_to_unless_current',
    'mail_to',
    'url_for',
]

BUTTON_TAG_METHOD_VERBS = ('patch', 'put', 'delete')


def url_for(options):
    """ ``options`` when it is a string, the URL generated from it
    otherwise (route options dict, object with a ``to_param``). """
    if options is None:
        return ''
    if isinstance(options, str):
        return options
    if isinstance(options, dict):
        view = current_view()
        if view is None:
            raise RuntimeError("Generating URLs from options needs a rendering view")
        options = dict(options)
        return view.url_for(options, _external=options.pop('_external', False))
    return str(options)


def _link_attrs(attrs):
    method = attrs.pop('method', None)
    if method and method.lower() != 'get':
        data = dict(attrs.pop('data', None) or {})
        data['method'] = method.lower()
        attrs['data'] = data
        attrs.setdefault('rel', 'nofollow')
    return attrs


def link_to(name, url=None, caller=None, **attrs):
    """
    ``link_to('Photos', '/photos')`` -> ``<a href="/photos">Photos</a>``

    ``url`` may be route options (``{'controller': 'photos', 'action':
    'index'}``); without url the name is the url. ``method='delete'``
    gives a ``data-method`` link.
    """
    if caller is not None:
        name, url = caller(), name
    if url is None:
        url = name
    attrs = _link_attrs(attrs)
    href = url_for(url)
    return content_tag('a', name if name is not None else href, href=href, **attrs)


def link_to_if(condition, name, url=None, **attrs):
    """ The link when ``condition`` holds, the escaped name otherwise. """
    if condition:
        return link_to(name, url, **attrs)
    return markupsafe.escape(name)


def link_to_unless(condition, name, url=None, **attrs):
    return link_to_if(not condition, name, url, **attrs)


def link_to_unless_current(name, url=None, **attrs):
    return link_to_unless(is_current_page(url if url is not None else name), name, url, **attrs)


def is_current_page(options, check_parameters=False):
    """ Whether ``options`` is the URL of the current GET/HEAD request. """
    view = current_view()
    request = view.request if view is not None else None
    if request is None:
        return False
    if request.method not in ('GET', 'HEAD'):
        return False
    url_string = url_for(options)
    parts = urlsplit(url_string)
    request_uri = request.path
    if parts.query or check_parameters:
        query = request.httprequest.query_string.decode('latin1')
        request_uri = f'{request_uri}?{query}' if query else request_uri
        url_path = f'{parts.path}?{parts.query}' if parts.query else parts.path
    else:
        url_path = parts.path
    if parts.scheme:
        request_uri = request.base_url + request_uri
        url_path = f'{parts.scheme}://{parts.netloc}{url_path}'
    if url_path != '/':
        url_path = url_path.rstrip('/')
    if request_uri != '/':
        request_uri = request_uri.rstrip('/')
    return url_path == request_uri


def button_to(name, url=None, method='post', params=None, form=None, form_class='button_to',
              caller=None, **attrs):
    """
    A form with a single button, for the actions changing data::

        button_to('Delete', photo_path(photo), method='delete')

    The form carries the ``_method`` override and the authenticity token
    when forgery protection is on.
    """
    if caller is not None:
        name, url = caller(), name
    action = url_for(url)
    method = (method or 'post').lower()
    form_method = 'get' if method == 'get' else 'post'

    inner = []
    if method in BUTTON_TAG_METHOD_VERBS:
        inner.append(tag('input', type='hidden', name='_method', value=method, autocomplete='off'))
    view = current_view()
    if form_method == 'post' and view is not None and view.protect_against_forgery():
        inner.append(tag('input', type='hidden', name='authenticity_token',
                         value=view.form_authenticity_token(), autocomplete='off'))
    for key, value in (params or {}).items():
        inner.append(tag('input', type='hidden', name=key, value=value, autocomplete='off'))

    attrs.setdefault('type', 'submit')
    inner.append(content_tag('button', name, **attrs))
    form_options = dict(form or {})
    form_options.setdefault('class', form_class)
    return content_tag('form', Markup(''.join(inner)), method=form_method, action=action,
                       escape=True, **form_options)


def mail_to(email, name=None, subject=None, body=None, cc=None, bcc=None, reply_to=None, **attrs):
    """ ``mail_to('me@example.com', 'Contact', subject='Hi')`` """
    extras = [
        f'{key}={quote(str(value))}'
        for key, value in (('cc', cc), ('bcc', bcc), ('body', body), ('subject', subject),
                           ('reply-to', reply_to))
        if value
    ]
    href = 'mailto:' + quote(str(email), safe='@')
    if extras:
        href += '?' + '&'.join(extras)
    return content_tag('a', name or email, href=href, **attrs)
