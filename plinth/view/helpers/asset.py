# Part of Plinth, see License file for full copyright and licensing details.
"""
Links to the files of the public directory.

``asset_path('app.js')`` -> ``/javascripts/app.js``; the ``asset_host``
option of the application prefixes the paths with a host
(``https://cdn.example.com``). Paths with a scheme, or starting with a
``/``, are left as is apart from the host.
"""
import re

from markupsafe import Markup

from .. import current_view
from .tag import content_tag, tag

__all__ = [
    'asset_path',
    'asset_url',
    'favicon_link_tag',
    'image_path',
    'image_tag',
    'javascript_include_tag',
    'javascript_path',
    'stylesheet_link_tag',
    'stylesheet_path',
]

ASSET_PUBLIC_DIRECTORIES = {
    'audio': '/audios',
    'font': '/fonts',
    'image': '/images',
    'javascript': '/javascripts',
    'stylesheet': '/stylesheets',
    'video': '/videos',
}
ASSET_EXTENSIONS = {
    'javascript': '.js',
    'stylesheet': '.css',
}
URI_REGEXP = re.compile(r'^[-a-z]+://|^(?:cid|data):|^//', re.IGNORECASE)


def _asset_host():
    view = current_view()
    app = view.renderer.app if view is not None else None
    if app is None:
        return ''
    return (app.config.get('asset_host') or '').rstrip('/')


def asset_path(source, type=None, host=None, extname=None):
    """
    The public path of ``source``.

    :param type: ``javascript``, ``stylesheet``, ``image``... selects the
        directory and the default extension
    :param host: overrides the application ``asset_host``
    :param extname: extension added when ``source`` has none
    """
    source = str(source or '')
    if not source:
        return ''
    if URI_REGEXP.match(source):
        return source

    path, suffix = re.match(r'([^?#]*)(.*)', source, re.DOTALL).groups()
    if extname is None:
        extname = ASSET_EXTENSIONS.get(type)
    if extname and not path.rsplit('/', 1)[-1].count('.'):
        path += extname
    if not path.startswith('/'):
        path = f"{ASSET_PUBLIC_DIRECTORIES.get(type, '')}/{path}"

    host = _asset_host() if host is None else host.rstrip('/')
    if host and not URI_REGEXP.match(host):
        host = '//' + host
    return f'{host}{path}{suffix}'


def asset_url(source, type=None, host=None, extname=None):
    """ :func:`asset_path` with the host of the request when no asset host
    is configured. """
    if host is None and not _asset_host():
        view = current_view()
        if view is not None and view.request is not None:
            host = view.request.base_url
    return asset_path(source, type, host, extname)


def javascript_path(source, **options):
    return asset_path(source, 'javascript', **options)


def stylesheet_path(source, **options):
    return asset_path(source, 'stylesheet', **options)


def image_path(source, **options):
    return asset_path(source, 'image', **options)


def _nonce_attr(attrs):
    if attrs.get('nonce') is True:
        view = current_view()
        attrs['nonce'] = view.content_security_policy_nonce() if view is not None else None
    return attrs


def javascript_include_tag(*sources, host=None, **attrs):
    """
    ``<script src="/javascripts/app.js"></script>`` for each source.

    ``nonce=True`` adds the content security policy nonce of the request.
    """
    attrs = _nonce_attr(attrs)
    html = []
    for source in sources:
        options = {'src': asset_path(source, 'javascript', host=host)}
        options.update(attrs)
        html.append(content_tag('script', '', options))
    return Markup('\n').join(html)


def stylesheet_link_tag(*sources, host=None, **attrs):
    """ ``<link rel="stylesheet" href="/stylesheets/app.css" />`` for each
    source. """
    attrs = _nonce_attr(attrs)
    html = []
    for source in sources:
        options = {'rel': 'stylesheet', 'href': asset_path(source, 'stylesheet', host=host)}
        options.update(attrs)
        html.append(tag('link', options))
    return Markup('\n').join(html)


def favicon_link_tag(source='favicon.ico', rel='icon', type='image/x-icon', **attrs):
    options = {'rel': rel, 'type': type, 'href': asset_path(source, 'image')}
    options.update(attrs)
    return tag('link', options)


def image_tag(source, alt=None, size=None, **attrs):
    """
    ``image_tag('icon.png', size='16x10', alt='Edit')`` ->
    ``<img src="/images/icon.png" width="16" height="10" alt="Edit" />``

    ``size`` is ``'WxH'``, or a single number for a square image.
    """
    options = {'src': asset_path(source, 'image')}
    if size:
        width, _, height = str(size).partition('x')
        options['width'], options['height'] = width, height or width
    if alt is not None:
        options['alt'] = alt
    options.update(attrs)
    return tag('img', options)

