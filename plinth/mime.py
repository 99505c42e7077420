# Part of Plinth, see License file for full copyright and licensing details.
"""
Registry of the response formats known by the framework.

A format has a symbol (``'html'``), a main mimetype, synonyms accepted in
``Accept`` headers and file extensions. Controllers negotiate formats with
:func:`negotiate`.
"""
import logging
from collections import namedtuple

_logger = logging.getLogger(__name__)

Type = namedtuple('Type', ['symbol', 'mimetype', 'synonyms', 'extensions'])

_BY_SYMBOL = {}
_BY_MIMETYPE = {}
_BY_EXTENSION = {}


def register(mimetype, symbol, synonyms=(), extensions=()):
    """ Register (or replace) the format ``symbol``. """
    extensions = tuple(extensions) or (symbol,)
    mime = Type(symbol, mimetype, tuple(synonyms), extensions)
    _BY_SYMBOL[symbol] = mime
    for name in (mimetype, *mime.synonyms):
        _BY_MIMETYPE[name] = mime
    for ext in extensions:
        _BY_EXTENSION[ext] = mime
    return mime

def unregister(symbol):
    mime = _BY_SYMBOL.pop(symbol, None)
    if mime is None:
        return
    for name in (mime.mimetype, *mime.synonyms):
        _BY_MIMETYPE.pop(name, None)
    for ext in mime.extensions:
        _BY_EXTENSION.pop(ext, None)

def lookup(mimetype):
    """ Format registered for ``mimetype`` (parameters are ignored), or
    ``None``. """
    if not mimetype:
        return None
    return _BY_MIMETYPE.get(mimetype.split(';')[0].strip().lower())

def lookup_by_extension(extension):
    return _BY_EXTENSION.get(str(extension).lstrip('.').lower())

def get(symbol):
    return _BY_SYMBOL.get(symbol)

def symbols():
    return list(_BY_SYMBOL)

def mimetype_for(symbol, default='application/octet-stream'):
    mime = _BY_SYMBOL.get(symbol)
    return mime.mimetype if mime else default

def negotiate(accept_mimetypes, symbols, default=None):
    """ Pick the format of ``symbols`` that ``accept_mimetypes`` (a werkzeug
    :class:`~werkzeug.datastructures.MIMEAccept`) prefers. """
    candidates = {}
    for symbol in symbols:
        mime = _BY_SYMBOL.get(symbol)
        if mime:
            for name in (mime.mimetype, *mime.synonyms):
                candidates.setdefault(name, symbol)
    best = accept_mimetypes.best_match(list(candidates))
    return candidates.get(best, default)


register('text/html', 'html', ['application/xhtml+xml'], ['html', 'htm', 'xhtml'])
register('text/plain', 'text', [], ['txt', 'text'])
register('text/javascript', 'js', ['application/javascript', 'application/x-javascript'], ['js'])
register('text/css', 'css', [], ['css'])
register('text/calendar', 'ics', [], ['ics'])
register('text/csv', 'csv', [], ['csv'])
register('text/vcard', 'vcf', [], ['vcf'])
register('text/vtt', 'vtt', [], ['vtt'])
register('image/png', 'png', [], ['png'])
register('image/jpeg', 'jpeg', ['image/pjpeg'], ['jpg', 'jpeg', 'jpe', 'pjpeg'])
register('image/gif', 'gif', [], ['gif'])
register('image/bmp', 'bmp', [], ['bmp'])
register('image/tiff', 'tiff', [], ['tif', 'tiff'])
register('image/svg+xml', 'svg', [], ['svg'])
register('image/webp', 'webp', [], ['webp'])
register('video/mpeg', 'mpeg', [], ['mpg', 'mpeg', 'mpe'])
register('audio/mpeg', 'mp3', [], ['mp1', 'mp2', 'mp3'])
register('audio/ogg', 'ogg', [], ['oga', 'ogg', 'spx', 'opus'])
register('font/otf', 'otf', [], ['otf'])
register('font/ttf', 'ttf', [], ['ttf'])
register('font/woff', 'woff', [], ['woff'])
register('font/woff2', 'woff2', [], ['woff2'])
register('application/xml', 'xml', ['text/xml', 'application/x-xml'], ['xml'])
register('application/rss+xml', 'rss', [], ['rss'])
register('application/atom+xml', 'atom', [], ['atom'])
register('application/x-yaml', 'yaml', ['text/yaml'], ['yml', 'yaml'])
register('multipart/form-data', 'multipart_form', [], ['multipart_form'])
register('application/x-www-form-urlencoded', 'url_encoded_form', [], ['url_encoded_form'])
register('application/json', 'json', ['text/x-json', 'application/jsonrequest'], ['json'])
register('application/pdf', 'pdf', [], ['pdf'])
register('application/zip', 'zip', [], ['zip'])
register('application/gzip', 'gzip', ['application/x-gzip'], ['gz'])
