# Part of Plinth, see License file for full copyright and licensing details.
"""
HTTPS enforcement: redirection of plain HTTP requests, HTTP Strict
Transport Security and secure cookies.
"""
import logging
import re

from werkzeug.datastructures import Headers
from werkzeug.utils import redirect

_logger = logging.getLogger(__name__)

HSTS_EXPIRES_IN = 63072000  # 2 years
PERMANENT_REDIRECT_METHODS = ('GET', 'HEAD')


class SSL:
    """
    :param redirect: ``False`` to serve HTTP requests as is, or a dict of
        ``host``, ``port``, ``status`` and ``body`` overrides; ``exclude``
        (callable on the environ) skips the redirection and the HSTS header
    :param hsts: ``False`` to send ``max-age=0``, or a dict of ``expires``
        (seconds), ``subdomains`` and ``preload``
    :param secure_cookies: add the ``secure`` flag to every cookie
    """
    def __init__(self, app, redirect=True, hsts=True, secure_cookies=True, exclude=None):
        self.app = app
        self.redirect = {} if redirect is True else redirect
        self.exclude = exclude
        if isinstance(self.redirect, dict) and 'exclude' in self.redirect:
            self.exclude = self.redirect.pop('exclude')
        self.hsts_header = self.build_hsts_header(self.normalize_hsts_options(hsts))
        self.secure_cookies = secure_cookies

    @staticmethod
    def normalize_hsts_options(options):
        if options is False:
            return {'expires': 0, 'subdomains': False, 'preload': False}
        options = {} if options is True else dict(options)
        options.setdefault('expires', HSTS_EXPIRES_IN)
        options.setdefault('subdomains', True)
        options.setdefault('preload', False)
        return options

    @staticmethod
    def build_hsts_header(hsts):
        expires = hsts['expires']
        if hasattr(expires, 'total_seconds'):
            expires = expires.total_seconds()
        value = f'max-age={int(expires)}'
        if hsts['subdomains']:
            value += '; includeSubDomains'
        if hsts['preload']:
            value += '; preload'
        return value

    def __call__(self, environ, start_response):
        excluded = bool(self.exclude and self.exclude(environ))
        if environ.get('wsgi.url_scheme') != 'https':
            if self.redirect is not False and not excluded:
                return self.redirect_to_https(environ, start_response)
            return self.app(environ, start_response)

        def _start_response(status, headers, exc_info=None):
            headers = Headers(headers)
            if not excluded:
                headers.setdefault('Strict-Transport-Security', self.hsts_header)
            if self.secure_cookies:
                self.flag_cookies_as_secure(headers)
            return start_response(status, headers.to_wsgi_list(), exc_info)
        return self.app(environ, _start_response)

    def flag_cookies_as_secure(self, headers):
        cookies = headers.getlist('Set-Cookie')
        if not cookies:
            return
        headers.remove('Set-Cookie')
        for cookie in cookies:
            if not re.search(r';\s*secure\s*(;|$)', cookie, re.IGNORECASE):
                cookie += '; Secure'
            headers.add('Set-Cookie', cookie)

    def redirect_to_https(self, environ, start_response):
        location = self.https_location_for(environ)
        method = environ.get('REQUEST_METHOD', 'GET').upper()
        status = self.redirect.get('status') or (301 if method in PERMANENT_REDIRECT_METHODS else 308)
        _logger.debug("Redirecting %s %s to %s", method, environ.get('PATH_INFO'), location)
        response = redirect(location, code=status)
        if 'body' in self.redirect:
            response.set_data(self.redirect['body'])
        return response(environ, start_response)

    def https_location_for(self, environ):
        host = self.redirect.get('host') or environ.get('HTTP_HOST') or environ.get('SERVER_NAME', '')
        port = self.redirect.get('port')
        if not self.redirect.get('host'):
            host = host.rsplit(':', 1)[0] if not host.endswith(']') else host
        if port and int(port) != 443:
            host = f'{host}:{port}'
        path = (environ.get('SCRIPT_NAME', '') + environ.get('PATH_INFO', '')) or '/'
        query = environ.get('QUERY_STRING')
        return f'https://{host}{path}' + (f'?{query}' if query else '')
