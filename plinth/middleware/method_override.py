# Part of Plinth, see License file for full copyright and licensing details.
import io
import logging

from werkzeug.wrappers import Request

_logger = logging.getLogger(__name__)

ORIGINAL_METHOD = 'plinth.original_method'
HTTP_METHODS = ('GET', 'HEAD', 'PUT', 'POST', 'DELETE', 'OPTIONS', 'PATCH', 'LINK', 'UNLINK')
METHOD_OVERRIDE_PARAM_KEY = '_method'
HTTP_METHOD_OVERRIDE_HEADER = 'HTTP_X_HTTP_METHOD_OVERRIDE'
ALLOWED_METHODS = ('POST',)


class MethodOverride:
    """ Let browsers send PUT, PATCH and DELETE requests as POST forms
    with a ``_method`` field (or an ``X-HTTP-Method-Override`` header). """
    def __init__(self, app):
        self.app = app

    def __call__(self, environ, start_response):
        if environ.get('REQUEST_METHOD', '').upper() in ALLOWED_METHODS:
            method = self.method_override(environ)
            if method in HTTP_METHODS:
                environ[ORIGINAL_METHOD] = environ['REQUEST_METHOD']
                environ['REQUEST_METHOD'] = method
        return self.app(environ, start_response)

    def method_override(self, environ):
        method = environ.get(HTTP_METHOD_OVERRIDE_HEADER)
        if not method:
            content_type = environ.get('CONTENT_TYPE', '')
            if not content_type.startswith(('application/x-www-form-urlencoded', 'multipart/form-data')):
                return None
            # buffer the body so that the application can parse it again
            length = int(environ.get('CONTENT_LENGTH') or 0)
            body = environ['wsgi.input'].read(length) if length > 0 else b''
            environ['wsgi.input'] = io.BytesIO(body)
            request = Request(dict(environ, **{'wsgi.input': io.BytesIO(body)}))
            method = request.form.get(METHOD_OVERRIDE_PARAM_KEY)
        if method:
            method = method.upper()
            if method not in HTTP_METHODS:
                _logger.warning("Invalid method override %r", method)
        return method
