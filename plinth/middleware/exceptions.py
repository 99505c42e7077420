# Part of Plinth, see License file for full copyright and licensing details.
"""
Rendering of the exceptions escaping the application.

:class:`DebugExceptions` logs them and, when detailed exceptions are
enabled, renders a page with the traceback. :class:`ShowExceptions` turns
the others into an error response produced by an exceptions application,
:class:`PublicExceptions` by default (``public/404.html`` and the like).
"""
import json
import logging
import os
import re
import traceback

import jinja2
from werkzeug.exceptions import HTTPException, MethodNotAllowed
from werkzeug.http import HTTP_STATUS_CODES
from werkzeug.wrappers import Request, Response

from .. import exceptions
from ..cookies import CookieOverflow
from ..routing import RoutesInspector

_logger = logging.getLogger(__name__)

EXCEPTION = 'plinth.exception'
EXCEPTION_WRAPPER = 'plinth.exception_wrapper'
ORIGINAL_PATH = 'plinth.original_path'
SHOW_EXCEPTIONS = 'plinth.show_exceptions'
SHOW_DETAILED_EXCEPTIONS = 'plinth.show_detailed_exceptions'
ROUTES = 'plinth.routes'

RESCUE_RESPONSES = {
    exceptions.RoutingError: 404,
    exceptions.UrlGenerationError: 500,
    exceptions.ParameterMissing: 400,
    exceptions.UnpermittedParameters: 400,
    exceptions.InvalidAuthenticityToken: 422,
    exceptions.InvalidCrossOriginRequest: 422,
    exceptions.UnknownFormat: 406,
    exceptions.AccessDenied: 403,
    exceptions.AccessError: 403,
    exceptions.SessionExpiredException: 401,
    exceptions.UserError: 400,
    exceptions.UnsafeRedirectError: 500,
    exceptions.DoubleRenderError: 500,
    exceptions.MissingTemplate: 500,
    CookieOverflow: 500,
}

LANGUAGE_TAG_RE = re.compile(r'[a-z]{1,8}(-[a-z0-9]{1,8})*')

# statuses raised on purpose, answered without alarming the logs
SILENT_STATUSES = frozenset({400, 401, 403, 404, 405, 406, 422})


class ExceptionWrapper:
    """ The HTTP facts of an exception: status, name, traceback. """
    rescue_responses = RESCUE_RESPONSES

    def __init__(self, exc):
        self.exception = exc

    @classmethod
    def status_code_for_exception(cls, exc):
        if isinstance(exc, HTTPException):
            return exc.code or 500
        for klass in type(exc).__mro__:
            if klass in cls.rescue_responses:
                return cls.rescue_responses[klass]
        return 500

    @property
    def status_code(self):
        return self.status_code_for_exception(self.exception)

    @property
    def is_rescue_response(self):
        exc = self.exception
        if isinstance(exc, HTTPException):
            return True
        return any(klass in self.rescue_responses for klass in type(exc).__mro__)

    @property
    def exception_name(self):
        klass = type(self.exception)
        return f'{klass.__module__}.{klass.__qualname__}'

    @property
    def message(self):
        if isinstance(self.exception, HTTPException):
            return self.exception.description or ''
        return str(self.exception)

    @property
    def traceback(self):
        return traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__)

    @property
    def status_phrase(self):
        return HTTP_STATUS_CODES.get(self.status_code, 'Unknown Error')

    def show(self, environ):
        """ Whether the exception should be rendered (``True``) or raised to
        the server, per the ``show_exceptions`` setting. """
        setting = environ.get(SHOW_EXCEPTIONS, 'all')
        if setting == 'none':
            return False
        if setting == 'rescuable':
            return self.is_rescue_response
        return True


def log_exception(wrapper):
    exc = wrapper.exception
    if hasattr(exc, 'loglevel'):
        _logger.log(exc.loglevel, exc, exc_info=getattr(exc, 'exc_info', None))
    elif isinstance(exc, HTTPException):
        pass
    elif isinstance(exc, exceptions.SessionExpiredException):
        _logger.info(exc)
    elif isinstance(exc, exceptions.RoutingError) and not isinstance(exc, exceptions.UrlGenerationError):
        _logger.info(exc)
    elif wrapper.status_code in SILENT_STATUSES:
        _logger.warning("%s: %s", type(exc).__name__, exc)
    else:
        _logger.error("Exception during request handling.", exc_info=exc)


# ------------------------------------------------------------
# Debug page
# ------------------------------------------------------------

_jinja = jinja2.Environment(autoescape=True)

DEBUG_TEMPLATE = _jinja.from_string("""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{{ wrapper.status_phrase }} | {{ name }}</title>
  <style>
    body { font-family: sans-serif; margin: 0; }
    header { background: #c52f24; color: #fff; padding: 0.5em 1.5em; }
    main { padding: 0.5em 1.5em; }
    pre { background: #eee; padding: 1em; overflow: auto; }
    table { border-collapse: collapse; }
    td, th { padding: 0.2em 0.8em; text-align: left; font-family: monospace; }
  </style>
</head>
<body>
  <header>
    <h1>{{ name }}{% if path %} in {{ method }} {{ path }}{% endif %}</h1>
  </header>
  <main>
    <h2>{{ wrapper.message }}</h2>
    <pre>{{ wrapper.traceback | join('') }}</pre>
    {% if routes %}
    <h2>Routes</h2>
    <p>Routes match in priority from top to bottom</p>
    <table>
      <tr>{% for col in routes_header %}<th>{{ col }}</th>{% endfor %}</tr>
      {% for row in routes %}
      <tr>{% for col in row %}<td>{{ col }}</td>{% endfor %}</tr>
      {% endfor %}
    </table>
    {% endif %}
    <h2>Request</h2>
    <table>
      {% for key, value in request_info %}
      <tr><th>{{ key }}</th><td>{{ value }}</td></tr>
      {% endfor %}
    </table>
  </main>
</body>
</html>
""")


def _wants_json(environ):
    request = Request(environ)
    best = request.accept_mimetypes.best_match(['text/html', 'application/json'])
    return best == 'application/json' or request.path.endswith('.json')


class DebugExceptions:
    """ Log the exceptions raised by the application; render them in
    detail when ``environ['plinth.show_detailed_exceptions']`` is set,
    re-raise them otherwise. """
    def __init__(self, app, routes=None):
        self.app = app
        self.routes = routes

    def __call__(self, environ, start_response):
        try:
            return self.app(environ, start_response)
        except Exception as exc:
            # Valid (2xx/3xx) response given to abort()
            if isinstance(exc, HTTPException) and exc.code is None:
                raise
            wrapper = ExceptionWrapper(exc)
            log_exception(wrapper)
            if not environ.get(SHOW_DETAILED_EXCEPTIONS) or not wrapper.show(environ):
                raise
            return self.render_exception(environ, wrapper)(environ, start_response)

    def render_exception(self, environ, wrapper):
        headers = exceptions_headers(wrapper.exception)
        if _wants_json(environ):
            body = {
                'status': wrapper.status_code,
                'error': wrapper.status_phrase,
                'exception': f'{wrapper.exception_name}: {wrapper.message}',
                'traceback': wrapper.traceback,
            }
            return Response(json.dumps(body), status=wrapper.status_code,
                            mimetype='application/json', headers=headers)
        routes = []
        if isinstance(wrapper.exception, exceptions.RoutingError):
            inspector = RoutesInspector(self.routes or environ.get(ROUTES) or ())
            routes = inspector.rows()
        html = DEBUG_TEMPLATE.render(
            wrapper=wrapper,
            name=wrapper.exception_name,
            method=environ.get('REQUEST_METHOD'),
            path=environ.get('PATH_INFO'),
            routes=routes,
            routes_header=('Helper', 'HTTP Verb', 'Path', 'Controller#Action'),
            request_info=[
                ('Method', environ.get('REQUEST_METHOD')),
                ('Path', environ.get('PATH_INFO')),
                ('Query', environ.get('QUERY_STRING')),
                ('Request id', environ.get('plinth.request_id')),
            ],
        )
        return Response(html, status=wrapper.status_code, mimetype='text/html', headers=headers)


def exceptions_headers(exc):
    if isinstance(exc, MethodNotAllowed) and exc.valid_methods:
        return [('Allow', ', '.join(exc.valid_methods))]
    if isinstance(exc, HTTPException) and exc.response is None:
        return [(k, v) for k, v in exc.get_headers() if k.lower() != 'content-type']
    return []


# ------------------------------------------------------------
# Public pages
# ------------------------------------------------------------

class ShowExceptions:
    """ Answer the exceptions raised by the application with the response
    of ``exceptions_app``. The exceptions app gets the original environ
    with ``PATH_INFO`` set to ``/<status>`` and the exception in
    ``environ['plinth.exception']``. """
    def __init__(self, app, exceptions_app=None):
        self.app = app
        self.exceptions_app = exceptions_app or PublicExceptions(None)

    def __call__(self, environ, start_response):
        try:
            return self.app(environ, start_response)
        except Exception as exc:
            if isinstance(exc, HTTPException) and exc.code is None:
                return exc.get_response(environ)(environ, start_response)
            wrapper = ExceptionWrapper(exc)
            if not wrapper.show(environ):
                raise
            return self.render_exception(environ, start_response, wrapper)

    def render_exception(self, environ, start_response, wrapper):
        environ[EXCEPTION] = wrapper.exception
        environ[EXCEPTION_WRAPPER] = wrapper
        environ[ORIGINAL_PATH] = environ.get('PATH_INFO')
        environ['PATH_INFO'] = f'/{wrapper.status_code}'
        try:
            return self.exceptions_app(environ, start_response)
        except Exception:
            _logger.error("Error during failsafe response.", exc_info=True)
            return Response(
                "500 Internal Server Error\n"
                "If you are the administrator of this website, then please read this "
                "web application's log file and/or the web server's log file to find "
                "out what went wrong.",
                status=500, mimetype='text/plain',
            )(environ, start_response)


class PublicExceptions:
    """ Default exceptions application: a JSON payload for API requests,
    ``<public_path>/<status>.html`` when the file exists, the response
    built by the request dispatcher otherwise, or a bare status message. """
    def __init__(self, public_path):
        self.public_path = public_path

    def __call__(self, environ, start_response):
        wrapper = environ.get(EXCEPTION_WRAPPER)
        exc = environ.get(EXCEPTION)
        status = wrapper.status_code if wrapper else int(environ['PATH_INFO'].strip('/') or 500)
        headers = exceptions_headers(exc) if exc is not None else []

        error_response = getattr(exc, 'error_response', None)
        if isinstance(error_response, Response):
            return error_response(environ, start_response)

        phrase = HTTP_STATUS_CODES.get(status, 'Unknown Error')
        if _wants_json(dict(environ, PATH_INFO=environ.get(ORIGINAL_PATH, ''))):
            body = json.dumps({'status': status, 'error': phrase})
            return Response(body, status=status, mimetype='application/json',
                            headers=headers)(environ, start_response)

        page = self._page(status, Request(environ).accept_languages)
        if page:
            with open(page, 'rb') as f:
                return Response(f.read(), status=status, mimetype='text/html',
                                headers=headers)(environ, start_response)

        if isinstance(error_response, HTTPException) and error_response.code == status:
            return error_response.get_response(environ)(environ, start_response)
        if isinstance(exc, HTTPException):
            return exc.get_response(environ)(environ, start_response)
        return Response(f'{status} {phrase}', status=status, mimetype='text/plain',
                        headers=headers)(environ, start_response)

    def _page(self, status, accept_languages=()):
        """ ``<status>.<lang>.html`` for the preferred languages of the
        request, then ``<status>.html``. """
        if not self.public_path:
            return None
        names = []
        for lang, _quality in accept_languages:
            lang = lang.replace('_', '-').lower()
            if LANGUAGE_TAG_RE.fullmatch(lang):
                names.extend([f'{status}.{lang}.html', f'{status}.{lang.split("-")[0]}.html'])
        names.append(f'{status}.html')
        for name in names:
            page = os.path.join(self.public_path, name)
            if os.path.isfile(page):
                return page
        return None
