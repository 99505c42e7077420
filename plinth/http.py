# Part of Plinth, see License file for full copyright and licensing details.
r"""\
Plinth HTTP layer / WSGI application

The main duty of this module is to prepare and dispatch all http
requests to their corresponding controllers: from a raw http request
arriving on the WSGI entrypoint to a :class:`~http.Request` arriving at
a controller action.

Application developers mostly know this module thanks to the
:class:`~plinth.http.Controller` class, the routes they draw on the
:class:`~plinth.http.Application` and the :func:`~plinth.http.route`
method decorator. Below is the call graph each request goes through:

Application.__call__
  +-> middleware stack (host authorization, ssl, static files, method
  |   override, request id, runtime, exceptions, cookies, session, csp)
  +-> Application._serve
        +-> Request._serve
              +-> RouteSet.match
              +-> Dispatcher.pre_dispatch
              +-> Dispatcher.dispatch
              |     +-> Controller.dispatch_action
              |           +-> callbacks (before, around)
              |           +-> action method
              |           +-> callbacks (after)
              +-> Dispatcher.post_dispatch
"""

import base64
import binascii
import collections
import collections.abc
import functools
import hashlib
import hmac
import inspect
import json
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

import babel.core
import werkzeug.datastructures
import werkzeug.exceptions
import werkzeug.http
import werkzeug.local
import werkzeug.utils
import werkzeug.wrappers
from werkzeug.exceptions import (HTTPException, BadRequest, Forbidden,
                                 InternalServerError)
from werkzeug.middleware.proxy_fix import ProxyFix as ProxyFix_

from . import content_security_policy as csp
from . import http_authentication
from . import mime
from . import middleware
from .cookies import (
    COOKIE_JAR,
    COOKIES_ROTATIONS,
    KEY_GENERATOR,
    SAME_SITE_PROTECTION,
    CookieJar,
    NullCookieJar,
)
from .exceptions import (
    AccessDenied,
    AccessError,
    ActionNotFound,
    DoubleRenderError,
    InvalidAuthenticityToken,
    InvalidCrossOriginRequest,
    MissingTemplate,
    RoutingError,
    SessionExpiredException,
    UnknownFormat,
    UnsafeRedirectError,
    UserError,
)
from .middleware.exceptions import (
    ROUTES,
    SHOW_DETAILED_EXCEPTIONS,
    SHOW_EXCEPTIONS,
    ExceptionWrapper,
)
from .parameters import Parameters, parse_nested_query
from .routing import Route, RouteSet
from .session import (
    FLASH,
    SESSION,
    SESSION_SKIP,
    SESSION_STORE,
    CookieStore,
    FilesystemSessionStore,
    MemorySessionStore,
    Session,
    load_flash,
    load_session,
)
from .tools import config, consteq, unique
from .tools.config import crypt_context
from .tools.func import lazy_property, filter_kwargs
from .tools.inflector import underscore
from .tools.messages import CachingKeyGenerator, KeyGenerator
from .tools.misc import submap

ProxyFix = functools.partial(ProxyFix_, x_for=1, x_proto=1, x_host=1)

_logger = logging.getLogger(__name__)
_logger_request = logging.getLogger(__name__ + '.request')

# =========================================================
# Const
# =========================================================

# The validity duration of a preflight response, one day.
CORS_MAX_AGE = 60 * 60 * 24

# The HTTP methods that do not require a CSRF validation.
CSRF_FREE_METHODS = ('GET', 'HEAD', 'OPTIONS', 'TRACE')

# The length of the raw authenticity token kept in the session.
AUTHENTICITY_TOKEN_LENGTH = 32

CSRF_TOKEN_SESSION_KEY = '_csrf_token'

# http_cache_forever() lifetime, and the fixed Last-Modified it validates.
HTTP_CACHE_FOREVER = timedelta(days=100 * 365)
HTTP_CACHE_FOREVER_SINCE = datetime(2011, 1, 1, tzinfo=timezone.utc)

# Larger request bodies are refused.
DEFAULT_MAX_CONTENT_LENGTH = 128 * 1024 * 1024  # 128MiB

# Headers set on every response, unless already there.
DEFAULT_HEADERS = {
    'X-Frame-Options': 'SAMEORIGIN',
    'X-XSS-Protection': '0',
    'X-Content-Type-Options': 'nosniff',
    'X-Permitted-Cross-Domain-Policies': 'none',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
}

# Accept headers sent by browsers, which list everything and are ignored
BROWSER_LIKE_ACCEPTS = re.compile(r',\s*\*/\*|\*/\*\s*,')

# The request mimetypes that transport JSON in their body.
JSON_MIMETYPES = ('application/json', 'application/json-rpc')

MISSING_CSRF_WARNING = """\
No CSRF token provided for path %r

Plinth URLs are CSRF-protected by default (when accessed with unsafe
HTTP methods). Add the ``authenticity_token`` field to your forms (the
``form_tag`` helper does it) or the ``X-CSRF-Token`` header to your
scripts, using ``csrf_meta_tags`` in the layout.

If your route is meant to be used by external clients, you can disable
the protection with ``csrf=False`` in its definition, or with
``skip_forgery_protection()`` on its controller.
"""

CROSS_ORIGIN_JAVASCRIPT_WARNING = (
    "Security warning: an embedded <script> tag on another site requested "
    "protected JavaScript. If you know what you're doing, go ahead and disable "
    "forgery protection on this action to permit cross-origin JavaScript embedding."
)

JAVASCRIPT_MIMETYPE = re.compile(r'^(text|application)/javascript')

# The @route arguments to propagate from the decorated method to the
# routing rule.
ROUTING_KEYS = {
    'type', 'methods', 'csrf', 'cors', 'save_session', 'max_content_length',
    'defaults', 'strict_slashes', 'as_',
}


# =========================================================
# Helpers
# =========================================================

def content_disposition(filename, disposition_type='attachment'):
    """
    Craft a ``Content-Disposition`` header, see :rfc:`6266`.

    :param filename: The name of the file, should that file be saved on
        disk by the browser.
    :param disposition_type: Tell the browser what to do with the file,
        either ``"attachment"`` to save the file on disk,
        either ``"inline"`` to display the file.
    """
    if disposition_type not in ('attachment', 'inline'):
        raise ValueError(f"Invalid disposition_type: {disposition_type!r}")
    return "{}; filename*=UTF-8''{}".format(
        disposition_type,
        quote(filename, safe='!#$&+-.^_`|~'),
    )


def _seconds(duration):
    if isinstance(duration, timedelta):
        return int(duration.total_seconds())
    return int(duration)


def is_cors_preflight(request, route):
    return request.httprequest.method == 'OPTIONS' and bool(route.routing.cors)


def _status_code(status):
    """ ``404``, ``'404'``, ``'404 Not Found'`` or ``'not_found'`` -> 404 """
    if isinstance(status, int):
        return status
    status = str(status).strip()
    if status[:3].isdigit():
        return int(status[:3])
    for code, phrase in werkzeug.http.HTTP_STATUS_CODES.items():
        if re.sub(r'\W+', '_', phrase.lower()) == status.lower():
            return code
    raise ValueError(f"Unknown status {status!r}")


# =========================================================
# Request and Response
# =========================================================

# Thread local global request object
_request_stack = werkzeug.local.LocalStack()
request = _request_stack()

def make_request_wrap_methods(attr):
    def getter(self):
        return getattr(self._HTTPRequest__wrapped, attr)

    def setter(self, value):
        return setattr(self._HTTPRequest__wrapped, attr, value)

    return getter, setter


class HTTPRequest:
    """
    Wrapper around the incoming werkzeug request, exposing a curated
    list of its attributes and a copy of the environ without the server
    internals.
    """
    def __init__(self, environ):
        httprequest = werkzeug.wrappers.Request(environ)
        httprequest.parameter_storage_class = werkzeug.datastructures.ImmutableMultiDict
        httprequest.max_content_length = DEFAULT_MAX_CONTENT_LENGTH
        httprequest.max_form_memory_size = 10 * 1024 * 1024  # 10 MB

        self.__wrapped = httprequest
        self.__environ = self.__wrapped.environ
        self.environ = {
            key: value
            for key, value in self.__environ.items()
            if (not key.startswith(('werkzeug.', 'wsgi.', 'socket', 'plinth.'))
                or key in ['wsgi.url_scheme', 'werkzeug.proxy_fix.orig'])
        }

    def __enter__(self):
        return self

HTTPREQUEST_ATTRIBUTES = [
    '__str__', '__repr__', '__exit__',
    'accept_charsets', 'accept_languages', 'accept_mimetypes', 'access_route', 'args', 'authorization', 'base_url',
    'content_encoding', 'content_length', 'content_md5', 'content_type', 'cookies', 'data', 'date',
    'files', 'form', 'full_path', 'get_data', 'get_json', 'headers', 'host', 'host_url', 'if_match',
    'if_modified_since', 'if_none_match', 'if_range', 'if_unmodified_since', 'is_json', 'is_secure', 'json',
    'max_content_length', 'method', 'mimetype', 'mimetype_params', 'origin', 'path', 'pragma', 'query_string', 'range',
    'referrer', 'remote_addr', 'remote_user', 'root_path', 'root_url', 'scheme', 'script_root', 'server',
    'trusted_hosts', 'url', 'url_root', 'user_agent', 'values',
]
for attr in HTTPREQUEST_ATTRIBUTES:
    setattr(HTTPRequest, attr, property(*make_request_wrap_methods(attr)))


class FutureResponse:
    """
    werkzeug.Response mock class that only serves as placeholder for
    headers to be injected in the final response.
    """
    def __init__(self):
        self.headers = werkzeug.datastructures.Headers()


class Request:
    """
    Wrapper around the incoming HTTP request with deserialized request
    parameters, session utilities and request dispatching logic.
    """
    def __init__(self, httprequest, app=None):
        self.httprequest = httprequest
        self.app = app
        self.future_response = FutureResponse()
        self.dispatcher = _dispatchers['http'](self)  # until we match
        self.params = Parameters()  # set by the Dispatcher
        self.route = None
        self.path_params = {}
        self.controller = None

    @property
    def environ(self):
        """ The WSGI environ, shared with the middlewares. """
        return self.httprequest._HTTPRequest__environ

    # =====================================================
    # Getters and setters
    # =====================================================
    @lazy_property
    def best_lang(self):
        lang = self.httprequest.accept_languages.best
        if not lang:
            return None

        try:
            code, territory, _, _ = babel.core.parse_locale(lang, sep='-')
            if territory:
                lang = f'{code}_{territory}'
            else:
                lang = babel.core.LOCALE_ALIASES[code]
            return lang
        except (ValueError, KeyError):
            return None

    @property
    def cookies(self):
        """ The request :class:`~plinth.cookies.CookieJar`. """
        return CookieJar.from_environ(self.environ)

    @property
    def session(self):
        return load_session(self.environ)

    @property
    def flash(self):
        return load_flash(self.environ)

    @property
    def request_id(self):
        return self.environ.get('plinth.request_id')

    @property
    def method(self):
        return self.httprequest.method

    @property
    def original_method(self):
        return self.environ.get(middleware.method_override.ORIGINAL_METHOD, self.method)

    # =====================================================
    # URL
    # =====================================================
    @property
    def is_ssl(self):
        return self.httprequest.scheme == 'https'

    @property
    def protocol(self):
        return 'https://' if self.is_ssl else 'http://'

    @property
    def raw_host_with_port(self):
        return self.httprequest.host

    @property
    def host(self):
        host = self.raw_host_with_port
        if host.startswith('['):
            return host[:host.find(']') + 1]
        return host.rsplit(':', 1)[0]

    @property
    def standard_port(self):
        return 443 if self.is_ssl else 80

    @property
    def port(self):
        host = self.raw_host_with_port
        m = re.search(r':(\d+)$', host)
        return int(m.group(1)) if m else self.standard_port

    @property
    def port_string(self):
        return '' if self.port == self.standard_port else f':{self.port}'

    @property
    def host_with_port(self):
        return self.host + self.port_string

    @property
    def base_url(self):
        return self.protocol + self.host_with_port

    @property
    def path(self):
        return self.httprequest.path

    @property
    def url(self):
        return self.httprequest.url

    def domain(self, tld_length=1):
        """ ``example.com`` for ``www.example.com``; ``tld_length`` is the
        number of labels of the top level domain (2 for ``co.uk``). """
        if self._is_ip_host():
            return None
        return '.'.join(self.host.split('.')[-(1 + tld_length):])

    def subdomains(self, tld_length=1):
        if self._is_ip_host():
            return []
        return self.host.split('.')[:-(1 + tld_length)]

    @property
    def subdomain(self):
        return '.'.join(self.subdomains())

    def _is_ip_host(self):
        return bool(re.match(r'^(\d+\.){3}\d+$|^\[', self.host))

    @property
    def is_xhr(self):
        return self.httprequest.headers.get('X-Requested-With', '').lower() == 'xmlhttprequest'

    @property
    def remote_ip(self):
        return self.httprequest.remote_addr

    # =====================================================
    # Formats
    # =====================================================
    @lazy_property
    def formats(self):
        """ Formats accepted by the client, most wanted first: the route
        ``format`` parameter, else the ``Accept`` header unless it comes
        from a browser, else ``html``. """
        fmt = self.path_params.get('format') or self.httprequest.args.get('format')
        if fmt:
            return [fmt]
        accept = self.httprequest.headers.get('Accept')
        if accept and not BROWSER_LIKE_ACCEPTS.search(accept):
            formats = []
            for mimetype, _quality in self.httprequest.accept_mimetypes:
                if mimetype == '*/*':
                    formats.append('*/*')
                    continue
                found = mime.lookup(mimetype)
                if found:
                    formats.append(found.symbol)
            if formats:
                return list(unique(formats))
        return ['js'] if self.is_xhr else ['html']

    @property
    def format(self):
        fmt = self.formats[0]
        return 'html' if fmt == '*/*' else fmt

    # =====================================================
    # Helpers
    # =====================================================

    def get_http_params(self):
        """
        Extract the parameters from the query string, the forms present
        in the body (both application/x-www-form-urlencoded and
        multipart/form-data) and JSON bodies, expanding the bracket
        notation into nested dictionaries and lists.

        :returns: The merged key-value pairs.
        :rtype: dict
        """
        httprequest = self.httprequest
        pairs = [
            *httprequest.args.items(multi=True),
            *httprequest.form.items(multi=True),
            *httprequest.files.items(multi=True),
        ]
        params = parse_nested_query(pairs)
        if httprequest.mimetype in JSON_MIMETYPES and httprequest.content_length:
            try:
                body = json.loads(httprequest.get_data(as_text=True))
            except ValueError as exc:
                raise BadRequest(f"Invalid JSON data: {exc}") from exc
            if isinstance(body, dict):
                params.update(body)
            else:
                params['_json'] = body
        return params

    def _set_request_dispatcher(self, route):
        routing = route.routing
        dispatcher_cls = _dispatchers[routing['type']]
        if (not is_cors_preflight(self, route) and
            not dispatcher_cls.is_compatible_with(self)):
                compatible_dispatchers = [
                    disp.routing_type
                    for disp in _dispatchers.values()
                    if disp.is_compatible_with(self)
                ]
                raise BadRequest(f"Request inferred type is compatible with {compatible_dispatchers} "
                                 f"but {route.path!r} is type={routing['type']!r}.")
        self.dispatcher = dispatcher_cls(self)

    # =====================================================
    # CSRF
    # =====================================================

    def _real_csrf_token(self):
        token = self.session.get(CSRF_TOKEN_SESSION_KEY)
        if not token:
            token = base64.urlsafe_b64encode(os.urandom(AUTHENTICITY_TOKEN_LENGTH)).decode()
            self.session[CSRF_TOKEN_SESSION_KEY] = token
        return base64.urlsafe_b64decode(token)

    def form_authenticity_token(self):
        """ A fresh authenticity token: the session token masked with a
        one-time pad, so that it differs on every page. """
        raw = self._real_csrf_token()
        pad = os.urandom(AUTHENTICITY_TOKEN_LENGTH)
        masked = bytes(a ^ b for a, b in zip(pad, raw))
        return base64.urlsafe_b64encode(pad + masked).decode()

    def validate_csrf(self, csrf):
        """
        Is the given csrf token valid ?

        :param str csrf: The token to validate, masked or not.
        :returns: ``True`` when valid, ``False`` when not.
        :rtype: bool
        """
        if not csrf or not isinstance(csrf, str):
            return False
        if not self.session.get(CSRF_TOKEN_SESSION_KEY):
            return False

        try:
            token = base64.urlsafe_b64decode(csrf)
        except (binascii.Error, ValueError):
            return False

        if len(token) == AUTHENTICITY_TOKEN_LENGTH:
            raw = token
        elif len(token) == 2 * AUTHENTICITY_TOKEN_LENGTH:
            pad, masked = token[:AUTHENTICITY_TOKEN_LENGTH], token[AUTHENTICITY_TOKEN_LENGTH:]
            raw = bytes(a ^ b for a, b in zip(pad, masked))
        else:
            return False
        return hmac.compare_digest(raw, self._real_csrf_token())

    # =====================================================
    # Session
    # =====================================================

    def reset_session(self):
        """ Drop the session data and the flash, the session gets a new
        id when saved. """
        self.session.reset()
        self.environ.pop(FLASH, None)

    def _inject_future_response(self, response):
        response.headers.extend(self.future_response.headers)
        return response

    def redirect(self, location, code=303, local=True):
        if local:
            location = '/' + urlunsplit(urlsplit(location)._replace(scheme='', netloc='')).lstrip('/\\')
        return werkzeug.utils.redirect(location, code, Response=Response)

    def redirect_query(self, location, query=None, code=303, local=True):
        if query:
            location += '?' + urlencode(query)
        return self.redirect(location, code=code, local=local)

    # =====================================================
    # Routing
    # =====================================================

    def _serve(self):
        """ Match the request against the routes and serve it with the
        matching controller action or mounted application. """
        route, args = self.app.routes.match(self.environ)
        self.route = route
        self.path_params = dict(route.defaults, **args)
        self.__dict__.pop('formats', None)
        _logger.debug("Matched %s %s to %s", self.method, self.path, route.requirements)

        if route.app is not None:
            return self._serve_app(route, args)

        self._set_request_dispatcher(route)
        self.dispatcher.pre_dispatch(route, args)
        response = self.dispatcher.dispatch(route, args)
        self.dispatcher.post_dispatch(response)
        return response

    def _serve_app(self, route, args):
        """ Serve a redirection route or a mounted WSGI application. """
        if callable(getattr(route.app, 'location', None)):
            response = route.app(args, self)
            self.dispatcher.post_dispatch(response)
            return response

        environ = dict(self.environ)
        path = environ.get('PATH_INFO') or '/'
        mount_path = args.get('mount_path', '')
        stripped = path.rstrip('/') or '/'
        prefix = stripped[:-(len(mount_path) + 1)] if mount_path else stripped
        prefix = prefix.rstrip('/')
        environ['SCRIPT_NAME'] = environ.get('SCRIPT_NAME', '') + prefix
        environ['PATH_INFO'] = path[len(prefix):] or '/'
        mounted = route.app

        def mounted_app(_environ, start_response):
            return mounted(environ, start_response)
        return mounted_app


class Response(werkzeug.wrappers.Response):
    """
    Outgoing HTTP response with body, status, headers and template
    support. In addition to the :class:`werkzeug.wrappers.Response`
    parameters, this class's constructor can take the following
    additional parameters for lazy rendering.

    :param str template: template to render, e.g. ``'photos/index'``
    :param dict qcontext: rendering context to use
    :param layout: layout name, ``False`` for no layout, ``None`` to look
        it up after the controller
    :param str format: format of the template, ``'html'`` by default

    these attributes are available as parameters on the Response object
    and can be altered at any time before rendering
    """
    default_mimetype = 'text/html'

    def __init__(self, *args, **kw):
        template = kw.pop('template', None)
        qcontext = kw.pop('qcontext', None)
        layout = kw.pop('layout', None)
        format = kw.pop('format', None)
        super().__init__(*args, **kw)
        self.set_default(template, qcontext, layout, format)

    @classmethod
    def load(cls, result, fname="<function>"):
        """
        Convert the return value of an endpoint into a Response.

        :param result: The endpoint return value to load the Response from.
        :type result: Union[Response, werkzeug.wrappers.Response,
            werkzeug.exceptions.HTTPException, str, bytes, dict, list,
            NoneType]
        :param str fname: The endpoint function name wherefrom the
            result emanated, used for logging.
        :returns: The created :class:`~plinth.http.Response`.
        :rtype: Response
        :raises TypeError: When ``result`` type is none of the above-
            mentioned type.
        """
        if isinstance(result, Response):
            return result

        if isinstance(result, werkzeug.exceptions.HTTPException):
            _logger.warning("%s returns an HTTPException instead of raising it.", fname)
            raise result

        if isinstance(result, werkzeug.wrappers.Response):
            response = cls.force_type(result)
            response.set_default()
            return response

        if isinstance(result, (bytes, str, type(None))):
            return cls(result)

        if isinstance(result, (dict, list)):
            return cls(json.dumps(result, default=str), mimetype='application/json')

        raise TypeError(f"{fname} returns an invalid value: {result}")

    def set_default(self, template=None, qcontext=None, layout=None, format=None):
        self.template = template
        self.qcontext = qcontext or dict()
        self.qcontext['response_template'] = self.template
        self.layout = layout
        self.format = format or 'html'

    def render(self):
        """ Renders the Response's template, returns the result. """
        self.qcontext['request'] = request
        return request.app.views.render(
            self.template, self.qcontext, layout=self.layout, format=self.format)

    def flatten(self):
        """
        Forces the rendering of the response's template, sets the result
        as response body and unsets :attr:`.template`
        """
        if self.template:
            self.set_data(self.render())
            self.template = None


def abort(status, *args, **kwargs):
    """ Raise an :class:`~werkzeug.exceptions.HTTPException` for
    ``status``, or serve the given :class:`Response` as is. """
    werkzeug.exceptions.abort(status, *args, **kwargs)


# =========================================================
# Core type-specialized dispatchers
# =========================================================

_dispatchers = {}

class Dispatcher(ABC):
    routing_type: str

    @classmethod
    def __init_subclass__(cls):
        super().__init_subclass__()
        _dispatchers[cls.routing_type] = cls

    def __init__(self, request):
        self.request = request

    @classmethod
    @abstractmethod
    def is_compatible_with(cls, request):
        """
        Determine if the current request is compatible with this
        dispatcher.
        """

    def pre_dispatch(self, route, args):
        """
        Prepare the system before dispatching the request to its
        controller: session saving, CORS headers and preflight requests,
        request size limit.
        """
        routing = route.routing
        if not routing.get('save_session', True):
            self.request.environ[SESSION_SKIP] = True

        set_header = self.request.future_response.headers.set
        cors = routing.get('cors')
        if cors:
            set_header('Access-Control-Allow-Origin', cors)
            set_header('Access-Control-Allow-Methods', (
                'POST' if routing['type'] == 'json'
                else ', '.join(route.verbs or ['GET', 'POST'])
            ))

        if cors and self.request.httprequest.method == 'OPTIONS':
            set_header('Access-Control-Max-Age', CORS_MAX_AGE)
            set_header('Access-Control-Allow-Headers',
                       'Origin, X-Requested-With, Content-Type, Accept, Authorization')
            werkzeug.exceptions.abort(Response(status=204))

        if 'max_content_length' in routing:
            max_content_length = routing['max_content_length']
            if callable(max_content_length):
                max_content_length = max_content_length(self.request)
            self.request.httprequest.max_content_length = max_content_length

    @abstractmethod
    def dispatch(self, route, args):
        """
        Extract the params from the request's body and call the
        controller action.
        """

    def post_dispatch(self, response):
        """
        Manipulate the HTTP response to inject various headers: the
        future response ones and the default security headers.
        """
        if isinstance(response, Response):
            response.flatten()
        self.request._inject_future_response(response)
        if self.request.app is not None:
            self.request.app.set_default_headers(response)

    @abstractmethod
    def handle_error(self, exc: Exception) -> collections.abc.Callable:
        """
        Transform the exception into a valid HTTP response. Called upon
        any exception while serving a request.
        """

    def _call_controller(self, route, args):
        request = self.request
        params = dict(request.get_http_params())
        params.update(request.path_params)
        params['controller'] = route.controller_path
        params['action'] = route.action
        request.params = request.app.parameters_class(params)

        controller_cls = Controller.resolve(route.controller)
        controller = controller_cls(request)
        request.controller = controller
        _logger.debug("Processing by %s#%s as %s", controller_cls.__name__, route.action, request.format)
        return controller.dispatch_action(route.action, request.path_params)


class HttpDispatcher(Dispatcher):
    routing_type = 'http'

    @classmethod
    def is_compatible_with(cls, request):
        return True

    def dispatch(self, route, args):
        """
        Deserialize the request body and query-string, then hand the
        request to the controller action of the ``type='http'`` route.

        See :meth:`~plinth.http.Response.load` method for the compatible
        action return types.
        """
        return self._call_controller(route, args)

    def handle_error(self, exc: Exception) -> collections.abc.Callable:
        """
        Handle any exception that occurred while dispatching a request
        to a `type='http'` route. Also handle exceptions that occurred
        when no route matched the request path.

        :param Exception exc: the exception that occurred.
        :returns: a WSGI application
        """
        if isinstance(exc, SessionExpiredException):
            self.request.reset_session()
            return self.request.redirect_query('/', {'redirect': self.request.httprequest.full_path})

        return (exc if isinstance(exc, HTTPException)
           else Forbidden(exc.args[0] if exc.args else None) if isinstance(exc, (AccessDenied, AccessError))
           else BadRequest(exc.args[0] if exc.args else None) if isinstance(exc, UserError)
           else InternalServerError()  # hide the real error
        )


class JsonDispatcher(Dispatcher):
    routing_type = 'json'

    @classmethod
    def is_compatible_with(cls, request):
        return (request.httprequest.mimetype in JSON_MIMETYPES
                or request.httprequest.method in ('GET', 'HEAD', 'DELETE', 'OPTIONS'))

    def dispatch(self, route, args):
        """
        Call the controller action of a ``type='json'`` route with the
        parameters of the JSON body; the values it returns are
        serialized to JSON.
        """
        response = self._call_controller(route, args)
        if isinstance(response, Response) and response.template:
            response.format = 'json'
        return response

    def handle_error(self, exc: Exception) -> collections.abc.Callable:
        """
        Answer with the ``{"error": {"code", "message", "name"}}`` JSON
        payload, the status being the one of the exception.
        """
        wrapper = ExceptionWrapper(exc)
        status = wrapper.status_code
        if status >= 500 and not isinstance(exc, HTTPException):
            message = "Internal Server Error"
        else:
            message = wrapper.message
        payload = {
            'error': {
                'code': status,
                'message': message,
                'name': wrapper.exception_name,
            }
        }
        response = Response(json.dumps(payload, default=str), status=status, mimetype='application/json')
        self.request._inject_future_response(response)
        return response


# =========================================================
# Controller and routes
# =========================================================

def _dump_json(value):
    return json.dumps(value, default=str)


class Callback:
    """ One entry of a controller callback chain.

    :param str kind: ``'before'``, ``'around'`` or ``'after'``
    :param filter: method name or callable; a callable receives the
        controller (and the block to yield to, for around callbacks)
    """
    def __init__(self, kind, filter, only=None, except_=None, if_=None, unless=None):
        self.kind = kind
        self.filter = filter
        self.only = _as_set(only)
        self.except_ = _as_set(except_)
        self.if_ = _as_conditions(if_)
        self.unless = _as_conditions(unless)

    def __repr__(self):
        return f'<Callback {self.kind} {self.name}>'

    @property
    def name(self):
        return self.filter if isinstance(self.filter, str) else getattr(self.filter, '__name__', repr(self.filter))

    def copy(self):
        new = Callback(self.kind, self.filter)
        new.only, new.except_ = self.only, self.except_
        new.if_, new.unless = list(self.if_), list(self.unless)
        return new

    def applies(self, controller):
        action = controller.action_name
        if self.only is not None and action not in self.only:
            return False
        if self.except_ is not None and action in self.except_:
            return False
        return (all(_check(controller, cond) for cond in self.if_)
            and not any(_check(controller, cond) for cond in self.unless))

    def __call__(self, controller, block=None):
        args = () if block is None else (block,)
        if isinstance(self.filter, str):
            return getattr(controller, self.filter)(*args)
        return self.filter(controller, *args)


def _as_set(value):
    if value is None:
        return None
    if isinstance(value, str):
        return {value}
    return set(value)

def _as_conditions(value):
    if value is None:
        return []
    if isinstance(value, (str, bool)) or callable(value):
        return [value]
    return list(value)

def _check(controller, condition):
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, str):
        return bool(getattr(controller, condition)())
    return bool(condition(controller))


def _callback_decorator(kind):
    def callback_decorator(fn=None, **options):
        def decorator(method):
            method.__dict__.setdefault('_callbacks', []).append((kind, options))
            return method
        if fn is not None:
            return decorator(fn)
        return decorator
    callback_decorator.__name__ = f'{kind}_action'
    callback_decorator.__doc__ = f"""
    Register the decorated controller method as a ``{kind}`` callback of
    its class. Usable bare or with the ``only``, ``except_``, ``if_``,
    ``unless`` and ``prepend`` options::

        @{kind}_action(only=['show', 'edit'])
        def set_photo(self{', block' if kind == 'around' else ''}):
            ...
    """
    return callback_decorator

before_action = _callback_decorator('before')
after_action = _callback_decorator('after')
around_action = _callback_decorator('around')


def rescue_from(*exception_classes):
    """ Register the decorated controller method as the handler of the
    given exception classes. """
    def decorator(method):
        method.__dict__.setdefault('_rescues', []).append(exception_classes)
        return method
    return decorator


def helper_method(method):
    """ Expose the decorated controller method to the templates. """
    method._helper_method = True
    return method


class Controller:
    """
    Base of the application controllers.

    A controller groups the actions serving a resource; the routes point
    to ``'<controller_path>#<action>'``. Subclasses register themselves by
    their :attr:`controller_path`, derived from the class name
    (``PhotosController`` -> ``photos``) and prefixed by the ``namespace``
    class attribute (``admin/photos``). Abstract controllers (``abstract =
    True``) are not registered.

    .. code-block::

        class PhotosController(ApplicationController):
            @before_action(only=['show'])
            def set_photo(self):
                self.photo = Photo.find(self.params['id'])

            def show(self):
                pass  # renders photos/show.html

            def create(self):
                photo = Photo.create(self.photo_params())
                self.redirect_to(self.photo_path(photo), notice="Created")

    Extending a registered controller (same class name) replaces it in the
    registry, the routes then reach the extension.
    """
    abstract = True
    namespace = None
    layout = None
    controller_path = None

    # Unknown hosts are refused by redirect_to, see allow_other_host.
    raise_on_open_redirects = True

    # Forgery protection, see protect_from_forgery().
    forgery_protection_strategy = None
    forgery_protection_origin_check = True

    controllers = {}
    _callbacks = []
    _rescue_handlers = []
    _helper_methods = frozenset()

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls._callbacks = [cb.copy() for cb in cls._callbacks]
        cls._rescue_handlers = list(cls._rescue_handlers)
        cls._helper_methods = set(cls._helper_methods)

        for name, member in list(cls.__dict__.items()):
            for kind, options in getattr(member, '_callbacks', ()):
                cls._add_callback(kind, name, **options)
            for exception_classes in getattr(member, '_rescues', ()):
                cls.rescue_from(*exception_classes, with_=name)
            if getattr(member, '_helper_method', False):
                cls._helper_methods.add(name)

        if 'abstract' not in cls.__dict__:
            cls.abstract = False
        if 'controller_path' not in cls.__dict__:
            name = cls.__name__
            if name.endswith('Controller') and name != 'Controller':
                name = name[:-len('Controller')]
            path = underscore(name)
            cls.controller_path = f'{cls.namespace.strip("/")}/{path}' if cls.namespace else path
        if not cls.abstract:
            previous = Controller.controllers.get(cls.controller_path)
            if previous is not None and previous is not cls:
                _logger.debug("Controller %s replaced by %s", previous.__qualname__, cls.__qualname__)
            Controller.controllers[cls.controller_path] = cls

    @classmethod
    def resolve(cls, controller):
        """ The controller class of a route, given as class or path. """
        if isinstance(controller, type):
            return controller
        try:
            return cls.controllers[controller]
        except KeyError:
            raise RoutingError(f"uninitialized controller {controller!r}") from None

    def __init__(self, request):
        self.request = request
        self.response = None
        self.action_name = None
        self._rendered_format = None
        self._marked_for_same_origin_verification = False

    def __repr__(self):
        return f'<{type(self).__name__} {self.action_name}>'

    def __getattr__(self, attr):
        # named route helpers, photos_path() / photo_url(photo)
        if attr.endswith(('_path', '_url')) and not attr.startswith('_'):
            try:
                return getattr(self.url_helpers, attr)
            except AttributeError:
                pass
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {attr!r}")

    # =====================================================
    # Callbacks
    # =====================================================

    @classmethod
    def _add_callback(cls, kind, *filters, prepend=False, **options):
        callbacks = [Callback(kind, f, **options) for f in filters]
        names = {cb.filter for cb in callbacks}
        cls._callbacks = [cb for cb in cls._callbacks if not (cb.kind == kind and cb.filter in names)]
        if prepend:
            cls._callbacks[:0] = callbacks
        else:
            cls._callbacks.extend(callbacks)

    @classmethod
    def _skip_callback(cls, kind, *filters, raise_=True, only=None, except_=None, if_=None, unless=None):
        for filter in filters:
            found = [cb for cb in cls._callbacks if cb.kind == kind and cb.filter == filter]
            if not found:
                if raise_:
                    raise ValueError(f"{kind.capitalize()} process action callback {filter!r} has not been defined")
                continue
            for callback in found:
                if only is None and except_ is None and if_ is None and unless is None:
                    cls._callbacks.remove(callback)
                    continue
                # skip where the options apply, keep running elsewhere
                skip = Callback(kind, filter, only=only, except_=except_, if_=if_, unless=unless)
                callback.unless.append(skip.applies)

    @classmethod
    def before_action(cls, *filters, **options):
        """ Run ``filters`` (method names or callables) before the
        actions. A filter that renders or redirects halts the chain. """
        cls._add_callback('before', *filters, **options)

    @classmethod
    def after_action(cls, *filters, **options):
        cls._add_callback('after', *filters, **options)

    @classmethod
    def around_action(cls, *filters, **options):
        """ Wrap the actions in ``filters``, which receive the block
        running the rest of the chain. """
        cls._add_callback('around', *filters, **options)

    @classmethod
    def skip_before_action(cls, *filters, **options):
        cls._skip_callback('before', *filters, **options)

    @classmethod
    def skip_after_action(cls, *filters, **options):
        cls._skip_callback('after', *filters, **options)

    @classmethod
    def skip_around_action(cls, *filters, **options):
        cls._skip_callback('around', *filters, **options)

    def _run_callbacks(self, block):
        """ Run ``block`` inside the applicable callbacks. Returns whether
        the chain ran to the action. """
        chain = [cb for cb in self._callbacks if cb.applies(self)]
        reached = False

        def run(index):
            nonlocal reached
            if index == len(chain):
                reached = True
                block()
                return
            callback = chain[index]
            if callback.kind == 'before':
                callback(self)
                if self.performed:
                    _logger.info("Filter chain halted as %s rendered or redirected", callback.name)
                    return
                run(index + 1)
            elif callback.kind == 'around':
                callback(self, lambda: run(index + 1))
            else:
                run(index + 1)
                if reached:
                    callback(self)

        run(0)
        return reached

    # =====================================================
    # Rescue
    # =====================================================

    @classmethod
    def rescue_from(cls, *exception_classes, with_=None):
        """
        Answer the given exceptions with ``with_``, a method name or a
        callable taking the controller and the exception. Handlers are
        searched from the last declared.
        """
        if with_ is None:
            raise ValueError("rescue_from needs a handler, use with_=")
        if not exception_classes:
            raise ValueError("rescue_from needs at least one exception class")
        cls._rescue_handlers = cls._rescue_handlers + [(exception_classes, with_)]

    def _handler_for_rescue(self, exc):
        for exception_classes, handler in reversed(self._rescue_handlers):
            if isinstance(exc, exception_classes):
                if isinstance(handler, str):
                    method = getattr(self, handler)
                    return functools.partial(method, exc) if inspect.signature(method).parameters else method
                return functools.partial(handler, self, exc)
        return None

    # =====================================================
    # Dispatch
    # =====================================================

    @property
    def performed(self):
        return self.response is not None

    def _action_method(self, action):
        if (not action or action.startswith('_')
                or action in _CONTROLLER_RESERVED
                or not callable(getattr(type(self), action, None))):
            raise ActionNotFound(f"The action {action!r} could not be found for {type(self).__name__}")
        return getattr(self, action)

    def dispatch_action(self, action, args=None):
        """
        Run the action ``action`` through the callback chain and return
        the response: the one rendered by the action or a callback, the
        one loaded from the action return value, or the implicit
        rendering of the action template.
        """
        method = self._action_method(action)
        self.action_name = action

        def block():
            # rendered before the after callbacks, which may alter it
            self._render_result(method(**filter_kwargs(method, dict(args or {}))))

        try:
            self._run_callbacks(block)
        except Exception as exc:
            handler = self._handler_for_rescue(exc)
            if handler is None:
                raise
            _logger.debug("Rescuing %s with %s", type(exc).__name__, handler)
            self.response = None
            self._render_result(handler())

        if not self.performed:
            # halted by an around callback, no implicit rendering
            _logger.info("Filter chain halted before %s#%s, nothing rendered",
                         self.controller_path, action)
            self.response = Response()
        return self.response

    def _render_result(self, result):
        if self.performed:
            return
        if result is None:
            self.default_render()
        else:
            self.response = Response.load(result, f"{type(self).__name__}.{self.action_name}")

    def default_render(self):
        """ Render the template of the action, or answer ``204 No
        Content`` when there is none, except for browser page requests. """
        template = f'{self.controller_path}/{self.action_name}'
        fmt = self._rendered_format or self.request.format
        if self.request.app.views.exists(template, fmt):
            return self.render()
        if self.request.method == 'GET' and fmt == 'html' and not self.request.is_xhr:
            raise MissingTemplate([template], self.request.app.views.view_paths)
        _logger.info("No template found for %s#%s, rendering head :no_content",
                     self.controller_path, self.action_name)
        return self.head(204)

    # =====================================================
    # Rendering
    # =====================================================

    def _layout_for(self, layout):
        if layout is None:
            layout = self.layout
        if layout is False:
            return False
        if callable(layout):
            layout = layout(self)
        if isinstance(layout, str):
            return layout if '/' in layout else f'layouts/{layout}'
        return [f'layouts/{self.controller_path}', 'layouts/application']

    def _template_name(self, template=None, action=None):
        if template is None:
            template = action or self.action_name
        if '/' in template:
            return template
        return f'{self.controller_path}/{template}'

    def view_assigns(self):
        """ The public attributes of the controller, given to templates. """
        return {
            key: value
            for key, value in vars(self).items()
            if not key.startswith('_') and key not in _CONTROLLER_PROTECTED_ATTRS
        }

    def _view_context(self, locals_):
        context = self.view_assigns()
        context.update({name: getattr(self, name) for name in self._helper_methods})
        context.update(locals_)
        context['controller'] = self
        return context

    def render(self, template=None, *, action=None, json=None, plain=None, html=None, body=None,
               status=200, layout=None, content_type=None, location=None, format=None, **locals):
        """
        Render the response of the action.

        * ``render()``: the action template, ``<controller_path>/<action>``
        * ``render('edit')`` or ``render(action='edit')``: another template
          of the controller, ``render('shared/form')`` any template
        * ``render(json=obj)``, ``render(plain='OK')``, ``render(html=...)``,
          ``render(body=...)``: the given content

        :param status: code (``422``) or name (``'unprocessable_entity'``)
        :param layout: layout name, ``False`` for none
        :param location: ``Location`` header
        :param locals: template variables
        :raises DoubleRenderError: when the action already rendered or
            redirected
        """
        if self.performed:
            raise DoubleRenderError()
        status = _status_code(status)
        if json is not None:
            data = json if isinstance(json, (str, bytes)) else _dump_json(json)
            response = Response(data, status=status, mimetype=content_type or 'application/json')
        elif plain is not None:
            response = Response(plain, status=status, mimetype=content_type or 'text/plain')
        elif html is not None:
            response = Response(str(html), status=status, mimetype=content_type or 'text/html')
        elif body is not None:
            response = Response(body, status=status, mimetype=content_type or 'text/plain')
        else:
            fmt = format or self._rendered_format or self.request.format
            response = Response(
                template=self._template_name(template, action),
                qcontext=self._view_context(locals),
                layout=self._layout_for(layout),
                format=fmt,
                status=status,
                mimetype=content_type or mime.mimetype_for(fmt, 'text/html'),
            )
        if location is not None:
            response.headers['Location'] = self._compute_location(location)
        self.response = response
        return response

    def render_to_string(self, template=None, *, action=None, layout=False, format=None, **locals):
        """ The rendered template, without touching the response. """
        return self.request.app.views.render(
            self._template_name(template, action),
            self._view_context(locals),
            layout=self._layout_for(layout) if layout is not False else False,
            format=format or self._rendered_format or self.request.format,
        )

    def head(self, status, **headers):
        """ Answer with an empty body, ``head('created', location=url)``. """
        if self.performed:
            raise DoubleRenderError()
        status = _status_code(status)
        response = Response(status=status)
        for key, value in headers.items():
            name = '-'.join(part.capitalize() for part in key.split('_'))
            if name == 'Location':
                value = self._compute_location(value)
            response.headers[name] = str(value)
        if status in (204, 304) or 100 <= status < 200:
            response.headers.pop('Content-Type', None)
        self.response = response
        return response

    def send_data(self, data, filename=None, type=None, disposition='attachment', status=200):
        """
        Answer with ``data`` (``str`` or ``bytes``) to be downloaded or
        displayed ``inline`` by the browser.

        :param filename: suggested to the browser, also gives the
            content type when ``type`` is omitted
        :param type: mimetype or registered format, ``'pdf'``
        """
        if self.performed:
            raise DoubleRenderError()
        response = Response(data, status=_status_code(status), mimetype=self._send_mimetype(filename, type))
        if disposition:
            response.headers['Content-Disposition'] = content_disposition(filename, disposition) \
                if filename else disposition
        response.headers['Content-Transfer-Encoding'] = 'binary'
        self.response = response
        return response

    def send_file(self, path, filename=None, type=None, disposition='attachment', status=200):
        """ Stream the file at ``path``, named after it unless ``filename``
        is given. """
        if self.performed:
            raise DoubleRenderError()
        if not os.path.isfile(path):
            raise werkzeug.exceptions.NotFound(f"Cannot read file {path}")
        filename = filename or os.path.basename(path)
        response = werkzeug.utils.send_file(
            path, self.request.environ,
            mimetype=self._send_mimetype(filename, type),
            download_name=filename, as_attachment=disposition == 'attachment',
            conditional=True, response_class=Response,
        )
        if _status_code(status) != 200:
            response.status_code = _status_code(status)
        if disposition:
            response.headers['Content-Disposition'] = content_disposition(filename, disposition)
        self.response = response
        return response

    @staticmethod
    def _send_mimetype(filename, type):
        if type and '/' in type:
            return type
        if type:
            return mime.mimetype_for(type)
        registered = mime.lookup_by_extension(os.path.splitext(filename)[1]) if filename else None
        return registered.mimetype if registered else 'application/octet-stream'

    def respond_to(self, **handlers):
        """
        Answer according to the format of the request::

            self.respond_to(
                html=None,  # render the action template
                json=lambda: self.render(json=photo),
            )

        The ``any`` handler answers the formats not listed.

        :raises UnknownFormat: when no handler matches the request formats
        """
        for fmt in self.request.formats:
            if fmt == '*/*' and handlers:
                fmt = next(iter(handlers))
            if fmt in handlers:
                handler = handlers[fmt]
                break
            if 'any' in handlers and fmt != 'any':
                handler = handlers['any']
                break
        else:
            raise UnknownFormat(f"{type(self).__name__}#{self.action_name} is missing a template "
                                f"for this request format: {self.request.formats}")
        if fmt == 'any':
            fmt = self.request.format
        self._rendered_format = fmt
        if handler is None:
            return self.render()
        result = handler()
        if not self.performed and result is not None:
            self.response = Response.load(result, f"{type(self).__name__}.{self.action_name}")
        return self.response

    # =====================================================
    # Redirections
    # =====================================================

    def _compute_location(self, location):
        if isinstance(location, dict):
            return self.url_for(location)
        if callable(location):
            location = location()
        location = str(location)
        if re.match(r'^[A-Za-z][A-Za-z0-9+.-]*:', location) or location.startswith('//'):
            return location
        if location.startswith('/'):
            return self.request.base_url + location
        return self.request.base_url + '/' + location

    def _is_other_host(self, location):
        netloc = urlsplit(location).netloc
        return bool(netloc) and netloc.lower() != self.request.host_with_port.lower() \
            and netloc.lower() != self.request.raw_host_with_port.lower()

    def redirect_to(self, location, status=302, allow_other_host=None, **flash):
        """
        Redirect the browser to ``location``: a path, a URL, options for
        :meth:`url_for` or a callable returning one of them.

        :param status: 302 by default, 301 for permanent redirections, 303
            after non-GET requests
        :param allow_other_host: allow URLs of other hosts
        :param flash: ``notice=``, ``alert=`` or ``flash={...}`` messages
        :raises UnsafeRedirectError: for other hosts when not allowed
        """
        if self.performed:
            raise DoubleRenderError()
        if allow_other_host is None:
            allow_other_host = not self.raise_on_open_redirects
        location = self._compute_location(location)
        if not allow_other_host and self._is_other_host(location):
            raise UnsafeRedirectError(
                f"Unsafe redirect to {location!r}, pass allow_other_host=True to redirect anyway.")
        for key, value in flash.pop('flash', {}).items():
            self.flash[key] = value
        for key, value in flash.items():
            self.flash[key] = value
        self.response = werkzeug.utils.redirect(location, _status_code(status), Response=Response)
        return self.response

    def redirect_back(self, fallback_location, allow_other_host=None, **options):
        """ Redirect to the referrer, ``fallback_location`` when there is
        none or it is an unallowed host. """
        if allow_other_host is None:
            allow_other_host = not self.raise_on_open_redirects
        referrer = self.request.httprequest.referrer
        if referrer and (allow_other_host or not self._is_other_host(referrer)):
            return self.redirect_to(referrer, allow_other_host=allow_other_host, **options)
        return self.redirect_to(fallback_location, allow_other_host=allow_other_host, **options)

    # =====================================================
    # Conditional GET
    # =====================================================

    def fresh_when(self, etag=None, last_modified=None, public=False):
        """
        Set the response validators and answer ``304 Not Modified`` when
        the ones of the request match them.

        :param etag: any value, hashed into a weak ETag
        :param datetime last_modified: last modification of the content
        :returns: whether the client copy is fresh
        """
        headers = self.request.future_response.headers
        digest = None
        if etag is not None:
            digest = hashlib.md5(
                json.dumps(etag, default=str, sort_keys=True).encode(), usedforsecurity=False
            ).hexdigest()
            headers['ETag'] = werkzeug.http.quote_etag(digest, weak=True)
        if last_modified is not None:
            if last_modified.tzinfo is None:
                last_modified = last_modified.replace(tzinfo=timezone.utc)
            headers['Last-Modified'] = werkzeug.http.http_date(last_modified)
        cache_control = headers.get('Cache-Control')
        if cache_control is None:
            headers['Cache-Control'] = 'public' if public else 'max-age=0, private, must-revalidate'
        elif public:
            headers['Cache-Control'] = cache_control.replace('private', 'public')

        if self.request.method not in ('GET', 'HEAD') or (digest is None and last_modified is None):
            return False
        fresh = not werkzeug.http.is_resource_modified(
            self.request.environ, etag=digest, last_modified=last_modified)
        if fresh:
            self.head(304)
        return fresh

    def stale(self, etag=None, last_modified=None, public=False):
        """ ``if self.stale(last_modified=photo.updated_at): ...`` """
        return not self.fresh_when(etag=etag, last_modified=last_modified, public=public)

    def expires_in(self, seconds, public=False, must_revalidate=False, stale_while_revalidate=None,
                   stale_if_error=None, immutable=False, **extras):
        """
        Let the clients and proxies cache the response for ``seconds`` (or
        a :class:`~datetime.timedelta`)::

            self.expires_in(timedelta(minutes=20), public=True, must_revalidate=True)
            # Cache-Control: max-age=1200, public, must-revalidate

        The ``extras`` are appended as ``key=value`` directives.
        """
        directives = [f'max-age={_seconds(seconds)}', 'public' if public else 'private']
        if must_revalidate:
            directives.append('must-revalidate')
        if stale_while_revalidate is not None:
            directives.append(f'stale-while-revalidate={_seconds(stale_while_revalidate)}')
        if stale_if_error is not None:
            directives.append(f'stale-if-error={_seconds(stale_if_error)}')
        if immutable:
            directives.append('immutable')
        directives.extend(f"{key.replace('_', '-')}={value}" for key, value in extras.items())

        headers = self.request.future_response.headers
        headers['Cache-Control'] = ', '.join(directives)
        headers.setdefault('Date', werkzeug.http.http_date())

    def expires_now(self):
        """ Clients must revalidate the response before using it again. """
        self.request.future_response.headers['Cache-Control'] = 'no-cache'

    def no_store(self):
        """ The response must not be cached at all. """
        self.request.future_response.headers['Cache-Control'] = 'no-store'

    def http_cache_forever(self, public=False):
        """
        Cache the response for a hundred years, for content that never
        changes under a given URL::

            if self.http_cache_forever(public=True):
                self.render()

        :returns: whether the client copy is stale, see :meth:`stale`
        """
        self.expires_in(HTTP_CACHE_FOREVER, public=public, immutable=True)
        return self.stale(etag=self.request.httprequest.full_path,
                          last_modified=HTTP_CACHE_FOREVER_SINCE, public=public)

    # =====================================================
    # HTTP Basic authentication
    # =====================================================

    @classmethod
    def http_basic_authenticate_with(cls, name, password, realm='Application', **options):
        """ Require the credentials before the actions, ``password`` being
        plain text or a passlib hash. """
        def authenticate(controller):
            controller.authenticate_or_request_with_http_basic(
                realm, lambda n, p: _check_credentials(name, password, n, p))
        authenticate.__name__ = 'http_basic_authenticate'
        cls.before_action(authenticate, **options)

    def authenticate_or_request_with_http_basic(self, realm='Application', check=None, message=None):
        """ ``check(username, password)`` the credentials of the request,
        answer ``401`` with a challenge when they are missing or wrong. """
        auth = self.request.httprequest.authorization
        if auth is not None and auth.type == 'basic' and check is not None \
                and check(auth.username or '', auth.password or ''):
            return True
        self.request_http_basic_authentication(realm, message)
        return False

    def request_http_basic_authentication(self, realm='Application', message=None):
        realm = realm.replace('"', '')
        response = Response(message or "HTTP Basic: Access denied.\n", status=401, mimetype='text/plain')
        response.headers['WWW-Authenticate'] = f'Basic realm="{realm}"'
        self.response = response
        return response

    def authenticate_with_http_basic(self, check):
        """ ``check(username, password)`` the basic credentials of the
        request, ``None`` when there are none. """
        auth = self.request.httprequest.authorization
        if auth is None or auth.type != 'basic':
            return None
        return check(auth.username or '', auth.password or '')

    # =====================================================
    # HTTP Token authentication
    # =====================================================

    def authenticate_with_http_token(self, check):
        """
        ``check(token, options)`` the ``Authorization: Token token="..."``
        (or ``Bearer``) credentials of the request.

        :returns: the result of ``check``, ``None`` without credentials
        """
        parsed = http_authentication.token_and_options(
            self.request.httprequest.headers.get('Authorization'))
        if parsed is None:
            return None
        token, options = parsed
        return check(token, options)

    def authenticate_or_request_with_http_token(self, realm='Application', check=None, message=None):
        result = self.authenticate_with_http_token(check) if check is not None else None
        if result:
            return result
        self.request_http_token_authentication(realm, message)
        return False

    def request_http_token_authentication(self, realm='Application', message=None):
        realm = realm.replace('"', '')
        response = Response(message or "HTTP Token: Access denied.\n", status=401, mimetype='text/plain')
        response.headers['WWW-Authenticate'] = f'Token realm="{realm}"'
        self.response = response
        return response

    # =====================================================
    # HTTP Digest authentication
    # =====================================================

    def _http_auth_secret(self):
        salt = self.request.app.config.get('http_auth_salt') or http_authentication.HTTP_AUTH_SALT
        return self.request.app.key_generator.generate_key(salt)

    def authenticate_with_http_digest(self, realm='Application', password_for=None):
        """ Validate the digest credentials of the request against
        ``password_for(username)``, the password or its HA1 hash. """
        header = self.request.httprequest.headers.get('Authorization', '')
        if not header.startswith('Digest ') or password_for is None:
            return False
        return http_authentication.validate_digest_response(
            self.request.original_method, header, realm, self._http_auth_secret(), password_for)

    def authenticate_or_request_with_http_digest(self, realm='Application', password_for=None, message=None):
        if self.authenticate_with_http_digest(realm, password_for):
            return True
        self.request_http_digest_authentication(realm, message)
        return False

    def request_http_digest_authentication(self, realm='Application', message=None):
        realm = realm.replace('"', '')
        response = Response(message or "HTTP Digest: Access denied.\n", status=401, mimetype='text/plain')
        response.headers['WWW-Authenticate'] = http_authentication.digest_authentication_header(
            realm, self._http_auth_secret())
        self.response = response
        return response

    # =====================================================
    # Forgery protection
    # =====================================================

    @classmethod
    def protect_from_forgery(cls, with_='exception', prepend=False, **options):
        """
        Verify the authenticity token of the non-GET requests.

        :param with_: what to do with unverified requests: raise
            :class:`InvalidAuthenticityToken` (``'exception'``), run the
            action with an empty session (``'null_session'``) or drop
            the session (``'reset_session'``)
        """
        if with_ not in ('exception', 'null_session', 'reset_session'):
            raise ValueError(f"Invalid forgery protection strategy {with_!r}")
        cls.forgery_protection_strategy = with_
        cls.before_action('verify_authenticity_token', prepend=prepend, **options)
        cls.after_action('verify_same_origin_request')

    @classmethod
    def skip_forgery_protection(cls, **options):
        cls.skip_before_action('verify_authenticity_token', raise_=False, **options)

    def verify_authenticity_token(self):
        self._marked_for_same_origin_verification = self.request.method == 'GET'
        if self.verified_request():
            return
        if not self.any_authenticity_token_given():
            _logger.debug(MISSING_CSRF_WARNING, self.request.path)
        _logger.warning("Can't verify CSRF token authenticity.")
        self.handle_unverified_request()

    def handle_unverified_request(self):
        strategy = self.forgery_protection_strategy
        if strategy == 'null_session':
            environ = self.request.environ
            null_session = Session({}, None, new=True)
            null_session.can_save = False
            environ[SESSION] = null_session
            environ.pop(FLASH, None)
            environ[SESSION_SKIP] = True
            environ[COOKIE_JAR] = NullCookieJar(environ)
        elif strategy == 'reset_session':
            self.reset_session()
        else:
            raise InvalidAuthenticityToken("Can't verify CSRF token authenticity.")

    def verify_same_origin_request(self):
        """ GET requests answered with JavaScript must come from XHR, a
        ``<script>`` tag of another site could read them otherwise. """
        if self._marked_for_same_origin_verification and self._non_xhr_javascript_response():
            _logger.warning(CROSS_ORIGIN_JAVASCRIPT_WARNING)
            raise InvalidCrossOriginRequest(CROSS_ORIGIN_JAVASCRIPT_WARNING)

    def _non_xhr_javascript_response(self):
        mimetype = self.response.mimetype if self.response is not None else None
        return bool(mimetype and JAVASCRIPT_MIMETYPE.match(mimetype)) and not self.request.is_xhr

    def verified_request(self):
        route = self.request.route
        routing = route.routing if route is not None else {}
        csrf = routing.get('csrf', routing.get('type', 'http') != 'json')
        return (not self.forgery_protection_strategy
                or not csrf
                or self.request.method in CSRF_FREE_METHODS
                or (self.valid_request_origin() and self.any_authenticity_token_valid()))

    def valid_request_origin(self):
        if not self.forgery_protection_origin_check:
            return True
        origin = self.request.httprequest.headers.get('Origin')
        if origin is None:
            return True
        if origin == self.request.base_url:
            return True
        _logger.warning("HTTP Origin header (%s) didn't match request.base_url (%s)",
                        origin, self.request.base_url)
        return False

    def _request_authenticity_tokens(self):
        return [
            self.request.params.get('authenticity_token'),
            self.request.httprequest.headers.get('X-CSRF-Token'),
        ]

    def any_authenticity_token_given(self):
        return any(self._request_authenticity_tokens())

    def any_authenticity_token_valid(self):
        return any(self.request.validate_csrf(token) for token in self._request_authenticity_tokens())

    @helper_method
    def form_authenticity_token(self):
        return self.request.form_authenticity_token()

    @helper_method
    def protect_against_forgery(self):
        return bool(self.forgery_protection_strategy)

    # =====================================================
    # Content security policy
    # =====================================================

    @classmethod
    def content_security_policy(cls, configure=None, enabled=True, **options):
        """ Adjust the application policy for the actions of the
        controller; ``enabled=False`` sends no policy. """
        def set_content_security_policy(controller):
            environ = controller.request.environ
            if not enabled:
                environ[csp.POLICY] = None
                return
            base = environ.get(csp.POLICY)
            policy = base.copy() if base is not None else csp.ContentSecurityPolicy()
            if configure is not None:
                configure(policy)
            environ[csp.POLICY] = policy
        cls.before_action(set_content_security_policy, **options)

    @classmethod
    def content_security_policy_report_only(cls, report_only=True, **options):
        def set_content_security_policy_report_only(controller):
            controller.request.environ[csp.POLICY_REPORT_ONLY] = report_only
        cls.before_action(set_content_security_policy_report_only, **options)

    @helper_method
    def content_security_policy_nonce(self):
        return csp.nonce_for(self.request.environ)

    # =====================================================
    # Accessors
    # =====================================================

    @property
    def params(self):
        return self.request.params

    @property
    def session(self):
        return self.request.session

    @property
    def cookies(self):
        return self.request.cookies

    @property
    def flash(self):
        return self.request.flash

    @property
    def formats(self):
        return [self._rendered_format] if self._rendered_format else self.request.formats

    @lazy_property
    def url_helpers(self):
        return self.request.app.routes.url_helpers(self.request.environ)

    def url_for(self, name_or_options, *args, **params):
        """ URL of a named route or of ``{'controller', 'action'}``
        options; a missing controller means this one. """
        if isinstance(name_or_options, dict):
            name_or_options = dict(name_or_options)
            name_or_options.setdefault('controller', self.controller_path)
        return self.request.app.routes.url_for(
            name_or_options, *args, _environ=self.request.environ, **params)

    def reset_session(self):
        self.request.reset_session()


_CONTROLLER_PROTECTED_ATTRS = frozenset({'request', 'response', 'action_name', 'url_helpers'})
_CONTROLLER_RESERVED = frozenset(
    name for name, value in vars(Controller).items()
    if callable(value) or isinstance(value, (property, classmethod, lazy_property))
)
Controller._helper_methods = frozenset(
    name for name, value in vars(Controller).items() if getattr(value, '_helper_method', False)
)


def _check_credentials(name, password, given_name, given_password):
    if not consteq(name.encode(), given_name.encode()):
        return False
    scheme = crypt_context.identify(password)
    if scheme and scheme != 'plaintext':
        return crypt_context.verify(given_password, password)
    return consteq(password.encode(), given_password.encode())


def route(route=None, **routing):
    """
    Decorate a controller method in order to route incoming requests
    matching the given URL and options to the decorated method, next to
    the routes drawn on the application.

    .. warning::
        It is mandatory to re-decorate any method that is overridden in
        controller extensions but the arguments can be omitted. See
        :class:`~plinth.http.Controller` for more details.

    :param Union[str, Iterable[str]] route: The paths that the decorated
        method is serving, in werkzeug rule syntax
        (``/photos/<int:photo_id>/thumbnail``). The path parameters are
        given to the method as keyword arguments.
    :param str type: The type of request, either ``'json'`` or
        ``'http'``. It describes where to find the request parameters
        and how to serialize the response.
    :param Iterable[str] methods: A list of http methods (verbs) this
        route applies to. If not specified, all methods are allowed.
    :param str cors: The Access-Control-Allow-Origin cors directive value.
    :param bool csrf: Whether CSRF protection should be enabled for the
        route. Enabled by default for ``'http'``-type requests, disabled
        by default for ``'json'``-type requests.
    :param bool save_session: Whether the session is saved after the
        request, ``True`` by default.
    :param max_content_length: The request body size limit, or a
        callable computing it from the request.
    :param dict defaults: Values of the parameters missing from the path.
    :param str as_: The name of the route, for the url helpers.
    """
    def decorator(endpoint):
        fname = f"<function {endpoint.__module__}.{endpoint.__name__}>"

        # Sanitize the routing
        assert routing.get('type', 'http') in _dispatchers.keys()
        if route:
            routing['routes'] = [route] if isinstance(route, str) else list(route)
        wrong = routing.pop('method', None)
        if wrong is not None:
            _logger.warning("%s defined with invalid routing parameter 'method', assuming 'methods'", fname)
            routing['methods'] = wrong
        unknown = set(routing) - ROUTING_KEYS - {'routes'}
        if unknown:
            _logger.warning("%s defined with unknown routing parameters %s", fname, unknown)

        @functools.wraps(endpoint)
        def route_wrapper(self, *args, **params):
            params_ok = filter_kwargs(endpoint, params)
            params_ko = set(params) - set(params_ok)
            if params_ko:
                _logger.warning("%s called ignoring args %s", fname, params_ko)
            return endpoint(self, *args, **params_ok)

        route_wrapper.original_routing = routing
        route_wrapper.original_endpoint = endpoint
        return route_wrapper
    return decorator


def _check_and_complete_route_definition(controller_cls, submethod, merged_routing):
    """Verify and complete the route definition.

    * Ensure 'type' is defined on each method's own routing.
    * Ensure overrides don't change the routing type.

    :param submethod: route method
    :param dict merged_routing: accumulated routing values
    """
    default_type = submethod.original_routing.get('type', 'http')
    routing_type = merged_routing.setdefault('type', default_type)
    if submethod.original_routing.get('type') not in (None, routing_type):
        _logger.warning(
            "The endpoint %s changes the route type, using the original type: %r.",
            f'{controller_cls.__module__}.{controller_cls.__name__}.{submethod.__name__}',
            routing_type)
    submethod.original_routing['type'] = routing_type


def _generate_routing_rules(controllers):
    """
    Two-fold algorithm used to (1) determine which method in the
    controller inheritance tree should bind to what URL and (2) merge the
    various @route arguments of said method with the @route arguments of
    the method it overrides.

    :param controllers: the registered controller classes
    :returns: the :class:`~plinth.routing.Route` of the decorated methods
    """
    for ctrl in unique(controllers):
        for method_name, method in inspect.getmembers(ctrl, inspect.isfunction):
            # Skip this method if it is not @route decorated anywhere in
            # the hierarchy
            def is_method_a_route(cls):
                return getattr(cls.__dict__.get(method_name), 'original_routing', None) is not None
            if not any(map(is_method_a_route, ctrl.mro())):
                continue

            merged_routing = {
                # 'type': 'http',  # set below
                'methods': None,
                'routes': [],
            }

            for cls in unique(reversed(ctrl.mro()[:-1])):  # ancestors first
                if method_name not in cls.__dict__:
                    continue
                submethod = cls.__dict__[method_name]

                if not hasattr(submethod, 'original_routing'):
                    _logger.warning("The endpoint %s is not decorated by @route(), decorating it myself.",
                                    f'{cls.__module__}.{cls.__name__}.{method_name}')
                    submethod = route()(submethod)

                _check_and_complete_route_definition(cls, submethod, merged_routing)

                merged_routing.update(submethod.original_routing)

            if not merged_routing['routes']:
                _logger.warning("%s is a controller endpoint without any route, skipping.",
                                f'{ctrl.__module__}.{ctrl.__name__}.{method_name}')
                continue

            routing = submap(merged_routing, ROUTING_KEYS - {'methods', 'defaults', 'as_'})
            for index, path in enumerate(merged_routing['routes']):
                yield Route(
                    path,
                    verbs=merged_routing['methods'],
                    controller=ctrl,
                    action=method_name,
                    name=merged_routing.get('as_') if index == 0 else None,
                    defaults=merged_routing.get('defaults'),
                    routing=dict(routing),
                    raw=True,
                )


# =========================================================
# WSGI Layer
# =========================================================

class Application:
    """
    Plinth WSGI Application

    .. code-block::

        app = Application(secret_key_base='...', view_path=['views'])

        @app.routes.draw
        def routes(r):
            r.root('pages#home')
            r.resources('photos')

    :param overrides: configuration values taking precedence over the
        ones of :data:`plinth.tools.config`
    """
    # See also: https://www.python.org/dev/peps/pep-3333

    def __init__(self, **overrides):
        self.config = dict(config.copy(), **overrides)
        self.routes = RouteSet(default_url_options=self.config.get('default_url_options'))
        self.middleware = middleware.MiddlewareStack()
        self.cookies_rotations = {'signed': [], 'encrypted': []}
        self.content_security_policy_report_only = False
        self.content_security_policy_nonce_generator = None
        self.content_security_policy_nonce_directives = None
        self._content_security_policy = None
        self._controller_routes = None
        self._chain = None
        self._lock = threading.RLock()
        self._load_default_middleware()

    def __repr__(self):
        return f'<{type(self).__name__} {self.config.get("app") or ""}>'.replace(' >', '>')

    def _load_default_middleware(self):
        cfg = self.config
        stack = self.middleware
        if cfg.get('hosts'):
            stack.use(middleware.HostAuthorization, hosts=cfg['hosts'])
        if cfg.get('force_ssl'):
            stack.use(middleware.SSL)
        if cfg.get('serve_static_files') and cfg.get('public_path'):
            stack.use(middleware.Static, cfg['public_path'])
        stack.use(middleware.MethodOverride)
        stack.use(middleware.RequestId)
        stack.use(middleware.Runtime)
        stack.use(middleware.ShowExceptions, middleware.PublicExceptions(cfg.get('public_path')))
        stack.use(middleware.DebugExceptions, self.routes)
        stack.use(middleware.Cookies)
        stack.use(middleware.SessionMiddleware)
        stack.use(middleware.ContentSecurityPolicyMiddleware)

    # =====================================================
    # Configuration
    # =====================================================

    @property
    def dev_mode(self):
        return bool(self.config.get('dev_mode'))

    @lazy_property
    def key_generator(self):
        """ The key derivation of the signed and encrypted cookies. """
        secret = self.config.get('secret_key_base')
        if not secret:
            if not self.dev_mode:
                raise ValueError("Missing `secret_key_base`, set it in the configuration file "
                                 "or the PLINTH_SECRET_KEY_BASE environment variable.")
            _logger.warning("No secret_key_base configured, using a random one: "
                            "the sessions won't survive a restart.")
            secret = binascii.hexlify(os.urandom(64)).decode()
        return CachingKeyGenerator(KeyGenerator(secret, iterations=1000))

    @lazy_property
    def session_store(self):
        cfg = self.config
        options = {
            'key': cfg.get('session_key') or '_plinth_session',
            'secure': bool(cfg.get('force_ssl')),
            'same_site': cfg.get('cookies_same_site_protection'),
        }
        kind = cfg.get('session_store') or 'cookie'
        if kind == 'filesystem':
            path = cfg.get('session_dir')
            if path:
                os.makedirs(path, 0o700, exist_ok=True)
            return FilesystemSessionStore(path, **options)
        if kind == 'memory':
            return MemorySessionStore(**options)
        if kind == 'cookie':
            return CookieStore(**options)
        raise ValueError(f"Unknown session store {kind!r}")

    @lazy_property
    def views(self):
        from .view import ViewRenderer  # noqa: PLC0415
        view_paths = self.config.get('view_path') or ['views']
        if isinstance(view_paths, str):
            view_paths = [view_paths]
        return ViewRenderer(view_paths, app=self, auto_reload=self.dev_mode)

    @lazy_property
    def parameters_class(self):
        """ :class:`~plinth.parameters.Parameters` honoring the
        ``action_on_unpermitted_parameters`` of this application. """
        action = self.config.get('action_on_unpermitted_parameters', 'log')
        return type('Parameters', (Parameters,), {'action_on_unpermitted_parameters': action or False})

    def rotate_cookies(self, kind, **options):
        """ Accept the signed or encrypted cookies produced with older
        settings (``secret``, ``digest``, ``cipher``, ``salt``). """
        if kind not in self.cookies_rotations:
            raise ValueError(f"Unknown cookie kind {kind!r}")
        self.cookies_rotations[kind].append(options)

    def content_security_policy(self, configure=None, report_only=None):
        """
        Set the policy of the application, ``configure`` receiving a
        :class:`~plinth.content_security_policy.ContentSecurityPolicy`.
        Usable as a decorator::

            @app.content_security_policy
            def policy(p):
                p.default_src(p.SELF, p.HTTPS)
                p.script_src(p.SELF)
        """
        if report_only is not None:
            self.content_security_policy_report_only = report_only
        if configure is None:
            return self._content_security_policy
        self._content_security_policy = csp.ContentSecurityPolicy(configure)
        return configure

    # =====================================================
    # Routes
    # =====================================================

    def draw(self, fn):
        """ Same as ``app.routes.draw``. """
        with self._lock:
            self._remove_controller_routes()
            return self.routes.draw(fn)

    def _remove_controller_routes(self):
        if self._controller_routes is None:
            return
        for route in self._controller_routes:
            self.routes.routes.remove(route)
            if route.name and self.routes.named_routes.get(route.name) is route:
                del self.routes.named_routes[route.name]
        self.routes._map = None
        self._controller_routes = None

    def load_controller_routes(self):
        """ Add the routes of the ``@route`` decorated methods after the
        drawn ones, once. """
        with self._lock:
            if self._controller_routes is not None:
                return
            routes = []
            for route in _generate_routing_rules(Controller.controllers.values()):
                _logger.debug("Adding route %s for %s", route.path, route.requirements)
                routes.append(self.routes.add_route(route))
            self._controller_routes = routes

    def url_for(self, name_or_options, *args, **params):
        """ URL generation outside of requests, using the
        ``default_url_options`` of the configuration. """
        self.load_controller_routes()
        return self.routes.url_for(name_or_options, *args, **params)

    # =====================================================
    # Serving
    # =====================================================

    @property
    def chain(self):
        """ The middleware stack wrapped around the routes, built once. """
        with self._lock:
            if self._chain is None:
                self._chain = self.middleware.build(self._serve)
            return self._chain

    def set_default_headers(self, response):
        for header, value in DEFAULT_HEADERS.items():
            response.headers.setdefault(header, value)
        if (response.mimetype or '').startswith('image/') and csp.HEADER not in response.headers:
            response.headers['Content-Security-Policy'] = "default-src 'none'"

    def _prepare_environ(self, environ):
        cfg = self.config
        environ[KEY_GENERATOR] = self.key_generator
        environ[SAME_SITE_PROTECTION] = cfg.get('cookies_same_site_protection')
        environ[COOKIES_ROTATIONS] = self.cookies_rotations
        environ[SESSION_STORE] = self.session_store
        environ[csp.POLICY] = self._content_security_policy
        environ[csp.POLICY_REPORT_ONLY] = self.content_security_policy_report_only
        environ[csp.NONCE_GENERATOR] = self.content_security_policy_nonce_generator
        environ[csp.NONCE_DIRECTIVES] = self.content_security_policy_nonce_directives
        environ[SHOW_EXCEPTIONS] = cfg.get('show_exceptions') or 'all'
        environ[SHOW_DETAILED_EXCEPTIONS] = self.dev_mode
        environ[ROUTES] = self.routes

    def __call__(self, environ, start_response):
        """
        WSGI application entry point.

        :param dict environ: container for CGI environment variables
            such as the request HTTP headers, the source IP address and
            the body as an io file.
        :param callable start_response: function provided by the WSGI
            server that this application must call in order to send the
            HTTP response status line and the response headers.
        """
        current_thread = threading.current_thread()
        current_thread.perf_t0 = time.time()
        if hasattr(current_thread, 'request_id'):
            del current_thread.request_id

        if self.config.get('proxy_mode') and environ.get("HTTP_X_FORWARDED_HOST"):
            # The ProxyFix middleware has a side effect of updating the
            # environ, see https://github.com/pallets/werkzeug/pull/2184
            def fake_app(environ, start_response):
                return []
            def fake_start_response(status, headers):
                return
            ProxyFix(fake_app)(environ, fake_start_response)

        self.load_controller_routes()
        self._prepare_environ(environ)
        return self.chain(environ, start_response)

    def _serve(self, environ, start_response):
        """ The innermost application of the middleware chain. """
        current_thread = threading.current_thread()
        with HTTPRequest(environ) as httprequest:
            request = Request(httprequest, self)
            environ[csp.CONTEXT] = request
            _request_stack.push(request)

            try:
                current_thread.url = httprequest.url
                _logger_request.info("Started %s \"%s\" for %s", request.method, httprequest.full_path.rstrip('?'),
                                     request.remote_ip)
                response = request._serve()
                status_code = getattr(response, 'status_code', None)
                if status_code is not None:
                    _logger_request.info("Completed %s %s in %.1fms", status_code,
                                         werkzeug.http.HTTP_STATUS_CODES.get(status_code, ''),
                                         (time.time() - current_thread.perf_t0) * 1000)
                return response(environ, start_response)

            except Exception as exc:
                # Valid (2xx/3xx) response returned via werkzeug.exceptions.abort.
                if isinstance(exc, HTTPException) and exc.code is None:
                    response = exc.get_response()
                    request.dispatcher.post_dispatch(response)
                    return response(environ, start_response)

                # Ensure there is always a WSGI handler attached to the
                # exception, the exceptions middlewares log and answer it.
                if not hasattr(exc, 'error_response'):
                    exc.error_response = request.dispatcher.handle_error(exc)
                raise

            finally:
                _request_stack.pop()
