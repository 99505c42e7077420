# -*- coding: utf-8 -*-
# Part of Plinth, see License file for full copyright and licensing details.
"""
WSGI middlewares and the ordered stack an application is built from.

The first middleware of a :class:`MiddlewareStack` is the outermost one: it
sees the request first and the response last.
"""
import logging

from werkzeug.datastructures import Headers

_logger = logging.getLogger(__name__)


class Middleware:
    """ A middleware class and the arguments it is built with. """
    __slots__ = ('klass', 'args', 'kwargs')

    def __init__(self, klass, args=(), kwargs=None):
        self.klass = klass
        self.args = tuple(args)
        self.kwargs = dict(kwargs or {})

    def __repr__(self):
        return f'<Middleware {self.name}>'

    @property
    def name(self):
        return getattr(self.klass, '__name__', repr(self.klass))

    def build(self, app):
        return self.klass(app, *self.args, **self.kwargs)


class MiddlewareStack:
    def __init__(self, middlewares=()):
        self.middlewares = list(middlewares)

    def __iter__(self):
        return iter(self.middlewares)

    def __len__(self):
        return len(self.middlewares)

    def __getitem__(self, index):
        return self.middlewares[index]

    def __contains__(self, klass):
        return any(m.klass is klass for m in self.middlewares)

    def __repr__(self):
        return '<MiddlewareStack %s>' % ', '.join(m.name for m in self.middlewares)

    def _index(self, target, where):
        if isinstance(target, int):
            return target
        for i, middleware in enumerate(self.middlewares):
            if middleware.klass is target:
                return i
        raise ValueError(f"No such middleware to {where}: {target!r}")

    def use(self, klass, *args, **kwargs):
        """ Append ``klass`` at the inner end of the stack. """
        self.middlewares.append(Middleware(klass, args, kwargs))

    def unshift(self, klass, *args, **kwargs):
        """ Prepend ``klass`` at the outer end of the stack. """
        self.middlewares.insert(0, Middleware(klass, args, kwargs))

    def insert_before(self, target, klass, *args, **kwargs):
        index = self._index(target, 'insert before')
        self.middlewares.insert(index, Middleware(klass, args, kwargs))

    insert = insert_before

    def insert_after(self, target, klass, *args, **kwargs):
        index = self._index(target, 'insert after')
        self.middlewares.insert(index + 1, Middleware(klass, args, kwargs))

    def swap(self, target, klass, *args, **kwargs):
        index = self._index(target, 'swap')
        self.middlewares[index] = Middleware(klass, args, kwargs)

    def delete(self, target):
        del self.middlewares[self._index(target, 'delete')]

    def build(self, app):
        """ Wrap ``app`` into every middleware of the stack. """
        for middleware in reversed(self.middlewares):
            _logger.debug("Building middleware %s", middleware.name)
            app = middleware.build(app)
        return app


class HeadersMiddleware:
    """ Middleware changing the response status line and headers.

    Subclasses override :meth:`process_response`, which receives the
    werkzeug :class:`~werkzeug.datastructures.Headers` of the response.
    """
    def __init__(self, app):
        self.app = app

    def __call__(self, environ, start_response):
        def _start_response(status, headers, exc_info=None):
            headers = Headers(headers)
            status = self.process_response(environ, status, headers) or status
            return start_response(status, headers.to_wsgi_list(), exc_info)
        return self.app(environ, _start_response)

    def process_response(self, environ, status, headers):
        """ Update ``headers`` in place, may return a new status line. """
        return status


from .host_authorization import HostAuthorization
from .ssl import SSL
from .static import Static
from .method_override import MethodOverride
from .request_id import RequestId, Runtime
from .exceptions import DebugExceptions, ExceptionWrapper, PublicExceptions, ShowExceptions
from .cookies import Cookies
from .session import SessionMiddleware
from ..content_security_policy import ContentSecurityPolicyMiddleware
