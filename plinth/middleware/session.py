# Part of Plinth, see License file for full copyright and licensing details.
import logging

from .. import session
from . import HeadersMiddleware

_logger = logging.getLogger(__name__)


class SessionMiddleware(HeadersMiddleware):
    """ Give the requests their session store and save the session (and
    the flash) into the cookie jar before :class:`~.cookies.Cookies`
    writes it. Sits inside ``Cookies`` in the stack. """
    def __init__(self, app, store=None):
        super().__init__(app)
        self.store = store

    def __call__(self, environ, start_response):
        if self.store is not None:
            environ.setdefault(session.SESSION_STORE, self.store)
        return super().__call__(environ, start_response)

    def process_response(self, environ, status, headers):
        if environ.get(session.SESSION_SKIP):
            _logger.debug("Session not saved for %s", environ.get('PATH_INFO'))
            return status
        session.commit_session(environ)
        return status
