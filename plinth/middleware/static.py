# Part of Plinth, see License file for full copyright and licensing details.
import logging
import os

from werkzeug.middleware.shared_data import SharedDataMiddleware

_logger = logging.getLogger(__name__)


class Static(SharedDataMiddleware):
    """ Serve the files of the ``public`` directory. Requests for a path
    without file go to the application; so do all the non GET/HEAD
    requests.

    :param headers: extra headers of the served files, e.g.
        ``{'Cache-Control': 'public, max-age=31536000'}``
    :param index: file served for directory paths
    """
    def __init__(self, app, root, index='index.html', headers=None, cache_timeout=60 * 60 * 12):
        self.root = os.path.abspath(root)
        self.index = index
        self.extra_headers = dict(headers or {})
        _logger.debug("Serving static files from %s", self.root)
        super().__init__(app, {'/': self.root}, cache_timeout=cache_timeout)

    def __call__(self, environ, start_response):
        if environ.get('REQUEST_METHOD', 'GET').upper() not in ('GET', 'HEAD'):
            return self.app(environ, start_response)
        path = environ.get('PATH_INFO') or '/'
        if path.endswith('/') and self.index:
            candidate = os.path.join(self.root, path.strip('/'), self.index)
            if os.path.isfile(candidate):
                environ = dict(environ, PATH_INFO=path + self.index)
        if not self.extra_headers:
            return super().__call__(environ, start_response)

        def _start_response(status, headers, exc_info=None):
            if status.startswith('200') or status.startswith('304'):
                headers = list(headers) + list(self.extra_headers.items())
            return start_response(status, headers, exc_info)
        return super().__call__(environ, _start_response)
