# Part of Plinth, see License file for full copyright and licensing details.
import re
import threading
import time
import uuid

from . import HeadersMiddleware

REQUEST_ID = 'plinth.request_id'


def _environ_key(header):
    return 'HTTP_' + header.upper().replace('-', '_')


class RequestId(HeadersMiddleware):
    """ Give every request an id, exposed as ``environ['plinth.request_id']``,
    in the logs and in the response header. The id sent by the client (or a
    front proxy) is kept when it looks sane, a UUID is generated otherwise. """
    def __init__(self, app, header='X-Request-Id'):
        super().__init__(app)
        self.header = header

    def __call__(self, environ, start_response):
        request_id = self.make_request_id(environ.get(_environ_key(self.header)))
        environ[REQUEST_ID] = request_id
        threading.current_thread().request_id = request_id
        return super().__call__(environ, start_response)

    def process_response(self, environ, status, headers):
        headers[self.header] = environ[REQUEST_ID]
        return status

    @staticmethod
    def make_request_id(request_id):
        if request_id:
            request_id = re.sub(r'[^\w\-@]', '', request_id)[:255]
        return request_id or str(uuid.uuid4())


class Runtime(HeadersMiddleware):
    """ ``X-Runtime``: seconds spent producing the response. """
    HEADER = 'X-Runtime'

    def __call__(self, environ, start_response):
        environ['plinth.runtime_t0'] = time.monotonic()
        return super().__call__(environ, start_response)

    def process_response(self, environ, status, headers):
        if self.HEADER not in headers:
            elapsed = time.monotonic() - environ['plinth.runtime_t0']
            headers[self.HEADER] = '%.6f' % elapsed
        return status
