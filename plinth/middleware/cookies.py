# Part of Plinth, see License file for full copyright and licensing details.
from ..cookies import COOKIE_JAR
from . import HeadersMiddleware


class Cookies(HeadersMiddleware):
    """ Write the ``Set-Cookie`` headers of the request cookie jar, if the
    request used one. """
    def process_response(self, environ, status, headers):
        jar = environ.get(COOKIE_JAR)
        if jar is not None and not jar.committed:
            jar.write(headers)
            jar.commit()
        return status
