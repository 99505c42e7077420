# Part of Plinth, see License file for full copyright and licensing details.
"""
Protection against DNS rebinding and ``Host`` header attacks: only the
requests aimed at one of the allowed hosts reach the application.
"""
import ipaddress
import json
import logging
import re

from werkzeug.wrappers import Request, Response

_logger = logging.getLogger(__name__)

BLOCKED_HOSTS = 'plinth.blocked_hosts'

_VALID_IP_HOSTNAME = re.compile(r'^\[?(?P<host>[0-9a-f:.]+?)\]?(:\d+)?$', re.IGNORECASE)
_VALID_DOMAIN = re.compile(r'^(?P<host>[a-z0-9.-]+)(:\d+)?$', re.IGNORECASE)


class Permissions:
    """ The allowed hosts: strings (a leading dot allows the domain and its
    subdomains), compiled regular expressions or ``ipaddress`` networks. """
    def __init__(self, hosts):
        self.hosts = [self._sanitize(h) for h in hosts or ()]

    def __bool__(self):
        return bool(self.hosts)

    @staticmethod
    def _sanitize(host):
        if isinstance(host, str):
            if host.startswith('.'):
                return re.compile(r'^(?:.*\.)?%s$' % re.escape(host[1:]), re.IGNORECASE)
            return host.lower()
        return host

    def allows(self, host):
        host = self._extract_hostname(host)
        if host is None:
            return False
        for allowed in self.hosts:
            if isinstance(allowed, re.Pattern):
                if allowed.match(host):
                    return True
            elif isinstance(allowed, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
                try:
                    if ipaddress.ip_address(host) in allowed:
                        return True
                except ValueError:
                    continue
            elif allowed == host:
                return True
        return False

    @staticmethod
    def _extract_hostname(host):
        if not host:
            return None
        m = _VALID_IP_HOSTNAME.match(host)
        if m:
            try:
                ipaddress.ip_address(m.group('host'))
                return m.group('host').lower()
            except ValueError:
                pass
        m = _VALID_DOMAIN.match(host)
        return m.group('host').lower() if m else None


def default_response_app(environ, start_response):
    request = Request(environ)
    hosts = ', '.join(environ.get(BLOCKED_HOSTS) or blocked_hosts(environ, None))
    body = f'Blocked hosts: {hosts}'
    if request.accept_mimetypes.best == 'application/json':
        return Response(json.dumps({'status': 403, 'error': body}), status=403,
                        mimetype='application/json')(environ, start_response)
    return Response(body, status=403, mimetype='text/plain')(environ, start_response)


def blocked_hosts(environ, permissions):
    hosts = [environ.get('HTTP_HOST') or environ.get('SERVER_NAME', '')]
    forwarded = environ.get('HTTP_X_FORWARDED_HOST')
    if forwarded:
        hosts.append(forwarded.split(',')[-1].strip())
    if permissions is None:
        return [h for h in hosts if h]
    return [h for h in hosts if not permissions.allows(h)]


class HostAuthorization:
    """ Answer 403 to the requests whose ``Host`` (or ``X-Forwarded-Host``)
    header is not allowed. An empty ``hosts`` list allows everything.

    :param exclude: callable ``(environ) -> bool`` of the requests which are
        never checked (e.g. health checks)
    :param response_app: WSGI application answering the blocked requests
    """
    def __init__(self, app, hosts=(), exclude=None, response_app=None):
        self.app = app
        self.permissions = Permissions(hosts)
        self.exclude = exclude
        self.response_app = response_app or default_response_app

    def __call__(self, environ, start_response):
        if not self.permissions or (self.exclude and self.exclude(environ)):
            return self.app(environ, start_response)
        blocked = blocked_hosts(environ, self.permissions)
        if not blocked:
            return self.app(environ, start_response)
        environ[BLOCKED_HOSTS] = blocked
        _logger.error("Blocked hosts: %s", ', '.join(blocked))
        return self.response_app(environ, start_response)
