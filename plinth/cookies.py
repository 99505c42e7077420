# Part of Plinth, see License file for full copyright and licensing details.
"""
Per-request cookie jar.

The jar is built from the incoming ``Cookie`` header the first time it is
asked for (:meth:`CookieJar.from_environ`) and written into the response by
the :class:`~plinth.middleware.cookies.Cookies` middleware.

Values set through the chained jars are serialized to JSON and protected::

    cookies['theme'] = 'dark'                              # plain text
    cookies.permanent['remember'] = 'yes'                  # expires in 20 years
    cookies.signed['user_id'] = 42                         # tamper-proof
    cookies.encrypted['discount'] = 45                     # opaque and tamper-proof
    cookies.permanent.signed['login'] = 'alice'            # chained

Reading back a tampered, expired, or foreign value gives ``None``.
"""
import logging
import re
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone

from werkzeug.datastructures import Headers
from werkzeug.http import dump_cookie, parse_cookie

from .tools.messages import (
    InvalidMessage,
    KeyGenerator,
    MessageEncryptor,
    MessageVerifier,
)

_logger = logging.getLogger(__name__)

__all__ = ['CookieJar', 'CookieOverflow', 'NullCookieJar']

MAX_COOKIE_SIZE = 4096

# environ keys, filled in by the application
COOKIE_JAR = 'plinth.cookie_jar'
KEY_GENERATOR = 'plinth.key_generator'
SAME_SITE_PROTECTION = 'plinth.cookies_same_site_protection'
COOKIES_ROTATIONS = 'plinth.cookies_rotations'
ALWAYS_WRITE_COOKIE = 'plinth.always_write_cookie'

SIGNED_COOKIE_SALT = 'signed cookie'
AUTHENTICATED_ENCRYPTED_COOKIE_SALT = 'authenticated encrypted cookie'
SIGNED_COOKIE_DIGEST = 'sha256'
ENCRYPTED_COOKIE_CIPHER = 'aes-256-gcm'


class CookieOverflow(Exception):
    """ Raised when a cookie value exceeds 4K. """


def _utcnow():
    return datetime.now(timezone.utc)

def _retired_key_generator(generator, secret_key_base):
    """ Derive the keys of a retired secret the way ``generator`` does. """
    current = getattr(generator, 'key_generator', generator)
    return KeyGenerator(secret_key_base, iterations=current.iterations, hash_digest=current.hash_digest)


class _CookieRequest:
    """ The request facts the jar needs, read from the WSGI environ. """
    def __init__(self, environ):
        self.environ = environ
        host = environ.get('HTTP_HOST') or environ.get('SERVER_NAME', '')
        # strip the port, keep IPv6 literals
        if host.startswith('['):
            host = host[:host.find(']') + 1]
        else:
            host = host.rsplit(':', 1)[0]
        self.host = host.lower()
        self.is_ssl = environ.get('wsgi.url_scheme') == 'https'

    @property
    def key_generator(self):
        generator = self.environ.get(KEY_GENERATOR)
        if generator is None:
            raise RuntimeError("Signed and encrypted cookies require a secret_key_base.")
        return generator

    @property
    def cookies_same_site_protection(self):
        value = self.environ.get(SAME_SITE_PROTECTION, 'lax')
        return value(self) if callable(value) else value

    @property
    def cookies_rotations(self):
        return self.environ.get(COOKIES_ROTATIONS) or {}


class _ChainedJars:
    @property
    def permanent(self):
        return PermanentCookieJar(self)

    @property
    def signed(self):
        return SignedKeyRotatingCookieJar(self)

    @property
    def encrypted(self):
        return EncryptedKeyRotatingCookieJar(self)

    @property
    def signed_or_encrypted(self):
        if self.request.environ.get(KEY_GENERATOR) is not None:
            return self.encrypted
        return self.signed


class CookieJar(_ChainedJars, Mapping):
    def __init__(self, environ, cookies=None):
        self.request = _CookieRequest(environ)
        if cookies is None:
            cookies = parse_cookie(environ)
        self._cookies = dict(cookies)
        self._set_cookies = {}
        self._delete_cookies = {}
        self.committed = False

    @classmethod
    def from_environ(cls, environ):
        jar = environ.get(COOKIE_JAR)
        if jar is None:
            jar = environ[COOKIE_JAR] = cls(environ)
        return jar

    # ------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------

    def __getitem__(self, name):
        return self._cookies[str(name)]

    def get(self, name, default=None):
        return self._cookies.get(str(name), default)

    def __iter__(self):
        return iter(self._cookies)

    def __len__(self):
        return len(self._cookies)

    def __contains__(self, name):
        return str(name) in self._cookies

    def __repr__(self):
        return f'<CookieJar {self._cookies!r}>'

    def to_header(self):
        return '; '.join(f'{k}={v}' for k, v in self._cookies.items())

    # ------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------

    def __setitem__(self, name, options):
        if isinstance(options, Mapping):
            options = dict(options)
            value = options.pop('value')
        else:
            value, options = options, {}
        self.set(name, value, **options)

    def set(self, name, value, **options):
        """ Set the cookie ``name`` to the string ``value``.

        :param path: defaults to ``/``
        :param domain: a domain, ``'all'`` for the registrable domain of the
            request host (``tld_length`` picks the number of labels kept), a
            list of domains (the one matching the request host is used) or a
            callable receiving the request
        :param expires: a datetime, or a timedelta from now
        :param max_age: seconds
        :param secure: only sent (and only written) over HTTPS
        :param httponly: hidden from scripts
        :param same_site: ``'lax'``, ``'strict'``, ``'none'`` or ``None``;
            defaults to the application setting
        """
        name = str(name)
        value = '' if value is None else str(value)
        options = self._handle_options(options)
        self._cookies[name] = value
        self._set_cookies[name] = dict(options, value=value)
        self._delete_cookies.pop(name, None)
        return value

    def delete(self, name, **options):
        """ Remove the cookie from the jar and expire it on the client.
        Give the ``path``/``domain`` used when it was set. """
        name = str(name)
        if name not in self._cookies:
            return None
        options = self._handle_options(options)
        value = self._cookies.pop(name)
        self._set_cookies.pop(name, None)
        self._delete_cookies[name] = options
        return value

    def is_deleted(self, name, **options):
        name = str(name)
        if name not in self._delete_cookies:
            return False
        options = self._handle_options(options)
        deleted = self._delete_cookies[name]
        return all(deleted.get(k) == options.get(k) for k in ('path', 'domain'))

    def clear(self, **options):
        for name in list(self._cookies):
            self.delete(name, **options)

    def update(self, other):
        self._cookies.update(other)
        return self

    def commit(self):
        self.committed = True

    def write(self, headers):
        """ Append the ``Set-Cookie`` headers of the jar to ``headers`` (a
        werkzeug :class:`~werkzeug.datastructures.Headers`). """
        if self.committed:
            return headers
        for name, options in self._set_cookies.items():
            if self._write_cookie(options):
                headers.add('Set-Cookie', self._dump(name, options['value'], options))
        for name, options in self._delete_cookies.items():
            headers.add('Set-Cookie', self._dump(name, '', dict(
                options,
                expires=datetime(1970, 1, 1, tzinfo=timezone.utc),
                max_age=0,
            )))
        return headers

    def set_cookie_headers(self):
        """ ``Set-Cookie`` header values the jar would write. """
        return self.write(Headers()).getlist('Set-Cookie')

    def _dump(self, name, value, options):
        expires = options.get('expires')
        max_age = options.get('max_age')
        if isinstance(max_age, timedelta):
            max_age = int(max_age.total_seconds())
        same_site = options.get('same_site')
        return dump_cookie(
            name, value,
            max_age=max_age,
            expires=expires,
            path=options.get('path', '/'),
            domain=options.get('domain'),
            secure=bool(options.get('secure')),
            httponly=bool(options.get('httponly')),
            samesite=str(same_site).capitalize() if same_site else None,
        )

    def _write_cookie(self, options):
        return (
            self.request.is_ssl
            or not options.get('secure')
            or bool(self.request.environ.get(ALWAYS_WRITE_COOKIE))
            or self.request.host.endswith('.onion')
        )

    def _handle_options(self, options):
        options = dict(options)
        expires = options.get('expires')
        if isinstance(expires, timedelta):
            options['expires'] = _utcnow() + expires
        options.setdefault('path', '/')
        if 'same_site' not in options:
            options['same_site'] = self.request.cookies_same_site_protection

        domain = options.get('domain')
        tld_length = options.pop('tld_length', None)
        host = self.request.host
        if domain in ('all', ':all'):
            options['domain'] = self._registrable_domain(host, tld_length)
        elif isinstance(domain, (list, tuple)):
            options['domain'] = next((
                d for d in domain
                if host == d.lstrip('.') or host.endswith('.' + d.lstrip('.'))
            ), None)
        elif callable(domain):
            options['domain'] = domain(self.request)
        return options

    @staticmethod
    def _registrable_domain(host, tld_length=None):
        labels = host.split('.')
        if re.match(r'^[\d.]+$', host) or '' in labels or len(labels) == 1:
            return None
        if tld_length:
            if len(labels) < tld_length:
                return None
            return '.'.join(labels[-tld_length:])
        # co.uk, com.au style top level domains
        if re.search(r'\.[^.]{2,3}\.[^.]{2}$', host):
            return '.'.join(labels[-3:])
        return '.'.join(labels[-2:])


class NullCookieJar(CookieJar):
    """ An empty jar that writes nothing, given to the requests failing
    the forgery protection. """
    def __init__(self, environ):
        super().__init__(environ, cookies={})

    def write(self, headers):
        return headers


class AbstractCookieJar(_ChainedJars):
    """ Jar layered over its parent jar, transforming values on the way in
    and out. """
    def __init__(self, parent_jar):
        self.parent_jar = parent_jar
        self.request = parent_jar.request

    def __getitem__(self, name):
        return self.get(name)

    def get(self, name, default=None):
        data = self.parent_jar.get(str(name))
        if data is None:
            return default
        result = self._parse(name, data, purpose=f'cookie.{name}')
        if result is None:
            result = self._parse(name, data)
        return default if result is None else result

    def __contains__(self, name):
        return self.get(name) is not None

    def __setitem__(self, name, options):
        if isinstance(options, Mapping) and 'value' in options:
            options = dict(options)
        else:
            options = {'value': options}
        self._commit(str(name), options)
        self.parent_jar[name] = options

    def delete(self, name, **options):
        return self.parent_jar.delete(name, **options)

    def _parse(self, name, data, purpose=None):
        return data

    def _commit(self, name, options):
        pass

    def _cookie_metadata(self, name, options):
        meta = {'purpose': f'cookie.{name}'}
        expires = options.get('expires')
        if isinstance(expires, timedelta):
            expires = options['expires'] = _utcnow() + expires
        if isinstance(expires, datetime):
            meta['expires_at'] = expires
        return meta

    def _check_for_overflow(self, name, options):
        size = len(options['value'].encode('utf-8'))
        if size > MAX_COOKIE_SIZE:
            raise CookieOverflow(f"{name} cookie overflowed with size {size} bytes")


class PermanentCookieJar(AbstractCookieJar):
    def _commit(self, name, options):
        options['expires'] = _utcnow() + timedelta(days=365 * 20)


class _SerializedCookieJar(AbstractCookieJar):
    def _rotated(self, name, value):
        """ The value was read with a retired secret: write it back with the
        current one. """
        _logger.debug("Rewriting cookie %s with the current secret", name)
        self[name] = {'value': value}


class SignedKeyRotatingCookieJar(_SerializedCookieJar):
    def __init__(self, parent_jar):
        super().__init__(parent_jar)
        generator = self.request.key_generator
        self.verifier = MessageVerifier(generator.generate_key(SIGNED_COOKIE_SALT), digest=SIGNED_COOKIE_DIGEST)
        for rotation in self.request.cookies_rotations.get('signed', []):
            rotation = dict(rotation)
            if 'secret_key_base' in rotation:
                rotation['secret'] = _retired_key_generator(
                    generator, rotation.pop('secret_key_base')).generate_key(SIGNED_COOKIE_SALT)
            self.verifier.rotate(**rotation)

    def _parse(self, name, data, purpose=None):
        rotated = []
        value = self.verifier.verified(data, purpose=purpose, on_rotation=lambda: rotated.append(True))
        if value is not None and rotated:
            self._rotated(name, value)
        return value

    def _commit(self, name, options):
        options['value'] = self.verifier.generate(options['value'], **self._cookie_metadata(name, options))
        self._check_for_overflow(name, options)


class EncryptedKeyRotatingCookieJar(_SerializedCookieJar):
    def __init__(self, parent_jar):
        super().__init__(parent_jar)
        generator = self.request.key_generator
        key_len = MessageEncryptor.key_len(ENCRYPTED_COOKIE_CIPHER)
        secret = generator.generate_key(AUTHENTICATED_ENCRYPTED_COOKIE_SALT, key_len)
        self.encryptor = MessageEncryptor(secret, cipher=ENCRYPTED_COOKIE_CIPHER)
        for rotation in self.request.cookies_rotations.get('encrypted', []):
            rotation = dict(rotation)
            if 'secret_key_base' in rotation:
                retired = _retired_key_generator(generator, rotation.pop('secret_key_base'))
                rotation['secret'] = retired.generate_key(AUTHENTICATED_ENCRYPTED_COOKIE_SALT, key_len)
            self.encryptor.rotate(**rotation)

    def _parse(self, name, data, purpose=None):
        rotated = []
        try:
            value = self.encryptor.decrypt_and_verify(data, purpose=purpose, on_rotation=lambda: rotated.append(True))
        except InvalidMessage:
            return None
        if value is not None and rotated:
            self._rotated(name, value)
        return value

    def _commit(self, name, options):
        options['value'] = self.encryptor.encrypt_and_sign(options['value'], **self._cookie_metadata(name, options))
        self._check_for_overflow(name, options)
