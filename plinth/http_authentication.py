# Part of Plinth, see License file for full copyright and licensing details.
"""
Header side of the HTTP Token and Digest authentication schemes, used by
the controller methods ``authenticate_or_request_with_http_token`` and
``authenticate_or_request_with_http_digest``.

Token credentials come as::

    Authorization: Token token="abc", nonce="def"
    Authorization: Bearer abc

Digest credentials follow :rfc:`2617` with ``qop=auth`` and MD5; the
server nonce embeds its creation time and is valid for five minutes.
"""
import base64
import binascii
import hashlib
import hmac
import re
import time


__all__ = [
    'decode_digest_credentials',
    'digest_authentication_header',
    'encode_digest_credentials',
    'encode_token_credentials',
    'token_and_options',
    'validate_digest_response',
]

TOKEN_KEY = 'token='
TOKEN_REGEX = re.compile(r'^(Token|Bearer)\s+')
AUTHN_PAIR_DELIMITERS = re.compile(r'[,;\t]')

HTTP_AUTH_SALT = 'http authentication'
NONCE_TIMEOUT = 5 * 60


def _md5(*parts):
    data = b':'.join(p if isinstance(p, bytes) else str(p).encode() for p in parts)
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


# ---------------------------------------------------------
# Token
# ---------------------------------------------------------

def token_and_options(authorization):
    """
    Parse a token ``Authorization`` header.

    :returns: ``(token, options)`` or ``None`` when the header does not
        hold token credentials
    """
    authorization = authorization or ''
    if not TOKEN_REGEX.match(authorization):
        return None
    raw_params = [
        param.strip()
        for param in AUTHN_PAIR_DELIMITERS.split(TOKEN_REGEX.sub('', authorization))
    ]
    raw_params = [param for param in raw_params if param]
    if not raw_params:
        return None
    if not raw_params[0].startswith(TOKEN_KEY):
        raw_params[0] = TOKEN_KEY + raw_params[0]

    params = []
    for param in raw_params:
        key, _, value = param.partition('=')
        params.append((key, re.sub(r'^"|"$', '', value)))
    (_, token), options = params[0], dict(params[1:])
    return token, options

def encode_token_credentials(token, **options):
    """ ``Authorization`` value for ``token``, what clients send. """
    values = [f'{TOKEN_KEY}"{token}"'] + [f'{key}="{value}"' for key, value in options.items()]
    return 'Token ' + ', '.join(values)


# ---------------------------------------------------------
# Digest
# ---------------------------------------------------------

def nonce(secret_key, timestamp=None):
    timestamp = int(time.time() if timestamp is None else timestamp)
    digest = _md5(timestamp, secret_key)
    return base64.b64encode(f'{timestamp}:{digest}'.encode()).decode()

def validate_nonce(secret_key, value, timeout=NONCE_TIMEOUT):
    if not value:
        return False
    try:
        timestamp = int(base64.b64decode(value).decode().split(':')[0])
    except (ValueError, binascii.Error, UnicodeDecodeError):
        return False
    return hmac.compare_digest(nonce(secret_key, timestamp).encode(), value.encode()) \
        and abs(timestamp - time.time()) <= timeout

def opaque(secret_key):
    return _md5(secret_key)

def ha1(credentials, password):
    return _md5(credentials.get('username', ''), credentials.get('realm', ''), password)

def expected_response(method, uri, credentials, password, password_is_ha1=True):
    a1 = password if password_is_ha1 else ha1(credentials, password)
    a2 = _md5(method.upper(), uri)
    return _md5(a1, credentials.get('nonce', ''), credentials.get('nc', ''),
                credentials.get('cnonce', ''), credentials.get('qop', ''), a2)

def decode_digest_credentials(header):
    credentials = {}
    for pair in re.sub(r'^Digest\s+', '', header or '').split(','):
        key, _, value = pair.partition('=')
        credentials[key.strip()] = re.sub(r'^"|"$', '', value).replace("'", '')
    return credentials

def encode_digest_credentials(method, credentials, password, password_is_ha1=False):
    """ ``Authorization`` value answering a digest challenge. """
    credentials = dict(credentials)
    credentials['response'] = expected_response(
        method, credentials['uri'], credentials, password, password_is_ha1)
    return 'Digest ' + ', '.join(f"{key}='{value}'" for key, value in sorted(credentials.items()))

def validate_digest_response(method, header, realm, secret_key, password_procedure):
    """
    Check the digest ``header`` against the password given by
    ``password_procedure(username)``, either the password itself or its
    HA1 hash (``md5('user:realm:password')``).
    """
    credentials = decode_digest_credentials(header)
    if not validate_nonce(secret_key, credentials.get('nonce')):
        return False
    if realm != credentials.get('realm') or opaque(secret_key) != credentials.get('opaque'):
        return False
    password = password_procedure(credentials.get('username'))
    if not password:
        return False

    uri = credentials.get('uri', '')
    given = credentials.get('response', '')
    return any(
        hmac.compare_digest(expected_response(method, u, credentials, password, is_ha1).encode(), given.encode())
        for u in (uri + '?', uri)
        for is_ha1 in (True, False)
    )

def digest_authentication_header(realm, secret_key):
    return (f'Digest realm="{realm}", qop="auth", algorithm=MD5, '
            f'nonce="{nonce(secret_key)}", opaque="{opaque(secret_key)}"')
