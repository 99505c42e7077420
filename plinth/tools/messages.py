# Part of Plinth, see License file for full copyright and licensing details.
"""
Signed and encrypted messages.

A message is a JSON document made tamper-proof (:class:`MessageVerifier`)
or opaque and tamper-proof (:class:`MessageEncryptor`) with a secret
derived from the application ``secret_key_base`` by a
:class:`KeyGenerator`. Both carry optional metadata: an expiry date and a
purpose, so a value signed for a cookie named ``a`` cannot be replayed in
a cookie named ``b``.

Wire formats::

    signed:     <base64 json>--<hex hmac>
    encrypted:  <base64 ciphertext>--<base64 iv>--<base64 auth tag>
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import threading
from datetime import datetime, timedelta, timezone

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .func import synchronized
from .misc import consteq

__all__ = [
    'CachingKeyGenerator',
    'InvalidMessage',
    'InvalidSignature',
    'KeyGenerator',
    'MessageEncryptor',
    'MessageVerifier',
]

_logger = logging.getLogger(__name__)

METADATA_KEY = '_plinth'
SEPARATOR = '--'


class InvalidSignature(Exception):
    pass


class InvalidMessage(Exception):
    pass


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')

def _decode(data: str) -> bytes:
    return base64.b64decode(data.encode('ascii'), validate=True)

def _utcnow():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------
# Key derivation
# ---------------------------------------------------------

class KeyGenerator:
    """ Derive keys from a secret with PBKDF2-HMAC, one key per salt. """
    def __init__(self, secret, iterations=2 ** 16, hash_digest='sha256'):
        if isinstance(secret, str):
            secret = secret.encode('utf-8')
        self.secret = secret
        self.iterations = iterations
        self.hash_digest = hash_digest

    def generate_key(self, salt, key_size=64):
        if isinstance(salt, str):
            salt = salt.encode('utf-8')
        return hashlib.pbkdf2_hmac(self.hash_digest, self.secret, salt, self.iterations, key_size)


class CachingKeyGenerator:
    """ Memoize the keys of a :class:`KeyGenerator`, the derivation being
    intentionally slow. """
    def __init__(self, key_generator):
        self.key_generator = key_generator
        self._cache = {}
        self._lock = threading.RLock()

    @synchronized()
    def generate_key(self, salt, key_size=64):
        key = (salt, key_size)
        if key not in self._cache:
            self._cache[key] = self.key_generator.generate_key(salt, key_size)
        return self._cache[key]


# ---------------------------------------------------------
# Metadata
# ---------------------------------------------------------

def _wrap(value, expires_at=None, expires_in=None, purpose=None):
    if expires_in is not None:
        if not isinstance(expires_in, timedelta):
            expires_in = timedelta(seconds=expires_in)
        expires_at = _utcnow() + expires_in
    if expires_at is None and purpose is None:
        return value
    meta = {'data': value}
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        meta['exp'] = expires_at.isoformat()
    if purpose is not None:
        meta['pur'] = str(purpose)
    return {METADATA_KEY: meta}

def _unwrap(payload, purpose=None):
    """ Return ``(True, value)`` when the metadata of ``payload`` matches
    ``purpose`` and is not expired, ``(False, None)`` otherwise. """
    if not (isinstance(payload, dict) and set(payload) == {METADATA_KEY}):
        return (purpose is None, payload if purpose is None else None)

    meta = payload[METADATA_KEY]
    if meta.get('pur') != (str(purpose) if purpose is not None else None):
        return (False, None)
    if 'exp' in meta and datetime.fromisoformat(meta['exp']) <= _utcnow():
        return (False, None)
    return (True, meta['data'])


# ---------------------------------------------------------
# Verifier
# ---------------------------------------------------------

class MessageVerifier:
    """ Generate and verify signed messages.

    .. code-block:: python

        verifier = MessageVerifier(secret)
        token = verifier.generate({'user_id': 1}, expires_in=3600, purpose='login')
        verifier.verified(token, purpose='login')  # {'user_id': 1}
        verifier.verified(token)                   # None, wrong purpose

    Older secrets can be kept readable with :meth:`rotate`, messages they
    signed are accepted and ``on_rotation`` is called so the caller can
    re-sign them with the current secret.
    """
    def __init__(self, secret, digest='sha1'):
        if not secret:
            raise ValueError("Secret should not be empty.")
        self.secret = secret.encode('utf-8') if isinstance(secret, str) else secret
        self.digest = digest.lower()
        self.rotations = []

    def rotate(self, secret, digest=None):
        self.rotations.append(MessageVerifier(secret, digest or self.digest))
        return self

    def generate(self, value, expires_at=None, expires_in=None, purpose=None):
        data = _encode(json.dumps(
            _wrap(value, expires_at, expires_in, purpose),
            separators=(',', ':'),
        ).encode('utf-8'))
        return f'{data}{SEPARATOR}{self._digest(data)}'

    def valid_message(self, message):
        data, digest = self._split(message)
        return data is not None and consteq(digest, self._digest(data))

    def verified(self, message, purpose=None, on_rotation=None):
        """ Return the value of a valid message, ``None`` when the message
        is tampered, expired or was generated for another purpose. """
        for index, verifier in enumerate([self, *self.rotations]):
            if not verifier.valid_message(message):
                continue
            data, _ = verifier._split(message)
            try:
                payload = json.loads(_decode(data))
            except (ValueError, binascii.Error):
                return None
            ok, value = _unwrap(payload, purpose)
            if not ok:
                return None
            if index and on_rotation:
                on_rotation()
            return value
        return None

    def verify(self, message, purpose=None):
        value = self.verified(message, purpose=purpose)
        if value is None:
            raise InvalidSignature(message)
        return value

    def _split(self, message):
        if not isinstance(message, str) or not message:
            return None, None
        data, sep, digest = message.rpartition(SEPARATOR)
        if not sep or not data or not digest:
            return None, None
        return data, digest

    def _digest(self, data):
        return hmac.new(self.secret, data.encode('utf-8'), self.digest).hexdigest()


# ---------------------------------------------------------
# Encryptor
# ---------------------------------------------------------

class MessageEncryptor:
    """ Encrypt and authenticate messages with AES-256-GCM. """
    CIPHERS = {'aes-256-gcm': 32}
    IV_LENGTH = 12
    TAG_LENGTH = 16

    @classmethod
    def key_len(cls, cipher='aes-256-gcm'):
        return cls.CIPHERS[cipher]

    def __init__(self, secret, cipher='aes-256-gcm'):
        if cipher not in self.CIPHERS:
            raise ValueError(f"Unsupported cipher {cipher!r}")
        if len(secret) != self.CIPHERS[cipher]:
            raise ValueError(f"{cipher} requires a {self.CIPHERS[cipher]} bytes key, got {len(secret)}")
        self.secret = secret
        self.cipher = cipher
        self.rotations = []

    def rotate(self, secret, cipher=None):
        self.rotations.append(MessageEncryptor(secret, cipher or self.cipher))
        return self

    def encrypt_and_sign(self, value, expires_at=None, expires_in=None, purpose=None):
        plaintext = json.dumps(
            _wrap(value, expires_at, expires_in, purpose),
            separators=(',', ':'),
        ).encode('utf-8')
        iv = os.urandom(self.IV_LENGTH)
        sealed = AESGCM(self.secret).encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-self.TAG_LENGTH], sealed[-self.TAG_LENGTH:]
        return SEPARATOR.join(map(_encode, (ciphertext, iv, tag)))

    def decrypt_and_verify(self, message, purpose=None, on_rotation=None):
        """ Return the value of a valid message, raise
        :class:`InvalidMessage` otherwise. Expired messages and messages
        encrypted for another purpose give ``None``. """
        for index, encryptor in enumerate([self, *self.rotations]):
            try:
                plaintext = encryptor._decrypt(message)
            except InvalidMessage:
                continue
            ok, value = _unwrap(json.loads(plaintext), purpose)
            if not ok:
                return None
            if index and on_rotation:
                on_rotation()
            return value
        raise InvalidMessage(message)

    def _decrypt(self, message):
        if not isinstance(message, str):
            raise InvalidMessage(message)
        parts = message.split(SEPARATOR)
        if len(parts) != 3:
            raise InvalidMessage(message)
        try:
            ciphertext, iv, tag = map(_decode, parts)
        except (ValueError, binascii.Error) as e:
            raise InvalidMessage(message) from e
        if len(iv) != self.IV_LENGTH or len(tag) != self.TAG_LENGTH:
            raise InvalidMessage(message)
        try:
            return AESGCM(self.secret).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise InvalidMessage(message) from e
