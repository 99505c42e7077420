# Part of Plinth, see License file for full copyright and licensing details.
"""
Sessions and flash messages.

A :class:`Session` is loaded lazily from the store of the application the
first time a request asks for it, and committed (saved, and its cookie
written into the cookie jar) by the session middleware before the
response headers are sent.

Stores:

* :class:`CookieStore`: the whole session lives in an encrypted cookie;
* :class:`FilesystemSessionStore`: JSON files, the cookie holds the id;
* :class:`MemorySessionStore`: a process-local dict, the cookie holds the id.
"""
import base64
import collections.abc
import contextlib
import json
import logging
import os
import re
import tempfile
import threading
import time
from datetime import timedelta
from hashlib import sha512

from .cookies import CookieJar
from .tools.func import synchronized

_logger = logging.getLogger(__name__)

__all__ = [
    'CookieStore',
    'FilesystemSessionStore',
    'FlashHash',
    'MemorySessionStore',
    'Session',
    'SessionStore',
]

# environ keys
SESSION = 'plinth.session'
SESSION_STORE = 'plinth.session_store'
SESSION_SKIP = 'plinth.session_skip'
FLASH = 'plinth.flash'

# The default duration of a session cookie, when expire_after is not given
# the cookie lasts until the browser is closed.
SESSION_LIFETIME = 60 * 60 * 24 * 7

DEFAULT_OPTIONS = {
    'key': '_plinth_session',
    'path': '/',
    'domain': None,
    'expire_after': None,
    'secure': False,
    'httponly': True,
    'same_site': None,
}

_base64_urlsafe_re = re.compile(r'^[A-Za-z0-9_-]{84}$')


class Session(collections.abc.MutableMapping):
    """ Structure containing data persisted across requests. """
    __slots__ = ('can_save', '_Session__data', 'is_dirty', 'is_new',
                 'should_rotate', 'is_destroyed', 'sid')

    def __init__(self, data, sid, new=False):
        self.can_save = True
        self.__data = {}
        self.update(data)
        self.is_dirty = False
        self.is_new = new
        self.should_rotate = False
        self.is_destroyed = False
        self.sid = sid

    #
    # MutableMapping implementation with DotDict-like extension
    #
    def __getitem__(self, item):
        return self.__data[item]

    def __setitem__(self, item, value):
        # only JSON values survive a round-trip through the store
        value = json.loads(json.dumps(value))
        if item not in self.__data or self.__data[item] != value:
            self.is_dirty = True
        self.__data[item] = value

    def __delitem__(self, item):
        del self.__data[item]
        self.is_dirty = True

    def __len__(self):
        return len(self.__data)

    def __iter__(self):
        return iter(self.__data)

    def __getattr__(self, attr):
        return self.get(attr, None)

    def __setattr__(self, key, val):
        if key in self.__slots__:
            super().__setattr__(key, val)
        else:
            self[key] = val

    def __repr__(self):
        return f'<Session {self.sid!r} {self.__data!r}>'

    def clear(self):
        self.__data.clear()
        self.is_dirty = True

    def to_dict(self):
        return dict(self.__data)

    #
    # Session methods
    #
    def touch(self):
        self.is_dirty = True

    def reset(self):
        """ Drop the data and give the session a new id on save, the
        session fixation defense to run on login and logout. """
        self.clear()
        self.should_rotate = True

    def destroy(self):
        """ Drop the data and remove the session from the store and the
        client. """
        self.clear()
        self.is_destroyed = True


# =========================================================
# Stores
# =========================================================

class SessionStore:
    """ Place where to load and save session objects. """
    session_class = Session

    def __init__(self, session_class=None, **options):
        if session_class is not None:
            self.session_class = session_class
        self.options = dict(DEFAULT_OPTIONS)
        self.options.update(options)

    def is_valid_key(self, key):
        return isinstance(key, str) and _base64_urlsafe_re.match(key) is not None

    def generate_key(self, salt=None):
        # 84 chars of url-safe base64, 63 random bytes
        key = str(time.time()).encode() + os.urandom(64)
        hash_key = sha512(key).digest()[:-1]  # prevent base64 padding
        return base64.urlsafe_b64encode(hash_key).decode('utf-8')

    def new(self):
        return self.session_class({}, self.generate_key(), True)

    def get(self, sid):
        raise NotImplementedError()

    def save(self, session):
        raise NotImplementedError()

    def delete(self, session):
        raise NotImplementedError()

    def rotate(self, session):
        self.delete(session)
        session.sid = self.generate_key()
        session.should_rotate = False
        self.save(session)

    # ------------------------------------------------------------
    # Request integration
    # ------------------------------------------------------------

    def load_session(self, jar):
        sid = jar.get(self.options['key'])
        if not sid or not self.is_valid_key(sid):
            return self.new()
        return self.get(sid)

    def commit_session(self, jar, session):
        """ Save ``session`` and write its cookie into ``jar``. """
        key = self.options['key']
        if session.is_destroyed:
            if not session.is_new:
                self.delete(session)
            jar.delete(key, **self._cookie_options(delete=True))
            return
        if not session.can_save:
            return
        if session.should_rotate:
            self.rotate(session)
        elif session.is_dirty:
            self.save(session)
        elif not self.options['expire_after']:
            # unchanged, the client already holds the cookie
            return
        if session.is_new and not session:
            return
        self._write_cookie(jar, session)

    def _write_cookie(self, jar, session):
        jar.set(self.options['key'], session.sid, **self._cookie_options())

    def _cookie_options(self, delete=False):
        options = {
            'path': self.options['path'],
            'domain': self.options['domain'],
        }
        if delete:
            return options
        options['httponly'] = self.options['httponly']
        options['secure'] = self.options['secure']
        if self.options['same_site'] is not None:
            options['same_site'] = self.options['same_site']
        expire_after = self.options['expire_after']
        if expire_after:
            if not isinstance(expire_after, timedelta):
                expire_after = timedelta(seconds=expire_after)
            options['expires'] = expire_after
        return options


class MemorySessionStore(SessionStore):
    def __init__(self, session_class=None, **options):
        super().__init__(session_class, **options)
        self._sessions = {}
        self._lock = threading.RLock()

    @synchronized()
    def get(self, sid):
        if sid not in self._sessions:
            return self.new()
        return self.session_class(json.loads(self._sessions[sid]), sid, False)

    @synchronized()
    def save(self, session):
        self._sessions[session.sid] = json.dumps(session.to_dict())

    @synchronized()
    def delete(self, session):
        self._sessions.pop(session.sid, None)

    def __len__(self):
        return len(self._sessions)


class FilesystemSessionStore(SessionStore):
    """ Sessions stored as JSON files in ``path``, scattered across 4096
    (64^2) sub-directories named after the first two characters of the id. """
    def __init__(self, path=None, session_class=None, renew_missing=True, mode=0o644, **options):
        super().__init__(session_class, **options)
        if path is None:
            path = os.path.join(tempfile.gettempdir(), 'plinth-sessions')
        self.path = path
        self.renew_missing = renew_missing
        self.mode = mode

    def get_session_filename(self, sid):
        if not self.is_valid_key(sid):
            raise ValueError(f'Invalid session id {sid!r}')
        sha_dir = sid[:2]
        dirname = os.path.join(self.path, sha_dir)
        session_path = os.path.join(dirname, sid)
        return session_path

    def get(self, sid):
        try:
            with open(self.get_session_filename(sid), 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError):
            data = None
        if data is None:
            if self.renew_missing:
                return self.new()
            return self.session_class({}, sid, True)
        return self.session_class(data, sid, False)

    def save(self, session):
        session_path = self.get_session_filename(session.sid)
        dirname = os.path.dirname(session_path)
        if not os.path.isdir(dirname):
            with contextlib.suppress(OSError):
                os.makedirs(dirname, 0o0755)
        fd, tmp = tempfile.mkstemp(suffix='.__wz_sess', dir=dirname)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(session.to_dict(), f)
        os.replace(tmp, session_path)
        with contextlib.suppress(OSError):
            os.chmod(session_path, self.mode)

    def delete(self, session):
        with contextlib.suppress(OSError, ValueError):
            os.unlink(self.get_session_filename(session.sid))

    def list(self):
        """ Ids of all the stored sessions. """
        result = []
        if not os.path.isdir(self.path):
            return result
        for dirname in os.listdir(self.path):
            subdir = os.path.join(self.path, dirname)
            if os.path.isdir(subdir):
                result.extend(f for f in os.listdir(subdir) if self.is_valid_key(f))
        return result

    def vacuum(self, max_lifetime=SESSION_LIFETIME):
        """ Remove the sessions untouched for ``max_lifetime`` seconds. """
        threshold = time.time() - max_lifetime
        for sid in self.list():
            path = self.get_session_filename(sid)
            with contextlib.suppress(OSError):
                if os.path.getmtime(path) < threshold:
                    os.unlink(path)


class CookieStore(SessionStore):
    """ The whole session is kept, encrypted, in the session cookie. Data
    is limited to the 4K of a cookie. """
    SID_KEY = 'session_id'

    def load_session(self, jar):
        data = jar.encrypted.get(self.options['key'])
        if not isinstance(data, dict):
            return self.new()
        data = dict(data)
        sid = data.pop(self.SID_KEY, None)
        if not self.is_valid_key(sid):
            return self.new()
        return self.session_class(data, sid, False)

    def get(self, sid):
        # the data only lives in the cookie
        return self.session_class({}, sid, True)

    def save(self, session):
        pass

    def delete(self, session):
        pass

    def _write_cookie(self, jar, session):
        value = dict(session.to_dict(), **{self.SID_KEY: session.sid})
        jar.encrypted[self.options['key']] = dict(self._cookie_options(), value=value)


def load_session(environ):
    """ Session of the request, loaded on first use. """
    if SESSION not in environ:
        store = environ.get(SESSION_STORE)
        if store is None:
            raise RuntimeError("No session store configured for this request.")
        environ[SESSION] = store.load_session(CookieJar.from_environ(environ))
    return environ[SESSION]

def commit_session(environ):
    """ Fold the flash into the session and save the session, when either
    was used by the request. """
    flash = environ.get(FLASH)
    if flash is not None:
        flash.commit_to(load_session(environ))
    session = environ.get(SESSION)
    if session is not None:
        environ[SESSION_STORE].commit_session(CookieJar.from_environ(environ), session)


# =========================================================
# Flash
# =========================================================

class FlashNow:
    """ ``flash.now``: messages for the current request only. """
    def __init__(self, flash):
        self.flash = flash

    def __setitem__(self, key, value):
        self.flash[key] = value
        self.flash.discard(key)

    def __getitem__(self, key):
        return self.flash.get(key)

    def notice(self, message):
        self['notice'] = message

    def alert(self, message):
        self['alert'] = message


class FlashHash(collections.abc.MutableMapping):
    """ Messages passed to the next request, then discarded.

    .. code-block:: python

        flash['notice'] = "Post successfully created"   # shown on the next request
        flash.now['alert'] = "Not saved"                # shown on this request only
        flash.keep('notice')                            # kept one more request
    """
    SESSION_KEY = '_flash'

    def __init__(self, flashes=None, discard=()):
        self._flashes = dict(flashes or {})
        self._discard = set(discard)
        self._now = None

    @classmethod
    def from_session_value(cls, value):
        if not isinstance(value, dict):
            return cls()
        flashes = dict(value.get('flashes') or {})
        for key in value.get('discard') or []:
            flashes.pop(key, None)
        # what was set on the previous request is shown once
        return cls(flashes, flashes.keys())

    def to_session_value(self):
        flashes = {k: v for k, v in self._flashes.items() if k not in self._discard}
        if not flashes:
            return None
        return {'discard': [], 'flashes': flashes}

    def commit_to(self, session):
        value = self.to_session_value()
        if value is None:
            if self.SESSION_KEY in session:
                del session[self.SESSION_KEY]
        else:
            session[self.SESSION_KEY] = value

    def __getitem__(self, key):
        return self._flashes[str(key)]

    def __setitem__(self, key, value):
        key = str(key)
        self._discard.discard(key)
        self._flashes[key] = value

    def __delitem__(self, key):
        key = str(key)
        self._discard.discard(key)
        del self._flashes[key]

    def __iter__(self):
        return iter(self._flashes)

    def __len__(self):
        return len(self._flashes)

    def __repr__(self):
        return f'<FlashHash {self._flashes!r} discard: {sorted(self._discard)!r}>'

    def to_dict(self):
        return dict(self._flashes)

    def clear(self):
        self._discard.clear()
        self._flashes.clear()

    @property
    def now(self):
        if self._now is None:
            self._now = FlashNow(self)
        return self._now

    def keep(self, key=None):
        """ Keep all the messages, or the ``key`` one, for another request. """
        if key is None:
            self._discard.clear()
            return self._flashes
        self._discard.discard(str(key))
        return self._flashes.get(str(key))

    def discard(self, key=None):
        """ Drop all the messages, or the ``key`` one, at the end of the
        current request. """
        if key is None:
            self._discard.update(self._flashes)
            return self._flashes
        self._discard.add(str(key))
        return self._flashes.get(str(key))

    @property
    def notice(self):
        return self.get('notice')

    @notice.setter
    def notice(self, message):
        self['notice'] = message

    @property
    def alert(self):
        return self.get('alert')

    @alert.setter
    def alert(self, message):
        self['alert'] = message


def load_flash(environ):
    if FLASH not in environ:
        session = load_session(environ)
        environ[FLASH] = FlashHash.from_session_value(session.get(FlashHash.SESSION_KEY))
    return environ[FLASH]
