# Part of Plinth, see License file for full copyright and licensing details.
import os

import pytest
from werkzeug.test import Client, EnvironBuilder

from plinth.cookies import KEY_GENERATOR, CookieJar
from plinth.http import Controller
from plinth.session import (
    CookieStore,
    FilesystemSessionStore,
    FlashHash,
    MemorySessionStore,
    Session,
    load_session,
)
from plinth.tools.messages import CachingKeyGenerator, KeyGenerator


def make_jar(cookie=None):
    headers = {'Cookie': cookie} if cookie else {}
    environ = EnvironBuilder(headers=headers).get_environ()
    environ[KEY_GENERATOR] = CachingKeyGenerator(KeyGenerator('s' * 64, iterations=1000))
    return CookieJar(environ)


def cookie_pair(jar):
    [header] = jar.set_cookie_headers()
    return header.split(';')[0]


class TestSession:
    def test_dirty_tracking(self):
        session = Session({'user_id': 1}, 'sid')
        assert not session.is_dirty
        session['user_id'] = 1
        assert not session.is_dirty
        session['user_id'] = 2
        assert session.is_dirty

    def test_attribute_access(self):
        session = Session({}, 'sid')
        session.user_id = 5
        assert session['user_id'] == 5
        assert session.missing is None
        assert session.sid == 'sid'
        assert 'sid' not in session

    def test_json_values_only(self):
        session = Session({}, 'sid')
        session['pair'] = (1, 2)
        assert session['pair'] == [1, 2]
        with pytest.raises(TypeError):
            session['thing'] = object()

    def test_reset_and_destroy(self):
        session = Session({'user_id': 1}, 'sid')
        session.reset()
        assert len(session) == 0
        assert session.should_rotate
        session = Session({'user_id': 1}, 'sid')
        session.destroy()
        assert session.is_destroyed
        assert session.to_dict() == {}


class TestMemorySessionStore:
    @pytest.fixture
    def store(self):
        return MemorySessionStore()

    def test_keys(self, store):
        sid = store.generate_key()
        assert len(sid) == 84
        assert store.is_valid_key(sid)
        assert not store.is_valid_key('../../etc/passwd')
        assert not store.is_valid_key(None)

    def test_empty_new_session_is_not_saved(self, store):
        jar = make_jar()
        store.commit_session(jar, store.new())
        assert jar.set_cookie_headers() == []
        assert len(store) == 0

    def test_save_and_load(self, store):
        jar = make_jar()
        session = store.new()
        session['user_id'] = 1
        store.commit_session(jar, session)
        [header] = jar.set_cookie_headers()
        assert header.startswith(f'_plinth_session={session.sid}')
        assert 'HttpOnly' in header
        assert len(store) == 1

        loaded = store.load_session(make_jar(cookie_pair(jar)))
        assert loaded.sid == session.sid
        assert loaded['user_id'] == 1
        assert not loaded.is_new

    def test_unknown_or_invalid_id(self, store):
        loaded = store.load_session(make_jar('_plinth_session=forged'))
        assert loaded.is_new
        sid = store.generate_key()
        loaded = store.load_session(make_jar(f'_plinth_session={sid}'))
        assert loaded.is_new
        assert loaded.sid != sid

    def test_unchanged_session_keeps_its_cookie(self, store):
        session = store.new()
        session['user_id'] = 1
        store.save(session)
        jar = make_jar()
        store.commit_session(jar, store.get(session.sid))
        assert jar.set_cookie_headers() == []

    def test_expire_after_refreshes_the_cookie(self):
        store = MemorySessionStore(expire_after=3600)
        session = store.new()
        session['user_id'] = 1
        store.save(session)
        jar = make_jar()
        store.commit_session(jar, store.get(session.sid))
        [header] = jar.set_cookie_headers()
        assert 'Expires=' in header

    def test_rotation(self, store):
        session = store.new()
        session['user_id'] = 1
        store.save(session)
        old_sid = session.sid
        session = store.get(old_sid)
        session.reset()
        jar = make_jar()
        store.commit_session(jar, session)
        assert session.sid != old_sid
        assert cookie_pair(jar) == f'_plinth_session={session.sid}'
        assert store.get(old_sid).is_new

    def test_destroy(self, store):
        session = store.new()
        session['user_id'] = 1
        store.save(session)
        session = store.get(session.sid)
        session.destroy()
        jar = make_jar(f'_plinth_session={session.sid}')
        store.commit_session(jar, session)
        assert len(store) == 0
        [header] = jar.set_cookie_headers()
        assert header.startswith('_plinth_session=; Expires=Thu, 01 Jan 1970 00:00:00 GMT')


class TestFilesystemSessionStore:
    @pytest.fixture
    def store(self, tmp_path):
        return FilesystemSessionStore(str(tmp_path))

    def test_save_and_get(self, store, tmp_path):
        session = store.new()
        session['cart'] = ['apple']
        store.save(session)
        assert (tmp_path / session.sid[:2] / session.sid).is_file()
        assert store.list() == [session.sid]
        loaded = store.get(session.sid)
        assert loaded['cart'] == ['apple']
        assert not loaded.is_new

    def test_missing(self, store, tmp_path):
        sid = store.generate_key()
        assert store.get(sid).sid != sid
        keep = FilesystemSessionStore(str(tmp_path), renew_missing=False)
        loaded = keep.get(sid)
        assert loaded.sid == sid
        assert loaded.is_new

    def test_invalid_id(self, store):
        with pytest.raises(ValueError, match='Invalid session id'):
            store.get_session_filename('../../etc/passwd')
        assert store.get('../../etc/passwd').is_new

    def test_delete(self, store):
        session = store.new()
        store.save(session)
        store.delete(session)
        assert store.list() == []
        # deleting twice is harmless
        store.delete(session)

    def test_vacuum(self, store):
        old, fresh = store.new(), store.new()
        store.save(old)
        store.save(fresh)
        os.utime(store.get_session_filename(old.sid), (0, 0))
        store.vacuum()
        assert store.list() == [fresh.sid]

    def test_list_without_directory(self, tmp_path):
        assert FilesystemSessionStore(str(tmp_path / 'nowhere')).list() == []


class TestCookieStore:
    def test_round_trip(self):
        store = CookieStore()
        session = store.new()
        session['user_id'] = 7
        jar = make_jar()
        store.commit_session(jar, session)
        pair = cookie_pair(jar)
        assert 'user_id' not in pair

        loaded = store.load_session(make_jar(pair))
        assert loaded['user_id'] == 7
        assert loaded.sid == session.sid
        assert 'session_id' not in loaded
        assert not loaded.is_new

    def test_tampered(self):
        store = CookieStore()
        assert store.load_session(make_jar('_plinth_session=garbage')).is_new


class TestFlash:
    def test_shown_on_the_next_request_only(self):
        flash = FlashHash()
        flash['notice'] = 'Saved'
        value = flash.to_session_value()
        assert value == {'discard': [], 'flashes': {'notice': 'Saved'}}

        following = FlashHash.from_session_value(value)
        assert following.notice == 'Saved'
        assert following.to_session_value() is None

    def test_keep(self):
        flash = FlashHash.from_session_value({'discard': [], 'flashes': {'notice': 'Saved', 'alert': 'Oops'}})
        assert flash.keep('notice') == 'Saved'
        assert flash.to_session_value() == {'discard': [], 'flashes': {'notice': 'Saved'}}
        flash.keep()
        assert set(flash.to_session_value()['flashes']) == {'notice', 'alert'}

    def test_discarded_values_are_dropped(self):
        flash = FlashHash.from_session_value({'discard': ['alert'], 'flashes': {'alert': 'Old', 'notice': 'New'}})
        assert dict(flash) == {'notice': 'New'}
        assert len(FlashHash.from_session_value(None)) == 0

    def test_now(self):
        flash = FlashHash()
        flash.now['alert'] = 'Not saved'
        flash.now.notice('Still here')
        assert flash.alert == 'Not saved'
        assert flash.now['notice'] == 'Still here'
        assert flash.to_session_value() is None

    def test_discard(self):
        flash = FlashHash()
        flash.notice = 'Saved'
        flash.alert = 'Careful'
        assert flash.discard('alert') == 'Careful'
        assert flash.to_session_value()['flashes'] == {'notice': 'Saved'}
        flash.discard()
        assert flash.to_session_value() is None

    def test_commit_to_session(self):
        session = Session({}, 'sid')
        flash = FlashHash()
        flash['notice'] = 'Saved'
        flash.commit_to(session)
        assert session['_flash']['flashes'] == {'notice': 'Saved'}
        FlashHash.from_session_value(session['_flash']).commit_to(session)
        assert '_flash' not in session


def test_load_session_needs_a_store():
    with pytest.raises(RuntimeError, match='No session store'):
        load_session({})


# =========================================================
# Through the application
# =========================================================

class CartsController(Controller):
    def show(self):
        return {'items': self.session.get('items') or []}

    def add(self):
        self.session['items'] = (self.session.get('items') or []) + [self.params['item']]
        return str(len(self.session['items']))

    def checkout(self):
        self.reset_session()
        return 'thanks'

    def forget(self):
        self.session.destroy()
        return 'forgotten'


def draw(r):
    with r.controller('carts'):
        r.get('/cart', action='show')
        r.get('/cart/add', action='add')
        r.get('/cart/checkout', action='checkout')
        r.get('/cart/forget', action='forget')


@pytest.mark.parametrize('store', ['cookie', 'memory', 'filesystem'])
def test_session_across_requests(make_app, tmp_path, store):
    app = make_app(draw, session_store=store, session_dir=str(tmp_path / 'sessions'))
    client = Client(app)

    response = client.get('/cart')
    assert response.json == {'items': []}
    assert 'Set-Cookie' not in response.headers

    assert client.get('/cart/add?item=apple').get_data(as_text=True) == '1'
    assert client.get('/cart/add?item=pear').get_data(as_text=True) == '2'
    assert client.get('/cart').json == {'items': ['apple', 'pear']}
    cookie = client.get_cookie('_plinth_session')
    assert cookie is not None
    assert cookie.http_only

    client.get('/cart/checkout')
    assert client.get_cookie('_plinth_session').value != cookie.value
    assert client.get('/cart').json == {'items': []}


def test_memory_store_bookkeeping(make_app):
    app = make_app(draw, session_store='memory')
    client = Client(app)
    client.get('/cart/add?item=apple')
    assert len(app.session_store) == 1
    client.get('/cart/checkout')
    assert len(app.session_store) == 1

    client.get('/cart/forget')
    assert len(app.session_store) == 0
    assert client.get_cookie('_plinth_session') is None


def test_filesystem_store_files(make_app, tmp_path):
    app = make_app(draw, session_store='filesystem', session_dir=str(tmp_path))
    client = Client(app)
    client.get('/cart/add?item=apple')
    [sid] = app.session_store.list()
    assert client.get_cookie('_plinth_session').value == sid


def test_unknown_store(make_app):
    with pytest.raises(ValueError, match='Unknown session store'):
        make_app(draw, session_store='redis').session_store
