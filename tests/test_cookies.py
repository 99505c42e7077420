# Part of Plinth, see License file for full copyright and licensing details.
from datetime import datetime, timedelta, timezone

import pytest
from freezegun import freeze_time
from werkzeug.test import EnvironBuilder

from plinth.cookies import (
    COOKIES_ROTATIONS,
    KEY_GENERATOR,
    SAME_SITE_PROTECTION,
    CookieJar,
    CookieOverflow,
)
from plinth.tools.messages import (
    CachingKeyGenerator,
    InvalidMessage,
    InvalidSignature,
    KeyGenerator,
    MessageEncryptor,
    MessageVerifier,
)

SECRET = 'b' * 64
OLD_SECRET = 'a' * 64


def make_environ(url='http://www.example.com/', cookie=None, secret=SECRET, **extra):
    headers = {'Cookie': cookie} if cookie else {}
    environ = EnvironBuilder(base_url=url, headers=headers).get_environ()
    if secret:
        environ[KEY_GENERATOR] = CachingKeyGenerator(KeyGenerator(secret))
    environ.update(extra)
    return environ


def make_jar(**kwargs):
    return CookieJar(make_environ(**kwargs))


class TestCookieJar:
    def test_read(self):
        jar = make_jar(cookie='theme=dark; lang=fr')
        assert jar['theme'] == 'dark'
        assert dict(jar) == {'theme': 'dark', 'lang': 'fr'}
        assert 'lang' in jar
        assert jar.get('missing', 'none') == 'none'

    def test_from_environ_is_cached(self):
        environ = make_environ(cookie='theme=dark')
        assert CookieJar.from_environ(environ) is CookieJar.from_environ(environ)

    def test_set(self):
        jar = make_jar()
        jar['theme'] = 'dark'
        jar['remember'] = {'value': 'yes', 'httponly': True, 'max_age': 3600}
        assert jar['theme'] == 'dark'
        theme, remember = jar.set_cookie_headers()
        assert theme == 'theme=dark; Path=/; SameSite=Lax'
        assert remember.startswith('remember=yes; Expires=')
        assert remember.endswith('; Max-Age=3600; HttpOnly; Path=/; SameSite=Lax')

    def test_same_site_setting(self):
        jar = make_jar(**{SAME_SITE_PROTECTION: 'strict'})
        jar['theme'] = 'dark'
        jar.set('lang', 'fr', same_site=None)
        assert jar.set_cookie_headers() == ['theme=dark; Path=/; SameSite=Strict', 'lang=fr; Path=/']

    def test_delete(self):
        jar = make_jar(cookie='theme=dark')
        assert jar.delete('theme') == 'dark'
        assert 'theme' not in jar
        assert jar.is_deleted('theme')
        assert not jar.is_deleted('theme', path='/admin')
        assert jar.delete('missing') is None
        [header] = jar.set_cookie_headers()
        assert header.startswith('theme=; Expires=Thu, 01 Jan 1970 00:00:00 GMT; Max-Age=0')

    def test_clear(self):
        jar = make_jar(cookie='theme=dark; lang=fr')
        jar.clear()
        assert len(jar) == 0
        assert len(jar.set_cookie_headers()) == 2

    @pytest.mark.parametrize('url, domain', [
        ('http://www.example.com/', 'example.com'),
        ('http://shop.example.co.uk/', 'example.co.uk'),
        ('http://localhost/', None),
        ('http://127.0.0.1/', None),
    ])
    def test_domain_all(self, url, domain):
        jar = make_jar(url=url)
        jar.set('theme', 'dark', domain='all')
        header = jar.set_cookie_headers()[0]
        if domain:
            assert f'Domain={domain}' in header
        else:
            assert 'Domain' not in header

    def test_domain_options(self):
        jar = make_jar(url='http://www.example.com/')
        jar.set('a', '1', domain=['example.org', 'example.com'])
        jar.set('b', '1', domain='all', tld_length=3)
        jar.set('c', '1', domain=lambda request: request.host)
        a, b, c = jar.set_cookie_headers()
        assert 'Domain=example.com' in a
        assert 'Domain=www.example.com' in b
        assert 'Domain=www.example.com' in c

    def test_secure_cookies_need_https(self):
        jar = make_jar()
        jar.set('token', 'x', secure=True)
        assert jar.set_cookie_headers() == []
        jar = make_jar(url='https://www.example.com/')
        jar.set('token', 'x', secure=True)
        assert jar.set_cookie_headers() == ['token=x; Secure; Path=/; SameSite=Lax']

    def test_commit(self):
        jar = make_jar()
        jar['theme'] = 'dark'
        jar.commit()
        assert jar.set_cookie_headers() == []

    @freeze_time('2024-01-01')
    def test_permanent(self):
        jar = make_jar()
        jar.permanent['remember'] = 'yes'
        assert jar['remember'] == 'yes'
        assert 'Expires=Sun, 27 Dec 2043 00:00:00 GMT' in jar.set_cookie_headers()[0]


class TestSignedCookies:
    def test_round_trip(self):
        jar = make_jar()
        jar.signed['user_id'] = 42
        assert jar['user_id'] != '42'
        assert jar.signed['user_id'] == 42
        assert 'user_id' in jar.signed

    def test_read_from_request(self):
        jar = make_jar()
        jar.signed['prefs'] = {'theme': 'dark'}
        value = jar['prefs']
        assert make_jar(cookie=f'prefs={value}').signed['prefs'] == {'theme': 'dark'}

    def test_tampered(self):
        jar = make_jar()
        jar.signed['user_id'] = 42
        data, _, digest = jar['user_id'].rpartition('--')
        jar['user_id'] = f'{data}--{"0" * len(digest)}'
        assert jar.signed['user_id'] is None
        assert jar.signed.get('user_id', 'anonymous') == 'anonymous'

    def test_bound_to_the_cookie_name(self):
        jar = make_jar()
        jar.signed['user_id'] = 42
        jar['admin_id'] = jar['user_id']
        assert jar.signed['admin_id'] is None

    def test_other_secret(self):
        jar = make_jar()
        jar.signed['user_id'] = 42
        assert make_jar(cookie=f'user_id={jar["user_id"]}', secret=OLD_SECRET).signed['user_id'] is None

    def test_expiry(self):
        with freeze_time('2024-01-01 12:00:00') as frozen:
            jar = make_jar()
            jar.signed['token'] = {'value': 'abc', 'expires': timedelta(hours=1)}
            assert jar.signed['token'] == 'abc'
            assert 'Expires=Mon, 01 Jan 2024 13:00:00 GMT' in jar.set_cookie_headers()[0]
            frozen.tick(timedelta(hours=2))
            assert jar.signed['token'] is None

    def test_rotation(self):
        old = make_jar(secret=None, **{KEY_GENERATOR: KeyGenerator(OLD_SECRET)})
        old.signed['user_id'] = 42

        rotations = {'signed': [{'secret_key_base': OLD_SECRET}], 'encrypted': []}
        jar = make_jar(cookie=f'user_id={old["user_id"]}', **{COOKIES_ROTATIONS: rotations})
        assert jar.signed['user_id'] == 42
        # written back with the current secret
        [header] = jar.set_cookie_headers()
        assert make_jar(cookie=header.split(';')[0]).signed['user_id'] == 42

    def test_overflow(self):
        with pytest.raises(CookieOverflow):
            make_jar().signed['big'] = 'x' * 5000

    def test_missing_secret(self):
        with pytest.raises(RuntimeError, match='secret_key_base'):
            make_jar(secret=None).signed

    def test_chained(self):
        jar = make_jar()
        jar.permanent.signed['login'] = 'alice'
        assert jar.signed['login'] == 'alice'
        assert 'Expires=' in jar.set_cookie_headers()[0]


class TestEncryptedCookies:
    def test_round_trip(self):
        jar = make_jar()
        jar.encrypted['discount'] = 45
        assert jar['discount'].count('--') == 2
        assert jar.encrypted['discount'] == 45
        value = jar['discount']
        assert make_jar(cookie=f'discount={value}').encrypted['discount'] == 45

    def test_tampered(self):
        jar = make_jar()
        jar.encrypted['discount'] = 45
        ciphertext, iv, tag = jar['discount'].split('--')
        jar['discount'] = f'{iv}--{ciphertext}--{tag}'
        assert jar.encrypted['discount'] is None
        jar['discount'] = 'garbage'
        assert jar.encrypted['discount'] is None

    def test_signed_or_encrypted(self):
        jar = make_jar()
        jar.signed_or_encrypted['cart'] = [1, 2]
        assert jar.encrypted['cart'] == [1, 2]


class TestMessageVerifier:
    @pytest.fixture
    def verifier(self):
        return MessageVerifier('secret')

    def test_generate(self, verifier):
        message = verifier.generate({'user_id': 1})
        data, _, digest = message.rpartition('--')
        assert len(digest) == 40
        assert verifier.valid_message(message)
        assert verifier.verified(message) == {'user_id': 1}
        assert verifier.verify(message) == {'user_id': 1}

    def test_invalid(self, verifier):
        message = verifier.generate('data')
        for bad in (message[:-1] + ('0' if message[-1] != '0' else '1'), '', None, 'no-separator', '--abc'):
            assert not verifier.valid_message(bad)
            assert verifier.verified(bad) is None
        with pytest.raises(InvalidSignature):
            verifier.verify('garbage--0000')
        assert MessageVerifier('other').verified(message) is None

    def test_purpose(self, verifier):
        message = verifier.generate('data', purpose='login')
        assert verifier.verified(message, purpose='login') == 'data'
        assert verifier.verified(message, purpose='shipping') is None
        assert verifier.verified(message) is None
        assert verifier.verified(verifier.generate('data'), purpose='login') is None

    def test_expiry(self, verifier):
        with freeze_time('2024-01-01') as frozen:
            message = verifier.generate('data', expires_in=60)
            at = verifier.generate('data', expires_at=datetime(2024, 1, 1, 0, 2))
            assert verifier.verified(message) == 'data'
            frozen.tick(timedelta(seconds=61))
            assert verifier.verified(message) is None
            assert verifier.verified(at) == 'data'
            frozen.tick(timedelta(minutes=1))
            assert verifier.verified(at) is None

    def test_digest(self):
        message = MessageVerifier('secret', digest='SHA256').generate('data')
        assert len(message.rpartition('--')[2]) == 64

    def test_rotation(self):
        old = MessageVerifier('old secret')
        verifier = MessageVerifier('new secret').rotate('old secret')
        rotated = []
        message = old.generate('data')
        assert verifier.verified(message, on_rotation=lambda: rotated.append(True)) == 'data'
        assert rotated == [True]
        verifier.verified(verifier.generate('data'), on_rotation=lambda: rotated.append(True))
        assert rotated == [True]

    def test_empty_secret(self):
        with pytest.raises(ValueError):
            MessageVerifier('')


class TestMessageEncryptor:
    @pytest.fixture
    def encryptor(self):
        return MessageEncryptor(b'k' * 32)

    def test_round_trip(self, encryptor):
        message = encryptor.encrypt_and_sign({'discount': 45})
        assert len(message.split('--')) == 3
        assert encryptor.decrypt_and_verify(message) == {'discount': 45}
        # a random iv per message
        assert encryptor.encrypt_and_sign('x') != encryptor.encrypt_and_sign('x')

    def test_invalid(self, encryptor):
        message = encryptor.encrypt_and_sign('data')
        ciphertext, iv, tag = message.split('--')
        for bad in (f'{ciphertext}--{iv}', f'{ciphertext}--{tag}--{iv}', 'a--b--c', None):
            with pytest.raises(InvalidMessage):
                encryptor.decrypt_and_verify(bad)
        with pytest.raises(InvalidMessage):
            MessageEncryptor(b'o' * 32).decrypt_and_verify(message)

    def test_purpose_and_expiry(self, encryptor):
        with freeze_time('2024-01-01') as frozen:
            message = encryptor.encrypt_and_sign('data', purpose='cart', expires_in=timedelta(minutes=5))
            assert encryptor.decrypt_and_verify(message, purpose='cart') == 'data'
            assert encryptor.decrypt_and_verify(message, purpose='login') is None
            frozen.tick(timedelta(minutes=6))
            assert encryptor.decrypt_and_verify(message, purpose='cart') is None

    def test_rotation(self, encryptor):
        old = MessageEncryptor(b'o' * 32)
        encryptor.rotate(b'o' * 32)
        rotated = []
        assert encryptor.decrypt_and_verify(old.encrypt_and_sign(1), on_rotation=lambda: rotated.append(1)) == 1
        assert rotated == [1]

    def test_key_length(self):
        assert MessageEncryptor.key_len() == 32
        with pytest.raises(ValueError, match='32 bytes key'):
            MessageEncryptor(b'short')
        with pytest.raises(ValueError, match='Unsupported cipher'):
            MessageEncryptor(b'k' * 32, cipher='aes-128-cbc')


class TestKeyGenerator:
    def test_generate_key(self):
        generator = KeyGenerator('secret', iterations=10)
        key = generator.generate_key('salt')
        assert len(key) == 64
        assert key == KeyGenerator('secret', iterations=10).generate_key('salt')
        assert key != generator.generate_key('pepper')
        assert len(generator.generate_key('salt', 32)) == 32

    def test_caching(self):
        generator = CachingKeyGenerator(KeyGenerator('secret', iterations=10))
        assert generator.generate_key('salt') is generator.generate_key('salt')
        assert generator.generate_key('salt', 32) == KeyGenerator('secret', iterations=10).generate_key('salt', 32)

    def test_expiry_is_utc(self):
        with freeze_time(datetime(2024, 1, 1, tzinfo=timezone.utc)):
            message = MessageVerifier('secret').generate('x', expires_at=datetime(2024, 1, 1, 1))
            assert MessageVerifier('secret').verified(message) == 'x'
