# Part of Plinth, see License file for full copyright and licensing details.
import ipaddress
import re

import pytest
from werkzeug.test import Client
from werkzeug.wrappers import Request, Response

from plinth import middleware
from plinth.http import Controller
from plinth.middleware import (
    HeadersMiddleware,
    HostAuthorization,
    MethodOverride,
    MiddlewareStack,
    RequestId,
    Runtime,
    SSL,
)
from plinth.middleware.method_override import ORIGINAL_METHOD


@Request.application
def echo(request):
    """ Answer with the method and the original one. """
    original = request.environ.get(ORIGINAL_METHOD, '')
    response = Response(f'{request.method} {original}'.strip())
    response.set_cookie('seen', 'yes')
    return response


class Tagger(HeadersMiddleware):
    def __init__(self, app, tag='x'):
        super().__init__(app)
        self.tag = tag

    def process_response(self, environ, status, headers):
        headers.add('X-Tag', self.tag)


class Upper(Tagger):
    def process_response(self, environ, status, headers):
        return '299 Tagged'


class CrashesController(Controller):
    def show(self):
        raise ValueError("Kaboom")


class TestMiddlewareStack:
    def test_operations(self):
        stack = MiddlewareStack()
        stack.use(RequestId)
        stack.use(Runtime)
        stack.unshift(MethodOverride)
        stack.insert_before(Runtime, Tagger, tag='before')
        stack.insert_after(RequestId, Upper)
        assert [m.klass for m in stack] == [MethodOverride, RequestId, Upper, Tagger, Runtime]
        assert stack[2].name == 'Upper'
        assert Tagger in stack

        stack.swap(Upper, SSL)
        stack.delete(Tagger)
        assert [m.klass for m in stack] == [MethodOverride, RequestId, SSL, Runtime]
        assert len(stack) == 4

        with pytest.raises(ValueError, match='No such middleware'):
            stack.delete(Tagger)

    def test_build_order(self):
        stack = MiddlewareStack()
        stack.use(Tagger, tag='outer')
        stack.use(Tagger, tag='inner')
        response = Client(stack.build(echo)).get('/')
        # the outermost middleware edits the headers last
        assert response.headers.getlist('X-Tag') == ['inner', 'outer']

    def test_status_rewrite(self):
        response = Client(Upper(echo)).get('/')
        assert response.status == '299 Tagged'


class TestHostAuthorization:
    @pytest.fixture
    def client(self):
        hosts = ['example.com', '.plinth.dev', ipaddress.ip_network('10.0.0.0/8'), re.compile(r'^api\d\.test$')]
        return Client(HostAuthorization(echo, hosts=hosts))

    @pytest.mark.parametrize('host', [
        'example.com', 'example.com:8080', 'plinth.dev', 'docs.plinth.dev', '10.1.2.3', 'api1.test',
    ])
    def test_allowed(self, client, host):
        assert client.get('/', headers={'Host': host}).status_code == 200

    def test_blocked(self, client):
        response = client.get('/', headers={'Host': 'evil.com'})
        assert response.status_code == 403
        assert response.get_data(as_text=True) == 'Blocked hosts: evil.com'

    def test_blocked_json(self, client):
        response = client.get('/', headers={'Host': 'evil.com', 'Accept': 'application/json'})
        assert response.json == {'status': 403, 'error': 'Blocked hosts: evil.com'}

    def test_forwarded_host(self, client):
        headers = {'Host': 'example.com', 'X-Forwarded-Host': 'evil.com'}
        assert client.get('/', headers=headers).status_code == 403

    def test_exclude(self):
        app = HostAuthorization(echo, hosts=['example.com'],
                                exclude=lambda environ: environ['PATH_INFO'] == '/up')
        assert Client(app).get('/up', headers={'Host': 'evil.com'}).status_code == 200

    def test_empty_allows_all(self):
        assert Client(HostAuthorization(echo, hosts=[])).get('/', headers={'Host': 'any.com'}).status_code == 200


class TestSSL:
    def test_redirect(self):
        client = Client(SSL(echo))
        response = client.get('/photos?page=2', headers={'Host': 'example.com:8080'})
        assert response.status_code == 301
        assert response.headers['Location'] == 'https://example.com/photos?page=2'
        assert client.post('/photos').status_code == 308

    def test_hsts_and_secure_cookies(self):
        response = Client(SSL(echo)).get('/', base_url='https://example.com')
        assert response.headers['Strict-Transport-Security'] == 'max-age=63072000; includeSubDomains'
        assert response.headers['Set-Cookie'].endswith('; Secure')

    def test_options(self):
        app = SSL(echo, redirect={'host': 'secure.example.com', 'port': 8443},
                  hsts={'expires': 3600, 'subdomains': False, 'preload': True})
        response = Client(app).get('/login')
        assert response.headers['Location'] == 'https://secure.example.com:8443/login'
        response = Client(app).get('/', base_url='https://example.com')
        assert response.headers['Strict-Transport-Security'] == 'max-age=3600; preload'

    def test_disabled_hsts(self):
        response = Client(SSL(echo, hsts=False)).get('/', base_url='https://example.com')
        assert response.headers['Strict-Transport-Security'] == 'max-age=0'

    def test_exclude(self):
        app = SSL(echo, exclude=lambda environ: environ['PATH_INFO'] == '/up')
        assert Client(app).get('/up').status_code == 200


class TestMethodOverride:
    def test_form_field(self):
        response = Client(MethodOverride(echo)).post('/', data={'_method': 'delete'})
        assert response.get_data(as_text=True) == 'DELETE POST'

    def test_header(self):
        response = Client(MethodOverride(echo)).post('/', headers={'X-HTTP-Method-Override': 'PATCH'})
        assert response.get_data(as_text=True) == 'PATCH POST'

    def test_only_post(self):
        response = Client(MethodOverride(echo)).get('/?_method=delete')
        assert response.get_data(as_text=True) == 'GET'

    def test_invalid_method(self):
        response = Client(MethodOverride(echo)).post('/', data={'_method': 'explode'})
        assert response.get_data(as_text=True) == 'POST'

    def test_body_remains_readable(self):
        @Request.application
        def form(request):
            return Response(request.form['title'])

        response = Client(MethodOverride(form)).post('/', data={'_method': 'put', 'title': 'Dunes'})
        assert response.get_data(as_text=True) == 'Dunes'


class TestRequestId:
    def test_generated(self):
        response = Client(RequestId(echo)).get('/')
        assert re.fullmatch(r'[0-9a-f-]{36}', response.headers['X-Request-Id'])

    def test_sanitized(self):
        headers = {'X-Request-Id': 'abc-123 <script>@x'}
        response = Client(RequestId(echo)).get('/', headers=headers)
        assert response.headers['X-Request-Id'] == 'abc-123script@x'

    def test_truncated(self):
        response = Client(RequestId(echo)).get('/', headers={'X-Request-Id': 'a' * 300})
        assert response.headers['X-Request-Id'] == 'a' * 255

    def test_runtime(self):
        response = Client(Runtime(echo)).get('/')
        assert re.fullmatch(r'\d+\.\d{6}', response.headers['X-Runtime'])


class TestApplicationStack:
    def test_default_stack(self, make_app):
        app = make_app(hosts=['example.com'], force_ssl=True)
        assert [m.klass for m in app.middleware] == [
            middleware.HostAuthorization,
            middleware.SSL,
            middleware.Static,
            middleware.MethodOverride,
            middleware.RequestId,
            middleware.Runtime,
            middleware.ShowExceptions,
            middleware.DebugExceptions,
            middleware.Cookies,
            middleware.SessionMiddleware,
            middleware.ContentSecurityPolicyMiddleware,
        ]
        assert middleware.HostAuthorization not in make_app().middleware

    def test_static_files(self, make_client):
        client = make_client()
        response = client.get('/robots.txt')
        assert response.status_code == 200
        assert 'User-agent' in response.get_data(as_text=True)
        assert client.post('/robots.txt').status_code == 404

    def test_static_disabled(self, make_client):
        assert make_client(serve_static_files=False).get('/robots.txt').status_code == 404

    def test_public_error_page(self, make_client):
        response = make_client().get('/nowhere')
        assert response.status_code == 404
        assert "The page you were looking for doesn't exist." in response.get_data(as_text=True)
        assert response.headers['X-Request-Id']

    def test_json_error(self, make_client):
        response = make_client().get('/nowhere.json')
        assert response.status_code == 404
        assert response.json == {'status': 404, 'error': 'Not Found'}

    def test_method_not_allowed(self, make_client):
        client = make_client(lambda r: r.get('/status', to='status#show'))
        response = client.delete('/status')
        assert response.status_code == 405
        assert 'GET' in response.headers['Allow']

    def test_unknown_host(self, make_client):
        client = make_client(hosts=['example.com'])
        assert client.get('/robots.txt', headers={'Host': 'evil.com'}).status_code == 403
        assert client.get('/robots.txt', headers={'Host': 'example.com'}).status_code == 200

    def test_force_ssl(self, make_client):
        response = make_client(force_ssl=True).get('/robots.txt')
        assert response.status_code == 301
        assert response.headers['Location'] == 'https://localhost/robots.txt'

    def test_exceptions_raised(self, make_client):
        client = make_client(show_exceptions='none')
        with pytest.raises(Exception, match='No route matches'):
            client.get('/nowhere')

    def test_rescuable_exceptions(self, make_client):
        def draw(r):
            r.get('/crash', to='crashes#show')
        client = make_client(draw, show_exceptions='rescuable')
        assert client.get('/nowhere').status_code == 404
        with pytest.raises(ValueError, match='Kaboom'):
            client.get('/crash')
        assert make_client(draw).get('/crash').status_code == 500

    def test_localized_error_page(self, make_client):
        client = make_client()
        response = client.get('/nowhere', headers={'Accept-Language': 'fr-CH, fr;q=0.9'})
        assert response.status_code == 404
        assert "La page que vous cherchez n'existe pas." in response.get_data(as_text=True)
        response = client.get('/nowhere', headers={'Accept-Language': 'de, ../../etc;q=0.5'})
        assert "The page you were looking for doesn't exist." in response.get_data(as_text=True)

    def test_debug_page(self, make_client):
        client = make_client(lambda r: r.root('pages#home'), dev_mode=['all'])
        response = client.get('/nowhere')
        assert response.status_code == 404
        body = response.get_data(as_text=True)
        assert 'plinth.exceptions.RoutingError' in body
        assert 'pages#home' in body
