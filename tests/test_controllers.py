# Part of Plinth, see License file for full copyright and licensing details.
import os
import re
from datetime import datetime, timedelta

import pytest
from werkzeug.test import Client

from plinth.exceptions import AccessError, UserError
from plinth.http import (
    Controller,
    after_action,
    around_action,
    before_action,
    rescue_from,
    route,
)

PUBLIC = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'public')
OLD_SECRET = 'old' * 22

TRACE = []

ARTICLES = {
    '1': {'id': 1, 'title': 'Hello', 'updated_at': datetime(2024, 3, 1, 12, 0)},
}


class RecordNotFound(Exception):
    pass


class ApplicationController(Controller):
    abstract = True

    @rescue_from(RecordNotFound)
    def not_found(self, exc):
        self.render(plain=f'Not found: {exc}', status='not_found')


class ArticlesController(ApplicationController):
    @before_action(only=['show', 'update', 'destroy'])
    def set_article(self):
        try:
            self.article = ARTICLES[self.params['id']]
        except KeyError:
            raise RecordNotFound(self.params['id']) from None

    @after_action(except_=['index'])
    def stamp(self):
        self.response.headers['X-Action'] = self.action_name

    def index(self):
        self.render(json=[article['title'] for article in ARTICLES.values()])

    def show(self):
        if self.stale(etag=self.article['id'], last_modified=self.article['updated_at']):
            self.respond_to(
                html=lambda: self.render(plain=self.article['title']),
                json=lambda: self.render(json=self.article),
            )

    def create(self):
        title = self.params.require('article').fetch('title')
        self.redirect_to(self.article_path(2), notice=f'{title} created')

    def update(self):
        self.head('no_content', x_updated=self.article['title'])

    def destroy(self):
        raise AccessError("Articles cannot be deleted")

    def links(self):
        return {
            'url': self.url_for({'action': 'show', 'id': 1}),
            'path': self.article_path(1),
            'new': self.new_article_url(),
        }

    def double(self):
        self.render(plain='once')
        self.render(plain='twice')

    def preview(self):
        pass

    def publish(self):
        pass

    def invalid(self):
        raise UserError("Bad article")


class TracesController(ApplicationController):
    @before_action
    def first(self):
        TRACE.append('before')

    @around_action
    def wrap(self, block):
        TRACE.append('around:in')
        block()
        TRACE.append('around:out')

    @after_action
    def last(self):
        TRACE.append('after')
        self.response.headers['X-Trace'] = ','.join(TRACE)

    def index(self):
        TRACE.append('action')
        return 'traced'


class QuietTracesController(TracesController):
    pass

QuietTracesController.skip_before_action('first')
QuietTracesController.after_action(lambda controller: TRACE.append('lambda'))


class ReportsController(ApplicationController):
    @before_action
    def authorize(self):
        if self.request.httprequest.headers.get('X-Role') != 'admin':
            self.render(plain='Forbidden', status='forbidden')

    def index(self):
        return 'Reports'


class VaultController(ApplicationController):
    def index(self):
        return 'Secret'

VaultController.http_basic_authenticate_with('admin', 'hunter2', realm='Vault')


class RedirectsController(ApplicationController):
    def home(self):
        self.redirect_to('/articles', notice='Welcome back')

    def away(self):
        self.redirect_to('https://evil.example.com/')

    def allowed(self):
        self.redirect_to('https://docs.example.com/', allow_other_host=True, status=301)

    def back(self):
        self.redirect_back(fallback_location='/articles')

    def flashed(self):
        return self.flash.notice or 'none'


class CommentsController(ApplicationController):
    def new(self):
        self.render(plain=self.form_authenticity_token())

    def create(self):
        self.render(plain='Created', status='created')

CommentsController.protect_from_forgery()


class RequestInfoController(ApplicationController):
    def show(self):
        request = self.request
        return {
            'host': request.host,
            'port': request.port,
            'base_url': request.base_url,
            'domain': request.domain(),
            'subdomains': request.subdomains(),
            'format': request.format,
            'xhr': request.is_xhr,
            'request_id': request.request_id,
            'method': request.method,
            'original_method': request.original_method,
        }


class ApiController(ApplicationController):
    @route('/api/echo', type='json', methods=['POST'])
    def echo(self):
        return {'received': self.params.get('message')}

    @route('/api/fail', type='json', methods=['POST'])
    def fail(self):
        raise UserError("Nope")

    @route('/api/boom', type='json')
    def boom(self):
        raise ValueError("secret detail")

    @route('/api/items/<int:item_id>', methods=['GET'])
    def item(self, item_id):
        return {'id': item_id}

    @route('/api/widgets', cors='*', methods=['GET', 'OPTIONS'])
    def widgets(self):
        return ['gear']


class HaltingController(ApplicationController):
    @around_action
    def guard(self, block):
        TRACE.append('guard')
        if self.params.get('open'):
            block()

    def index(self):
        TRACE.append('action')
        return 'ran'


class AccountsController(ApplicationController):
    def login(self):
        self.session['user'] = 'ada'
        self.cookies['remember'] = 'me'
        return 'ok'

    def show(self):
        return {'user': self.session.get('user'), 'remember': self.cookies.get('remember')}

    def update(self):
        return self.show()

AccountsController.protect_from_forgery(with_='null_session')


class ProfilesController(AccountsController):
    pass

ProfilesController.protect_from_forgery(with_='reset_session')


class ScriptsController(ApplicationController):
    def show(self):
        self.render(body="alert('hi')", content_type='text/javascript')

    def data(self):
        self.render(json={'ok': True})

ScriptsController.protect_from_forgery()


class CachesController(ApplicationController):
    def fixed(self):
        self.expires_in(timedelta(minutes=20), public=True, must_revalidate=True,
                        stale_while_revalidate=60, s_maxage=300)
        return 'cached'

    def now(self):
        self.expires_now()
        return 'revalidate'

    def never(self):
        self.no_store()
        return 'private'

    def forever(self):
        if self.http_cache_forever(public=True):
            self.render(plain='forever')

    def validated(self):
        self.expires_in(60)
        if self.stale(etag='v1', public=True):
            self.render(plain='validated')


class ExportsController(ApplicationController):
    def csv(self):
        self.send_data('id,title\n1,Hello\n', filename='articles.csv')

    def pdf(self):
        self.send_data(b'%PDF-1.4', type='pdf', disposition='inline', filename='résumé.pdf')

    def robots(self):
        self.send_file(os.path.join(PUBLIC, 'robots.txt'), disposition='inline')

    def roster(self):
        return {'html': self.render_to_string('shared/roster', members=['Ann', 'Bob'])}


class SearchesController(ApplicationController):
    def index(self):
        return self.params.permit('q').to_dict()


class PreferencesController(ApplicationController):
    def show(self):
        return {'theme': self.cookies.signed.get('theme')}

    def update(self):
        self.cookies.signed['theme'] = self.params['theme']
        return 'saved'


def draw(r):
    with r.resources('articles'):
        with r.collection():
            r.get('links')
            r.get('double')
            r.get('preview')
            r.post('publish')
            r.get('invalid')
    r.get('/traces', to='traces#index')
    r.get('/quiet', to='quiet_traces#index')
    r.get('/reports', to='reports#index')
    r.get('/vault', to='vault#index')
    with r.controller('redirects'):
        r.get('/home', action='home')
        r.get('/away', action='away')
        r.get('/allowed', action='allowed')
        r.get('/back', action='back')
        r.get('/flashed', action='flashed')
    r.resources('comments', only=['new', 'create'])
    r.match('/info', to='request_info#show', via='all')
    r.get('/missing', to='articles#unknown')
    r.get('/halting', to='halting#index')
    for name in ('accounts', 'profiles'):
        with r.controller(name):
            r.get(f'/{name}/login', action='login')
            r.get(f'/{name}/me', action='show')
            r.post(f'/{name}/me', action='update')
    r.get('/script', to='scripts#show')
    r.get('/script_data', to='scripts#data')
    with r.controller('caches'):
        for action in ('fixed', 'now', 'never', 'forever', 'validated'):
            r.get(f'/caches/{action}', action=action)
    with r.controller('exports'):
        for action in ('csv', 'pdf', 'robots', 'roster'):
            r.get(f'/exports/{action}', action=action)
    r.get('/searches', to='searches#index')
    r.get('/preference', to='preferences#show')
    r.post('/preference', to='preferences#update')



@pytest.fixture
def client(make_client):
    return make_client(draw)


@pytest.fixture(autouse=True)
def clear_trace():
    TRACE.clear()
    yield
    TRACE.clear()


class TestCallbacks:
    def test_chain_order(self, client):
        response = client.get('/traces')
        assert response.get_data(as_text=True) == 'traced'
        assert TRACE == ['before', 'around:in', 'action', 'after', 'around:out']
        assert response.headers['X-Trace'] == 'before,around:in,action,after'

    def test_skip_and_callable_filters(self, client):
        client.get('/quiet')
        # the last declared after callback runs first
        assert TRACE == ['around:in', 'action', 'lambda', 'after', 'around:out']

    def test_skip_undefined_callback(self):
        with pytest.raises(ValueError, match='has not been defined'):
            TracesController.skip_before_action('missing')

    def test_before_action_halts(self, client):
        response = client.get('/reports')
        assert response.status_code == 403
        assert response.get_data(as_text=True) == 'Forbidden'
        response = client.get('/reports', headers={'X-Role': 'admin'})
        assert response.status_code == 200
        assert response.get_data(as_text=True) == 'Reports'

    def test_after_action_alters_response(self, client):
        assert client.get('/articles/1').headers['X-Action'] == 'show'
        assert 'X-Action' not in client.get('/articles').headers

    def test_rescue_from(self, client):
        response = client.get('/articles/99')
        assert response.status_code == 404
        assert response.get_data(as_text=True) == 'Not found: 99'


class TestRendering:
    def test_render_json(self, client):
        response = client.get('/articles')
        assert response.mimetype == 'application/json'
        assert response.json == ['Hello']

    def test_respond_to(self, client):
        assert client.get('/articles/1').get_data(as_text=True) == 'Hello'
        response = client.get('/articles/1.json')
        assert response.json['title'] == 'Hello'
        assert response.json['updated_at'] == '2024-03-01 12:00:00'
        response = client.get('/articles/1', headers={'Accept': 'application/json'})
        assert response.json['id'] == 1

    def test_unknown_format(self, client):
        response = client.get('/articles/1', headers={'Accept': 'application/xml'})
        assert response.status_code == 406
        assert response.get_data(as_text=True) == '406 Not Acceptable'

    def test_head_with_headers(self, client):
        response = client.patch('/articles/1')
        assert response.status_code == 204
        assert response.headers['X-Updated'] == 'Hello'
        assert 'Content-Type' not in response.headers

    def test_double_render(self, client):
        assert client.get('/articles/double').status_code == 500

    def test_missing_template(self, client):
        assert client.get('/articles/preview').status_code == 500
        # no template for a non-GET request: nothing to say
        assert client.post('/articles/publish').status_code == 204

    def test_unknown_action(self, client):
        assert client.get('/missing').status_code == 404

    def test_error_statuses(self, client):
        response = client.delete('/articles/1')
        assert response.status_code == 403
        assert 'Articles cannot be deleted' in response.get_data(as_text=True)
        assert client.get('/articles/invalid').status_code == 400

    def test_default_headers(self, client):
        response = client.get('/articles')
        assert response.headers['X-Frame-Options'] == 'SAMEORIGIN'
        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert response.headers['Referrer-Policy'] == 'strict-origin-when-cross-origin'

    def test_url_helpers(self, client):
        assert client.get('/articles/links').json == {
            'url': 'http://localhost/articles/1',
            'path': '/articles/1',
            'new': 'http://localhost/articles/new',
        }


class TestConditionalGet:
    def test_etag(self, client):
        response = client.get('/articles/1')
        etag = response.headers['ETag']
        assert etag.startswith('W/"')
        assert response.headers['Cache-Control'] == 'max-age=0, private, must-revalidate'
        assert response.headers['Last-Modified'] == 'Fri, 01 Mar 2024 12:00:00 GMT'

        response = client.get('/articles/1', headers={'If-None-Match': etag})
        assert response.status_code == 304
        assert response.get_data() == b''

    def test_last_modified(self, client):
        response = client.get('/articles/1', headers={'If-Modified-Since': 'Sat, 02 Mar 2024 00:00:00 GMT'})
        assert response.status_code == 304
        response = client.get('/articles/1', headers={'If-Modified-Since': 'Thu, 29 Feb 2024 00:00:00 GMT'})
        assert response.status_code == 200


class TestRedirects:
    def test_redirect_with_flash(self, client):
        response = client.get('/home')
        assert response.status_code == 302
        assert response.headers['Location'] == 'http://localhost/articles'
        assert client.get('/flashed').get_data(as_text=True) == 'Welcome back'
        assert client.get('/flashed').get_data(as_text=True) == 'none'

    def test_create_redirects(self, client):
        response = client.post('/articles', data={'article[title]': 'Draft'})
        assert response.status_code == 302
        assert response.headers['Location'] == 'http://localhost/articles/2'
        assert client.get('/flashed').get_data(as_text=True) == 'Draft created'

    def test_parameter_missing(self, client):
        assert client.post('/articles', data={'title': 'Draft'}).status_code == 400

    def test_unsafe_redirect(self, client):
        assert client.get('/away').status_code == 500

    def test_other_host_allowed(self, client):
        response = client.get('/allowed')
        assert response.status_code == 301
        assert response.headers['Location'] == 'https://docs.example.com/'

    def test_redirect_back(self, client):
        response = client.get('/back', headers={'Referer': 'http://localhost/articles/1'})
        assert response.headers['Location'] == 'http://localhost/articles/1'
        response = client.get('/back', headers={'Referer': 'https://evil.example.com/'})
        assert response.headers['Location'] == 'http://localhost/articles'
        response = client.get('/back')
        assert response.headers['Location'] == 'http://localhost/articles'


class TestBasicAuth:
    def test_challenge(self, client):
        response = client.get('/vault')
        assert response.status_code == 401
        assert response.headers['WWW-Authenticate'] == 'Basic realm="Vault"'
        assert response.get_data(as_text=True) == "HTTP Basic: Access denied.\n"

    def test_credentials(self, client):
        assert client.get('/vault', auth=('admin', 'hunter2')).get_data(as_text=True) == 'Secret'
        assert client.get('/vault', auth=('admin', 'wrong')).status_code == 401


class TestForgeryProtection:
    def test_missing_token(self, client):
        response = client.post('/comments')
        assert response.status_code == 422
        assert response.get_data(as_text=True) == '422 Unprocessable Entity'

    def test_valid_token(self, client):
        token = client.get('/comments/new').get_data(as_text=True)
        assert re.fullmatch(r'[\w=-]+', token)
        response = client.post('/comments', data={'authenticity_token': token})
        assert response.status_code == 201
        response = client.post('/comments', headers={'X-CSRF-Token': token})
        assert response.status_code == 201

    def test_tokens_are_masked(self, client):
        first = client.get('/comments/new').get_data(as_text=True)
        second = client.get('/comments/new').get_data(as_text=True)
        assert first != second
        assert client.post('/comments', data={'authenticity_token': first}).status_code == 201

    def test_foreign_origin(self, client):
        token = client.get('/comments/new').get_data(as_text=True)
        response = client.post('/comments', data={'authenticity_token': token},
                               headers={'Origin': 'https://evil.example.com'})
        assert response.status_code == 422

    def test_token_of_another_session(self, make_client):
        token = make_client(draw).get('/comments/new').get_data(as_text=True)
        other = make_client(draw)
        other.get('/comments/new')
        assert other.post('/comments', data={'authenticity_token': token}).status_code == 422


class TestRequest:
    def test_request_info(self, client):
        response = client.get(
            '/info', base_url='http://www.shop.example.com:8080',
            headers={'X-Requested-With': 'XMLHttpRequest', 'X-Request-Id': 'abc-123'},
        )
        assert response.json == {
            'host': 'www.shop.example.com',
            'port': 8080,
            'base_url': 'http://www.shop.example.com:8080',
            'domain': 'example.com',
            'subdomains': ['www', 'shop'],
            'format': 'js',
            'xhr': True,
            'request_id': 'abc-123',
            'method': 'GET',
            'original_method': 'GET',
        }

    def test_method_override(self, client):
        response = client.post('/info', data={'_method': 'patch'})
        assert response.json['method'] == 'PATCH'
        assert response.json['original_method'] == 'POST'

    def test_format_parameter(self, client):
        assert client.get('/info.json').json['format'] == 'json'
        assert client.get('/info?format=csv').json['format'] == 'csv'


class TestRouteDecorator:
    def test_json_route(self, client):
        response = client.post('/api/echo', json={'message': 'hi'})
        assert response.json == {'received': 'hi'}

    def test_json_route_user_error(self, client):
        response = client.post('/api/fail', json={})
        assert response.status_code == 400
        assert response.json == {'error': {
            'code': 400,
            'message': 'Nope',
            'name': 'plinth.exceptions.UserError',
        }}

    def test_json_route_hides_server_errors(self, client):
        response = client.get('/api/boom')
        assert response.status_code == 500
        assert response.json['error']['message'] == 'Internal Server Error'
        assert response.json['error']['name'] == 'builtins.ValueError'

    def test_path_converters(self, client):
        assert client.get('/api/items/5').json == {'id': 5}
        assert client.get('/api/items/five').status_code == 404

    def test_cors_preflight(self, client):
        response = client.open('/api/widgets', method='OPTIONS')
        assert response.status_code == 204
        assert response.headers['Access-Control-Allow-Origin'] == '*'
        assert response.headers['Access-Control-Max-Age'] == str(60 * 60 * 24)
        response = client.get('/api/widgets')
        assert response.json == ['gear']
        assert response.headers['Access-Control-Allow-Origin'] == '*'


class TestHaltedChain:
    def test_around_action_without_block(self, client):
        response = client.get('/halting')
        assert response.status_code == 200
        assert response.get_data() == b''
        assert TRACE == ['guard']

    def test_around_action_with_block(self, client):
        assert client.get('/halting?open=1').get_data(as_text=True) == 'ran'
        assert TRACE == ['guard', 'action']


class TestForgeryStrategies:
    def test_null_session(self, client):
        client.get('/accounts/login')
        assert client.get('/accounts/me').json == {'user': 'ada', 'remember': 'me'}

        response = client.post('/accounts/me')
        assert response.status_code == 200
        assert response.json == {'user': None, 'remember': None}
        assert 'Set-Cookie' not in response.headers
        # the real session is left untouched
        assert client.get('/accounts/me').json == {'user': 'ada', 'remember': 'me'}

    def test_reset_session(self, client):
        client.get('/profiles/login')
        response = client.post('/profiles/me')
        assert response.status_code == 200
        assert response.json['user'] is None
        assert client.get('/profiles/me').json['user'] is None

    def test_invalid_strategy(self):
        with pytest.raises(ValueError, match='Invalid forgery protection strategy'):
            ApplicationController.protect_from_forgery(with_='ignore')


class TestSameOriginRequest:
    def test_cross_origin_javascript(self, client):
        response = client.get('/script')
        assert response.status_code == 422

    def test_xhr_javascript(self, client):
        response = client.get('/script', headers={'X-Requested-With': 'XMLHttpRequest'})
        assert response.status_code == 200
        assert response.mimetype == 'text/javascript'

    def test_other_formats(self, client):
        assert client.get('/script_data').json == {'ok': True}


class TestCacheControl:
    def test_expires_in(self, client):
        response = client.get('/caches/fixed')
        assert response.headers['Cache-Control'] == \
            'max-age=1200, public, must-revalidate, stale-while-revalidate=60, s-maxage=300'
        assert 'Date' in response.headers

    def test_expires_now(self, client):
        assert client.get('/caches/now').headers['Cache-Control'] == 'no-cache'

    def test_no_store(self, client):
        assert client.get('/caches/never').headers['Cache-Control'] == 'no-store'

    def test_http_cache_forever(self, client):
        response = client.get('/caches/forever')
        assert response.get_data(as_text=True) == 'forever'
        assert response.headers['Cache-Control'] == 'max-age=3153600000, public, immutable'
        assert response.headers['Last-Modified'] == 'Sat, 01 Jan 2011 00:00:00 GMT'

        response = client.get('/caches/forever', headers={'If-None-Match': response.headers['ETag']})
        assert response.status_code == 304

    def test_fresh_when_keeps_cache_control(self, client):
        response = client.get('/caches/validated')
        assert response.get_data(as_text=True) == 'validated'
        assert response.headers['Cache-Control'] == 'max-age=60, public'


class TestSendData:
    def test_attachment(self, client):
        response = client.get('/exports/csv')
        assert response.mimetype == 'text/csv'
        assert response.headers['Content-Disposition'] == "attachment; filename*=UTF-8''articles.csv"
        assert response.get_data(as_text=True) == 'id,title\n1,Hello\n'

    def test_inline(self, client):
        response = client.get('/exports/pdf')
        assert response.mimetype == 'application/pdf'
        assert response.headers['Content-Disposition'] == "inline; filename*=UTF-8''r%C3%A9sum%C3%A9.pdf"
        assert response.get_data() == b'%PDF-1.4'

    def test_send_file(self, client):
        response = client.get('/exports/robots')
        assert response.mimetype == 'text/plain'
        assert response.headers['Content-Disposition'] == "inline; filename*=UTF-8''robots.txt"
        assert response.get_data(as_text=True).startswith('User-agent: *')

    def test_render_to_string(self, client):
        assert client.get('/exports/roster').json == {'html': '<b>Ann</b><hr /><b>Bob</b>'}


class TestUnpermittedParameters:
    def test_logged_by_default(self, client):
        assert client.get('/searches?q=hats&page=2').json == {'q': 'hats'}

    def test_raise_for_the_application(self, make_client):
        client = make_client(draw, action_on_unpermitted_parameters='raise')
        response = client.get('/searches?q=hats&page=2')
        assert response.status_code == 400
        assert client.get('/searches?q=hats').json == {'q': 'hats'}


class TestCookieRotation:
    def test_retired_secret(self, make_client, make_app):
        old = make_client(draw, secret_key_base=OLD_SECRET)
        old.post('/preference', data={'theme': 'dark'})
        signed = old.get_cookie('theme').value

        client = make_client(draw)
        client.set_cookie('theme', signed)
        assert client.get('/preference').json == {'theme': None}

        app = make_app(draw)
        app.rotate_cookies('signed', secret_key_base=OLD_SECRET)
        client = Client(app)
        client.set_cookie('theme', signed)
        assert client.get('/preference').json == {'theme': 'dark'}
        # written back with the current secret
        assert client.get_cookie('theme').value != signed

    def test_unknown_kind(self, make_app):
        with pytest.raises(ValueError, match='Unknown cookie kind'):
            make_app().rotate_cookies('plain')
