# Part of Plinth, see License file for full copyright and licensing details.
import pytest
from werkzeug.datastructures import MIMEAccept
from werkzeug.http import parse_accept_header

from plinth import mime
from plinth.tools import inflector


@pytest.mark.parametrize('singular, plural', [
    ('post', 'posts'),
    ('person', 'people'),
    ('Person', 'People'),
    ('sales_person', 'sales_people'),
    ('category', 'categories'),
    ('box', 'boxes'),
    ('mouse', 'mice'),
    ('status', 'statuses'),
    ('wife', 'wives'),
    ('analysis', 'analyses'),
    ('matrix', 'matrices'),
    ('quiz', 'quizzes'),
    ('ox', 'oxen'),
    ('octopus', 'octopi'),
    ('sheep', 'sheep'),
    ('series', 'series'),
])
def test_inflections(singular, plural):
    assert inflector.pluralize(singular) == plural
    assert inflector.singularize(plural) == singular


def test_pluralize_edge_cases():
    assert inflector.pluralize('half') == 'halves'
    assert inflector.pluralize('post', count=1) == 'post'
    assert inflector.pluralize('posts') == 'posts'
    assert inflector.pluralize('people') == 'people'
    assert inflector.pluralize('') == ''


def test_singularize_edge_cases():
    assert inflector.singularize('news') == 'news'
    assert inflector.singularize('address') == 'address'
    assert inflector.singularize('vertices') == 'vertex'
    assert inflector.singularize('post') == 'post'


def test_camelize_and_underscore():
    assert inflector.camelize('admin/photo_albums') == 'Admin.PhotoAlbums'
    assert inflector.camelize('photo_albums', uppercase_first_letter=False) == 'photoAlbums'
    assert inflector.underscore('Admin.PhotoAlbums') == 'admin/photo_albums'
    assert inflector.underscore('HTMLParser') == 'html_parser'
    assert inflector.underscore('photo-albums') == 'photo_albums'


def test_humanize_and_titleize():
    assert inflector.humanize('author_id') == 'Author'
    assert inflector.humanize('first_name') == 'First name'
    assert inflector.humanize('first_name', capitalize=False) == 'first name'
    assert inflector.titleize('man_from_the_boondocks') == 'Man From The Boondocks'
    assert inflector.titleize('x-men: the last stand') == 'X Men: The Last Stand'


def test_parameterize():
    assert inflector.parameterize('Donald E. Knuth') == 'donald-e-knuth'
    assert inflector.parameterize('Crème brûlée!') == 'creme-brulee'
    assert inflector.parameterize('Donald E. Knuth', separator='_') == 'donald_e_knuth'


# =========================================================
# Formats
# =========================================================

def test_lookup():
    assert mime.lookup('text/html; charset=utf-8').symbol == 'html'
    assert mime.lookup('application/xhtml+xml').symbol == 'html'
    assert mime.lookup('Application/JSON').symbol == 'json'
    assert mime.lookup('application/x-unknown') is None
    assert mime.lookup(None) is None


def test_extensions():
    assert mime.lookup_by_extension('.JSON').symbol == 'json'
    assert mime.lookup_by_extension('htm').symbol == 'html'
    assert mime.lookup_by_extension('exe') is None
    assert mime.mimetype_for('csv') == 'text/csv'
    assert mime.mimetype_for('nope') == 'application/octet-stream'
    assert mime.get('pdf').extensions == ('pdf',)


def test_register():
    registered = mime.register('application/vnd.api+json', 'jsonapi')
    try:
        assert registered.extensions == ('jsonapi',)
        assert mime.lookup('application/vnd.api+json') is registered
        assert 'jsonapi' in mime.symbols()
    finally:
        mime.unregister('jsonapi')
    assert mime.get('jsonapi') is None
    assert mime.lookup_by_extension('jsonapi') is None
    # unknown symbols are ignored
    mime.unregister('jsonapi')


@pytest.mark.parametrize('accept, expected', [
    ('application/json, text/html;q=0.9', 'json'),
    ('text/html, application/json;q=0.5', 'html'),
    ('text/*', 'html'),
    ('application/xhtml+xml', 'html'),
    ('image/png', None),
])
def test_negotiate(accept, expected):
    accept_mimetypes = parse_accept_header(accept, MIMEAccept)
    assert mime.negotiate(accept_mimetypes, ['html', 'json']) == expected


def test_negotiate_default():
    accept_mimetypes = parse_accept_header('image/png', MIMEAccept)
    assert mime.negotiate(accept_mimetypes, ['html', 'json'], default='html') == 'html'
    assert mime.negotiate(accept_mimetypes, ['html', 'nope']) is None
