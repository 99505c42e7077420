# Part of Plinth, see License file for full copyright and licensing details.
import os

import pytest
from werkzeug.test import Client

from plinth.http import Application

HERE = os.path.dirname(os.path.abspath(__file__))
VIEWS = os.path.join(HERE, 'views')
PUBLIC = os.path.join(HERE, 'public')

SECRET_KEY_BASE = 'test' * 16


@pytest.fixture
def make_app():
    """ ``make_app(draw, **config)``: an application over the test views
    and public directory, its routes drawn by ``draw``. """
    def factory(draw=None, **overrides):
        options = {
            'secret_key_base': SECRET_KEY_BASE,
            'view_path': [VIEWS],
            'public_path': PUBLIC,
            'dev_mode': [],
            'show_exceptions': 'all',
            'hosts': [],
            'force_ssl': False,
            'proxy_mode': False,
            'session_store': 'cookie',
            'asset_host': None,
        }
        options.update(overrides)
        app = Application(**options)
        if draw is not None:
            app.draw(draw)
        return app
    return factory


@pytest.fixture
def make_client(make_app):
    def factory(draw=None, **overrides):
        return Client(make_app(draw, **overrides))
    return factory
