# Part of Plinth, see License file for full copyright and licensing details.
import configparser
import os
import sys
import textwrap

import pytest

import plinth
from plinth.cli import commands, load_application, main
from plinth.tools.config import configmanager


def normalized(path):
    return os.path.normcase(os.path.realpath(str(path)))


@pytest.fixture
def rcfile(tmp_path):
    return tmp_path / 'plinthrc'


@pytest.fixture
def cfg(rcfile):
    return configmanager(fname=str(rcfile))


class TestConfig:
    def test_defaults(self, cfg, rcfile):
        assert cfg.rcfile == str(rcfile)
        assert cfg['http_port'] == 8000
        assert cfg['session_store'] == 'cookie'
        assert cfg['session_key'] == '_plinth_session'
        assert cfg['dev_mode'] == []
        assert cfg['view_path'] == [normalized('views')]
        assert 'log_level' in cfg
        assert cfg.get('nope', 'default') == 'default'

    def test_command_line(self, cfg):
        cfg.parse_config([
            '--http-port', '9000', '--dev', 'all', '--hosts', 'example.com, .example.org',
            '--session-store', 'memory', '--proxy-mode',
        ], setup_logging=False)
        assert cfg['http_port'] == 9000
        assert cfg['dev_mode'] == ['reload', 'werkzeug']
        assert cfg['hosts'] == ['example.com', '.example.org']
        assert cfg['session_store'] == 'memory'
        assert cfg['proxy_mode'] is True

    def test_serve_static_files(self, cfg):
        assert cfg['serve_static_files'] is True
        cfg.parse_config(['--no-serve-static-files'], setup_logging=False)
        assert cfg['serve_static_files'] is False
        cfg.parse_config(['--serve-static-files'], setup_logging=False)
        assert cfg['serve_static_files'] is True

    def test_secret_key_base_from_environment(self, rcfile, monkeypatch):
        monkeypatch.setenv('PLINTH_SECRET_KEY_BASE', 'env' * 22)
        cfg = configmanager(fname=str(rcfile))
        assert cfg['secret_key_base'] == 'env' * 22
        cfg.parse_config(['--secret-key-base', 'cli' * 22], setup_logging=False)
        assert cfg['secret_key_base'] == 'cli' * 22

    @pytest.mark.parametrize('args', [
        ['--session-store', 'redis'],
        ['--show-exceptions', 'some'],
        ['--http-port', 'eighty'],
        ['stray'],
    ])
    def test_invalid_command_line(self, cfg, args):
        with pytest.raises(SystemExit):
            cfg.parse_config(args, setup_logging=False)

    def test_file(self, rcfile, tmp_path):
        rcfile.write_text(textwrap.dedent(f"""\
            [options]
            http_port = 9001
            proxy_mode = True
            hosts = a.example.com,b.example.com
            pidfile = None
            session_store = memory
            view_path = {tmp_path / 'a'},{tmp_path / 'b'}
            log_handler = :INFO,werkzeug:WARNING
            """))
        cfg = configmanager(fname=str(rcfile))
        assert cfg['http_port'] == 9001
        assert cfg['proxy_mode'] is True
        assert cfg['hosts'] == ['a.example.com', 'b.example.com']
        assert cfg['pidfile'] is None
        assert cfg['session_store'] == 'memory'
        assert cfg['view_path'] == [normalized(tmp_path / 'a'), normalized(tmp_path / 'b')]
        assert cfg['log_handler'] == [':INFO', 'werkzeug:WARNING']

        # the command line wins over the file
        cfg.parse_config(['--http-port', '9002'], setup_logging=False)
        assert cfg['http_port'] == 9002

    def test_invalid_file_value(self, rcfile):
        rcfile.write_text('[options]\nsession_store = redis\n')
        with pytest.raises(ValueError, match="Invalid value 'redis' for option 'session_store'"):
            configmanager(fname=str(rcfile))

    def test_file_without_options_section(self, rcfile):
        rcfile.write_text('[other]\nhttp_port = 1\n')
        assert configmanager(fname=str(rcfile))['http_port'] == 8000

    def test_cast(self, cfg):
        assert cfg._cast('http_port', '80') == 80
        assert cfg._cast('http_port', 80) == 80
        assert cfg._cast('force_ssl', 'no') is False
        assert cfg._cast('asset_host', 'False') is False
        assert cfg._cast('unknown', 'x') == 'x'

    def test_save(self, cfg, rcfile, monkeypatch):
        monkeypatch.delenv('PLINTH_SECRET_KEY_BASE', raising=False)
        cfg['http_port'] = 9100
        cfg['hosts'] = ['a.example.com', 'b.example.com']
        cfg.save()

        parser = configparser.RawConfigParser()
        parser.read([str(rcfile)])
        assert parser.get('options', 'http_port') == '9100'
        assert parser.get('options', 'hosts') == 'a.example.com,b.example.com'
        assert not parser.has_option('options', 'root_path')
        assert not parser.has_option('options', 'config')

        reloaded = configmanager(fname=str(rcfile))
        assert reloaded['http_port'] == 9100
        assert reloaded['hosts'] == ['a.example.com', 'b.example.com']
        assert reloaded['secret_key_base'] is None
        assert reloaded['proxy_mode'] is False
        assert reloaded['dev_mode'] == []

    def test_save_some_keys(self, cfg, rcfile):
        cfg.save()
        cfg['http_port'] = 9200
        cfg['session_key'] = '_other'
        cfg.save(['http_port'])
        reloaded = configmanager(fname=str(rcfile))
        assert reloaded['http_port'] == 9200
        assert reloaded['session_key'] == '_plinth_session'

    def test_copy_is_deep(self, cfg):
        snapshot = cfg.copy()
        snapshot['hosts'].append('evil.example.com')
        assert cfg['hosts'] == []

    def test_session_dir(self, cfg, tmp_path):
        cfg['session_dir'] = str(tmp_path / 'sessions')
        assert cfg.session_dir == str(tmp_path / 'sessions')
        assert os.path.isdir(cfg.session_dir)


# =========================================================
# Command line interface
# =========================================================

APP_MODULE = """\
from plinth.http import Application

application = Application(secret_key_base='cli' * 22, view_path=[], public_path='')
application.draw(lambda r: r.resources('widgets', only=['index', 'show']))


class WidgetsApplication(Application):
    pass
"""


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    (tmp_path / 'plinth_cli_app.py').write_text(APP_MODULE)
    monkeypatch.syspath_prepend(str(tmp_path))
    return 'plinth_cli_app'


def test_commands_registry():
    assert {'help', 'routes', 'server'} <= set(commands)


def test_help(monkeypatch, capsys):
    monkeypatch.setattr(sys, 'argv', ['plinth', 'help'])
    main()
    out = capsys.readouterr().out
    assert out.startswith("Plinth CLI, use 'plinth --help' for regular server options.")
    assert 'routes' in out
    assert 'Print the routes of the application' in out


def test_unknown_command(monkeypatch):
    monkeypatch.setattr(sys, 'argv', ['plinth', 'deploy'])
    with pytest.raises(SystemExit, match="Unknown command 'deploy'"):
        main()


def test_load_application(app_module):
    app = load_application(f'{app_module}:application')
    assert isinstance(app, plinth.Application)
    assert app is load_application(f'{app_module}.application')
    # classes are instantiated
    assert type(load_application(f'{app_module}:WidgetsApplication')).__name__ == 'WidgetsApplication'


def test_load_application_needs_a_name(monkeypatch):
    monkeypatch.setitem(plinth.tools.config.options, 'app', None)
    with pytest.raises(SystemExit, match='No application given'):
        load_application()


def test_routes(app_module, monkeypatch, capsys):
    monkeypatch.setattr(sys, 'argv', ['plinth', 'routes', '--app', f'{app_module}:application', '-c', 'widgets'])
    main()
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split() == ['Prefix', 'Verb', 'URI', 'Pattern', 'Controller#Action']
    assert len(lines) == 3
    assert lines[1].split()[:2] == ['widgets', 'GET']
    assert lines[1].endswith('widgets#index')
    assert lines[2].split()[:2] == ['widget', 'GET']
    assert lines[2].endswith('widgets#show')


def test_routes_grep(app_module, capsys):
    commands['routes']().run(['--app', f'{app_module}:application', '-g', 'nothing-like-this'])
    assert capsys.readouterr().out.strip() == "No routes were found for this grep pattern."
