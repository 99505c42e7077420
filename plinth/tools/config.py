# Part of Plinth, see License file for full copyright and licensing details.

import configparser as configparser
import copy
import logging
import optparse
import os
import tempfile
import warnings

from os.path import expandvars, expanduser, abspath, realpath, normcase

import plinth
from .. import release
from .misc import str2bool

from passlib.context import CryptContext
crypt_context = CryptContext(schemes=['pbkdf2_sha512', 'plaintext'],
                             deprecated=['plaintext'],
                             pbkdf2_sha512__rounds=600_000)

_logger = logging.getLogger(__name__)


def _check_comma(option, opt, value):
    return [v.strip() for v in value.split(',') if v.strip()]


class MyOption(optparse.Option, object):
    """ optparse Option with two additional attributes.

    The list of command line options (getopt.Option) is used to create the
    list of the configuration file options. When reading the file, and then
    reading the command line arguments, we don't want optparse.parse results
    to override the configuration file values. But if we provide default
    values to optparse, optparse will return them and we can't know if they
    were really provided by the user or not. A solution is to not use
    optparse's default attribute, but use a custom one (that will be copied
    to create the default values of the configuration file).

    """
    TYPES = optparse.Option.TYPES + ('comma',)
    TYPE_CHECKER = dict(optparse.Option.TYPE_CHECKER, comma=_check_comma)

    def __init__(self, *opt, **attrs):
        self.my_default = attrs.pop('my_default', None)
        super(MyOption, self).__init__(*opt, **attrs)


DEFAULT_LOG_LEVELS = ['info', 'debug_request', 'warn', 'test', 'critical', 'error', 'debug', 'notset']
SESSION_STORES = ['cookie', 'filesystem', 'memory']
SHOW_EXCEPTIONS = ['all', 'rescuable', 'none']
UNPERMITTED_ACTIONS = ['false', 'log', 'raise']


class configmanager(object):
    def __init__(self, fname=None):
        """Constructor.

        :param fname: a shortcut allowing to instantiate :class:`configmanager`
                      from Python code without resorting to env variable
        """
        # Options not exposed on the command line. Command line options will be added
        # from optparse's parser.
        self.options = {
            'root_path': abspath(os.getcwd()),
        }
        # Options that cannot be set through the configuration file.
        self.blacklist_for_save = {'config', 'root_path', 'save'}
        self.casts = {}

        self.config_file = fname

        version = "%s %s" % (release.description, release.version)
        self.parser = parser = optparse.OptionParser(version=version, option_class=MyOption)

        # Server startup config
        group = optparse.OptionGroup(parser, "Common options")
        group.add_option("-c", "--config", dest="config",
                         help="specify alternate config file")
        group.add_option("-s", "--save", action="store_true", dest="save", default=False,
                         help="save configuration to ~/.plinthrc (or to the file given by -c)")
        group.add_option("--app", dest="app", my_default=None,
                         help="import path of the WSGI application, e.g. 'myapp.wsgi:application'")
        group.add_option("--secret-key-base", dest="secret_key_base", my_default=None,
                         help="secret from which all cookie and message keys are derived")
        group.add_option("--dev", dest="dev_mode", type="comma", my_default=[],
                         help="Enable developer mode. Param: List of options separated by comma. "
                              "Options : all, reload, werkzeug")
        parser.add_option_group(group)

        group = optparse.OptionGroup(parser, "HTTP Service Configuration")
        group.add_option("--http-interface", dest="http_interface", my_default='127.0.0.1',
                         help="Listen interface address for HTTP services.")
        group.add_option("-p", "--http-port", dest="http_port", my_default=8000,
                         help="Listen port for the main HTTP service", type="int", metavar="PORT")
        group.add_option("--pidfile", dest="pidfile", my_default=None,
                         help="file where the server pid will be stored")
        group.add_option("--proxy-mode", dest="proxy_mode", action="store_true", my_default=False,
                         help="Activate reverse proxy WSGI wrappers (headers rewriting) "
                              "Only enable this when running behind a trusted web proxy!")
        group.add_option("--force-ssl", dest="force_ssl", action="store_true", my_default=False,
                         help="Redirect plain HTTP requests to HTTPS and send HSTS headers.")
        group.add_option("--hosts", dest="hosts", type="comma", my_default=[],
                         help="Comma separated list of allowed hosts, empty allows every host. "
                              "A leading dot allows the domain and all its subdomains.")
        group.add_option("--public-path", dest="public_path", my_default='public',
                         help="Directory with the static files and the error pages.")
        group.add_option("--serve-static-files", dest="serve_static_files", action="store_true",
                         my_default=True, help="Serve the files of the public directory.")
        group.add_option("--no-serve-static-files", dest="serve_static_files", action="store_false",
                         help="Leave the public directory to the web server.")
        group.add_option("--asset-host", dest="asset_host", my_default='',
                         help="Host prepended to the asset paths by the view helpers.")
        parser.add_option_group(group)

        group = optparse.OptionGroup(parser, "Web interface Configuration")
        group.add_option("--view-path", dest="view_path", type="comma", my_default=['views'],
                         help="Comma separated list of directories holding the templates.")
        group.add_option("--session-store", dest="session_store", type="choice",
                         choices=SESSION_STORES, my_default='cookie',
                         help="Where the sessions are stored: %s." % ', '.join(SESSION_STORES))
        group.add_option("--session-key", dest="session_key", my_default='_plinth_session',
                         help="Name of the session cookie.")
        group.add_option("--session-dir", dest="session_dir",
                         my_default=os.path.join(tempfile.gettempdir(), 'plinth-sessions'),
                         help="Directory of the filesystem session store.")
        group.add_option("--cookies-same-site", dest="cookies_same_site_protection",
                         my_default='lax', help="Default SameSite attribute of the cookies.")
        group.add_option("--show-exceptions", dest="show_exceptions", type="choice",
                         choices=SHOW_EXCEPTIONS, my_default='all',
                         help="Render exceptions as error pages (all), only the rescuable "
                              "ones (rescuable) or re-raise them (none).")
        group.add_option("--unpermitted-parameters", dest="action_on_unpermitted_parameters",
                         type="choice", choices=UNPERMITTED_ACTIONS, my_default='log',
                         help="What to do with unpermitted parameters: %s." % ', '.join(UNPERMITTED_ACTIONS))
        parser.add_option_group(group)

        # Logging Group
        group = optparse.OptionGroup(parser, "Logging Configuration")
        group.add_option("--logfile", dest="logfile", my_default=None,
                         help="file where the server log will be stored")
        group.add_option("--syslog", action="store_true", dest="syslog", my_default=False,
                         help="Send the log to the syslog server")
        group.add_option('--log-handler', action="append", my_default=[':INFO'],
                         metavar="PREFIX:LEVEL", dest="log_handler",
                         help='setup a handler at LEVEL for a given PREFIX. An empty PREFIX indicates '
                              'the root logger. This option can be repeated. Example: '
                              '"plinth.http:DEBUG" or "werkzeug:CRITICAL" (default: ":INFO")')
        group.add_option('--log-level', dest='log_level', type='choice',
                         choices=DEFAULT_LOG_LEVELS, my_default='info',
                         help='specify the level of the logging. Accepted values: %s.' % (DEFAULT_LOG_LEVELS,))
        parser.add_option_group(group)

        # Copy all optparse options (i.e. MyOption) into self.options.
        for group in parser.option_groups:
            for option in group.option_list:
                if option.dest not in self.options:
                    self.options[option.dest] = option.my_default
                    self.casts[option.dest] = option

        # generate default config
        self._parse_config()

    def parse_config(self, args: list[str] | None = None, *, setup_logging: bool | None = None) -> None:
        """ Parse the configuration file (if any) and the cli arguments.

        This function init plinth.tools.config

        Typical usage of this function:

            plinth.tools.config.parse_config(sys.argv[1:])
        """
        opt = self._parse_config(args)
        if setup_logging is not False:
            plinth.netsvc.init_logger()
            if setup_logging is None:
                warnings.warn(
                    "It's recommended to specify wheter"
                    " you want Plinth to setup its own logging"
                    " (or want to handle it yourself)",
                    category=PendingDeprecationWarning,
                    stacklevel=2,
                )
        return opt

    def _parse_config(self, args=None):
        if args is None:
            args = []
        opt, args = self.parser.parse_args(args)

        # Ensures no illegitimate argument is silently discarded (avoids insidious "hyphen to dash" problem)
        if args:
            self.parser.error("unrecognized parameters: '%s'" % " ".join(args))

        rcfilepath = os.path.expanduser('~/.plinthrc')
        self.rcfile = os.path.abspath(
            self.config_file or opt.config or os.environ.get('PLINTH_RC') or rcfilepath)
        self.load()

        # Command line options override the configuration file.
        for arg in self.casts:
            value = getattr(opt, arg, None)
            if value is not None:
                self.options[arg] = value
        if not self.options['secret_key_base']:
            self.options['secret_key_base'] = os.environ.get('PLINTH_SECRET_KEY_BASE') or None

        if isinstance(self.options['view_path'], str):
            self.options['view_path'] = _check_comma(None, None, self.options['view_path'])
        self.options['view_path'] = [
            self._normalize(path) for path in self.options['view_path']
        ]
        if self.options['public_path']:
            self.options['public_path'] = self._normalize(self.options['public_path'])
        if 'all' in self.options['dev_mode']:
            self.options['dev_mode'] = ['reload', 'werkzeug']

        if opt.save:
            self.save()
        return opt

    def _normalize(self, path):
        if not path:
            return ''
        return normcase(realpath(abspath(expanduser(expandvars(path.strip())))))

    def _cast(self, name, value):
        option = self.casts.get(name)
        if option is None or not isinstance(value, str):
            return value
        if option.action in ('store_true', 'store_false'):
            return str2bool(value)
        if option.action == 'append':
            return _check_comma(option, name, value)
        if option.type == 'int':
            return int(value)
        if option.type == 'comma':
            return _check_comma(option, name, value)
        if option.type == 'choice' and value not in option.choices:
            raise ValueError(f"Invalid value {value!r} for option {name!r}, expected one of {option.choices}")
        if value in ('False', 'None'):
            return None if value == 'None' else False
        return value

    def load(self):
        p = configparser.RawConfigParser()
        try:
            p.read([self.rcfile])
            for (name, value) in p.items('options'):
                self.options[name] = self._cast(name, value)
        except (IOError, configparser.NoSectionError):
            pass

    def save(self, keys=None):
        p = configparser.RawConfigParser()
        rc_exists = os.path.exists(self.rcfile)
        if rc_exists and keys:
            p.read([self.rcfile])
        if not p.has_section('options'):
            p.add_section('options')
        for opt in sorted(self.options):
            if keys is not None and opt not in keys:
                continue
            if opt in self.blacklist_for_save:
                continue
            value = self.options[opt]
            if isinstance(value, (list, tuple)):
                value = ','.join(map(str, value))
            p.set('options', opt, value)

        if not rc_exists:
            os.makedirs(os.path.dirname(self.rcfile) or '.', exist_ok=True)
        with open(self.rcfile, 'w') as fd:
            p.write(fd)

    def get(self, key, default=None):
        return self.options.get(key, default)

    def __setitem__(self, key, value):
        self.options[key] = value

    def __getitem__(self, key):
        return self.options[key]

    def __contains__(self, key):
        return key in self.options

    def copy(self):
        """ Snapshot of the current option values. """
        return copy.deepcopy(self.options)

    @property
    def session_dir(self):
        d = self.options['session_dir']
        os.makedirs(d, 0o700, exist_ok=True)
        return d

config = configmanager()
