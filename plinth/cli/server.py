# Part of Plinth, see License file for full copyright and licensing details.

"""
Plinth - development server
"""

import atexit
import logging
import os
import sys
from pathlib import Path

import werkzeug.serving

import plinth

from .command import Command, load_application

__author__ = plinth.release.author
__version__ = plinth.release.version

_logger = logging.getLogger('plinth')


def main(args):
    check_root_user()
    plinth.tools.config.parse_config(args, setup_logging=True)
    report_configuration()

    config = plinth.tools.config
    app = load_application()
    setup_pid_file()

    dev_mode = config['dev_mode']
    _logger.info("HTTP service (werkzeug) running on %s:%s",
                 config['http_interface'] or '0.0.0.0', config['http_port'])
    werkzeug.serving.run_simple(
        config['http_interface'] or '0.0.0.0',
        config['http_port'],
        app,
        use_reloader='reload' in dev_mode,
        use_debugger='werkzeug' in dev_mode,
        threaded=True,
    )
    sys.exit(0)

class Server(Command):
    """Start the plinth development server (default command)"""
    def run(self, args):
        plinth.tools.config.parser.prog = f'{Path(sys.argv[0]).name} {self.name}'
        main(args)


def check_root_user():
    """ Warn if the process's user is 'root' (on POSIX system)."""
    if os.name == 'posix':
        import getpass
        if getpass.getuser() == 'root':
            sys.stderr.write("Running as user 'root' is a security risk.\n")

def report_configuration():
    """ Log the server version and config values.

    This function assumes the configuration has been init
    """
    config = plinth.tools.config
    _logger.info("Plinth version %s", __version__)
    if os.path.isfile(config.rcfile):
        _logger.info("Using configuration file at " + config.rcfile)
    _logger.info('application: %s', config['app'])
    _logger.info('view paths: %s', config['view_path'])
    if config['public_path']:
        _logger.info('public path: %s', config['public_path'])
    if config['dev_mode']:
        _logger.info('developer mode: %s', ', '.join(config['dev_mode']))

def setup_pid_file():
    """ Create a file with the process id written in it.

    This function assumes the configuration has been initialized.
    """
    config = plinth.tools.config
    if config['pidfile']:
        pid = os.getpid()
        with open(config['pidfile'], 'w') as fd:
            fd.write(str(pid))
        atexit.register(rm_pid_file, pid)

def rm_pid_file(main_pid):
    config = plinth.tools.config
    if config['pidfile'] and main_pid == os.getpid():
        try:
            os.unlink(config['pidfile'])
        except OSError:
            pass
