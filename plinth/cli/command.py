# Part of Plinth, see License file for full copyright and licensing details.
import sys
from pathlib import Path

import werkzeug.utils

import plinth

commands = {}
class Command:
    name = None
    def __init_subclass__(cls):
        cls.name = cls.name or cls.__name__.lower()
        commands[cls.name] = cls

PLINTH_HELP = """\
Plinth CLI, use '{plinth_bin} --help' for regular server options.

Available commands:
    {command_list}

Use '{plinth_bin} <command> --help' for individual command help."""

class Help(Command):
    """ Display list of available commands """
    def run(self, args):
        padding = max([len(cmd) for cmd in commands]) + 2
        command_list = "\n    ".join([
            "    {}{}".format(name.ljust(padding), (command.__doc__ or "").strip())
            for name, command in sorted(commands.items())
        ])
        print(PLINTH_HELP.format(
            plinth_bin=Path(sys.argv[0]).name,
            command_list=command_list
        ))


def load_application(import_name=None):
    """ The :class:`~plinth.http.Application` named by ``import_name``
    (``'myapp.wsgi:application'``) or by the ``app`` option. """
    import_name = import_name or plinth.tools.config['app']
    if not import_name:
        sys.exit("No application given, use --app=<module>:<attribute>")
    # the application module usually lives in the current directory
    if '' not in sys.path and str(Path.cwd()) not in sys.path:
        sys.path.insert(0, str(Path.cwd()))
    app = werkzeug.utils.import_string(import_name)
    if isinstance(app, type):
        app = app()
    return app


def main():
    args = sys.argv[1:]

    # if no args, default to `server`
    command = "server"

    if len(args) and not args[0].startswith("-"):
        command = args[0]
        args = args[1:]

    if command in commands:
        i = commands[command]()
        i.run(args)
    else:
        sys.exit('Unknown command %r' % (command,))
