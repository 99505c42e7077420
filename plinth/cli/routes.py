# Part of Plinth, see License file for full copyright and licensing details.
import argparse
import sys
from pathlib import Path

from ..routing import RoutesInspector
from .command import Command, load_application


class Routes(Command):
    """ Print the routes of the application """
    def run(self, args):
        parser = argparse.ArgumentParser(
            prog=f'{Path(sys.argv[0]).name} {self.name}',
            description=self.__doc__.strip(),
        )
        parser.add_argument('--app', help="import path of the application, e.g. 'myapp.wsgi:application'")
        parser.add_argument('-c', '--controller', help="only the routes of this controller")
        parser.add_argument('-g', '--grep', help="only the routes matching this pattern")
        parsed = parser.parse_args(args)

        app = load_application(parsed.app)
        app.load_controller_routes()
        print(RoutesInspector(app.routes).format(controller=parsed.controller, grep=parsed.grep))
