# Part of Plinth, see License file for full copyright and licensing details.
from .command import Command, commands, load_application, main

from . import routes
from . import server
