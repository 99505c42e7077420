# -*- coding: utf-8 -*-
# Part of Plinth, see License file for full copyright and licensing details.

""" Plinth web framework library. """

import sys
MIN_PY_VERSION = (3, 10)
assert sys.version_info > MIN_PY_VERSION, f"Outdated python version detected, Plinth requires Python >= {'.'.join(map(str,  MIN_PY_VERSION))} to run."


# ----------------------------------------------------------
# Imports
# ----------------------------------------------------------
from . import release
from . import tools
from . import netsvc
from . import exceptions
from . import mime
from . import content_security_policy
from . import parameters
from . import cookies
from . import session
from . import routing
from . import middleware
from . import view
from . import http
from . import cli

# ----------------------------------------------------------
# Shortcuts
# ----------------------------------------------------------
from .http import Application, Controller, request, route
