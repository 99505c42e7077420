# -*- coding: utf-8 -*-
# Part of Plinth, see License file for full copyright and licensing details.

from .config import config

from .misc import *
from .func import *
from . import inflector
from . import messages
