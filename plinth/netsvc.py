# -*- coding: utf-8 -*-
# Part of Plinth, see License file for full copyright and licensing details.

import logging
import logging.handlers
import os
import platform
import sys
import threading
import time
import traceback
import warnings

import werkzeug.serving

from . import release
from . import tools

_logger = logging.getLogger(__name__)


class PerfFilter(logging.Filter):
    """ Add the duration of the current request to werkzeug's
    access log lines. """
    def format_perf(self, duration):
        return "%.3f" % duration

    def filter(self, record):
        current = getattr(threading.current_thread(), 'perf_t0', None)
        if current is not None:
            record.perf_info = self.format_perf(time.time() - current)
        return True


class ColoredPerfFilter(PerfFilter):
    def format_perf(self, duration):
        def colorize_time(time, format, low=1, high=5):
            if time > high:
                return COLOR_PATTERN % (30 + RED, 40 + DEFAULT, format % time)
            if time > low:
                return COLOR_PATTERN % (30 + YELLOW, 40 + DEFAULT, format % time)
            return format % time
        return colorize_time(duration, "%.3f", 1, 5)


class RequestFormatter(logging.Formatter):
    def format(self, record):
        record.pid = os.getpid()
        record.request_id = getattr(threading.current_thread(), 'request_id', '-')
        return logging.Formatter.format(self, record)


class ColoredFormatter(RequestFormatter):
    def format(self, record):
        fg_color, bg_color = LEVEL_COLOR_MAPPING.get(record.levelno, (GREEN, DEFAULT))
        record.levelname = COLOR_PATTERN % (30 + fg_color, 40 + bg_color, record.levelname)
        return RequestFormatter.format(self, record)


BLACK, RED, GREEN, YELLOW, BLUE, MAGENTA, CYAN, WHITE, _NOTHING, DEFAULT = range(10)
#The background is set with 40 plus the number of the color, and the foreground with 30
#These are the sequences needed to get colored output
RESET_SEQ = "\033[0m"
COLOR_SEQ = "\033[1;%dm"
BOLD_SEQ = "\033[1m"
COLOR_PATTERN = "%s%s%%s%s" % (COLOR_SEQ, COLOR_SEQ, RESET_SEQ)
LEVEL_COLOR_MAPPING = {
    logging.DEBUG: (BLUE, DEFAULT),
    logging.INFO: (GREEN, DEFAULT),
    logging.WARNING: (YELLOW, DEFAULT),
    logging.ERROR: (RED, DEFAULT),
    logging.CRITICAL: (WHITE, RED),
}


showwarning = None
def init_logger():
    global showwarning  # noqa: PLW0603
    if logging.getLogRecordFactory() is LogRecord:
        return

    logging.setLogRecordFactory(LogRecord)

    logging.captureWarnings(True)
    # must be after `logging.captureWarnings` so we override *that* instead of
    # the other way around
    showwarning = warnings.showwarning
    warnings.showwarning = showwarning_with_traceback

    # enable deprecation warnings (disabled by default)
    warnings.simplefilter('default', category=DeprecationWarning)
    warnings.filterwarnings('ignore', category=DeprecationWarning, module='babel.util')

    # create a format for log messages and dates
    format = '%(asctime)s %(pid)s %(levelname)s %(request_id)s %(name)s: %(message)s %(perf_info)s'
    # Normal Handler on stderr
    handler = logging.StreamHandler()

    if tools.config['syslog']:
        # SysLog Handler
        if os.name == 'nt':
            handler = logging.handlers.NTEventLogHandler("%s %s" % (release.description, release.version))
        elif platform.system() == 'Darwin':
            handler = logging.handlers.SysLogHandler('/var/run/log')
        else:
            handler = logging.handlers.SysLogHandler('/dev/log')
        format = '%s %s' % (release.description, release.version) \
                + ':%(request_id)s:%(levelname)s:%(name)s:%(message)s'

    elif tools.config['logfile']:
        # LogFile Handler
        logf = tools.config['logfile']
        try:
            # We check we have the right location for the log files
            dirname = os.path.dirname(logf)
            if dirname and not os.path.isdir(dirname):
                os.makedirs(dirname)
            if os.name == 'posix':
                handler = logging.handlers.WatchedFileHandler(logf)
            else:
                handler = logging.FileHandler(logf)
        except Exception:
            sys.stderr.write("ERROR: couldn't create the logfile directory. Logging to the standard output.\n")

    # Check that handler.stream has a fileno() method: behind mod_wsgi,
    # handler.stream is a mod_wsgi.Log which has no fileno() method.
    def is_a_tty(stream):
        return hasattr(stream, 'fileno') and os.isatty(stream.fileno())

    if os.name == 'posix' and isinstance(handler, logging.StreamHandler) and (is_a_tty(handler.stream) or os.environ.get("PLINTH_PY_COLORS")):
        formatter = ColoredFormatter(format)
        perf_filter = ColoredPerfFilter()
    else:
        formatter = RequestFormatter(format)
        perf_filter = PerfFilter()
        werkzeug.serving._log_add_style = False  # noqa: SLF001
    handler.setFormatter(formatter)
    logging.getLogger().addHandler(handler)
    logging.getLogger('werkzeug').addFilter(perf_filter)

    # Configure loggers levels
    pseudo_config = PSEUDOCONFIG_MAPPER.get(tools.config['log_level'], [])

    logconfig = tools.config['log_handler']

    logging_configurations = DEFAULT_LOG_CONFIGURATION + pseudo_config + logconfig
    for logconfig_item in logging_configurations:
        loggername, level = logconfig_item.strip().split(':')
        level = getattr(logging, level, logging.INFO)
        logger = logging.getLogger(loggername)
        logger.setLevel(level)

    for logconfig_item in logging_configurations:
        _logger.debug('logger level set: "%s"', logconfig_item)

DEFAULT_LOG_CONFIGURATION = [
    'plinth.http.request:INFO',
    ':INFO',
]
PSEUDOCONFIG_MAPPER = {
    'debug_request': ['plinth:DEBUG', 'plinth.http.request:DEBUG'],
    'debug': ['plinth:DEBUG'],
    'info': [],
    'test': ['plinth:TEST', 'werkzeug:WARNING'],
    'warn': ['plinth:WARNING', 'werkzeug:WARNING'],
    'error': ['plinth:ERROR', 'werkzeug:ERROR'],
    'critical': ['plinth:CRITICAL', 'werkzeug:CRITICAL'],
    'notset': [':NOTSET'],
}

logging.TEST = 25
logging.addLevelName(logging.TEST, "INFO") # displayed as info in log

def showwarning_with_traceback(message, category, filename, lineno, file=None, line=None):
    # find the stack frame matching (filename, lineno)
    filtered = []
    for frame in traceback.extract_stack():
        if 'importlib' not in frame.filename:
            filtered.append(frame)
        if frame.filename == filename and frame.lineno == lineno:
            break
    return showwarning(
        message, category, filename, lineno,
        file=file,
        line=''.join(traceback.format_list(filtered))
    )

class LogRecord(logging.LogRecord):
    def __init__(self, name, level, pathname, lineno, msg, args, exc_info, func=None, sinfo=None):
        super().__init__(name, level, pathname, lineno, msg, args, exc_info, func, sinfo)
        self.perf_info = ""
        self.request_id = getattr(threading.current_thread(), 'request_id', '-')
