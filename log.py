"""
Copyright (c) 2014 Brian Muller

Leveled logging on top of twisted.python.log. Levels run from CRITICAL (1)
to DEBUG (5); an observer emits events at or below its level plus every
error. `start_logging` wires the daemon's stdout and rotating file
observers.
"""

import sys
from twisted.python import log, logfile

DEBUG = 5
INFO = 4
WARNING = 3
ERROR = 2
CRITICAL = 1

levels = {"debug": 5, "info": 4, "warning": 3, "error": 2, "critical": 1}


class FileLogObserver(log.FileLogObserver):
    def __init__(self, f=None, level="info", default=DEBUG):
        log.FileLogObserver.__init__(self, f or sys.stdout)
        self.level = levels[level]
        self.default = default

    def emit(self, eventDict):
        ll = eventDict.get('loglevel', self.default)
        if eventDict['isError'] or 'failure' in eventDict or self.level >= ll:
            log.FileLogObserver.emit(self, eventDict)


class Logger(object):
    def __init__(self, **kwargs):
        self.kwargs = kwargs

    def msg(self, message, **kw):
        kw.update(self.kwargs)
        if 'system' in kw and not isinstance(kw['system'], str):
            kw['system'] = kw['system'].__class__.__name__
        log.msg(message, **kw)

    def info(self, message, **kw):
        kw['loglevel'] = INFO
        self.msg("[INFO] %s" % message, **kw)

    def debug(self, message, **kw):
        kw['loglevel'] = DEBUG
        self.msg("[DEBUG] %s" % message, **kw)

    def warning(self, message, **kw):
        kw['loglevel'] = WARNING
        self.msg("[WARNING] %s" % message, **kw)

    def error(self, message, **kw):
        kw['loglevel'] = ERROR
        self.msg("[ERROR] %s" % message, **kw)

    def critical(self, message, **kw):
        kw['loglevel'] = CRITICAL
        self.msg("[CRITICAL] %s" % message, **kw)


def start_logging(level="info", log_file=None):
    """
    Attach the stdout observer and, if a path is given, a rotating file
    observer. Returns the observers so callers can detach them.
    """
    observers = [FileLogObserver(level=level)]
    if log_file:
        f = logfile.LogFile.fromFullPath(log_file, rotateLength=15000000, maxRotatedFiles=1)
        observers.append(FileLogObserver(f, level=level))
    for observer in observers:
        log.addObserver(observer.emit)
    return observers


try:
    theLogger
except NameError:
    theLogger = Logger()
    msg = theLogger.msg
    info = theLogger.info
    debug = theLogger.debug
    warning = theLogger.warning
    error = theLogger.error
    critical = theLogger.critical
