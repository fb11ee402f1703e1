"""
The loop that feeds the engine: wait for a datagram or for the engine's
timeout, dispatch, repeat.

The reactor does the waiting. A `Scheduler` keeps one delayed call armed for
the timeout and cancels it whenever a datagram arrives first.
"""

import errno
import random
import signal

from twisted.internet import reactor
from twisted.python import log

from interfaces import EngineError
from log import Logger

# largest datagram we read, one byte is kept free as in a C receive buffer
RECEIVE_BUFFER = 4096


class LoopState(object):
    """
    Everything the loop carries from one iteration to the next.
    """

    def __init__(self):
        self.tosleep = 0
        self.exiting = False
        self.iterations = 0
        self.failure = None

    def __repr__(self):
        return "LoopState(tosleep=%d, exiting=%s, iterations=%d)" % (self.tosleep, self.exiting, self.iterations)


class Scheduler(object):
    """
    Drives an engine providing `interfaces.DHTEngine`.

    Each iteration:
      1. wait `tosleep` seconds plus up to one second of jitter, or until a
         datagram arrives
      2. hand the datagram (or nothing, on timeout) to `engine.dispatch` and
         keep the number of seconds it asks us to sleep
      3. give the search cycler a chance to run, then report to the observer
    """

    def __init__(self, engine, state=None, clock=None, bufsize=RECEIVE_BUFFER, callback=None,
                 cycler=None, observer=None, onStop=None):
        """
        Args:
            engine: the `DHTEngine` to drive.
            state: a `LoopState`, a new one is created if None.
            clock: provides `callLater`, the reactor by default.
            bufsize: receive buffer size, datagrams are cut to one byte less.
            callback: handed to every dispatch, receives engine events.
            cycler: an object with a `check` method called after every dispatch.
            observer: a callable receiving the `LoopState` after every iteration.
            onStop: called once when the loop ends.
        """
        self.engine = engine
        self.state = state or LoopState()
        self.clock = clock or reactor
        self.bufsize = bufsize
        self.callback = callback
        self.cycler = cycler
        self.observer = observer
        self.onStop = onStop
        self.wake = None
        self.running = False
        self.log = Logger(system=self)

    def start(self):
        self.running = True
        self._arm()

    def budget(self):
        return self.state.tosleep + random.randint(0, 999999) / 1000000.0

    def _arm(self):
        self._cancel()
        self.wake = self.clock.callLater(self.budget(), self._timeout)

    def _cancel(self):
        if self.wake is not None and self.wake.active():
            self.wake.cancel()
        self.wake = None

    def _timeout(self):
        self.wake = None
        self.step(None, None)

    def receive(self, data, address):
        if not self.running:
            return
        self.step(data[:self.bufsize - 1], address)

    def step(self, data, sender):
        """
        Run one iteration. `data` and `sender` are None when the wait timed out.
        """
        if not self.running:
            return
        if self.state.exiting:
            self.stop()
            return
        self._cancel()
        self.state.iterations += 1

        try:
            if self._dispatch(data, sender):
                if self.cycler is not None:
                    self._guarded("search cycler", self.cycler.check)
                if self.observer is not None:
                    self._guarded("observer", self.observer, self.state)
        finally:
            # the wake must survive anything raised above
            if self.state.exiting:
                self.stop()
            elif self.running:
                self._arm()

    def _dispatch(self, data, sender):
        """
        Returns False when the rest of the iteration must be skipped.
        """
        try:
            tosleep = self.engine.dispatch(data, sender, self.state.tosleep, self.callback)
        except EngineError as e:
            if e.errno == errno.EINTR:
                self.log.debug("dispatch interrupted, retrying")
                return False
            if e.errno in (errno.EINVAL, errno.EFAULT):
                self.log.critical("engine failure: %s" % e)
                self.state.failure = e
                self.stop()
                return False
            self.log.error("engine error: %s" % e)
            self.state.tosleep = 1
        except Exception as e:
            self.log.error("unexpected error in dispatch: %r" % e)
            log.err()
            self.state.tosleep = 1
        else:
            self.state.tosleep = max(0, int(tosleep))
        return True

    def _guarded(self, what, f, *args):
        try:
            f(*args)
        except Exception as e:
            self.log.error("%s failed: %r" % (what, e))
            log.err()

    def interrupt(self, signum):
        """
        Called from the reactor thread after a signal. SIGINT ends the loop;
        any other signal just resumes the wait.
        """
        if signum == signal.SIGINT:
            self.state.exiting = True
            self.log.info("interrupted, shutting down")
            self.stop()
            return
        self.log.debug("wait interrupted by signal %d" % signum)
        if self.running and (self.wake is None or not self.wake.active()):
            self.wake = self.clock.callLater(1, self._timeout)

    def stop(self):
        if not self.running:
            return
        self.running = False
        self._cancel()
        if self.onStop is not None:
            self.onStop()
