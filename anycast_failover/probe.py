# pylint: disable=too-few-public-methods
#

"""A library which provides health probes for the local service."""

import collections
import logging
import os
import shlex
import signal
import socket
import subprocess
import time
import traceback

import requests

from anycast_failover import PROGRAM_NAME

# Seconds to wait for a killed check to go away.
REAP_TIMEOUT = 0.5

ProbeResult = collections.namedtuple('ProbeResult',
                                     ['success', 'observed_at', 'detail'])


class HealthProbe:
    """Base class of a health check against the local service.

    Subclasses implement _check(), which returns a tuple of (success, detail)
    and may raise any exception. probe() turns every failure into an
    unsuccessful ProbeResult, so callers never see an exception.

    Arguments:
        timeout (float): The maximum time a check is allowed to run.

    """

    kind = None

    def __init__(self, timeout):
        """Initialization."""
        self.timeout = timeout
        self.log = logging.getLogger(PROGRAM_NAME)

    def _check(self):
        """Check the health of the service.

        Subclasses must override it, HealthProbe itself can't be used.

        Returns:
            A tuple of (success, detail), detail is None or a string.

        """
        raise NotImplementedError

    def probe(self):
        """Run the health check once.

        Returns:
            A ProbeResult object.

        """
        start_time = time.time()
        try:
            success, detail = self._check()
        except Exception:  # pylint: disable=broad-except
            # We simply don't know the health of the service, which is
            # treated as a failed check.
            success = False
            detail = "check raised exception: {e}".format(
                e=traceback.format_exc().strip().splitlines()[-1])
            self.log.error(detail)

        self.log.debug("check duration %.3fms",
                       (time.time() - start_time) * 1000)

        return ProbeResult(success=bool(success),
                           observed_at=time.time(),
                           detail=detail)


class CommandProbe(HealthProbe):
    """Run a command, service is healthy if it exits with zero.

    Arguments:
        check_cmd (str): The command to run, it isn't passed to a shell.
        timeout (float): The maximum time to wait for the command.

    """

    kind = 'command'

    def __init__(self, check_cmd, timeout):
        """Initialization."""
        super().__init__(timeout)
        self.cmd = shlex.split(check_cmd)

    def _kill(self, proc):
        """Kill the process group of the check and reap the check.

        Processes the check has started hold our pipes open, so the whole
        group is killed and the final wait is bounded.
        """
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.log.warning("not allowed to kill process group %s of the "
                             "check", proc.pid)
        try:
            proc.communicate(timeout=REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            self.log.warning("process %s of the check is still alive after "
                             "%ssecs, giving up on it", proc.pid,
                             REAP_TIMEOUT)

    def _check(self):
        self.log.debug("running %s", ' '.join(self.cmd))
        try:
            proc = subprocess.Popen(self.cmd, stdout=subprocess.PIPE,
                                    stderr=subprocess.PIPE,
                                    start_new_session=True)
        except OSError as error:
            return False, "failed to run check: {e}".format(e=error)

        try:
            outs, errs = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            self.log.error("check timed out")
            self._kill(proc)

            return False, "check timed out after {t}secs".format(
                t=self.timeout)

        if proc.returncode != 0:
            self.log.info("stderr from the check %s", errs)
            self.log.info("stdout from the check %s", outs)
            return False, "check exited with {c}".format(c=proc.returncode)

        return True, None


class TcpProbe(HealthProbe):
    """Service is healthy if it accepts a TCP connection.

    Arguments:
        host (str): IP address to connect to, host names aren't accepted by
        the configuration check as resolving them isn't bounded by timeout.
        port (int): TCP port.
        timeout (float): The maximum time to wait for the connection.

    """

    kind = 'tcp'

    def __init__(self, host, port, timeout):
        """Initialization."""
        super().__init__(timeout)
        self.host = host
        self.port = port

    def _check(self):
        try:
            with socket.create_connection((self.host, self.port),
                                          timeout=self.timeout):
                pass
        except OSError as error:
            self.log.info("connection to %s:%s failed: %s", self.host,
                          self.port, error)
            return False, "connection to {h}:{p} failed: {e}".format(
                h=self.host, p=self.port, e=error)

        return True, None


class HttpProbe(HealthProbe):
    """Service is healthy if an HTTP GET returns an expected status code.

    Arguments:
        url (str): The URL to fetch.
        timeout (float): The maximum time to wait for a response.
        expected_status (list): A list of status codes considered healthy.

    """

    kind = 'http'

    def __init__(self, url, timeout, expected_status=(200,)):
        """Initialization."""
        super().__init__(timeout)
        self.url = url
        self.expected_status = set(expected_status)
        self._http_sess = requests.Session()

    def _check(self):
        # timeout of requests applies to every single read, so the body is
        # never read and headers arriving after timeout are a failure.
        start_time = time.monotonic()
        try:
            req = self._http_sess.get(self.url, timeout=self.timeout,
                                      allow_redirects=False, stream=True)
        except (requests.exceptions.Timeout,
                requests.exceptions.ConnectionError,
                requests.exceptions.RequestException) as error:
            self.log.info("failed to fetch %s: %s", self.url, error)
            return False, "failed to fetch {u}: {e}".format(u=self.url,
                                                             e=error)

        elapsed = time.monotonic() - start_time
        req.close()
        if elapsed > self.timeout:
            self.log.info("response from %s took %.3fsecs", self.url, elapsed)
            return False, "response took longer than {t}secs".format(
                t=self.timeout)

        if req.status_code not in self.expected_status:
            self.log.info("received HTTP status code %s from %s",
                          req.status_code, self.url)
            return False, "unexpected HTTP status code {c}".format(
                c=req.status_code)

        return True, None


def parse_status_codes(value):
    """Parse a comma separated list of HTTP status codes.

    Raises:
        ValueError if an item isn't an integer.

    """
    return [int(code) for code in value.replace(',', ' ').split()]


def build_probe(config):
    """Build a health probe out of the configuration.

    Arguments:
        config (obj): A configparser object which holds our configuration.

    Returns:
        A HealthProbe object.

    Raises:
        ValueError when probe type is unknown.

    """
    probe_type = config.get('probe', 'type')
    timeout = config.getfloat('controller', 'check_timeout')
    if probe_type == CommandProbe.kind:
        return CommandProbe(config.get('probe', 'check_cmd'), timeout)
    if probe_type == TcpProbe.kind:
        return TcpProbe(config.get('probe', 'host'),
                        config.getint('probe', 'port'),
                        timeout)
    if probe_type == HttpProbe.kind:
        return HttpProbe(
            config.get('probe', 'url'),
            timeout,
            parse_status_codes(config.get('probe', 'expected_status')))

    raise ValueError("unknown probe type '{t}'".format(t=probe_type))


PROBE_TYPES = (CommandProbe.kind, TcpProbe.kind, HttpProbe.kind)
