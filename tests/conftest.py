"""Shared fixtures for anycast_failover tests."""
import configparser
import copy
import logging
import shlex
import subprocess
import sys
import time

import pytest

from anycast_failover import DEFAULT_OPTIONS, PROGRAM_NAME
from anycast_failover.addresses import AddressManager, AnycastAddress
from anycast_failover.probe import ProbeResult
from anycast_failover.utils import get_controller_options

ANYCAST_1 = '10.240.0.10/32'
ANYCAST_2 = '10.240.1.10/32'
FOREIGN = '192.0.2.1/32'


class FakeIp:
    """Emulate ip(8) and the addresses the kernel has on each interface.

    Every 'address add' and 'address del' invocation is recorded in
    mutations, whether it succeeds or not.
    """

    def __init__(self):
        self.bound = {'lo': ['127.0.0.1/8', '::1/128'], 'eth0': []}
        self.calls = []
        self.mutations = []
        self._failures = {'add': [], 'del': [], 'show': []}

    def fail(self, verb, result, times=1):
        """Make the next `times` invocations of verb fail.

        result is either an exception instance to raise or the output of a
        failed command. times=None fails forever.
        """
        self._failures[verb].append([result, times])

    def _next_failure(self, verb):
        queue = self._failures[verb]
        if not queue:
            return None
        result, times = queue[0]
        if times is not None:
            queue[0][1] -= 1
            if queue[0][1] == 0:
                queue.pop(0)

        return result

    @staticmethod
    def _done(cmd, returncode, stdout=''):
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout)

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        args = cmd[1:]
        if args[0] == 'link':
            if args[-1] in self.bound:
                return self._done(cmd, 0, '1: {i}: <LOOPBACK,UP>'.format(
                    i=args[-1]))
            return self._done(cmd, 1, 'Device "{i}" does not exist.'.format(
                i=args[-1]))

        if args[0] == '-o':
            failure = self._next_failure('show')
            if isinstance(failure, Exception):
                raise failure
            if failure is not None:
                return self._done(cmd, 1, failure)
            interface = args[-1]
            if interface not in self.bound:
                return self._done(cmd, 1, 'Device "{i}" does not exist.'
                                  .format(i=interface))
            lines = []
            for cidr in self.bound[interface]:
                family = 'inet6' if ':' in cidr else 'inet'
                lines.append("1: {i}    {f} {c} scope host {i}\\       "
                             "valid_lft forever preferred_lft forever"
                             .format(i=interface, f=family, c=cidr))
            return self._done(cmd, 0, '\n'.join(lines) + '\n')

        verb, cidr, interface = args[1], args[2], args[4]
        self.mutations.append((verb, cidr, interface))
        failure = self._next_failure(verb)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return self._done(cmd, 2, failure)
        if interface not in self.bound:
            return self._done(cmd, 1, 'Cannot find device "{i}"'
                              .format(i=interface))
        if verb == 'add':
            if cidr in self.bound[interface]:
                return self._done(cmd, 2, 'RTNETLINK answers: File exists')
            self.bound[interface].append(cidr)
        else:
            if cidr not in self.bound[interface]:
                return self._done(cmd, 2, 'RTNETLINK answers: Cannot assign '
                                  'requested address')
            self.bound[interface].remove(cidr)

        return self._done(cmd, 0)

    def anycast_bound(self, interface='lo'):
        """Return addresses on interface which aren't there by default."""
        return {x for x in self.bound[interface]
                if x not in ('127.0.0.1/8', '::1/128', FOREIGN)}


class ScriptedProbe:
    """A probe which returns a predefined sequence of outcomes.

    It keeps failing once the sequence is exhausted.
    """

    def __init__(self, outcomes, on_probe=None):
        self.outcomes = list(outcomes)
        self.on_probe = on_probe
        self.calls = 0

    def probe(self):
        self.calls += 1
        if self.on_probe is not None:
            self.on_probe()
        success = self.outcomes.pop(0) if self.outcomes else False
        return ProbeResult(success=success, observed_at=time.time(),
                           detail=None if success else 'scripted failure')


@pytest.fixture
def config():
    """A configparser object with default settings and two addresses."""
    _config = configparser.ConfigParser()
    _config.read_dict(copy.deepcopy(DEFAULT_OPTIONS))
    _config.set('controller', 'anycast_addresses',
                '{a}, {b}'.format(a=ANYCAST_1, b=ANYCAST_2))
    _config.set('controller', 'check_interval', '5')
    _config.set('controller', 'retry_delay', '0')
    _config.set('probe', 'check_cmd', 'true')

    return _config


@pytest.fixture
def options(config):
    """Typed controller settings."""
    return get_controller_options(config)


@pytest.fixture
def addresses():
    """Ordered address set with two addresses on lo."""
    return [AnycastAddress(ANYCAST_1, 'lo'), AnycastAddress(ANYCAST_2, 'lo')]


@pytest.fixture
def fake_ip():
    """Emulated ip tool."""
    return FakeIp()


@pytest.fixture
def manager(fake_ip):
    """AddressManager which talks to the emulated ip tool."""
    return AddressManager(ip_cmd='/sbin/ip', timeout=1, runner=fake_ip)


@pytest.fixture
def clean_logger():
    """Remove handlers which a test attached to the program logger."""
    logger = logging.getLogger(PROGRAM_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)


@pytest.fixture
def scripted_probe():
    """Factory of probes with predefined outcomes."""
    return ScriptedProbe


@pytest.fixture
def write_config(tmp_path):
    """Write a configuration file which passes all sanity checks.

    Keyword arguments are dictionaries which update the respective section.
    """
    def _write(**sections):
        _config = configparser.ConfigParser()
        _config.read_dict({
            'controller': {
                'anycast_addresses': '{a} {b}'.format(a=ANYCAST_1,
                                                      b=ANYCAST_2),
                'ip_cmd': sys.executable,
            },
            'probe': {
                'check_cmd': shlex.quote(sys.executable) + ' -c pass',
            },
            'daemon': {
                'pidfile': str(tmp_path / 'anycast-failover.pid'),
            },
        })
        _config.read_dict(sections)
        path = tmp_path / 'anycast-failover.conf'
        with open(str(path), 'w') as _file:
            _config.write(_file)

        return str(path)

    return _write
