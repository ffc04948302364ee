# pylint: disable=too-many-instance-attributes
#

"""A library which provides the FailoverController class."""

import enum
import logging
import sys
import threading
import time

from anycast_failover import PROGRAM_NAME
from anycast_failover.addresses import (FatalAddressError,
                                        TransientAddressError)


class HealthState(enum.Enum):
    """Health of the local service as far as routing is concerned."""

    UNKNOWN = 'Unknown'
    HEALTHY = 'Healthy'
    UNHEALTHY = 'Unhealthy'


class ControllerState:
    """The state carried through the control loop.

    Attributes:
        health (HealthState): The last state we fully converged to.
        target (HealthState): The state we are converging to, None when
        interface matches health.
        up_cnt (int): Consecutive successful checks toward Healthy.
        down_cnt (int): Consecutive failed checks toward Unhealthy.

    """

    def __init__(self):
        """Start in Unknown state."""
        self.health = HealthState.UNKNOWN
        self.target = None
        self.up_cnt = 0
        self.down_cnt = 0

    @property
    def converging(self):
        """True if a convergence hasn't been completed yet."""
        return self.target is not None

    @property
    def goal(self):
        """The state the interface should end up in."""
        return self.target if self.target is not None else self.health

    def __str__(self):
        """Handy string representation, e.g. Converging(Healthy)."""
        if self.target is not None:
            return "Converging({s})".format(s=self.target.value)
        if self.health is HealthState.UNKNOWN:
            return HealthState.UNKNOWN.value

        return "Converged({s})".format(s=self.health.value)


class FailoverController:
    """Keep anycast addresses assigned only while local service is healthy.

    Every check_interval it runs the health probe, decides the state the
    service is in and assigns (Healthy) or removes (Unhealthy) all anycast
    addresses. The routing daemon redistributes the connected routes of the
    interface, so an assigned address is advertised and a removed one is
    withdrawn.

    This class should be instantiated once.

    Arguments:
        addresses (list): An ordered list of AnycastAddress objects.
        probe (HealthProbe obj): The health check of the local service.
        manager (AddressManager obj): Changes addresses of the interface.
        config (dict): Typed settings of the controller section.

    Methods:
        run_once(): Run a single check and converge interface state.
        run(): Run checks until stop() is called and return exit status.
        stop(): Ask the control loop to shut down.

    """

    def __init__(self, addresses, probe, manager, config):
        """Initialization."""
        self.log = logging.getLogger(PROGRAM_NAME)
        self.addresses = list(addresses)
        self.interfaces = sorted({x.interface for x in self.addresses})
        self.probe = probe
        self.manager = manager
        self.interval = config['check_interval']
        self.check_rise = config['check_rise']
        self.check_fail = config['check_fail']
        self.check_disabled = config['check_disabled']
        self.on_disabled = config['on_disabled']
        self.mutation_retries = config['mutation_retries']
        self.retry_delay = config['retry_delay']
        self.shutdown_grace = config['shutdown_grace']
        self.withdraw_on_shutdown = config['withdraw_on_shutdown']
        self.state = ControllerState()
        self._stop = threading.Event()
        self.log.info("initialize controller for %s",
                      ','.join(x.cidr for x in self.addresses))

    def _extra(self):
        return {
            'interface': ','.join(self.interfaces),
            'state': str(self.state),
        }

    def _evaluate(self, result):
        """Decide the state of the service after a check.

        Any result other than a definite success counts as a failure. A change
        of state requires check_rise consecutive successes or check_fail
        consecutive failures, except for the very first check.

        Returns:
            A HealthState, either HEALTHY or UNHEALTHY.

        """
        goal = self.state.goal
        if result.success:
            self.state.down_cnt = 0
            if goal is HealthState.HEALTHY:
                self.state.up_cnt = 0
                return goal
            self.state.up_cnt += 1
            if (goal is HealthState.UNKNOWN
                    or self.state.up_cnt >= self.check_rise):
                self.state.up_cnt = 0
                return HealthState.HEALTHY
            self.log.info("going up %s", self.state.up_cnt,
                          extra=self._extra())
        else:
            self.log.info("check failed: %s", result.detail,
                          extra=self._extra())
            self.state.up_cnt = 0
            if goal is HealthState.UNHEALTHY:
                self.state.down_cnt = 0
                return goal
            self.state.down_cnt += 1
            if (goal is HealthState.UNKNOWN
                    or self.state.down_cnt >= self.check_fail):
                self.state.down_cnt = 0
                return HealthState.UNHEALTHY
            self.log.info("going down %s", self.state.down_cnt,
                          extra=self._extra())

        return goal

    def _fatal(self, operation, error):
        """Log a non-retryable error and exit main program."""
        self.log.critical("failed to %s %s on interface %s, this is a "
                          "non-retryable error (%s: %s), thus exiting main "
                          "program",
                          operation,
                          getattr(error.address, 'cidr', 'addresses'),
                          error.interface,
                          type(error).__name__,
                          error.reason,
                          extra=self._extra())
        sys.exit(1)

    def _apply(self, target, address, deadline=None):
        """Assign or remove a single address, retrying transient errors.

        Returns:
            True if address is in the wanted state otherwise False.

        """
        if target is HealthState.HEALTHY:
            operation, name = self.manager.attach, 'assign'
        else:
            operation, name = self.manager.detach, 'remove'

        attempt = 0
        while True:
            try:
                operation(address)
            except TransientAddressError as error:
                attempt += 1
                out_of_time = (deadline is not None and
                               time.monotonic() + self.retry_delay > deadline)
                if attempt > self.mutation_retries or out_of_time:
                    self.log.error("failed to %s %s after %s attempts: %s",
                                   name, address, attempt, error.reason,
                                   extra=self._extra())
                    return False
                self.log.warning("failed to %s %s (%s), retrying in %ssecs",
                                 name, address, error.reason,
                                 self.retry_delay, extra=self._extra())
                time.sleep(self.retry_delay)
            except FatalAddressError as error:
                self._fatal(name, error)
            else:
                return True

    def _converge(self, target, deadline=None):
        """Bring all anycast addresses to the state implied by target.

        Addresses are processed in the configured order. Addresses which fail
        with a transient error are left for the next call.

        Returns:
            True if convergence is complete otherwise False.

        """
        if self.state.target is not target:
            previous = str(self.state)
            self.state.target = target
            self.log.info("state %s -> %s", previous, str(self.state),
                          extra=self._extra())

        complete = True
        for address in self.addresses:
            if not self._apply(target, address, deadline):
                complete = False

        if not complete:
            self.log.warning("convergence to %s is incomplete, it will be "
                             "retried", target.value, extra=self._extra())
            return False

        previous = str(self.state)
        self.state.health = target
        self.state.target = None
        self.log.info("state %s -> %s", previous, str(self.state),
                      extra=self._extra())
        if target is HealthState.HEALTHY:
            self.log.info("announcing %s", ','.join(x.cidr
                                                    for x in self.addresses),
                          extra=self._extra())
        else:
            self.log.warning("withdrawing %s, local node doesn't receive "
                             "any anycast traffic",
                             ','.join(x.cidr for x in self.addresses),
                             extra=self._extra())

        return True

    def _drifted(self):
        """Check if interface no longer matches the converged state.

        Returns:
            True if at least one of our addresses is in the wrong state.

        """
        bound = set()
        for interface in self.interfaces:
            try:
                bound |= self.manager.list_bound(interface)
            except TransientAddressError as error:
                self.log.warning("failed to read addresses of %s: %s",
                                 interface, error.reason, extra=self._extra())
                return False
            except FatalAddressError as error:
                self._fatal('read', error)

        if self.state.health is HealthState.HEALTHY:
            wrong = [x for x in self.addresses if x not in bound]
        else:
            wrong = [x for x in self.addresses if x in bound]

        if wrong:
            self.log.warning("%s found in wrong state while we are %s, "
                             "someone modified the interface manually",
                             ','.join(x.cidr for x in wrong), str(self.state),
                             extra=self._extra())
            return True

        return False

    def _settle(self, wanted):
        """Converge to wanted after finishing any pending convergence."""
        if self.state.converging:
            pending = self.state.target
            if not self._converge(pending):
                if wanted is not pending:
                    self.log.info("postponing convergence to %s until "
                                  "convergence to %s is complete",
                                  wanted.value, pending.value,
                                  extra=self._extra())
                return
            if wanted is pending:
                return

        if wanted is not self.state.health or self._drifted():
            self._converge(wanted)

    def run_once(self):
        """Run a single health check and converge interface state.

        Returns:
            The ControllerState object.

        """
        result = self.probe.probe()
        wanted = self._evaluate(result)
        self.log.debug("check %s, wanted state %s",
                       'succeeded' if result.success else 'failed',
                       wanted.value, extra=self._extra())
        self._settle(wanted)

        return self.state

    def hold(self):
        """Converge to the state configured for a disabled check.

        Returns:
            The ControllerState object.

        """
        if self.on_disabled == 'advertise':
            wanted = HealthState.HEALTHY
        else:
            wanted = HealthState.UNHEALTHY
        if self.state.converging or wanted is not self.state.health:
            self._settle(wanted)

        return self.state

    def stop(self, signalnb=None, frame=None):
        """Ask control loop to shut down.

        It can be registered as a handler for termination signals.
        """
        self.log.info("received %s at %s, shutting down", signalnb, frame)
        self._stop.set()

    def shutdown(self):
        """Leave interface in a consistent state before we exit.

        When withdraw_on_shutdown is set all anycast addresses are removed, as
        nobody will check the health of the service after we exit. Otherwise an
        incomplete convergence is rolled back to the last converged state.

        Returns:
            True if final state is confirmed within shutdown_grace seconds
            otherwise False.

        """
        deadline = time.monotonic() + self.shutdown_grace
        if self.withdraw_on_shutdown:
            wanted = HealthState.UNHEALTHY
        elif self.state.converging:
            wanted = self.state.health
            if wanted is HealthState.UNKNOWN:
                wanted = HealthState.UNHEALTHY
        else:
            self.log.info("leaving %s as they are", ','.join(
                x.cidr for x in self.addresses), extra=self._extra())
            return True

        self.log.info("converging to %s before exiting", wanted.value,
                      extra=self._extra())
        while not self._converge(wanted, deadline):
            if time.monotonic() + self.retry_delay > deadline:
                self.log.error("failed to converge to %s within %ssecs",
                               wanted.value, self.shutdown_grace,
                               extra=self._extra())
                return False
            time.sleep(self.retry_delay)

        return True

    def run(self):
        """Run health checks until we are told to stop.

        Returns:
            0 upon a clean shutdown otherwise 1.

        """
        interval = self.interval
        start_offset = time.time() % interval
        if self.check_disabled:
            self.log.info("check is disabled, addresses will be %s and stay "
                          "so", 'advertised' if self.on_disabled ==
                          'advertise' else 'withdrawn', extra=self._extra())

        # Go in a loop until we are told to stop
        while not self._stop.is_set():
            timestamp = time.time()
            if self.check_disabled:
                self.hold()
            else:
                self.run_once()
            self.log.debug("wall clock time %.3fms",
                           (time.time() - timestamp) * 1000,
                           extra=self._extra())

            # calculate sleep time
            sleep = start_offset - time.time() % interval
            if sleep < 0:
                sleep += interval
            self.log.debug("sleeping for %.3fsecs", sleep, extra=self._extra())
            self._stop.wait(sleep)

        if self.shutdown():
            self.log.info('shutdown is complete', extra=self._extra())
            return 0

        return 1
