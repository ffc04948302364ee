# pylint: disable=too-few-public-methods
#

"""A library which provides the AddressManager class.

AddressManager attaches anycast addresses to and detaches them from an
interface by running the iproute2 ``ip`` tool. It always looks at the
kernel-visible state before it changes anything, so both operations can be
repeated without side effects.
"""
import collections
import ipaddress
import logging
import subprocess

from anycast_failover import PROGRAM_NAME

# Substrings of ip(8) error messages and the way we treat them.
_PERMISSION_ERRORS = (
    'Operation not permitted',
    'Permission denied',
)
_INVALID_ERRORS = (
    'is expected rather than',
    'Invalid argument',
    'invalid prefix',
    'Invalid prefix',
)
_ALREADY_BOUND = 'File exists'
_ALREADY_ABSENT = 'Cannot assign requested address'


class AnycastAddress(collections.namedtuple('AnycastAddress',
                                            ['cidr', 'interface'])):
    """An anycast address bound to an interface.

    Arguments:
        cidr (str): The address in form of ip/prefixlen.
        interface (str): The name of the interface.

    """

    __slots__ = ()

    @classmethod
    def from_string(cls, cidr, interface):
        """Build an AnycastAddress with a normalised CIDR.

        Raises:
            ValueError if cidr isn't an address with a prefix length.

        """
        if '/' not in cidr:
            raise ValueError("{c} doesn't have a prefix length".format(c=cidr))
        return cls(ipaddress.ip_interface(cidr.strip()).with_prefixlen,
                   interface)

    @property
    def version(self):
        """IP protocol version of the address."""
        return ipaddress.ip_interface(self.cidr).version

    def __str__(self):
        """Handy string representation."""
        return "{c} dev {i}".format(c=self.cidr, i=self.interface)


class AddressError(Exception):
    """Base class for failures to change the addresses of an interface.

    Arguments:
        address (AnycastAddress): The address we failed to change.
        interface (str): The interface name.
        reason (str): What went wrong.

    """

    retryable = False

    def __init__(self, address, interface, reason):
        """Keep details around for logging."""
        super().__init__(address, interface, reason)
        self.address = address
        self.interface = interface
        self.reason = reason

    def __str__(self):
        """Handy string representation."""
        return "{a} on {i}: {r}".format(a=getattr(self.address, 'cidr',
                                                  self.address),
                                        i=self.interface,
                                        r=self.reason)


class TransientAddressError(AddressError):
    """A failure which is worth retrying, e.g. interface is down."""

    retryable = True


class FatalAddressError(AddressError):
    """A failure which retrying can't fix."""


class PermissionDeniedError(FatalAddressError):
    """We aren't allowed to change addresses of the interface."""


class InvalidAddressError(FatalAddressError):
    """The kernel refuses the address."""


def classify_ip_error(address, interface, output):
    """Map output of a failed ip(8) command to an AddressError.

    Arguments:
        address (AnycastAddress): The address of the failed operation.
        interface (str): The interface name.
        output (str): stderr/stdout of the ip command.

    Returns:
        An AddressError instance.

    """
    reason = output.strip() or 'ip command failed without any output'
    if any(msg in output for msg in _PERMISSION_ERRORS):
        return PermissionDeniedError(address, interface, reason)
    if any(msg in output for msg in _INVALID_ERRORS):
        return InvalidAddressError(address, interface, reason)

    # Missing or down device, kernel busy and anything we don't recognize.
    return TransientAddressError(address, interface, reason)


def parse_ip_addresses(output, interface):
    """Build a set of AnycastAddress out of 'ip -o address show' output.

    Arguments:
        output (str): The output of ip command, one address per line.
        interface (str): The interface name.

    Notes:
        It can only parse output of the following format

        1: lo    inet 127.0.0.1/8 scope host lo\\       valid_lft forever
        1: lo    inet6 ::1/128 scope host \\       valid_lft forever

    Returns:
        A set of AnycastAddress objects.

    """
    bound = set()
    for line in output.splitlines():
        fields = line.split()
        for index, field in enumerate(fields[:-1]):
            if field in ('inet', 'inet6'):
                cidr = fields[index + 1]
                try:
                    bound.add(AnycastAddress.from_string(cidr, interface))
                except ValueError:
                    logging.getLogger(PROGRAM_NAME).warning(
                        "ignoring unparsable address %s on %s",
                        cidr, interface)
                break

    return bound


class AddressManager:
    """Attach and detach anycast addresses in an idempotent way.

    Arguments:
        ip_cmd (str): Absolute path of the ip tool.
        timeout (float): Maximum time to wait for an ip command.
        runner (callable): A subprocess.run compatible function.

    Methods:
        list_bound(interface): Return the addresses assigned to interface.
        attach(address): Assign address to its interface.
        detach(address): Remove address from its interface.

    """

    def __init__(self, ip_cmd='/sbin/ip', timeout=2, runner=subprocess.run):
        """Initialization."""
        self.ip_cmd = ip_cmd
        self.timeout = timeout
        self.runner = runner
        self.log = logging.getLogger(PROGRAM_NAME)

    def _ip(self, address, interface, *args):
        """Run ip command and return its output.

        Raises:
            TransientAddressError when command times out or fails for a
            reason that may go away, FatalAddressError otherwise.

        """
        cmd = [self.ip_cmd] + list(args)
        self.log.debug("running %s", ' '.join(cmd))
        try:
            proc = self.runner(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise TransientAddressError(
                address, interface,
                "timeout running {c}".format(c=' '.join(cmd)))
        except OSError as error:
            raise FatalAddressError(
                address, interface,
                "failed to run {c}: {e}".format(c=' '.join(cmd), e=error))

        if proc.returncode != 0:
            raise classify_ip_error(address, interface, proc.stdout or '')

        return proc.stdout or ''

    def interface_exists(self, interface):
        """Check if interface is known to the kernel.

        Returns:
            True if interface exists otherwise False.

        """
        try:
            self._ip(None, interface, 'link', 'show', 'dev', interface)
        except AddressError as error:
            self.log.debug("interface check failed: %s", error)
            return False

        return True

    def list_bound(self, interface):
        """Return all addresses currently assigned to interface.

        Addresses which are not managed by us are included as well. The kernel
        is asked every time, nothing is cached.

        Returns:
            A set of AnycastAddress objects.

        Raises:
            AddressError if ip command fails.

        """
        output = self._ip(None, interface,
                          '-o', 'address', 'show', 'dev', interface)

        return parse_ip_addresses(output, interface)

    def attach(self, address):
        """Assign address to its interface, unless it is already assigned.

        Returns:
            True if the interface was modified otherwise False.

        Raises:
            AddressError

        """
        if address in self.list_bound(address.interface):
            self.log.debug("%s is already assigned to %s", address.cidr,
                           address.interface)
            return False

        try:
            self._ip(address, address.interface,
                     'address', 'add', address.cidr, 'dev', address.interface)
        except TransientAddressError as error:
            # Someone else assigned it between our read and our write.
            if _ALREADY_BOUND in error.reason:
                self.log.debug("%s got assigned to %s meanwhile",
                               address.cidr, address.interface)
                return False
            raise

        self.log.info("assigned %s to %s", address.cidr, address.interface,
                      extra={'cidr': address.cidr,
                             'interface': address.interface})

        return True

    def detach(self, address):
        """Remove address from its interface, unless it is already absent.

        Returns:
            True if the interface was modified otherwise False.

        Raises:
            AddressError

        """
        if address not in self.list_bound(address.interface):
            self.log.debug("%s isn't assigned to %s", address.cidr,
                           address.interface)
            return False

        try:
            self._ip(address, address.interface,
                     'address', 'del', address.cidr, 'dev', address.interface)
        except TransientAddressError as error:
            if _ALREADY_ABSENT in error.reason:
                self.log.debug("%s got removed from %s meanwhile",
                               address.cidr, address.interface)
                return False
            raise

        self.log.info("removed %s from %s", address.cidr, address.interface,
                      extra={'cidr': address.cidr,
                             'interface': address.interface})

        return True
