#! /usr/bin/env python
# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
"""Assign anycast addresses to an interface while local service is healthy.

Usage:
    anycast-failover [ -f <file> ] [ -c | -p | -P | -s ]

Options:
    -f, --file=<file>          read settings from <file>
                               [default: /etc/anycast-failover.conf]
    -c, --check                perform a sanity check on configuration
    -p, --print                show default settings
    -P, --print-conf           show running configuration with default settings
                               applied
    -s, --show                 show which anycast addresses are assigned to the
                               interface
    -v, --version              show version
    -h, --help                 show this screen

Exit status is 0 after a clean shutdown and 1 when a fatal error occurs or
the interface couldn't be left in a consistent state.
"""
import socket
import signal
import sys
from docopt import docopt

from anycast_failover import DEFAULT_OPTIONS, PROGRAM_NAME, __version__
from anycast_failover.addresses import AddressError, AddressManager
from anycast_failover.controller import FailoverController
from anycast_failover.probe import build_probe
from anycast_failover.utils import (get_address_set, get_controller_options,
                                    load_configuration, remove_pidfile,
                                    setup_logger, update_pidfile)

LOCK_SOCKET = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)


def print_config(config):
    """Print settings in the INI format."""
    for section in config:
        if section == 'DEFAULT':
            continue
        print("[{}]".format(section))
        for key, value in config[section].items():
            print("{k} = {v}".format(k=key, v=value))
        print()


def acquire_lock():
    """Make sure only one instance runs on the host."""
    try:
        LOCK_SOCKET.bind('\0' + "{}".format(PROGRAM_NAME))
    except socket.error as exc:
        sys.exit("failed to acquire a lock by creating an abstract namespace"
                 " socket: {}".format(exc))
    else:
        print("acquired a lock by creating an abstract namespace socket")


def show_addresses(manager, addresses):
    """Print the state of each anycast address.

    Returns:
        0 if all addresses are assigned otherwise 1.

    """
    bound = set()
    for interface in sorted({x.interface for x in addresses}):
        try:
            bound |= manager.list_bound(interface)
        except AddressError as exc:
            sys.exit("failed to read addresses of {i}: {e}"
                     .format(i=interface, e=exc.reason))

    for address in addresses:
        print("{a} {s}".format(
            a=address,
            s='assigned' if address in bound else 'not assigned'))

    return 0 if all(x in bound for x in addresses) else 1


def main():
    """Parse CLI and starts main program."""
    args = docopt(__doc__, version=__version__)
    if args['--print']:
        print_config(DEFAULT_OPTIONS)
        sys.exit(0)

    try:
        config = load_configuration(args['--file'])
    except ValueError as exc:
        sys.exit('Invalid configuration: ' + str(exc))

    if args['--check']:
        print("OK")
        sys.exit(0)

    if args['--print-conf']:
        print_config(config)
        sys.exit(0)

    addresses = get_address_set(config)
    options = get_controller_options(config)
    manager = AddressManager(ip_cmd=options['ip_cmd'],
                             timeout=options['ip_cmd_timeout'])

    if args['--show']:
        sys.exit(show_addresses(manager, addresses))

    if not manager.interface_exists(options['interface']):
        sys.exit("Invalid configuration: interface {i} doesn't exist"
                 .format(i=options['interface']))

    acquire_lock()

    # Clean old pidfile, if it exists, and write PID to it.
    pidfile = config.get('daemon', 'pidfile')
    update_pidfile(pidfile)

    # Set up loggers.
    logger = setup_logger(config)

    controller = FailoverController(addresses, build_probe(config), manager,
                                    options)

    # Register our shutdown handler to various termination signals.
    signal.signal(signal.SIGHUP, controller.stop)
    signal.signal(signal.SIGTERM, controller.stop)
    signal.signal(signal.SIGABRT, controller.stop)
    signal.signal(signal.SIGINT, controller.stop)

    logger.info("starting %s %s version", PROGRAM_NAME, __version__)
    try:
        exit_code = controller.run()
    finally:
        remove_pidfile(pidfile)

    sys.exit(exit_code)


# This is the standard boilerplate that calls the main() function.
if __name__ == '__main__':
    main()
