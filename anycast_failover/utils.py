# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
# pylint: disable=too-many-branches
# pylint: disable=too-few-public-methods
"""Provide functions and classes that are used within anycast_failover."""
from collections import Counter
import os
import sys
import logging
import logging.handlers
import configparser
import copy
import shlex
import shutil
import ipaddress

from pythonjsonlogger import jsonlogger

from anycast_failover import DEFAULT_OPTIONS, PROGRAM_NAME, __version__
from anycast_failover.addresses import AnycastAddress
from anycast_failover.probe import PROBE_TYPES, parse_status_codes

ENV_PREFIX = PROGRAM_NAME.replace('-', '_').upper() + '_'

CONTROLLER_OPTIONS_TYPE = {
    'interface': 'get',
    'anycast_addresses': 'get',
    'check_interval': 'getfloat',
    'check_timeout': 'getfloat',
    'check_rise': 'getint',
    'check_fail': 'getint',
    'check_disabled': 'getboolean',
    'on_disabled': 'get',
    'mutation_retries': 'getint',
    'retry_delay': 'getfloat',
    'shutdown_grace': 'getfloat',
    'withdraw_on_shutdown': 'getboolean',
    'ip_cmd': 'get',
    'ip_cmd_timeout': 'getfloat',
}
PROBE_OPTIONS_TYPE = {
    'type': 'get',
    'check_cmd': 'get',
    'host': 'get',
    'port': 'getint',
    'url': 'get',
    'expected_status': 'get',
}
DAEMON_OPTIONS_TYPE = {
    'pidfile': 'get',
    'loglevel': 'get',
    'log_maxbytes': 'getint',
    'log_backups': 'getint',
    'log_file': 'get',
    'stderr_file': 'get',
    'stderr_log_server': 'getboolean',
    'log_server': 'get',
    'log_server_port': 'getint',
    'json_stdout': 'getboolean',
    'json_log_server': 'getboolean',
    'json_log_file': 'getboolean',
}
DAEMON_OPTIONAL_OPTIONS = [
    'stderr_log_server',
    'stderr_file',
    'log_server',
    'log_file',
]


def valid_ip_prefix(ip_prefix):
    """Perform a sanity check on ip_prefix.

    Arguments:
        ip_prefix (str): The IP-Prefix to validate

    Returns:
        True if ip_prefix is a valid IPv4 or IPv6 address with an explicit
        prefix length, otherwise False

    """
    if '/' not in ip_prefix:
        return False
    try:
        ipaddress.ip_interface(ip_prefix)
    except ValueError:
        return False

    return True


def touch(file_path):
    """Touch a file in the same way as touch tool does.

    NOTE:
        If file_path doesn't exist it will be created.

    Arguments:
        file_path (str): The absolute file path

    Raises:
        OSError exception

    """
    with open(file_path, 'a'):
        os.utime(file_path, None)


def parse_address_list(value):
    """Split a comma and/or whitespace separated list of IP prefixes.

    Order is preserved.
    """
    return [x for x in value.replace(',', ' ').split() if x]


def get_address_set(config):
    """Build the ordered list of anycast addresses found in configuration.

    Arguments:
        config (obj): A configparser object which holds our configuration.

    Returns:
        A list of AnycastAddress objects.

    """
    interface = config.get('controller', 'interface')

    return [AnycastAddress.from_string(x, interface)
            for x in parse_address_list(config.get('controller',
                                                   'anycast_addresses'))]


def get_controller_options(config):
    """Build a dictionary with typed settings of the controller section."""
    options = {}
    for option, getter in CONTROLLER_OPTIONS_TYPE.items():
        options[option] = getattr(config, getter)('controller', option)

    return options


def apply_environment(config, environ=None):
    """Override settings with environment variables.

    A variable named ANYCAST_FAILOVER_<SECTION>_<OPTION> sets <option> in
    <section>, e.g. ANYCAST_FAILOVER_CONTROLLER_INTERFACE=lo.

    Arguments:
        config (obj): A configparser object which holds our configuration.
        environ (dict): Environment to use, defaults to os.environ.

    Returns:
        A list of (section, option) tuples which were overridden.

    """
    if environ is None:
        environ = os.environ
    overridden = []
    for name, value in sorted(environ.items()):
        if not name.startswith(ENV_PREFIX):
            continue
        key = name[len(ENV_PREFIX):].lower()
        for section in config.sections():
            if key.startswith(section + '_'):
                option = key[len(section) + 1:]
                # Escape % as we use BasicInterpolation.
                config.set(section, option, value.replace('%', '%%'))
                overridden.append((section, option))
                break

    return overridden


def load_configuration(config_file, environ=None):
    """Build configuration object.

    It reads configuration file on top of default settings, applies
    overrides from environment and performs all sanity checks.

    Arguments:
        config_file (str): The file name which holds our settings
        environ (dict): Environment to use, defaults to os.environ.

    Returns:
        A ConfigParser object.

    Raises:
        ValueError if sanity check fails.

    """
    config = configparser.ConfigParser()
    config.read_dict(copy.deepcopy(DEFAULT_OPTIONS))
    if config_file is not None and not os.path.isfile(config_file):
        raise ValueError("{f} configuration file doesn't exist"
                         .format(f=config_file))

    try:
        if config_file is not None:
            config.read(config_file)
        apply_environment(config, environ)
    except configparser.Error as exc:
        raise ValueError(exc)

    configuration_check(config)

    return config


def _check_typed_options(config, section, options_type, optional=()):
    for option, getter in options_type.items():
        try:
            getattr(config, getter)(section, option)
        except configparser.NoOptionError as error:
            if option not in optional:
                raise ValueError(error)
        except configparser.Error as error:
            raise ValueError(error)
        except ValueError as exc:
            msg = ("invalid data for '{opt}' option in {sec} section: {err}"
                   .format(opt=option, sec=section, err=exc))
            raise ValueError(msg)


def configuration_check(config):
    """Perform a sanity check on configuration.

    First it performs a sanity check against settings for daemon and then
    against settings for the controller and the probe.

    Arguments:
        config (obj): A configparser object which holds our configuration.

    Returns:
        None if all checks are successfully passed otherwise raises a
        ValueError exception.

    """
    log_level = config.get('daemon', 'loglevel')
    num_level = getattr(logging, log_level.upper(), None)
    pidfile = config.get('daemon', 'pidfile')

    # Directory of pidfile must exist.
    if not os.path.isdir(os.path.dirname(pidfile)):
        raise ValueError("{d} doesn't exist"
                         .format(d=os.path.dirname(pidfile)))

    if not isinstance(num_level, int):
        raise ValueError('Invalid log level: {}'.format(log_level))

    for _file in 'log_file', 'stderr_file':
        if config.has_option('daemon', _file):
            try:
                touch(config.get('daemon', _file))
            except OSError as exc:
                raise ValueError(exc)

    _check_typed_options(config, 'daemon', DAEMON_OPTIONS_TYPE,
                         DAEMON_OPTIONAL_OPTIONS)
    controller_configuration_check(config)
    probe_configuration_check(config)


def controller_configuration_check(config):
    """Perform a sanity check against options of the controller.

    Arguments:
        config (obj): A configparser object which holds our configuration.

    Returns:
        None if all sanity checks are successfully passed otherwise raises a
        ValueError exception.

    """
    _check_typed_options(config, 'controller', CONTROLLER_OPTIONS_TYPE)
    options = get_controller_options(config)

    if not options['interface']:
        raise ValueError("'interface' option can't be empty")

    if options['check_interval'] <= 0:
        raise ValueError("'check_interval' option must be a positive number")

    if not 0 < options['check_timeout'] < options['check_interval']:
        raise ValueError("'check_timeout' ({t}) must be a positive number "
                         "lower than 'check_interval' ({i})"
                         .format(t=options['check_timeout'],
                                 i=options['check_interval']))

    for option in 'check_rise', 'check_fail':
        if options[option] < 1:
            raise ValueError("'{o}' option must be at least 1"
                             .format(o=option))

    for option in 'mutation_retries', 'retry_delay', 'shutdown_grace':
        if options[option] < 0:
            raise ValueError("'{o}' option can't be negative"
                             .format(o=option))

    if options['ip_cmd_timeout'] <= 0:
        raise ValueError("'ip_cmd_timeout' option must be a positive number")

    if options['on_disabled'] not in ('withdraw', 'advertise'):
        msg = ("'on_disabled' option has invalid value ({val}), "
               "'on_disabled option should be set either to 'withdraw' or to "
               "'advertise'".format(val=options['on_disabled']))
        raise ValueError(msg)

    ip_prefixes = parse_address_list(options['anycast_addresses'])
    if not ip_prefixes:
        raise ValueError("no anycast addresses are configured in "
                         "'anycast_addresses' option")

    normalized = []
    for ip_prefix in ip_prefixes:
        if not valid_ip_prefix(ip_prefix):
            msg = ("invalid value ({val}) for 'anycast_addresses' option. It "
                   "should be an IP PREFIX in form of ip/prefixlen."
                   .format(val=ip_prefix))
            raise ValueError(msg)
        normalized.append(ipaddress.ip_interface(ip_prefix).with_prefixlen)

    occurrences_of_ip_prefixes = Counter(normalized)
    for ip_prefix, counter in occurrences_of_ip_prefixes.items():
        if counter > 1:
            raise ValueError("{ip} is listed {c} times in 'anycast_addresses'"
                             .format(ip=ip_prefix, c=counter))

    if shutil.which(options['ip_cmd']) is None:
        raise ValueError("'ip_cmd' ({c}) isn't an executable"
                         .format(c=options['ip_cmd']))


def probe_configuration_check(config):
    """Perform a sanity check against options of the health probe.

    Arguments:
        config (obj): A configparser object which holds our configuration.

    Returns:
        None if all sanity checks are successfully passed otherwise raises a
        ValueError exception.

    """
    _check_typed_options(config, 'probe', PROBE_OPTIONS_TYPE)
    probe_type = config.get('probe', 'type')
    if probe_type not in PROBE_TYPES:
        raise ValueError("'type' option in probe section has invalid value "
                         "({val}), it should be one of {t}"
                         .format(val=probe_type, t=', '.join(PROBE_TYPES)))

    if probe_type == 'command':
        try:
            cmd = shlex.split(config.get('probe', 'check_cmd'))
        except ValueError as exc:
            raise ValueError("failed to parse 'check_cmd' option: {e}"
                             .format(e=exc))
        if not cmd:
            raise ValueError("'check_cmd' option is required for probe type "
                             "command")
        if shutil.which(cmd[0]) is None:
            raise ValueError("failed to find check command '{c}'"
                             .format(c=cmd[0]))
    elif probe_type == 'tcp':
        port = config.getint('probe', 'port')
        if not 0 < port < 65536:
            raise ValueError("invalid TCP port {p}".format(p=port))
        host = config.get('probe', 'host')
        try:
            ipaddress.ip_address(host)
        except ValueError:
            raise ValueError("invalid value ({val}) for 'host' option, it "
                             "should be an IP address".format(val=host))
    elif probe_type == 'http':
        url = config.get('probe', 'url')
        if not url.startswith(('http://', 'https://')):
            raise ValueError("invalid value ({val}) for 'url' option, it "
                             "should be an http:// or https:// URL"
                             .format(val=url))
        try:
            codes = parse_status_codes(config.get('probe', 'expected_status'))
        except ValueError as exc:
            raise ValueError("invalid data for 'expected_status' option: {e}"
                             .format(e=exc))
        if not codes:
            raise ValueError("'expected_status' option can't be empty")


def running(processid):
    """Return True if a process with processid exists."""
    try:
        # signal 0 only checks pid
        os.kill(processid, 0)
    except OverflowError as exc:
        print("checking validity of pid ({p}) failed with: {e}"
              .format(p=processid, e=exc))
        sys.exit(1)
    except OSError:
        return False
    else:
        return True


def update_pidfile(pidfile):
    """Write our process ID to pidfile, replacing a stale one.

    It must be called after acquire_lock(). It exits main program if another
    controller is running or pidfile can't be written.
    """
    try:
        with open(pidfile, mode='r') as _file:
            pid = _file.read(1024).rstrip()

        try:
            pid = int(pid)
        except ValueError:
            print("cleaning stale pidfile with invalid data:'{}'".format(pid))
            write_pid(pidfile)
        else:
            if pid != os.getpid() and running(pid):
                sys.exit("process {} is already running".format(pid))
            else:
                print("updating stale processID({}) in pidfile".format(pid))
                write_pid(pidfile)
    except FileNotFoundError:
        print("creating pidfile {f}".format(f=pidfile))
        write_pid(pidfile)
    except OSError as exc:
        sys.exit("failed to update pidfile:{e}".format(e=exc))


def write_pid(pidfile):
    """Write our process ID to pidfile or exit main program."""
    pid = str(os.getpid())
    try:
        with open(pidfile, mode='w') as _file:
            print("writing processID {p} to pidfile".format(p=pid))
            _file.write(pid)
    except OSError as exc:
        sys.exit("failed to write pidfile:{e}".format(e=exc))


def remove_pidfile(pidfile):
    """Remove pidfile upon shutdown."""
    log = logging.getLogger(PROGRAM_NAME)
    log.info("going to remove pidfile %s", pidfile)
    try:
        os.unlink(pidfile)
    except FileNotFoundError:
        log.warning("pidfile %s is already gone", pidfile)


def setup_logger(config):
    """Configure the logging environment.

    Notice:
        Logs go to STDOUT unless log_file and/or log_server is set, so
        supervisord captures them. Tracebacks of a crash go to STDERR, or to
        stderr_file or to stderr_log_server when one of them is set.

    Arguments:
        config (obj): A configparser object which holds our configuration.

    Returns:
        A logger with all possible handlers configured.

    """
    logger = logging.getLogger(PROGRAM_NAME)
    num_level = getattr(
        logging,
        config.get('daemon', 'loglevel').upper(),  # pylint: disable=no-member
        None
    )
    logger.setLevel(num_level)

    json_formatter = CustomJsonFormatter(
        '%(asctime)s %(levelname)s %(process)s %(message)s',
        prefix=PROGRAM_NAME)
    formatter = logging.Formatter(
        '%(asctime)s {program}[%(process)d] %(levelname)-8s %(message)s'
        .format(program=PROGRAM_NAME)
    )

    # Register logging handlers based on configuration.
    if config.has_option('daemon', 'log_file'):
        file_handler = logging.handlers.RotatingFileHandler(
            config.get('daemon', 'log_file'),
            maxBytes=config.getint('daemon', 'log_maxbytes'),
            backupCount=config.getint('daemon', 'log_backups')
        )

        if config.getboolean('daemon', 'json_log_file'):
            file_handler.setFormatter(json_formatter)
        else:
            file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if config.has_option('daemon', 'log_server'):
        udp_handler = logging.handlers.SysLogHandler(
            (
                config.get('daemon', 'log_server'),
                config.getint('daemon', 'log_server_port')
            )
        )

        if config.getboolean('daemon', 'json_log_server'):
            udp_handler.setFormatter(json_formatter)
        else:
            udp_handler.setFormatter(formatter)
        logger.addHandler(udp_handler)

    # Log to STDOUT if and only if log_file and log_server aren't enabled
    if (not config.has_option('daemon', 'log_file')
            and not config.has_option('daemon', 'log_server')):
        stream_handler = logging.StreamHandler(sys.stdout)
        if config.getboolean('daemon', 'json_stdout'):
            stream_handler.setFormatter(json_formatter)
        else:
            stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    # We can redirect STDERR only to one destination.
    if config.has_option('daemon', 'stderr_file'):
        sys.stderr = CustomRotatingFileLogger(
            filepath=config.get('daemon', 'stderr_file'),
            maxbytes=config.getint('daemon', 'log_maxbytes'),
            backupcount=config.getint('daemon', 'log_backups')
        )
    elif (config.has_option('daemon', 'stderr_log_server')
          and config.getboolean('daemon', 'stderr_log_server')
          and config.has_option('daemon', 'log_server')):
        sys.stderr = CustomUdpLogger(
            server=config.get('daemon', 'log_server'),
            port=config.getint('daemon', 'log_server_port')
        )
    else:
        print('messages for unhandled exceptions will go to STDERR')

    return logger


class CustomLogger:
    """A file like object which sends whatever is written to STDERR to a
    logging handler.

    Use CustomRotatingFileLogger or CustomUdpLogger, which provide the
    handler.

    Arguments
        handler (obj): A logging handler to use.

    """

    def __init__(self, handler):
        """Attach handler to the stderr logger."""
        log_format = ('%(asctime)s {program}[%(process)d] %(message)s'
                      .format(program=PROGRAM_NAME))
        self.logger = logging.getLogger('stderr')
        self.logger.setLevel(logging.DEBUG)
        self.handler = handler
        self.handler.setFormatter(logging.Formatter(log_format))
        self.logger.addHandler(self.handler)

    def write(self, string):
        """Erase newline from a string and write to the logger."""
        string = string.rstrip()
        if string:  # Don't log empty lines
            self.logger.critical(string)

    def flush(self):
        """Flush logger's data."""
        for handler in self.logger.handlers:
            handler.flush()

    def close(self):
        """Call the closer method of the logger."""
        for handler in self.logger.handlers:
            handler.close()


class CustomRotatingFileLogger(CustomLogger):
    """Send STDERR to a rotating file.

    Notice:
        If maxbytes is zero, rollover never occurs and we may fill up the disk.

    """

    def __init__(self, filepath, *, maxbytes=10485, backupcount=8):
        """Create a rotating file handler for STDERR."""
        handler = logging.handlers.RotatingFileHandler(filepath,
                                                       maxBytes=maxbytes,
                                                       backupCount=backupcount)
        super().__init__(handler=handler)


class CustomUdpLogger(CustomLogger):
    """Send STDERR to a syslog server over UDP."""

    def __init__(self, server='127.0.0.1', port=514):
        """Create a syslog handler for STDERR."""
        handler = logging.handlers.SysLogHandler((server, port))
        super().__init__(handler=handler)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Customize the Json Formatter."""

    def process_log_record(self, log_record):
        """Add program and version keys."""
        log_record["version"] = __version__
        log_record["program"] = PROGRAM_NAME

        return log_record
