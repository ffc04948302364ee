# -*- coding: utf-8 -*-
# vim:fenc=utf-8
#
"""Announce or withdraw anycast addresses based on a local health check."""
__title__ = 'anycast_failover'
__author__ = 'Pavlos Parissis'
__license__ = 'Apache 2.0'
__version__ = '0.1.0'
__copyright__ = 'Copyright 2026 Pavlos Parissis'

PROGRAM_NAME = __title__.replace('_', '-')

DEFAULT_OPTIONS = {
    'controller': {
        'interface': 'lo',
        'anycast_addresses': '',
        'check_interval': '10',
        'check_timeout': '2',
        'check_rise': '1',
        'check_fail': '1',
        'check_disabled': 'false',
        'on_disabled': 'withdraw',
        'mutation_retries': '3',
        'retry_delay': '0.2',
        'shutdown_grace': '5',
        'withdraw_on_shutdown': 'true',
        'ip_cmd': '/sbin/ip',
        'ip_cmd_timeout': '2',
    },
    'probe': {
        'type': 'command',
        'check_cmd': '',
        'host': '127.0.0.1',
        'port': '53',
        'url': '',
        'expected_status': '200',
    },
    'daemon': {
        'pidfile': '/var/run/anycast-failover/anycast-failover.pid',
        'loglevel': 'info',
        'log_server_port': '514',
        'json_stdout': 'false',
        'json_log_file': 'false',
        'json_log_server': 'false',
        'log_maxbytes': '104857600',
        'log_backups': '8',
    }
}
