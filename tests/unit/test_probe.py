"""Tests for health probes."""
import shlex
import socket
import sys
import threading
import time
from unittest.mock import Mock

import pytest
import requests

from anycast_failover.probe import (CommandProbe, HealthProbe, HttpProbe,
                                    TcpProbe, build_probe,
                                    parse_status_codes)

PYTHON = shlex.quote(sys.executable)


class ExplodingProbe(HealthProbe):
    """A probe which can't tell the health of the service."""

    def _check(self):
        raise RuntimeError('resolver returned garbage')


class TestHealthProbe:

    def test_exception_resolves_to_failure(self):
        result = ExplodingProbe(timeout=1).probe()

        assert result.success is False
        assert 'resolver returned garbage' in result.detail
        assert result.observed_at > 0


class TestCommandProbe:

    def test_zero_exit_status_is_success(self):
        result = CommandProbe(PYTHON + ' -c "import sys; sys.exit(0)"',
                              timeout=10).probe()

        assert result.success is True
        assert result.detail is None

    def test_non_zero_exit_status_is_failure(self):
        result = CommandProbe(PYTHON + ' -c "import sys; sys.exit(3)"',
                              timeout=10).probe()

        assert result.success is False
        assert result.detail == 'check exited with 3'

    def test_timeout_is_failure(self):
        result = CommandProbe(PYTHON + ' -c "import time; time.sleep(30)"',
                              timeout=0.5).probe()

        assert result.success is False
        assert 'timed out' in result.detail

    def test_timeout_kills_processes_started_by_check(self):
        # The check starts a child which inherits stdout/stderr pipes.
        check_cmd = (
            PYTHON + ' -c "import subprocess, sys, time; '
            "subprocess.Popen([sys.executable, '-c', "
            "'import time; time.sleep(30)']); "
            'time.sleep(30)"'
        )
        start_time = time.monotonic()

        result = CommandProbe(check_cmd, timeout=0.5).probe()

        assert result.success is False
        assert 'timed out' in result.detail
        assert time.monotonic() - start_time < 3

    def test_missing_command_is_failure(self):
        result = CommandProbe('/nonexistent/check --foo', timeout=1).probe()

        assert result.success is False
        assert 'failed to run check' in result.detail


class TestTcpProbe:

    def test_listening_port_is_success(self):
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(('127.0.0.1', 0))
        server.listen(1)
        try:
            port = server.getsockname()[1]
            result = TcpProbe('127.0.0.1', port, timeout=2).probe()
        finally:
            server.close()

        assert result.success is True

    def test_closed_port_is_failure(self):
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(('127.0.0.1', 0))
        port = server.getsockname()[1]
        server.close()

        result = TcpProbe('127.0.0.1', port, timeout=2).probe()

        assert result.success is False
        assert '127.0.0.1:{p}'.format(p=port) in result.detail


class TestHttpProbe:

    @pytest.fixture
    def http_probe(self):
        _probe = HttpProbe('http://127.0.0.1:8080/health', timeout=1,
                           expected_status=[200, 204])
        _probe._http_sess = Mock()
        return _probe

    def test_expected_status_is_success(self, http_probe):
        http_probe._http_sess.get.return_value = Mock(status_code=204)

        assert http_probe.probe().success is True
        http_probe._http_sess.get.assert_called_once_with(
            'http://127.0.0.1:8080/health', timeout=1, allow_redirects=False,
            stream=True)
        http_probe._http_sess.get.return_value.close.assert_called_once_with()

    def test_unexpected_status_is_failure(self, http_probe):
        http_probe._http_sess.get.return_value = Mock(status_code=503)

        result = http_probe.probe()

        assert result.success is False
        assert '503' in result.detail

    def test_connection_error_is_failure(self, http_probe):
        http_probe._http_sess.get.side_effect = (
            requests.exceptions.ConnectionError('refused'))

        assert http_probe.probe().success is False

    def test_timeout_is_failure(self, http_probe):
        http_probe._http_sess.get.side_effect = (
            requests.exceptions.ReadTimeout('slow'))

        assert http_probe.probe().success is False


@pytest.fixture
def slow_server():
    """Answer a single HTTP request, sending the response in pieces.

    Returns a function which takes a list of (pause, data) tuples, starts
    serving and returns the URL to fetch.
    """
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(('127.0.0.1', 0))
    server.listen(1)

    def serve(pieces):
        conn, _ = server.accept()
        with conn:
            try:
                conn.recv(65536)
                for pause, data in pieces:
                    time.sleep(pause)
                    conn.sendall(data)
            except OSError:
                pass

    def _start(pieces):
        threading.Thread(target=serve, args=(pieces,), daemon=True).start()
        return 'http://127.0.0.1:{p}/health'.format(
            p=server.getsockname()[1])

    yield _start
    server.close()


class TestHttpProbeDeadline:

    def _probe(self, url):
        _probe = HttpProbe(url, timeout=0.5)
        _probe._http_sess.trust_env = False
        return _probe

    def test_slow_headers_are_failure(self, slow_server):
        # Every byte arrives well within timeout, all of them don't.
        pieces = [(0, b'HTTP/1.1 200 OK\r\nX-Drip: ')]
        pieces.extend([(0.2, b'a')] * 6)
        pieces.append((0, b'\r\nContent-Length: 0\r\n\r\n'))
        url = slow_server(pieces)

        result = self._probe(url).probe()

        assert result.success is False
        assert 'took longer than 0.5secs' in result.detail

    def test_slow_body_is_not_read(self, slow_server):
        pieces = [(0, b'HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\n')]
        pieces.extend([(0.2, b'a')] * 100)
        url = slow_server(pieces)
        start_time = time.monotonic()

        result = self._probe(url).probe()

        assert result.success is True
        assert time.monotonic() - start_time < 2


def test_parse_status_codes():
    assert parse_status_codes('200, 204 301') == [200, 204, 301]
    with pytest.raises(ValueError):
        parse_status_codes('ok')


class TestBuildProbe:

    def test_command(self, config):
        _probe = build_probe(config)

        assert isinstance(_probe, CommandProbe)
        assert _probe.cmd == ['true']
        assert _probe.timeout == 2.0

    def test_tcp(self, config):
        config.set('probe', 'type', 'tcp')
        config.set('probe', 'port', '5353')

        _probe = build_probe(config)

        assert isinstance(_probe, TcpProbe)
        assert (_probe.host, _probe.port) == ('127.0.0.1', 5353)

    def test_http(self, config):
        config.set('probe', 'type', 'http')
        config.set('probe', 'url', 'http://127.0.0.1/health')
        config.set('probe', 'expected_status', '200,204')

        _probe = build_probe(config)

        assert isinstance(_probe, HttpProbe)
        assert _probe.expected_status == {200, 204}

    def test_unknown(self, config):
        config.set('probe', 'type', 'dns')

        with pytest.raises(ValueError):
            build_probe(config)
