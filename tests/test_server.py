"""Tests for startup validation."""

import socket

import pytest

from bridge.app.exceptions import TransportError
from bridge.app.server import check_port_available, validate_bind_config
from tests.conftest import make_settings


class TestValidateBindConfig:
    """Test rejection of unusable bind settings."""

    def test_valid_settings_pass(self):
        validate_bind_config(make_settings(api_key="secret"))

    def test_port_out_of_range(self):
        settings = make_settings().model_copy(update={"port": 70000})
        with pytest.raises(TransportError, match="Invalid port"):
            validate_bind_config(settings)

    def test_relative_endpoint(self):
        settings = make_settings().model_copy(update={"endpoint": "mcp"})
        with pytest.raises(TransportError, match="Invalid endpoint"):
            validate_bind_config(settings)

    def test_empty_host(self):
        settings = make_settings().model_copy(update={"host": ""})
        with pytest.raises(TransportError):
            validate_bind_config(settings)


class TestCheckPortAvailable:
    """Test detection of a busy port before startup."""

    def test_port_in_use(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            port = listener.getsockname()[1]

            with pytest.raises(TransportError, match="already in use"):
                check_port_available("127.0.0.1", port)

    def test_free_port(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        check_port_available("127.0.0.1", port)

    def test_unbindable_address(self):
        with pytest.raises(TransportError, match="Cannot bind"):
            check_port_available("192.0.2.123", 8080)
