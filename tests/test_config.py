"""Tests for environment configuration, the error taxonomy and logging helpers."""

import logging
import logging.handlers

import pytest

from graphtunnel.config import Config
from graphtunnel.exceptions import ConfigurationError, ConnectError, TunnelError
from graphtunnel.logging import TunnelLogger, setup_logging


class TestConfig:
    def test_defaults(self):
        assert Config.CONNECT_TIMEOUT_MS == 3000
        assert Config.LOCAL_BIND_PORT == 0
        assert Config.LOCAL_HOST == "localhost"
        assert Config.KNOWN_HOSTS_FILE == "~/.ssh/known_hosts"
        assert Config.connect_timeout_seconds() == 3.0
    
    def test_validate_defaults(self):
        Config.validate()
    
    @pytest.mark.parametrize("name,value", [
        ("CONNECT_TIMEOUT_MS", 0),
        ("LOCAL_BIND_PORT", 70000),
        ("LOCAL_HOST", ""),
    ])
    def test_validate_rejects(self, monkeypatch, name, value):
        monkeypatch.setattr(Config, name, value)
        
        with pytest.raises(ConfigurationError):
            Config.validate()


class TestExceptions:
    def test_kind_and_cause(self):
        cause = OSError("unreachable")
        error = ConnectError("could not connect", kind="network", cause=cause)
        
        assert isinstance(error, TunnelError)
        assert error.kind == "network"
        assert error.cause is cause
        assert str(error) == "[network] could not connect"
    
    def test_default_kind(self):
        assert ConfigurationError("bad").kind == "invalid-configuration"
    
    def test_configuration_error_is_value_error(self):
        assert isinstance(ConfigurationError("bad"), ValueError)


class TestLogging:
    def test_console_only_by_default(self, monkeypatch):
        monkeypatch.setattr(Config, "LOG_FILE", "")
        
        logger = setup_logging()
        
        assert logger.name == "graphtunnel"
        assert len(logger.handlers) == 1
    
    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "graphtunnel.log"
        
        logger = TunnelLogger(name="graphtunnel.test", log_file=str(log_file)).get_logger()
        logger.info("hello")
        
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logger.handlers)
        for handler in logger.handlers:
            handler.flush()
        assert "hello" in log_file.read_text()
