"""
Tests for structured logging setup.
"""

import pytest
import structlog

from mileage_guard.core.logging import setup_logging


class TestSetupLogging:
    """Test structlog configuration."""

    def test_console_renderer(self):
        setup_logging("DEBUG", json_logs=False)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_renderer(self):
        setup_logging("info")

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            setup_logging("LOUD")
