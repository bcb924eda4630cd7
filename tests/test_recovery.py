"""
Unit tests for the GPS error recovery policy.
"""

import pytest

from mileage_guard.core.recovery import (
    GPSErrorType,
    GPSFallbackAction,
    GPSPermissionDeniedError,
    GPSServiceDisabledError,
    GPSSignalWeakError,
    GPSTimeoutError,
    GPSTrackingError,
    GPSUnknownError,
    recovery_for,
)


class TestRecoveryPolicy:
    """Test that each failure maps to its fallback."""

    @pytest.mark.parametrize("error_type,action", [
        (GPSErrorType.PERMISSION_DENIED, GPSFallbackAction.REQUEST_PERMISSION_AGAIN),
        (GPSErrorType.SERVICE_DISABLED, GPSFallbackAction.ENABLE_LOCATION_SERVICE),
        (GPSErrorType.SIGNAL_WEAK, GPSFallbackAction.SWITCH_TO_MANUAL_MODE),
        (GPSErrorType.TIMEOUT, GPSFallbackAction.RETRY),
        (GPSErrorType.UNKNOWN, GPSFallbackAction.SWITCH_TO_MANUAL_MODE),
    ])
    def test_fallback_action(self, error_type, action):
        recovery = recovery_for(error_type)

        assert recovery.fallback_action == action
        assert recovery.message

    @pytest.mark.parametrize("error_class,error_type", [
        (GPSPermissionDeniedError, GPSErrorType.PERMISSION_DENIED),
        (GPSServiceDisabledError, GPSErrorType.SERVICE_DISABLED),
        (GPSSignalWeakError, GPSErrorType.SIGNAL_WEAK),
        (GPSTimeoutError, GPSErrorType.TIMEOUT),
        (GPSUnknownError, GPSErrorType.UNKNOWN),
    ])
    def test_error_carries_type_and_recovery(self, error_class, error_type):
        error = error_class("failure")

        assert isinstance(error, GPSTrackingError)
        assert error.error_type == error_type
        assert error.recovery == recovery_for(error_type)
        assert str(error) == "failure"
