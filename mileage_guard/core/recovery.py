"""
GPS tracking errors and the recovery policy for each of them.

GPS failures never block a mileage record; each error carries the fallback
the caller should offer (usually switching to manual entry).
"""

from dataclasses import dataclass
from enum import Enum


class GPSErrorType(Enum):
    """Failure categories reported by a tracking session."""
    PERMISSION_DENIED = "permissionDenied"
    SERVICE_DISABLED = "serviceDisabled"
    SIGNAL_WEAK = "signalWeak"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class GPSFallbackAction(Enum):
    """What the caller should do after a GPS failure."""
    NONE = "none"
    REQUEST_PERMISSION_AGAIN = "requestPermissionAgain"
    ENABLE_LOCATION_SERVICE = "enableLocationService"
    SWITCH_TO_MANUAL_MODE = "switchToManualMode"
    RETRY = "retry"


@dataclass(frozen=True)
class GPSErrorRecovery:
    """Suggested recovery for a GPS failure."""
    fallback_action: GPSFallbackAction
    message: str


_RECOVERY_POLICY = {
    GPSErrorType.PERMISSION_DENIED: GPSErrorRecovery(
        GPSFallbackAction.REQUEST_PERMISSION_AGAIN,
        "Allow location access in the device settings, or record mileage manually",
    ),
    GPSErrorType.SERVICE_DISABLED: GPSErrorRecovery(
        GPSFallbackAction.ENABLE_LOCATION_SERVICE,
        "Enable the location service, or record mileage manually",
    ),
    GPSErrorType.SIGNAL_WEAK: GPSErrorRecovery(
        GPSFallbackAction.SWITCH_TO_MANUAL_MODE,
        "GPS signal is too weak; switched to manual entry",
    ),
    GPSErrorType.TIMEOUT: GPSErrorRecovery(
        GPSFallbackAction.RETRY,
        "Timed out waiting for a GPS fix; try again",
    ),
    GPSErrorType.UNKNOWN: GPSErrorRecovery(
        GPSFallbackAction.SWITCH_TO_MANUAL_MODE,
        "GPS tracking failed; please record mileage manually",
    ),
}


def recovery_for(error_type: GPSErrorType) -> GPSErrorRecovery:
    """Return the recovery suggested for a GPS error category."""
    return _RECOVERY_POLICY[error_type]


class GPSTrackingError(Exception):
    """Base class for recoverable GPS session failures."""
    error_type = GPSErrorType.UNKNOWN

    @property
    def recovery(self) -> GPSErrorRecovery:
        return recovery_for(self.error_type)


class GPSPermissionDeniedError(GPSTrackingError):
    error_type = GPSErrorType.PERMISSION_DENIED


class GPSServiceDisabledError(GPSTrackingError):
    error_type = GPSErrorType.SERVICE_DISABLED


class GPSSignalWeakError(GPSTrackingError):
    error_type = GPSErrorType.SIGNAL_WEAK


class GPSTimeoutError(GPSTrackingError):
    error_type = GPSErrorType.TIMEOUT


class GPSUnknownError(GPSTrackingError):
    error_type = GPSErrorType.UNKNOWN
