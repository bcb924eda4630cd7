"""
Mileage Guard.

Daily odometer recording with GPS reconciliation, anomaly detection and an
append-only audit trail.
"""

__version__ = "0.1.0"
