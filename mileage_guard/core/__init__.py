"""
Core modules for Mileage Guard.

This package contains GPS distance tracking, mileage validation, anomaly
detection and the mileage service that coordinates them.
"""
