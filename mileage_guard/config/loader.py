"""
Configuration management and loading.

Handles validation thresholds, GPS tracking settings and device metadata.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class ValidationThresholds:
    """Business thresholds used by the validation and anomaly rules."""
    max_daily_distance_km: float = 1000.0
    mismatch_ratio: float = 0.10
    mismatch_floor_km: float = 5.0
    min_mileage_km: float = 0.0
    max_mileage_km: float = 999_999.0

    def __post_init__(self):
        """Validate threshold values are usable."""
        if self.max_daily_distance_km <= 0:
            raise ValueError("max_daily_distance_km must be > 0")
        if self.mismatch_ratio < 0:
            raise ValueError("mismatch_ratio cannot be negative")
        if self.mismatch_floor_km < 0:
            raise ValueError("mismatch_floor_km cannot be negative")
        if self.min_mileage_km >= self.max_mileage_km:
            raise ValueError("min_mileage_km must be below max_mileage_km")


@dataclass(frozen=True)
class TrackingConfig:
    """Settings for GPS tracking sessions."""
    max_speed_mps: float = 100.0
    first_fix_timeout_s: float = 30.0
    weak_signal_accuracy_m: float = 100.0
    good_accuracy_m: float = 20.0
    keep_location_points: bool = False
    max_location_points: int = 1000
    queue_size: int = 256

    def __post_init__(self):
        """Validate tracking settings."""
        if self.max_speed_mps <= 0:
            raise ValueError("max_speed_mps must be > 0")
        if self.first_fix_timeout_s <= 0:
            raise ValueError("first_fix_timeout_s must be > 0")
        if self.weak_signal_accuracy_m <= 0:
            raise ValueError("weak_signal_accuracy_m must be > 0")
        if self.good_accuracy_m <= 0:
            raise ValueError("good_accuracy_m must be > 0")
        if self.max_location_points <= 0:
            raise ValueError("max_location_points must be > 0")
        if self.queue_size <= 0:
            raise ValueError("queue_size must be > 0")


@dataclass(frozen=True)
class DeviceConfig:
    """Metadata stamped on every audit entry."""
    device_info: str = "mileage-guard"
    user_id: Optional[str] = None


@dataclass(frozen=True)
class MileageConfig:
    """Complete engine configuration."""
    thresholds: ValidationThresholds = field(default_factory=ValidationThresholds)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)


DEFAULT_CONFIG = MileageConfig()

_NUMBER_TYPES = (int, float)


def load_config(path: str) -> MileageConfig:
    """Load and validate engine configuration from a YAML file.

    Every section is optional; missing keys keep their defaults. Unknown
    keys are rejected so that a typo never silently falls back to a default
    threshold.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MileageConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return DEFAULT_CONFIG
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'thresholds', 'tracking', 'device'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    thresholds = ValidationThresholds(**_parse_section(
        raw_config.get('thresholds'),
        'thresholds',
        {
            'max_daily_distance_km': _NUMBER_TYPES,
            'mismatch_ratio': _NUMBER_TYPES,
            'mismatch_floor_km': _NUMBER_TYPES,
            'min_mileage_km': _NUMBER_TYPES,
            'max_mileage_km': _NUMBER_TYPES,
        },
    ))

    tracking = TrackingConfig(**_parse_section(
        raw_config.get('tracking'),
        'tracking',
        {
            'max_speed_mps': _NUMBER_TYPES,
            'first_fix_timeout_s': _NUMBER_TYPES,
            'weak_signal_accuracy_m': _NUMBER_TYPES,
            'good_accuracy_m': _NUMBER_TYPES,
            'keep_location_points': (bool,),
            'max_location_points': (int,),
            'queue_size': (int,),
        },
    ))

    device = DeviceConfig(**_parse_section(
        raw_config.get('device'),
        'device',
        {
            'device_info': (str,),
            'user_id': (str, type(None)),
        },
    ))

    return MileageConfig(thresholds=thresholds, tracking=tracking, device=device)


def _parse_section(data: Any, path: str, schema: Dict[str, tuple]) -> Dict[str, Any]:
    """Check one configuration section against its key/type schema.

    Args:
        data: Raw section data (None when the section is absent)
        path: Section name for error messages
        schema: Allowed keys mapped to their accepted Python types

    Returns:
        Keyword arguments for the section dataclass

    Raises:
        ValueError: If the section has unknown keys or wrongly typed values
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(schema.keys())
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        accepted = schema[key]
        # bool is an int subclass; only accept it where explicitly allowed
        if isinstance(value, bool) and bool not in accepted:
            raise ValueError(f"'{key}' in {path} must be a number")
        if not isinstance(value, accepted):
            names = ", ".join(t.__name__ for t in accepted)
            raise ValueError(f"'{key}' in {path} must be of type {names}")
        if accepted is _NUMBER_TYPES:
            value = float(value)
        parsed[key] = value
    return parsed
