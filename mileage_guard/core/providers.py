"""
Location providers that do not need device hardware.

ReplayLocationProvider plays back a recorded list of fixes, which is how
recorded drives are re-measured from the CLI.
"""

import asyncio
import json
from pathlib import Path
from typing import AsyncIterator, List, Optional, Sequence

from .tracking import PermissionStatus
from mileage_guard.storage.models import LocationPoint


class ReplayLocationProvider:
    """Serves a fixed sequence of location points.

    The first point answers ``current_position``; the remaining points are
    pushed through ``position_stream``.
    """

    def __init__(
        self,
        points: Sequence[LocationPoint],
        permission: PermissionStatus = PermissionStatus.GRANTED,
        delay: float = 0.0,
    ):
        self.points: List[LocationPoint] = list(points)
        self.permission = permission
        self.delay = delay

    async def check_permission(self) -> PermissionStatus:
        return self.permission

    async def current_position(self) -> LocationPoint:
        if not self.points:
            raise LookupError("No recorded location points to replay")
        return self.points[0]

    async def position_stream(self) -> AsyncIterator[LocationPoint]:
        for point in self.points[1:]:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield point


def load_points(path: str) -> List[LocationPoint]:
    """Read a JSON array of persisted location points.

    Args:
        path: Path to a JSON file holding ``LocationPoint.to_dict()`` objects

    Returns:
        Points sorted by timestamp

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file isn't a JSON array of points
    """
    points_path = Path(path)
    if not points_path.exists():
        raise FileNotFoundError(f"Location points file not found: {path}")

    with open(points_path, 'r', encoding='utf-8') as f:
        raw: Optional[object] = json.load(f)

    if not isinstance(raw, list):
        raise ValueError("Location points file must contain a JSON array")

    try:
        points = [LocationPoint.from_dict(item) for item in raw]
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid location point in {path}: {e}")

    # The accumulator requires timestamp order
    return sorted(points, key=lambda p: p.timestamp)
