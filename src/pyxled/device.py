"""Device-level types shared by the streaming pipeline and the REST client."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Tuple

from pyxled.errors import ApiError

RGB = Tuple[int, int, int]
Frame = Tuple[RGB, ...]


class Mode(str, Enum):
    """LED operating modes accepted by ``/led/mode``."""

    OFF = "off"
    DEMO = "demo"
    MOVIE = "movie"
    RT = "rt"
    EFFECT = "effect"
    PLAYLIST = "playlist"
    COLOR = "color"


@dataclass(frozen=True)
class DeviceProfile:
    """Snapshot of the device limits relevant to uploads and streaming.

    Attributes:
        led_count: Number of pixels in one frame (hardware constant)
        frame_capacity: Maximum number of frames the device stores in one movie
    """

    led_count: int
    frame_capacity: int

    def __post_init__(self) -> None:
        if self.led_count <= 0:
            raise ValueError(f"led_count must be positive, got {self.led_count}")
        if self.frame_capacity <= 0:
            raise ValueError(f"frame_capacity must be positive, got {self.frame_capacity}")

    @classmethod
    def from_gestalt(cls, gestalt: Mapping[str, Any]) -> DeviceProfile:
        """Build a profile from a ``/gestalt`` response body.

        Args:
            gestalt: Decoded JSON returned by the device

        Returns:
            DeviceProfile with the LED count and movie capacity

        Raises:
            ApiError: If the response lacks the LED count or movie capacity
        """
        try:
            return cls(
                led_count=int(gestalt["number_of_led"]),
                frame_capacity=int(gestalt["movie_capacity"]),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise ApiError(f"Unexpected gestalt response: {err!r}") from err
