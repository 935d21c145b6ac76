"""Image to frame decoding.

An image is read as a pixel grid: one pixel column is one LED index and one
pixel row is one frame. The image width must equal the device LED count and
its height must fit the device movie capacity.
"""

from __future__ import annotations

import logging
import os
from typing import IO, TYPE_CHECKING, Iterator, Union

from PIL import Image, UnidentifiedImageError

from pyxled.device import DeviceProfile, Frame
from pyxled.errors import DecodeError, DimensionError
from pyxled.protocol import unpack_pixels

if TYPE_CHECKING:
    from PIL.Image import Image as PILImage

ImageInput = Union[str, "os.PathLike[str]", IO[bytes], "PILImage"]

logger = logging.getLogger(__name__)


class FrameSource:
    """A decoded image exposed as a fixed-width sequence of frames.

    Use :meth:`open` to construct one; it validates the image size before
    decoding any pixel data.

    Example:
        >>> source = FrameSource.open("rainbow.png", led_count=250, frame_capacity=992)
        >>> for frame in source:
        ...     sink.accept(frame)
    """

    def __init__(self, image: PILImage, led_count: int, frame_capacity: int) -> None:
        self._image = image
        self.led_count = led_count
        self.frame_capacity = frame_capacity

    @classmethod
    def open(cls, image: ImageInput, led_count: int, frame_capacity: int) -> FrameSource:
        """Open and validate an image.

        Args:
            image: Path, binary file object or already loaded Pillow image
            led_count: Number of LEDs, must equal the image width
            frame_capacity: Maximum number of frames, bounds the image height

        Returns:
            FrameSource over the RGB pixels of the image

        Raises:
            DimensionError: If width != led_count or height is not in 1..frame_capacity
            DecodeError: If the input cannot be read as an image
        """
        opened = not isinstance(image, Image.Image)
        try:
            img = Image.open(image) if opened else image
        except (UnidentifiedImageError, OSError) as err:
            raise DecodeError(f"Cannot read image {image!r}: {err}") from err

        try:
            # Only the header has been read at this point
            width, height = img.size
            if width != led_count:
                raise DimensionError(
                    f"Image width is {width}, expected {led_count} (one column per LED)",
                    expected=(led_count, f"1..{frame_capacity}"),
                    actual=(width, height),
                )
            if not 1 <= height <= frame_capacity:
                raise DimensionError(
                    f"Image height is {height}, expected 1..{frame_capacity} frames",
                    expected=(led_count, f"1..{frame_capacity}"),
                    actual=(width, height),
                )
            try:
                rgb = img.convert("RGB")
            except OSError as err:
                raise DecodeError(f"Cannot decode image {image!r}: {err}") from err
        finally:
            if opened:
                img.close()

        logger.debug("Decoded %dx%d image into %d frames", width, height, height)
        return cls(rgb, led_count, frame_capacity)

    @classmethod
    def for_profile(cls, image: ImageInput, profile: DeviceProfile) -> FrameSource:
        """Open an image against a device profile snapshot."""
        return cls.open(image, profile.led_count, profile.frame_capacity)

    def frame_count(self) -> int:
        """Number of frames (image rows)."""
        return self._image.height

    def __len__(self) -> int:
        return self.frame_count()

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.frame_count():
            raise IndexError(f"Frame index {index} out of range 0..{self.frame_count() - 1}")

    def frame_bytes(self, index: int) -> bytes:
        """Raw RGB bytes of one frame.

        Args:
            index: Frame index, 0-based

        Returns:
            ``led_count * 3`` bytes, R,G,B per pixel

        Raises:
            IndexError: If index is out of range
        """
        self._check_index(index)
        return self._image.crop((0, index, self.led_count, index + 1)).tobytes()

    def frame(self, index: int) -> Frame:
        """One frame as a tuple of (r, g, b) pixels.

        Raises:
            IndexError: If index is out of range
        """
        return unpack_pixels(self.frame_bytes(index))

    def __getitem__(self, index: int) -> Frame:
        return self.frame(index)

    def as_buffer(self) -> bytes:
        """All frames concatenated in frame order, for the bulk movie upload."""
        # RGB mode rows are stored top to bottom, three bytes per pixel
        return self._image.tobytes()

    def iterate(self) -> Iterator[Frame]:
        """Lazily yield each frame in index order."""
        for index in range(self.frame_count()):
            yield self.frame(index)

    def __iter__(self) -> Iterator[Frame]:
        return self.iterate()

    def iter_bytes(self) -> Iterator[bytes]:
        """Lazily yield each frame's raw RGB bytes in index order."""
        for index in range(self.frame_count()):
            yield self.frame_bytes(index)
