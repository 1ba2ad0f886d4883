"""Image decoding capability used by perceptual hashing.

The hashing algorithm only needs four operations, so it depends on the small
ImageDecoder interface rather than on Pillow directly.  Tests inject a fake
decoder that returns fixed pixel grids; production uses PillowDecoder.
"""

from __future__ import annotations

import io
from abc import ABC, abstractmethod
from typing import Any

from PIL import Image, UnidentifiedImageError

from listingmatch.errors import SignalUnavailable


class ImageDecoder(ABC):
    """Minimal image capability: decode, resize, grayscale, raw pixel access."""

    @abstractmethod
    def decode(self, data: bytes) -> Any:
        """Decode encoded image bytes into a backend image handle.

        Raises:
            SignalUnavailable: The bytes are not a decodable image.
        """
        ...

    @abstractmethod
    def resize(self, image: Any, width: int, height: int) -> Any:
        ...

    @abstractmethod
    def grayscale(self, image: Any) -> Any:
        ...

    @abstractmethod
    def raw_pixels(self, image: Any) -> list[int]:
        """Row-major list of 8-bit intensities of a grayscale image."""
        ...


class PillowDecoder(ImageDecoder):
    """ImageDecoder backed by Pillow."""

    def decode(self, data: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise SignalUnavailable(f"undecodable image: {exc}") from exc
        return image

    def resize(self, image: Image.Image, width: int, height: int) -> Image.Image:
        return image.convert("RGB").resize((width, height), Image.Resampling.LANCZOS)

    def grayscale(self, image: Image.Image) -> Image.Image:
        return image.convert("L")

    def raw_pixels(self, image: Image.Image) -> list[int]:
        return list(image.tobytes())
