"""
Image decoding and tensor encodings for the two models.

The validator expects a 128x128 grayscale tensor in [0, 1]; the classifier
expects a 224x224 RGB tensor in [-1, 1]. Both are produced with
nearest-neighbour resizing, exactly as the models were trained.
"""

import base64
import io
import logging
from typing import NamedTuple, Optional, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError
from torchvision import transforms

from skinscan.config import ALLOWED_IMAGE_FORMATS, ModelConfig
from skinscan.errors import InvalidImageError
from skinscan.tensors import TensorArena, track

logger = logging.getLogger(__name__)

ImageSource = Union[Image.Image, np.ndarray]

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def resize_nearest(pixels: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """
    Nearest-neighbour resize of an ``H x W x C`` array.

    Source index is ``min(in - 1, floor(dst * in / out))`` on both axes
    (no half-pixel centres, corners not aligned).
    """
    in_h, in_w = pixels.shape[:2]
    out_h, out_w = size
    rows = np.minimum((np.arange(out_h) * (in_h / out_h)).astype(np.int64), in_h - 1)
    cols = np.minimum((np.arange(out_w) * (in_w / out_w)).astype(np.int64), in_w - 1)
    return pixels[rows[:, None], cols]


class NearestResize:
    """Resize an ``H x W x C`` array to ``size`` (height, width)."""

    def __init__(self, size: Tuple[int, int]):
        self.size = tuple(size)

    def __call__(self, pixels: np.ndarray) -> np.ndarray:
        return resize_nearest(pixels, self.size)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(size={self.size})"


class ChannelMean:
    """Collapse the channel axis to a single grayscale channel."""

    def __call__(self, pixels: np.ndarray) -> np.ndarray:
        return np.mean(pixels, axis=2, dtype=np.float32)[..., np.newaxis]

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Rescale:
    """Apply ``(x - offset) / scale`` in float32."""

    def __init__(self, offset: float, scale: float):
        self.offset = offset
        self.scale = scale

    def __call__(self, pixels: np.ndarray) -> np.ndarray:
        values = pixels.astype(np.float32)
        return (values - np.float32(self.offset)) / np.float32(self.scale)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(offset={self.offset}, scale={self.scale})"


class AddBatchDim:
    def __call__(self, pixels: np.ndarray) -> np.ndarray:
        return np.expand_dims(pixels, 0)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Tracked:
    """Wrap a step so its output is recorded in a ``TensorArena``."""

    def __init__(self, step, arena: Optional[TensorArena]):
        self.step = step
        self.arena = arena

    def __call__(self, pixels: np.ndarray) -> np.ndarray:
        return track(self.arena, self.step(pixels))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.step!r})"


class PreprocessedImage(NamedTuple):
    validation: np.ndarray
    classification: np.ndarray


class ImagePreprocessor:
    """Turns uploaded images into model-ready tensors."""

    def __init__(self, config: Optional[ModelConfig] = None):
        self.config = config or ModelConfig()
        self.validation_transform = transforms.Compose([
            NearestResize(self.config.validator_input_size),
            ChannelMean(),
            Rescale(0.0, 255.0),
            AddBatchDim(),
        ])
        self.classification_transform = transforms.Compose([
            NearestResize(self.config.classifier_input_size),
            Rescale(127.5, 127.5),
            AddBatchDim(),
        ])

    def load_image(self, data: bytes) -> Image.Image:
        """
        Decode an uploaded JPEG/PNG file into an RGB image.

        Args:
            data: Raw file contents

        Returns:
            Decoded RGB PIL image

        Raises:
            InvalidImageError: empty, oversized, undecodable or unsupported data
        """
        if not data:
            raise InvalidImageError("Empty image upload")
        max_bytes = self.config.max_upload_bytes
        if len(data) > max_bytes:
            raise InvalidImageError(
                f"File size too large ({len(data) / 1024 / 1024:.1f} MB). "
                f"Maximum size is {max_bytes // (1024 * 1024)}MB."
            )
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise InvalidImageError(f"Could not decode image: {e}") from e

        if image.format not in ALLOWED_IMAGE_FORMATS:
            raise InvalidImageError(
                f"Invalid file type {image.format!r}. Please upload a JPEG or PNG image."
            )
        width, height = image.size
        if width == 0 or height == 0:
            raise InvalidImageError(f"Degenerate image dimensions: {width}x{height}")
        return image.convert("RGB")

    def to_pixels(self, image: ImageSource, arena: Optional[TensorArena] = None) -> np.ndarray:
        """Convert an image to an ``H x W x 3`` array, dropping any alpha channel."""
        if isinstance(image, Image.Image):
            if image.width == 0 or image.height == 0:
                raise InvalidImageError(f"Degenerate image dimensions: {image.width}x{image.height}")
            pixels = np.asarray(image.convert("RGB"))
        elif isinstance(image, np.ndarray):
            pixels = image
            if pixels.ndim == 2:
                pixels = np.repeat(pixels[..., np.newaxis], 3, axis=2)
            elif pixels.ndim == 3 and pixels.shape[2] == 4:
                pixels = pixels[..., :3]
            if pixels.ndim != 3 or pixels.shape[2] != 3:
                raise InvalidImageError(f"Expected an HxWx3 pixel grid, got shape {image.shape}")
        else:
            raise InvalidImageError(f"Unsupported image type: {type(image).__name__}")

        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise InvalidImageError(f"Degenerate image dimensions: {pixels.shape[1]}x{pixels.shape[0]}")
        return track(arena, pixels)

    def validation_tensor(self, image: ImageSource, arena: Optional[TensorArena] = None) -> np.ndarray:
        """Grayscale tensor of shape (1, 128, 128, 1) with values in [0, 1]."""
        return self._apply(self.validation_transform, self.to_pixels(image, arena), arena)

    def classification_tensor(self, image: ImageSource, arena: Optional[TensorArena] = None) -> np.ndarray:
        """RGB tensor of shape (1, 224, 224, 3) with values in [-1, 1]."""
        return self._apply(self.classification_transform, self.to_pixels(image, arena), arena)

    def preprocess(self, image: ImageSource, arena: Optional[TensorArena] = None) -> PreprocessedImage:
        """Produce both encodings from a single decode of ``image``."""
        pixels = self.to_pixels(image, arena)
        result = PreprocessedImage(
            validation=self._apply(self.validation_transform, pixels, arena),
            classification=self._apply(self.classification_transform, pixels, arena),
        )
        logger.debug(
            f"Preprocessed {pixels.shape[1]}x{pixels.shape[0]} image -> "
            f"{result.validation.shape}, {result.classification.shape}"
        )
        return result

    @staticmethod
    def _apply(transform: transforms.Compose, pixels: np.ndarray,
               arena: Optional[TensorArena]) -> np.ndarray:
        tracked = transforms.Compose([Tracked(step, arena) for step in transform.transforms])
        return tracked(pixels)


def image_to_data_url(data: bytes, image_format: Optional[str] = None) -> str:
    """
    Encode raw image bytes as a ``data:`` URL suitable for storage.

    The format is sniffed from the PNG signature when not given.
    """
    if image_format is None:
        image_format = "PNG" if data.startswith(PNG_SIGNATURE) else "JPEG"
    mime = "image/png" if image_format.upper() == "PNG" else "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def encode_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def data_url_to_bytes(data_url: str) -> bytes:
    """Inverse of :func:`image_to_data_url`."""
    _, _, payload = data_url.partition(",")
    return base64.b64decode(payload)
