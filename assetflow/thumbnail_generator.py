"""
ThumbnailGenerator - Handles image decoding, resizing and re-encoding.
"""

import io
import logging
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import UnsupportedMediaError
from .size_spec import SizeSpec

# Formats that keep an alpha channel; everything else is flattened onto white.
ALPHA_FORMATS = ('PNG', 'WEBP')


class ThumbnailGenerator:
    """
    Generates one derivative of an already decoded image using Pillow.

    Safe to call from several threads at once on the same source image:
    generate() works on a copy and never mutates its input.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def decode(self, image_data: bytes) -> Image.Image:
        """
        Decode image bytes and apply the EXIF orientation.

        Raises:
            UnsupportedMediaError: Pillow cannot read the data
        """
        try:
            img = Image.open(io.BytesIO(image_data))
            img.load()
            return ImageOps.exif_transpose(img)
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
            raise UnsupportedMediaError(f"Cannot decode image: {e}") from e

    def generate(self, image: Image.Image, size_spec: SizeSpec) -> Tuple[bytes, int, int, str]:
        """
        Generate a derivative for one size.

        Fits the image inside the size's bounding box, preserving aspect
        ratio and never enlarging.

        Args:
            image: Decoded source image
            size_spec: Target size

        Returns:
            Tuple of (data, width, height, content_type)
        """
        img = self._convert_color_mode(image, size_spec.pil_format)
        if img is image:
            img = image.copy()
        img.thumbnail((size_spec.max_width, size_spec.max_height), Image.Resampling.LANCZOS)

        output = io.BytesIO()
        if size_spec.pil_format == 'PNG':
            img.save(output, format='PNG', optimize=True)
        elif size_spec.pil_format == 'WEBP':
            img.save(output, format='WEBP', quality=size_spec.output_quality)
        else:
            img.save(output, format='JPEG', quality=size_spec.output_quality, optimize=True)

        width, height = img.size
        self.logger.debug(f"Generated {size_spec.name} {width}x{height} ({output.tell()} bytes)")
        return output.getvalue(), width, height, size_spec.content_type

    def _convert_color_mode(self, img: Image.Image, pil_format: str) -> Image.Image:
        """Convert image to a color mode the output format can store."""
        if pil_format in ALPHA_FORMATS:
            if img.mode in ('RGB', 'RGBA'):
                return img
            if img.mode in ('LA', 'P', 'PA') or 'transparency' in img.info:
                return img.convert('RGBA')
            return img.convert('RGB')

        if img.mode in ('RGBA', 'LA', 'PA', 'P'):
            rgba = img.convert('RGBA')
            background = Image.new('RGB', img.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[-1])
            return background
        elif img.mode != 'RGB':
            return img.convert('RGB')
        return img
