"""Image transform engine: decode, auto-rotate, resize, crop, convert.

Pillow work is CPU bound and runs in a worker thread. Output encoding
follows one policy everywhere: JPEG is progressive, PNG uses compression
level 9, WebP honours the requested quality, and anything else is written
as JPEG.
"""
import asyncio
import io
import logging
import posixpath
from dataclasses import dataclass, field

from PIL import Image, ImageOps, UnidentifiedImageError

from file_service.exceptions import TransformError, ValidationError
from file_service.services.object_store import ObjectStore

logger = logging.getLogger(__name__)

EXIF_ORIENTATION_TAG = 0x0112
VALID_ROTATION_ANGLES = {90, 180, 270, -90, -180, -270}
SUPPORTED_OUTPUT_FORMATS = ("jpeg", "png", "webp")
DEFAULT_QUALITY = {"jpeg": 85, "png": 90, "webp": 85}
THUMBNAIL_QUALITY = 80
RESIZE_FITS = ("inside", "cover", "contain", "fill")

_CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
}
_EXTENSIONS = {"jpeg": "jpg", "png": "png", "webp": "webp"}

# Clockwise angle -> Pillow transpose (Pillow's ROTATE_* are counter-clockwise)
_CLOCKWISE_TRANSPOSE = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


@dataclass(frozen=True)
class ImageSize:
    width: int
    height: int
    quality: int


DEFAULT_SIZES: dict[str, ImageSize] = {
    "thumbnail": ImageSize(150, 150, 80),
    "small": ImageSize(400, 400, 85),
    "medium": ImageSize(800, 800, 85),
    "large": ImageSize(1920, 1920, 90),
}


@dataclass
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int
    has_alpha: bool = False
    orientation: int | None = None


@dataclass
class TransformResult:
    data: bytes
    width: int
    height: int
    format: str
    content_type: str


@dataclass
class ImageVariant:
    key: str
    width: int
    height: int
    size: int
    format: str
    content_type: str


@dataclass
class ProcessedImage:
    original: ImageVariant
    variants: dict[str, ImageVariant] = field(default_factory=dict)


def content_type_for(fmt: str) -> str:
    return _CONTENT_TYPES.get(fmt, f"image/{fmt}")


def output_format_for(source_format: str) -> str:
    return source_format if source_format in SUPPORTED_OUTPUT_FORMATS else "jpeg"


def variant_key(original_key: str, size_name: str, fmt: str) -> str:
    """{dir}/{base}_{sizeName}.{ext}"""
    directory, filename = posixpath.split(original_key)
    base = posixpath.splitext(filename)[0]
    name = f"{base}_{size_name}.{_EXTENSIONS.get(fmt, fmt)}"
    return posixpath.join(directory, name) if directory else name


def _open(buffer: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(buffer))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise TransformError(f"Unable to decode image: {e}") from e
    return img


def _source_format(img: Image.Image) -> str:
    return (img.format or "").lower()


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _orientation(img: Image.Image) -> int | None:
    try:
        return img.getexif().get(EXIF_ORIENTATION_TAG)
    except Exception:
        # malformed EXIF blocks are treated as "no orientation"
        return None


def _encode(img: Image.Image, fmt: str, quality: int | None = None) -> bytes:
    fmt = output_format_for(fmt)
    quality = quality or DEFAULT_QUALITY[fmt]
    out = io.BytesIO()
    try:
        if fmt == "jpeg":
            if img.mode not in ("RGB", "L", "CMYK"):
                img = img.convert("RGB")
            img.save(out, format="JPEG", quality=quality, progressive=True, optimize=True)
        elif fmt == "png":
            if img.mode == "CMYK":
                img = img.convert("RGB")
            img.save(out, format="PNG", compress_level=9)
        else:
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA" if _has_alpha(img) else "RGB")
            img.save(out, format="WEBP", quality=quality)
    except (OSError, ValueError) as e:
        raise TransformError(f"Unable to encode image as {fmt}: {e}") from e
    return out.getvalue()


def _result(img: Image.Image, fmt: str, quality: int | None = None) -> TransformResult:
    fmt = output_format_for(fmt)
    return TransformResult(
        data=_encode(img, fmt, quality),
        width=img.width,
        height=img.height,
        format=fmt,
        content_type=content_type_for(fmt),
    )


def _fit_inside(img: Image.Image, width: int, height: int) -> Image.Image:
    """Shrink to fit the box, keeping aspect ratio. Never enlarges."""
    resized = img.copy()
    if img.width > width or img.height > height:
        resized.thumbnail((width, height), Image.Resampling.LANCZOS)
    return resized


class ImageProcessingService:
    """Pillow-backed image operations. Uploads go through the injected object store."""

    def __init__(self, object_store: ObjectStore, bucket: str):
        self.object_store = object_store
        self.bucket = bucket

    async def get_metadata(self, buffer: bytes) -> ImageMetadata:
        return await asyncio.to_thread(self._get_metadata, buffer)

    def _get_metadata(self, buffer: bytes) -> ImageMetadata:
        img = _open(buffer)
        return ImageMetadata(
            width=img.width,
            height=img.height,
            format=_source_format(img),
            size=len(buffer),
            has_alpha=_has_alpha(img),
            orientation=_orientation(img),
        )

    def _normalize(self, buffer: bytes) -> tuple[Image.Image, str, bytes, str]:
        """Apply EXIF orientation. Returns (image, output format, original bytes, original format)."""
        img = _open(buffer)
        source_format = _source_format(img)
        out_format = output_format_for(source_format)
        orientation = _orientation(img)
        if orientation and orientation != 1:
            img = ImageOps.exif_transpose(img)
            return img, out_format, _encode(img, out_format), out_format
        return img, out_format, buffer, source_format

    async def process_image(
        self,
        buffer: bytes,
        original_key: str,
        sizes: dict[str, ImageSize] | None = None,
        written: list[str] | None = None,
    ) -> ProcessedImage:
        """Upload the orientation-normalized original plus one variant per size.

        Every key is appended to ``written`` as soon as its upload succeeds,
        so a caller can remove exactly what was stored when a later step fails.
        """
        img, out_format, original_bytes, original_format = await asyncio.to_thread(self._normalize, buffer)

        await self.object_store.upload(
            self.bucket, original_key, original_bytes, content_type_for(original_format)
        )
        if written is not None:
            written.append(original_key)
        result = ProcessedImage(original=ImageVariant(
            key=original_key,
            width=img.width,
            height=img.height,
            size=len(original_bytes),
            format=original_format,
            content_type=content_type_for(original_format),
        ))
        await self._upload_variants(img, out_format, original_key, sizes, result, written)
        return result

    async def generate_variants(
        self,
        buffer: bytes,
        original_key: str,
        sizes: dict[str, ImageSize] | None = None,
        written: list[str] | None = None,
    ) -> ProcessedImage:
        """Like process_image, but the original is assumed to be stored already."""
        img, out_format, _, original_format = await asyncio.to_thread(self._normalize, buffer)
        result = ProcessedImage(original=ImageVariant(
            key=original_key,
            width=img.width,
            height=img.height,
            size=len(buffer),
            format=original_format,
            content_type=content_type_for(original_format),
        ))
        await self._upload_variants(img, out_format, original_key, sizes, result, written)
        return result

    async def _upload_variants(self, img, out_format, original_key, sizes, result, written) -> None:
        sizes = DEFAULT_SIZES if sizes is None else sizes
        for size_name, size in sizes.items():
            resized = await asyncio.to_thread(_fit_inside, img, size.width, size.height)
            data = await asyncio.to_thread(_encode, resized, out_format, size.quality)
            key = variant_key(original_key, size_name, out_format)
            await self.object_store.upload(self.bucket, key, data, content_type_for(out_format))
            if written is not None:
                written.append(key)
            result.variants[size_name] = ImageVariant(
                key=key,
                width=resized.width,
                height=resized.height,
                size=len(data),
                format=out_format,
                content_type=content_type_for(out_format),
            )
            logger.debug(f"Generated {size_name} variant {resized.width}x{resized.height} for {original_key}")

    async def resize_image(
        self,
        buffer: bytes,
        width: int | None = None,
        height: int | None = None,
        fit: str = "inside",
        quality: int | None = None,
        output_format: str | None = None,
        without_enlargement: bool = True,
    ) -> TransformResult:
        if width is None and height is None:
            raise ValidationError("At least one of width or height is required")
        if (width is not None and width <= 0) or (height is not None and height <= 0):
            raise ValidationError("Width and height must be positive")
        if fit not in RESIZE_FITS:
            raise ValidationError(f"Unsupported fit '{fit}', expected one of {', '.join(RESIZE_FITS)}")
        if output_format is not None:
            output_format = _normalize_format_name(output_format)
        return await asyncio.to_thread(
            self._resize, buffer, width, height, fit, quality, output_format, without_enlargement
        )

    def _resize(self, buffer, width, height, fit, quality, output_format, without_enlargement) -> TransformResult:
        img = _open(buffer)
        fmt = output_format or _source_format(img)
        if width is None:
            width = max(1, round(img.width * height / img.height))
        if height is None:
            height = max(1, round(img.height * width / img.width))

        if fit == "inside":
            scale = min(width / img.width, height / img.height)
            if without_enlargement:
                scale = min(scale, 1.0)
            size = (max(1, round(img.width * scale)), max(1, round(img.height * scale)))
            resized = img.resize(size, Image.Resampling.LANCZOS) if size != img.size else img.copy()
        elif fit == "cover":
            resized = ImageOps.fit(img, (width, height), Image.Resampling.LANCZOS)
        elif fit == "contain":
            resized = ImageOps.pad(img, (width, height), Image.Resampling.LANCZOS)
        else:
            resized = img.resize((width, height), Image.Resampling.LANCZOS)
        return _result(resized, fmt, quality)

    async def crop_image(self, buffer: bytes, left: float, top: float, width: float, height: float) -> TransformResult:
        """Extract an exact pixel rectangle. All inputs are rounded to integers."""
        left, top, width, height = (int(round(v)) for v in (left, top, width, height))
        if width <= 0 or height <= 0 or left < 0 or top < 0:
            raise ValidationError("Crop rectangle must have a non-negative origin and positive size")
        return await asyncio.to_thread(self._crop, buffer, left, top, width, height)

    def _crop(self, buffer, left, top, width, height) -> TransformResult:
        img = _open(buffer)
        if left + width > img.width or top + height > img.height:
            raise ValidationError(
                f"Crop rectangle {left},{top} {width}x{height} exceeds image bounds {img.width}x{img.height}"
            )
        cropped = img.crop((left, top, left + width, top + height))
        return _result(cropped, _source_format(img))

    async def rotate_image(self, buffer: bytes, angle: int) -> TransformResult:
        """Rotate clockwise by a right angle."""
        if angle not in VALID_ROTATION_ANGLES:
            raise ValidationError(f"Invalid rotation angle {angle}; use ±90, ±180 or ±270")
        return await asyncio.to_thread(self._rotate, buffer, int(angle) % 360)

    def _rotate(self, buffer, clockwise) -> TransformResult:
        img = _open(buffer)
        rotated = img.transpose(_CLOCKWISE_TRANSPOSE[clockwise])
        return _result(rotated, _source_format(img))

    async def convert_format(self, buffer: bytes, format: str, quality: int | None = None) -> TransformResult:
        fmt = _normalize_format_name(format)
        return await asyncio.to_thread(lambda: _result(_open(buffer), fmt, quality))

    async def generate_thumbnail(self, buffer: bytes, width: int = 150, height: int = 150) -> TransformResult:
        """Cover-crop to exactly width x height, always JPEG q80."""
        def _thumbnail():
            img = ImageOps.fit(_open(buffer), (width, height), Image.Resampling.LANCZOS)
            return _result(img, "jpeg", THUMBNAIL_QUALITY)

        return await asyncio.to_thread(_thumbnail)


def _normalize_format_name(fmt: str) -> str:
    fmt = fmt.lower().strip()
    if fmt == "jpg":
        fmt = "jpeg"
    if fmt not in SUPPORTED_OUTPUT_FORMATS:
        raise ValidationError(f"Unsupported output format '{fmt}'")
    return fmt
