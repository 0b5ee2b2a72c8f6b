"""
Tiered image variants (small/medium/large) derived from one generated image.

Each variant is a cover-fit square JPEG. When dynamic quality adjustment is
enabled and a byte budget is set, the encoder steps quality down by 10 until
the budget is met, the minimum quality is reached, or the iteration cap is hit.
"""

from __future__ import annotations

import base64
import binascii
import io
from dataclasses import asdict, dataclass
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from core.config import Settings, logger

DATA_URI_PREFIX = "data:image/"
MIN_BASE64_LENGTH = 20
QUALITY_STEP = 10


@dataclass(frozen=True)
class VariantTarget:
    size: int
    quality: int
    max_size_kb: Optional[int] = None


@dataclass(frozen=True)
class OptimizationConfig:
    small: VariantTarget
    medium: VariantTarget
    large: VariantTarget


DEFAULT_OPTIMIZATION_CONFIG = OptimizationConfig(
    small=VariantTarget(size=256, quality=70, max_size_kb=100),
    medium=VariantTarget(size=512, quality=80, max_size_kb=200),
    large=VariantTarget(size=1024, quality=90, max_size_kb=450),
)


@dataclass(frozen=True)
class ImageVariant:
    url: str
    width: int
    height: int
    quality: int
    size_bytes: int


@dataclass(frozen=True)
class ImageVariants:
    small: ImageVariant
    medium: ImageVariant
    large: ImageVariant

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class UserTierConfig:
    max_size_kb: int
    base_quality: int
    min_quality: int


def get_user_tier_config(user_tier: str, settings: Settings) -> UserTierConfig:
    tier = settings.image_tier(user_tier)
    return UserTierConfig(
        max_size_kb=tier.max_size_kb,
        base_quality=tier.base_quality,
        min_quality=settings.minimum_image_quality,
    )


def get_optimization_config_for_user(user_tier: str, settings: Settings) -> OptimizationConfig:
    tier = get_user_tier_config(user_tier, settings)
    return OptimizationConfig(
        small=VariantTarget(
            size=256,
            quality=max(tier.base_quality - 15, tier.min_quality),
            max_size_kb=int(tier.max_size_kb * 0.2),
        ),
        medium=VariantTarget(
            size=512,
            quality=max(tier.base_quality - 5, tier.min_quality),
            max_size_kb=int(tier.max_size_kb * 0.4),
        ),
        large=VariantTarget(
            size=1024,
            quality=tier.base_quality,
            max_size_kb=tier.max_size_kb,
        ),
    )


def is_valid_image_data_uri(data_uri) -> bool:
    """True for raster image data URIs worth re-encoding; SVG placeholders are excluded."""
    if not data_uri or not isinstance(data_uri, str):
        return False
    if not data_uri.startswith(DATA_URI_PREFIX):
        return False
    parts = data_uri.split(",")
    if len(parts) != 2:
        return False
    header, payload = parts
    # only the header, the payload may contain "svg" by chance
    if "svg" in header.lower():
        return False
    if not payload or len(payload) < MIN_BASE64_LENGTH:
        return False
    return True


def _decode_data_uri(data_uri: str) -> bytes:
    parts = data_uri.split(",", 1)
    if len(parts) != 2 or not parts[1]:
        raise ValueError("Invalid data URI format")
    try:
        return base64.b64decode(parts[1], validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid base64 payload") from exc


def _load_image(raw: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("Unreadable image payload") from exc
    if image.mode in ("RGBA", "LA", "P"):
        image = image.convert("RGBA")
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image, mask=image.split()[-1])
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, progressive=True, optimize=True)
    return buffer.getvalue()


def process_variant(
    source: Image.Image,
    variant_name: str,
    target: VariantTarget,
    settings: Settings,
) -> ImageVariant:
    fitted = ImageOps.fit(
        source,
        (target.size, target.size),
        method=Image.Resampling.LANCZOS,
        centering=(0.5, 0.5),
    )
    min_quality = settings.minimum_image_quality
    quality = target.quality

    if settings.enable_dynamic_quality_adjustment and target.max_size_kb:
        target_bytes = target.max_size_kb * 1024
        iteration = 0
        while True:
            encoded = _encode_jpeg(fitted, quality)
            iteration += 1
            if len(encoded) <= target_bytes or quality <= min_quality:
                break
            if iteration >= settings.size_optimization_iterations:
                break
            quality = max(quality - QUALITY_STEP, min_quality)
    else:
        encoded = _encode_jpeg(fitted, quality)

    logger.debug(
        "image_variant_encoded",
        extra={"variant": variant_name, "quality": quality, "size_bytes": len(encoded)},
    )
    return ImageVariant(
        url="data:image/jpeg;base64," + base64.b64encode(encoded).decode("ascii"),
        width=target.size,
        height=target.size,
        quality=quality,
        size_bytes=len(encoded),
    )


def optimize_image(
    image_data_uri: str,
    settings: Settings,
    config: OptimizationConfig = DEFAULT_OPTIMIZATION_CONFIG,
) -> ImageVariants:
    source = _load_image(_decode_data_uri(image_data_uri))
    return ImageVariants(
        small=process_variant(source, "small", config.small, settings),
        medium=process_variant(source, "medium", config.medium, settings),
        large=process_variant(source, "large", config.large, settings),
    )


def optimize_image_for_user_tier(image_data_uri: str, user_tier: str, settings: Settings) -> ImageVariants:
    return optimize_image(image_data_uri, settings, get_optimization_config_for_user(user_tier, settings))


def safe_optimize_image(
    image_data_uri: str,
    settings: Settings,
    config: OptimizationConfig = DEFAULT_OPTIMIZATION_CONFIG,
) -> Optional[ImageVariants]:
    """Like optimize_image, but returns None so the caller keeps the source image."""
    if not is_valid_image_data_uri(image_data_uri):
        logger.warning("Invalid image data URI provided for optimization")
        return None
    try:
        return optimize_image(image_data_uri, settings, config)
    except Exception as exc:
        logger.error(f"Safe image optimization failed: {exc}")
        return None


def safe_optimize_image_for_user_tier(
    image_data_uri: str,
    user_tier: str,
    settings: Settings,
) -> Optional[ImageVariants]:
    return safe_optimize_image(
        image_data_uri,
        settings,
        get_optimization_config_for_user(user_tier, settings),
    )


def calculate_total_size(variants: ImageVariants) -> int:
    return variants.small.size_bytes + variants.medium.size_bytes + variants.large.size_bytes


def get_variant_for_context(variants: ImageVariants, context: str, user_tier: str = "registered") -> ImageVariant:
    if context == "thumbnail":
        return variants.small
    if context == "card":
        return variants.small if user_tier == "unregistered" else variants.medium
    if context == "full":
        return variants.large if user_tier == "premium" else variants.medium
    if context == "print":
        if user_tier != "premium":
            raise PermissionError("Print quality images are only available for premium users")
        return variants.large
    return variants.medium


def get_image_for_user_tier(variants: ImageVariants, user_tier: str) -> str:
    if user_tier == "unregistered":
        return variants.small.url
    if user_tier == "premium":
        return variants.large.url
    return variants.medium.url


def image_size_info(variants: Optional[ImageVariants]) -> Optional[dict]:
    if variants is None:
        return None
    return {
        "small": f"{round(variants.small.size_bytes / 1024)}KB",
        "medium": f"{round(variants.medium.size_bytes / 1024)}KB",
        "large": f"{round(variants.large.size_bytes / 1024)}KB",
    }
