import base64
import io
import os

import pytest
from PIL import Image

from core.config import ImageTierSettings, Settings
from core.services.image_optimization import (
    VariantTarget,
    calculate_total_size,
    get_image_for_user_tier,
    get_optimization_config_for_user,
    get_variant_for_context,
    image_size_info,
    is_valid_image_data_uri,
    optimize_image_for_user_tier,
    process_variant,
    safe_optimize_image_for_user_tier,
)
from core.services.asset_pool import generate_cosmic_placeholder
from conftest import make_png_data_uri


def _decode(uri: str) -> Image.Image:
    return Image.open(io.BytesIO(base64.b64decode(uri.split(",", 1)[1])))


def _noisy_image(size=(600, 400)) -> Image.Image:
    return Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))


def test_data_uri_validation():
    assert is_valid_image_data_uri(make_png_data_uri())
    assert not is_valid_image_data_uri(generate_cosmic_placeholder("Ada", "love"))
    assert not is_valid_image_data_uri("data:image/png;base64,abc")
    assert not is_valid_image_data_uri("https://example.com/a.png")
    assert not is_valid_image_data_uri("data:image/png;base64,a,b")
    assert not is_valid_image_data_uri(None)


def test_tier_budgets_scale_from_large(settings):
    config = get_optimization_config_for_user("registered", settings)

    assert (config.small.size, config.medium.size, config.large.size) == (256, 512, 1024)
    assert config.large.max_size_kb == 450
    assert config.medium.max_size_kb == 180
    assert config.small.max_size_kb == 90
    assert config.large.quality == 85
    assert config.medium.quality == 80
    assert config.small.quality == 70


def test_variant_quality_never_drops_below_minimum():
    settings = Settings(
        db_backend="sqlite",
        sqlite_path=":memory:",
        image_tiers={"registered": ImageTierSettings(max_size_kb=450, base_quality=65)},
        minimum_image_quality=60,
    )
    config = get_optimization_config_for_user("registered", settings)
    assert config.small.quality == 60
    assert config.medium.quality == 60


def test_variants_are_square_jpegs(settings):
    variants = optimize_image_for_user_tier(make_png_data_uri(size=(300, 120)), "premium", settings)

    for variant, side in ((variants.small, 256), (variants.medium, 512), (variants.large, 1024)):
        assert variant.url.startswith("data:image/jpeg;base64,")
        decoded = _decode(variant.url)
        assert decoded.size == (side, side)
        assert decoded.format == "JPEG"
        assert variant.size_bytes == len(base64.b64decode(variant.url.split(",", 1)[1]))
    assert calculate_total_size(variants) == sum(
        v.size_bytes for v in (variants.small, variants.medium, variants.large)
    )


def test_transparent_source_is_flattened(settings):
    uri = make_png_data_uri(size=(40, 40), color=(0, 0, 0, 0), mode="RGBA")
    variants = optimize_image_for_user_tier(uri, "unregistered", settings)
    pixel = _decode(variants.small.url).convert("RGB").getpixel((128, 128))
    assert all(channel > 240 for channel in pixel)


def test_dynamic_quality_steps_down_within_iteration_cap():
    settings = Settings(
        db_backend="sqlite",
        sqlite_path=":memory:",
        enable_dynamic_quality_adjustment=True,
        minimum_image_quality=60,
        size_optimization_iterations=2,
    )
    target = VariantTarget(size=512, quality=90, max_size_kb=1)

    variant = process_variant(_noisy_image(), "medium", target, settings)

    # two encodes at most: 90 then 80
    assert variant.quality == 80
    assert variant.size_bytes > 1024


def test_dynamic_quality_stops_at_minimum():
    settings = Settings(
        db_backend="sqlite",
        sqlite_path=":memory:",
        enable_dynamic_quality_adjustment=True,
        minimum_image_quality=60,
        size_optimization_iterations=10,
    )
    target = VariantTarget(size=256, quality=85, max_size_kb=1)

    variant = process_variant(_noisy_image(), "small", target, settings)

    assert variant.quality == 60


def test_quality_fixed_when_adjustment_disabled(settings):
    target = VariantTarget(size=256, quality=85, max_size_kb=1)
    variant = process_variant(_noisy_image(), "small", target, settings)
    assert variant.quality == 85


def test_safe_optimize_returns_none_for_bad_input(settings):
    assert safe_optimize_image_for_user_tier("data:image/png;base64," + "A" * 40, "registered", settings) is None
    assert safe_optimize_image_for_user_tier(generate_cosmic_placeholder("Ada", "love"), "registered", settings) is None


def test_tier_selection_and_contexts(settings):
    variants = optimize_image_for_user_tier(make_png_data_uri(), "registered", settings)

    assert get_image_for_user_tier(variants, "unregistered") == variants.small.url
    assert get_image_for_user_tier(variants, "registered") == variants.medium.url
    assert get_image_for_user_tier(variants, "premium") == variants.large.url

    assert get_variant_for_context(variants, "thumbnail") is variants.small
    assert get_variant_for_context(variants, "card", "unregistered") is variants.small
    assert get_variant_for_context(variants, "full", "premium") is variants.large
    assert get_variant_for_context(variants, "print", "premium") is variants.large
    with pytest.raises(PermissionError):
        get_variant_for_context(variants, "print", "registered")

    info = image_size_info(variants)
    assert set(info) == {"small", "medium", "large"}
    assert info["small"].endswith("KB")
    assert image_size_info(None) is None


def test_reoptimizing_medium_variant_through_small_pipeline(settings):
    variants = optimize_image_for_user_tier(make_png_data_uri(size=(200, 200)), "registered", settings)

    again = optimize_image_for_user_tier(variants.medium.url, "unregistered", settings)

    assert _decode(again.small.url).size == (256, 256)
    tier = settings.image_tier("unregistered")
    for variant in (again.small, again.medium, again.large):
        assert settings.minimum_image_quality <= variant.quality <= tier.base_quality
