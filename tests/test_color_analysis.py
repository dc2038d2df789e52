import re

import numpy as np
import pytest
from PIL import Image

from app.services.color_analysis import (
    ColorAnalysisError,
    ColorAnalysisService,
    assign_hue_group,
    bucket_key_for_lab,
    delta_e,
    hex_to_rgb,
    lab_to_rgb,
    rgb_to_hex,
    rgb_to_lab,
)

HEX = re.compile(r"^#[0-9A-Fa-f]{6}$")


def _split_image(path, left, right, size=(40, 20)):
    img = Image.new("RGB", size, right)
    img.paste(Image.new("RGB", (size[0] // 2, size[1]), left), (0, 0))
    img.save(path)
    return str(path)


def test_red_and_white_halves(tmp_path):
    path = _split_image(tmp_path / "rw.png", (255, 0, 0), (255, 255, 255))
    result = ColorAnalysisService().analyze_path(path)

    assert len(result.clusters) == 2
    assert {c.hue_group for c in result.clusters} == {"red", "white"}
    assert all(HEX.match(c.hex) for c in result.clusters)
    assert sum(c.coverage for c in result.clusters) == pytest.approx(1.0)
    assert result.clusters[0].coverage == pytest.approx(0.5)
    assert set(result.buckets) == {"red", "white"}
    assert result.ignored_pixels == 0.0


def test_single_color_image_has_one_cluster(tmp_path):
    path = tmp_path / "gray.png"
    Image.new("RGB", (64, 64), (128, 128, 128)).save(path)
    result = ColorAnalysisService().analyze_path(str(path))

    assert len(result.clusters) == 1
    assert result.primary.coverage == pytest.approx(1.0)
    assert result.primary.hue_group == "gray"
    assert HEX.match(result.primary.hex)


def test_large_image_is_downsampled_deterministically(tmp_path):
    path = _split_image(tmp_path / "big.png", (0, 0, 0), (255, 0, 0), size=(800, 400))
    svc = ColorAnalysisService()
    first = svc.analyze_path(path).to_dict()
    second = svc.analyze_path(path).to_dict()
    assert first == second
    assert {c["hue_group"] for c in first["clusters"]} == {"black", "red"}


def test_transparent_pixels_are_ignored(tmp_path):
    img = Image.new("RGBA", (20, 20), (0, 0, 0, 0))
    img.paste(Image.new("RGBA", (10, 20), (255, 0, 0, 255)), (0, 0))
    path = tmp_path / "alpha.png"
    img.save(path)

    result = ColorAnalysisService().analyze_path(str(path))
    assert result.ignored_pixels == pytest.approx(0.5)
    assert [c.hue_group for c in result.clusters] == ["red"]


def test_fully_transparent_image_is_an_error(tmp_path):
    path = tmp_path / "clear.png"
    Image.new("RGBA", (10, 10), (255, 255, 255, 0)).save(path)
    with pytest.raises(ColorAnalysisError):
        ColorAnalysisService().analyze_path(str(path))


def test_undecodable_bytes_are_an_error():
    with pytest.raises(ColorAnalysisError):
        ColorAnalysisService().analyze_bytes(b"not an image")
    with pytest.raises(ColorAnalysisError):
        ColorAnalysisService().analyze_bytes(b"")


def test_dominant_colors_keep_top_three_above_ten_percent(tmp_path):
    img = Image.new("RGB", (100, 10), (255, 255, 255))
    img.paste(Image.new("RGB", (50, 10), (255, 0, 0)), (0, 0))
    img.paste(Image.new("RGB", (30, 10), (0, 0, 0)), (50, 0))
    img.paste(Image.new("RGB", (6, 10), (0, 255, 0)), (80, 0))
    path = tmp_path / "bars.png"
    img.save(path)

    result = ColorAnalysisService().analyze_path(str(path))
    dominant = result.dominant_colors()
    assert [d["hue_group"] for d in dominant] == ["red", "black", "white"]
    assert all(d["coverage"] >= 0.10 for d in dominant)


def test_hex_helpers():
    assert hex_to_rgb("#fff") == (255, 255, 255)
    assert hex_to_rgb("00FF00") == (0, 255, 0)
    assert hex_to_rgb("#12345") is None
    assert hex_to_rgb("#GGGGGG") is None
    assert rgb_to_hex((255, 0, 16)) == "#FF0010"
    assert rgb_to_hex((300, -5, 0)) == "#FF0000"


def test_lab_conversions():
    red = rgb_to_lab((255, 0, 0))
    assert red[0] == pytest.approx(53.24, abs=0.05)
    assert red[1] == pytest.approx(80.09, abs=0.05)
    assert red[2] == pytest.approx(67.20, abs=0.05)
    assert lab_to_rgb(red) == (255, 0, 0)
    assert rgb_to_lab((255, 255, 255))[0] == pytest.approx(100.0, abs=0.01)
    assert delta_e((50, 0, 0), (53, 4, 0)) == pytest.approx(5.0)


def test_lab_conversion_keeps_array_shape():
    pixels = [[(255, 0, 0), (0, 0, 0)], [(255, 255, 255), (0, 0, 255)]]
    lab = rgb_to_lab(pixels)
    assert lab.shape == (2, 2, 3)
    assert lab[0][0] == pytest.approx(rgb_to_lab((255, 0, 0)), abs=1e-3)
    assert lab[0][1][0] == pytest.approx(0.0, abs=0.01)
    assert lab[1][0][0] == pytest.approx(100.0, abs=0.01)
    assert lab_to_rgb(lab[1][1]) == (0, 0, 255)
    assert rgb_to_lab(np.empty((0, 3))).shape == (0, 3)


def test_bucket_key_and_hue_group():
    assert bucket_key_for_lab((53.24, 80.09, 67.2)) == "L50_A80_B70"
    assert bucket_key_for_lab((0, -14, 4)) == "L0_A-10_B0"
    assert assign_hue_group((99, 0, 0)) == "white"
    assert assign_hue_group((10, 0, 0)) == "black"
    assert assign_hue_group(rgb_to_lab((255, 0, 0))) == "red"
