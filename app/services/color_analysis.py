"""
Dominant color analysis for rendered thumbnails.

Pixels are sampled from the (already rasterized) thumbnail, converted to
CIE Lab (D65) and clustered with a deterministic k-means. Identical input
always yields identical clusters, so reanalysis does not churn metadata.
"""
from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)


class ColorAnalysisError(RuntimeError):
    """Raised when a thumbnail yields no usable color information."""


# Named hue clusters: (key, lab centroid, display hex). Assignment is by
# nearest centroid; the threshold only decides whether a match is "close".
HUE_CLUSTERS: List[Tuple[str, Tuple[float, float, float], str]] = [
    ("red", (53, 80, 67), "#E53935"),
    ("orange", (70, 45, 65), "#FB8C00"),
    ("yellow", (95, -15, 90), "#FDD835"),
    ("pink", (75, 45, 5), "#EC407A"),
    ("lime_green", (85, -55, 75), "#9CCC65"),
    ("green", (55, -45, 45), "#43A047"),
    ("teal", (50, -25, -15), "#00897B"),
    ("cyan", (75, -35, -35), "#26C6DA"),
    ("blue", (45, 15, -55), "#1E88E5"),
    ("indigo", (35, 25, -45), "#3949AB"),
    ("purple", (45, 55, -35), "#8E24AA"),
    ("magenta", (55, 75, -25), "#D81B60"),
    ("warm_brown", (45, 25, 45), "#8D6E63"),
    ("cool_brown", (40, 10, 25), "#6D4C41"),
    ("black", (15, 0, 0), "#212121"),
    ("gray", (55, 0, 0), "#9E9E9E"),
    ("white", (95, 0, 0), "#FAFAFA"),
    ("neutral", (65, 2, 5), "#BDBDBD"),
]
HUE_THRESHOLD_DELTA_E = 18.0
BUCKET_STEP = 10


def hex_to_rgb(value: str) -> Optional[Tuple[int, int, int]]:
    h = (value or "").strip().replace(" ", "").lstrip("#")
    if len(h) == 3:
        h = "".join(c * 2 for c in h)
    if len(h) != 6:
        return None
    try:
        return int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)
    except ValueError:
        return None


def rgb_to_hex(rgb: Sequence[int]) -> str:
    r, g, b = (max(0, min(255, int(c))) for c in rgb)
    return f"#{r:02X}{g:02X}{b:02X}"


def rgb_to_lab(rgb) -> np.ndarray:
    """sRGB 0-255, shape (..., 3) -> Lab (D65), same shape."""
    arr = np.asarray(rgb, dtype="float32")
    if arr.size == 0:
        return np.empty(arr.shape)
    px = np.ascontiguousarray(arr.reshape(-1, 1, 3) / 255.0, dtype="float32")
    return cv2.cvtColor(px, cv2.COLOR_RGB2Lab).astype("float64").reshape(arr.shape)


def lab_to_rgb(lab: Sequence[float]) -> Tuple[int, int, int]:
    px = np.asarray(lab, dtype="float32").reshape(1, 1, 3)
    srgb = cv2.cvtColor(px, cv2.COLOR_Lab2RGB).reshape(3)
    r, g, b = (int(round(max(0.0, min(1.0, float(v))) * 255.0)) for v in srgb)
    return r, g, b


def delta_e(a: Sequence[float], b: Sequence[float]) -> float:
    """CIE76 distance."""
    return math.sqrt(sum((float(x) - float(y)) ** 2 for x, y in zip(a, b)))


def assign_hue_group(lab: Sequence[float]) -> str:
    best_key, best_d = HUE_CLUSTERS[0][0], float("inf")
    for key, centroid, _ in HUE_CLUSTERS:
        d = delta_e(lab, centroid)
        if d < best_d:
            best_key, best_d = key, d
    if best_d > HUE_THRESHOLD_DELTA_E:
        logger.debug("[ColorAnalysis] lab %s is %.1f from nearest hue group %s", list(lab), best_d, best_key)
    return best_key


def bucket_key_for_lab(lab: Sequence[float], step: int = BUCKET_STEP) -> str:
    L, a, b = (int(round(float(x) / step)) * step for x in lab)
    return f"L{L}_A{a}_B{b}"


@dataclass
class ColorCluster:
    lab: List[float]
    rgb: List[int]
    coverage: float
    count: int

    @property
    def hex(self) -> str:
        return rgb_to_hex(self.rgb)

    @property
    def hue_group(self) -> str:
        return assign_hue_group(self.lab)

    @property
    def bucket_key(self) -> str:
        return bucket_key_for_lab(self.lab)

    def to_dict(self) -> Dict:
        return {
            "lab": [round(x, 2) for x in self.lab],
            "rgb": list(self.rgb),
            "hex": self.hex,
            "coverage": round(self.coverage, 4),
            "hue_group": self.hue_group,
            "bucket_key": self.bucket_key,
        }


@dataclass
class ColorAnalysisResult:
    clusters: List[ColorCluster]
    buckets: List[str] = field(default_factory=list)
    ignored_pixels: float = 0.0

    @property
    def primary(self) -> ColorCluster:
        return self.clusters[0]

    def dominant_colors(self, max_colors: int = 3, coverage_threshold: float = 0.10) -> List[Dict]:
        picked = [c for c in self.clusters if c.coverage >= coverage_threshold][:max_colors]
        if not picked:
            picked = self.clusters[:1]
        return [c.to_dict() for c in picked]

    def to_dict(self) -> Dict:
        return {
            "clusters": [c.to_dict() for c in self.clusters],
            "buckets": list(self.buckets),
            "ignored_pixels": round(self.ignored_pixels, 4),
        }


class ColorAnalysisService:
    """Extract coverage-weighted dominant color clusters from a raster image."""

    def __init__(
        self,
        k: int = 6,
        max_size: int = 200,
        alpha_threshold: float = 0.95,
        coverage_min: float = 0.05,
        delta_e_merge: float = 10.0,
        bucket_coverage_min: float = 0.08,
        bucket_max: int = 4,
        max_iter: int = 50,
    ):
        self.k = max(1, k)
        self.max_size = max_size
        self.alpha_threshold = alpha_threshold
        self.coverage_min = coverage_min
        self.delta_e_merge = delta_e_merge
        self.bucket_coverage_min = bucket_coverage_min
        self.bucket_max = bucket_max
        self.max_iter = max_iter

    @classmethod
    def from_settings(cls, settings) -> "ColorAnalysisService":
        return cls(
            k=settings.COLOR_K,
            max_size=settings.COLOR_MAX_SIZE,
            alpha_threshold=settings.COLOR_ALPHA_THRESHOLD,
            coverage_min=settings.COLOR_COVERAGE_MIN,
            delta_e_merge=settings.COLOR_DELTA_E_MERGE,
        )

    def analyze_path(self, path: str) -> ColorAnalysisResult:
        try:
            with Image.open(path) as img:
                img.load()
                return self.analyze_image(img)
        except (UnidentifiedImageError, OSError) as e:
            raise ColorAnalysisError(f"Cannot decode thumbnail {path}: {e}") from e

    def analyze_bytes(self, data: bytes) -> ColorAnalysisResult:
        if not data:
            raise ColorAnalysisError("Empty thumbnail")
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ColorAnalysisError(f"Cannot decode thumbnail: {e}") from e
        return self.analyze_image(img)

    def analyze_image(self, img: Image.Image) -> ColorAnalysisResult:
        lab, ignored = self._sample_pixels(img)
        if lab.shape[0] == 0:
            raise ColorAnalysisError("No opaque pixels to analyze")

        clusters = self._kmeans(lab)
        clusters = [c for c in clusters if c.coverage >= self.coverage_min] or clusters[:1]
        clusters = self._merge_close(clusters)
        if not clusters:
            raise ColorAnalysisError("Clustering produced no colors")

        buckets: List[str] = []
        for c in clusters:
            if len(buckets) >= self.bucket_max:
                break
            if c.coverage < self.bucket_coverage_min:
                continue
            if c.hue_group not in buckets:
                buckets.append(c.hue_group)

        return ColorAnalysisResult(clusters=clusters, buckets=buckets, ignored_pixels=ignored)

    def _sample_pixels(self, img: Image.Image) -> Tuple[np.ndarray, float]:
        arr = np.array(img.convert("RGBA"))
        h, w = arr.shape[:2]
        if h == 0 or w == 0:
            return np.empty((0, 3)), 1.0
        scale = min(1.0, self.max_size / max(w, h))
        if scale < 1.0:
            sw, sh = max(1, int(round(w * scale))), max(1, int(round(h * scale)))
            arr = cv2.resize(arr, (sw, sh), interpolation=cv2.INTER_AREA)
        pixels = arr.reshape(-1, 4)
        total = pixels.shape[0]
        opaque = pixels[pixels[:, 3] / 255.0 >= self.alpha_threshold]
        ignored = 1.0 - opaque.shape[0] / total if total else 1.0
        return rgb_to_lab(opaque[:, :3]), ignored

    def _kmeans(self, lab: np.ndarray) -> List[ColorCluster]:
        # Lloyd iterations from L-sorted seeds; cv2.kmeans reseeds empty clusters at random
        n = lab.shape[0]
        k = min(self.k, n)
        order = np.argsort(lab[:, 0], kind="stable")
        step = max(1, n // k)
        centroids = np.array([lab[order[min(i * step, n - 1)]] for i in range(k)])

        assign = np.zeros(n, dtype=int)
        for _ in range(self.max_iter):
            dists = ((lab[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)
            assign = dists.argmin(axis=1)
            moved = 0.0
            for c in range(k):
                members = lab[assign == c]
                if members.shape[0] == 0:
                    continue
                new_c = members.mean(axis=0)
                moved = max(moved, float(np.sqrt(((new_c - centroids[c]) ** 2).sum())))
                centroids[c] = new_c
            if moved <= 0.001:
                break

        counts = np.bincount(assign, minlength=k)
        out = []
        for c in range(k):
            if counts[c] == 0:
                continue
            centre = centroids[c].tolist()
            out.append(ColorCluster(lab=centre, rgb=list(lab_to_rgb(centre)), coverage=counts[c] / n, count=int(counts[c])))
        out.sort(key=lambda cl: cl.coverage, reverse=True)
        return out

    def _merge_close(self, clusters: List[ColorCluster]) -> List[ColorCluster]:
        merged = list(clusters)
        changed = True
        while changed and len(merged) > 1:
            changed = False
            for i in range(len(merged)):
                for j in range(i + 1, len(merged)):
                    ci, cj = merged[i], merged[j]
                    if delta_e(ci.lab, cj.lab) >= self.delta_e_merge:
                        continue
                    total = ci.count + cj.count
                    lab = [(x * ci.count + y * cj.count) / total for x, y in zip(ci.lab, cj.lab)]
                    joined = ColorCluster(lab=lab, rgb=list(lab_to_rgb(lab)), coverage=ci.coverage + cj.coverage, count=total)
                    merged = [c for idx, c in enumerate(merged) if idx not in (i, j)] + [joined]
                    merged.sort(key=lambda cl: cl.coverage, reverse=True)
                    changed = True
                    break
                if changed:
                    break
        return merged
