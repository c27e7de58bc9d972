"""
QualityAnalyzer - Vision Module
Per-frame image quality metrics used to reject photos of screens / prints.

    sharpness    = Var(|4p − p_left − p_right − p_up − p_down|)    (luma 0.299R+0.587G+0.114B)
    contrast     = σ((R+G+B)/3)
    brightness   = μ((R+G+B)/3)
    colorfulness = sqrt(μ|R−G|² + μ|(R+G)/2 − B|²)
    texture      = fraction of sampled pixels differing from ≥3 of 4 neighbours by > 30

All functions are pure: identical pixels always give bit-identical metrics.
"""

from dataclasses import dataclass, asdict
from typing import Optional

import numpy as np

TEXTURE_DELTA = 30.0
TEXTURE_MIN_DIRECTIONS = 3
EDGE_DELTA = 50.0
EDGE_SAMPLES = 20
EDGE_MARGIN = 10
EDGE_RATIO = 0.3


@dataclass(frozen=True)
class QualityMetrics:
    sharpness: float
    contrast: float
    brightness: float
    colorfulness: float
    texture_score: float

    def to_dict(self) -> dict:
        return asdict(self)


def as_rgb(frame, width: Optional[int] = None, height: Optional[int] = None) -> np.ndarray:
    """
    Normalise a pixel buffer to an (H, W, 3) float64 array.

    Accepts an (H, W, 4) RGBA or (H, W, 3) RGB array, or a flat RGBA buffer
    together with its width and height.
    """
    arr = np.asarray(frame)
    if arr.ndim == 1:
        if width is None or height is None:
            raise ValueError("Flat pixel buffers need width and height")
        if arr.size != width * height * 4:
            raise ValueError(f"Buffer of {arr.size} bytes does not match {width}x{height} RGBA")
        arr = arr.reshape(height, width, 4)
    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise ValueError(f"Expected an RGBA/RGB frame, got shape {arr.shape}")
    return arr[:, :, :3].astype(np.float64)


def luma_mean(rgb: np.ndarray) -> np.ndarray:
    """Unweighted (R+G+B)/3 luma."""
    return (rgb[:, :, 0] + rgb[:, :, 1] + rgb[:, :, 2]) / 3.0


def luma_weighted(rgb: np.ndarray) -> np.ndarray:
    """ITU-R BT.601 weighted greyscale."""
    return 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]


def calculate_sharpness(rgb: np.ndarray) -> float:
    """Laplacian variance. Blurry re-photographed images score low."""
    gray = luma_weighted(rgb)
    h, w = gray.shape
    if h < 3 or w < 3:
        return 0.0
    lap = np.abs(
        4.0 * gray[1:-1, 1:-1]
        - gray[1:-1, :-2]
        - gray[1:-1, 2:]
        - gray[:-2, 1:-1]
        - gray[2:, 1:-1]
    )
    return float(lap.var())


def calculate_contrast(rgb: np.ndarray) -> float:
    return float(luma_mean(rgb).std())


def calculate_brightness(rgb: np.ndarray) -> float:
    return float(luma_mean(rgb).mean())


def calculate_colorfulness(rgb: np.ndarray) -> float:
    r, g, b = rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2]
    avg_rg = float(np.abs(r - g).mean())
    avg_yb = float(np.abs((r + g) / 2.0 - b).mean())
    return float(np.sqrt(avg_rg * avg_rg + avg_yb * avg_yb))


def detect_texture_artifacts(rgb: np.ndarray) -> float:
    """
    Interference / moiré score on a 2-pixel sampling grid.

    Horizontal neighbours sit two pixels away, vertical neighbours one row
    away.
    """
    luma = luma_mean(rgb)
    h, w = luma.shape
    if h < 5 or w < 5:
        return 0.0

    center = luma[2:h - 2:2, 2:w - 2:2]
    neighbours = (
        luma[2:h - 2:2, 0:w - 4:2],   # left
        luma[2:h - 2:2, 4:w:2],       # right
        luma[1:h - 3:2, 2:w - 2:2],   # up
        luma[3:h - 1:2, 2:w - 2:2],   # down
    )
    alternating = np.zeros(center.shape, dtype=np.int32)
    for n in neighbours:
        alternating += (np.abs(center - n) > TEXTURE_DELTA)

    return float(np.mean(alternating >= TEXTURE_MIN_DIRECTIONS))


def detect_screen_edges(rgb: np.ndarray) -> bool:
    """
    Look for a sharp rectangular border (phone / monitor bezel).

    Compares the row at y=10 with the centre row, and the column at x=10 with
    the centre column, at evenly spaced sample points.
    """
    luma = luma_mean(rgb)
    h, w = luma.shape
    if h <= 2 * EDGE_MARGIN or w <= 2 * EDGE_MARGIN:
        return False

    row_hits = 0
    col_hits = 0
    for i in range(EDGE_SAMPLES):
        x = (i * w) // EDGE_SAMPLES
        if EDGE_MARGIN < x < w - EDGE_MARGIN:
            if abs(luma[EDGE_MARGIN, x] - luma[h // 2, x]) > EDGE_DELTA:
                row_hits += 1
        y = (i * h) // EDGE_SAMPLES
        if EDGE_MARGIN < y < h - EDGE_MARGIN:
            if abs(luma[y, EDGE_MARGIN] - luma[y, w // 2]) > EDGE_DELTA:
                col_hits += 1

    limit = EDGE_SAMPLES * EDGE_RATIO
    return row_hits > limit or col_hits > limit


def analyze(frame, width: Optional[int] = None, height: Optional[int] = None) -> QualityMetrics:
    """Compute all quality metrics for one frame."""
    rgb = as_rgb(frame, width, height)

    # A detected bezel overrides the texture score with the maximum penalty
    texture = 1.0 if detect_screen_edges(rgb) else detect_texture_artifacts(rgb)

    return QualityMetrics(
        sharpness=calculate_sharpness(rgb),
        contrast=calculate_contrast(rgb),
        brightness=calculate_brightness(rgb),
        colorfulness=calculate_colorfulness(rgb),
        texture_score=texture,
    )
