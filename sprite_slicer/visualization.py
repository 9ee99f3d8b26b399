"""
Functions for visualizing detected cut lines and projection profiles.
"""

from __future__ import annotations

import io
from typing import Sequence

import cv2
import numpy as np
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure

from sprite_slicer.models import CutLine, ProjectionProfile, Rect


def visualize_cuts(img: np.ndarray, h_cuts: Sequence[CutLine], v_cuts: Sequence[CutLine],
                   kept: Sequence[Rect] = ()) -> np.ndarray:
    """
    Overlay cut lines (magenta) and kept segment boxes (green) on the image.

    Args:
        img: Trimmed image (BGRA)
        h_cuts: Horizontal cut lines
        v_cuts: Vertical cut lines
        kept: Bounds of segments that survived noise filtering

    Returns:
        BGR image with the overlay
    """
    vis_img = img.copy()

    # Blend BGRA onto a white background
    if vis_img.shape[2] == 4:
        bg = np.ones((vis_img.shape[0], vis_img.shape[1], 3), dtype=np.uint8) * 255
        alpha = vis_img[:, :, 3:4].astype(float) / 255
        vis_img = (vis_img[:, :, :3] * alpha + bg * (1 - alpha)).astype(np.uint8)

    height, width = vis_img.shape[:2]

    for cut in h_cuts:
        cv2.line(vis_img, (0, cut.position), (width, cut.position), (255, 0, 255), 1)

    for cut in v_cuts:
        cv2.line(vis_img, (cut.position, 0), (cut.position, height), (255, 0, 255), 1)

    for rect in kept:
        cv2.rectangle(vis_img, (rect.x, rect.y),
                      (rect.x + rect.width - 1, rect.y + rect.height - 1), (0, 255, 0), 1)

    return vis_img


def plot_projection(profile: ProjectionProfile, h_gap: int, v_gap: int) -> bytes:
    """
    Plot both projection profiles and return the chart as PNG bytes.

    A fresh Figure with an Agg canvas is used, so no global pyplot state is touched.
    """
    fig = Figure(figsize=(10, 6))
    FigureCanvasAgg(fig)
    ax_rows, ax_cols = fig.subplots(2, 1)

    for ax, data, title, gap in (
        (ax_rows, profile.horizontal, "Rows", h_gap),
        (ax_cols, profile.vertical, "Columns", v_gap),
    ):
        ax.bar(np.arange(len(data)), data, width=1.0, align='edge', alpha=0.7)
        ax.set_title(f"{title} occupancy (gap threshold {gap}px)")
        ax.set_xlabel("Position (pixels)")
        ax.set_ylabel("Occupied pixels")
        ax.grid(alpha=0.3)

    fig.tight_layout()
    buf = io.BytesIO()
    fig.savefig(buf, format="png")
    return buf.getvalue()
