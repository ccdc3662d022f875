"""Debug output showing which view textures each face."""

from __future__ import annotations

import dataclasses
import logging
from typing import List

import matplotlib
import numpy as np

from texrecon.scene import TextureView

logger = logging.getLogger(__name__)

DEBUG_COLORMAP = "tab20"


def view_color(view_id: int) -> np.ndarray:
    """Distinct RGB colour (0-255) for a view label."""
    cmap = matplotlib.colormaps[DEBUG_COLORMAP]
    rgba = cmap((view_id - 1) % cmap.N)
    return np.rint(np.asarray(rgba[:3]) * 255).astype(np.uint8)


def generate_debug_embeddings(views: List[TextureView]) -> List[TextureView]:
    """Copies of the views whose images are one flat colour each.

    Texturing a mesh with these views renders every patch in the colour of
    its source view, making the labeling visible in any mesh viewer.
    """
    debug_views = []
    for view in views:
        image = np.empty_like(view.image, dtype=np.uint8)
        image[:] = view_color(view.view_id)
        debug_views.append(dataclasses.replace(view, image=image))
    logger.debug(f"Created {len(debug_views)} debug views")
    return debug_views
