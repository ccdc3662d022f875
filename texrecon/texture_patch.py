"""Texture patch: the rasterized colour of one connected group of faces."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from scipy import ndimage

logger = logging.getLogger(__name__)

# Small negative tolerance so pixels on shared triangle edges are covered.
BARY_EPSILON = -1e-5


def rasterize_faces(texcoords: np.ndarray, shape: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
    """Rasterize triangles given in local pixel coordinates.

    For each triangle, barycentric coordinates are evaluated on every pixel
    centre of its bounding box; covered pixels record the triangle index and
    their weights. Later triangles overwrite earlier ones.

    Args:
        texcoords: (k*3, 2) corner coordinates, three per triangle
        shape: (height, width) of the target buffer

    Returns:
        Tuple of (face_map (h,w) int32 with -1 for uncovered pixels,
        weights (h,w,3) float32 barycentric coordinates)
    """
    height, width = shape
    face_map = np.full((height, width), -1, dtype=np.int32)
    weights = np.zeros((height, width, 3), dtype=np.float32)
    tri = np.asarray(texcoords, dtype=np.float64).reshape(-1, 3, 2)

    for i, ((x0, y0), (x1, y1), (x2, y2)) in enumerate(tri):
        xmin = max(0, int(np.floor(min(x0, x1, x2))))
        xmax = min(width - 1, int(np.ceil(max(x0, x1, x2))))
        ymin = max(0, int(np.floor(min(y0, y1, y2))))
        ymax = min(height - 1, int(np.ceil(max(y0, y1, y2))))
        if xmin > xmax or ymin > ymax:
            continue

        denom = (y1 - y2) * (x0 - x2) + (x2 - x1) * (y0 - y2)
        if abs(denom) < 1e-12:
            continue  # degenerate

        xx, yy = np.meshgrid(np.arange(xmin, xmax + 1), np.arange(ymin, ymax + 1))
        w0 = ((y1 - y2) * (xx - x2) + (x2 - x1) * (yy - y2)) / denom
        w1 = ((y2 - y0) * (xx - x2) + (x0 - x2) * (yy - y2)) / denom
        w2 = 1.0 - w0 - w1
        inside = (w0 >= BARY_EPSILON) & (w1 >= BARY_EPSILON) & (w2 >= BARY_EPSILON)
        if not inside.any():
            continue

        iy, ix = np.nonzero(inside)
        face_map[ymin + iy, xmin + ix] = i
        weights[ymin + iy, xmin + ix] = np.stack([w0[iy, ix], w1[iy, ix], w2[iy, ix]], axis=1)

    return face_map, weights


class TexturePatch:
    """Colour buffer of one texture patch.

    Attributes:
        label: Source view of the patch (0 for the untextured patch)
        faces: Sorted mesh face indices
        texcoords: (k*3, 2) local pixel coordinates of the face corners
        image: (h, w, 3) float32 colours cropped from the source view
        validity_mask: (h, w) bool, True where a face covers the pixel
        adjust: (h, w, 3) float32 additive colour correction
        origin: (x, y) of the local buffer inside the source view
        flat: True for the single-colour patch of untextured faces, whose
            whole buffer counts as covered
    """

    def __init__(
        self,
        label: int,
        faces: np.ndarray,
        texcoords: np.ndarray,
        image: np.ndarray,
        in_image: Optional[np.ndarray] = None,
        origin: Tuple[int, int] = (0, 0),
        flat: bool = False,
    ):
        self.label = int(label)
        self.faces = np.asarray(faces, dtype=np.int64)
        self.texcoords = np.asarray(texcoords, dtype=np.float64).reshape(-1, 2)
        self.image = np.asarray(image, dtype=np.float32)
        self.origin = origin
        if in_image is None:
            in_image = np.ones(self.image.shape[:2], dtype=bool)
        self._in_image = in_image
        self.adjust = np.zeros_like(self.image)

        self.flat = flat
        self._face_map, self._weights = rasterize_faces(self.texcoords, self.image.shape[:2])
        self.validity_mask = self._coverage() & self._in_image

    def _coverage(self) -> np.ndarray:
        if self.flat:
            return np.ones(self.image.shape[:2], dtype=bool)
        return self._face_map >= 0

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    @property
    def num_faces(self) -> int:
        return len(self.faces)

    def local_face_index(self, face: int) -> int:
        idx = int(np.searchsorted(self.faces, face))
        if idx >= len(self.faces) or self.faces[idx] != face:
            raise KeyError(f"Face {face} is not part of this patch")
        return idx

    def get_face_texcoords(self, face: int) -> np.ndarray:
        idx = self.local_face_index(face)
        return self.texcoords[3 * idx:3 * idx + 3]

    def corrected_image(self) -> np.ndarray:
        return np.clip(self.image + self.adjust, 0.0, 255.0)

    def adjust_colors(self, adjust_values: np.ndarray) -> None:
        """Set the correction buffer from per face-corner values.

        Values are interpolated barycentrically over each face, so a
        correction fades smoothly between the corners. Pixels not covered by
        any face take the value of the nearest covered pixel. The validity
        mask is recomputed from the face coverage.

        Args:
            adjust_values: (k*3, 3) additive colour per face corner
        """
        adjust_values = np.asarray(adjust_values, dtype=np.float32).reshape(-1, 3, 3)
        covered = self._coverage()
        self.validity_mask = covered & self._in_image
        if self.flat:
            self.adjust = np.zeros_like(self.image)
            return

        adjust = np.zeros_like(self.image)
        if covered.any():
            local = adjust_values[self._face_map[covered]]
            adjust[covered] = np.einsum("nk,nkc->nc", self._weights[covered], local)
            if not covered.all():
                _, (rows, cols) = ndimage.distance_transform_edt(~covered, return_indices=True)
                adjust = adjust[rows, cols]
        self.adjust = adjust

    def add_adjustment(self, delta: np.ndarray) -> None:
        self.adjust = self.adjust + np.asarray(delta, dtype=np.float32)

    def sample(self, pixels: np.ndarray, corrected: bool = True) -> np.ndarray:
        """Bilinearly sample Nx3 colours at local pixel coordinates."""
        source = self.corrected_image() if corrected else self.image
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        coords = [pixels[:, 1], pixels[:, 0]]
        return np.stack(
            [ndimage.map_coordinates(source[..., c], coords, order=1, mode="nearest") for c in range(3)],
            axis=1,
        )

    def mean_colors(self, pixels: np.ndarray, corrected: bool = True, radius: int = 1) -> np.ndarray:
        """Mean colour of valid pixels in a window around each point.

        Points without any valid pixel in their window fall back to a
        bilinear sample.
        """
        source = self.corrected_image() if corrected else self.image
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        result = self.sample(pixels, corrected)
        centre = np.rint(pixels).astype(np.int64)

        total = np.zeros((len(pixels), 3), dtype=np.float64)
        count = np.zeros(len(pixels), dtype=np.int64)
        for dy in range(-radius, radius + 1):
            for dx in range(-radius, radius + 1):
                x = centre[:, 0] + dx
                y = centre[:, 1] + dy
                ok = (x >= 0) & (x < self.width) & (y >= 0) & (y < self.height)
                ok[ok] = self.validity_mask[y[ok], x[ok]]
                total[ok] += source[y[ok], x[ok]]
                count[ok] += 1

        has = count > 0
        result[has] = total[has] / count[has, None]
        return result
