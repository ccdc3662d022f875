"""Texture atlas packing.

Patches are packed into square atlases with a shelf packer: patches are
sorted by height and laid out left to right in rows, a new row starting when
the current one is full and a new atlas when no vertical room is left.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from typing import List, Sequence, Tuple

import numpy as np
from scipy import ndimage

from texrecon.errors import PatchTooLargeError
from texrecon.parallel import parallel_map
from texrecon.settings import Settings
from texrecon.texture_patch import TexturePatch

logger = logging.getLogger(__name__)

# Gutter width filled with the nearest patch colour around every patch
DILATION_PIXELS = 4
AREA_SLACK = 1.1


@dataclasses.dataclass
class PatchPlacement:
    """Position of one patch inside an atlas."""

    patch_id: int
    x: int
    y: int
    width: int
    height: int


def next_power_of_two(value: int) -> int:
    return 1 << max(int(value) - 1, 0).bit_length()


def rectangles_overlap(a: PatchPlacement, b: PatchPlacement) -> bool:
    return (
        a.x < b.x + b.width and b.x < a.x + a.width
        and a.y < b.y + b.height and b.y < a.y + a.height
    )


def pack_rectangles(
    sizes: Sequence[Tuple[int, int]],
    atlas_size: int,
) -> Tuple[List[Tuple[int, int, int]], List[int]]:
    """Shelf-pack rectangles into one square bin.

    Rectangles are taken in order of decreasing height, then decreasing
    width, then index. Once a rectangle finds no vertical room, it and all
    following ones are left for the next bin.

    Args:
        sizes: (width, height) per rectangle
        atlas_size: Side length of the bin

    Returns:
        Tuple of (placed (index, x, y) triples, indices left over)
    """
    order = sorted(range(len(sizes)), key=lambda i: (-sizes[i][1], -sizes[i][0], i))
    placed: List[Tuple[int, int, int]] = []
    x = y = row_height = 0
    for pos, index in enumerate(order):
        width, height = sizes[index]
        if x + width > atlas_size:
            x, y = 0, y + row_height
            row_height = 0
        if y + height > atlas_size or width > atlas_size:
            return placed, order[pos:]
        placed.append((index, x, y))
        x += width
        row_height = max(row_height, height)
    return placed, []


class TextureAtlas:
    """Square texture image holding a set of placed patches.

    Attributes:
        size: Side length in pixels
        image: (size, size, 3) colours, uint8 once finalized
        placements: Placement of every inserted patch
    """

    def __init__(self, size: int):
        self.size = size
        self.image = np.zeros((size, size, 3), dtype=np.float32)
        self.placements: List[PatchPlacement] = []
        self.finalized = False
        self._valid = np.zeros((size, size), dtype=bool)
        self._faces: List[np.ndarray] = []
        self._texcoords: List[np.ndarray] = []

    def insert(self, patch_id: int, patch: TexturePatch, x: int, y: int) -> PatchPlacement:
        """Copy a patch into the atlas at pixel offset (x, y)."""
        if self.finalized:
            raise RuntimeError("Cannot insert into a finalized atlas")
        placement = PatchPlacement(patch_id, x, y, patch.width, patch.height)
        self.placements.append(placement)

        region = (slice(y, y + patch.height), slice(x, x + patch.width))
        self.image[region] = patch.corrected_image()
        self._valid[region] = patch.validity_mask

        pixels = patch.texcoords + np.array([x, y], dtype=np.float64)
        uv = np.empty_like(pixels)
        uv[:, 0] = (pixels[:, 0] + 0.5) / self.size
        uv[:, 1] = 1.0 - (pixels[:, 1] + 0.5) / self.size
        self._faces.append(patch.faces)
        self._texcoords.append(uv)
        return placement

    def finalize(self) -> None:
        """Dilate patch colours into the gutters and convert to 8 bit."""
        if self.finalized:
            return
        if self._valid.any() and not self._valid.all():
            distance, (rows, cols) = ndimage.distance_transform_edt(~self._valid, return_indices=True)
            fill = (~self._valid) & (distance <= DILATION_PIXELS)
            self.image[fill] = self.image[rows[fill], cols[fill]]
        self.image = np.clip(np.rint(self.image), 0, 255).astype(np.uint8)
        self.finalized = True

    @property
    def faces(self) -> np.ndarray:
        if not self._faces:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate(self._faces)

    @property
    def texcoords(self) -> np.ndarray:
        if not self._texcoords:
            return np.zeros((0, 2), dtype=np.float64)
        return np.concatenate(self._texcoords)

    @property
    def texcoord_ids(self) -> np.ndarray:
        return np.arange(len(self.faces) * 3, dtype=np.int64).reshape(-1, 3)


def atlas_size_for(sizes: Sequence[Tuple[int, int]], max_atlas_size: int) -> int:
    """Smallest power-of-two side that could hold all rectangles."""
    largest = max(max(w, h) for w, h in sizes)
    area = sum(w * h for w, h in sizes)
    side = next_power_of_two(max(largest, math.ceil(math.sqrt(area * AREA_SLACK))))
    return min(side, max_atlas_size)


def generate_texture_atlases(patches: List[TexturePatch], settings: Settings) -> List[TextureAtlas]:
    """Pack all patches into finalized texture atlases.

    Every patch is placed exactly once. A bin that cannot hold the remaining
    patches is grown up to ``max_atlas_size`` before spilling into another
    atlas.

    Raises:
        PatchTooLargeError: A patch does not fit into the largest atlas
    """
    start_time = time.perf_counter()
    max_size = settings.max_atlas_size
    for patch_id, patch in enumerate(patches):
        if patch.width > max_size or patch.height > max_size:
            raise PatchTooLargeError(
                f"Patch {patch_id} of view {patch.label} is {patch.width}x{patch.height} pixels, "
                f"larger than the maximum atlas size {max_size}",
                stage="atlas",
            )

    atlases: List[TextureAtlas] = []
    remaining = list(range(len(patches)))
    while remaining:
        sizes = [(patches[i].width, patches[i].height) for i in remaining]
        side = atlas_size_for(sizes, max_size)
        placed, left = pack_rectangles(sizes, side)
        while left and side < max_size:
            side *= 2
            placed, left = pack_rectangles(sizes, side)

        atlas = TextureAtlas(side)
        for index, x, y in placed:
            atlas.insert(remaining[index], patches[remaining[index]], x, y)
        atlases.append(atlas)
        logger.debug(f"Atlas {len(atlases) - 1}: {side}x{side} with {len(placed)} patches")
        remaining = [remaining[i] for i in left]

    parallel_map(lambda atlas: atlas.finalize(), atlases, desc="Finalizing atlases", num_workers=settings.num_workers)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Texture atlases complete: {len(atlases)} atlases for {len(patches)} patches "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    return atlases
