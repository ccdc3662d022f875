"""Texture patch generation.

Faces sharing one label are grouped into maximal connected components. Each
component becomes a texture patch: the source view's pixels under the
component's projected bounding box, plus a coverage mask. For every mesh
vertex the patches using it and its local texture coordinate are recorded;
seam leveling joins patches through these records.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import List, Optional, Tuple

import numpy as np

from texrecon.errors import InputValidationError, PatchTooLargeError
from texrecon.graph import AdjacencyGraph
from texrecon.parallel import parallel_map
from texrecon.scene import TextureView, TriangleMesh
from texrecon.settings import Settings
from texrecon.texture_patch import TexturePatch

logger = logging.getLogger(__name__)

# Side length of the flat patch holding all untextured faces.
UNTEXTURED_PATCH_SIZE = 3


@dataclasses.dataclass
class VertexProjectionInfo:
    """Where one mesh vertex appears inside one texture patch.

    Attributes:
        patch_id: Index into the patch list
        projection: (2,) local pixel coordinate of the vertex
        faces: Faces of the patch incident to the vertex
    """

    patch_id: int
    projection: np.ndarray
    faces: List[int]


VertexProjectionInfos = List[List[VertexProjectionInfo]]


def crop_view(view: TextureView, x0: int, y0: int, width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
    """Copy a window of the view's image, zero-filled outside the image.

    Returns:
        Tuple of (colours (h,w,3) float32, in-image mask (h,w) bool)
    """
    crop = np.zeros((height, width, 3), dtype=np.float32)
    inside = np.zeros((height, width), dtype=bool)
    sx0, sy0 = max(x0, 0), max(y0, 0)
    sx1, sy1 = min(x0 + width, view.width), min(y0 + height, view.height)
    if sx0 < sx1 and sy0 < sy1:
        crop[sy0 - y0:sy1 - y0, sx0 - x0:sx1 - x0] = view.image[sy0:sy1, sx0:sx1]
        inside[sy0 - y0:sy1 - y0, sx0 - x0:sx1 - x0] = True
    return crop, inside


def build_texture_patch(
    mesh: TriangleMesh,
    view: TextureView,
    faces: np.ndarray,
    padding: int,
    max_size: Optional[int] = None,
) -> TexturePatch:
    """Rasterize one connected component from its source view.

    Args:
        mesh: Triangle mesh
        view: Source view of the component
        faces: Sorted face indices of the component
        padding: Border in pixels kept around the projected bounding box
        max_size: Largest allowed patch side, usually the maximum atlas size

    Returns:
        New texture patch

    Raises:
        InputValidationError: A face lies behind the camera of the view
        PatchTooLargeError: The projected component exceeds ``max_size``
    """
    corner_vertices = mesh.faces[faces].reshape(-1)
    vertex_ids, inverse = np.unique(corner_vertices, return_inverse=True)

    behind = view.depth(mesh.vertices[corner_vertices]).reshape(-1, 3) <= 0
    if np.any(behind):
        face = int(faces[np.flatnonzero(behind.any(axis=1))[0]])
        raise InputValidationError(
            f"Face {face} lies behind the camera of view {view.name} and cannot be textured from it",
            stage="texture patches",
        )

    # project each vertex once so shared corners get identical coordinates
    pixels = view.project(mesh.vertices[vertex_ids])[inverse.reshape(-1)]

    x0 = int(np.floor(pixels[:, 0].min())) - padding
    y0 = int(np.floor(pixels[:, 1].min())) - padding
    x1 = int(np.ceil(pixels[:, 0].max())) + padding
    y1 = int(np.ceil(pixels[:, 1].max())) + padding

    width, height = x1 - x0 + 1, y1 - y0 + 1
    if max_size is not None and (width > max_size or height > max_size):
        raise PatchTooLargeError(
            f"Patch of face {int(faces[0])} in view {view.name} is {width}x{height} pixels, "
            f"larger than the maximum atlas size {max_size}",
            stage="texture patches",
        )

    image, inside = crop_view(view, x0, y0, width, height)
    texcoords = pixels - np.array([x0, y0], dtype=np.float64)
    return TexturePatch(view.view_id, faces, texcoords, image, inside, origin=(x0, y0))


def build_untextured_patch(faces: np.ndarray, color: Tuple[int, int, int], padding: int) -> TexturePatch:
    """Flat-coloured patch collecting all faces without a view.

    All corners map onto the centre pixel.
    """
    side = UNTEXTURED_PATCH_SIZE + 2 * padding
    image = np.empty((side, side, 3), dtype=np.float32)
    image[:] = color
    centre = (side - 1) / 2.0
    texcoords = np.full((len(faces) * 3, 2), centre)
    return TexturePatch(0, faces, texcoords, image, flat=True)


def collect_vertex_projection_infos(
    mesh: TriangleMesh,
    patches: List[TexturePatch],
) -> VertexProjectionInfos:
    """Record, per mesh vertex, the textured patches it belongs to.

    Untextured (label 0) patches are not recorded.
    """
    infos: VertexProjectionInfos = [[] for _ in range(mesh.num_vertices)]
    for patch_id, patch in enumerate(patches):
        if patch.label == 0:
            continue
        corner_vertices = mesh.faces[patch.faces].reshape(-1)
        corner_faces = np.repeat(patch.faces, 3)
        order = np.argsort(corner_vertices, kind="stable")
        sorted_vertices = corner_vertices[order]
        starts = np.flatnonzero(np.r_[True, sorted_vertices[1:] != sorted_vertices[:-1]])
        ends = np.r_[starts[1:], len(order)]
        for start, end in zip(starts, ends):
            vertex = int(sorted_vertices[start])
            corners = order[start:end]
            infos[vertex].append(
                VertexProjectionInfo(
                    patch_id=patch_id,
                    projection=patch.texcoords[corners[0]].copy(),
                    faces=sorted(int(f) for f in corner_faces[corners]),
                )
            )
    return infos


def generate_texture_patches(
    graph: AdjacencyGraph,
    mesh: TriangleMesh,
    views: List[TextureView],
    settings: Settings,
) -> Tuple[List[TexturePatch], VertexProjectionInfos]:
    """Create one texture patch per connected same-label component.

    Args:
        graph: Labeled face adjacency graph
        mesh: Triangle mesh
        views: Texture views, view ``l`` at index ``l - 1``
        settings: Pipeline settings (padding, unseen face handling)

    Returns:
        Tuple of (patches, vertex projection infos)
    """
    start_time = time.perf_counter()
    components = graph.label_components()
    labels = graph.labels
    logger.info(f"Generating {len(components)} texture patches")

    patches = parallel_map(
        lambda faces: build_texture_patch(
            mesh, views[labels[faces[0]] - 1], faces, settings.patch_padding, settings.max_atlas_size
        ),
        components,
        desc="Texture patches",
        num_workers=settings.num_workers,
    )

    unseen = np.flatnonzero(labels == 0)
    if unseen.size:
        if settings.keep_unseen_faces:
            patches.append(build_untextured_patch(unseen, settings.untextured_color, settings.patch_padding))
            logger.info(f"{unseen.size} faces without a view kept in an untextured patch")
        else:
            logger.warning(f"{unseen.size} faces without a view are dropped from the model")

    empty = sum(1 for p in patches if not p.validity_mask.any())
    if empty:
        logger.debug(f"{empty} patches rasterized to zero pixels")

    infos = collect_vertex_projection_infos(mesh, patches)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Texture patches complete: {len(patches)} patches "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    return patches, infos
