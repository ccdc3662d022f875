"""Seam leveling: colour correction across texture patch boundaries.

Adjacent patches come from different photographs and rarely agree in
colour where they meet. Two corrections are available:

* global: one sparse least-squares system over all patches. Every
  (vertex, patch) pair gets an additive RGB offset; seam equations pull the
  corrected colours of a shared vertex together, smoothness equations keep
  offsets of neighbouring vertices inside a patch similar, and a weak anchor
  keeps offsets near zero. The offsets are interpolated across each face.
* local: per patch, the colour difference to the neighbouring patch is
  measured along each seam edge and blended into the patch over a band of
  fixed width. No system is solved.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Dict, List, Tuple

import numpy as np
from scipy import ndimage, sparse
from scipy.sparse import csgraph
from scipy.sparse import linalg as sparse_linalg

from texrecon.graph import mesh_edge_faces
from texrecon.parallel import parallel_map
from texrecon.patches import VertexProjectionInfos
from texrecon.scene import TriangleMesh
from texrecon.settings import Settings
from texrecon.texture_patch import TexturePatch

logger = logging.getLogger(__name__)

# lsqr stop reasons signalling an ill-conditioned system
LSQR_FAILURE_CODES = (3, 6)
LSQR_ITERATION_LIMIT_CODE = 7
LSQR_ITERATION_LIMIT = 5000


@dataclasses.dataclass
class SeamLevelingReport:
    """Counts describing one global seam leveling run."""

    num_unknowns: int = 0
    num_seam_equations: int = 0
    num_components: int = 0
    failed_components: int = 0


class _Entries:
    """Flat index over all (vertex, patch) projection entries."""

    def __init__(self, infos: VertexProjectionInfos, num_patches: int):
        vertices, patch_ids, projections = [], [], []
        for vertex, vertex_infos in enumerate(infos):
            for info in vertex_infos:
                vertices.append(vertex)
                patch_ids.append(info.patch_id)
                projections.append(info.projection)
        self.vertex = np.asarray(vertices, dtype=np.int64)
        self.patch = np.asarray(patch_ids, dtype=np.int64)
        self.projection = np.asarray(projections, dtype=np.float64).reshape(-1, 2)
        self.num_patches = max(num_patches, 1)
        # infos are ordered by vertex and patch, so keys are sorted
        self.keys = self.vertex * self.num_patches + self.patch

    def __len__(self) -> int:
        return len(self.vertex)

    def lookup(self, vertices: np.ndarray, patch_ids: np.ndarray) -> np.ndarray:
        """Entry index of each (vertex, patch) pair, -1 if absent."""
        query = np.asarray(vertices) * self.num_patches + np.asarray(patch_ids)
        pos = np.searchsorted(self.keys, query)
        pos = np.minimum(pos, max(len(self.keys) - 1, 0))
        found = self.keys[pos] == query if len(self.keys) else np.zeros(len(query), dtype=bool)
        return np.where(found, pos, -1)


def _entry_colors(entries: _Entries, patches: List[TexturePatch]) -> np.ndarray:
    colors = np.zeros((len(entries), 3), dtype=np.float64)
    for patch_id in np.unique(entries.patch):
        sel = np.flatnonzero(entries.patch == patch_id)
        colors[sel] = patches[patch_id].mean_colors(entries.projection[sel])
    return colors


def _seam_pairs(entries: _Entries) -> Tuple[np.ndarray, np.ndarray]:
    """All pairs (i, j), i < j, of entries sharing a vertex."""
    if len(entries) == 0:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    starts = np.flatnonzero(np.r_[True, entries.vertex[1:] != entries.vertex[:-1]])
    counts = np.diff(np.r_[starts, len(entries)])
    first, second = [], []
    for k in np.unique(counts[counts >= 2]):
        group_starts = starts[counts == k]
        ii, jj = np.triu_indices(int(k), k=1)
        first.append((group_starts[:, None] + ii[None, :]).reshape(-1))
        second.append((group_starts[:, None] + jj[None, :]).reshape(-1))
    if not first:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    return np.concatenate(first), np.concatenate(second)


def _patch_edge_pairs(mesh: TriangleMesh, patches: List[TexturePatch], entries: _Entries) -> Tuple[np.ndarray, np.ndarray]:
    """Entry pairs of the two end vertices of every mesh edge inside a patch."""
    first, second = [], []
    for patch_id, patch in enumerate(patches):
        if patch.label == 0 or patch.num_faces == 0:
            continue
        tri = mesh.faces[patch.faces]
        pairs = np.concatenate([tri[:, [0, 1]], tri[:, [1, 2]], tri[:, [2, 0]]])
        pairs = np.unique(np.sort(pairs, axis=1), axis=0)
        ia = entries.lookup(pairs[:, 0], np.full(len(pairs), patch_id))
        ib = entries.lookup(pairs[:, 1], np.full(len(pairs), patch_id))
        ok = (ia >= 0) & (ib >= 0)
        first.append(ia[ok])
        second.append(ib[ok])
    if not first:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    return np.concatenate(first), np.concatenate(second)


def _solve_component(A: sparse.csr_matrix, b: np.ndarray) -> np.ndarray:
    """Least-squares solve of ``A x = b`` for each column of ``b``.

    Raises:
        np.linalg.LinAlgError: The system is ill-conditioned or the result is not finite
    """
    x = np.zeros((A.shape[1], b.shape[1]), dtype=np.float64)
    for channel in range(b.shape[1]):
        result = sparse_linalg.lsqr(A, b[:, channel], atol=1e-8, btol=1e-8, iter_lim=LSQR_ITERATION_LIMIT)
        solution, istop = result[0], result[1]
        if istop in LSQR_FAILURE_CODES or not np.all(np.isfinite(solution)):
            raise np.linalg.LinAlgError(f"lsqr stopped with code {istop}")
        if istop == LSQR_ITERATION_LIMIT_CODE:
            logger.warning(
                f"Seam leveling solve of {A.shape[1]} unknowns hit the iteration limit "
                f"({LSQR_ITERATION_LIMIT}); keeping the approximate correction"
            )
        x[:, channel] = solution
    return x


def _apply_vertex_adjustments(
    mesh: TriangleMesh,
    patches: List[TexturePatch],
    entries: _Entries,
    offsets: np.ndarray,
    settings: Settings,
) -> None:
    def apply(patch_id: int) -> None:
        patch = patches[patch_id]
        values = np.zeros((patch.num_faces * 3, 3), dtype=np.float64)
        if patch.label != 0 and patch.num_faces:
            corner_vertices = mesh.faces[patch.faces].reshape(-1)
            idx = entries.lookup(corner_vertices, np.full(len(corner_vertices), patch_id))
            found = idx >= 0
            values[found] = offsets[idx[found]]
        patch.adjust_colors(values)

    parallel_map(apply, list(range(len(patches))), desc="Adjusting patches", num_workers=settings.num_workers)


def calculate_validity_masks(patches: List[TexturePatch], settings: Settings) -> None:
    """Reset every patch's correction to zero and recompute its validity mask."""
    parallel_map(
        lambda patch: patch.adjust_colors(np.zeros((patch.num_faces * 3, 3))),
        patches,
        desc="Validity masks",
        num_workers=settings.num_workers,
    )


def global_seam_leveling(
    mesh: TriangleMesh,
    vertex_infos: VertexProjectionInfos,
    patches: List[TexturePatch],
    settings: Settings,
) -> SeamLevelingReport:
    """Level colours across all patch seams with one least-squares system.

    The system is split into connected components of coupled unknowns.
    A component whose solve fails keeps a zero correction; the others are
    unaffected.

    Args:
        mesh: Triangle mesh
        vertex_infos: Per-vertex patch projections
        patches: Texture patches, corrected in place
        settings: Pipeline settings (``lambda_smooth``, ``lambda_anchor``)

    Returns:
        Report with system sizes and failed components
    """
    start_time = time.perf_counter()
    entries = _Entries(vertex_infos, len(patches))
    n = len(entries)
    report = SeamLevelingReport(num_unknowns=n)

    seam_i, seam_j = _seam_pairs(entries)
    report.num_seam_equations = len(seam_i)
    if n == 0 or len(seam_i) == 0:
        logger.info("Global seam leveling: no seams between patches")
        calculate_validity_masks(patches, settings)
        return report

    colors = _entry_colors(entries, patches)
    smooth_i, smooth_j = _patch_edge_pairs(mesh, patches, entries)

    # seam rows: x_i - x_j = c_j - c_i
    n_seam, n_smooth = len(seam_i), len(smooth_i)
    w_smooth = np.sqrt(settings.lambda_smooth)
    w_anchor = np.sqrt(settings.lambda_anchor)
    row_ids = np.arange(n_seam + n_smooth)
    rows = np.concatenate([row_ids, row_ids])
    cols = np.concatenate([seam_i, smooth_i, seam_j, smooth_j])
    vals = np.concatenate([
        np.ones(n_seam), np.full(n_smooth, w_smooth),
        -np.ones(n_seam), np.full(n_smooth, -w_smooth),
    ])
    rhs = np.zeros((n_seam + n_smooth + n, 3))
    rhs[:n_seam] = colors[seam_j] - colors[seam_i]

    if w_anchor > 0:
        rows = np.concatenate([rows, n_seam + n_smooth + np.arange(n)])
        cols = np.concatenate([cols, np.arange(n)])
        vals = np.concatenate([vals, np.full(n, w_anchor)])
    n_rows = n_seam + n_smooth + n
    A = sparse.csr_matrix((vals, (rows, cols)), shape=(n_rows, n))

    coupling = sparse.coo_matrix(
        (np.ones(n_seam + n_smooth), (np.r_[seam_i, smooth_i], np.r_[seam_j, smooth_j])),
        shape=(n, n),
    )
    _, component = csgraph.connected_components(coupling, directed=False)
    seam_components = np.unique(component[seam_i])
    report.num_components = len(seam_components)

    row_first_col = np.full(n_rows, -1, dtype=np.int64)
    row_first_col[:n_seam] = seam_i
    row_first_col[n_seam:n_seam + n_smooth] = smooth_i
    row_first_col[n_seam + n_smooth:] = np.arange(n)
    row_component = component[row_first_col]

    offsets = np.zeros((n, 3), dtype=np.float64)
    for comp in seam_components:
        unknowns = np.flatnonzero(component == comp)
        comp_rows = np.flatnonzero(row_component == comp)
        A_sub = A[comp_rows][:, unknowns]
        try:
            offsets[unknowns] = _solve_component(A_sub, rhs[comp_rows])
        except np.linalg.LinAlgError as e:
            report.failed_components += 1
            logger.warning(
                f"Seam leveling system of {len(unknowns)} unknowns is degenerate ({e}); "
                f"leaving that component uncorrected"
            )

    _apply_vertex_adjustments(mesh, patches, entries, offsets, settings)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Global seam leveling complete: {n} unknowns, {n_seam} seam equations, "
        f"{report.num_components} components, {report.failed_components} failed "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    return report


def seam_edges(mesh: TriangleMesh, patches: List[TexturePatch]) -> np.ndarray:
    """Mesh edges separating two textured patches.

    Returns:
        Mx4 array of (vertex_a, vertex_b, patch_1, patch_2)
    """
    patch_of_face = np.full(mesh.num_faces, -1, dtype=np.int64)
    for patch_id, patch in enumerate(patches):
        if patch.label != 0:
            patch_of_face[patch.faces] = patch_id

    pairs, face_ids, starts = mesh_edge_faces(mesh.faces)
    if len(starts) == 0:
        return np.zeros((0, 4), dtype=np.int64)
    run_lengths = np.diff(np.r_[starts, len(pairs)])
    two = starts[run_lengths == 2]
    p1 = patch_of_face[face_ids[two]]
    p2 = patch_of_face[face_ids[two + 1]]
    seam = (p1 >= 0) & (p2 >= 0) & (p1 != p2)
    return np.column_stack([pairs[two[seam]], p1[seam], p2[seam]])


def _local_corrections(
    patch_id: int,
    patches: List[TexturePatch],
    entries: _Entries,
    edges: np.ndarray,
    settings: Settings,
) -> np.ndarray:
    """Correction buffer of one patch from its seams with other patches."""
    patch = patches[patch_id]
    correction = np.zeros_like(patch.image)
    mine = edges[(edges[:, 2] == patch_id) | (edges[:, 3] == patch_id)]
    if len(mine) == 0:
        return correction

    other = np.where(mine[:, 2] == patch_id, mine[:, 3], mine[:, 2])
    t = np.linspace(0.0, 1.0, settings.local_samples_per_edge)

    own_a = entries.projection[entries.lookup(mine[:, 0], np.full(len(mine), patch_id))]
    own_b = entries.projection[entries.lookup(mine[:, 1], np.full(len(mine), patch_id))]
    own_points = own_a[:, None, :] * (1 - t)[None, :, None] + own_b[:, None, :] * t[None, :, None]
    own_colors = patch.sample(own_points.reshape(-1, 2)).reshape(len(mine), len(t), 3)

    other_colors = np.zeros_like(own_colors)
    for other_id in np.unique(other):
        sel = np.flatnonzero(other == other_id)
        oa = entries.projection[entries.lookup(mine[sel, 0], np.full(len(sel), other_id))]
        ob = entries.projection[entries.lookup(mine[sel, 1], np.full(len(sel), other_id))]
        pts = oa[:, None, :] * (1 - t)[None, :, None] + ob[:, None, :] * t[None, :, None]
        other_colors[sel] = patches[other_id].sample(pts.reshape(-1, 2)).reshape(len(sel), len(t), 3)

    # each side moves half way towards the other
    delta = 0.5 * (other_colors - own_colors)

    pixels = np.rint(own_points.reshape(-1, 2)).astype(np.int64)
    inside = (
        (pixels[:, 0] >= 0) & (pixels[:, 0] < patch.width)
        & (pixels[:, 1] >= 0) & (pixels[:, 1] < patch.height)
    )
    pixels, delta = pixels[inside], delta.reshape(-1, 3)[inside]
    if len(pixels) == 0:
        return correction

    seed_sum = np.zeros_like(patch.image, dtype=np.float64)
    seed_count = np.zeros(patch.image.shape[:2], dtype=np.int64)
    np.add.at(seed_sum, (pixels[:, 1], pixels[:, 0]), delta)
    np.add.at(seed_count, (pixels[:, 1], pixels[:, 0]), 1)
    seeds = seed_count > 0
    seed_sum[seeds] /= seed_count[seeds, None]

    distance, (rows, cols) = ndimage.distance_transform_edt(~seeds, return_indices=True)
    falloff = np.clip(1.0 - distance / settings.local_band_width, 0.0, 1.0)
    correction = (seed_sum[rows, cols] * falloff[..., None]).astype(np.float32)
    return correction


def local_seam_leveling(
    mesh: TriangleMesh,
    vertex_infos: VertexProjectionInfos,
    patches: List[TexturePatch],
    settings: Settings,
) -> int:
    """Blend colour differences into a band along every patch seam.

    All corrections are measured on the colours before this pass and
    applied afterwards, so patches can be processed independently.

    Returns:
        Number of seam edges processed
    """
    start_time = time.perf_counter()
    entries = _Entries(vertex_infos, len(patches))
    edges = seam_edges(mesh, patches)
    if len(edges) == 0:
        logger.info("Local seam leveling: no seams between patches")
        return 0

    textured = [i for i, p in enumerate(patches) if p.label != 0]
    corrections = parallel_map(
        lambda patch_id: _local_corrections(patch_id, patches, entries, edges, settings),
        textured,
        desc="Local seam leveling",
        num_workers=settings.num_workers,
    )
    for patch_id, correction in zip(textured, corrections):
        patches[patch_id].add_adjustment(correction)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Local seam leveling complete: {len(edges)} seam edges "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    return len(edges)


def seam_color_error(patches: List[TexturePatch], vertex_infos: VertexProjectionInfos) -> float:
    """Mean squared colour difference between patches at shared vertices."""
    entries = _Entries(vertex_infos, len(patches))
    seam_i, seam_j = _seam_pairs(entries)
    if len(seam_i) == 0:
        return 0.0
    colors = _entry_colors(entries, patches)
    return float(np.mean(np.sum((colors[seam_i] - colors[seam_j]) ** 2, axis=1)))


def level_seams(
    mesh: TriangleMesh,
    vertex_infos: VertexProjectionInfos,
    patches: List[TexturePatch],
    settings: Settings,
) -> Dict[str, object]:
    """Run the seam leveling passes selected in the settings.

    Without global leveling, patches still get their validity masks and a
    zero correction.

    Returns:
        Dictionary with the global report and the local seam edge count
    """
    mode = settings.seam_leveling_mode
    result: Dict[str, object] = {"mode": mode.value}
    if mode.runs_global:
        result["global"] = global_seam_leveling(mesh, vertex_infos, patches, settings)
    else:
        calculate_validity_masks(patches, settings)
    if mode.runs_local:
        result["local_seam_edges"] = local_seam_leveling(mesh, vertex_infos, patches, settings)
    return result
