"""Per (face, view) data costs.

This module computes how well each view can texture each face and stores
the result as a sparse, face-major table: a contiguous array of view ids and
costs plus an offset table indexed by face. A missing entry means the view
cannot texture the face at all.
"""

from __future__ import annotations

import logging
import struct
import threading
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

import cv2
import numpy as np
import open3d as o3d

from texrecon.errors import FormatError, InputValidationError
from texrecon.parallel import parallel_map
from texrecon.scene import TextureView, TriangleMesh, view_directions
from texrecon.settings import DataTerm, Settings

logger = logging.getLogger(__name__)

DATA_COST_MAGIC = b"TXDC"
DATA_COST_VERSION = 1
# magic, version, num_faces, num_views, nnz
HEADER_FORMAT = "<4sIIIQ"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
RECORD_DTYPE = np.dtype([("face", "<u4"), ("view", "<u4"), ("cost", "<f4")])

# Quality percentile mapped to cost 0; higher qualities are clamped.
QUALITY_PERCENTILE = 99.5
# Relative shrink of ray targets towards the face centroid.
RAY_TARGET_SHRINK = 0.01
RAY_HIT_EPSILON = 1e-3


class DataCosts:
    """Sparse face -> (view -> cost) table in arena layout.

    Attributes:
        num_faces: Number of faces F
        num_views: Number of views V (labels 1..V)
        offsets: (F+1,) offsets into ``view_ids``/``costs``
        view_ids: (nnz,) view labels, ascending within each face
        costs: (nnz,) float32 non-negative costs
    """

    def __init__(
        self,
        num_faces: int,
        num_views: int,
        offsets: Optional[np.ndarray] = None,
        view_ids: Optional[np.ndarray] = None,
        costs: Optional[np.ndarray] = None,
    ):
        self.num_faces = int(num_faces)
        self.num_views = int(num_views)
        if offsets is None:
            offsets = np.zeros(self.num_faces + 1, dtype=np.int64)
            view_ids = np.zeros(0, dtype=np.int64)
            costs = np.zeros(0, dtype=np.float32)
        self.offsets = np.asarray(offsets, dtype=np.int64)
        self.view_ids = np.asarray(view_ids, dtype=np.int64)
        self.costs = np.asarray(costs, dtype=np.float32)

    @classmethod
    def from_triplets(
        cls,
        num_faces: int,
        num_views: int,
        faces: np.ndarray,
        views: np.ndarray,
        costs: np.ndarray,
    ) -> "DataCosts":
        """Build a table from unordered (face, view, cost) triplets.

        Duplicate (face, view) pairs keep the last cost given.
        """
        faces = np.asarray(faces, dtype=np.int64).reshape(-1)
        views = np.asarray(views, dtype=np.int64).reshape(-1)
        costs = np.asarray(costs, dtype=np.float32).reshape(-1)
        if not (len(faces) == len(views) == len(costs)):
            raise ValueError("Triplet arrays must have equal length")
        if len(faces):
            if faces.min() < 0 or faces.max() >= num_faces:
                raise ValueError("Face index out of range")
            if views.min() < 1 or views.max() > num_views:
                raise ValueError("View index out of range 1..num_views")
            if np.any(~np.isfinite(costs)) or np.any(costs < 0):
                raise ValueError("Costs must be finite and non-negative")

        order = np.lexsort((np.arange(len(faces)), views, faces))
        faces, views, costs = faces[order], views[order], costs[order]
        if len(faces) > 1:
            keep = np.ones(len(faces), dtype=bool)
            keep[:-1] = (faces[1:] != faces[:-1]) | (views[1:] != views[:-1])
            faces, views, costs = faces[keep], views[keep], costs[keep]

        counts = np.bincount(faces, minlength=num_faces)
        offsets = np.concatenate([[0], np.cumsum(counts)])
        return cls(num_faces, num_views, offsets, views, costs)

    @classmethod
    def from_dict(
        cls, num_faces: int, num_views: int, table: Mapping[int, Mapping[int, float]]
    ) -> "DataCosts":
        faces, views, costs = [], [], []
        for face, entries in table.items():
            for view, cost in entries.items():
                faces.append(face)
                views.append(view)
                costs.append(cost)
        return cls.from_triplets(num_faces, num_views, faces, views, costs)

    @property
    def nnz(self) -> int:
        return int(self.view_ids.shape[0])

    def get(self, face: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return (view_ids, costs) of one face."""
        lo, hi = self.offsets[face], self.offsets[face + 1]
        return self.view_ids[lo:hi], self.costs[lo:hi]

    def cost(self, face: int, view: int) -> float:
        views, costs = self.get(face)
        hit = np.flatnonzero(views == view)
        return float(costs[hit[0]]) if hit.size else float("inf")

    def face_ids(self) -> np.ndarray:
        """Face index of every stored entry (nnz,)."""
        return np.repeat(np.arange(self.num_faces), np.diff(self.offsets))

    def num_candidates(self) -> np.ndarray:
        return np.diff(self.offsets)

    def to_dense(self, fill: float = np.inf) -> np.ndarray:
        """Dense (F, V+1) cost matrix indexed by label; column 0 is ``fill``."""
        dense = np.full((self.num_faces, self.num_views + 1), fill, dtype=np.float64)
        dense[self.face_ids(), self.view_ids] = self.costs
        return dense

    def min_cost_labels(self) -> np.ndarray:
        """Per-face minimum cost view, ties to the lowest id, 0 if none."""
        labels = np.zeros(self.num_faces, dtype=np.int64)
        if self.nnz == 0:
            return labels
        faces = self.face_ids()
        # sort by face, then cost, then view id
        order = np.lexsort((self.view_ids, self.costs, faces))
        first = np.ones(len(order), dtype=bool)
        first[1:] = faces[order][1:] != faces[order][:-1]
        best = order[first]
        labels[faces[best]] = self.view_ids[best]
        return labels

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DataCosts):
            return NotImplemented
        return (
            self.num_faces == other.num_faces
            and self.num_views == other.num_views
            and np.array_equal(self.offsets, other.offsets)
            and np.array_equal(self.view_ids, other.view_ids)
            and np.array_equal(self.costs, other.costs)
        )


def save_data_costs(data_costs: DataCosts, path: Union[str, Path]) -> None:
    """Write the table in the binary face-major record format."""
    records = np.empty(data_costs.nnz, dtype=RECORD_DTYPE)
    records["face"] = data_costs.face_ids()
    records["view"] = data_costs.view_ids
    records["cost"] = data_costs.costs
    header = struct.pack(
        HEADER_FORMAT,
        DATA_COST_MAGIC,
        DATA_COST_VERSION,
        data_costs.num_faces,
        data_costs.num_views,
        data_costs.nnz,
    )
    with open(path, "wb") as f:
        f.write(header)
        f.write(records.tobytes())
    logger.info(f"Data costs saved to {path} ({data_costs.nnz} entries)")


def load_data_costs(
    path: Union[str, Path],
    num_faces: Optional[int] = None,
    num_views: Optional[int] = None,
) -> DataCosts:
    """Read a data cost file written by ``save_data_costs``.

    Args:
        path: File path
        num_faces: Expected face count of the current mesh
        num_views: Number of views of the current scene

    Returns:
        Loaded table

    Raises:
        FormatError: The file is truncated or internally inconsistent
        InputValidationError: The file does not match the mesh/scene
    """
    stage = "data costs"
    try:
        with open(path, "rb") as f:
            blob = f.read()
    except OSError as e:
        raise InputValidationError(f"Could not read data cost file {path}: {e}", stage=stage) from e

    if len(blob) < HEADER_SIZE:
        raise FormatError(f"{path}: truncated header", stage=stage)
    magic, version, file_faces, file_views, nnz = struct.unpack_from(HEADER_FORMAT, blob)
    if magic != DATA_COST_MAGIC:
        raise FormatError(f"{path}: not a data cost file", stage=stage)
    if version != DATA_COST_VERSION:
        raise FormatError(f"{path}: unsupported version {version}", stage=stage)

    expected = HEADER_SIZE + nnz * RECORD_DTYPE.itemsize
    if len(blob) != expected:
        raise FormatError(
            f"{path}: expected {expected} bytes for {nnz} entries, found {len(blob)}",
            stage=stage,
        )
    records = np.frombuffer(blob, dtype=RECORD_DTYPE, count=nnz, offset=HEADER_SIZE)
    faces = records["face"].astype(np.int64)
    views = records["view"].astype(np.int64)
    costs = records["cost"].astype(np.float32)

    if nnz:
        if faces.max() >= file_faces or views.min() < 1 or views.max() > file_views:
            raise FormatError(f"{path}: record index out of range", stage=stage)
        key = faces * (file_views + 1) + views
        if np.any(np.diff(key) <= 0):
            raise FormatError(f"{path}: records are not in face-major order", stage=stage)
        if np.any(~np.isfinite(costs)) or np.any(costs < 0):
            raise FormatError(f"{path}: invalid cost value", stage=stage)

    if num_faces is not None and file_faces != num_faces:
        raise InputValidationError(
            f"{path} holds costs for {file_faces} faces, mesh has {num_faces}", stage=stage
        )
    if num_views is not None and file_views > num_views:
        raise InputValidationError(
            f"{path} references {file_views} views, scene has {num_views}", stage=stage
        )

    counts = np.bincount(faces, minlength=file_faces)
    offsets = np.concatenate([[0], np.cumsum(counts)])
    logger.info(f"Loaded {nnz} data cost entries from {path}")
    return DataCosts(file_faces, num_views if num_views is not None else file_views, offsets, views, costs)


def build_raycasting_scene(mesh: TriangleMesh) -> o3d.t.geometry.RaycastingScene:
    """Create an Open3D BVH over the mesh; primitive ids equal face indices."""
    mesh_o3d = o3d.geometry.TriangleMesh()
    mesh_o3d.vertices = o3d.utility.Vector3dVector(mesh.vertices.astype(np.float64))
    mesh_o3d.triangles = o3d.utility.Vector3iVector(mesh.faces.astype(np.int32))
    mesh_tensor = o3d.t.geometry.TriangleMesh.from_legacy(mesh_o3d)
    scene = o3d.t.geometry.RaycastingScene()
    scene.add_triangles(mesh_tensor)
    return scene


class _VisibilityTester:
    """Occlusion test by casting rays from the camera to face sample points."""

    def __init__(self, mesh: TriangleMesh):
        self.scene = build_raycasting_scene(mesh)
        self._lock = threading.Lock()

    def visible(self, view: TextureView, face_ids: np.ndarray, corners: np.ndarray) -> np.ndarray:
        """Return a mask of faces whose centroid and corners are unoccluded.

        Args:
            view: Camera to test from
            face_ids: (k,) candidate faces
            corners: (k,3,3) corner positions of those faces
        """
        if len(face_ids) == 0:
            return np.zeros(0, dtype=bool)
        centroids = corners.mean(axis=1, keepdims=True)
        targets = corners + RAY_TARGET_SHRINK * (centroids - corners)
        targets = np.concatenate([targets, centroids], axis=1).reshape(-1, 3)

        origin = view.camera_center
        rays = np.hstack([np.broadcast_to(origin, targets.shape), targets - origin])
        with self._lock:
            result = self.scene.cast_rays(o3d.core.Tensor(rays.astype(np.float32)))
        t_hit = result["t_hit"].numpy().reshape(-1, 4)
        hit_ids = result["primitive_ids"].numpy().astype(np.int64).reshape(-1, 4)

        clear = (t_hit >= 1.0 - RAY_HIT_EPSILON) | (hit_ids == face_ids[:, None])
        return np.all(clear, axis=1)


def _gradient_magnitude(image: np.ndarray) -> np.ndarray:
    gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY).astype(np.float32)
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    return cv2.magnitude(gx, gy)


def face_view_quality(
    mesh: TriangleMesh,
    view: TextureView,
    settings: Settings,
    visibility: Optional[_VisibilityTester] = None,
    face_normals: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Compute the projection quality of every face visible in one view.

    Args:
        mesh: Triangle mesh
        view: Texture view
        settings: Pipeline settings (data term, angle threshold)
        visibility: Optional occlusion tester
        face_normals: Precomputed unit face normals

    Returns:
        Tuple of (face_ids, quality) for the faces this view can texture
    """
    if face_normals is None:
        face_normals = mesh.face_normals()
    corners = mesh.face_vertices()
    n_faces = corners.shape[0]
    flat = corners.reshape(-1, 3)

    in_front = np.all(view.depth(flat).reshape(n_faces, 3) > 0, axis=1)
    pixels = view.project(flat).reshape(n_faces, 3, 2)
    in_image = np.all(view.inside(pixels.reshape(-1, 2)).reshape(n_faces, 3), axis=1)

    centroids = corners.mean(axis=1)
    cos_angle = -np.sum(face_normals * view_directions(view, centroids), axis=1)
    facing = cos_angle > settings.min_cos_angle

    candidates = np.flatnonzero(in_front & in_image & facing)
    if visibility is not None and candidates.size:
        candidates = candidates[visibility.visible(view, candidates, corners[candidates])]

    p = pixels[candidates]
    e1 = p[:, 1] - p[:, 0]
    e2 = p[:, 2] - p[:, 0]
    area = 0.5 * np.abs(e1[:, 0] * e2[:, 1] - e1[:, 1] * e2[:, 0])

    if settings.data_term == DataTerm.GMI:
        gradient = _gradient_magnitude(view.image)
        samples = np.concatenate([p, p.mean(axis=1, keepdims=True)], axis=1).reshape(-1, 1, 2)
        samples = samples.astype(np.float32)
        magnitude = cv2.remap(
            gradient, samples[..., 0].copy(), samples[..., 1].copy(),
            interpolation=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE,
        ).reshape(-1, 4).mean(axis=1)
        quality = magnitude * area
    else:
        quality = area * cos_angle[candidates]

    keep = quality > 0
    return candidates[keep], quality[keep]


def calculate_data_costs(
    mesh: TriangleMesh,
    views: List[TextureView],
    settings: Settings,
) -> DataCosts:
    """Compute the data cost table for all faces and views.

    The quality of a (face, view) pair grows with the projected area and
    shrinks with the viewing angle. Qualities are normalized by a high
    percentile over all pairs and turned into costs ``1 - min(1, q / q_max)``.

    Args:
        mesh: Triangle mesh
        views: Texture views, ids 1..V
        settings: Pipeline settings

    Returns:
        Sparse data cost table
    """
    start_time = time.perf_counter()
    logger.info(f"Calculating data costs for {mesh.num_faces} faces and {len(views)} views")

    visibility = _VisibilityTester(mesh) if settings.geometric_visibility_test else None
    face_normals = mesh.face_normals()

    per_view = parallel_map(
        lambda view: face_view_quality(mesh, view, settings, visibility, face_normals),
        views,
        desc="Data costs",
        num_workers=settings.num_workers,
    )

    faces = np.concatenate([f for f, _ in per_view]) if per_view else np.zeros(0, dtype=np.int64)
    quality = np.concatenate([q for _, q in per_view]) if per_view else np.zeros(0)
    view_ids = (
        np.concatenate([np.full(len(f), view.view_id) for (f, _), view in zip(per_view, views)])
        if per_view else np.zeros(0, dtype=np.int64)
    )

    if quality.size:
        q_max = float(np.percentile(quality, QUALITY_PERCENTILE))
        if q_max <= 0:
            q_max = float(quality.max())
        costs = 1.0 - np.minimum(1.0, quality / q_max)
    else:
        costs = np.zeros(0)

    data_costs = DataCosts.from_triplets(mesh.num_faces, len(views), faces, view_ids, costs)

    unseen = int(np.sum(data_costs.num_candidates() == 0))
    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Data costs complete: {data_costs.nnz} entries, {unseen} faces without a view "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    return data_costs


def data_costs_to_dict(data_costs: DataCosts) -> Dict[int, Dict[int, float]]:
    """Nested dictionary view of a table, for debugging and tests."""
    table: Dict[int, Dict[int, float]] = {}
    for face, view, cost in zip(data_costs.face_ids(), data_costs.view_ids, data_costs.costs):
        table.setdefault(int(face), {})[int(view)] = float(cost)
    return table
