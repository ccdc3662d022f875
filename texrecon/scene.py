"""Mesh and camera view containers.

This module holds the immutable inputs of the texturing pipeline: the
triangle mesh and the calibrated texture views, together with the
projection helpers every later stage relies on.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional, Tuple

import cv2
import numpy as np

from texrecon.errors import InputValidationError

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class TriangleMesh:
    """Triangle mesh with per-vertex normals.

    Attributes:
        vertices: Vx3 array of vertex positions
        normals: Vx3 array of unit vertex normals
        faces: Fx3 array of vertex indices
    """

    vertices: np.ndarray
    normals: np.ndarray
    faces: np.ndarray

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=np.float64).reshape(-1, 3)
        self.faces = np.asarray(self.faces, dtype=np.int64).reshape(-1, 3)
        if self.normals is None or len(self.normals) == 0:
            self.normals = np.zeros_like(self.vertices)
        self.normals = np.asarray(self.normals, dtype=np.float64).reshape(-1, 3)

    @property
    def num_vertices(self) -> int:
        return self.vertices.shape[0]

    @property
    def num_faces(self) -> int:
        return self.faces.shape[0]

    def face_vertices(self) -> np.ndarray:
        """Return Fx3x3 array of the corner positions of every face."""
        return self.vertices[self.faces]

    def face_normals(self) -> np.ndarray:
        """Return Fx3 array of unit face normals (zero for degenerate faces)."""
        corners = self.face_vertices()
        normals = np.cross(corners[:, 1] - corners[:, 0], corners[:, 2] - corners[:, 0])
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        return np.divide(normals, lengths, out=np.zeros_like(normals), where=lengths > 0)

    def face_centroids(self) -> np.ndarray:
        return self.face_vertices().mean(axis=1)


def prepare_mesh(mesh: TriangleMesh) -> TriangleMesh:
    """Validate the mesh and recompute missing vertex normals.

    Vertex normals that are zero are replaced by the normalized sum of the
    area-weighted normals of the incident faces.

    Args:
        mesh: Input mesh

    Returns:
        The same mesh, with usable normals
    """
    if mesh.num_faces and (mesh.faces.min() < 0 or mesh.faces.max() >= mesh.num_vertices):
        raise InputValidationError("Mesh faces reference vertices out of range", stage="input")

    lengths = np.linalg.norm(mesh.normals, axis=1)
    missing = lengths < 1e-12
    if np.any(missing):
        corners = mesh.face_vertices()
        weighted = np.cross(corners[:, 1] - corners[:, 0], corners[:, 2] - corners[:, 0])
        accum = np.zeros_like(mesh.vertices)
        for k in range(3):
            np.add.at(accum, mesh.faces[:, k], weighted)
        norms = np.linalg.norm(accum, axis=1, keepdims=True)
        accum = np.divide(accum, norms, out=np.zeros_like(accum), where=norms > 0)
        mesh.normals[missing] = accum[missing]
        logger.info(f"Recomputed {int(missing.sum())} missing vertex normals")

    lengths = np.linalg.norm(mesh.normals, axis=1, keepdims=True)
    mesh.normals = np.divide(mesh.normals, lengths, out=np.zeros_like(mesh.normals), where=lengths > 0)
    return mesh


@dataclasses.dataclass
class TextureView:
    """One calibrated photograph.

    Attributes:
        view_id: Label of this view (1-based, 0 means "no view")
        K: 3x3 intrinsic matrix in pixels
        R: 3x3 world-to-camera rotation
        t: world-to-camera translation
        image: HxWx3 uint8 RGB pixel buffer
        name: Identifier used in log messages
    """

    view_id: int
    K: np.ndarray
    R: np.ndarray
    t: np.ndarray
    image: np.ndarray
    name: str = ""

    def __post_init__(self):
        self.K = np.asarray(self.K, dtype=np.float64).reshape(3, 3)
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)
        if self.image.ndim == 2:
            self.image = np.stack([self.image] * 3, axis=2)
        if not self.name:
            self.name = f"view_{self.view_id:04d}"

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    @property
    def camera_center(self) -> np.ndarray:
        return -self.R.T @ self.t

    def to_camera(self, points: np.ndarray) -> np.ndarray:
        """Transform Nx3 world points into camera coordinates."""
        return points @ self.R.T + self.t

    def depth(self, points: np.ndarray) -> np.ndarray:
        return self.to_camera(points)[:, 2]

    def project(self, points: np.ndarray) -> np.ndarray:
        """Project Nx3 world points to Nx2 pixel coordinates.

        Pixel centres sit at integer coordinates (OpenCV convention).
        Points behind the camera produce meaningless coordinates; check
        ``depth`` first.
        """
        points_cam = self.to_camera(np.asarray(points, dtype=np.float64).reshape(-1, 3))
        z = points_cam[:, 2:3]
        z = np.where(np.abs(z) < 1e-12, 1e-12, z)
        points_img = (points_cam / z) @ self.K.T
        return points_img[:, :2]

    def inside(self, pixels: np.ndarray, margin: float = 0.0) -> np.ndarray:
        """Return a boolean mask of pixels lying inside the image."""
        pixels = np.asarray(pixels).reshape(-1, 2)
        return (
            (pixels[:, 0] >= margin)
            & (pixels[:, 0] <= self.width - 1 - margin)
            & (pixels[:, 1] >= margin)
            & (pixels[:, 1] <= self.height - 1 - margin)
        )

    def sample(self, pixels: np.ndarray) -> np.ndarray:
        """Bilinearly sample Nx3 float colours at Nx2 pixel coordinates."""
        pixels = np.asarray(pixels, dtype=np.float32).reshape(-1, 1, 2)
        if pixels.shape[0] == 0:
            return np.zeros((0, 3), dtype=np.float32)
        colors = cv2.remap(
            self.image,
            pixels[..., 0].copy(),
            pixels[..., 1].copy(),
            interpolation=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_REPLICATE,
        )
        return colors.reshape(-1, 3).astype(np.float32)


def view_directions(view: TextureView, points: np.ndarray) -> np.ndarray:
    """Unit directions from the camera centre towards Nx3 points."""
    dirs = np.asarray(points) - view.camera_center
    norms = np.linalg.norm(dirs, axis=1, keepdims=True)
    return np.divide(dirs, norms, out=np.zeros_like(dirs), where=norms > 0)


def check_views(views: List[TextureView]) -> None:
    """Ensure views are labelled 1..V in order."""
    for i, view in enumerate(views):
        if view.view_id != i + 1:
            raise InputValidationError(f"View {view.name} has id {view.view_id}, expected {i + 1}", stage="input")


def look_at(
    eye: np.ndarray,
    target: np.ndarray,
    up: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Build a world-to-camera pose looking from ``eye`` at ``target``.

    The camera looks along +z with +y pointing down in the image.

    Args:
        eye: Camera centre
        target: Point the optical axis passes through
        up: Approximate world up direction

    Returns:
        Tuple of (R, t)
    """
    eye = np.asarray(eye, dtype=np.float64)
    target = np.asarray(target, dtype=np.float64)
    if up is None:
        up = np.array([0.0, 0.0, 1.0])
    z = target - eye
    z /= np.linalg.norm(z)
    if abs(np.dot(z, up)) > 0.999:
        up = np.array([0.0, 1.0, 0.0])
    x = np.cross(z, up)
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    R = np.stack([x, y, z])
    t = -R @ eye
    return R, t
