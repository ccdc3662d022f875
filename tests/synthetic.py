"""Synthetic cube scenes shared by the tests."""

import sys
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from texrecon.data_costs import DataCosts
from texrecon.scene import TextureView, TriangleMesh, look_at

CUBE_VERTICES = np.array([
    [-1, -1, -1],
    [1, -1, -1],
    [1, 1, -1],
    [-1, 1, -1],
    [-1, -1, 1],
    [1, -1, 1],
    [1, 1, 1],
    [-1, 1, 1],
], dtype=np.float64)

# Two outward-facing triangles per side: -z, +z, -y, +y, -x, +x
CUBE_FACES = np.array([
    [0, 2, 1], [0, 3, 2],
    [4, 5, 6], [4, 6, 7],
    [0, 1, 5], [0, 5, 4],
    [3, 7, 6], [3, 6, 2],
    [0, 4, 7], [0, 7, 3],
    [1, 2, 6], [1, 6, 5],
])

# Faces on the +x, +y, +z sides and on the -x, -y, -z sides
PLUS_FACES = np.array([2, 3, 6, 7, 10, 11])
MINUS_FACES = np.array([0, 1, 4, 5, 8, 9])

IMAGE_SIZE = 96
FOCAL_LENGTH = 120.0


def make_cube() -> TriangleMesh:
    return TriangleMesh(CUBE_VERTICES.copy(), None, CUBE_FACES.copy())


def make_image(color, size: int = IMAGE_SIZE) -> np.ndarray:
    """Flat colour with a horizontal ramp."""
    ramp = np.linspace(0, 40, size)[None, :, None]
    image = np.asarray(color, dtype=np.float64)[None, None, :] + ramp
    image = np.broadcast_to(image, (size, size, 3))
    return np.clip(image, 0, 255).astype(np.uint8)


def make_view(view_id: int, eye, color, size: int = IMAGE_SIZE) -> TextureView:
    R, t = look_at(np.asarray(eye, dtype=np.float64), np.zeros(3))
    K = np.array([
        [FOCAL_LENGTH, 0, (size - 1) / 2],
        [0, FOCAL_LENGTH, (size - 1) / 2],
        [0, 0, 1]
    ])
    return TextureView(view_id, K, R, t, make_image(color, size))


def make_cube_views():
    """Two views, each seeing exactly the three cube sides facing it."""
    return [
        make_view(1, [4.0, 4.0, 4.0], (200, 60, 60)),
        make_view(2, [-4.0, -4.0, -4.0], (60, 60, 200)),
    ]


def cube_labels() -> np.ndarray:
    labels = np.zeros(len(CUBE_FACES), dtype=np.int64)
    labels[PLUS_FACES] = 1
    labels[MINUS_FACES] = 2
    return labels


def cube_data_costs(cost: float = 0.5) -> DataCosts:
    """Every face has exactly one view, the one facing its side."""
    labels = cube_labels()
    faces = np.arange(len(CUBE_FACES))
    return DataCosts.from_triplets(len(CUBE_FACES), 2, faces, labels, np.full(len(faces), cost))


def make_two_cubes(half_size: float = 0.45) -> TriangleMesh:
    """Two disjoint cubes side by side, both inside the cube views.

    Vertices 0-7 and faces 0-11 belong to the first cube, the rest to the
    second.
    """
    centres = np.array([[0.5, -0.5, 0.0], [-0.5, 0.5, 0.0]])
    vertices = np.concatenate([CUBE_VERTICES * half_size + c for c in centres])
    faces = np.concatenate([CUBE_FACES, CUBE_FACES + len(CUBE_VERTICES)])
    return TriangleMesh(vertices, None, faces)
