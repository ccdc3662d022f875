"""Assembly of the textured output model."""

from __future__ import annotations

import dataclasses
import logging
from typing import List

import numpy as np

from texrecon.atlas import TextureAtlas
from texrecon.scene import TriangleMesh

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Model:
    """Textured triangle model.

    A mesh vertex used with several texture coordinates (on patch seams or
    in different atlases) appears once per distinct coordinate.

    Attributes:
        vertices: Nx3 positions
        normals: Nx3 vertex normals
        texcoords: Nx2 UV coordinates, v pointing up
        faces: Mx3 vertex indices
        face_materials: (M,) atlas index per face
        source_faces: (M,) mesh face each model face was built from
        atlas_images: Atlas textures, one per material
    """

    vertices: np.ndarray
    normals: np.ndarray
    texcoords: np.ndarray
    faces: np.ndarray
    face_materials: np.ndarray
    source_faces: np.ndarray
    atlas_images: List[np.ndarray]

    @property
    def num_faces(self) -> int:
        return len(self.faces)

    @property
    def num_vertices(self) -> int:
        return len(self.vertices)


def build_model(mesh: TriangleMesh, atlases: List[TextureAtlas]) -> Model:
    """Build the output model from the mesh and its finalized atlases.

    Faces keep the per-atlas order in which their patches were inserted.
    Output vertices are unique (mesh vertex, atlas, uv) combinations.
    """
    keys, source_faces, materials = [], [], []
    for atlas_id, atlas in enumerate(atlases):
        faces = atlas.faces
        if len(faces) == 0:
            continue
        uv = atlas.texcoords[atlas.texcoord_ids].reshape(-1, 2)
        corner_vertices = mesh.faces[faces].reshape(-1)
        keys.append(np.column_stack([
            corner_vertices.astype(np.float64),
            np.full(len(corner_vertices), atlas_id, dtype=np.float64),
            uv,
        ]))
        source_faces.append(faces)
        materials.append(np.full(len(faces), atlas_id, dtype=np.int64))

    if not keys:
        logger.warning("Model has no textured faces")
        return Model(
            vertices=np.zeros((0, 3)),
            normals=np.zeros((0, 3)),
            texcoords=np.zeros((0, 2)),
            faces=np.zeros((0, 3), dtype=np.int64),
            face_materials=np.zeros(0, dtype=np.int64),
            source_faces=np.zeros(0, dtype=np.int64),
            atlas_images=[atlas.image for atlas in atlases],
        )

    corners = np.concatenate(keys)
    unique, inverse = np.unique(corners, axis=0, return_inverse=True)
    vertex_ids = unique[:, 0].astype(np.int64)

    model = Model(
        vertices=mesh.vertices[vertex_ids],
        normals=mesh.normals[vertex_ids],
        texcoords=unique[:, 2:4],
        faces=np.asarray(inverse, dtype=np.int64).reshape(-1, 3),
        face_materials=np.concatenate(materials),
        source_faces=np.concatenate(source_faces),
        atlas_images=[atlas.image for atlas in atlases],
    )
    logger.info(
        f"Model assembled: {model.num_vertices} vertices "
        f"({mesh.num_vertices} in the mesh), {model.num_faces} faces, {len(atlases)} atlases"
    )
    return model
