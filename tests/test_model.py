"""Tests for model assembly."""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from texrecon.atlas import generate_texture_atlases
from texrecon.graph import build_adjacency_graph
from texrecon.model import build_model
from texrecon.patches import generate_texture_patches
from texrecon.settings import Settings

from synthetic import MINUS_FACES, cube_labels, make_cube, make_cube_views


class TestBuildModel(unittest.TestCase):
    """Test the output model of the textured cube."""

    def build(self, labels, settings=None):
        settings = settings or Settings(num_workers=1)
        mesh = make_cube()
        graph = build_adjacency_graph(mesh, num_labels=2)
        graph.set_labels(labels)
        patches, _ = generate_texture_patches(graph, mesh, make_cube_views(), settings)
        atlases = generate_texture_atlases(patches, settings)
        return mesh, build_model(mesh, atlases)

    def test_seam_vertices_duplicated(self):
        """The six hexagon vertices appear once per patch."""
        mesh, model = self.build(cube_labels())
        self.assertEqual(model.num_faces, 12)
        self.assertEqual(model.num_vertices, 14)
        self.assertEqual(model.texcoords.shape, (14, 2))
        np.testing.assert_array_equal(model.face_materials, np.zeros(12))

    def test_faces_keep_geometry(self):
        mesh, model = self.build(cube_labels())
        np.testing.assert_allclose(
            model.vertices[model.faces],
            mesh.vertices[mesh.faces[model.source_faces]],
        )
        np.testing.assert_allclose(
            model.normals[model.faces],
            mesh.normals[mesh.faces[model.source_faces]],
        )
        self.assertEqual(sorted(model.source_faces), list(range(12)))

    def test_unseen_faces_excluded(self):
        labels = cube_labels()
        labels[MINUS_FACES] = 0
        _, model = self.build(labels)
        self.assertEqual(model.num_faces, 6)
        self.assertEqual(set(model.source_faces).intersection(MINUS_FACES), set())
        # vertex 0 only belongs to unseen faces
        self.assertEqual(model.num_vertices, 7)

    def test_unseen_faces_kept_flat(self):
        labels = cube_labels()
        labels[MINUS_FACES] = 0
        _, model = self.build(labels, Settings(num_workers=1, keep_unseen_faces=True))
        self.assertEqual(model.num_faces, 12)
        # all corners of the untextured patch share one texel
        self.assertEqual(model.num_vertices, 7 + 7)

    def test_texcoords_in_unit_square(self):
        _, model = self.build(cube_labels())
        self.assertTrue(np.all((model.texcoords > 0) & (model.texcoords < 1)))
        self.assertEqual(len(model.atlas_images), 1)


if __name__ == "__main__":
    unittest.main()
