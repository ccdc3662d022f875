"""Tests for the face adjacency graph."""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from texrecon.errors import InvalidLabelError
from texrecon.graph import AdjacencyGraph, build_adjacency_graph, mesh_edge_faces
from texrecon.scene import TriangleMesh

from synthetic import MINUS_FACES, PLUS_FACES, cube_labels, make_cube


class TestAdjacencyGraph(unittest.TestCase):
    """Test graph construction, labels and components."""

    def setUp(self):
        self.mesh = make_cube()
        self.graph = build_adjacency_graph(self.mesh, num_labels=2)

    def test_cube_adjacency(self):
        """Every cube triangle borders exactly three others."""
        self.assertEqual(self.graph.num_nodes(), 12)
        self.assertEqual(self.graph.num_edges(), 18)
        for face in range(12):
            self.assertEqual(len(self.graph.adj_nodes(face)), 3)
        # the two triangles of one side share the diagonal
        self.assertTrue(self.graph.has_edge(0, 1))
        self.assertTrue(self.graph.has_edge(1, 0))
        self.assertFalse(self.graph.has_edge(0, 2))

    def test_edges_are_symmetric_and_sorted(self):
        edges = self.graph.edges
        self.assertTrue(np.all(edges[:, 0] < edges[:, 1]))
        for a, b in edges:
            self.assertIn(b, self.graph.adj_nodes(a))
            self.assertIn(a, self.graph.adj_nodes(b))

    def test_set_edges_drops_duplicates_and_loops(self):
        graph = AdjacencyGraph(4)
        graph.set_edges(np.array([[1, 0], [0, 1], [2, 2], [2, 3]]))
        np.testing.assert_array_equal(graph.edges, [[0, 1], [2, 3]])

    def test_non_manifold_edge(self):
        """Three faces on one edge are pairwise adjacent."""
        mesh = TriangleMesh(
            vertices=np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, -1, 0], [0, 0, 1]]),
            normals=None,
            faces=np.array([[0, 1, 2], [1, 0, 3], [0, 1, 4]]),
        )
        graph = build_adjacency_graph(mesh)
        self.assertEqual(graph.num_edges(), 3)

    def test_mesh_edge_faces(self):
        pairs, face_ids, starts = mesh_edge_faces(self.mesh.faces)
        self.assertEqual(len(pairs), 36)
        self.assertEqual(len(starts), 18)
        runs = np.diff(np.append(starts, len(pairs)))
        self.assertTrue(np.all(runs == 2))

    def test_labels_default_to_zero(self):
        np.testing.assert_array_equal(self.graph.labels, np.zeros(12))
        self.assertEqual(self.graph.label_components(), [])

    def test_set_label_out_of_range(self):
        with self.assertRaises(InvalidLabelError):
            self.graph.set_label(0, 3)
        with self.assertRaises(InvalidLabelError):
            self.graph.set_label(0, -1)
        self.assertEqual(self.graph.get_label(0), 0)

    def test_set_labels_is_all_or_nothing(self):
        labels = cube_labels()
        self.graph.set_labels(labels)
        bad = labels.copy()
        bad[5] = 7
        with self.assertRaises(InvalidLabelError):
            self.graph.set_labels(bad)
        np.testing.assert_array_equal(self.graph.labels, labels)

    def test_labels_returns_copy(self):
        labels = self.graph.labels
        labels[:] = 1
        self.assertEqual(self.graph.get_label(0), 0)

    def test_label_components(self):
        """Each half of the cube forms one component."""
        self.graph.set_labels(cube_labels())
        components = self.graph.label_components()
        self.assertEqual(len(components), 2)
        np.testing.assert_array_equal(components[0], np.sort(MINUS_FACES))
        np.testing.assert_array_equal(components[1], np.sort(PLUS_FACES))

    def test_same_label_split_into_components(self):
        """Faces with one label but no connection form separate components."""
        labels = np.zeros(12, dtype=np.int64)
        labels[[0, 1]] = 1  # -z side
        labels[[2, 3]] = 1  # +z side, not adjacent to -z
        self.graph.set_labels(labels)
        components = self.graph.label_components()
        self.assertEqual([list(c) for c in components], [[0, 1], [2, 3]])
        # label 0 faces are in no component
        covered = np.concatenate(components)
        self.assertTrue(np.all(labels[covered] != 0))


if __name__ == "__main__":
    unittest.main()
