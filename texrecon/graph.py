"""Face adjacency graph.

Nodes are mesh faces, edges connect faces sharing a mesh edge. The edge set
is derived once from the mesh topology and stored as contiguous arrays
(an edge list plus CSR offsets); only the per-node labels mutate afterwards.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse import csgraph

from texrecon.errors import InvalidLabelError
from texrecon.scene import TriangleMesh

logger = logging.getLogger(__name__)


class AdjacencyGraph:
    """Undirected graph over mesh faces with a mutable label per node."""

    def __init__(self, num_nodes: int, num_labels: Optional[int] = None):
        """Create ``num_nodes`` unlabeled nodes and no edges.

        Args:
            num_nodes: Number of faces
            num_labels: Number of views V; labels must lie in 0..V. ``None``
                leaves the upper bound unchecked until it is set.
        """
        self._num_nodes = int(num_nodes)
        self.num_labels = num_labels
        self._labels = np.zeros(self._num_nodes, dtype=np.int64)
        self._edges = np.zeros((0, 2), dtype=np.int64)
        self._offsets = np.zeros(self._num_nodes + 1, dtype=np.int64)
        self._neighbors = np.zeros(0, dtype=np.int64)

    def num_nodes(self) -> int:
        return self._num_nodes

    def num_edges(self) -> int:
        return self._edges.shape[0]

    @property
    def edges(self) -> np.ndarray:
        """Ex2 array of node pairs with ``edges[:, 0] < edges[:, 1]``."""
        return self._edges

    def set_edges(self, edges: np.ndarray) -> None:
        """Install the edge set and rebuild the neighbour offset table."""
        edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
        if edges.size and (edges.min() < 0 or edges.max() >= self._num_nodes):
            raise ValueError("Edge references a node out of range")
        edges = np.sort(edges, axis=1)
        edges = edges[edges[:, 0] != edges[:, 1]]
        edges = np.unique(edges, axis=0)
        self._edges = edges

        both = np.concatenate([edges, edges[:, ::-1]])
        order = np.lexsort((both[:, 1], both[:, 0]))
        both = both[order]
        counts = np.bincount(both[:, 0], minlength=self._num_nodes)
        self._offsets = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)
        self._neighbors = both[:, 1].copy()

    def adj_nodes(self, node: int) -> np.ndarray:
        return self._neighbors[self._offsets[node]:self._offsets[node + 1]]

    def has_edge(self, a: int, b: int) -> bool:
        return bool(np.any(self.adj_nodes(a) == b))

    def get_label(self, node: int) -> int:
        return int(self._labels[node])

    def _check_label(self, label: int) -> None:
        if label < 0 or (self.num_labels is not None and label > self.num_labels):
            raise InvalidLabelError(
                f"Label {label} outside the valid range 0..{self.num_labels}"
            )

    def set_label(self, node: int, label: int) -> None:
        self._check_label(int(label))
        self._labels[node] = int(label)

    def set_labels(self, labels: Sequence[int]) -> None:
        """Replace all labels at once.

        The whole vector is validated before anything is written, so a bad
        vector leaves the graph untouched.
        """
        labels = np.asarray(labels, dtype=np.int64).reshape(-1)
        if labels.shape[0] != self._num_nodes:
            raise InvalidLabelError(
                f"Expected {self._num_nodes} labels, got {labels.shape[0]}"
            )
        if labels.size:
            bad = (labels < 0) | (
                labels > self.num_labels if self.num_labels is not None else False
            )
            if np.any(bad):
                first = int(np.flatnonzero(bad)[0])
                raise InvalidLabelError(
                    f"Label {int(labels[first])} of face {first} outside the valid "
                    f"range 0..{self.num_labels}"
                )
        self._labels[:] = labels

    @property
    def labels(self) -> np.ndarray:
        """Copy of the per-node labels."""
        return self._labels.copy()

    def same_label_edges(self) -> np.ndarray:
        """Edges whose endpoints share the same non-zero label."""
        a, b = self._edges[:, 0], self._edges[:, 1]
        keep = (self._labels[a] == self._labels[b]) & (self._labels[a] != 0)
        return self._edges[keep]

    def label_components(self) -> List[np.ndarray]:
        """Maximal connected groups of faces sharing one non-zero label.

        Returns:
            List of sorted face index arrays, ordered by their smallest face
        """
        edges = self.same_label_edges()
        n = self._num_nodes
        matrix = sparse.coo_matrix(
            (np.ones(len(edges), dtype=np.int8), (edges[:, 0], edges[:, 1])),
            shape=(n, n),
        )
        _, component_ids = csgraph.connected_components(matrix, directed=False)

        labeled = np.flatnonzero(self._labels != 0)
        if labeled.size == 0:
            return []
        ids = component_ids[labeled]
        order = np.argsort(ids, kind="stable")
        ids_sorted = ids[order]
        splits = np.flatnonzero(np.diff(ids_sorted)) + 1
        groups = np.split(labeled[order], splits)
        groups.sort(key=lambda g: int(g[0]))
        return groups


def mesh_edge_faces(faces: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Index every undirected mesh edge by the faces using it.

    Args:
        faces: Fx3 vertex indices

    Returns:
        Tuple of (edge_keys Mx2 sorted vertex pairs, face ids M, run starts)
        where rows are sorted by key and ``run starts`` marks the first row
        of each distinct edge.
    """
    faces = np.asarray(faces, dtype=np.int64)
    num_faces = faces.shape[0]
    pairs = np.concatenate([faces[:, [0, 1]], faces[:, [1, 2]], faces[:, [2, 0]]])
    pairs = np.sort(pairs, axis=1)
    face_ids = np.tile(np.arange(num_faces, dtype=np.int64), 3)

    order = np.lexsort((face_ids, pairs[:, 1], pairs[:, 0]))
    pairs = pairs[order]
    face_ids = face_ids[order]
    if len(pairs) == 0:
        return pairs, face_ids, np.zeros(0, dtype=np.int64)
    new_key = np.ones(len(pairs), dtype=bool)
    new_key[1:] = np.any(pairs[1:] != pairs[:-1], axis=1)
    return pairs, face_ids, np.flatnonzero(new_key)


def build_adjacency_graph(mesh: TriangleMesh, num_labels: Optional[int] = None) -> AdjacencyGraph:
    """Build the face adjacency graph of a mesh.

    Two faces are adjacent when they share a mesh edge. Edges used by more
    than two faces (non-manifold) connect every pair of their faces.

    Args:
        mesh: Triangle mesh
        num_labels: Number of views, used to range-check labels

    Returns:
        Graph with one node per face
    """
    start_time = time.perf_counter()
    graph = AdjacencyGraph(mesh.num_faces, num_labels)

    pairs, face_ids, starts = mesh_edge_faces(mesh.faces)
    if len(starts) == 0:
        return graph
    run_lengths = np.diff(np.append(starts, len(pairs)))

    manifold = starts[run_lengths == 2]
    edge_list = [np.stack([face_ids[manifold], face_ids[manifold + 1]], axis=1)]

    non_manifold = np.flatnonzero(run_lengths > 2)
    if non_manifold.size:
        logger.warning(f"Mesh has {non_manifold.size} non-manifold edges")
    for k in non_manifold:
        incident = face_ids[starts[k]:starts[k] + run_lengths[k]]
        ii, jj = np.triu_indices(len(incident), k=1)
        edge_list.append(np.stack([incident[ii], incident[jj]], axis=1))

    graph.set_edges(np.concatenate(edge_list))

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Adjacency graph: {graph.num_nodes()} nodes, {graph.num_edges()} edges "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    return graph
