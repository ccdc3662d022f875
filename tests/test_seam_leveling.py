"""Tests for global and local seam leveling."""

import sys
import unittest
from pathlib import Path
from unittest import mock

import numpy as np
import pytest
from scipy.sparse import linalg as sparse_linalg

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from texrecon.graph import build_adjacency_graph
from texrecon.patches import generate_texture_patches
from texrecon.seam_leveling import (
    global_seam_leveling,
    level_seams,
    local_seam_leveling,
    seam_color_error,
    seam_edges,
)
from texrecon.settings import SeamLevelingMode, Settings

from synthetic import cube_labels, make_cube, make_cube_views, make_two_cubes

real_lsqr = sparse_linalg.lsqr


def lsqr_stopping_with(istop, calls=None, solution=None):
    """Wrap lsqr so its first ``calls`` invocations report ``istop``."""
    state = {"count": 0}

    def lsqr(*args, **kwargs):
        result = real_lsqr(*args, **kwargs)
        state["count"] += 1
        if calls is not None and state["count"] > calls:
            return result
        x = result[0] if solution is None else np.full_like(result[0], solution)
        return (x, istop) + tuple(result[2:])

    return lsqr


class TestSeamLeveling(unittest.TestCase):
    """Test colour correction between the two halves of the cube."""

    def setUp(self):
        self.mesh = make_cube()
        self.views = make_cube_views()
        graph = build_adjacency_graph(self.mesh, num_labels=2)
        graph.set_labels(cube_labels())
        self.settings = Settings(num_workers=2)
        self.patches, self.infos = generate_texture_patches(graph, self.mesh, self.views, self.settings)

    def test_seam_edges(self):
        """The hexagon between the two halves has six seam edges."""
        edges = seam_edges(self.mesh, self.patches)
        self.assertEqual(edges.shape, (6, 4))
        self.assertTrue(np.all(edges[:, 2] != edges[:, 3]))
        self.assertNotIn(0, edges[:, :2])
        self.assertNotIn(6, edges[:, :2])

    def test_global_reduces_seam_error(self):
        before = seam_color_error(self.patches, self.infos)
        report = global_seam_leveling(self.mesh, self.infos, self.patches, self.settings)
        after = seam_color_error(self.patches, self.infos)

        self.assertGreater(before, 1000.0)
        self.assertLess(after, 0.25 * before)
        self.assertEqual(report.num_unknowns, 14)
        self.assertEqual(report.num_seam_equations, 6)
        self.assertEqual(report.num_components, 1)
        self.assertEqual(report.failed_components, 0)
        for patch in self.patches:
            self.assertTrue(np.any(patch.adjust != 0))

    def test_global_moves_colours_towards_each_other(self):
        global_seam_leveling(self.mesh, self.infos, self.patches, self.settings)
        blue, red = self.patches
        # the red half loses red, the blue half gains it
        self.assertLess(red.adjust[red.validity_mask][:, 0].mean(), 0)
        self.assertGreater(blue.adjust[blue.validity_mask][:, 0].mean(), 0)

    def test_failed_solve_leaves_patches_unchanged(self):
        before = seam_color_error(self.patches, self.infos)
        with mock.patch(
            "texrecon.seam_leveling._solve_component",
            side_effect=np.linalg.LinAlgError("singular"),
        ):
            report = global_seam_leveling(self.mesh, self.infos, self.patches, self.settings)

        self.assertEqual(report.failed_components, 1)
        for patch in self.patches:
            np.testing.assert_array_equal(patch.adjust, 0)
        self.assertAlmostEqual(seam_color_error(self.patches, self.infos), before, places=6)

    def test_ill_conditioned_solve_leaves_patches_unchanged(self):
        with mock.patch("texrecon.seam_leveling.sparse_linalg.lsqr", side_effect=lsqr_stopping_with(3)):
            report = global_seam_leveling(self.mesh, self.infos, self.patches, self.settings)

        self.assertEqual(report.num_components, 1)
        self.assertEqual(report.failed_components, 1)
        for patch in self.patches:
            np.testing.assert_array_equal(patch.adjust, 0)

    def test_non_finite_solution_leaves_patches_unchanged(self):
        with mock.patch(
            "texrecon.seam_leveling.sparse_linalg.lsqr",
            side_effect=lsqr_stopping_with(1, solution=np.nan),
        ):
            report = global_seam_leveling(self.mesh, self.infos, self.patches, self.settings)

        self.assertEqual(report.failed_components, 1)
        for patch in self.patches:
            np.testing.assert_array_equal(patch.adjust, 0)

    def test_iteration_limit_keeps_correction(self):
        before = seam_color_error(self.patches, self.infos)
        with mock.patch(
            "texrecon.seam_leveling.sparse_linalg.lsqr", side_effect=lsqr_stopping_with(7)
        ), self.assertLogs("texrecon.seam_leveling", level="WARNING") as logs:
            report = global_seam_leveling(self.mesh, self.infos, self.patches, self.settings)

        self.assertEqual(report.failed_components, 0)
        self.assertTrue(any("iteration limit" in line for line in logs.output))
        for patch in self.patches:
            self.assertTrue(np.any(patch.adjust != 0))
        self.assertLess(seam_color_error(self.patches, self.infos), before)

        self.assertAlmostEqual(seam_color_error(self.patches, self.infos), before, places=6)

    def test_local_reduces_seam_error(self):
        before = seam_color_error(self.patches, self.infos)
        level_seams(self.mesh, self.infos, self.patches, Settings(global_seam_leveling=False, num_workers=2))
        after = seam_color_error(self.patches, self.infos)
        self.assertLess(after, before)

    def test_local_correction_fades_with_distance(self):
        settings = Settings(local_band_width=4, num_workers=1)
        count = local_seam_leveling(self.mesh, self.infos, self.patches, settings)
        self.assertEqual(count, 6)
        for patch in self.patches:
            magnitude = np.abs(patch.adjust).sum(axis=2)
            self.assertGreater(magnitude.max(), 0)
            # the vertex away from the seam is outside the band
            self.assertTrue(np.any(magnitude == 0))

    def test_no_leveling(self):
        settings = Settings(global_seam_leveling=False, local_seam_leveling=False)
        self.assertEqual(settings.seam_leveling_mode, SeamLevelingMode.NONE)
        before = seam_color_error(self.patches, self.infos)
        result = level_seams(self.mesh, self.infos, self.patches, settings)
        self.assertEqual(result["mode"], "none")
        self.assertAlmostEqual(seam_color_error(self.patches, self.infos), before, places=6)

    def test_both_modes(self):
        before = seam_color_error(self.patches, self.infos)
        result = level_seams(self.mesh, self.infos, self.patches, self.settings)
        self.assertIn("global", result)
        self.assertEqual(result["local_seam_edges"], 6)
        self.assertLess(seam_color_error(self.patches, self.infos), before)


class TestSeamLevelingComponents(unittest.TestCase):
    """Two disjoint cubes give two independent seam leveling systems."""

    def setUp(self):
        self.mesh = make_two_cubes()
        graph = build_adjacency_graph(self.mesh, num_labels=2)
        graph.set_labels(np.concatenate([cube_labels(), cube_labels()]))
        self.settings = Settings(num_workers=1)
        self.patches, self.infos = generate_texture_patches(graph, self.mesh, make_cube_views(), self.settings)

    def cube_adjustments(self):
        first = [p for p in self.patches if p.faces.max() < 12]
        second = [p for p in self.patches if p.faces.min() >= 12]
        self.assertEqual((len(first), len(second)), (2, 2))
        return [[bool(np.any(p.adjust != 0)) for p in cube] for cube in (first, second)]

    def test_components_solved_independently(self):
        report = global_seam_leveling(self.mesh, self.infos, self.patches, self.settings)
        self.assertEqual(report.num_components, 2)
        self.assertEqual(report.failed_components, 0)
        self.assertEqual(self.cube_adjustments(), [[True, True], [True, True]])

    def test_one_failed_component_keeps_other_corrected(self):
        with mock.patch(
            "texrecon.seam_leveling.sparse_linalg.lsqr", side_effect=lsqr_stopping_with(3, calls=1)
        ):
            report = global_seam_leveling(self.mesh, self.infos, self.patches, self.settings)

        self.assertEqual(report.num_components, 2)
        self.assertEqual(report.failed_components, 1)
        adjusted = self.cube_adjustments()
        # exactly one cube is left uncorrected
        self.assertIn(adjusted, ([[False, False], [True, True]], [[True, True], [False, False]]))


if __name__ == "__main__":
    unittest.main()
