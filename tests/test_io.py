"""Tests for scene loading and model export."""

import os
import sys
import tempfile
import unittest
from pathlib import Path

import cv2
import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from texrecon import io
from texrecon.errors import FormatError, InputValidationError
from texrecon.settings import Settings
from texrecon.texturing import texture_mesh

from synthetic import make_cube, make_cube_views


def write_cam(path, R, t, flen, ppx=0.5, ppy=0.5):
    with open(path, "w") as f:
        f.write(" ".join(f"{v:.10f}" for v in list(t) + list(np.asarray(R).reshape(-1))) + "\n")
        f.write(f"{flen:.10f} 0 0 1 {ppx} {ppy}\n")


class TestSceneIO(unittest.TestCase):
    """Test reading views and meshes."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_read_cam_file(self):
        R = np.eye(3)
        path = self.dir / "a.cam"
        write_cam(path, R, [1, 2, 3], 0.5)
        K, R_read, t = io.read_cam_file(path, 200, 100)
        np.testing.assert_allclose(R_read, R)
        np.testing.assert_allclose(t, [1, 2, 3])
        self.assertAlmostEqual(K[0, 0], 100.0)
        self.assertAlmostEqual(K[1, 1], 100.0)
        self.assertAlmostEqual(K[0, 2], 99.5)
        self.assertAlmostEqual(K[1, 2], 49.5)

    def test_bad_cam_file(self):
        path = self.dir / "bad.cam"
        path.write_text("1 2 3\n")
        with self.assertRaises(FormatError):
            io.read_cam_file(path, 10, 10)

    def test_load_scene(self):
        views = make_cube_views()
        for view in views:
            cv2.imwrite(str(self.dir / f"{view.name}.png"), cv2.cvtColor(view.image, cv2.COLOR_RGB2BGR))
            flen = view.K[0, 0] / view.width
            write_cam(self.dir / f"{view.name}.cam", view.R, view.t, flen)
        # images without a camera file are skipped
        cv2.imwrite(str(self.dir / "zzz.png"), views[0].image)

        loaded = io.load_scene(self.dir)
        self.assertEqual([v.view_id for v in loaded], [1, 2])
        for view, original in zip(loaded, views):
            np.testing.assert_array_equal(view.image, original.image)
            np.testing.assert_allclose(view.K, original.K, atol=1e-6)
            np.testing.assert_allclose(view.R, original.R, atol=1e-8)

    def test_empty_scene(self):
        with self.assertRaises(InputValidationError):
            io.load_scene(self.dir)
        with self.assertRaises(InputValidationError):
            io.load_scene(self.dir / "missing")

    def test_missing_mesh(self):
        with self.assertRaises(InputValidationError):
            io.load_mesh(self.dir / "missing.ply")


class TestModelIO(unittest.TestCase):
    """Test writing the textured model."""

    @classmethod
    def setUpClass(cls):
        cls.result = texture_mesh(make_cube(), make_cube_views(), Settings(num_workers=1))

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_open3d_conversion(self):
        mesh = io.model_to_open3d(self.result.model)
        self.assertEqual(len(mesh.triangles), 12)
        self.assertEqual(len(mesh.triangle_uvs), 36)
        self.assertEqual(len(mesh.textures), 1)

    def test_save_npz(self):
        path = os.path.join(self.tmpdir.name, "model.npz")
        io.save_model_npz(self.result.model, path)
        data = np.load(path)
        np.testing.assert_array_equal(data["faces"], self.result.model.faces)
        self.assertEqual(data["atlas_0"].dtype, np.uint8)

    def test_save_obj(self):
        prefix = os.path.join(self.tmpdir.name, "cube")
        path = io.save_model(self.result.model, prefix)
        self.assertTrue(path.exists())
        loaded = io.load_mesh(path)
        self.assertEqual(loaded.num_faces, 12)

    def test_save_obj_missing_directory(self):
        prefix = os.path.join(self.tmpdir.name, "missing", "cube")
        with self.assertRaises(InputValidationError):
            io.save_model(self.result.model, prefix)
        self.assertFalse(os.path.exists(os.path.join(self.tmpdir.name, "missing")))


if __name__ == "__main__":
    unittest.main()
