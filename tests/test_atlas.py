"""Tests for texture atlas packing."""

import itertools
import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from texrecon.atlas import (
    PatchPlacement,
    TextureAtlas,
    atlas_size_for,
    generate_texture_atlases,
    next_power_of_two,
    pack_rectangles,
    rectangles_overlap,
)
from texrecon.errors import PatchTooLargeError
from texrecon.graph import build_adjacency_graph
from texrecon.patches import generate_texture_patches
from texrecon.settings import Settings
from texrecon.texture_patch import TexturePatch

from synthetic import cube_labels, make_cube, make_cube_views


def make_patch(width: int, height: int, label: int = 1, value: float = 100.0) -> TexturePatch:
    texcoords = np.array([[1, 1], [width - 2, 1], [1, height - 2]], dtype=np.float64)
    image = np.full((height, width, 3), value, dtype=np.float32)
    return TexturePatch(label, np.array([0]), texcoords, image)


class TestPacking(unittest.TestCase):
    """Test the shelf packer."""

    def test_next_power_of_two(self):
        self.assertEqual(next_power_of_two(1), 1)
        self.assertEqual(next_power_of_two(5), 8)
        self.assertEqual(next_power_of_two(64), 64)

    def test_rectangles_overlap(self):
        a = PatchPlacement(0, 0, 0, 10, 10)
        self.assertTrue(rectangles_overlap(a, PatchPlacement(1, 5, 5, 10, 10)))
        self.assertFalse(rectangles_overlap(a, PatchPlacement(1, 10, 0, 10, 10)))
        self.assertFalse(rectangles_overlap(a, PatchPlacement(1, 0, 10, 10, 10)))

    def test_pack_without_overlap(self):
        rng = np.random.default_rng(11)
        sizes = [tuple(int(v) for v in rng.integers(4, 40, size=2)) for _ in range(30)]
        placed, left = pack_rectangles(sizes, 256)
        self.assertEqual(left, [])
        self.assertEqual(sorted(i for i, _, _ in placed), list(range(30)))

        rects = [PatchPlacement(i, x, y, sizes[i][0], sizes[i][1]) for i, x, y in placed]
        for rect in rects:
            self.assertLessEqual(rect.x + rect.width, 256)
            self.assertLessEqual(rect.y + rect.height, 256)
        for a, b in itertools.combinations(rects, 2):
            self.assertFalse(rectangles_overlap(a, b))

    def test_pack_overflow(self):
        placed, left = pack_rectangles([(40, 40)] * 3, 64)
        self.assertEqual(len(placed), 1)
        self.assertEqual(left, [1, 2])

    def test_atlas_size(self):
        self.assertEqual(atlas_size_for([(10, 10)], 4096), 16)
        self.assertEqual(atlas_size_for([(100, 20)], 4096), 128)
        self.assertEqual(atlas_size_for([(40, 40)] * 10, 64), 64)


class TestGenerateAtlases(unittest.TestCase):
    """Test atlas generation from patches."""

    def test_every_patch_placed_once(self):
        patches = [make_patch(12 + i, 20 - i // 2, value=10 * i) for i in range(12)]
        atlases = generate_texture_atlases(patches, Settings(num_workers=2))

        placed = [p.patch_id for atlas in atlases for p in atlas.placements]
        self.assertEqual(sorted(placed), list(range(12)))
        for atlas in atlases:
            for a, b in itertools.combinations(atlas.placements, 2):
                self.assertFalse(rectangles_overlap(a, b))
            self.assertTrue(atlas.finalized)
            self.assertEqual(atlas.image.dtype, np.uint8)

    def test_spill_into_several_atlases(self):
        patches = [make_patch(40, 40) for _ in range(5)]
        atlases = generate_texture_atlases(patches, Settings(max_atlas_size=64, num_workers=1))
        self.assertEqual(len(atlases), 5)
        self.assertTrue(all(atlas.size == 64 for atlas in atlases))

    def test_patch_too_large(self):
        patches = [make_patch(10, 10), make_patch(80, 10)]
        with self.assertRaises(PatchTooLargeError):
            generate_texture_atlases(patches, Settings(max_atlas_size=64))

    def test_texcoords_inside_unit_square(self):
        patches = [make_patch(16, 16), make_patch(20, 8)]
        atlases = generate_texture_atlases(patches, Settings(num_workers=1))
        for atlas in atlases:
            uv = atlas.texcoords
            self.assertTrue(np.all((uv > 0) & (uv < 1)))
            self.assertEqual(atlas.texcoord_ids.shape, (len(atlas.faces), 3))

    def test_patch_pixels_copied(self):
        atlas = TextureAtlas(32)
        patch = make_patch(8, 8, value=77.0)
        placement = atlas.insert(0, patch, 4, 6)
        atlas.finalize()
        self.assertEqual((placement.x, placement.y), (4, 6))
        self.assertEqual(atlas.image[6 + 2, 4 + 2, 0], 77)
        # texel centre of the first corner
        u, v = atlas.texcoords[0]
        self.assertAlmostEqual(u, (4 + 1 + 0.5) / 32)
        self.assertAlmostEqual(v, 1 - (6 + 1 + 0.5) / 32)

    def test_gutter_dilation(self):
        atlas = TextureAtlas(32)
        atlas.insert(0, make_patch(8, 8, value=200.0), 0, 0)
        atlas.finalize()
        # just outside the covered triangle the colour is repeated
        self.assertEqual(atlas.image[0, 0, 0], 200)
        # far away pixels stay empty
        self.assertEqual(atlas.image[31, 31, 0], 0)

    def test_cube_patches_share_one_atlas(self):
        mesh = make_cube()
        graph = build_adjacency_graph(mesh, num_labels=2)
        graph.set_labels(cube_labels())
        patches, _ = generate_texture_patches(graph, mesh, make_cube_views(), Settings(num_workers=1))
        atlases = generate_texture_atlases(patches, Settings(max_atlas_size=256))
        self.assertEqual(len(atlases), 1)
        self.assertEqual(len(atlases[0].placements), 2)
        self.assertEqual(sorted(atlases[0].faces), list(range(12)))


if __name__ == "__main__":
    unittest.main()
