"""Multi-view texture reconstruction for triangle meshes.

A Python project that textures a triangle mesh from a set of calibrated
photographs: it picks a source view per face, cuts the mesh into texture
patches, levels the colours across patch seams and packs everything into
texture atlases.
"""

from __future__ import annotations

__version__ = "0.1.0"
