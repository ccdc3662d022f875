"""Reading meshes and scenes, writing textured models."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Tuple, Union

import cv2
import numpy as np
import open3d as o3d
from tqdm import tqdm

from texrecon.errors import FormatError, InputValidationError
from texrecon.model import Model
from texrecon.scene import TextureView, TriangleMesh, prepare_mesh

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ["*.jpg", "*.jpeg", "*.png", "*.bmp", "*.tif", "*.tiff"]


def load_mesh(mesh_path: Union[str, Path]) -> TriangleMesh:
    """Load a triangle mesh (PLY, OBJ, ...) with open3d.

    Args:
        mesh_path: Path to the mesh file

    Returns:
        Prepared mesh with unit vertex normals
    """
    mesh_path = Path(mesh_path)
    if not mesh_path.exists():
        raise InputValidationError(f"Mesh file {mesh_path} does not exist", stage="input")

    o3d_mesh = o3d.io.read_triangle_mesh(str(mesh_path))
    if len(o3d_mesh.triangles) == 0:
        raise InputValidationError(f"Mesh file {mesh_path} contains no triangles", stage="input")

    normals = np.asarray(o3d_mesh.vertex_normals) if o3d_mesh.has_vertex_normals() else None
    mesh = TriangleMesh(
        vertices=np.asarray(o3d_mesh.vertices),
        normals=normals,
        faces=np.asarray(o3d_mesh.triangles),
    )
    logger.info(f"Loaded mesh {mesh_path}: {mesh.num_vertices} vertices, {mesh.num_faces} faces")
    return prepare_mesh(mesh)


def read_cam_file(cam_path: Union[str, Path], width: int, height: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Parse a ``.cam`` file into pixel intrinsics and a world-to-camera pose.

    Line 1 holds ``tx ty tz`` followed by the 9 row-major rotation values.
    Line 2 holds ``f d0 d1 paspect ppx ppy`` with the focal length
    normalized by the larger image side and the principal point by the
    image size.

    Returns:
        Tuple of (K, R, t)
    """
    with open(cam_path, "r") as f:
        lines = [line.split() for line in f if line.strip()]
    try:
        extrinsic = [float(v) for v in lines[0]]
        intrinsic = [float(v) for v in lines[1]]
    except (IndexError, ValueError) as e:
        raise FormatError(f"Cannot parse camera file {cam_path}: {e}", stage="input") from e
    if len(extrinsic) != 12 or len(intrinsic) < 1:
        raise FormatError(f"Camera file {cam_path} has the wrong number of values", stage="input")

    t = np.array(extrinsic[:3])
    R = np.array(extrinsic[3:]).reshape(3, 3)

    flen = intrinsic[0]
    distortion = intrinsic[1:3] if len(intrinsic) >= 3 else [0.0, 0.0]
    paspect = intrinsic[3] if len(intrinsic) >= 4 else 1.0
    ppx, ppy = intrinsic[4:6] if len(intrinsic) >= 6 else (0.5, 0.5)
    if any(d != 0.0 for d in distortion):
        logger.warning(f"{cam_path}: radial distortion is ignored, images should be undistorted")

    if width * paspect < height:
        fy = flen * height
        fx = fy / paspect
    else:
        fx = flen * width
        fy = fx * paspect
    K = np.array([
        [fx, 0, ppx * width - 0.5],
        [0, fy, ppy * height - 0.5],
        [0, 0, 1]
    ])
    return K, R, t


def load_scene(scene_dir: Union[str, Path]) -> List[TextureView]:
    """Load texture views from a directory of images with ``.cam`` files.

    Every image needs a camera file of the same stem. Views are numbered
    1..V in sorted file name order.
    """
    scene_dir = Path(scene_dir)
    if not scene_dir.is_dir():
        raise InputValidationError(f"Scene directory {scene_dir} does not exist", stage="input")

    image_files = []
    for ext in IMAGE_EXTENSIONS:
        image_files.extend(scene_dir.glob(ext))
        image_files.extend(scene_dir.glob(ext.upper()))
    image_files = sorted(set(image_files))

    views = []
    for image_file in tqdm(image_files, desc="Reading views"):
        cam_file = image_file.with_suffix(".cam")
        if not cam_file.exists():
            logger.warning(f"Skipping {image_file.name}: no camera file")
            continue
        image = cv2.imread(str(image_file), cv2.IMREAD_COLOR)
        if image is None:
            raise InputValidationError(f"Failed to read image {image_file}", stage="input")
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        K, R, t = read_cam_file(cam_file, image.shape[1], image.shape[0])
        views.append(TextureView(len(views) + 1, K, R, t, image, name=image_file.stem))

    if not views:
        raise InputValidationError(f"No views with camera files found in {scene_dir}", stage="input")
    logger.info(f"Loaded {len(views)} views from {scene_dir}")
    return views


def model_to_open3d(model: Model) -> o3d.geometry.TriangleMesh:
    """Convert the model to an open3d mesh with UVs and one texture per atlas."""
    mesh = o3d.geometry.TriangleMesh()
    mesh.vertices = o3d.utility.Vector3dVector(model.vertices)
    mesh.vertex_normals = o3d.utility.Vector3dVector(model.normals)
    mesh.triangles = o3d.utility.Vector3iVector(model.faces.astype(np.int32))

    # open3d keeps the image-row convention (v down) and flips on export
    uvs = model.texcoords[model.faces].reshape(-1, 2).copy()
    uvs[:, 1] = 1.0 - uvs[:, 1]
    mesh.triangle_uvs = o3d.utility.Vector2dVector(uvs)
    mesh.triangle_material_ids = o3d.utility.IntVector(model.face_materials.astype(np.int32).tolist())
    mesh.textures = [o3d.geometry.Image(np.ascontiguousarray(image)) for image in model.atlas_images]
    return mesh


def check_output_prefix(out_prefix: Union[str, Path]) -> None:
    """Ensure the directory of an output prefix exists.

    Raises:
        InputValidationError: The destination directory does not exist
    """
    directory = Path(out_prefix).parent
    if not directory.is_dir():
        raise InputValidationError(f"Destination directory {directory} does not exist", stage="output")


def save_model(model: Model, out_prefix: Union[str, Path]) -> Path:
    """Write the model as ``<prefix>.obj`` with its MTL file and textures."""
    check_output_prefix(out_prefix)
    obj_path = Path(f"{out_prefix}.obj")
    ok = o3d.io.write_triangle_mesh(str(obj_path), model_to_open3d(model), write_triangle_uvs=True)
    if not ok:
        raise IOError(f"Failed to write {obj_path}")
    logger.info(f"Saved model to {obj_path}")
    return obj_path


def save_model_npz(model: Model, path: Union[str, Path]) -> None:
    """Write the model arrays and atlas images to one ``.npz`` archive."""
    arrays = {
        "vertices": model.vertices,
        "normals": model.normals,
        "texcoords": model.texcoords,
        "faces": model.faces,
        "face_materials": model.face_materials,
        "source_faces": model.source_faces,
    }
    for i, image in enumerate(model.atlas_images):
        arrays[f"atlas_{i}"] = image
    np.savez_compressed(path, **arrays)
    logger.info(f"Saved model arrays to {path}")
