#!/usr/bin/env python3
"""
Mesh Texturing Pipeline

This script textures a triangle mesh from a directory of calibrated images
(one ``.cam`` file per image) and writes the textured model as OBJ/MTL with
its atlas textures.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from texrecon import io
from texrecon.errors import TexReconError
from texrecon.evaluate import Timer
from texrecon.settings import load_settings
from texrecon.texturing import texture_mesh


# Set up logging
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("texrecon")


def parse_bool(value: str) -> bool:
    if value.lower() in ("1", "true", "yes", "on"):
        return True
    if value.lower() in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"Expected a boolean, got {value!r}")


def run_texrecon(
    scene_dir: str,
    mesh_path: str,
    out_prefix: str,
    config_path: Optional[str] = None,
    overrides: Optional[Dict] = None,
    save_npz: bool = False,
) -> Dict:
    """Run the texturing pipeline and write its outputs.

    Args:
        scene_dir: Directory with images and ``.cam`` files
        mesh_path: Mesh to texture
        out_prefix: Output path prefix, e.g. ``results/model``
        config_path: Path to configuration file
        overrides: Option values from the command line
        save_npz: Also write the model arrays as ``<prefix>.npz``

    Returns:
        Dictionary of texturing metrics
    """
    io.check_output_prefix(out_prefix)

    # Set up file logging
    file_handler = logging.FileHandler(f"{out_prefix}_log.txt")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)

    settings = load_settings(config_path, overrides)

    with Timer("Load Inputs") as timer:
        views = io.load_scene(scene_dir)
        mesh = io.load_mesh(mesh_path)
    logger.info(f"Inputs loaded in {timer.elapsed:.2f}s")

    result = texture_mesh(mesh, views, settings, out_prefix=out_prefix)

    with Timer("Save Results") as timer:
        io.save_model(result.model, out_prefix)
        if save_npz:
            io.save_model_npz(result.model, f"{out_prefix}.npz")
        if result.view_selection_model is not None:
            io.save_model(result.view_selection_model, f"{out_prefix}_view_selection")
    logger.info(f"Results saved in {timer.elapsed:.2f}s")

    return result.metrics.to_dict()


def main():
    """Main function to parse arguments and run the pipeline."""
    parser = argparse.ArgumentParser(description="Mesh Texturing Pipeline")
    parser.add_argument("scene_dir", help="Directory with images and .cam files")
    parser.add_argument("mesh_path", help="Mesh to texture (PLY, OBJ)")
    parser.add_argument("out_prefix", help="Output path prefix")
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--data-costs", dest="data_cost_file", default=None,
        help="Skip data cost calculation and load the table from this file"
    )
    parser.add_argument(
        "--labeling", dest="labeling_file", default=None,
        help="Skip view selection and load the labeling from this file"
    )
    parser.add_argument(
        "--global-seam-leveling", dest="global_seam_leveling", type=parse_bool, default=None,
        help="Run global seam leveling (true/false)"
    )
    parser.add_argument(
        "--local-seam-leveling", dest="local_seam_leveling", type=parse_bool, default=None,
        help="Run local seam leveling (true/false)"
    )
    parser.add_argument(
        "--keep-unseen-faces", dest="keep_unseen_faces", action="store_true", default=None,
        help="Keep faces without a view in a flat-coloured patch"
    )
    parser.add_argument(
        "--write-intermediate-results", dest="write_intermediate_results", action="store_true", default=None,
        help="Write data costs and labeling next to the output"
    )
    parser.add_argument(
        "--write-view-selection-model", dest="write_view_selection_model", action="store_true", default=None,
        help="Write a model coloured by source view"
    )
    parser.add_argument(
        "--write-timings", dest="write_timings", action="store_true", default=None,
        help="Write stage timings as CSV"
    )
    parser.add_argument(
        "--workers", "-j", dest="num_workers", type=int, default=None,
        help="Number of worker threads"
    )
    parser.add_argument(
        "--npz", dest="save_npz", action="store_true",
        help="Also write the model arrays as .npz"
    )

    args = parser.parse_args()
    option_names = [
        "data_cost_file", "labeling_file", "global_seam_leveling", "local_seam_leveling",
        "keep_unseen_faces", "write_intermediate_results", "write_view_selection_model",
        "write_timings", "num_workers",
    ]
    overrides = {name: getattr(args, name) for name in option_names}

    # Run pipeline
    try:
        run_texrecon(
            args.scene_dir,
            args.mesh_path,
            args.out_prefix,
            args.config_path,
            overrides,
            args.save_npz,
        )
    except TexReconError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Error running pipeline: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
