"""Texturing pipeline: from a mesh and calibrated views to a textured model.

Stages run strictly one after another; each may use a worker pool
internally but finishes all of its work before the next stage starts:

1. adjacency graph
2. data costs (computed, loaded from file or supplied)
3. view selection (or a labeling loaded from file or supplied)
4. texture patches
5. seam leveling
6. texture atlases
7. model assembly
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np

from texrecon.atlas import generate_texture_atlases
from texrecon.data_costs import DataCosts, calculate_data_costs, load_data_costs, save_data_costs
from texrecon.debug import generate_debug_embeddings
from texrecon.errors import InputValidationError
from texrecon.evaluate import Timer, TexturingMetrics
from texrecon.graph import AdjacencyGraph, build_adjacency_graph
from texrecon.io import check_output_prefix
from texrecon.model import Model, build_model
from texrecon.patches import generate_texture_patches
from texrecon.scene import TextureView, TriangleMesh, check_views, prepare_mesh
from texrecon.seam_leveling import level_seams, seam_color_error
from texrecon.settings import Settings
from texrecon.view_selection import apply_labeling, load_labeling, save_labeling, view_selection

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class TexturingResult:
    """Output of one pipeline run.

    Attributes:
        model: Textured model
        graph: Adjacency graph carrying the final labels
        metrics: Counts and stage timings
        view_selection_model: Model coloured by source view, if requested
    """

    model: Model
    graph: AdjacencyGraph
    metrics: TexturingMetrics
    view_selection_model: Optional[Model] = None


def _check_data_costs(data_costs: DataCosts, mesh: TriangleMesh, views: List[TextureView]) -> None:
    if data_costs.num_faces != mesh.num_faces or data_costs.num_views > len(views):
        raise InputValidationError(
            f"Wrong data costs for this mesh/scene combination: table covers "
            f"{data_costs.num_faces} faces and {data_costs.num_views} views, scene has "
            f"{mesh.num_faces} faces and {len(views)} views",
            stage="data costs",
        )


def _obtain_data_costs(
    mesh: TriangleMesh,
    views: List[TextureView],
    settings: Settings,
    out_prefix: Optional[str],
    data_costs: Optional[DataCosts],
) -> DataCosts:
    if data_costs is not None:
        _check_data_costs(data_costs, mesh, views)
        return data_costs
    if settings.data_cost_file:
        logger.info(f"Loading data costs from {settings.data_cost_file}")
        return load_data_costs(settings.data_cost_file, num_faces=mesh.num_faces, num_views=len(views))

    data_costs = calculate_data_costs(mesh, views, settings)
    if settings.write_intermediate_results and out_prefix:
        save_data_costs(data_costs, f"{out_prefix}_data_costs.spt")
    return data_costs


def build_textured_model(
    mesh: TriangleMesh,
    views: List[TextureView],
    graph: AdjacencyGraph,
    settings: Settings,
    metrics: Optional[TexturingMetrics] = None,
) -> Model:
    """Run patch generation, seam leveling, atlas packing and model assembly.

    Args:
        mesh: Prepared mesh
        views: Texture views
        graph: Adjacency graph with final labels
        settings: Pipeline settings
        metrics: Metrics to record stage timings in

    Returns:
        Textured model
    """
    metrics = metrics or TexturingMetrics()

    with Timer("Texture patches") as timer:
        patches, vertex_infos = generate_texture_patches(graph, mesh, views, settings)
    metrics.update_stage_timing("texture_patches", timer.elapsed)
    metrics.update("num_patches", len(patches))

    with Timer("Seam leveling") as timer:
        metrics.update("seam_error_before", seam_color_error(patches, vertex_infos))
        level_seams(mesh, vertex_infos, patches, settings)
        metrics.update("seam_error_after", seam_color_error(patches, vertex_infos))
    metrics.update_stage_timing("seam_leveling", timer.elapsed)

    with Timer("Texture atlases") as timer:
        atlases = generate_texture_atlases(patches, settings)
    metrics.update_stage_timing("texture_atlases", timer.elapsed)
    metrics.update("num_atlases", len(atlases))

    with Timer("Model assembly") as timer:
        model = build_model(mesh, atlases)
    metrics.update_stage_timing("model_assembly", timer.elapsed)
    return model


def texture_mesh(
    mesh: TriangleMesh,
    views: List[TextureView],
    settings: Optional[Settings] = None,
    out_prefix: Optional[str] = None,
    labeling: Optional[Sequence[int]] = None,
    data_costs: Optional[DataCosts] = None,
) -> TexturingResult:
    """Texture a mesh from calibrated views.

    Args:
        mesh: Triangle mesh to texture
        views: Texture views with ids 1..V
        settings: Pipeline settings, defaults if None
        out_prefix: Prefix for the ``.conf``, intermediate and timing files;
            nothing is written when None
        labeling: Precomputed face labels, skips data costs and view selection
        data_costs: Precomputed data cost table, skips its computation

    Returns:
        Textured model, labeled graph and metrics
    """
    settings = settings or Settings()
    settings.validate()
    pipeline_timer = Timer("Pipeline")
    pipeline_timer.start()
    metrics = TexturingMetrics()

    mesh = prepare_mesh(mesh)
    check_views(views)
    metrics.update("num_faces", mesh.num_faces)
    metrics.update("num_views", len(views))

    if out_prefix:
        check_output_prefix(out_prefix)
        Path(f"{out_prefix}.conf").write_text(settings.to_string())

    with Timer("Adjacency graph") as timer:
        graph = build_adjacency_graph(mesh, len(views))
    metrics.update_stage_timing("adjacency_graph", timer.elapsed)

    if labeling is None and settings.labeling_file:
        logger.info(f"Loading labeling from {settings.labeling_file}")
        labeling = load_labeling(settings.labeling_file)

    if labeling is not None:
        apply_labeling(graph, labeling, len(views))
    else:
        with Timer("Data costs") as timer:
            data_costs = _obtain_data_costs(mesh, views, settings, out_prefix, data_costs)
        metrics.update_stage_timing("data_costs", timer.elapsed)
        metrics.update("data_cost_entries", data_costs.nnz)

        with Timer("View selection") as timer:
            result = view_selection(
                data_costs,
                graph,
                smoothness_weight=settings.smoothness_weight,
                max_iterations=settings.max_iterations,
                min_patch_faces=settings.min_patch_faces,
            )
        metrics.update_stage_timing("view_selection", timer.elapsed)
        metrics.update("initial_energy", result.initial_energy)
        metrics.update("final_energy", result.final_energy)
        metrics.update("view_selection_iterations", result.iterations)

        if settings.write_intermediate_results and out_prefix:
            save_labeling(graph.labels, f"{out_prefix}_labeling.vec")

    metrics.update("unseen_faces", int(np.sum(graph.labels == 0)))

    view_selection_model = None
    if settings.write_view_selection_model:
        with Timer("View selection model") as timer:
            debug_settings = dataclasses.replace(
                settings, global_seam_leveling=False, local_seam_leveling=False
            )
            view_selection_model = build_textured_model(
                mesh, generate_debug_embeddings(views), graph, debug_settings
            )
        metrics.update_stage_timing("view_selection_model", timer.elapsed)

    model = build_textured_model(mesh, views, graph, settings, metrics)
    metrics.update("model_vertices", model.num_vertices)
    metrics.update("model_faces", model.num_faces)
    metrics.update("runtime_s", pipeline_timer.stop())

    if settings.write_timings and out_prefix:
        metrics.write_timings_csv(f"{out_prefix}_timings.csv")

    logger.info("\n" + metrics.summary())
    return TexturingResult(model, graph, metrics, view_selection_model)
