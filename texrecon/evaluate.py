"""Timing utilities and texturing metrics."""

from __future__ import annotations

import csv
import logging
import time
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)


class Timer:
    """Utility class for timing operations with context manager support."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        """Initialize timer.

        Args:
            name: Timer name for logging
            logger: Logger to use (if None, uses module logger)
        """
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.end_time = None
        self._timings = {}

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self.end_time = None

    def stop(self) -> float:
        """Stop the timer and return elapsed time.

        Returns:
            Elapsed time in seconds
        """
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def lap(self, name: str) -> float:
        """Record a lap time with a given name.

        Args:
            name: Lap name

        Returns:
            Time since the previous lap (or the start) in seconds
        """
        current_time = time.perf_counter()
        if self.start_time is None:
            self.start_time = current_time

        last_time = self._timings.get("__last", self.start_time)
        lap_time = current_time - last_time

        self._timings["__last"] = current_time
        self._timings[name] = lap_time

        self.logger.debug(f"{self.name} - {name}: {lap_time:.4f}s")
        return lap_time

    @property
    def timings(self) -> Dict[str, float]:
        return {k: v for k, v in self._timings.items() if k != "__last"}

    @property
    def elapsed(self) -> float:
        """Elapsed time in seconds; frozen once the timer is stopped."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class TexturingMetrics:
    """Counts and stage timings of one texturing run."""

    def __init__(self):
        self.metrics = {
            "num_faces": 0,
            "num_views": 0,
            "data_cost_entries": 0,
            "unseen_faces": 0,
            "initial_energy": None,
            "final_energy": None,
            "view_selection_iterations": 0,
            "num_patches": 0,
            "seam_error_before": None,
            "seam_error_after": None,
            "num_atlases": 0,
            "model_vertices": 0,
            "model_faces": 0,
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, Dict, None]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        self.metrics["stage_timings"][stage_name] = time_s

    def to_dict(self) -> Dict:
        result = self.metrics.copy()
        result["stage_timings"] = dict(self.metrics["stage_timings"])
        return result

    def summary(self) -> str:
        """Generate a human-readable summary of metrics.

        Returns:
            Summary string
        """
        m = self.metrics
        lines = [
            "Texturing Metrics:",
            f"  Faces: {m['num_faces']}",
            f"  Views: {m['num_views']}",
            f"  Data cost entries: {m['data_cost_entries']}",
            f"  Faces without a view: {m['unseen_faces']}",
        ]

        if m["initial_energy"] is not None and m["final_energy"] is not None:
            lines.append(
                f"  Labeling energy: {m['initial_energy']:.4f} -> {m['final_energy']:.4f} "
                f"({m['view_selection_iterations']} iterations)"
            )

        lines.append(f"  Texture patches: {m['num_patches']}")

        if m["seam_error_before"] is not None and m["seam_error_after"] is not None:
            lines.append(f"  Seam colour error: {m['seam_error_before']:.2f} -> {m['seam_error_after']:.2f}")

        lines.append(f"  Atlases: {m['num_atlases']}")
        lines.append(f"  Model: {m['model_vertices']} vertices, {m['model_faces']} faces")
        lines.append(f"  Total runtime: {m['runtime_s']:.2f}s")

        if m["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in m["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.2f}s")

        return "\n".join(lines)

    def write_timings_csv(self, path: Union[str, Path]) -> None:
        """Write stage timings as ``stage,seconds`` rows."""
        with open(path, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(["stage", "seconds"])
            for stage, time_s in self.metrics["stage_timings"].items():
                writer.writerow([stage, f"{time_s:.6f}"])
            writer.writerow(["total", f"{self.metrics['runtime_s']:.6f}"])
        logger.info(f"Timings written to {path}")
