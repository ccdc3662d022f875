"""Configuration for the texturing pipeline.

Settings are read from a YAML file and merged over the defaults defined
here. The seam leveling choice is resolved once into a ``SeamLevelingMode``.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from texrecon.errors import InputValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


class SeamLevelingMode(enum.Enum):
    """Which seam leveling passes run after patch generation."""

    NONE = "none"
    GLOBAL = "global"
    LOCAL = "local"
    BOTH = "both"

    @property
    def runs_global(self) -> bool:
        return self in (SeamLevelingMode.GLOBAL, SeamLevelingMode.BOTH)

    @property
    def runs_local(self) -> bool:
        return self in (SeamLevelingMode.LOCAL, SeamLevelingMode.BOTH)


class DataTerm(enum.Enum):
    """Per (face, view) quality measure used for the data costs."""

    AREA = "area"
    GMI = "gmi"


@dataclasses.dataclass
class Settings:
    """All recognized pipeline options."""

    # Seam leveling
    global_seam_leveling: bool = True
    local_seam_leveling: bool = True
    lambda_smooth: float = 0.1
    lambda_anchor: float = 1e-3
    local_band_width: int = 20
    local_samples_per_edge: int = 8

    # Intermediate files
    data_cost_file: Optional[str] = None
    labeling_file: Optional[str] = None
    write_intermediate_results: bool = False
    write_view_selection_model: bool = False
    write_timings: bool = False

    # Data costs
    data_term: DataTerm = DataTerm.AREA
    geometric_visibility_test: bool = True
    min_cos_angle: float = 0.05

    # View selection
    smoothness_weight: float = 1.0
    max_iterations: int = 10
    min_patch_faces: int = 1

    # Patches and atlases
    keep_unseen_faces: bool = False
    untextured_color: Tuple[int, int, int] = (128, 128, 128)
    patch_padding: int = 2
    max_atlas_size: int = 4096

    # Worker pool
    num_workers: Optional[int] = None

    @property
    def seam_leveling_mode(self) -> SeamLevelingMode:
        if self.global_seam_leveling and self.local_seam_leveling:
            return SeamLevelingMode.BOTH
        if self.global_seam_leveling:
            return SeamLevelingMode.GLOBAL
        if self.local_seam_leveling:
            return SeamLevelingMode.LOCAL
        return SeamLevelingMode.NONE

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "Settings":
        """Build settings from a flat dictionary, validating keys and values.

        Args:
            values: Option names mapped to values

        Returns:
            Settings instance
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InputValidationError(
                f"Unknown configuration options: {', '.join(unknown)}", stage="configuration"
            )

        values = dict(values)
        try:
            if "data_term" in values:
                values["data_term"] = DataTerm(values["data_term"])
            if "untextured_color" in values:
                color = tuple(int(c) for c in values["untextured_color"])
                if len(color) != 3:
                    raise ValueError("untextured_color needs three components")
                values["untextured_color"] = color
        except ValueError as e:
            raise InputValidationError(str(e), stage="configuration") from e

        settings = cls(**values)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Check value ranges."""
        checks = [
            (self.min_patch_faces >= 1, "min_patch_faces must be >= 1"),
            (self.max_iterations >= 0, "max_iterations must be >= 0"),
            (self.smoothness_weight >= 0, "smoothness_weight must be >= 0"),
            (self.max_atlas_size > 0, "max_atlas_size must be positive"),
            (self.patch_padding >= 0, "patch_padding must be >= 0"),
            (self.local_band_width > 0, "local_band_width must be positive"),
            (self.local_samples_per_edge >= 2, "local_samples_per_edge must be >= 2"),
            (self.lambda_smooth >= 0, "lambda_smooth must be >= 0"),
            (self.lambda_anchor >= 0, "lambda_anchor must be >= 0"),
            (-1.0 <= self.min_cos_angle < 1.0, "min_cos_angle must lie in [-1, 1)"),
        ]
        for ok, message in checks:
            if not ok:
                raise InputValidationError(message, stage="configuration")

    def to_dict(self) -> Dict[str, Any]:
        values = dataclasses.asdict(self)
        values["data_term"] = self.data_term.value
        values["untextured_color"] = list(self.untextured_color)
        return values

    def to_string(self) -> str:
        """Render the settings as YAML, as written to ``<prefix>.conf``."""
        return yaml.safe_dump(self.to_dict(), sort_keys=True)


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Load settings from a YAML file.

    Args:
        config_path: Path to configuration file, defaults to ``config.yaml``
            at the repository root (skipped if missing)
        overrides: Values taking precedence over the file (e.g. CLI flags)

    Returns:
        Validated settings
    """
    values: Dict[str, Any] = {}
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    if path.exists():
        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise InputValidationError(f"{path} does not contain a mapping", stage="configuration")
        values.update(loaded)
        logger.debug(f"Loaded configuration from {path}")
    elif config_path is not None:
        raise InputValidationError(f"Configuration file {path} does not exist", stage="configuration")

    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    return Settings.from_dict(values)
