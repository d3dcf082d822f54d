"""
Configuration module for the jitter solver.

Handles loading and validation of configuration from YAML files.
"""

import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional
import logging

from .exceptions import ConfigurationError
from .window import default_line_extra

logger = logging.getLogger(__name__)


def _optional(convert, value):
    return None if value is None else convert(value)


def _as_bool(value) -> bool:
    # YAML leaves quoted values as strings
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', 'on', '1')
    return bool(value)


@dataclass
class SolverOptions:
    """Least-squares solver settings."""
    robust_threshold: float = 0.5  # Cauchy loss scale (pixels)
    parameter_tolerance: float = 1e-12  # Relative change in the variables
    num_iterations: int = 500  # Maximum number of iterations
    gradient_tolerance: float = 1e-15
    function_tolerance: float = 1e-15
    num_threads: Optional[int] = None  # None: use all available cores
    single_threaded_cameras: bool = False  # Force one thread for all cameras
    desired_precision: float = 1e-12  # Line-search precision in projections

    @property
    def max_consecutive_invalid_steps(self) -> int:
        """Number of non-productive steps in a row before giving up."""
        return max(5, self.num_iterations // 5)


@dataclass
class OutlierOptions:
    """
    Initial outlier filtering.

    Triangulated points projecting with an error above the threshold in any
    of the initial cameras are excluded from the solve.
    """
    max_initial_reprojection_error: float = 5.0  # pixels
    line_extra: Optional[float] = None  # Along-track window margin (lines)

    @property
    def effective_line_extra(self) -> float:
        if self.line_extra is not None:
            return self.line_extra
        return default_line_extra(self.max_initial_reprojection_error)


@dataclass
class ReferenceDemOptions:
    """Ground anchoring to a reference elevation surface (not applied yet)."""
    path: Optional[str] = None
    weight: float = 1.0
    robust_threshold: float = 0.5


@dataclass
class FilePaths:
    """Paths to input data files."""
    cameras: List[str]  # One linescan camera YAML file per image
    points: str  # Triangulated points CSV: point_id, x, y, z
    observations: str  # Observations CSV: point_id, camera_index, sample, line
    images: List[str] = field(default_factory=list)  # Optional, must match cameras


@dataclass
class Config:
    """
    Main configuration class for the jitter solver.

    Attributes:
        files: Paths to input data files
        solver: Least-squares solver settings
        outliers: Initial outlier filtering
        reference_dem: Ground anchoring settings
        output_prefix: Prefix for the refined cameras and points
    """
    files: FilePaths
    solver: SolverOptions = field(default_factory=SolverOptions)
    outliers: OutlierOptions = field(default_factory=OutlierOptions)
    reference_dem: ReferenceDemOptions = field(default_factory=ReferenceDemOptions)
    output_prefix: Optional[str] = None

    def validate(self) -> None:
        """
        Check the configuration for malformed or contradictory values.

        Raises:
            ConfigurationError: On the first problem found
        """
        if not self.files.cameras:
            raise ConfigurationError("Missing input camera files.")
        if self.files.images and len(self.files.images) != len(self.files.cameras):
            raise ConfigurationError("Must have as many cameras as have images.")
        if len(set(self.files.cameras)) != len(self.files.cameras):
            raise ConfigurationError("Found duplicate camera file names.")

        s = self.solver
        if s.robust_threshold <= 0:
            raise ConfigurationError("Must have a positive robust threshold.")
        if s.parameter_tolerance <= 0:
            raise ConfigurationError("Must have a positive parameter tolerance.")
        if s.gradient_tolerance <= 0 or s.function_tolerance <= 0:
            raise ConfigurationError("Must have positive gradient and function tolerances.")
        if s.num_iterations < 1:
            raise ConfigurationError("Must allow at least one iteration.")
        if s.num_threads is not None and s.num_threads < 1:
            raise ConfigurationError("Must use at least one thread.")
        if s.desired_precision <= 0:
            raise ConfigurationError("Must have a positive projection precision.")

        o = self.outliers
        if o.max_initial_reprojection_error <= 0:
            raise ConfigurationError("Must have a positive max initial reprojection error.")
        if o.line_extra is not None and o.line_extra < 0:
            raise ConfigurationError("The along-track window margin cannot be negative.")

        d = self.reference_dem
        if d.weight <= 0 or d.robust_threshold <= 0:
            raise ConfigurationError(
                "Must have a positive reference DEM weight and robust threshold."
            )

    @classmethod
    def from_yaml(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Validated Config object

        Example YAML structure:
            files:
              cameras: ["cam0.yaml", "cam1.yaml", "cam2.yaml"]
              points: "points.csv"
              observations: "observations.csv"
            solver:
              robust_threshold: 0.5
              parameter_tolerance: 1.0e-12
              num_iterations: 500
              num_threads: 4
              single_threaded_cameras: false
            outliers:
              max_initial_reprojection_error: 5.0
            reference_dem:
              path: null
            output_prefix: "run/jitter"
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        logger.info(f"Loading configuration from {config_path}")

        # Resolve paths relative to config file location
        config_dir = path.parent

        files_data = data.get('files', {})
        try:
            files = FilePaths(
                cameras=[str(config_dir / p) for p in files_data.get('cameras', [])],
                points=str(config_dir / files_data['points']),
                observations=str(config_dir / files_data['observations']),
                images=[str(config_dir / p) for p in files_data.get('images', [])],
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing file entry in configuration: {e}") from e

        solver_data = data.get('solver', {})
        solver = SolverOptions(
            robust_threshold=float(solver_data.get('robust_threshold', 0.5)),
            parameter_tolerance=float(solver_data.get('parameter_tolerance', 1e-12)),
            num_iterations=int(solver_data.get('num_iterations', 500)),
            gradient_tolerance=float(solver_data.get('gradient_tolerance', 1e-15)),
            function_tolerance=float(solver_data.get('function_tolerance', 1e-15)),
            num_threads=_optional(int, solver_data.get('num_threads')),
            single_threaded_cameras=_as_bool(solver_data.get('single_threaded_cameras', False)),
            desired_precision=float(solver_data.get('desired_precision', 1e-12)),
        )

        outlier_data = data.get('outliers', {})
        outliers = OutlierOptions(
            max_initial_reprojection_error=float(
                outlier_data.get('max_initial_reprojection_error', 5.0)
            ),
            line_extra=_optional(float, outlier_data.get('line_extra')),
        )

        dem_data = data.get('reference_dem', {})
        dem_path = dem_data.get('path')
        reference_dem = ReferenceDemOptions(
            path=str(config_dir / dem_path) if dem_path else None,
            weight=float(dem_data.get('weight', 1.0)),
            robust_threshold=float(dem_data.get('robust_threshold', 0.5)),
        )

        output_prefix = data.get('output_prefix')
        if output_prefix:
            output_prefix = str(config_dir / output_prefix)

        config = cls(
            files=files,
            solver=solver,
            outliers=outliers,
            reference_dem=reference_dem,
            output_prefix=output_prefix,
        )
        config.validate()
        return config

    def to_yaml(self, config_path: str) -> None:
        """Save configuration to a YAML file."""
        data = {
            'files': {
                'cameras': list(self.files.cameras),
                'points': self.files.points,
                'observations': self.files.observations,
                'images': list(self.files.images),
            },
            'solver': {
                'robust_threshold': self.solver.robust_threshold,
                'parameter_tolerance': self.solver.parameter_tolerance,
                'num_iterations': self.solver.num_iterations,
                'gradient_tolerance': self.solver.gradient_tolerance,
                'function_tolerance': self.solver.function_tolerance,
                'num_threads': self.solver.num_threads,
                'single_threaded_cameras': self.solver.single_threaded_cameras,
                'desired_precision': self.solver.desired_precision,
            },
            'outliers': {
                'max_initial_reprojection_error': self.outliers.max_initial_reprojection_error,
                'line_extra': self.outliers.line_extra,
            },
            'reference_dem': {
                'path': self.reference_dem.path,
                'weight': self.reference_dem.weight,
                'robust_threshold': self.reference_dem.robust_threshold,
            },
            'output_prefix': self.output_prefix,
        }

        with open(config_path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {config_path}")
