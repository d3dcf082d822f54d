"""
Linescan Jitter Solver Package

A Python package to reduce high-frequency attitude and position jitter in
linescan (pushbroom) cameras. The time-sampled orientations and positions of
already bundle-adjusted cameras, and the triangulated points of a control
network, are refined jointly by robust least squares on pixel reprojection
errors.

Each observation depends only on the few pose samples around its
acquisition time, so each residual is tied to a small window of samples.

Conventions:
    - Quaternions are (x, y, z, w), camera-to-world
    - Pixels are (sample, line), line increasing with time
    - Poses are Lagrange-interpolated over 8 samples by default

Supported Formats:
    - Linescan camera YAML files
    - CSV triangulated points and pixel observations
"""

from .exceptions import JitterSolveError, ConfigurationError, DataError
from .config import Config, SolverOptions, OutlierOptions, ReferenceDemOptions, FilePaths
from .sampling import PoseSampleSequence, check_spacing
from .camera import LinescanCamera, ProjectionError
from .network import ControlNetwork, Observation
from .window import SampleWindow, resolve_window
from .residual import WindowedReprojectionResidual
from .outliers import flag_outliers
from .problem import JitterProblem, ParamKind
from .solver import JitterSolver, SolveSummary, TerminationType, run_jitter_solve
from .data_loader import DataLoader, load_camera, save_camera, save_cameras, save_points

__version__ = "1.0.0"
__all__ = [
    "JitterSolveError",
    "ConfigurationError",
    "DataError",
    "Config",
    "SolverOptions",
    "OutlierOptions",
    "ReferenceDemOptions",
    "FilePaths",
    "PoseSampleSequence",
    "check_spacing",
    "LinescanCamera",
    "ProjectionError",
    "ControlNetwork",
    "Observation",
    "SampleWindow",
    "resolve_window",
    "WindowedReprojectionResidual",
    "flag_outliers",
    "JitterProblem",
    "ParamKind",
    "JitterSolver",
    "SolveSummary",
    "TerminationType",
    "run_jitter_solve",
    "DataLoader",
    "load_camera",
    "save_camera",
    "save_cameras",
    "save_points",
]
