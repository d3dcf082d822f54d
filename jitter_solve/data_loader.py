"""
Data loader module for reading and writing cameras and control networks.

Supports:
    - Linescan camera YAML files (one per image)
    - CSV triangulated points
    - CSV pixel observations

Camera YAML Format:
    name: cam0
    first_line_time: 5.0
    dt_line: 0.01
    focal_length: 1000.0
    detector_center: 500.0
    num_lines: 1000
    num_samples: 1000
    quaternions: {t0: 0.0, dt: 1.0, values: [[x, y, z, w], ...]}
    positions: {t0: 0.0, dt: 1.0, values: [[x, y, z], ...]}

    Sample grids may instead be given as explicit times, which must be
    uniformly spaced:
    quaternions: {times: [0.0, 1.0, ...], values: [...]}

Points CSV Format:
    point_id, x, y, z

Observations CSV Format:
    point_id, camera_index, sample, line
"""

import csv
import numpy as np
from pathlib import Path
from typing import Dict, List, Optional
import yaml
import logging

from .camera import LinescanCamera
from .config import FilePaths
from .exceptions import DataError
from .network import ControlNetwork
from .sampling import PoseSampleSequence

logger = logging.getLogger(__name__)


def _read_csv_rows(path: Path, required: set) -> List[Dict[str, str]]:
    with open(path, 'r', newline='') as f:
        reader = csv.DictReader(f)

        if not required.issubset(reader.fieldnames or []):
            raise ValueError(
                f"Missing required columns in {path}. "
                f"Required: {required}, Found: {reader.fieldnames}"
            )
        return list(reader)


def _sequence_from_dict(data: Dict, tag: str) -> Dict:
    """Normalize an explicit-times sample grid to t0 / dt form."""
    if 'times' not in data:
        return data
    seq = PoseSampleSequence.from_times(data['times'], data['values'], tag=tag)
    return {'t0': seq.t0, 'dt': seq.dt, 'values': seq.values.tolist()}


def load_camera(path: str) -> LinescanCamera:
    """
    Load a linescan camera from a YAML file.

    Args:
        path: Camera file path

    Returns:
        LinescanCamera; its name defaults to the file stem
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Camera file not found: {path}")

    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}

    try:
        data['quaternions'] = _sequence_from_dict(data['quaternions'], 'quaternion')
        data['positions'] = _sequence_from_dict(data['positions'], 'position')
        data.setdefault('name', path.stem)
        camera = LinescanCamera.from_dict(data)
    except KeyError as e:
        raise DataError(f"Missing camera entry {e} in {path}") from e

    logger.debug(f"Loaded camera {camera.name} from {path}")
    return camera


def save_camera(camera: LinescanCamera, path: str) -> None:
    """Write a linescan camera to a YAML file."""
    with open(path, 'w') as f:
        yaml.dump(camera.to_dict(), f, default_flow_style=False, sort_keys=False)
    logger.debug(f"Camera {camera.name} saved to {path}")


class DataLoader:
    """
    Loads cameras and the control network from files.

    Workflow:
        1. Load one camera per camera file
        2. Load triangulated points
        3. Load observations, mapping point ids to point indices
        4. Check the network against the cameras
    """

    def __init__(self, file_paths: FilePaths):
        """
        Initialize data loader.

        Args:
            file_paths: Paths to the data files
        """
        self.file_paths = file_paths

        self.cameras: List[LinescanCamera] = []
        self.network: Optional[ControlNetwork] = None

    def load_all(self) -> None:
        """Load all data files."""
        self.load_cameras()
        self.load_points()
        self.load_observations()
        self.network.validate(len(self.cameras))

    def load_cameras(self) -> None:
        self.cameras = [load_camera(p) for p in self.file_paths.cameras]
        logger.info(f"Loaded {len(self.cameras)} cameras")

    def load_points(self) -> None:
        """
        Load triangulated points.

        Expected columns: point_id, x, y, z
        """
        path = Path(self.file_paths.points)
        if not path.exists():
            raise FileNotFoundError(f"Points file not found: {path}")

        rows = _read_csv_rows(path, {'point_id', 'x', 'y', 'z'})
        point_ids = [row['point_id'].strip() for row in rows]
        if len(set(point_ids)) != len(point_ids):
            raise DataError(f"Found duplicate point ids in {path}")

        points = np.array(
            [[float(row['x']), float(row['y']), float(row['z'])] for row in rows]
        )
        self.network = ControlNetwork(points=points, point_ids=point_ids)
        logger.info(f"Loaded {self.network.num_points} triangulated points")

    def load_observations(self) -> None:
        """
        Load pixel observations. Points must be loaded first.

        Expected columns: point_id, camera_index, sample, line
        """
        if self.network is None:
            raise DataError("Points must be loaded before observations.")

        path = Path(self.file_paths.observations)
        if not path.exists():
            raise FileNotFoundError(f"Observations file not found: {path}")

        rows = _read_csv_rows(path, {'point_id', 'camera_index', 'sample', 'line'})
        index_of = {pid: i for i, pid in enumerate(self.network.point_ids)}

        skipped = 0
        for row in rows:
            point_id = row['point_id'].strip()
            if point_id not in index_of:
                skipped += 1
                continue
            self.network.add_observation(
                int(row['camera_index']),
                index_of[point_id],
                (float(row['sample']), float(row['line'])),
            )

        if skipped:
            logger.warning(f"Skipped {skipped} observations of unknown points")
        logger.info(f"Loaded {len(self.network.observations)} observations")

    def get_statistics(self) -> Dict[str, int]:
        """Get summary statistics about loaded data."""
        stats = {'num_cameras': len(self.cameras)}
        if self.network is not None:
            stats.update(self.network.get_statistics())
        return stats


def save_cameras(cameras: List[LinescanCamera], output_prefix: str) -> List[str]:
    """
    Write each camera to ``<output_prefix>-<name>.yaml``.

    Cameras without a name are written under their index.

    Returns:
        Written file paths, in camera order
    """
    Path(output_prefix).parent.mkdir(parents=True, exist_ok=True)

    paths = []
    for i, camera in enumerate(cameras):
        path = f"{output_prefix}-{camera.name or i}.yaml"
        save_camera(camera, path)
        paths.append(path)

    logger.info(f"Wrote {len(paths)} cameras with prefix {output_prefix}")
    return paths


def save_points(network: ControlNetwork, path: str) -> None:
    """Write the network points to CSV (point_id, x, y, z)."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(['point_id', 'x', 'y', 'z'])
        for point_id, (x, y, z) in zip(network.point_ids, network.points):
            writer.writerow([point_id, repr(float(x)), repr(float(y)), repr(float(z))])

    logger.info(f"Points saved to {path}")
