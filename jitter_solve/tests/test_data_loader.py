"""
Tests for camera and control network file I/O.
"""

import os
import csv
import pytest
import tempfile
import yaml
import numpy as np
from numpy.testing import assert_allclose

from jitter_solve.config import FilePaths
from jitter_solve.data_loader import (
    DataLoader,
    load_camera,
    save_camera,
    save_cameras,
    save_points,
)
from jitter_solve.exceptions import ConfigurationError, DataError


def write_csv(path, header, rows):
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(header)
        writer.writerows(rows)


class TestCameraFiles:
    """Tests for linescan camera YAML files."""

    def test_save_and_load(self, camera):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "cam.yaml")
            save_camera(camera, path)
            loaded = load_camera(path)

        point = [20.0, 800.0, 3.0]
        assert_allclose(loaded.project(point, 1e-12), camera.project(point, 1e-12), atol=1e-9)
        assert loaded.name == camera.name

    def test_name_defaults_to_file_stem(self, camera):
        data = camera.to_dict()
        del data['name']
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "left_view.yaml")
            with open(path, 'w') as f:
                yaml.dump(data, f)
            assert load_camera(path).name == "left_view"

    def test_explicit_sample_times(self, camera):
        data = camera.to_dict()
        data['positions'] = {
            'times': [100.0 + 0.5 * k for k in range(20)],
            'values': data['positions']['values'],
        }
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "cam.yaml")
            with open(path, 'w') as f:
                yaml.dump(data, f)
            loaded = load_camera(path)

        assert loaded.positions.t0 == pytest.approx(100.0)
        assert loaded.positions.dt == pytest.approx(0.5)

    def test_non_uniform_sample_times(self, camera):
        data = camera.to_dict()
        times = [float(k) for k in range(20)]
        times[7] += 0.01
        data['quaternions'] = {'times': times, 'values': data['quaternions']['values']}
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "cam.yaml")
            with open(path, 'w') as f:
                yaml.dump(data, f)
            with pytest.raises(ConfigurationError, match="quaternion"):
                load_camera(path)

    def test_missing_entry(self, camera):
        data = camera.to_dict()
        del data['dt_line']
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "cam.yaml")
            with open(path, 'w') as f:
                yaml.dump(data, f)
            with pytest.raises(DataError, match="dt_line"):
                load_camera(path)

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_camera("/nonexistent/cam.yaml")


class TestDataLoader:
    """Tests for loading a full data set."""

    @pytest.fixture
    def data_dir(self, cameras, network):
        """Directory with the synthetic scene written to disk."""
        with tempfile.TemporaryDirectory() as tmpdir:
            camera_paths = save_cameras(cameras, os.path.join(tmpdir, "input"))
            save_points(network, os.path.join(tmpdir, "points.csv"))
            write_csv(
                os.path.join(tmpdir, "observations.csv"),
                ['point_id', 'camera_index', 'sample', 'line'],
                [
                    [network.point_ids[o.point_index], o.camera_index,
                     repr(o.pixel[0]), repr(o.pixel[1])]
                    for o in network.observations
                ],
            )
            yield tmpdir, camera_paths

    def file_paths(self, tmpdir, camera_paths):
        return FilePaths(
            cameras=camera_paths,
            points=os.path.join(tmpdir, "points.csv"),
            observations=os.path.join(tmpdir, "observations.csv"),
        )

    def test_save_cameras_names(self, data_dir):
        tmpdir, camera_paths = data_dir
        assert [os.path.basename(p) for p in camera_paths] == [
            "input-cam0.yaml", "input-cam1.yaml", "input-cam2.yaml"
        ]

    def test_load_all(self, data_dir, network):
        loader = DataLoader(self.file_paths(*data_dir))
        loader.load_all()

        stats = loader.get_statistics()
        assert stats['num_cameras'] == 3
        assert stats['num_points'] == 10
        assert stats['num_observations'] == 30
        assert loader.network.point_ids == network.point_ids
        assert np.array_equal(loader.network.points, network.points)
        assert loader.network.observations == network.observations

    def test_unknown_points_skipped(self, data_dir):
        tmpdir, camera_paths = data_dir
        with open(os.path.join(tmpdir, "observations.csv"), 'a', newline='') as f:
            csv.writer(f).writerow(['no_such_point', 0, 1.0, 2.0])

        loader = DataLoader(self.file_paths(tmpdir, camera_paths))
        loader.load_all()
        assert len(loader.network.observations) == 30

    def test_observation_of_missing_camera(self, data_dir):
        tmpdir, camera_paths = data_dir
        with open(os.path.join(tmpdir, "observations.csv"), 'a', newline='') as f:
            csv.writer(f).writerow(['0', 7, 1.0, 2.0])

        loader = DataLoader(self.file_paths(tmpdir, camera_paths))
        with pytest.raises(DataError, match="refers to camera 7"):
            loader.load_all()

    def test_missing_columns(self, data_dir):
        tmpdir, camera_paths = data_dir
        write_csv(os.path.join(tmpdir, "points.csv"), ['point_id', 'x', 'y'], [['0', 1, 2]])

        loader = DataLoader(self.file_paths(tmpdir, camera_paths))
        with pytest.raises(ValueError, match="Missing required columns"):
            loader.load_points()

    def test_duplicate_point_ids(self, data_dir):
        tmpdir, camera_paths = data_dir
        write_csv(os.path.join(tmpdir, "points.csv"), ['point_id', 'x', 'y', 'z'],
                  [['a', 1, 2, 3], ['a', 4, 5, 6]])

        loader = DataLoader(self.file_paths(tmpdir, camera_paths))
        with pytest.raises(DataError):
            loader.load_points()

    def test_observations_before_points(self, data_dir):
        loader = DataLoader(self.file_paths(*data_dir))
        with pytest.raises(DataError):
            loader.load_observations()

    def test_missing_points_file(self, data_dir):
        tmpdir, camera_paths = data_dir
        paths = self.file_paths(tmpdir, camera_paths)
        paths.points = os.path.join(tmpdir, "missing.csv")
        with pytest.raises(FileNotFoundError):
            DataLoader(paths).load_points()


def test_save_points(network):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "sub", "points.csv")
        save_points(network, path)
        with open(path, newline='') as f:
            rows = list(csv.DictReader(f))

    assert len(rows) == network.num_points
    assert rows[4]['point_id'] == '4'
    assert float(rows[4]['y']) == network.points[4, 1]


def test_save_points_full_precision(network):
    """Refined points survive a write and read without rounding."""
    network.points[2] += [1.23456789012e-7, -3.3e-9, 0.1]
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "points.csv")
        save_points(network, path)
        with open(path, newline='') as f:
            rows = list(csv.DictReader(f))

    restored = np.array([[float(r['x']), float(r['y']), float(r['z'])] for r in rows])
    assert np.array_equal(restored, network.points)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
