"""
Tests for the command-line interface.
"""

import os
import csv
import pytest
import tempfile
import yaml
import numpy as np
from numpy.testing import assert_allclose

from jitter_solve.cli import main
from jitter_solve.data_loader import load_camera, save_cameras, save_points


class TestCLI:
    """End-to-end runs of jitter-solve."""

    @pytest.fixture
    def config_path(self, cameras, network):
        """Configuration and data for the synthetic scene."""
        with tempfile.TemporaryDirectory() as tmpdir:
            camera_paths = save_cameras(cameras, os.path.join(tmpdir, "input"))
            save_points(network, os.path.join(tmpdir, "points.csv"))
            with open(os.path.join(tmpdir, "observations.csv"), 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow(['point_id', 'camera_index', 'sample', 'line'])
                for o in network.observations:
                    writer.writerow([o.point_index, o.camera_index, repr(o.pixel[0]), repr(o.pixel[1])])

            config = {
                'files': {
                    'cameras': [os.path.basename(p) for p in camera_paths],
                    'points': 'points.csv',
                    'observations': 'observations.csv',
                },
                'solver': {'num_iterations': 20, 'num_threads': 1},
                'output_prefix': 'out/run',
            }
            path = os.path.join(tmpdir, "config.yaml")
            with open(path, 'w') as f:
                yaml.dump(config, f)
            yield path

    def test_solve_writes_outputs(self, config_path, cameras, capsys):
        assert main([config_path]) == 0

        out_dir = os.path.join(os.path.dirname(config_path), "out")
        assert sorted(os.listdir(out_dir)) == [
            "run-cam0.yaml", "run-cam1.yaml", "run-cam2.yaml", "run-points.csv"
        ]
        # Points are rounded on output, so the solve starts slightly off
        refined = load_camera(os.path.join(out_dir, "run-cam1.yaml"))
        assert_allclose(refined.positions.values, cameras[1].positions.values, atol=1e-2)
        assert_allclose(np.linalg.norm(refined.quaternions.values, axis=1), 1.0)

        assert "JITTER SOLVE SUMMARY" in capsys.readouterr().out

    def test_output_prefix_option(self, config_path):
        prefix = os.path.join(os.path.dirname(config_path), "other", "cams")
        assert main([config_path, "--output-prefix", prefix]) == 0
        assert os.path.exists(prefix + "-cam0.yaml")
        assert os.path.exists(prefix + "-points.csv")

    def test_missing_config(self):
        assert main(["/nonexistent/config.yaml"]) == 1

    def test_invalid_config(self, config_path):
        with open(config_path) as f:
            config = yaml.safe_load(f)
        config['solver']['robust_threshold'] = -1.0
        with open(config_path, 'w') as f:
            yaml.dump(config, f)

        assert main([config_path]) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
