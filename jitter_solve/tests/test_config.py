"""
Tests for configuration loading and validation.
"""

import os
import pytest
import tempfile
from pathlib import Path

from jitter_solve.config import Config, FilePaths, OutlierOptions, SolverOptions
from jitter_solve.exceptions import ConfigurationError, JitterSolveError


class TestConfig:
    """Tests for YAML configuration files."""

    @pytest.fixture
    def sample_config_content(self):
        """Sample configuration file content."""
        return """files:
  cameras: ["cam0.yaml", "cam1.yaml"]
  points: "points.csv"
  observations: "observations.csv"
solver:
  robust_threshold: 0.8
  parameter_tolerance: 1e-10
  num_iterations: 50
  num_threads: 2
outliers:
  max_initial_reprojection_error: 3.0
output_prefix: "out/run"
"""

    @pytest.fixture
    def temp_config_file(self, sample_config_content):
        """Create a temporary configuration file."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write(sample_config_content)
            temp_path = f.name

        yield temp_path

        os.unlink(temp_path)

    def test_from_yaml(self, temp_config_file):
        config = Config.from_yaml(temp_config_file)
        config_dir = Path(temp_config_file).parent

        assert config.files.cameras == [str(config_dir / "cam0.yaml"), str(config_dir / "cam1.yaml")]
        assert config.files.points == str(config_dir / "points.csv")
        assert config.output_prefix == str(config_dir / "out/run")

        assert config.solver.robust_threshold == pytest.approx(0.8)
        assert config.solver.parameter_tolerance == pytest.approx(1e-10)
        assert config.solver.num_iterations == 50
        assert config.solver.num_threads == 2
        assert config.solver.gradient_tolerance == pytest.approx(1e-15)

        assert config.outliers.max_initial_reprojection_error == pytest.approx(3.0)
        assert config.outliers.effective_line_extra == pytest.approx(8.0)
        assert config.reference_dem.path is None

    def test_round_trip(self, temp_config_file):
        config = Config.from_yaml(temp_config_file)

        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "saved.yaml")
            config.to_yaml(path)
            restored = Config.from_yaml(path)

        assert restored.files == config.files
        assert restored.solver == config.solver
        assert restored.outliers == config.outliers
        assert restored.output_prefix == config.output_prefix

    def test_quoted_values_converted(self):
        content = """files:
  cameras: ["cam0.yaml", "cam1.yaml"]
  points: "points.csv"
  observations: "observations.csv"
solver:
  num_threads: "4"
  single_threaded_cameras: "false"
outliers:
  line_extra: "12"
"""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write(content)
            temp_path = f.name
        try:
            config = Config.from_yaml(temp_path)
        finally:
            os.unlink(temp_path)

        assert config.solver.num_threads == 4
        assert config.solver.single_threaded_cameras is False
        assert config.outliers.line_extra == pytest.approx(12.0)

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml("/nonexistent/config.yaml")

    def test_missing_file_entry(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("files:\n  cameras: [a.yaml, b.yaml]\n")
            temp_path = f.name
        try:
            with pytest.raises(ConfigurationError, match="Missing file entry"):
                Config.from_yaml(temp_path)
        finally:
            os.unlink(temp_path)


class TestConfigValidation:
    """Tests for rejected configurations."""

    @pytest.fixture
    def config(self):
        return Config(files=FilePaths(cameras=["a.yaml", "b.yaml"], points="p.csv",
                                      observations="o.csv"))

    def test_defaults_valid(self, config):
        config.validate()
        assert config.solver == SolverOptions()
        assert config.outliers.effective_line_extra == pytest.approx(10.0)

    @pytest.mark.parametrize("field,value", [
        ("robust_threshold", 0.0),
        ("parameter_tolerance", -1.0),
        ("num_iterations", 0),
        ("num_threads", 0),
        ("gradient_tolerance", 0.0),
    ])
    def test_invalid_solver_options(self, config, field, value):
        setattr(config.solver, field, value)
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_invalid_outlier_threshold(self, config):
        config.outliers = OutlierOptions(max_initial_reprojection_error=-1.0)
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_negative_line_extra(self, config):
        config.outliers.line_extra = -2.0
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_no_cameras(self, config):
        config.files.cameras = []
        with pytest.raises(ConfigurationError, match="Missing input camera files"):
            config.validate()

    def test_images_must_match_cameras(self, config):
        config.files.images = ["a.tif"]
        with pytest.raises(ConfigurationError, match="as many cameras as have images"):
            config.validate()

    def test_duplicate_cameras(self, config):
        config.files.cameras = ["a.yaml", "a.yaml"]
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_error_hierarchy(self, config):
        config.solver.robust_threshold = -1.0
        with pytest.raises(ValueError):
            config.validate()
        assert issubclass(ConfigurationError, JitterSolveError)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
