import json

import pytest

from offline_slam.config import DEFAULT_CHANNELS, SLAMConfig, config_from_dict, load_config
from offline_slam.errors import ConfigError


class TestDefaults:

    def test_values(self):
        cfg = SLAMConfig()
        assert cfg.step_time == 1.0
        assert cfg.odom_noise == 0.1
        assert cfg.anchor_variance == 1e-6
        assert cfg.camera.fx == 478.0 and cfg.camera.cy == 240.0
        assert cfg.optimizer.method == "gauss-newton"
        assert cfg.channels == DEFAULT_CHANNELS

    def test_none_path_gives_defaults(self):
        assert load_config(None) == SLAMConfig()


class TestLoading:

    def test_json(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({
            "step_time": 0.5,
            "camera": {"fx": 500.0},
            "optimizer": {"method": "levenberg-marquardt", "robust_kind": "cauchy"},
            "channels": {"ODOM": "pose"},
        }))
        cfg = load_config(path)
        assert cfg.step_time == 0.5
        assert cfg.camera.fx == 500.0
        assert cfg.camera.fy == 478.0
        assert cfg.optimizer.robust_kind == "cauchy"
        assert cfg.channels == {"ODOM": "pose"}

    def test_toml(self, tmp_path):
        pytest.importorskip("tomllib")
        path = tmp_path / "cfg.toml"
        path.write_text('odom-noise = 0.2\n\n[optimizer]\nmax_iterations = 7\n')
        cfg = load_config(path)
        assert cfg.odom_noise == 0.2
        assert cfg.optimizer.max_iterations == 7

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "absent.json")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "cfg.yaml"
        path.write_text("step_time: 1.0\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text("{step_time")
        with pytest.raises(ConfigError):
            load_config(path)


class TestValidation:

    def test_unknown_key(self):
        with pytest.raises(ConfigError) as err:
            config_from_dict({"optimizer": {"solver": "x"}})
        assert err.value.context["section"] == "optimizer"

    @pytest.mark.parametrize("raw", [
        {"step_time": 0.0},
        {"odom_noise": -1.0},
        {"tag_size": 0.0},
        {"camera": {"fx": 0.0}},
        {"optimizer": {"max_iterations": 0}},
        {"optimizer": {"tolerance": 0.0}},
    ])
    def test_invalid_values(self, raw):
        with pytest.raises(ConfigError):
            config_from_dict(raw)

    def test_root_must_be_mapping(self):
        with pytest.raises(ConfigError):
            config_from_dict([1, 2])
