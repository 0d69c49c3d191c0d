import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import numpy as np

import common.constants as constants
from common.errors import ConfigurationError
from vision_components import config as config_module
from vision_components.config import TrackerConfig, get_config, save_config


class TestTrackerConfig(unittest.TestCase):
    """Tests for JSON loading, fallbacks, overrides and validation."""

    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)
        config_module._global_config = None

    def write(self, name, data):
        path = self.tmp_dir / name
        with open(path, 'w') as f:
            if isinstance(data, str):
                f.write(data)
            else:
                json.dump(data, f)
        return str(path)

    def test_fallback_when_missing(self):
        config = TrackerConfig(str(self.tmp_dir / "missing.json"))
        self.assertTrue(config.is_using_fallback())
        self.assertEqual(config.get_localizer_settings()['alpha'], constants.SMOOTHING_ALPHA)
        self.assertEqual(config.get_debounce_settings()['stability_threshold'],
                         constants.STABILITY_THRESHOLD)

    def test_file_values_merge_with_fallback(self):
        path = self.write("custom.json", {
            "localizer": {"alpha": 0.5},
            "sensor": {"variance_threshold": 350},
        })
        config = TrackerConfig(path)
        self.assertFalse(config.is_using_fallback())
        localizer = config.get_localizer_settings()
        self.assertEqual(localizer['alpha'], 0.5)
        self.assertEqual(localizer['max_jump'], constants.MAX_CORNER_JUMP)
        self.assertEqual(config.get_sensor_settings()['variance_threshold'], 350)
        self.assertEqual(config.get_profile_name(), "custom")

    def test_unknown_keys_ignored(self):
        path = self.write("extra.json", {"sensor": {"not_a_setting": 1}})
        sensor = TrackerConfig(path).get_sensor_settings()
        self.assertNotIn('not_a_setting', sensor)

    def test_bad_json_falls_back(self):
        path = self.write("broken.json", "{ not json")
        config = TrackerConfig(path)
        self.assertTrue(config.is_using_fallback())
        self.assertEqual(config.get_engine_settings()['difficulty'], constants.DIFFICULTY)

    def test_out_of_range_value_raises(self):
        path = self.write("bad_alpha.json", {"localizer": {"alpha": 1.5}})
        with self.assertRaises(ConfigurationError):
            TrackerConfig(path).get_localizer_settings()

    def test_overrides(self):
        config = TrackerConfig(str(self.tmp_dir / "missing.json"))
        config.set_override('engine', 'difficulty', 8)
        self.assertEqual(config.get_engine_settings()['difficulty'], 8)
        self.assertEqual(config.get_search_depth(), 8 * constants.DEPTH_PER_LEVEL)

        config.set_override('engine', 'difficulty', 11)
        with self.assertRaises(ConfigurationError):
            config.get_engine_settings()

        with self.assertRaises(ConfigurationError):
            config.set_override('engine', 'threads', 4)
        with self.assertRaises(ConfigurationError):
            config.get_section('display')

    def test_reload_keeps_overrides(self):
        path = self.write("reload.json", {"debounce": {"settle_delay": 1.0}})
        config = TrackerConfig(path)
        config.set_override('debounce', 'stability_threshold', 3)
        self.write("reload.json", {"debounce": {"settle_delay": 3.0}})
        config.reload()
        debounce = config.get_debounce_settings()
        self.assertEqual(debounce['settle_delay'], 3.0)
        self.assertEqual(debounce['stability_threshold'], 3)

    def test_save_config_converts_numpy(self):
        out = self.tmp_dir / "saved" / "config.json"
        saved = save_config({"sensor": {"variance_threshold": np.float64(420.0),
                                         "use_center_crop": np.bool_(False)},
                             "camera": {"device": np.int64(1)}}, str(out))
        self.assertEqual(saved, str(out))

        with open(out) as f:
            data = json.load(f)
        self.assertIn('timestamp', data['saved_info'])

        config = TrackerConfig(str(out))
        self.assertEqual(config.get_sensor_settings()['variance_threshold'], 420.0)
        self.assertFalse(config.get_sensor_settings()['use_center_crop'])
        self.assertEqual(config.get_camera_settings()['device'], 1)

    def test_environment_selects_file(self):
        path = self.write("env.json", {"engine": {"difficulty": 3}})
        with patch.dict(os.environ, {TrackerConfig.ENV_CONFIG_FILE: path}):
            config = get_config()
            self.assertEqual(config.config_file, path)
            self.assertEqual(config.get_engine_settings()['difficulty'], 3)
            self.assertIs(get_config(), config)

    def test_environment_selects_profile(self):
        env = {TrackerConfig.ENV_CONFIG_PROFILE: "laptop"}
        with patch.dict(os.environ, env):
            os.environ.pop(TrackerConfig.ENV_CONFIG_FILE, None)
            config = get_config()
        self.assertEqual(Path(config.config_file), Path("profiles") / "laptop.json")
        self.assertEqual(config.get_profile_name(), "laptop")


if __name__ == '__main__':
    unittest.main()
