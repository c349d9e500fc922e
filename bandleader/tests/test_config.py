import json
import os
import tempfile
import unittest

from bandleader.config import PlayerConfig, load_config, validate_config
from bandleader.errors import ConfigError


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.tempfile = tempfile.NamedTemporaryFile(mode="w+", suffix=".json", delete=False)

    def tearDown(self):
        self.tempfile.close()
        os.unlink(self.tempfile.name)

    def write(self, obj):
        self.tempfile.seek(0)
        self.tempfile.truncate()
        if isinstance(obj, str):
            self.tempfile.write(obj)
        else:
            json.dump(obj, self.tempfile)
        self.tempfile.flush()

    def test_defaults_match_reference_hardware(self):
        cfg = load_config(None)
        self.assertEqual((cfg.max_ops, cfg.max_op_ms), (59, 2550))
        self.assertEqual((cfg.unit, cfg.speed, cfg.quantum_ms), (40, 100, 10))
        self.assertEqual((cfg.warmup_s, cfg.shutdown_s), (3.0, 3.0))

    def test_load_file(self):
        self.write({"max_ops": 20, "warmup_s": 1, "unit": 25})
        cfg = load_config(self.tempfile.name)
        self.assertEqual(cfg.max_ops, 20)
        self.assertEqual(cfg.unit, 25)
        self.assertEqual(cfg.warmup_s, 1.0)
        self.assertEqual(cfg.max_op_ms, 2550)

    def test_invalid_values_reported_with_paths(self):
        errors = validate_config({"max_ops": 0, "speed": "fast", "warmup_s": -1, "bogus": 1, "velocity": 200})
        self.assertIn("/max_ops: must be >= 1", errors)
        self.assertIn("/speed: integer required", errors)
        self.assertIn("/warmup_s: must be non-negative", errors)
        self.assertIn("/bogus: unknown setting", errors)
        self.assertIn("/velocity: must be in 1..127", errors)

    def test_invalid_file_raises(self):
        self.write({"max_op_ms": -5})
        with self.assertRaises(ConfigError):
            load_config(self.tempfile.name)
        self.write("{not json")
        with self.assertRaises(ConfigError):
            load_config(self.tempfile.name)
        with self.assertRaises(ConfigError):
            load_config(self.tempfile.name + ".missing")

    def test_replace_ignores_none(self):
        cfg = PlayerConfig().replace(speed=None, unit=80)
        self.assertEqual(cfg.speed, 100)
        self.assertEqual(cfg.unit, 80)
        with self.assertRaises(ConfigError):
            PlayerConfig().replace(speed=0)


if __name__ == "__main__":
    unittest.main()
