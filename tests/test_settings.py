"""
Unit tests for settings validation and loading
"""

import unittest
import os
import stat
import sys
import tempfile
from unittest.mock import Mock, patch

# Add cgov to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cgov.exceptions import ValidationFailure
from cgov.settings import (
    GovernorSettings, check_block_device, check_device_limits, load_settings, parse_settings
)

CONTEXT = {
    'default_cpus': "0-3",
    'default_memory_nodes': "0",
    'max_cpu_share': 400000,
    'dev_block': "/dev/block",
}


def block_device_stat(path):
    return Mock(st_mode=stat.S_IFBLK | 0o660)


class TestGovernorSettings(unittest.TestCase):
    """Test field validation"""

    def test_defaults(self):
        settings = parse_settings({}, CONTEXT)
        self.assertEqual(settings, GovernorSettings())
        self.assertEqual(settings.memory_limit, -1)
        self.assertTrue(settings.oom_killer)
        self.assertIsNone(settings.cpus)

    def test_memory_limit(self):
        self.assertEqual(parse_settings({'memory_limit': 512}).memory_limit, 512)
        with self.assertRaises(ValidationFailure) as ctx:
            parse_settings({'memory_limit': 0})
        self.assertEqual(ctx.exception.setting, "memory_limit")
        with self.assertRaises(ValidationFailure):
            parse_settings({'memory_limit': -2})
        with self.assertRaises(ValidationFailure):
            parse_settings({'memory_limit': 1073741824})

    def test_swap_limit_below_unlimited_rejected(self):
        self.assertEqual(parse_settings({'swap_limit': 0}).swap_limit, 0)
        with self.assertRaises(ValidationFailure) as ctx:
            parse_settings({'swap_limit': -256})
        self.assertEqual(ctx.exception.setting, "swap_limit")

    def test_cpu_share(self):
        self.assertEqual(parse_settings({'cpu_share': 1000}, CONTEXT).cpu_share, 1000)
        self.assertEqual(parse_settings({'cpu_share': 400000}, CONTEXT).cpu_share, 400000)
        with self.assertRaises(ValidationFailure):
            parse_settings({'cpu_share': 999}, CONTEXT)
        with self.assertRaises(ValidationFailure):
            parse_settings({'cpu_share': 400001}, CONTEXT)

    def test_cpus_checked_against_online_range(self):
        self.assertEqual(parse_settings({'cpus': "0-1,3"}, CONTEXT).cpus, "0-1,3")
        with self.assertRaises(ValidationFailure) as ctx:
            parse_settings({'cpus': "0-4"}, CONTEXT)
        self.assertEqual(ctx.exception.setting, "cpus")
        self.assertIn("Number 4 is outside of range 0-3.", str(ctx.exception))

    def test_memory_nodes_checked_against_online_range(self):
        with self.assertRaises(ValidationFailure):
            parse_settings({'memory_nodes': "1"}, CONTEXT)

    def test_unknown_setting_rejected(self):
        with self.assertRaises(ValidationFailure):
            parse_settings({'memory_limt': 512})

    def test_settings_are_frozen(self):
        settings = GovernorSettings()
        with self.assertRaises(Exception):
            settings.memory_limit = 10


class TestDeviceLimits(unittest.TestCase):
    """Test "major:minor limit" list validation"""

    def test_empty_is_valid(self):
        self.assertIsNone(check_device_limits(""))

    @patch('cgov.settings.os.stat', side_effect=block_device_stat)
    def test_valid_list(self, mock_stat):
        self.assertIsNone(check_device_limits("8:0 1048576,8:16  2048"))
        mock_stat.assert_any_call("/dev/block/8:16")

    @patch('cgov.settings.os.stat', side_effect=block_device_stat)
    def test_malformed_entries(self, mock_stat):
        self.assertIn("must have a space", check_device_limits("8:0"))
        self.assertIn("major:minor", check_device_limits("8 100"))
        self.assertIn("major:minor", check_device_limits("a:0 100"))
        self.assertIn("major:minor", check_device_limits("8:0:1 100"))
        self.assertIn("must be an integer", check_device_limits("8:0 10M"))

    @patch('cgov.settings.os.stat', side_effect=FileNotFoundError)
    def test_missing_device(self, mock_stat):
        self.assertIn("does not exist", check_block_device("259:3"))

    @patch('cgov.settings.os.stat', return_value=Mock(st_mode=stat.S_IFCHR | 0o660))
    def test_character_device_rejected(self, mock_stat):
        self.assertIn("is not a block device", check_block_device("1:3"))

    @patch('cgov.settings.os.stat', side_effect=block_device_stat)
    def test_setting_validation(self, mock_stat):
        settings = parse_settings({'read_bps_limit': "8:0 1048576"}, CONTEXT)
        self.assertEqual(settings.read_bps_limit, "8:0 1048576")
        with self.assertRaises(ValidationFailure) as ctx:
            parse_settings({'write_iops_limit': "8:0"}, CONTEXT)
        self.assertEqual(ctx.exception.setting, "write_iops_limit")


class TestLoadSettings(unittest.TestCase):
    """Test loading settings from YAML files"""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "cgov.yaml")

    def tearDown(self):
        self.tmpdir.cleanup()

    def write(self, text):
        with open(self.path, 'w') as f:
            f.write(text)

    def test_load(self):
        self.write("memory_limit: 1024\nswap_limit: 256\noom_killer: false\ncpus: '0-1'\n")
        settings = load_settings(self.path, CONTEXT)
        self.assertEqual(settings.memory_limit, 1024)
        self.assertEqual(settings.swap_limit, 256)
        self.assertFalse(settings.oom_killer)
        self.assertEqual(settings.cpus, "0-1")

    def test_empty_file_gives_defaults(self):
        self.write("")
        self.assertEqual(load_settings(self.path, CONTEXT), GovernorSettings())

    def test_invalid_yaml(self):
        self.write("memory_limit: [1024\n")
        with self.assertRaises(ValidationFailure):
            load_settings(self.path, CONTEXT)

    def test_not_a_mapping(self):
        self.write("- memory_limit\n")
        with self.assertRaises(ValidationFailure):
            load_settings(self.path, CONTEXT)

    def test_missing_file(self):
        with self.assertRaises(ValidationFailure):
            load_settings(os.path.join(self.tmpdir.name, "absent.yaml"), CONTEXT)


if __name__ == '__main__':
    unittest.main()
