"""
Unit tests for the limit enforcement engine
"""

import unittest
import os
import sys

# Add cgov to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cgov.cgroups.controllers import Controller
from cgov.cgroups.instance import InstanceLifecycleManager
from cgov.cgroups.limits import (
    MB, LimitEnforcementEngine, bytes_to_mb, combined_limit_mb, mb_to_bytes,
    probe_swap_accounting
)
from cgov.cgroups.ownership import OwnerToken
from cgov.cgroups.topology import TopologyResolver
from cgov.exceptions import ApplyFailure, ValidationFailure
from tests.fakes import FakeCgroupFS, BLKIO_ROOT, CPU_ROOT, CPUSET_ROOT, MEMORY_ROOT

OWNER = 777
SCOPE = f"{MEMORY_ROOT}/postgres/{OWNER}"
MEM = f"{SCOPE}/memory.limit_in_bytes"
MEMSW = f"{SCOPE}/memory.memsw.limit_in_bytes"


class InvariantCheckingFS(FakeCgroupFS):
    """Fails the test as soon as memory.limit_in_bytes exceeds memory.memsw.limit_in_bytes"""

    def write_text(self, path, value):
        super().write_text(path, value)
        if self.is_dir(SCOPE) and self.swap_accounting:
            memory = self.limit_bytes(SCOPE, "memory.limit_in_bytes")
            combined = self.limit_bytes(SCOPE, "memory.memsw.limit_in_bytes")
            if memory > combined:
                raise AssertionError(f"memory {memory} exceeds memory+swap {combined}")


def make_engine(swap_accounting=True, fs_class=InvariantCheckingFS):
    fs = fs_class(swap_accounting=swap_accounting)
    topology = TopologyResolver(fs).discover()
    token = OwnerToken(OWNER)
    scope = InstanceLifecycleManager(fs, topology, token).create(OWNER, token)
    engine = LimitEnforcementEngine(fs, scope, probe_swap_accounting(fs, topology), token)
    fs.writes.clear()
    return fs, engine, token


class TestConversions(unittest.TestCase):
    """Test MiB and byte conversions"""

    def test_mb_to_bytes(self):
        self.assertEqual(mb_to_bytes(1), MB)
        self.assertEqual(mb_to_bytes(-1), -1)

    def test_bytes_to_mb_rounds_up(self):
        self.assertEqual(bytes_to_mb(MB), 1)
        self.assertEqual(bytes_to_mb(MB + 1), 2)
        self.assertEqual(bytes_to_mb(4096), 1)
        self.assertEqual(bytes_to_mb(0), 0)

    def test_bytes_to_mb_unlimited(self):
        self.assertEqual(bytes_to_mb(-1), -1)
        self.assertEqual(bytes_to_mb(9223372036854771712), -1)

    def test_combined(self):
        self.assertEqual(combined_limit_mb(512, 256), 768)
        self.assertEqual(combined_limit_mb(-1, 256), -1)
        self.assertEqual(combined_limit_mb(512, -1), -1)


class TestMemoryLimits(unittest.TestCase):
    """Test the ordering of coupled memory and memory+swap writes"""

    def setUp(self):
        self.fs, self.engine, self.token = make_engine()

    def memory_writes(self):
        return [(os.path.basename(path), int(value)) for path, value in self.fs.writes
                if path in (MEM, MEMSW)]

    def test_raise_writes_combined_first_and_lower_writes_memory_first(self):
        self.engine.set_memory_limits(self.token, 512, 256)
        self.fs.writes.clear()

        self.engine.set_memory_limit(self.token, 1024)
        self.assertEqual(self.memory_writes(), [
            ("memory.memsw.limit_in_bytes", 1280 * MB),
            ("memory.limit_in_bytes", 1024 * MB),
        ])

        self.fs.writes.clear()
        self.engine.set_memory_limit(self.token, 512)
        self.assertEqual(self.memory_writes(), [
            ("memory.limit_in_bytes", 512 * MB),
            ("memory.memsw.limit_in_bytes", 768 * MB),
        ])

    def test_first_limit_from_unlimited_writes_memory_first(self):
        self.engine.set_memory_limits(self.token, 512, 256)
        self.assertEqual(self.memory_writes(), [
            ("memory.limit_in_bytes", 512 * MB),
            ("memory.memsw.limit_in_bytes", 768 * MB),
        ])

    def test_removing_limit_writes_combined_first(self):
        self.engine.set_memory_limits(self.token, 512, 256)
        self.fs.writes.clear()
        self.engine.set_memory_limit(self.token, -1)
        self.assertEqual(self.memory_writes(), [
            ("memory.memsw.limit_in_bytes", -1),
            ("memory.limit_in_bytes", -1),
        ])

    def test_unlimited_swap_makes_combined_unlimited(self):
        self.engine.set_memory_limits(self.token, 512, -1)
        self.assertEqual(self.engine.memory_limit_mb(), 512)
        self.assertEqual(bytes_to_mb(self.fs.limit_bytes(SCOPE, "memory.memsw.limit_in_bytes")), -1)
        self.assertEqual(self.engine.swap_limit_mb(), -1)

    def test_swap_change_rewrites_combined(self):
        self.engine.set_memory_limits(self.token, 512, 256)
        self.engine.set_swap_limit(self.token, 64)
        self.assertEqual(self.engine.memory_limit_mb(), 512)
        self.assertEqual(self.engine.swap_limit_mb(), 64)
        self.assertEqual(self.engine.swap_limit, 64)

    def test_invariant_holds_over_a_sequence(self):
        for memory, swap in [(512, 256), (1024, 256), (256, 0), (-1, 128), (64, 128),
                             (2048, 0), (128, -1), (4096, 1024), (1, 0), (-1, -1)]:
            self.engine.set_memory_limits(self.token, memory, swap)
            self.assertEqual(self.engine.memory_limit_mb(), memory)

    def test_round_trip(self):
        for memory in (1, 7, 512, 65536, 1073741823):
            self.engine.set_memory_limit(self.token, memory)
            self.assertEqual(self.engine.memory_limit_mb(), memory)
        self.engine.set_memory_limit(self.token, -1)
        self.assertEqual(self.engine.memory_limit_mb(), -1)

    def test_failed_write_is_apply_failure(self):
        self.fs.fail_writes.add(MEM)
        with self.assertRaises(ApplyFailure) as ctx:
            self.engine.set_memory_limits(self.token, 512, 256)
        self.assertEqual(ctx.exception.path, MEM)
        self.assertEqual(self.engine.memory_limit, -1)

    def test_non_owner_is_silent_noop(self):
        self.assertFalse(self.engine.set_memory_limits(OwnerToken(OWNER), 512, 256))
        self.assertFalse(self.engine.set_limit(None, Controller.CPU, "cpu.cfs_quota_us", 5000))
        self.assertEqual(self.fs.writes, [])

    def test_revoked_token_is_silent_noop(self):
        self.token.revoke()
        self.assertFalse(self.engine.set_memory_limit(self.token, 512))
        self.assertEqual(self.fs.writes, [])


class TestWithoutSwapAccounting(unittest.TestCase):
    """Test behaviour on kernels without memory.memsw.*"""

    def setUp(self):
        self.fs, self.engine, self.token = make_engine(swap_accounting=False)

    def test_probe(self):
        self.assertFalse(self.engine.swap_accounting)

    def test_memory_limit_only_writes_memory(self):
        self.assertTrue(self.engine.set_memory_limits(self.token, 512, 256))
        self.assertEqual([path for path, _ in self.fs.writes], [MEM])
        self.assertEqual(self.engine.memory_limit_mb(), 512)
        self.assertIsNone(self.engine.swap_limit_mb())

    def test_swap_limit_is_ignored(self):
        self.assertFalse(self.engine.set_swap_limit(self.token, 256))
        self.assertEqual(self.fs.writes, [])


class TestOtherLimits(unittest.TestCase):
    """Test the single-parameter limits"""

    def setUp(self):
        self.fs, self.engine, self.token = make_engine()

    def test_set_limit_writes_integer_as_decimal(self):
        self.assertTrue(self.engine.set_limit(self.token, Controller.CPU, "cpu.cfs_quota_us", 150000))
        self.assertEqual(self.fs.files[f"{CPU_ROOT}/postgres/{OWNER}/cpu.cfs_quota_us"], "150000")

    def test_cpu_share(self):
        self.engine.set_cpu_share(self.token, 200000)
        self.assertEqual(self.engine.cpu_share(), 200000)
        self.engine.set_cpu_share(self.token, -1)
        self.assertEqual(self.engine.cpu_share(), -1)

    def test_oom_killer(self):
        self.engine.set_oom_killer(self.token, False)
        self.assertEqual(self.fs.files[f"{SCOPE}/memory.oom_control"], "1")
        self.assertFalse(self.engine.oom_killer())
        self.engine.set_oom_killer(self.token, True)
        self.assertTrue(self.engine.oom_killer())

    def test_oom_killer_reads_kernel_format(self):
        self.fs.files[f"{SCOPE}/memory.oom_control"] = "oom_kill_disable 1\nunder_oom 0\n"
        self.assertFalse(self.engine.oom_killer())

    def test_device_limit_uses_one_line_per_device(self):
        self.engine.set_device_limit(self.token, "blkio.throttle.read_bps_device",
                                     "8:0 1048576,8:16 2097152")
        path = f"{BLKIO_ROOT}/postgres/{OWNER}/blkio.throttle.read_bps_device"
        self.assertEqual(self.fs.files[path], "8:0 1048576\n8:16 2097152")
        self.assertEqual(self.engine.device_limit("blkio.throttle.read_bps_device"),
                         "8:0 1048576,8:16 2097152")

    def test_empty_device_limit_clears_parameter(self):
        self.engine.set_device_limit(self.token, "blkio.throttle.write_iops_device", "")
        path = f"{BLKIO_ROOT}/postgres/{OWNER}/blkio.throttle.write_iops_device"
        self.assertEqual(self.fs.writes, [(path, "")])

    def test_unknown_device_limit(self):
        with self.assertRaises(ValidationFailure):
            self.engine.set_device_limit(self.token, "blkio.weight", "500")

    def test_cpus_and_memory_nodes(self):
        self.engine.set_cpus(self.token, "0-1,3")
        self.assertEqual(self.engine.cpus(), "0-1,3")
        self.engine.set_memory_nodes(self.token, "0")
        self.assertEqual(self.engine.memory_nodes(), "0")

    def test_invalid_cpus_never_reach_the_kernel(self):
        with self.assertRaises(ValidationFailure):
            self.engine.set_cpus(self.token, "0-4")
        with self.assertRaises(ValidationFailure):
            self.engine.set_memory_nodes(self.token, "1")
        self.assertEqual(self.fs.writes, [])
        self.assertEqual(self.fs.files[f"{CPUSET_ROOT}/postgres/{OWNER}/cpuset.cpus"], "0-3")

    def test_non_owner_is_not_validated(self):
        intruder = OwnerToken(OWNER)
        self.assertFalse(self.engine.set_cpus(intruder, "0-4"))
        self.assertFalse(self.engine.set_memory_nodes(intruder, "1"))
        self.assertFalse(self.engine.set_device_limit(intruder, "blkio.weight", "500"))
        self.assertEqual(self.fs.writes, [])


if __name__ == '__main__':
    unittest.main()
