#!/usr/bin/env python3
"""
多端口池组合分配与端口分配器测试
"""

import threading
import unittest

from clbnet.config.clbBindingConfig import PortBindingStatus
from clbnet.config.constants import (
    LB_POLICY_IN_ORDER,
    POOL_STATE_ACTIVE,
    POOL_STATE_PENDING,
    POOL_STATE_SCALING,
)
from clbnet.config.portPoolConfig import CLBPortPoolConfig
from clbnet.portpool.allocator import PortAllocator
from clbnet.portpool.errors import (
    AllocationCancelledError,
    ListenerQuotaExceededError,
    NoIntersectionError,
    NoPortAvailableError,
    PoolNotFoundError,
    PortPoolNotAllocatableError,
    QuotaNotEqualError,
    QuotaNotFoundError,
    SegmentLengthNotEqualError,
    WaitLBScaleError,
)
from clbnet.portpool.portPool import PortPool
from clbnet.portpool.protocolPort import LBKey, ProtocolPort

REGION = "ap-guangzhou"


def create_pool(name, lb_ids, start_port=500, end_port=510, segment_length=1, quota=50,
                state=POOL_STATE_ACTIVE):
    pool = PortPool(name, region=REGION, start_port=start_port, end_port=end_port,
                    segment_length=segment_length, quota=quota, state=state,
                    lb_policy=LB_POLICY_IN_ORDER)
    pool.ensure_lb_ids([LBKey(lb_id, REGION) for lb_id in lb_ids])
    return pool


class TestPortPoolsIntersection(unittest.TestCase):
    """多端口池配置交集测试"""

    def setUp(self):
        self.allocator = PortAllocator()

    def test_intersection_range(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], start_port=500, end_port=600))
        self.allocator.add_pool(create_pool("pool-b", ["lb-b"], start_port=550, end_port=700))
        result = self.allocator.allocate(["pool-a", "pool-b"], "TCP", use_same_port_across_pools=True)
        self.assertEqual({a.port for a in result}, {550})

    def test_no_intersection(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], start_port=500, end_port=510))
        self.allocator.add_pool(create_pool("pool-b", ["lb-b"], start_port=600, end_port=610))
        with self.assertRaises(NoIntersectionError):
            self.allocator.allocate(["pool-a", "pool-b"], "TCP")

    def test_segment_length_not_equal(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], segment_length=5))
        self.allocator.add_pool(create_pool("pool-b", ["lb-b"], segment_length=1))
        with self.assertRaises(SegmentLengthNotEqualError):
            self.allocator.allocate(["pool-a", "pool-b"], "TCP")

    def test_quota_not_equal(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], quota=50))
        self.allocator.add_pool(create_pool("pool-b", ["lb-b"], quota=100))
        with self.assertRaises(QuotaNotEqualError):
            self.allocator.allocate(["pool-a", "pool-b"], "TCP")

    def test_quota_not_found(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], quota=0))
        with self.assertRaises(QuotaNotFoundError):
            self.allocator.allocate(["pool-a"], "TCP")

    def test_quota_too_small_for_tcpudp(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], quota=1))
        with self.assertRaises(ListenerQuotaExceededError):
            self.allocator.allocate(["pool-a"], "TCPUDP")

    def test_not_allocatable_state(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], state=POOL_STATE_PENDING))
        with self.assertRaises(PortPoolNotAllocatableError) as ctx:
            self.allocator.allocate(["pool-a"], "TCP")
        self.assertEqual(ctx.exception.pool, "pool-a")

    def test_scaling_state_is_allocatable(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], state=POOL_STATE_SCALING))
        result = self.allocator.allocate(["pool-a"], "TCP")
        self.assertEqual(len(result), 1)

    def test_config_errors_are_value_errors(self):
        self.allocator.add_pool(create_pool("pool-a", ["lb-a"], state=POOL_STATE_PENDING))
        with self.assertRaises(ValueError):
            self.allocator.allocate(["pool-a"], "TCP")


class TestIndependentAllocation(unittest.TestCase):
    """各端口池独立分配测试"""

    def setUp(self):
        self.allocator = PortAllocator()
        self.pool_a = create_pool("pool-a", ["lb-a"], start_port=500, end_port=502)
        self.pool_b = create_pool("pool-b", ["lb-b"], start_port=500, end_port=502)
        self.allocator.add_pool(self.pool_a)
        self.allocator.add_pool(self.pool_b)

    def test_pools_may_differ(self):
        self.pool_b.allocate_port(50, ProtocolPort(500, "TCP"))
        result = self.allocator.allocate(["pool-a", "pool-b"], "TCP")
        ports = {a.pool_name: a.port for a in result}
        self.assertEqual(ports, {"pool-a": 500, "pool-b": 501})
        self.assertEqual(sorted(result.pools()), ["pool-a", "pool-b"])
        print(f"✓ 独立分配结果: {result}")

    def test_all_or_nothing(self):
        for port in (500, 501, 502):
            self.pool_b.allocate_port(50, ProtocolPort(port, "UDP"))
        with self.assertRaises(NoPortAvailableError):
            self.allocator.allocate(["pool-a", "pool-b"], "UDP")
        # pool-a 上的部分分配已回滚
        self.assertEqual(self.pool_a.allocated_ports(LBKey("lb-a", REGION)), 0)
        print("✓ 任一端口池分配失败时回滚全部分配")

    def test_wait_lb_scale_when_auto_create_allowed(self):
        pool = create_pool("pool-c", ["lb-c"], quota=1)
        pool.auto_create_allowed = True
        self.allocator.add_pool(pool)
        self.allocator.allocate(["pool-c"], "TCP")
        with self.assertRaises(WaitLBScaleError):
            self.allocator.allocate(["pool-c"], "TCP")
        self.assertTrue(pool.has_scale_up_request())

    def test_no_port_when_full_and_cannot_scale(self):
        pool = create_pool("pool-c", ["lb-c"], quota=1)
        self.allocator.add_pool(pool)
        self.allocator.allocate(["pool-c"], "TCP")
        with self.assertRaises(NoPortAvailableError):
            self.allocator.allocate(["pool-c"], "TCP")
        self.assertFalse(pool.has_scale_up_request())

    def test_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(AllocationCancelledError):
            self.allocator.allocate(["pool-a", "pool-b"], "TCP", cancel_event=cancel)
        self.assertEqual(self.pool_a.allocated_ports(LBKey("lb-a", REGION)), 0)


class TestSamePortAllocation(unittest.TestCase):
    """跨端口池相同端口分配测试"""

    def setUp(self):
        self.allocator = PortAllocator()
        self.pool_a = create_pool("pool-a", ["lb-a"], start_port=500, end_port=503)
        self.pool_b = create_pool("pool-b", ["lb-b"], start_port=500, end_port=503)
        self.allocator.add_pool(self.pool_a)
        self.allocator.add_pool(self.pool_b)

    def test_same_port(self):
        self.pool_a.allocate_port(50, ProtocolPort(500, "TCP"))
        self.pool_b.allocate_port(50, ProtocolPort(501, "TCP"))
        result = self.allocator.allocate(["pool-a", "pool-b"], "TCP", use_same_port_across_pools=True)
        self.assertEqual({a.port for a in result}, {502})
        self.assertEqual(len(result), 2)
        # 尝试 500、501 时的部分分配已释放
        lb_b = LBKey("lb-b", REGION)
        self.assertEqual(self.pool_b.allocated_ports(lb_b), 2)
        print(f"✓ 相同端口分配结果: {result}")

    def test_same_port_never_differs(self):
        for _ in range(4):
            result = self.allocator.allocate(["pool-a", "pool-b"], "TCPUDP", use_same_port_across_pools=True)
            self.assertEqual(len({a.port for a in result}), 1)
            self.assertEqual(len(result), 4)
        with self.assertRaises(NoPortAvailableError):
            self.allocator.allocate(["pool-a", "pool-b"], "TCPUDP", use_same_port_across_pools=True)

    def test_abort_on_quota_exceeded(self):
        pool = create_pool("pool-c", ["lb-c"], start_port=500, end_port=503, quota=50)
        pool.auto_create_allowed = True
        self.allocator.add_pool(pool)
        for port in range(500, 550):
            pool.mark_allocated(LBKey("lb-c", REGION), ProtocolPort(port + 1000, "TCP"))
        with self.assertRaises(WaitLBScaleError):
            self.allocator.allocate(["pool-a", "pool-c"], "TCP", use_same_port_across_pools=True)
        self.assertEqual(self.pool_a.allocated_ports(LBKey("lb-a", REGION)), 0)

    def test_segment_same_port(self):
        allocator = PortAllocator()
        allocator.add_pool(create_pool("seg-a", ["lb-a"], start_port=500, end_port=509, segment_length=5))
        allocator.add_pool(create_pool("seg-b", ["lb-b"], start_port=500, end_port=509, segment_length=5))
        result = allocator.allocate(["seg-a", "seg-b"], "UDP", use_same_port_across_pools=True)
        self.assertEqual({(a.port, a.end_port) for a in result}, {(500, 504)})
        result = allocator.allocate(["seg-a", "seg-b"], "UDP", use_same_port_across_pools=True)
        self.assertEqual({(a.port, a.end_port) for a in result}, {(505, 509)})


class TestPortAllocatorRegistry(unittest.TestCase):
    """端口分配器注册表测试"""

    def test_pool_not_found(self):
        allocator = PortAllocator()
        allocator.add_pool(create_pool("pool-a", ["lb-a"]))
        with self.assertRaises(PoolNotFoundError) as ctx:
            allocator.allocate(["pool-a", "missing"], "TCP")
        self.assertEqual(ctx.exception.pool, "missing")

    def test_add_and_remove_idempotent(self):
        allocator = PortAllocator()
        pool = create_pool("pool-a", ["lb-a"])
        self.assertTrue(allocator.add_pool(pool))
        self.assertFalse(allocator.add_pool(create_pool("pool-a", [])))
        self.assertIs(allocator.get_pool("pool-a"), pool)
        self.assertFalse(allocator.add_pool_if_not_exists("pool-a"))
        allocator.remove_pool("pool-a")
        allocator.remove_pool("pool-a")
        self.assertIsNone(allocator.get_pool("pool-a"))

    def test_ensure_pool_from_config(self):
        allocator = PortAllocator()
        config = CLBPortPoolConfig({
            "metadata": {"name": "pool-a"},
            "spec": {
                "startPort": 30000,
                "endPort": 30100,
                "segmentLength": 10,
                "lbPolicy": "Uniform",
                "lbBlacklist": ["lb-bad"],
                "autoCreate": {"enabled": True, "maxLoadBalancers": 3},
                "listenerPrecreate": {"enabled": True, "tcp": 20},
            },
            "status": {"state": "Active", "quota": 50},
        }, default_region=REGION)
        self.assertTrue(allocator.ensure_pool(config))
        self.assertFalse(allocator.ensure_pool(config))
        pool = allocator.get_pool("pool-a")
        self.assertEqual((pool.start_port, pool.end_port, pool.segment_length), (30000, 30100, 10))
        self.assertEqual(pool.lb_policy, "Uniform")
        self.assertEqual(pool.lb_blacklist, {LBKey("lb-bad", REGION)})
        self.assertEqual(pool.max_port.tcp, 30019)
        self.assertEqual(pool.max_port.udp, 0)
        self.assertTrue(pool.auto_create_allowed)

    def test_mark_and_release_binding(self):
        allocator = PortAllocator()
        allocator.add_pool(create_pool("pool-a", ["lb-a"], start_port=500, end_port=500))
        binding = PortBindingStatus({
            "port": 80,
            "protocol": "TCP",
            "pool": "pool-a",
            "region": REGION,
            "loadbalancerId": "lb-a",
            "loadbalancerPort": 500,
            "listenerId": "lbl-1",
        })
        self.assertTrue(allocator.mark_binding_allocated(binding))
        self.assertEqual(allocator.allocated_ports("pool-a", LBKey("lb-a", REGION)), 1)
        with self.assertRaises(NoPortAvailableError):
            allocator.allocate(["pool-a"], "TCP")

        self.assertTrue(allocator.release_binding(binding))
        result = allocator.allocate(["pool-a"], "TCP")
        self.assertEqual(result[0].port, 500)

    def test_mark_allocated_unknown_pool(self):
        allocator = PortAllocator()
        self.assertFalse(allocator.mark_allocated("missing", LBKey("lb-a", REGION), 500, None, "TCP"))
        self.assertFalse(allocator.release("missing", LBKey("lb-a", REGION), ProtocolPort(500, "TCP")))

    def test_ensure_lb_ids_and_queries(self):
        allocator = PortAllocator()
        allocator.add_pool_if_not_exists("pool-a")
        lb = LBKey("lb-a", REGION)
        allocator.ensure_lb_ids("pool-a", [lb])
        self.assertTrue(allocator.is_lb_exists("pool-a", lb))
        self.assertTrue(allocator.can_allocate("pool-a", 500, 510, 50, 1))
        self.assertFalse(allocator.can_allocate("missing", 500, 510, 50, 1))
        self.assertTrue(allocator.remove_lb("pool-a", lb))
        self.assertFalse(allocator.is_lb_exists("pool-a", lb))
        with self.assertRaises(ValueError):
            allocator.ensure_lb_ids("missing", [lb])

    def test_concurrent_allocation_never_duplicates(self):
        allocator = PortAllocator()
        allocator.add_pool(create_pool("pool-a", ["lb-a", "lb-b"], start_port=1000, end_port=1099, quota=100))
        results = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                allocated = allocator.allocate(["pool-a"], "TCP")
                with lock:
                    results.extend((a.lb_id, a.port) for a in allocated)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(results), 160)
        self.assertEqual(len(set(results)), 160)
        print("✓ 并发分配无重复端口")


if __name__ == "__main__":
    unittest.main(verbosity=2)
