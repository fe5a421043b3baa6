#!/usr/bin/env python3
"""
端口映射注解和 CRD 配置类解析测试
"""

import unittest

from clbnet.config.clbBindingConfig import CLBBindingConfig, PortBindingStatus, sort_port_bindings
from clbnet.config.constants import DEFAULT_END_PORT, KIND_CLB_POD_BINDING, LB_POLICY_RANDOM, POOL_STATE_ACTIVE
from clbnet.config.portMappingConfig import generate_binding_spec, parse_port_mappings
from clbnet.config.portPoolConfig import CLBPortPoolConfig


class TestParsePortMappings(unittest.TestCase):

    def test_multiple_lines(self):
        anno = "\n".join([
            "8080 TCP pool-a,pool-b useSamePortAcrossPools",
            "",
            "  53 UDP pool-a  ",
            "443 TCP_SSL pool-a certSecret=my-cert",
        ])

        ports = parse_port_mappings(anno)

        self.assertEqual([(p.port, p.protocol) for p in ports], [(8080, "TCP"), (53, "UDP"), (443, "TCP_SSL")])
        self.assertEqual(ports[0].pools, ["pool-a", "pool-b"])
        self.assertTrue(ports[0].use_same_port())
        self.assertFalse(ports[1].use_same_port())
        self.assertEqual(ports[2].cert_secret_name, "my-cert")

    def test_combined_options(self):
        ports = parse_port_mappings("443 TCP_SSL pool-a useSamePortAcrossPools,certSecret=cert")

        self.assertTrue(ports[0].use_same_port())
        self.assertEqual(ports[0].cert_secret_name, "cert")

    def test_unknown_option_ignored(self):
        ports = parse_port_mappings("80 TCP pool-a foo=bar")

        self.assertEqual(ports[0].to_dict(), {"port": 80, "protocol": "TCP", "pools": ["pool-a"]})

    def test_empty(self):
        self.assertEqual(parse_port_mappings(""), [])
        self.assertEqual(parse_port_mappings(None), [])

    def test_invalid(self):
        for anno in ("80 TCP", "http TCP pool-a", "0 TCP pool-a", "70000 TCP pool-a",
                     "80 SCTP pool-a", "80 TCP ,"):
            with self.subTest(anno=anno):
                with self.assertRaises(ValueError):
                    parse_port_mappings(anno)

    def test_tcpudp_keys(self):
        entry = parse_port_mappings("7000 TCPUDP pool-a,pool-b")[0]

        self.assertEqual(entry.keys(), [
            (7000, "TCP", "pool-a"), (7000, "UDP", "pool-a"),
            (7000, "TCP", "pool-b"), (7000, "UDP", "pool-b"),
        ])


class TestGenerateBindingSpec(unittest.TestCase):

    def test_enabled(self):
        spec = generate_binding_spec("80 TCP pool-a", "true")

        self.assertEqual(spec, {"ports": [{"port": 80, "protocol": "TCP", "pools": ["pool-a"]}]})

    def test_disabled(self):
        spec = generate_binding_spec("80 TCP pool-a", "false")

        self.assertTrue(spec["disabled"])

    def test_spec_matches_config(self):
        anno = "80 TCP pool-a useSamePortAcrossPools\n443 TCP_SSL pool-b certSecret=cert"
        spec = generate_binding_spec(anno, "true")

        config = CLBBindingConfig({"metadata": {"name": "pod-1", "namespace": "default"}, "spec": spec},
                                  KIND_CLB_POD_BINDING)

        # 注解未变化时生成的 spec 与已有 binding 的 spec 相同，不会触发更新
        self.assertEqual(config.spec_dict(), spec)


class TestCLBBindingConfig(unittest.TestCase):

    def test_status(self):
        config = CLBBindingConfig({
            "metadata": {"name": "pod-1", "namespace": "default", "resourceVersion": "7"},
            "spec": {"ports": [{"port": 80, "protocol": "TCP", "pools": ["pool-a"]}], "disabled": False},
            "status": {"state": "Bound", "portBindings": [{
                "port": 80, "protocol": "TCP", "pool": "pool-a", "region": "ap-guangzhou",
                "loadbalancerId": "lb-1", "loadbalancerPort": 30000, "loadbalancerEndPort": 30009,
                "listenerId": "lbl-1", "certId": "cert-1",
            }]},
        }, KIND_CLB_POD_BINDING)

        self.assertFalse(config.is_disabled())
        self.assertFalse(config.is_deleting())
        binding = config.port_bindings[0]
        self.assertEqual((binding.lb_port, binding.lb_end_port, binding.cert_id), (30000, 30009, "cert-1"))
        data = config.to_dict()
        self.assertEqual(data["metadata"]["resourceVersion"], "7")
        self.assertEqual(data["status"]["portBindings"][0]["loadbalancerEndPort"], 30009)
        self.assertEqual(data["spec"]["disabled"], False)

    def test_sort_port_bindings(self):
        def binding(pool, lb_id, lb_port):
            return PortBindingStatus({"port": 80, "protocol": "TCP", "pool": pool,
                                      "loadbalancerId": lb_id, "loadbalancerPort": lb_port})

        bindings = [binding("pool-b", "lb-1", 30000), binding("pool-a", "lb-2", 30000),
                    binding("pool-a", "lb-1", 30001), binding("pool-a", "lb-1", 30000)]

        sort_port_bindings(bindings)

        self.assertEqual([str(b) for b in bindings], [
            "pool-a/lb-1/30000/TCP", "pool-a/lb-1/30001/TCP", "pool-a/lb-2/30000/TCP", "pool-b/lb-1/30000/TCP"])


class TestCLBPortPoolConfig(unittest.TestCase):

    def test_defaults(self):
        pool = CLBPortPoolConfig({"metadata": {"name": "pool-a"}, "spec": {"startPort": 30000}}, "ap-shanghai")

        self.assertEqual(pool.get_region(), "ap-shanghai")
        self.assertEqual(pool.get_end_port(), DEFAULT_END_PORT)
        self.assertEqual(pool.get_segment_length(), 1)
        self.assertEqual(pool.get_lb_policy(), LB_POLICY_RANDOM)
        self.assertIsNone(pool.get_precreate_max_port())
        self.assertFalse(pool.can_create_lb())

    def test_invalid_policy(self):
        with self.assertRaises(ValueError):
            CLBPortPoolConfig({"metadata": {"name": "pool-a"}, "spec": {"lbPolicy": "Weighted"}})

    def test_auto_create(self):
        pool = CLBPortPoolConfig({
            "metadata": {"name": "pool-a"},
            "spec": {"startPort": 30000, "autoCreate": {"enabled": True, "maxLoadBalancers": 2}},
            "status": {"state": POOL_STATE_ACTIVE, "loadbalancerStatuses": [
                {"loadbalancerID": "lb-1", "state": "Running", "autoCreated": True},
                {"loadbalancerID": "lb-2", "state": "NotFound", "autoCreated": True},
            ]},
        })

        self.assertEqual(pool.auto_created_lb_count(), 1)
        self.assertTrue(pool.can_create_lb())
        pool.lb_statuses[1].state = "Running"
        self.assertFalse(pool.can_create_lb())

    def test_pending_pool_cannot_create_lb(self):
        pool = CLBPortPoolConfig({
            "metadata": {"name": "pool-a"},
            "spec": {"startPort": 30000, "autoCreate": {"enabled": True}},
        })

        self.assertFalse(pool.can_create_lb())

    def test_precreate_max_port(self):
        pool = CLBPortPoolConfig({
            "metadata": {"name": "pool-a"},
            "spec": {"startPort": 30000, "listenerPrecreate": {"enabled": True, "tcp": 10}},
        })

        self.assertEqual(pool.get_precreate_max_port(), (30009, 0))

    def test_round_trip_keeps_existed_lb_field(self):
        obj = {
            "apiVersion": "networking.cloud.tencent.com/v1alpha1",
            "metadata": {"name": "pool-a"},
            "spec": {"startPort": 30000, "exsistedLoadBalancerIDs": ["lb-1"]},
        }

        data = CLBPortPoolConfig(obj).to_dict()

        self.assertEqual(data["spec"]["exsistedLoadBalancerIDs"], ["lb-1"])
        self.assertEqual(data["kind"], "CLBPortPool")


if __name__ == "__main__":
    unittest.main()
