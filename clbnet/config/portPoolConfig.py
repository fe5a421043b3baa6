import copy

from clbnet.config.constants import (
    API_VERSION,
    DEFAULT_END_PORT,
    LB_POLICY_IN_ORDER,
    LB_POLICY_RANDOM,
    LB_POLICY_UNIFORM,
    LB_STATE_NOT_FOUND,
    POOL_STATE_PENDING,
)


class LoadBalancerStatus:
    """端口池中单个 CLB 的状态"""

    def __init__(self, arg_json):
        self.lb_id = arg_json.get("loadbalancerID", "")
        self.lb_name = arg_json.get("loadbalancerName", "")
        self.state = arg_json.get("state", "")
        self.auto_created = bool(arg_json.get("autoCreated", False))
        self.ips = list(arg_json.get("ips") or [])
        self.hostname = arg_json.get("hostname")
        self.allocated = int(arg_json.get("allocated", 0))

    def address(self):
        """优先使用域名，否则使用第一个 IP"""
        if self.hostname:
            return self.hostname
        if self.ips:
            return self.ips[0]
        return ""

    def to_dict(self):
        result = {
            "loadbalancerID": self.lb_id,
            "loadbalancerName": self.lb_name,
            "state": self.state,
            "allocated": self.allocated,
        }
        if self.auto_created:
            result["autoCreated"] = True
        if self.ips:
            result["ips"] = list(self.ips)
        if self.hostname:
            result["hostname"] = self.hostname
        return result

    def __eq__(self, other):
        return isinstance(other, LoadBalancerStatus) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"LoadBalancerStatus({self.lb_id}, {self.state}, allocated={self.allocated})"


class CLBPortPoolConfig:
    """CLBPortPool 配置类，端口池为集群级别资源"""

    VALID_POLICIES = (LB_POLICY_UNIFORM, LB_POLICY_IN_ORDER, LB_POLICY_RANDOM)

    def __init__(self, arg_json, default_region=""):
        self.api_version = arg_json.get("apiVersion", API_VERSION)
        self.default_region = default_region
        metadata = arg_json.get("metadata", {})
        self.name = metadata.get("name")
        self.uid = metadata.get("uid")
        self.resource_version = metadata.get("resourceVersion")
        self.deletion_timestamp = metadata.get("deletionTimestamp")
        self.annotations = dict(metadata.get("annotations") or {})
        self.labels = dict(metadata.get("labels") or {})
        self.finalizers = list(metadata.get("finalizers") or [])

        spec = arg_json.get("spec", {})
        self.start_port = int(spec.get("startPort", 0))
        self.end_port = spec.get("endPort")
        self.segment_length = spec.get("segmentLength")
        self.listener_quota = spec.get("listenerQuota")
        self.region = spec.get("region")
        self.lb_policy = spec.get("lbPolicy")
        self.lb_blacklist = list(spec.get("lbBlacklist") or [])
        self.existed_lb_ids = list(spec.get("exsistedLoadBalancerIDs") or [])
        self.auto_create = copy.deepcopy(spec.get("autoCreate"))
        self.listener_precreate = copy.deepcopy(spec.get("listenerPrecreate"))

        if self.lb_policy and self.lb_policy not in self.VALID_POLICIES:
            raise ValueError(f"unsupported lbPolicy {self.lb_policy}")

        status = arg_json.get("status") or {}
        self.state = status.get("state", "")
        self.message = status.get("message")
        self.quota = int(status.get("quota", 0))
        self.lb_statuses = [LoadBalancerStatus(s) for s in status.get("loadbalancerStatuses") or []]

    def get_region(self):
        return self.region or self.default_region

    def get_end_port(self):
        if not self.end_port:
            return DEFAULT_END_PORT
        return int(self.end_port)

    def get_segment_length(self):
        if not self.segment_length:
            return 1
        return int(self.segment_length)

    def get_lb_policy(self):
        return self.lb_policy or LB_POLICY_RANDOM

    def is_deleting(self):
        return bool(self.deletion_timestamp)

    def is_auto_create_enabled(self):
        return bool(self.auto_create and self.auto_create.get("enabled"))

    def get_max_load_balancers(self):
        if not self.auto_create:
            return None
        return self.auto_create.get("maxLoadBalancers")

    def get_auto_create_parameters(self):
        if not self.auto_create:
            return {}
        return dict(self.auto_create.get("parameters") or {})

    def auto_created_lb_count(self):
        return len([s for s in self.lb_statuses if s.auto_created and s.state != LB_STATE_NOT_FOUND])

    def can_create_lb(self):
        """端口池是否还允许自动创建 CLB"""
        if not self.state or self.state == POOL_STATE_PENDING:
            return False
        if not self.is_auto_create_enabled():
            return False
        max_lbs = self.get_max_load_balancers()
        if max_lbs and self.auto_created_lb_count() >= int(max_lbs):
            return False
        return True

    def get_precreate_max_port(self):
        """启用监听器预创建时返回 (tcp 最大端口, udp 最大端口)，0 表示不限制"""
        lcp = self.listener_precreate
        if not lcp or not lcp.get("enabled"):
            return None
        tcp_num = int(lcp.get("tcp") or 0)
        udp_num = int(lcp.get("udp") or 0)
        tcp_max = self.start_port + tcp_num - 1 if tcp_num > 0 else 0
        udp_max = self.start_port + udp_num - 1 if udp_num > 0 else 0
        return tcp_max, udp_max

    def get_lb_status(self, lb_id):
        for status in self.lb_statuses:
            if status.lb_id == lb_id:
                return status
        return None

    def spec_dict(self):
        spec = {"startPort": self.start_port}
        optional = {
            "endPort": self.end_port,
            "segmentLength": self.segment_length,
            "listenerQuota": self.listener_quota,
            "region": self.region,
            "lbPolicy": self.lb_policy,
            "autoCreate": self.auto_create,
            "listenerPrecreate": self.listener_precreate,
        }
        for key, value in optional.items():
            if value is not None:
                spec[key] = value
        if self.lb_blacklist:
            spec["lbBlacklist"] = list(self.lb_blacklist)
        if self.existed_lb_ids:
            spec["exsistedLoadBalancerIDs"] = list(self.existed_lb_ids)
        return spec

    def status_dict(self):
        status = {
            "state": self.state,
            "quota": self.quota,
            "loadbalancerStatuses": [s.to_dict() for s in self.lb_statuses],
        }
        if self.message:
            status["message"] = self.message
        return status

    def to_dict(self):
        metadata = {
            "name": self.name,
            "annotations": self.annotations,
            "labels": self.labels,
            "finalizers": self.finalizers,
        }
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.deletion_timestamp:
            metadata["deletionTimestamp"] = self.deletion_timestamp
        return {
            "apiVersion": self.api_version,
            "kind": "CLBPortPool",
            "metadata": metadata,
            "spec": self.spec_dict(),
            "status": self.status_dict(),
        }

    def __str__(self):
        return f"CLBPortPool({self.name}, {self.start_port}-{self.get_end_port()}, {self.state})"
