import copy

from clbnet.config.constants import (
    API_VERSION,
    PROTOCOL_TCP,
    PROTOCOL_TCPUDP,
    PROTOCOL_UDP,
    SUPPORTED_PROTOCOLS,
)


class PortEntry:
    """期望映射的端口: 容器/节点端口 + 协议 + 端口池列表"""

    def __init__(self, arg_json):
        self.port = int(arg_json.get("port", 0))
        self.protocol = arg_json.get("protocol", PROTOCOL_TCP)
        self.pools = list(arg_json.get("pools", []))
        self.use_same_port_across_pools = arg_json.get("useSamePortAcrossPools")
        self.cert_secret_name = arg_json.get("certSecretName")

        if not 0 < self.port <= 65535:
            raise ValueError(f"invalid port {self.port}")
        if self.protocol not in SUPPORTED_PROTOCOLS:
            raise ValueError(f"unsupported protocol {self.protocol}")
        if not self.pools:
            raise ValueError(f"port {self.port}/{self.protocol} has no pool")

    def use_same_port(self):
        return bool(self.use_same_port_across_pools)

    def keys(self):
        """展开成 (port, protocol, pool) 形式的键，TCPUDP 展开为 TCP 和 UDP 两个"""
        protocols = [self.protocol]
        if self.protocol == PROTOCOL_TCPUDP:
            protocols = [PROTOCOL_TCP, PROTOCOL_UDP]
        return [(self.port, protocol, pool) for pool in self.pools for protocol in protocols]

    def to_dict(self):
        result = {
            "port": self.port,
            "protocol": self.protocol,
            "pools": list(self.pools),
        }
        if self.use_same_port_across_pools is not None:
            result["useSamePortAcrossPools"] = self.use_same_port_across_pools
        if self.cert_secret_name is not None:
            result["certSecretName"] = self.cert_secret_name
        return result

    def __eq__(self, other):
        return isinstance(other, PortEntry) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"PortEntry({self.to_dict()})"


class PortBindingStatus:
    """已分配端口的绑定记录，持久化在 CLBBinding 的 status 中"""

    def __init__(self, arg_json):
        self.port = int(arg_json.get("port", 0))
        self.protocol = arg_json.get("protocol", "")
        self.cert_id = arg_json.get("certId")
        self.pool = arg_json.get("pool", "")
        self.region = arg_json.get("region", "")
        self.lb_id = arg_json.get("loadbalancerId", "")
        self.lb_port = int(arg_json.get("loadbalancerPort", 0))
        lb_end_port = arg_json.get("loadbalancerEndPort")
        self.lb_end_port = int(lb_end_port) if lb_end_port else None
        self.listener_id = arg_json.get("listenerId", "")

    def key(self):
        return (self.port, self.protocol, self.pool)

    def sort_key(self):
        return (
            self.pool,
            self.lb_id,
            self.lb_port,
            self.port,
            self.protocol,
            self.listener_id,
            self.cert_id or "",
            self.lb_end_port or 0,
            self.region,
        )

    def copy(self):
        return PortBindingStatus(self.to_dict())

    def to_dict(self):
        result = {
            "port": self.port,
            "protocol": self.protocol,
            "pool": self.pool,
            "region": self.region,
            "loadbalancerId": self.lb_id,
            "loadbalancerPort": self.lb_port,
            "listenerId": self.listener_id,
        }
        if self.cert_id:
            result["certId"] = self.cert_id
        if self.lb_end_port:
            result["loadbalancerEndPort"] = self.lb_end_port
        return result

    def __eq__(self, other):
        return isinstance(other, PortBindingStatus) and self.to_dict() == other.to_dict()

    def __str__(self):
        return f"{self.pool}/{self.lb_id}/{self.lb_port}/{self.protocol}"

    def __repr__(self):
        return f"PortBindingStatus({self.to_dict()})"


def sort_port_bindings(bindings):
    """按 端口池/lbId/lb端口/端口/协议/监听器/证书/结束端口/地域 排序"""
    bindings.sort(key=lambda b: b.sort_key())
    return bindings


class CLBBindingConfig:
    """CLBPodBinding / CLBNodeBinding 配置类"""

    def __init__(self, arg_json, kind):
        self.kind = kind
        self.api_version = arg_json.get("apiVersion", API_VERSION)
        metadata = arg_json.get("metadata", {})
        self.name = metadata.get("name")
        self.namespace = metadata.get("namespace")
        self.uid = metadata.get("uid")
        self.resource_version = metadata.get("resourceVersion")
        self.creation_timestamp = metadata.get("creationTimestamp")
        self.deletion_timestamp = metadata.get("deletionTimestamp")
        self.annotations = dict(metadata.get("annotations") or {})
        self.labels = dict(metadata.get("labels") or {})
        self.finalizers = list(metadata.get("finalizers") or [])
        self.owner_references = copy.deepcopy(metadata.get("ownerReferences") or [])

        spec = arg_json.get("spec", {})
        self.disabled = spec.get("disabled")
        self.ports = [PortEntry(p) for p in spec.get("ports") or []]

        status = arg_json.get("status") or {}
        self.state = status.get("state", "")
        self.message = status.get("message", "")
        self.port_bindings = [PortBindingStatus(b) for b in status.get("portBindings") or []]

    def is_disabled(self):
        return bool(self.disabled)

    def is_deleting(self):
        return bool(self.deletion_timestamp)

    def spec_dict(self):
        result = {"ports": [p.to_dict() for p in self.ports]}
        if self.disabled is not None:
            result["disabled"] = self.disabled
        return result

    def status_dict(self):
        result = {"state": self.state}
        if self.message:
            result["message"] = self.message
        if self.port_bindings:
            result["portBindings"] = [b.to_dict() for b in self.port_bindings]
        return result

    def to_dict(self):
        metadata = {
            "name": self.name,
            "namespace": self.namespace,
            "annotations": self.annotations,
            "labels": self.labels,
            "finalizers": self.finalizers,
            "ownerReferences": self.owner_references,
        }
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.creation_timestamp:
            metadata["creationTimestamp"] = self.creation_timestamp
        if self.deletion_timestamp:
            metadata["deletionTimestamp"] = self.deletion_timestamp
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": metadata,
            "spec": self.spec_dict(),
            "status": self.status_dict(),
        }
