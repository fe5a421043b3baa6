from dataclasses import dataclass

from clbnet.config.constants import (
    CANONICAL_PROTOCOLS,
    PROTOCOL_TCP,
    PROTOCOL_TCPUDP,
    PROTOCOL_UDP,
)


@dataclass(frozen=True)
class ProtocolPort:
    """唯一标识一个分配的端口（或端口段）"""

    port: int
    protocol: str
    end_port: int = 0  # 0 表示单端口

    def key(self):
        """折叠共享同一四层配额的协议（TCP_SSL->TCP, QUIC->UDP），用于冲突检测和配额统计"""
        return ProtocolPort(self.port, CANONICAL_PROTOCOLS.get(self.protocol, self.protocol), self.end_port)

    @classmethod
    def from_binding(cls, binding):
        return cls(binding.lb_port, binding.protocol, binding.lb_end_port or 0)

    def __str__(self):
        if self.end_port:
            return f"{self.port}-{self.end_port}/{self.protocol}"
        return f"{self.port}/{self.protocol}"


@dataclass(frozen=True)
class LBKey:
    lb_id: str
    region: str

    @classmethod
    def from_binding(cls, binding):
        return cls(binding.lb_id, binding.region)

    def __str__(self):
        return f"{self.region}/{self.lb_id}"


def ports_to_allocate(port, end_port, protocol):
    """TCPUDP 需要同时占用相同端口号的 TCP 和 UDP"""
    if protocol == PROTOCOL_TCPUDP:
        return [ProtocolPort(port, PROTOCOL_TCP, end_port), ProtocolPort(port, PROTOCOL_UDP, end_port)]
    return [ProtocolPort(port, protocol, end_port)]


class PortAllocation:
    """一次分配的结果，释放时从所属端口池缓存中移除"""

    def __init__(self, protocol_port, pool, lb_key):
        self.protocol_port = protocol_port
        self.pool = pool
        self.lb_key = lb_key

    @property
    def port(self):
        return self.protocol_port.port

    @property
    def end_port(self):
        return self.protocol_port.end_port

    @property
    def protocol(self):
        return self.protocol_port.protocol

    @property
    def pool_name(self):
        return self.pool.name

    @property
    def lb_id(self):
        return self.lb_key.lb_id

    @property
    def region(self):
        return self.lb_key.region

    def release(self):
        return self.pool.release_port(self.lb_key, self.protocol_port)

    def __str__(self):
        return f"{self.lb_key.lb_id}:{self.protocol_port.port}/{self.protocol_port.protocol}"

    def __repr__(self):
        return f"PortAllocation({self.pool.name}, {self})"


class PortAllocations(list):
    """一个 binding 的全部分配结果，支持整体回滚"""

    def release(self):
        for allocation in self:
            allocation.release()

    def pools(self):
        names = []
        for allocation in self:
            if allocation.pool_name not in names:
                names.append(allocation.pool_name)
        return names

    def __str__(self):
        return str([str(allocation) for allocation in self])
