import logging

from clbnet.config.constants import DEFAULT_END_PORT, PROTOCOL_TCPUDP
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
from clbnet.portpool.portPool import candidate_ports, segment_end_port
from clbnet.portpool.protocolPort import PortAllocations, ports_to_allocate

logger = logging.getLogger(__name__)


class PortPools(dict):
    """端口池名称 -> PortPool，用于从一个或多个端口池中同时分配端口"""

    def sub(self, *names):
        sub = PortPools()
        for name in names:
            if name not in self:
                raise PoolNotFoundError(name)
            sub[name] = self[name]
        return sub

    def names(self):
        return ",".join(self.keys())

    def intersection(self):
        """
        计算所有端口池配置的交集

        Returns:
            (start_port, end_port, segment_length, quota)
        """
        start_port = 0
        end_port = DEFAULT_END_PORT
        segment_length = 0
        quota = 0
        for pool in self.values():
            if not pool.is_allocatable():
                raise PortPoolNotAllocatableError(pool.name, pool.state)
            if not pool.quota:
                raise QuotaNotFoundError(pool.name)
            start_port = max(start_port, pool.start_port)
            end_port = min(end_port, pool.end_port)
            pool_segment_length = max(pool.segment_length, 1)
            if segment_length == 0:
                segment_length = pool_segment_length
            elif segment_length != pool_segment_length:
                raise SegmentLengthNotEqualError(self.names())
            if quota == 0:
                quota = pool.quota
            elif quota != pool.quota:
                raise QuotaNotEqualError(self.names())
        if start_port > end_port:
            raise NoIntersectionError(self.names())
        return start_port, end_port, segment_length, quota

    def allocate_port(self, protocol, use_same_port_across_pools=False, cancel_event=None):
        """从所有端口池中各分配一个指定协议的端口，失败时不残留任何已分配端口"""
        if not self:
            raise NoPortAvailableError("no port pool specified")
        start_port, end_port, segment_length, quota = self.intersection()
        port_num = 2 if protocol == PROTOCOL_TCPUDP else 1
        if quota < port_num:
            raise ListenerQuotaExceededError(
                f"listener quota {quota} of port pools {self.names()} can not hold a {protocol} port"
            )
        if use_same_port_across_pools:
            return self._allocate_same_port_across_pools(
                start_port, end_port, segment_length, quota, protocol, cancel_event)
        return self._allocate_port_across_pools(
            start_port, end_port, segment_length, quota, protocol, cancel_event)

    def _capacity_error(self, pool):
        """端口池所有 lb 都满时，能扩容则等待扩容，否则端口不足"""
        if pool.auto_create_allowed:
            if pool.request_scale_up():
                logger.info(f"request scale up for port pool {pool.name}")
            return WaitLBScaleError(pool.name)
        return NoPortAvailableError(f"no available port in pool {pool.name!r}")

    def _allocate_port_across_pools(self, start_port, end_port, segment_length, quota, protocol, cancel_event):
        # 各端口池独立挑选端口，端口号可以不同
        logger.debug(f"allocate port across pools {self.names()} range={start_port}-{end_port} segment={segment_length}")
        allocated = PortAllocations()
        for pool in self.values():
            if cancel_event is not None and cancel_event.is_set():
                allocated.release()
                raise AllocationCancelledError()
            result, quota_exceeded = pool.allocate_port_from_range(
                start_port, end_port, quota, segment_length, protocol)
            if not result:
                allocated.release()
                if quota_exceeded:
                    raise self._capacity_error(pool)
                raise NoPortAvailableError(f"no available port in pool {pool.name!r}")
            allocated.extend(result)
        return allocated

    def _allocate_same_port_across_pools(self, start_port, end_port, segment_length, quota, protocol, cancel_event):
        # 所有端口池必须分配到相同的端口号
        logger.debug(f"allocate same port across pools {self.names()} range={start_port}-{end_port} segment={segment_length}")
        for port in candidate_ports(start_port, end_port, segment_length):
            ports = ports_to_allocate(port, segment_end_port(port, segment_length), protocol)
            allocated = PortAllocations()
            for pool in self.values():
                if cancel_event is not None and cancel_event.is_set():
                    allocated.release()
                    raise AllocationCancelledError()
                result, quota_exceeded = pool.allocate_port(quota, *ports)
                if quota_exceeded:
                    # 配额检查与端口号无关，换端口也无济于事
                    allocated.release()
                    raise self._capacity_error(pool)
                if not result:
                    allocated.release()
                    break
                allocated.extend(result)
            else:
                return allocated
        raise NoPortAvailableError(f"no available port can be allocated across port pools {self.names()!r}")
