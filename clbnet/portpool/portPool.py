import logging
import random
import threading
import time

from clbnet.config.constants import (
    DEFAULT_END_PORT,
    LB_POLICY_IN_ORDER,
    LB_POLICY_RANDOM,
    LB_POLICY_UNIFORM,
    POOL_STATE_ACTIVE,
    POOL_STATE_SCALING,
    PROTOCOL_TCP,
    PROTOCOL_TCPUDP,
    PROTOCOL_UDP,
)
from clbnet.portpool.protocolPort import (
    LBKey,
    PortAllocation,
    PortAllocations,
    ports_to_allocate,
)


class MaxPort:
    """监听器预创建时可分配的最大端口，0 表示不限制"""

    def __init__(self, tcp=0, udp=0):
        self.tcp = tcp
        self.udp = udp

    def allows(self, protocol_port):
        if protocol_port.protocol == PROTOCOL_TCP:
            return not self.tcp or protocol_port.port <= self.tcp
        if protocol_port.protocol == PROTOCOL_UDP:
            return not self.udp or protocol_port.port <= self.udp
        return False


def candidate_ports(start_port, end_port, segment_length):
    """按端口段步长遍历端口范围，只返回能完整放进范围内的端口段起点"""
    segment_length = max(segment_length, 1)
    return range(start_port, end_port - segment_length + 2, segment_length)


def segment_end_port(port, segment_length):
    if segment_length > 1:
        return port + segment_length - 1
    return 0


class PortPool:
    """
    单个端口池的分配缓存
    缓存结构: LBKey -> 该 lb 上已分配端口的规范化 key 集合
    所有方法都只做内存操作，不在持锁期间做任何 IO
    """

    def __init__(self, name, region="", start_port=1, end_port=DEFAULT_END_PORT,
                 segment_length=1, quota=0, state="", lb_policy=LB_POLICY_RANDOM,
                 lb_blacklist=None, max_port=None):
        self.logger = logging.getLogger(__name__)
        self.name = name
        self.region = region
        self.start_port = start_port
        self.end_port = end_port
        self.segment_length = segment_length
        self.quota = quota
        self.state = state
        self.lb_policy = lb_policy
        self.lb_blacklist = set(lb_blacklist or [])
        self.max_port = max_port
        self.auto_create_allowed = False

        self._lock = threading.Lock()
        self._cache = {}
        self._lb_list = []

        self._scale_up_lock = threading.Lock()
        self._scale_up_requested = False
        self._scale_up_cooldown_until = 0.0

    def update_from_config(self, config):
        """同步 CLBPortPool 资源中的配置"""
        with self._lock:
            self.region = config.get_region()
            self.start_port = config.start_port
            self.end_port = config.get_end_port()
            self.segment_length = config.get_segment_length()
            self.quota = config.quota
            self.state = config.state
            self.lb_policy = config.get_lb_policy()
            self.lb_blacklist = {LBKey(lb_id, self.region) for lb_id in config.lb_blacklist}
            max_port = config.get_precreate_max_port()
            self.max_port = MaxPort(*max_port) if max_port else None
            self.auto_create_allowed = config.can_create_lb()

    def is_precreate_listener_enabled(self):
        return self.max_port is not None

    def is_allocatable(self):
        return self.state in (POOL_STATE_ACTIVE, POOL_STATE_SCALING)

    def _candidate_lbs(self):
        # 调用方需持有 self._lock
        if self.lb_policy == LB_POLICY_UNIFORM:
            lbs = sorted(self._lb_list, key=lambda lb: len(self._cache.get(lb, ())))
        elif self.lb_policy == LB_POLICY_IN_ORDER:
            lbs = list(self._lb_list)
        else:
            lbs = list(self._lb_list)
            random.shuffle(lbs)
        return [(lb, self._cache[lb]) for lb in lbs if lb in self._cache and lb not in self.lb_blacklist]

    def _can_place(self, allocated, ports):
        for port in ports:
            key = port.key()
            if key in allocated:
                return False
            if self.max_port is not None and not self.max_port.allows(key):
                return False
        return True

    def _try_allocate_from_lb(self, lb_key, allocated, ports):
        # 要么全部端口都分配成功，要么一个都不记录
        if not self._can_place(allocated, ports):
            return PortAllocations()
        result = PortAllocations()
        for port in ports:
            allocated.add(port.key())
            result.append(PortAllocation(port, self, lb_key))
        return result

    def allocate_port(self, quota, *ports):
        """
        在某个 lb 上分配指定的端口

        Returns:
            (PortAllocations, quota_exceeded): 分配失败时结果为空，
            quota_exceeded 仅在所有 lb 监听器数量都已满时为 True
        """
        with self._lock:
            if not self._cache:
                return PortAllocations(), True
            quota_exceeded = True
            for lb_key, allocated in self._candidate_lbs():
                if len(allocated) + len(ports) > quota:  # 监听器数量已满，换下个 lb
                    continue
                quota_exceeded = False
                result = self._try_allocate_from_lb(lb_key, allocated, ports)
                if result:
                    return result, False
            return PortAllocations(), quota_exceeded

    def allocate_port_from_range(self, start_port, end_port, quota, segment_length, protocol):
        """在端口范围内找第一个可用的端口（段）"""
        port_num = 2 if protocol == PROTOCOL_TCPUDP else 1
        with self._lock:
            if not self._cache:
                return PortAllocations(), True
            quota_exceeded = True
            for lb_key, allocated in self._candidate_lbs():
                if len(allocated) + port_num > quota:
                    continue
                quota_exceeded = False
                for port in candidate_ports(start_port, end_port, segment_length):
                    ports = ports_to_allocate(port, segment_end_port(port, segment_length), protocol)
                    result = self._try_allocate_from_lb(lb_key, allocated, ports)
                    if result:
                        return result, False
            return PortAllocations(), quota_exceeded

    def can_allocate(self, start_port, end_port, quota, segment_length, protocol=None):
        """dry run: 是否还能分配出至少一个端口，不指定协议时 TCP 或 UDP 任意一个可分配即可"""
        protocols = [protocol] if protocol else [PROTOCOL_TCP, PROTOCOL_UDP]
        with self._lock:
            for _, allocated in self._candidate_lbs():
                for proto in protocols:
                    port_num = 2 if proto == PROTOCOL_TCPUDP else 1
                    if len(allocated) + port_num > quota:
                        continue
                    for port in candidate_ports(start_port, end_port, segment_length):
                        ports = ports_to_allocate(port, segment_end_port(port, segment_length), proto)
                        if self._can_place(allocated, ports):
                            return True
            return False

    def mark_allocated(self, lb_key, protocol_port):
        """直接记录已分配端口（启动时从 status 回放），不经过分配策略和配额检查"""
        with self._lock:
            allocated = self._cache.get(lb_key)
            if allocated is None:
                return False
            allocated.add(protocol_port.key())
            return True

    def release_port(self, lb_key, protocol_port):
        with self._lock:
            allocated = self._cache.get(lb_key)
            if allocated is None:
                return False
            allocated.discard(protocol_port.key())
            return True

    def is_lb_exists(self, lb_key):
        with self._lock:
            return lb_key in self._cache

    def remove_lb(self, lb_key):
        with self._lock:
            if lb_key not in self._cache:
                return False
            self._remove_lb_locked(lb_key)
            return True

    def _remove_lb_locked(self, lb_key):
        del self._cache[lb_key]
        self._lb_list = [lb for lb in self._lb_list if lb != lb_key]

    def allocated_ports(self, lb_key):
        with self._lock:
            return len(self._cache.get(lb_key, ()))

    def lb_keys(self):
        with self._lock:
            return list(self._lb_list)

    def ensure_lb_ids(self, lb_keys):
        """以权威的 lb 列表为准对齐缓存，保留仍在列表中的 lb 的已分配端口"""
        lb_keys = list(dict.fromkeys(lb_keys))
        with self._lock:
            if lb_keys == self._lb_list:
                return
            wanted = set(lb_keys)
            for lb_key in [lb for lb in self._cache if lb not in wanted]:
                self.logger.info(f"remove lb {lb_key} from port pool {self.name}")
                self._remove_lb_locked(lb_key)
            for lb_key in lb_keys:
                if lb_key not in self._cache:
                    self.logger.info(f"add lb {lb_key} to port pool {self.name}")
                    self._cache[lb_key] = set()
            self._lb_list = lb_keys

    def _in_cooldown(self):
        return time.monotonic() < self._scale_up_cooldown_until

    def request_scale_up(self):
        """请求扩容，只有第一个请求成功，返回 True 表示应通知端口池对账"""
        with self._scale_up_lock:
            if self._in_cooldown() or self._scale_up_requested:
                return False
            self._scale_up_requested = True
            return True

    def has_scale_up_request(self):
        with self._scale_up_lock:
            if self._in_cooldown():
                return False
            return self._scale_up_requested

    def reset_scale_up_request(self):
        with self._scale_up_lock:
            self._scale_up_requested = False

    def set_scale_up_cooldown(self, seconds):
        with self._scale_up_lock:
            self._scale_up_cooldown_until = time.monotonic() + seconds

    def get_allocation_stats(self):
        with self._lock:
            return {
                "pool": self.name,
                "quota": self.quota,
                "lbs": {lb.lb_id: len(self._cache[lb]) for lb in self._lb_list},
                "total_allocated": sum(len(v) for v in self._cache.values()),
            }

    def __repr__(self):
        return f"PortPool({self.name}, {self.start_port}-{self.end_port}, lbs={len(self._lb_list)})"
