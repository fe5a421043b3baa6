import logging

from clbnet.portpool.portPool import PortPool
from clbnet.portpool.portPools import PortPools
from clbnet.portpool.protocolPort import LBKey, ProtocolPort
from clbnet.portpool.rwLock import RWLock


class PortAllocator:
    """
    端口分配器，管理进程内所有端口池
    由控制器管理器创建一次，并注入到各个对账器中
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._lock = RWLock()
        self._pools = PortPools()

    def get_pool(self, name):
        with self._lock.read_locked():
            return self._pools.get(name)

    def pool_names(self):
        with self._lock.read_locked():
            return list(self._pools.keys())

    def add_pool(self, pool):
        """添加已构造好的端口池，已存在同名端口池时不做任何修改"""
        with self._lock.write_locked():
            if pool.name in self._pools:
                return False
            self._pools[pool.name] = pool
            return True

    def add_pool_if_not_exists(self, name):
        return self.add_pool(PortPool(name))

    def ensure_pool(self, pool_config):
        """确保端口池存在并同步配置，返回是否新增"""
        with self._lock.write_locked():
            pool = self._pools.get(pool_config.name)
            added = pool is None
            if added:
                pool = PortPool(pool_config.name)
                self._pools[pool_config.name] = pool
        pool.update_from_config(pool_config)
        if added:
            self.logger.info(f"port pool {pool_config.name} added to allocator")
        return added

    def remove_pool(self, name):
        with self._lock.write_locked():
            if self._pools.pop(name, None) is not None:
                self.logger.info(f"port pool {name} removed from allocator")

    def _get_port_pools(self, names):
        with self._lock.read_locked():
            return self._pools.sub(*names)

    def allocate(self, pools, protocol, use_same_port_across_pools=False, cancel_event=None):
        """从指定的端口池中分配端口，任一端口池不存在时抛出 PoolNotFoundError"""
        port_pools = self._get_port_pools(pools)
        return port_pools.allocate_port(protocol, use_same_port_across_pools, cancel_event)

    def release(self, pool, lb_key, protocol_port):
        port_pool = self.get_pool(pool)
        if port_pool is None:
            return False
        return port_pool.release_port(lb_key, protocol_port)

    def release_binding(self, binding):
        return self.release(binding.pool, LBKey.from_binding(binding), ProtocolPort.from_binding(binding))

    def mark_allocated(self, pool, lb_key, port, end_port, protocol):
        """启动时把 status 中已持久化的分配结果回放到缓存"""
        port_pool = self.get_pool(pool)
        if port_pool is None:
            return False
        return port_pool.mark_allocated(lb_key, ProtocolPort(port, protocol, end_port or 0))

    def mark_binding_allocated(self, binding):
        return self.mark_allocated(
            binding.pool, LBKey.from_binding(binding), binding.lb_port, binding.lb_end_port, binding.protocol)

    def ensure_lb_ids(self, name, lb_keys):
        port_pool = self.get_pool(name)
        if port_pool is None:
            raise ValueError(f"port pool {name!r} is not exists")
        port_pool.ensure_lb_ids(lb_keys)

    def allocated_ports(self, name, lb_key):
        port_pool = self.get_pool(name)
        if port_pool is None:
            return 0
        return port_pool.allocated_ports(lb_key)

    def can_allocate(self, name, start_port, end_port, quota, segment_length, protocol=None):
        port_pool = self.get_pool(name)
        if port_pool is None:
            return False
        return port_pool.can_allocate(start_port, end_port, quota, segment_length, protocol)

    def is_lb_exists(self, pool, lb_key):
        port_pool = self.get_pool(pool)
        if port_pool is None:
            return False
        return port_pool.is_lb_exists(lb_key)

    def remove_lb(self, pool, lb_key):
        port_pool = self.get_pool(pool)
        if port_pool is None:
            return False
        return port_pool.remove_lb(lb_key)
