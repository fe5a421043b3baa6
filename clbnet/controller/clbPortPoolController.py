import logging

from clbnet.apiServer.apiClient import NotFoundError, retry_on_conflict
from clbnet.config.clbBindingConfig import CLBBindingConfig
from clbnet.config.constants import (
    KIND_CLB_NODE_BINDING,
    KIND_CLB_POD_BINDING,
    KIND_CLB_PORT_POOL,
    LB_STATE_NOT_FOUND,
    LB_STATE_RUNNING,
    POOL_STATE_ACTIVE,
    POOL_STATE_DELETING,
    POOL_STATE_PENDING,
    POOL_STATE_SCALING,
    TOTAL_LISTENER_QUOTA,
)
from clbnet.config.portPoolConfig import CLBPortPoolConfig, LoadBalancerStatus
from clbnet.controller.clbBindingReconciler import should_notify
from clbnet.controller.finalizer import reconcile_with_finalizer, update_object_status
from clbnet.controller.workQueue import Controller, Result
from clbnet.portpool.protocolPort import LBKey

# 每个 lb 剩余可用监听器数不超过该值时认为端口不足
MIN_FREE_LISTENERS = 2
SCALE_UP_COOLDOWN = 10


class CLBPortPoolController(Controller):
    """
    CLBPortPool 控制器
    功能：
    1. 把端口池注册到分配器，并同步配额、lb 列表和各 lb 已分配数
    2. 端口不足且允许自动创建时创建新的 CLB
    3. 删除端口池时删除自动创建的 CLB
    4. 端口池变化后通知等待中的 binding 重新对账
    """

    name = "clbportpool"

    def __init__(self, api_client, clb_client, allocator, router=None, workers=1, default_region=""):
        super().__init__(workers)
        self.logger = logging.getLogger(__name__)
        self.api_client = api_client
        self.clb = clb_client
        self.allocator = allocator
        self.router = router
        self.default_region = default_region

    def _get(self, name):
        return CLBPortPoolConfig(self.api_client.get(KIND_CLB_PORT_POOL, name), self.default_region)

    def _update_status(self, pool):
        update_object_status(self.api_client, KIND_CLB_PORT_POOL, pool)

    def reconcile(self, key):
        try:
            pool = self._get(key)
        except NotFoundError:
            self.allocator.remove_pool(key)
            return Result()
        return reconcile_with_finalizer(
            self.api_client, KIND_CLB_PORT_POOL, pool, lambda: self.sync(pool), lambda: self.cleanup(pool))

    def resync(self):
        for item in self.api_client.list(KIND_CLB_PORT_POOL):
            self.enqueue(item.get("metadata", {}).get("name"))

    def load_pools(self):
        """启动时把所有端口池和 lb 列表加载到分配器，供回放 binding 的分配结果"""
        for item in self.api_client.list(KIND_CLB_PORT_POOL):
            pool = CLBPortPoolConfig(item, self.default_region)
            if pool.is_deleting():
                continue
            self.allocator.ensure_pool(pool)
            lb_keys = [LBKey(s.lb_id, pool.get_region())
                       for s in pool.lb_statuses if s.state != LB_STATE_NOT_FOUND]
            self.allocator.ensure_lb_ids(pool.name, lb_keys)

    def ensure_state(self, pool, state):
        if pool.state == state:
            return
        pool.state = state
        pool.message = None
        self._update_status(pool)
        self.allocator.ensure_pool(pool)

    # 同步

    def sync(self, pool):
        # 先注册到分配器，避免同时创建端口池和 binding 时 binding 找不到端口池
        self.allocator.ensure_pool(pool)
        try:
            need_update = False
            if pool.quota == 0:
                quota = int(pool.listener_quota or 0)
                if not quota:
                    quota = int(self.clb.get_quota(pool.get_region(), TOTAL_LISTENER_QUOTA))
                pool.quota = quota
                need_update = True
            if not pool.state:
                pool.state = POOL_STATE_PENDING
                need_update = True
            if need_update:
                self._update_status(pool)
                self.allocator.ensure_pool(pool)
            created = self.ensure_lb(pool)
        except Exception as e:
            self.logger.error(f"同步端口池 {pool.name} 失败: {e}")
            self._record_error(pool, e)
            raise
        self.notify_bindings(pool.name)
        if created:
            # 新建的 lb 还没有 Running 状态，尽快再对账一次
            return Result(1)
        return Result()

    def _record_error(self, pool, err):
        try:
            latest = self._get(pool.name)
            if latest.message == str(err):
                return
            latest.message = str(err)
            self._update_status(latest)
        except Exception as e:
            self.logger.warning(f"记录端口池 {pool.name} 错误信息失败: {e}")

    def get_clb_info(self, pool):
        lb_ids = list(pool.existed_lb_ids)
        for status in pool.lb_statuses:
            if status.state != LB_STATE_NOT_FOUND and status.lb_id not in lb_ids:
                lb_ids.append(status.lb_id)
        if not lb_ids:
            return {}
        return self.clb.batch_get_clb_info(lb_ids, pool.get_region())

    def ensure_lb(self, pool):
        """同步 lb 列表和状态，返回本次是否新建了 lb"""
        infos = self.get_clb_info(pool)
        self.ensure_existed_lb(pool, infos)
        created = self.ensure_lb_status(pool, infos)
        self.ensure_state(pool, POOL_STATE_ACTIVE)
        return created

    def ensure_existed_lb(self, pool, infos):
        known = {s.lb_id for s in pool.lb_statuses}
        to_add = []
        not_found = []
        for lb_id in pool.existed_lb_ids:
            if lb_id in known:
                continue
            info = infos.get(lb_id)
            if info is None:
                not_found.append(lb_id)
                continue
            status = LoadBalancerStatus({
                "loadbalancerID": lb_id,
                "loadbalancerName": info.lb_name,
                "ips": info.ips,
                "hostname": info.hostname or None,
            })
            to_add.append(status)
        if to_add:
            pool.lb_statuses.extend(to_add)
            self._update_status(pool)
            self.logger.info(f"端口池 {pool.name} 添加已有 clb {[s.lb_id for s in to_add]}")
        if not_found:
            self.logger.warning(f"端口池 {pool.name} 中的 clb {','.join(not_found)} 不存在")

    def ensure_lb_status(self, pool, infos):
        region = pool.get_region()
        statuses = []
        lb_keys = []
        insufficient = True
        auto_created = 0
        for old in pool.lb_statuses:
            status = LoadBalancerStatus(old.to_dict())
            info = infos.get(status.lb_id)
            if info is not None:
                lb_key = LBKey(status.lb_id, region)
                status.state = LB_STATE_RUNNING
                status.ips = list(info.ips)
                status.hostname = info.hostname or None
                status.lb_name = info.lb_name
                status.allocated = self.allocator.allocated_ports(pool.name, lb_key)
                if pool.quota - status.allocated > MIN_FREE_LISTENERS:
                    insufficient = False
                if status.auto_created:
                    auto_created += 1
                lb_keys.append(lb_key)
            elif status.state != LB_STATE_NOT_FOUND:
                self.logger.warning(f"端口池 {pool.name} 中的 clb {status.lb_id} 不存在")
                status.state = LB_STATE_NOT_FOUND
            statuses.append(status)

        self.allocator.ensure_lb_ids(pool.name, lb_keys)

        if statuses != pool.lb_statuses:
            pool.lb_statuses = statuses
            self._update_status(pool)

        port_pool = self.allocator.get_pool(pool.name)
        if port_pool is not None:
            self.logger.debug(f"端口池分配统计: {port_pool.get_allocation_stats()}")
        if port_pool is not None and port_pool.has_scale_up_request():
            insufficient = True
        if not insufficient or not pool.is_auto_create_enabled():
            return False
        max_lbs = pool.get_max_load_balancers()
        if max_lbs and auto_created >= int(max_lbs):
            self.logger.info(f"端口池 {pool.name} 自动创建的 clb 已达上限 {max_lbs}")
            return False
        self.create_clb(pool)
        if port_pool is not None:
            port_pool.reset_scale_up_request()
            port_pool.set_scale_up_cooldown(SCALE_UP_COOLDOWN)
        return True

    def create_clb(self, pool):
        self.logger.info(f"端口池 {pool.name} 端口不足，尝试创建 clb")
        self.ensure_state(pool, POOL_STATE_SCALING)
        try:
            lb_id = self.clb.create_clb(pool.get_region(), pool.get_auto_create_parameters())
        except Exception as e:
            self.logger.error(f"端口池 {pool.name} 创建 clb 失败: {e}")
            self.ensure_state(pool, POOL_STATE_ACTIVE)
            raise
        self.logger.info(f"端口池 {pool.name} 创建 clb 成功: {lb_id}")

        def add_lb():
            latest = self._get(pool.name)
            latest.lb_statuses.append(LoadBalancerStatus({"loadbalancerID": lb_id, "autoCreated": True}))
            # 创建成功后恢复为 Active，以便继续分配端口
            latest.state = POOL_STATE_ACTIVE
            self._update_status(latest)
            pool.lb_statuses = latest.lb_statuses
            pool.state = latest.state
            pool.resource_version = latest.resource_version

        retry_on_conflict(add_lb)
        self.allocator.ensure_pool(pool)

    # 清理

    def cleanup(self, pool):
        self.ensure_state(pool, POOL_STATE_DELETING)
        self.allocator.remove_pool(pool.name)
        for status in pool.lb_statuses:
            if not status.auto_created:
                continue
            self.clb.delete_clb(pool.get_region(), status.lb_id)
            self.logger.info(f"端口池 {pool.name} 删除自动创建的 clb {status.lb_id}")
        return Result()

    def notify_bindings(self, pool_name):
        """通知因端口池原因处于等待状态的 binding 重新对账"""
        if self.router is None:
            return
        for kind in (KIND_CLB_POD_BINDING, KIND_CLB_NODE_BINDING):
            for item in self.api_client.list(kind):
                try:
                    binding = CLBBindingConfig(item, kind)
                except ValueError as e:
                    self.logger.warning(f"忽略无效的 {kind}: {e}")
                    continue
                if not should_notify(pool_name, binding):
                    continue
                key = f"{binding.namespace}/{binding.name}" if binding.namespace else binding.name
                self.router.trigger(kind, key)
