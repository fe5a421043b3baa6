import json
import logging
import time

from clbnet.clb.errors import LbIdNotFoundError, is_lb_id_not_found_error
from clbnet.clb.listener import ListenerManager
from clbnet.clb.lock import LBLocks
from clbnet.clb.quota import QuotaManager
from clbnet.clb.rateLimit import ApiCaller
from clbnet.clb.target import TargetManager
from clbnet.clb.wait import wait_task
from clbnet.config.constants import TOTAL_LISTENER_QUOTA


class CLBClient:
    """
    控制器使用的 CLB 操作入口
    封装云 API 的限频重试、批量合并、lb 锁以及异步任务等待，
    所有方法都是阻塞调用，可以在多个 worker 线程中并发调用
    """

    CREATING_CHECK_INTERVAL = 3.0

    def __init__(self, cloud_api, default_region="", rate_limits=None, batch_size=200, batch_interval=2.0,
                 quota_refresh_interval=300, vpc_id=None, cluster_id=None):
        self.logger = logging.getLogger(__name__)
        self.cloud_api = cloud_api
        self.default_region = default_region
        self.vpc_id = vpc_id
        self.cluster_id = cluster_id
        self.caller = ApiCaller(rate_limits)
        self.lb_locks = LBLocks()
        self.listeners = ListenerManager(cloud_api, self.caller, self.lb_locks, batch_size, batch_interval)
        self.targets = TargetManager(cloud_api, self.caller, self.lb_locks, batch_size, batch_interval)
        self.quota = QuotaManager(cloud_api, self.caller, quota_refresh_interval)

    def _region(self, region):
        return region or self.default_region

    def start(self):
        for processor in self.listeners.processors() + self.targets.processors():
            processor.start()
        self.logger.info("CLBClient started")

    def stop(self):
        for processor in self.listeners.processors() + self.targets.processors():
            processor.stop()
        self.logger.info("CLBClient stopped")

    # 监听器

    def create_listener(self, region, lb_id, port, end_port, protocol, cert_id=None, extensive=None):
        return self.listeners.create(self._region(region), lb_id, port, end_port, protocol, cert_id, extensive)

    def get_listener_by_port(self, region, lb_id, port, protocol):
        return self.listeners.get_by_port(self._region(region), lb_id, port, protocol)

    def get_listener_by_id(self, region, lb_id, listener_id):
        return self.listeners.get_by_id(self._region(region), lb_id, listener_id)

    def delete_listener_by_id(self, region, lb_id, listener_id):
        return self.listeners.delete_by_id(self._region(region), lb_id, listener_id)

    def delete_listener_by_id_or_port(self, region, lb_id, listener_id, port, protocol):
        return self.listeners.delete_by_id_or_port(self._region(region), lb_id, listener_id, port, protocol)

    # 后端

    def register_target(self, region, lb_id, listener_id, target):
        return self.targets.register(self._region(region), lb_id, listener_id, target)

    def deregister_targets(self, region, lb_id, listener_id, targets):
        return self.targets.deregister(self._region(region), lb_id, listener_id, targets)

    def deregister_all_targets(self, region, lb_id, listener_id):
        return self.targets.deregister_all(self._region(region), lb_id, listener_id)

    def describe_targets(self, region, lb_id, listener_id):
        return self.targets.describe(self._region(region), lb_id, listener_id)

    # 配额与实例

    def get_quota(self, region, quota_id=TOTAL_LISTENER_QUOTA):
        return self.quota.get_quota(self._region(region), quota_id)

    def batch_get_clb_info(self, lb_ids, region):
        """返回 {lb_id: CLBInfo}，不存在的 lb 不会出现在结果中"""
        if not lb_ids:
            return {}
        region = self._region(region)
        infos = self.caller.call("DescribeLoadBalancers", lambda: self.cloud_api.describe_load_balancers(
            region, list(lb_ids)))
        return {info.lb_id: info for info in infos}

    def get_clb(self, lb_id, region):
        info = self.batch_get_clb_info([lb_id], region).get(lb_id)
        if info is None:
            raise LbIdNotFoundError(lb_id)
        return info

    def create_clb(self, region, extensive_parameters=None):
        """
        创建一个公网 CLB，并等待其创建完成

        Args:
            extensive_parameters: CreateLoadBalancer 的额外参数，dict 或 json 字符串

        Returns:
            新建 lb 的 ID
        """
        region = self._region(region)
        params = {
            "LoadBalancerType": "OPEN",
            "Number": 1,
        }
        if self.vpc_id:
            params["VpcId"] = self.vpc_id
        if self.cluster_id:
            params["Tags"] = [
                {"TagKey": "tke-clusterId", "TagValue": self.cluster_id},
                {"TagKey": "tke-createdBy-flag", "TagValue": "yes"},
            ]
        if isinstance(extensive_parameters, str) and extensive_parameters:
            extensive_parameters = json.loads(extensive_parameters)
        if extensive_parameters:
            params.update(extensive_parameters)
        request_id, lb_ids = self.caller.call(
            "CreateLoadBalancer", lambda: self.cloud_api.create_load_balancer(region, params))
        if not lb_ids:
            lb_ids = wait_task(self.cloud_api, region, request_id, "CreateLoadBalancer")
        else:
            wait_task(self.cloud_api, region, request_id, "CreateLoadBalancer")
        if not lb_ids:
            raise RuntimeError("no loadbalancer created")
        lb_id = lb_ids[0]
        while self.get_clb(lb_id, region).status == 0:
            self.logger.debug(f"lb {lb_id} is still creating")
            time.sleep(self.CREATING_CHECK_INTERVAL)
        self.logger.info(f"clb {lb_id} created in region {region}")
        return lb_id

    def delete_clb(self, region, *lb_ids):
        """删除 CLB，已不存在的 lb 视为删除成功"""
        if not lb_ids:
            return
        region = self._region(region)
        try:
            request_id = self.caller.call(
                "DeleteLoadBalancer", lambda: self.cloud_api.delete_load_balancers(region, list(lb_ids)))
        except Exception as e:
            if not is_lb_id_not_found_error(e):
                raise
            if len(lb_ids) == 1:
                return
            # 可能部分已删除，逐个重试
            for lb_id in lb_ids:
                self.delete_clb(region, lb_id)
            return
        wait_task(self.cloud_api, region, request_id, "DeleteLoadBalancer")
        self.logger.info(f"clb {', '.join(lb_ids)} deleted in region {region}")
