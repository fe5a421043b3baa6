import json
import logging

from clbnet.clb.batch import BatchProcessor, BatchTask
from clbnet.clb.errors import (
    ListenerNotFoundError,
    OtherListenerNotFoundError,
    is_port_check_failed_error,
    is_some_listener_not_found_error,
)
from clbnet.clb.wait import wait_task

logger = logging.getLogger(__name__)

LISTENER_NAME = "TKE-LISTENER"


class CreateListenerTask(BatchTask):
    def __init__(self, region, lb_id, port, end_port, protocol, cert_id=None, extensive_parameters=None):
        super().__init__(region, lb_id)
        self.port = port
        self.end_port = end_port or 0
        self.protocol = protocol
        self.cert_id = cert_id or ""
        if isinstance(extensive_parameters, dict):
            extensive_parameters = json.dumps(extensive_parameters, sort_keys=True)
        self.extensive_parameters = extensive_parameters or ""

    def group_key(self):
        return (self.protocol, self.cert_id, self.extensive_parameters)


class DescribeListenerTask(BatchTask):
    def __init__(self, region, lb_id, listener_id):
        super().__init__(region, lb_id)
        self.listener_id = listener_id


class DeleteListenerTask(BatchTask):
    def __init__(self, region, lb_id, listener_id):
        super().__init__(region, lb_id)
        self.listener_id = listener_id


class ListenerManager:
    """
    监听器的创建、查询与删除
    创建和删除会按 lb 合并成批量请求，并持有 lb 锁执行
    """

    def __init__(self, cloud_api, caller, lb_locks, batch_size=200, batch_interval=2.0):
        self.cloud_api = cloud_api
        self.caller = caller
        self.lb_locks = lb_locks
        self.create_processor = BatchProcessor(
            "CreateListener", self._batch_create, lb_locks, batch_size, batch_interval)
        self.describe_processor = BatchProcessor(
            "DescribeListeners", self._batch_describe, None, batch_size, batch_interval)
        self.delete_processor = BatchProcessor(
            "DeleteLoadBalancerListeners", self._batch_delete, lb_locks, batch_size, batch_interval)

    def processors(self):
        return [self.create_processor, self.describe_processor, self.delete_processor]

    # ---------- 创建 ----------

    def create(self, region, lb_id, port, end_port, protocol, cert_id=None, extensive_parameters=None):
        """创建监听器，返回监听器 ID"""
        task = CreateListenerTask(region, lb_id, port, end_port, protocol, cert_id, extensive_parameters)
        return self.create_processor.submit(task).result()

    def _create(self, region, lb_id, protocol, cert_id, extensive_parameters, tasks):
        end_port = tasks[0].end_port if len(tasks) == 1 else None
        request_id, listener_ids = self.caller.call("CreateListener", lambda: self.cloud_api.create_listener(
            region, lb_id, protocol, [t.port for t in tasks],
            end_port=end_port or None,
            cert_id=cert_id or None,
            extensive_parameters=extensive_parameters or None,
            listener_name=LISTENER_NAME,
        ))
        if len(listener_ids) != len(tasks):
            raise RuntimeError(
                f"number of listener created is not match, expect {len(tasks)} got {len(listener_ids)}")
        wait_task(self.cloud_api, region, request_id, "CreateListener")
        return listener_ids

    def _batch_create(self, region, lb_id, tasks):
        groups = {}
        singles = []
        for task in tasks:
            # 端口段监听器只能单个创建
            if task.end_port:
                singles.append([task])
            else:
                groups.setdefault(task.group_key(), []).append(task)
        for group in list(groups.values()) + singles:
            protocol, cert_id, extensive_parameters = group[0].group_key()
            try:
                listener_ids = self._create(region, lb_id, protocol, cert_id, extensive_parameters, group)
            except Exception as e:
                if len(group) > 1 and is_port_check_failed_error(e):
                    # 批次中有端口已被占用，逐个创建以便把错误返回给对应的任务
                    logger.info(f"batch create listener on {lb_id} port check failed, fallback to create one by one")
                    for task in group:
                        self._create_one(region, lb_id, task)
                    continue
                logger.error(f"batch create listener failed lbId={lb_id} protocol={protocol} tasks={len(group)}: {e}")
                for task in group:
                    task.set_error(e)
                continue
            for task, listener_id in zip(group, listener_ids):
                task.set_result(listener_id)

    def _create_one(self, region, lb_id, task):
        try:
            listener_ids = self._create(
                region, lb_id, task.protocol, task.cert_id, task.extensive_parameters, [task])
        except Exception as e:
            task.set_error(e)
            return
        task.set_result(listener_ids[0])

    # ---------- 查询 ----------

    def get_by_id(self, region, lb_id, listener_id):
        """按 ID 查询监听器，不存在时返回 None"""
        task = DescribeListenerTask(region, lb_id, listener_id)
        return self.describe_processor.submit(task).result()

    def _batch_describe(self, region, lb_id, tasks):
        listener_ids = list(dict.fromkeys(t.listener_id for t in tasks))
        listeners = self.caller.call("DescribeListeners", lambda: self.cloud_api.describe_listeners(
            region, lb_id, listener_ids=listener_ids))
        found = {lis.listener_id: lis for lis in listeners}
        for task in tasks:
            task.set_result(found.get(task.listener_id))

    def get_by_port(self, region, lb_id, port, protocol):
        """按端口和协议查询监听器，不存在时返回 None"""
        listeners = self.caller.call("DescribeListeners", lambda: self.cloud_api.describe_listeners(
            region, lb_id, port=port, protocol=protocol))
        for lis in listeners:
            if lis.port == port and lis.protocol == protocol:
                return lis
        return None

    # ---------- 删除 ----------

    def delete_by_id(self, region, lb_id, listener_id):
        """删除监听器，监听器不存在时抛出 ListenerNotFoundError"""
        while True:
            task = DeleteListenerTask(region, lb_id, listener_id)
            try:
                return self.delete_processor.submit(task).result()
            except OtherListenerNotFoundError:
                logger.debug(f"listener {listener_id} not deleted due to other listener not found, retry")
                continue

    def _delete(self, region, lb_id, listener_ids):
        request_id = self.caller.call("DeleteLoadBalancerListeners", lambda: self.cloud_api.delete_listeners(
            region, lb_id, listener_ids))
        wait_task(self.cloud_api, region, request_id, "DeleteLoadBalancerListeners")

    def _batch_delete(self, region, lb_id, tasks):
        listener_ids = list(dict.fromkeys(t.listener_id for t in tasks))
        try:
            self._delete(region, lb_id, listener_ids)
        except Exception as e:
            if not is_some_listener_not_found_error(e):
                for task in tasks:
                    task.set_error(e)
                return
            msg = str(e)
            for task in tasks:
                if task.listener_id in msg:
                    task.set_error(ListenerNotFoundError(task.listener_id))
                else:
                    task.set_error(OtherListenerNotFoundError(task.listener_id))
            return
        for task in tasks:
            task.set_result(None)

    def delete_by_id_or_port(self, region, lb_id, listener_id, port, protocol):
        """
        有监听器 ID 时按 ID 删除，按 ID 找不到时再按端口查找删除
        最终没有可删除的监听器时抛出 ListenerNotFoundError
        """
        if listener_id:
            try:
                self.delete_by_id(region, lb_id, listener_id)
                return listener_id
            except ListenerNotFoundError:
                logger.debug(f"listener {listener_id} not found, try delete by port {port}/{protocol}")
        lis = self.get_by_port(region, lb_id, port, protocol)
        if lis is None:
            raise ListenerNotFoundError(listener_id or f"{lb_id}:{port}/{protocol}")
        self.delete_by_id(region, lb_id, lis.listener_id)
        return lis.listener_id
