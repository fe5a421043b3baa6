import logging

from clbnet.clb.batch import BatchProcessor, BatchTask
from clbnet.clb.errors import ListenerNotFoundError, TargetOperationError
from clbnet.clb.wait import wait_task

logger = logging.getLogger(__name__)


class RegisterTargetTask(BatchTask):
    def __init__(self, region, lb_id, listener_id, target):
        super().__init__(region, lb_id)
        self.listener_id = listener_id
        self.target = target


class DescribeTargetsTask(BatchTask):
    def __init__(self, region, lb_id, listener_id):
        super().__init__(region, lb_id)
        self.listener_id = listener_id


class TargetManager:
    """监听器后端（rs）的绑定、解绑与查询"""

    def __init__(self, cloud_api, caller, lb_locks, batch_size=200, batch_interval=2.0):
        self.cloud_api = cloud_api
        self.caller = caller
        self.lb_locks = lb_locks
        self.register_processor = BatchProcessor(
            "BatchRegisterTargets", self._batch_register, lb_locks, batch_size, batch_interval)
        self.describe_processor = BatchProcessor(
            "DescribeTargets", self._batch_describe, None, batch_size, batch_interval)

    def processors(self):
        return [self.register_processor, self.describe_processor]

    def register(self, region, lb_id, listener_id, target):
        task = RegisterTargetTask(region, lb_id, listener_id, target)
        return self.register_processor.submit(task).result()

    def _batch_register(self, region, lb_id, tasks):
        targets = [(t.listener_id, t.target) for t in tasks]
        try:
            request_id = self.caller.call("BatchRegisterTargets", lambda: self.cloud_api.batch_register_targets(
                region, lb_id, targets))
            wait_task(self.cloud_api, region, request_id, "BatchRegisterTargets")
        except Exception as e:
            for task in tasks:
                task.set_error(e)
            return
        for task in tasks:
            task.set_result(None)

    def describe(self, region, lb_id, listener_id):
        """查询监听器已绑定的后端，监听器不存在时抛出 ListenerNotFoundError"""
        task = DescribeTargetsTask(region, lb_id, listener_id)
        return self.describe_processor.submit(task).result()

    def _batch_describe(self, region, lb_id, tasks):
        listener_ids = list(dict.fromkeys(t.listener_id for t in tasks))
        targets = self.caller.call("DescribeTargets", lambda: self.cloud_api.describe_targets(
            region, lb_id, listener_ids))
        for task in tasks:
            if task.listener_id in targets:
                task.set_result(list(targets[task.listener_id]))
            else:
                task.set_error(ListenerNotFoundError(task.listener_id))

    def deregister(self, region, lb_id, listener_id, targets):
        if not targets:
            return
        with self.lb_locks.get(lb_id):
            failed = self.caller.call("BatchDeregisterTargets", lambda: self.cloud_api.batch_deregister_targets(
                region, lb_id, [(listener_id, target) for target in targets]))
        if failed:
            raise TargetOperationError(f"batch deregister targets failed: {failed}")
        logger.debug(f"deregister targets {[str(t) for t in targets]} from {lb_id}/{listener_id}")

    def deregister_all(self, region, lb_id, listener_id):
        """解绑监听器上的全部后端，监听器不存在时忽略"""
        try:
            targets = self.describe(region, lb_id, listener_id)
        except ListenerNotFoundError:
            return
        self.deregister(region, lb_id, listener_id, targets)
