import logging
import time

from clbnet.clb.errors import TaskFailedError, TaskTimeoutError, is_request_limit_exceeded_error

logger = logging.getLogger(__name__)

TASK_SUCCESS = 0
TASK_FAILED = 1
TASK_RUNNING = 2

MAX_WAIT_TIMES = 100
WAIT_INTERVAL = 1.0


def wait_task(cloud_api, region, task_id, task_name, interval=WAIT_INTERVAL, cancel_event=None):
    """
    等待 CLB 异步任务完成

    Returns:
        任务成功时返回任务关联的 lb id 列表

    Raises:
        TaskFailedError: 任务失败
        TaskTimeoutError: 超过最大等待次数
    """
    for _ in range(MAX_WAIT_TIMES):
        if cancel_event is not None and cancel_event.is_set():
            raise TaskTimeoutError(task_id)
        try:
            status = cloud_api.describe_task_status(region, task_id)
        except Exception as e:
            if is_request_limit_exceeded_error(e):
                logger.info(f"request limit exceeded when wait for task {task_name} ({task_id}), retry")
                time.sleep(interval)
                continue
            raise
        if status.status == TASK_RUNNING:
            logger.debug(f"task {task_name} ({task_id}) still waiting")
            time.sleep(interval)
            continue
        if status.status == TASK_FAILED:
            raise TaskFailedError(task_id, status.message)
        if status.status == TASK_SUCCESS:
            return list(status.lb_ids)
        raise TaskFailedError(task_id, f"unknown task status {status.status}")
    raise TaskTimeoutError(task_id)
