class CloudApiError(Exception):
    """云 API 返回的错误"""

    def __init__(self, code, message="", request_id=""):
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(f"Code={code}, Message={message}, RequestId={request_id}")


class ListenerNotFoundError(Exception):
    def __init__(self, listener_id=""):
        self.listener_id = listener_id
        super().__init__(f"listener not found: {listener_id}")


class OtherListenerNotFoundError(Exception):
    """同批次中其它监听器不存在导致本监听器未删除，需要重试"""

    def __init__(self, listener_id=""):
        self.listener_id = listener_id
        super().__init__(f"other listener not found in batch of {listener_id}")


class LbIdNotFoundError(Exception):
    def __init__(self, lb_id=""):
        self.lb_id = lb_id
        super().__init__(f"InvalidParameter.LBIdNotFound: lb id {lb_id} not found")


class TargetOperationError(Exception):
    pass


class TaskFailedError(Exception):
    def __init__(self, task_id, message=None):
        self.task_id = task_id
        msg = f"clb task {task_id} failed"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class TaskTimeoutError(Exception):
    def __init__(self, task_id):
        self.task_id = task_id
        super().__init__(f"clb task {task_id} wait too long")


def is_lb_id_not_found_error(err):
    return "InvalidParameter.LBIdNotFound" in str(err)


def is_load_balancer_not_exists_error(err):
    return "LoadBalancer not exist" in str(err)


def is_request_limit_exceeded_error(err):
    return "RequestLimitExceeded" in str(err)


def is_port_check_failed_error(err):
    return "InvalidParameter.PortCheckFailed" in str(err)


def is_some_listener_not_found_error(err):
    s = str(err)
    return "Code=InvalidParameter" in s and "some ListenerId" in s and "not found" in s
