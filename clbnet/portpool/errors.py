class PortPoolError(Exception):
    """端口分配相关错误的基类"""


class PortPoolConfigError(PortPoolError, ValueError):
    """端口池配置错误，需要人工介入，不应重试"""


class PoolNotFoundError(PortPoolConfigError):
    def __init__(self, pool):
        self.pool = pool
        super().__init__(f"port pool {pool!r} is not exists")


class SegmentLengthNotEqualError(PortPoolConfigError):
    def __init__(self, pools=""):
        super().__init__(f"segment length is not equal across all port pools: {pools}")


class QuotaNotEqualError(PortPoolConfigError):
    def __init__(self, pools=""):
        super().__init__(f"listener quota is not equal across all port pools: {pools}")


class QuotaNotFoundError(PortPoolConfigError):
    def __init__(self, pool):
        self.pool = pool
        super().__init__(f"listener quota of port pool {pool!r} is not determined yet")


class PortPoolNotAllocatableError(PortPoolConfigError):
    def __init__(self, pool, state=""):
        self.pool = pool
        self.state = state
        super().__init__(f"port pool {pool!r} is not allocatable (state={state or 'unknown'})")


class NoIntersectionError(PortPoolConfigError):
    def __init__(self, pools=""):
        super().__init__(f"there is no intersection between port ranges of port pools: {pools}")


class NoPortAvailableError(PortPoolError):
    def __init__(self, msg="no available port in pool"):
        super().__init__(msg)


class WaitLBScaleError(PortPoolError):
    """所有可用 lb 的监听器数量都已满，等待端口池扩容"""

    def __init__(self, pool):
        self.pool = pool
        super().__init__(f"waiting for clb scale of port pool {pool!r}")


class ListenerQuotaExceededError(PortPoolConfigError):
    def __init__(self, msg="listener quota exceeded"):
        super().__init__(msg)


class AllocationCancelledError(PortPoolError):
    def __init__(self, msg="port allocation cancelled"):
        super().__init__(msg)


class UnknownAllocationError(PortPoolError):
    def __init__(self, msg="unknown error"):
        super().__init__(msg)
