import logging
import threading
import time

from clbnet.clb.errors import is_request_limit_exceeded_error

logger = logging.getLogger(__name__)


class RateLimiter:
    """令牌桶限频器，桶容量为 1"""

    def __init__(self, rate):
        self.interval = 1.0 / rate
        self._lock = threading.Lock()
        self._next = 0.0

    def reserve(self):
        """预留一个令牌，返回需要等待的秒数"""
        with self._lock:
            now = time.monotonic()
            if self._next <= now:
                self._next = now + self.interval
                return 0.0
            delay = self._next - now
            self._next += self.interval
            return delay

    def wait(self, cancel_event=None):
        """等到拿到令牌，被取消时返回 False"""
        delay = self.reserve()
        if delay <= 0:
            return True
        if cancel_event is not None:
            return not cancel_event.wait(delay)
        time.sleep(delay)
        return True


class ApiCallCancelled(Exception):
    def __init__(self, api_name):
        self.api_name = api_name
        super().__init__(f"call of {api_name} cancelled")


class ApiCaller:
    """
    调用云 API 的统一入口
    按 api 名称限频，遇到云 API 限频错误时等待 1 秒后重试，直到成功、出现其它错误或被取消
    """

    RETRY_INTERVAL = 1.0

    def __init__(self, rate_limits=None):
        self.limiters = {name: RateLimiter(limit) for name, limit in (rate_limits or {}).items() if limit}

    def set_rate_limit(self, api_name, limit):
        self.limiters[api_name] = RateLimiter(limit)

    def call(self, api_name, fn, cancel_event=None):
        req_count = 0
        start = time.monotonic()
        try:
            while True:
                limiter = self.limiters.get(api_name)
                if limiter is not None and not limiter.wait(cancel_event):
                    raise ApiCallCancelled(api_name)
                before = time.monotonic()
                req_count += 1
                try:
                    result = fn()
                except Exception as e:
                    logger.debug(f"CLB API Call api={api_name} cost={time.monotonic() - before:.3f}s error={e}")
                    if not is_request_limit_exceeded_error(e):
                        raise
                    logger.info(f"clb api {api_name} request limit exceeded, retry")
                    if cancel_event is not None:
                        if cancel_event.wait(self.RETRY_INTERVAL):
                            raise
                    else:
                        time.sleep(self.RETRY_INTERVAL)
                    continue
                logger.debug(f"CLB API Call api={api_name} cost={time.monotonic() - before:.3f}s")
                return result
        finally:
            logger.debug(f"ApiCall performance api={api_name} totalCost={time.monotonic() - start:.3f}s reqCount={req_count}")
