import logging
import threading
import time

from clbnet.config.constants import TOTAL_LISTENER_QUOTA


class QuotaManager:
    """
    缓存各地域的 CLB 配额
    首次查询时调云 API 获取，缓存超过 refresh_interval 秒后再次查询时刷新
    """

    def __init__(self, cloud_api, caller, refresh_interval=300):
        self.logger = logging.getLogger(__name__)
        self.cloud_api = cloud_api
        self.caller = caller
        self.refresh_interval = refresh_interval
        self._lock = threading.Lock()
        self._cache = {}  # region -> (quota dict, 获取时间)

    def get(self, region):
        with self._lock:
            cached = self._cache.get(region)
        if cached is not None and time.monotonic() - cached[1] < self.refresh_interval:
            return cached[0]
        try:
            quota = dict(self.caller.call("DescribeQuota", lambda: self.cloud_api.describe_quota(region)))
        except Exception as e:
            if cached is None:
                raise
            # 刷新失败时继续使用旧缓存
            self.logger.error(f"failed to sync clb quota of region {region}: {e}")
            return cached[0]
        with self._lock:
            self._cache[region] = (quota, time.monotonic())
        if cached is None or cached[0] != quota:
            self.logger.info(f"clb quota region={region} quota={quota}")
        return quota

    def get_quota(self, region, quota_id=TOTAL_LISTENER_QUOTA):
        return int(self.get(region).get(quota_id, 0))
