import logging
import threading

from clbnet.apiServer.apiClient import ApiClient
from clbnet.clb.clbClient import CLBClient
from clbnet.clb.tencentCloudApi import TencentCloudApi
from clbnet.config.clbBindingConfig import CLBBindingConfig
from clbnet.config.constants import (
    KIND_CLB_NODE_BINDING,
    KIND_CLB_POD_BINDING,
    KIND_CLB_PORT_POOL,
    KIND_NODE,
    KIND_POD,
)
from clbnet.controller.clbNodeBindingController import CLBNodeBindingController
from clbnet.controller.clbPodBindingController import CLBPodBindingController
from clbnet.controller.clbPortPoolController import CLBPortPoolController
from clbnet.controller.eventSource import EventRouter, KafkaEventSource
from clbnet.controller.nodeController import NodeController
from clbnet.controller.podController import PodController
from clbnet.portpool.allocator import PortAllocator


class ControllerManager:
    """
    控制器管理器
    创建唯一的端口分配器和 CLB 客户端，并注入到所有控制器中
    启动顺序：加载端口池 -> 回放 binding 分配结果 -> 启动 worker -> 全量入队 -> 消费事件
    """

    def __init__(self, config, api_client=None, clb_client=None):
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.stop_event = threading.Event()
        self.api_client = api_client or ApiClient(config.apiserver, config.token, config.verify)
        if clb_client is None:
            cloud_api = TencentCloudApi(config.secret_id, config.secret_key, config.clb_endpoint)
            clb_client = CLBClient(
                cloud_api,
                default_region=config.region,
                rate_limits=config.api_rate_limits,
                batch_size=config.batch_size,
                batch_interval=config.batch_interval,
                quota_refresh_interval=config.quota_refresh_interval,
                vpc_id=config.vpc_id,
                cluster_id=config.cluster_id,
            )
        self.clb_client = clb_client
        self.allocator = PortAllocator()
        self.router = EventRouter()

        self.pool_controller = CLBPortPoolController(
            self.api_client, clb_client, self.allocator, self.router,
            workers=config.port_pool_workers, default_region=config.region)
        self.pod_binding_controller = CLBPodBindingController(
            self.api_client, clb_client, self.allocator, self.router,
            workers=config.pod_binding_workers, cancel_event=self.stop_event)
        self.node_binding_controller = CLBNodeBindingController(
            self.api_client, clb_client, self.allocator, self.router,
            workers=config.node_binding_workers, cancel_event=self.stop_event)
        self.pod_controller = PodController(
            self.api_client, self.pod_binding_controller.reconciler, workers=config.pod_workers)
        self.node_controller = NodeController(
            self.api_client, self.node_binding_controller.reconciler, workers=config.node_workers)

        self.router.register(KIND_CLB_PORT_POOL, self.pool_controller)
        self.router.register(KIND_CLB_POD_BINDING, self.pod_binding_controller)
        self.router.register(KIND_CLB_NODE_BINDING, self.node_binding_controller)
        self.router.register(KIND_POD, self.pod_controller)
        self.router.register(KIND_NODE, self.node_controller)

        self.event_source = None
        self._resync_thread = None

    @property
    def controllers(self):
        return [
            self.pool_controller,
            self.pod_binding_controller,
            self.node_binding_controller,
            self.pod_controller,
            self.node_controller,
        ]

    def replay_bindings(self):
        """
        把所有 binding status 中已持久化的分配结果回放到分配器
        分配器缓存在进程重启后为空，必须在分配新端口之前完成
        """
        count = 0
        for kind in (KIND_CLB_POD_BINDING, KIND_CLB_NODE_BINDING):
            for item in self.api_client.list(kind):
                try:
                    binding = CLBBindingConfig(item, kind)
                except ValueError as e:
                    self.logger.warning(f"忽略无效的 {kind}: {e}")
                    continue
                for port_binding in binding.port_bindings:
                    if self.allocator.mark_binding_allocated(port_binding):
                        count += 1
                    else:
                        self.logger.warning(
                            f"{kind} {binding.namespace}/{binding.name} 的端口 {port_binding} 无法回放，"
                            f"端口池或 lb 不存在")
        self.logger.info(f"回放已分配端口 {count} 个")
        return count

    def resync(self):
        for controller in self.controllers:
            try:
                controller.resync()
            except Exception as e:
                self.logger.error(f"{controller.name} 全量同步失败: {e}")

    def _resync_loop(self):
        while not self.stop_event.wait(self.config.resync_interval):
            self.resync()

    def start(self):
        self.logger.info("控制器管理器启动中...")
        self.clb_client.start()
        self.pool_controller.load_pools()
        self.replay_bindings()
        for controller in self.controllers:
            controller.start()
        self.resync()

        consumer_config = self.config.consumer_config()
        if consumer_config:
            self.event_source = KafkaEventSource(consumer_config, self.config.topic, self.router)
            self.event_source.start_daemon()
        if self.config.resync_interval and self.config.resync_interval > 0:
            self._resync_thread = threading.Thread(target=self._resync_loop, name="resync", daemon=True)
            self._resync_thread.start()
        self.logger.info("控制器管理器已启动")

    def stop(self):
        if self.stop_event.is_set():
            return
        self.logger.info("控制器管理器停止中...")
        self.stop_event.set()
        if self.event_source is not None:
            self.event_source.stop_daemon()
        for controller in self.controllers:
            controller.stop()
        self.clb_client.stop()
        self.logger.info("控制器管理器已停止")
