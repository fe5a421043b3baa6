import json
import logging
import threading
import time

from confluent_kafka import Consumer, KafkaError

from clbnet.config.constants import KIND_CLB_PORT_POOL


def event_key(data):
    """
    从事件消息体中取出工作队列的 key
    消息体可以是完整的 Kubernetes 对象，也可以只包含 {namespace, name}
    """
    metadata = data.get("metadata") or data
    name = metadata.get("name")
    if not name:
        return None
    namespace = metadata.get("namespace")
    return f"{namespace}/{name}" if namespace else name


class EventRouter:
    """按 kind 把事件分发到对应控制器的工作队列"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._controllers = {}
        self._lock = threading.Lock()

    def register(self, kind, controller):
        with self._lock:
            self._controllers[kind] = controller

    def get(self, kind):
        with self._lock:
            return self._controllers.get(kind)

    def kinds(self):
        with self._lock:
            return list(self._controllers)

    def trigger(self, kind, key, delay=0):
        controller = self.get(kind)
        if controller is None:
            self.logger.debug(f"没有处理 {kind} 的控制器，忽略事件 {key}")
            return False
        if delay > 0:
            controller.enqueue_after(key, delay)
        else:
            controller.enqueue(key)
        return True

    def notify_pool(self, pool_name):
        """通知端口池控制器对账，用于刷新已分配数或触发扩容"""
        return self.trigger(KIND_CLB_PORT_POOL, pool_name)


class KafkaEventSource:
    """
    从 Kafka 消费资源变更事件
    消息 key 为资源 kind，value 为 JSON 格式的对象或 {namespace, name}
    """

    def __init__(self, consumer_config, topic, router):
        self.logger = logging.getLogger(__name__)
        self.topic = topic
        self.router = router
        self.running = False
        self.consumer = None
        self._thread = None
        try:
            self.consumer = Consumer(consumer_config)
            self.consumer.subscribe([topic])
            self.logger.info(f"事件源订阅 topic {topic} 成功")
        except Exception as e:
            self.logger.error(f"初始化Kafka消费者失败: {e}")

    def start_daemon(self):
        if not self.consumer:
            self.logger.warning("未配置Kafka，只依赖周期性全量同步触发对账")
            return
        self.running = True
        self._thread = threading.Thread(target=self._daemon_loop, name="event-source", daemon=True)
        self._thread.start()
        self.logger.info("事件源守护线程已启动")

    def stop_daemon(self):
        self.running = False
        if self._thread is not None:
            self._thread.join(5)
            self._thread = None
        if self.consumer:
            self.consumer.close()
        self.logger.info("事件源守护线程已停止")

    def _daemon_loop(self):
        while self.running:
            try:
                msg = self.consumer.poll(timeout=1.0)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() != KafkaError._PARTITION_EOF:
                        self.logger.error(f"Kafka消费错误: {msg.error()}")
                    continue
                self.handle_message(msg.key(), msg.value())
                self.consumer.commit(asynchronous=False)
            except Exception as e:
                self.logger.error(f"事件源守护线程异常: {e}")
                time.sleep(1)

    def handle_message(self, raw_key, raw_value):
        """解析一条事件并分发，返回是否成功入队"""
        if not raw_key or not raw_value:
            return False
        kind = raw_key.decode("utf-8") if isinstance(raw_key, bytes) else raw_key
        if isinstance(raw_value, bytes):
            raw_value = raw_value.decode("utf-8")
        try:
            data = json.loads(raw_value)
        except ValueError as e:
            self.logger.warning(f"无法解析 {kind} 事件: {e}")
            return False
        key = event_key(data)
        if key is None:
            self.logger.warning(f"{kind} 事件缺少 name: {raw_value}")
            return False
        return self.router.trigger(kind, key)
