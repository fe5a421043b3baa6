import inspect

import yaml

from clbnet.config.kafkaClientConfig import get_kafka_consumer_config


class ControllerConfig:
    def __init__(
        self,
        apiserver,
        region,
        token=None,
        verify=True,
        secret_id=None,
        secret_key=None,
        vpc_id=None,
        cluster_id=None,
        clb_endpoint="clb.tencentcloudapi.com",
        kafka_server=None,
        kafka_topic="clb-port-mapping-events",
        kafka_group="clb-port-mapping-controller",
        pod_workers=10,
        node_workers=5,
        pod_binding_workers=20,
        node_binding_workers=10,
        port_pool_workers=3,
        api_rate_limits=None,
        batch_size=200,
        batch_interval=2.0,
        quota_refresh_interval=300,
        resync_interval=300,
        log_level="INFO",
    ):
        self.apiserver = apiserver
        self.region = region
        self.token = token
        self.verify = verify

        # 腾讯云 API 凭证，未配置时从环境变量 TENCENTCLOUD_SECRET_ID/TENCENTCLOUD_SECRET_KEY 读取
        self.secret_id = secret_id
        self.secret_key = secret_key
        self.vpc_id = vpc_id
        self.cluster_id = cluster_id
        self.clb_endpoint = clb_endpoint

        self.kafka_server = kafka_server
        self.topic = kafka_topic
        self.group_id = kafka_group

        # 每类控制器的并发 worker 数
        self.pod_workers = pod_workers
        self.node_workers = node_workers
        self.pod_binding_workers = pod_binding_workers
        self.node_binding_workers = node_binding_workers
        self.port_pool_workers = port_pool_workers

        # 云 API 限频，api 名称 -> 每秒请求数
        self.api_rate_limits = dict(api_rate_limits or {})
        self.batch_size = batch_size
        self.batch_interval = batch_interval
        self.quota_refresh_interval = quota_refresh_interval
        # 周期性全量对账，弥补丢失的事件
        self.resync_interval = resync_interval
        self.log_level = log_level

    def consumer_config(self):
        if not self.kafka_server:
            return None
        return get_kafka_consumer_config(self.kafka_server, self.group_id)

    @classmethod
    def from_dict(cls, data):
        data = dict(data or {})
        if not data.get("apiserver"):
            raise ValueError("apiserver is required")
        if not data.get("region"):
            raise ValueError("region is required")
        known = list(inspect.signature(cls.__init__).parameters)[1:]
        unknown = set(data) - set(known)
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)


def load_controller_config(path):
    """从 yaml 文件加载控制器配置"""
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    return ControllerConfig.from_dict(data)
