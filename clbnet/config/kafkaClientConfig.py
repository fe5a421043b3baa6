"""
Kafka配置工具模块
控制器通过 Kafka 接收 Pod/Node/CLBBinding/CLBPortPool 的变更事件
"""

def get_kafka_consumer_config(bootstrap_servers, group_id, auto_offset_reset='latest',
                              enable_auto_commit=False, additional_config=None):
    """
    获取Kafka消费者配置

    Args:
        bootstrap_servers: Kafka服务器地址
        group_id: 消费者组ID，同一组内的控制器副本分摊事件
        auto_offset_reset: 自动偏移重置策略
        enable_auto_commit: 是否启用自动提交
        additional_config: 额外的配置项

    Returns:
        dict: Kafka消费者配置
    """
    config = {
        'bootstrap.servers': bootstrap_servers,
        'group.id': group_id,
        'auto.offset.reset': auto_offset_reset,
        'enable.auto.commit': enable_auto_commit,

        # 对账可能较慢，放宽轮询间隔
        'max.poll.interval.ms': 600000,      # 10分钟
        'session.timeout.ms': 30000,         # 30秒
        'heartbeat.interval.ms': 10000,      # 10秒

        'reconnect.backoff.ms': 50,
        'reconnect.backoff.max.ms': 1000,
        'allow.auto.create.topics': False,
    }

    if additional_config:
        config.update(additional_config)

    return config
