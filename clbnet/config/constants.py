"""
CLB 端口映射相关常量
注解键、协议、负载均衡策略以及各类资源状态
"""

API_GROUP = "networking.cloud.tencent.com"
API_VERSION = "networking.cloud.tencent.com/v1alpha1"

# 注解
ENABLE_CLB_PORT_MAPPING_KEY = "networking.cloud.tencent.com/enable-clb-port-mapping"
CLB_PORT_MAPPING_KEY = "networking.cloud.tencent.com/clb-port-mapping"
CLB_PORT_MAPPING_RESULT_KEY = "networking.cloud.tencent.com/clb-port-mapping-result"
CLB_PORT_MAPPING_STATUS_KEY = "networking.cloud.tencent.com/clb-port-mapping-status"
FINALIZER = "networking.cloud.tencent.com/finalizer"
RETAIN_KEY = "networking.cloud.tencent.com/retain"
FINALIZED_KEY = "networking.cloud.tencent.com/finalized"

# 证书 secret 中保存证书 ID 的键
CERT_ID_SECRET_KEY = "qcloud_cert_id"

# 协议
PROTOCOL_TCP = "TCP"
PROTOCOL_UDP = "UDP"
PROTOCOL_TCPUDP = "TCPUDP"
PROTOCOL_TCP_SSL = "TCP_SSL"
PROTOCOL_QUIC = "QUIC"
SUPPORTED_PROTOCOLS = (PROTOCOL_TCP, PROTOCOL_UDP, PROTOCOL_TCPUDP, PROTOCOL_TCP_SSL, PROTOCOL_QUIC)

# 共享同一四层监听器配额的协议
CANONICAL_PROTOCOLS = {
    PROTOCOL_TCP_SSL: PROTOCOL_TCP,
    PROTOCOL_QUIC: PROTOCOL_UDP,
}

# 负载均衡选择策略
LB_POLICY_UNIFORM = "Uniform"  # 每次找已分配数最少的 lb
LB_POLICY_IN_ORDER = "InOrder"  # 按列表顺序
LB_POLICY_RANDOM = "Random"  # 随机

DEFAULT_END_PORT = 65535

# CLBBinding 状态
BINDING_STATE_PENDING = "Pending"
BINDING_STATE_ALLOCATED = "Allocated"
BINDING_STATE_BOUND = "Bound"
BINDING_STATE_NO_BACKEND = "NoBackend"
BINDING_STATE_WAIT_BACKEND = "WaitBackend"
BINDING_STATE_WAIT_FOR_LB = "WaitForLB"
BINDING_STATE_NODE_TYPE_NOT_SUPPORTED = "NodeTypeNotSupported"
BINDING_STATE_DISABLED = "Disabled"
BINDING_STATE_FAILED = "Failed"
BINDING_STATE_PORT_POOL_NOT_FOUND = "PortPoolNotFound"
BINDING_STATE_PORT_POOL_NOT_ALLOCATABLE = "PortPoolNotAllocatable"
BINDING_STATE_NO_PORT_AVAILABLE = "NoPortAvailable"
BINDING_STATE_DELETING = "Deleting"

# CLBPortPool 状态
POOL_STATE_PENDING = "Pending"
POOL_STATE_ACTIVE = "Active"
POOL_STATE_SCALING = "Scaling"
POOL_STATE_DELETING = "Deleting"

# 端口池中 lb 的状态
LB_STATE_RUNNING = "Running"
LB_STATE_NOT_FOUND = "NotFound"

TOTAL_LISTENER_QUOTA = "TOTAL_LISTENER_QUOTA"

KIND_POD = "Pod"
KIND_NODE = "Node"
KIND_CLB_POD_BINDING = "CLBPodBinding"
KIND_CLB_NODE_BINDING = "CLBNodeBinding"
KIND_CLB_PORT_POOL = "CLBPortPool"
