from abc import ABC, abstractmethod

from clbnet.config.clbBindingConfig import CLBBindingConfig

SERVERLESS_INSTANCE_TYPE = "eklet"
INSTANCE_TYPE_LABEL = "node.kubernetes.io/instance-type"
NATIVE_NODE_PROVIDER_PREFIX = "tencentcloud://kn-"


class NodeNameIsEmptyError(Exception):
    def __init__(self, msg="node name is empty"):
        super().__init__(msg)


def is_serverless_node(node):
    labels = node.get("metadata", {}).get("labels") or {}
    return labels.get(INSTANCE_TYPE_LABEL) == SERVERLESS_INSTANCE_TYPE


def is_native_node(node):
    return (node.get("spec", {}).get("providerID") or "").startswith(NATIVE_NODE_PROVIDER_PREFIX)


def is_node_type_supported(node):
    """只支持超级节点和原生节点，它们的 IP 可以直接绑定到 CLB"""
    return is_serverless_node(node) or is_native_node(node)


class Backend(ABC):
    """CLBBinding 关联的后端对象（Pod 或 Node），obj 为 Kubernetes 对象的 dict"""

    kind = None

    def __init__(self, obj, api_client, router=None):
        self.obj = obj
        self.api_client = api_client
        self.router = router

    @property
    def metadata(self):
        return self.obj.get("metadata", {})

    def get_name(self):
        return self.metadata.get("name")

    def get_namespace(self):
        return self.metadata.get("namespace")

    def get_uid(self):
        return self.metadata.get("uid")

    def get_annotations(self):
        return self.metadata.get("annotations") or {}

    def get_labels(self):
        return self.metadata.get("labels") or {}

    def get_object(self):
        return self.obj

    def is_deleting(self):
        return bool(self.metadata.get("deletionTimestamp"))

    def key(self):
        namespace = self.get_namespace()
        return f"{namespace}/{self.get_name()}" if namespace else self.get_name()

    @abstractmethod
    def get_ip(self):
        pass

    @abstractmethod
    def get_node(self):
        """返回后端所在节点的 dict"""
        pass

    def trigger_reconcile(self):
        """通知后端对应的控制器重新对账"""
        if self.router is not None:
            self.router.trigger(self.kind, self.key())


class CLBBinding(ABC):
    """
    CLBPodBinding / CLBNodeBinding 的公共接口
    spec 和 status 字段都保存在同一个 CLBBindingConfig 对象上
    """

    kind = None
    backend_kind = None

    def __init__(self, config):
        self.config = config

    @classmethod
    def from_dict(cls, data):
        return cls(CLBBindingConfig(data, cls.kind))

    def get_spec(self):
        return self.config

    def get_status(self):
        return self.config

    def get_object(self):
        return self.config

    def get_type(self):
        return self.kind

    def get_name(self):
        return self.config.name

    def get_namespace(self):
        return self.config.namespace

    def get_annotations(self):
        return self.config.annotations

    def get_creation_timestamp(self):
        return self.config.creation_timestamp

    def is_deleting(self):
        return self.config.is_deleting()

    def key(self):
        if self.config.namespace:
            return f"{self.config.namespace}/{self.config.name}"
        return self.config.name

    def fetch_object(self, api_client):
        """从 apiserver 重新获取最新的对象"""
        data = api_client.get(self.kind, self.config.name, self.config.namespace)
        self.config = CLBBindingConfig(data, self.kind)
        return self.config

    @abstractmethod
    def get_associated_object(self, api_client, router=None):
        """返回同名的后端对象，不存在时抛出 NotFoundError"""
        pass

    @abstractmethod
    def get_associated_object_by_ip(self, api_client, ip, router=None):
        """按 IP 查找已知的后端对象，没有时返回 None"""
        pass
