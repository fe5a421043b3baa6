class URIConfig:
    """Kubernetes API 路径模板"""

    CORE_PREFIX = "/api/v1"
    CRD_PREFIX = "/apis/networking.cloud.tencent.com/v1alpha1"

    POD_URL = CORE_PREFIX + "/namespaces/{namespace}/pods/{name}"
    PODS_URL = CORE_PREFIX + "/pods"
    NODE_URL = CORE_PREFIX + "/nodes/{name}"
    NODES_URL = CORE_PREFIX + "/nodes"
    SECRET_URL = CORE_PREFIX + "/namespaces/{namespace}/secrets/{name}"

    CLB_PORT_POOL_URL = CRD_PREFIX + "/clbportpools/{name}"
    CLB_PORT_POOLS_URL = CRD_PREFIX + "/clbportpools"

    CLB_POD_BINDING_URL = CRD_PREFIX + "/namespaces/{namespace}/clbpodbindings/{name}"
    CLB_POD_BINDINGS_URL = CRD_PREFIX + "/namespaces/{namespace}/clbpodbindings"
    GLOBAL_CLB_POD_BINDINGS_URL = CRD_PREFIX + "/clbpodbindings"

    CLB_NODE_BINDING_URL = CRD_PREFIX + "/clbnodebindings/{name}"
    CLB_NODE_BINDINGS_URL = CRD_PREFIX + "/clbnodebindings"

    STATUS_SUFFIX = "/status"

    # kind -> (单个对象路径, 列表路径, 是否有命名空间)
    KINDS = {
        "Pod": (POD_URL, PODS_URL, True),
        "Node": (NODE_URL, NODES_URL, False),
        "Secret": (SECRET_URL, None, True),
        "CLBPortPool": (CLB_PORT_POOL_URL, CLB_PORT_POOLS_URL, False),
        "CLBPodBinding": (CLB_POD_BINDING_URL, GLOBAL_CLB_POD_BINDINGS_URL, True),
        "CLBNodeBinding": (CLB_NODE_BINDING_URL, CLB_NODE_BINDINGS_URL, False),
    }

    @classmethod
    def object_url(cls, kind, name, namespace=None):
        template, _, namespaced = cls._kind(kind)
        if namespaced:
            return template.format(namespace=namespace, name=name)
        return template.format(name=name)

    @classmethod
    def collection_url(cls, kind, namespace=None):
        template, list_url, namespaced = cls._kind(kind)
        if namespace and namespaced:
            return template.rsplit("/", 1)[0].format(namespace=namespace)
        if list_url is None:
            raise ValueError(f"kind {kind} can not be listed across namespaces")
        return list_url

    @classmethod
    def _kind(cls, kind):
        if kind not in cls.KINDS:
            raise ValueError(f"unknown kind {kind}")
        return cls.KINDS[kind]
