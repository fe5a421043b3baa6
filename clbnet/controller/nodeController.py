from clbnet.apiServer.apiClient import NotFoundError
from clbnet.config.constants import ENABLE_CLB_PORT_MAPPING_KEY, KIND_CLB_NODE_BINDING, KIND_NODE
from clbnet.controller.workQueue import Controller, Result, split_key


class NodeController(Controller):
    """根据 Node 的端口映射注解维护同名的 CLBNodeBinding"""

    name = "node"

    def __init__(self, api_client, reconciler, workers=1):
        super().__init__(workers)
        self.api_client = api_client
        self.reconciler = reconciler

    def reconcile(self, key):
        _, name = split_key(key)
        try:
            node = self.api_client.get(KIND_NODE, name)
        except NotFoundError:
            return Result()
        return self.reconciler.sync_clb_binding(node, KIND_NODE)

    def resync(self):
        keys = set()
        for node in self.api_client.list(KIND_NODE):
            metadata = node.get("metadata", {})
            if (metadata.get("annotations") or {}).get(ENABLE_CLB_PORT_MAPPING_KEY):
                keys.add(metadata.get("name"))
        for binding in self.api_client.list(KIND_CLB_NODE_BINDING):
            keys.add(binding.get("metadata", {}).get("name"))
        for key in sorted(keys):
            self.enqueue(key)
