from clbnet.apiServer.apiClient import NotFoundError
from clbnet.config.constants import ENABLE_CLB_PORT_MAPPING_KEY, KIND_CLB_POD_BINDING, KIND_POD
from clbnet.controller.workQueue import Controller, Result, split_key


class PodController(Controller):
    """
    根据 Pod 的端口映射注解维护同名的 CLBPodBinding
    reconciler 为 CLBPodBinding 的 CLBBindingReconciler，复用其 sync_clb_binding
    """

    name = "pod"

    def __init__(self, api_client, reconciler, workers=1):
        super().__init__(workers)
        self.api_client = api_client
        self.reconciler = reconciler

    def reconcile(self, key):
        namespace, name = split_key(key)
        try:
            pod = self.api_client.get(KIND_POD, name, namespace)
        except NotFoundError:
            return Result()
        return self.reconciler.sync_clb_binding(pod, KIND_POD)

    def resync(self):
        keys = set()
        for pod in self.api_client.list(KIND_POD):
            metadata = pod.get("metadata", {})
            if (metadata.get("annotations") or {}).get(ENABLE_CLB_PORT_MAPPING_KEY):
                keys.add(f"{metadata.get('namespace')}/{metadata.get('name')}")
        # 注解被移除的 Pod 也要对账，以删除多余的 binding
        for binding in self.api_client.list(KIND_CLB_POD_BINDING):
            metadata = binding.get("metadata", {})
            keys.add(f"{metadata.get('namespace')}/{metadata.get('name')}")
        for key in sorted(keys):
            self.enqueue(key)
