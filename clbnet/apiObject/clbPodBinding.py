from clbnet.apiObject.clbBinding import Backend, CLBBinding, NodeNameIsEmptyError
from clbnet.config.constants import KIND_CLB_POD_BINDING, KIND_NODE, KIND_POD


class PodBackend(Backend):
    kind = KIND_POD

    def get_ip(self):
        return self.obj.get("status", {}).get("podIP") or ""

    def get_node_name(self):
        return self.obj.get("spec", {}).get("nodeName") or ""

    def get_node(self):
        node_name = self.get_node_name()
        if not node_name:
            raise NodeNameIsEmptyError()
        return self.api_client.get(KIND_NODE, node_name)


class CLBPodBinding(CLBBinding):
    kind = KIND_CLB_POD_BINDING
    backend_kind = KIND_POD

    def get_associated_object(self, api_client, router=None):
        pod = api_client.get(KIND_POD, self.config.name, self.config.namespace)
        return PodBackend(pod, api_client, router)

    def get_associated_object_by_ip(self, api_client, ip, router=None):
        pods = api_client.list(KIND_POD, field_selector=f"status.podIP={ip}")
        for pod in pods:
            if pod.get("status", {}).get("podIP") == ip:
                return PodBackend(pod, api_client, router)
        return None
