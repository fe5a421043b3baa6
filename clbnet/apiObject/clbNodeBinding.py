from clbnet.apiObject.clbBinding import Backend, CLBBinding
from clbnet.config.constants import KIND_CLB_NODE_BINDING, KIND_NODE


def node_internal_ip(node):
    for address in node.get("status", {}).get("addresses") or []:
        if address.get("type") == "InternalIP":
            return address.get("address", "")
    return ""


class NodeBackend(Backend):
    kind = KIND_NODE

    def get_ip(self):
        return node_internal_ip(self.obj)

    def get_node(self):
        return self.obj


class CLBNodeBinding(CLBBinding):
    kind = KIND_CLB_NODE_BINDING
    backend_kind = KIND_NODE

    def get_associated_object(self, api_client, router=None):
        node = api_client.get(KIND_NODE, self.config.name)
        return NodeBackend(node, api_client, router)

    def get_associated_object_by_ip(self, api_client, ip, router=None):
        for node in api_client.list(KIND_NODE):
            if node_internal_ip(node) == ip:
                return NodeBackend(node, api_client, router)
        return None
