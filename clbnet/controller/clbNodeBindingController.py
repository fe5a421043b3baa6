from clbnet.apiObject.clbNodeBinding import CLBNodeBinding
from clbnet.controller.clbBindingReconciler import CLBBindingReconciler
from clbnet.controller.workQueue import Controller


class CLBNodeBindingController(Controller):
    """对账 CLBNodeBinding，后端为节点的 InternalIP"""

    name = "clbnodebinding"

    def __init__(self, api_client, clb_client, allocator, router=None, workers=1, cancel_event=None):
        super().__init__(workers)
        self.api_client = api_client
        self.reconciler = CLBBindingReconciler(
            CLBNodeBinding, api_client, clb_client, allocator, router, cancel_event)

    def reconcile(self, key):
        return self.reconciler.reconcile(key)

    def resync(self):
        for item in self.api_client.list(CLBNodeBinding.kind):
            self.enqueue(item.get("metadata", {}).get("name"))
