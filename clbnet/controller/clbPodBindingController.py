from clbnet.apiObject.clbPodBinding import CLBPodBinding
from clbnet.controller.clbBindingReconciler import CLBBindingReconciler
from clbnet.controller.workQueue import Controller


class CLBPodBindingController(Controller):
    """对账 CLBPodBinding：分配端口、创建监听器并绑定 Pod IP"""

    name = "clbpodbinding"

    def __init__(self, api_client, clb_client, allocator, router=None, workers=1, cancel_event=None):
        super().__init__(workers)
        self.api_client = api_client
        self.reconciler = CLBBindingReconciler(
            CLBPodBinding, api_client, clb_client, allocator, router, cancel_event)

    def reconcile(self, key):
        return self.reconciler.reconcile(key)

    def resync(self):
        for item in self.api_client.list(CLBPodBinding.kind):
            metadata = item.get("metadata", {})
            self.enqueue(f"{metadata.get('namespace')}/{metadata.get('name')}")
