"""
测试用的内存实现：FakeCloudApi 代替腾讯云 CLB 接口，FakeApiClient 代替 Kubernetes apiserver
"""

import copy
import itertools
import threading

from clbnet.apiServer.apiClient import AlreadyExistsError, ConflictError, NotFoundError
from clbnet.clb.cloudApi import CLBInfo, CloudApi, Listener, TaskStatus
from clbnet.clb.errors import CloudApiError


class FakeCloudApi(CloudApi):
    """内存中的 CLB，所有异步任务立即成功"""

    def __init__(self):
        self.lock = threading.Lock()
        self.lbs = {}
        self.ids = itertools.count(1)
        self.calls = []
        self.quota = {"TOTAL_LISTENER_QUOTA": 50}
        self.task_statuses = {}

    def add_lb(self, lb_id, ips=None, hostname=None):
        self.lbs[lb_id] = {
            "info": CLBInfo(lb_id, lb_id, list(ips or ["1.1.1.1"]), hostname),
            "listeners": {},
            "targets": {},
        }

    def _lb(self, lb_id):
        lb = self.lbs.get(lb_id)
        if lb is None:
            raise CloudApiError("InvalidParameter", f"LoadBalancer not exist: {lb_id}", "req-x")
        return lb

    def _request_id(self):
        return f"req-{next(self.ids)}"

    def create_listener(self, region, lb_id, protocol, ports, end_port=None, cert_id=None,
                        extensive_parameters=None, listener_name=""):
        with self.lock:
            self.calls.append(("CreateListener", lb_id, protocol, tuple(ports)))
            lb = self._lb(lb_id)
            for port in ports:
                for lis in lb["listeners"].values():
                    if lis.port == port and lis.protocol == protocol:
                        raise CloudApiError("InvalidParameter.PortCheckFailed", f"port {port} exists", "req-x")
            ids = []
            for port in ports:
                listener_id = f"lbl-{next(self.ids)}"
                lb["listeners"][listener_id] = Listener(listener_id, protocol, port, end_port or 0, listener_name)
                lb["targets"][listener_id] = set()
                ids.append(listener_id)
            return self._request_id(), ids

    def describe_listeners(self, region, lb_id, listener_ids=None, port=None, protocol=None):
        with self.lock:
            self.calls.append(("DescribeListeners", lb_id))
            result = []
            for lis in self._lb(lb_id)["listeners"].values():
                if listener_ids and lis.listener_id not in listener_ids:
                    continue
                if port is not None and lis.port != port:
                    continue
                if protocol and lis.protocol != protocol:
                    continue
                result.append(lis)
            return result

    def delete_listeners(self, region, lb_id, listener_ids):
        with self.lock:
            self.calls.append(("DeleteLoadBalancerListeners", lb_id, tuple(listener_ids)))
            lb = self._lb(lb_id)
            missing = [i for i in listener_ids if i not in lb["listeners"]]
            if missing:
                raise CloudApiError("InvalidParameter", f"some ListenerId {missing} not found", "req-x")
            for listener_id in listener_ids:
                del lb["listeners"][listener_id]
                lb["targets"].pop(listener_id, None)
            return self._request_id()

    def batch_register_targets(self, region, lb_id, targets):
        with self.lock:
            self.calls.append(("BatchRegisterTargets", lb_id, len(targets)))
            lb = self._lb(lb_id)
            for listener_id, target in targets:
                lb["targets"][listener_id].add(target)
            return self._request_id()

    def batch_deregister_targets(self, region, lb_id, targets):
        with self.lock:
            self.calls.append(("BatchDeregisterTargets", lb_id, len(targets)))
            lb = self._lb(lb_id)
            failed = []
            for listener_id, target in targets:
                if listener_id not in lb["targets"]:
                    failed.append(listener_id)
                    continue
                lb["targets"][listener_id].discard(target)
            return failed

    def describe_targets(self, region, lb_id, listener_ids):
        with self.lock:
            self.calls.append(("DescribeTargets", lb_id))
            lb = self._lb(lb_id)
            return {i: sorted(lb["targets"][i], key=str) for i in listener_ids if i in lb["targets"]}

    def describe_task_status(self, region, task_id):
        statuses = self.task_statuses.get(task_id)
        if statuses:
            return statuses.pop(0)
        return TaskStatus(0)

    def describe_quota(self, region):
        self.calls.append(("DescribeQuota", region))
        return dict(self.quota)

    def describe_load_balancers(self, region, lb_ids):
        self.calls.append(("DescribeLoadBalancers", tuple(lb_ids)))
        return [self.lbs[i]["info"] for i in lb_ids if i in self.lbs]

    def create_load_balancer(self, region, params):
        with self.lock:
            self.calls.append(("CreateLoadBalancer", params))
            lb_id = f"lb-auto-{next(self.ids)}"
            self.add_lb(lb_id)
            return self._request_id(), [lb_id]

    def delete_load_balancers(self, region, lb_ids):
        with self.lock:
            self.calls.append(("DeleteLoadBalancer", tuple(lb_ids)))
            missing = [i for i in lb_ids if i not in self.lbs]
            if missing:
                raise CloudApiError("InvalidParameter.LBIdNotFound", f"{missing} not found", "req-x")
            for lb_id in lb_ids:
                del self.lbs[lb_id]
            return self._request_id()

    def count(self, name):
        return len([c for c in self.calls if c[0] == name])


def _merge_patch(target, patch):
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def _field(obj, path):
    value = obj
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class FakeApiClient:
    """
    内存中的对象存储，行为与 apiserver 一致的部分：
    resourceVersion 乐观锁、status 子资源、finalizer 阻塞删除、merge patch
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.objects = {}
        self.versions = itertools.count(1)
        self.uids = itertools.count(1)
        self.status_errors = []
        self.calls = []

    @staticmethod
    def _key(kind, name, namespace):
        return kind, namespace or None, name

    def _not_found(self, kind, name):
        return NotFoundError(404, "NotFound", f"{kind} {name} not found")

    def _bump(self, obj):
        obj["metadata"]["resourceVersion"] = str(next(self.versions))

    def _check_version(self, current, obj):
        expected = obj.get("metadata", {}).get("resourceVersion")
        if expected and expected != current["metadata"]["resourceVersion"]:
            raise ConflictError(409, "Conflict", "the object has been modified")

    def _finish_delete(self, key, obj):
        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"].get("finalizers"):
            del self.objects[key]

    def add(self, kind, obj):
        """直接写入对象，保留其中的 status"""
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{next(self.uids)}")
        metadata.setdefault("creationTimestamp", "2024-01-01T00:00:00Z")
        obj.setdefault("kind", kind)
        with self.lock:
            self._bump(obj)
            self.objects[self._key(kind, metadata["name"], metadata.get("namespace"))] = obj
        return copy.deepcopy(obj)

    def get(self, kind, name, namespace=None):
        with self.lock:
            self.calls.append(("get", kind, name))
            obj = self.objects.get(self._key(kind, name, namespace))
            if obj is None:
                raise self._not_found(kind, name)
            return copy.deepcopy(obj)

    def exists(self, kind, name, namespace=None):
        return self._key(kind, name, namespace) in self.objects

    def list(self, kind, namespace=None, label_selector=None, field_selector=None):
        with self.lock:
            items = []
            for (k, ns, _), obj in sorted(self.objects.items(), key=lambda kv: str(kv[0])):
                if k != kind or (namespace and ns != namespace):
                    continue
                if field_selector:
                    path, value = field_selector.split("=", 1)
                    if _field(obj, path) != value:
                        continue
                items.append(copy.deepcopy(obj))
            return items

    def create(self, kind, obj):
        metadata = obj.get("metadata", {})
        key = self._key(kind, metadata.get("name"), metadata.get("namespace"))
        with self.lock:
            self.calls.append(("create", kind, metadata.get("name")))
            if key in self.objects:
                raise AlreadyExistsError(409, "AlreadyExists", f"{kind} {metadata.get('name')} already exists")
        return self.add(kind, obj)

    def update(self, kind, obj):
        metadata = obj.get("metadata", {})
        key = self._key(kind, metadata.get("name"), metadata.get("namespace"))
        with self.lock:
            self.calls.append(("update", kind, metadata.get("name")))
            current = self.objects.get(key)
            if current is None:
                raise self._not_found(kind, metadata.get("name"))
            self._check_version(current, obj)
            new = copy.deepcopy(obj)
            # 主资源更新不修改 status 和删除时间
            if "status" in current:
                new["status"] = copy.deepcopy(current["status"])
            else:
                new.pop("status", None)
            new["metadata"]["uid"] = current["metadata"].get("uid")
            if current["metadata"].get("deletionTimestamp"):
                new["metadata"]["deletionTimestamp"] = current["metadata"]["deletionTimestamp"]
            else:
                new["metadata"].pop("deletionTimestamp", None)
            self._bump(new)
            self.objects[key] = new
            self._finish_delete(key, new)
            return copy.deepcopy(new)

    def update_status(self, kind, obj):
        metadata = obj.get("metadata", {})
        key = self._key(kind, metadata.get("name"), metadata.get("namespace"))
        with self.lock:
            self.calls.append(("update_status", kind, metadata.get("name")))
            if self.status_errors:
                raise self.status_errors.pop(0)
            current = self.objects.get(key)
            if current is None:
                raise self._not_found(kind, metadata.get("name"))
            self._check_version(current, obj)
            current["status"] = copy.deepcopy(obj.get("status") or {})
            self._bump(current)
            return copy.deepcopy(current)

    def patch(self, kind, name, patch, namespace=None):
        key = self._key(kind, name, namespace)
        with self.lock:
            self.calls.append(("patch", kind, name))
            current = self.objects.get(key)
            if current is None:
                raise self._not_found(kind, name)
            _merge_patch(current, patch)
            self._bump(current)
            return copy.deepcopy(current)

    def delete(self, kind, name, namespace=None):
        key = self._key(kind, name, namespace)
        with self.lock:
            self.calls.append(("delete", kind, name))
            current = self.objects.get(key)
            if current is None:
                raise self._not_found(kind, name)
            if current["metadata"].get("finalizers"):
                if not current["metadata"].get("deletionTimestamp"):
                    current["metadata"]["deletionTimestamp"] = "2024-01-02T00:00:00Z"
                    self._bump(current)
                return copy.deepcopy(current)
            del self.objects[key]
            return {}

    def count(self, name, kind=None):
        return len([c for c in self.calls if c[0] == name and (kind is None or c[1] == kind)])


class RecordingController:
    """只记录入队 key 的控制器，用于 EventRouter"""

    def __init__(self):
        self.keys = []
        self.delayed = []

    def enqueue(self, key):
        self.keys.append(key)

    def enqueue_after(self, key, delay):
        self.delayed.append((key, delay))
