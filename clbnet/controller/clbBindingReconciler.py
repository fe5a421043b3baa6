import base64
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor

from clbnet.apiObject.clbBinding import NodeNameIsEmptyError, is_node_type_supported
from clbnet.apiServer.apiClient import (
    AlreadyExistsError,
    NotFoundError,
    is_conflict,
    retry_on_conflict,
)
from clbnet.clb.cloudApi import Target
from clbnet.clb.errors import (
    ListenerNotFoundError,
    is_lb_id_not_found_error,
    is_load_balancer_not_exists_error,
    is_port_check_failed_error,
    is_request_limit_exceeded_error,
)
from clbnet.config.clbBindingConfig import CLBBindingConfig, PortBindingStatus, sort_port_bindings
from clbnet.config.constants import (
    API_VERSION,
    BINDING_STATE_ALLOCATED,
    BINDING_STATE_BOUND,
    BINDING_STATE_DELETING,
    BINDING_STATE_DISABLED,
    BINDING_STATE_FAILED,
    BINDING_STATE_NO_BACKEND,
    BINDING_STATE_NO_PORT_AVAILABLE,
    BINDING_STATE_NODE_TYPE_NOT_SUPPORTED,
    BINDING_STATE_PENDING,
    BINDING_STATE_PORT_POOL_NOT_ALLOCATABLE,
    BINDING_STATE_PORT_POOL_NOT_FOUND,
    BINDING_STATE_WAIT_BACKEND,
    BINDING_STATE_WAIT_FOR_LB,
    CERT_ID_SECRET_KEY,
    CLB_PORT_MAPPING_KEY,
    CLB_PORT_MAPPING_RESULT_KEY,
    CLB_PORT_MAPPING_STATUS_KEY,
    ENABLE_CLB_PORT_MAPPING_KEY,
    FINALIZED_KEY,
    KIND_CLB_PORT_POOL,
    RETAIN_KEY,
)
from clbnet.config.portMappingConfig import generate_binding_spec
from clbnet.config.portPoolConfig import CLBPortPoolConfig
from clbnet.controller.finalizer import reconcile_with_finalizer, update_object, update_object_status
from clbnet.controller.workQueue import Result, split_key
from clbnet.portpool.errors import (
    NoPortAvailableError,
    PoolNotFoundError,
    PortPoolConfigError,
    PortPoolNotAllocatableError,
    WaitLBScaleError,
)
from clbnet.portpool.protocolPort import LBKey, PortAllocations

# 状态为以下值时，端口池变化后需要重新对账
WAITING_STATES = (
    "",
    BINDING_STATE_PENDING,
    BINDING_STATE_NO_PORT_AVAILABLE,
    BINDING_STATE_PORT_POOL_NOT_FOUND,
    BINDING_STATE_PORT_POOL_NOT_ALLOCATABLE,
    BINDING_STATE_WAIT_FOR_LB,
)

SHORT_REQUEUE = 0.02


class LBNotFoundInPoolError(Exception):
    def __init__(self, pool, lb_id):
        self.pool = pool
        self.lb_id = lb_id
        super().__init__(f"lb {lb_id} not found in port pool {pool} status")


class CertIdNotFoundError(Exception):
    def __init__(self, secret):
        super().__init__(f"cert id not found in secret {secret}")


class ListenerNotExpectedError(Exception):
    def __init__(self, binding, listener):
        super().__init__(f"listener {listener.listener_id} on {binding.lb_id} is not expected, deleted")


class BindingSyncError(Exception):
    """单个端口绑定对账失败，binding 为失败后应保留在 status 中的绑定，None 表示移除"""

    def __init__(self, binding, cause):
        self.binding = binding
        self.cause = cause
        super().__init__(str(cause))


def should_notify(pool_name, binding_config):
    """端口池对账后，判断处于等待状态的 binding 是否需要重新对账"""
    if binding_config.state not in WAITING_STATES:
        return False
    for port in binding_config.ports:
        if pool_name in port.pools:
            return True
    return False


class CLBBindingReconciler:
    """
    CLBPodBinding 和 CLBNodeBinding 共用的对账逻辑
    binding_cls 决定绑定的后端类型（Pod 或 Node）
    """

    def __init__(self, binding_cls, api_client, clb_client, allocator, router=None, cancel_event=None):
        self.logger = logging.getLogger(__name__)
        self.binding_cls = binding_cls
        self.kind = binding_cls.kind
        self.api_client = api_client
        self.clb = clb_client
        self.allocator = allocator
        self.router = router
        self.cancel_event = cancel_event

    def reconcile(self, key):
        namespace, name = split_key(key)
        try:
            data = self.api_client.get(self.kind, name, namespace)
        except NotFoundError:
            return Result()
        bd = self.binding_cls.from_dict(data)
        return reconcile_with_finalizer(
            self.api_client, self.kind, bd.config, lambda: self.sync(bd), lambda: self.cleanup(bd))

    def _notify_pool(self, pool):
        if self.router is not None:
            self.router.notify_pool(pool)

    def _update_status(self, bd):
        update_object_status(self.api_client, self.kind, bd.config)

    def ensure_state(self, bd, state, message=""):
        status = bd.get_status()
        if status.state == state and status.message == message:
            return
        status.state = state
        status.message = message
        self._update_status(bd)

    # 同步

    def sync(self, bd):
        status = bd.get_status()
        if bd.get_spec().is_disabled():
            self.ensure_state(bd, BINDING_STATE_DISABLED)
            self.ensure_unbound(bd)
            return Result()

        if not status.state:
            status.state = BINDING_STATE_PENDING
            self._update_status(bd)

        try:
            if self.ensure_clb_binding(bd):
                return Result(SHORT_REQUEUE)
        except LBNotFoundInPoolError as e:
            self.logger.info(f"{self.kind} {bd.key()}: {e}, 等待端口池同步")
            return Result(SHORT_REQUEUE)
        except WaitLBScaleError as e:
            # 端口池收到扩容请求后由端口池控制器创建 lb
            self._notify_pool(e.pool)
            self.ensure_state(bd, BINDING_STATE_WAIT_FOR_LB, str(e))
            return Result(3)
        except PortPoolNotAllocatableError as e:
            self.ensure_state(bd, BINDING_STATE_PORT_POOL_NOT_ALLOCATABLE, str(e))
            return Result()
        except NoPortAvailableError as e:
            self.ensure_state(bd, BINDING_STATE_NO_PORT_AVAILABLE, str(e))
            return Result()
        except PoolNotFoundError as e:
            try:
                self.api_client.get(KIND_CLB_PORT_POOL, e.pool)
            except NotFoundError:
                self.ensure_state(bd, BINDING_STATE_PORT_POOL_NOT_FOUND, str(e))
                return Result()
            # CRD 存在但分配器还没同步到
            return Result(SHORT_REQUEUE)
        except Exception as e:
            if is_request_limit_exceeded_error(e):
                return Result(1)
            if is_conflict(e):
                return Result(SHORT_REQUEUE)
            self.logger.error(f"同步 {self.kind} {bd.key()} 失败: {e}")
            self.ensure_state(bd, BINDING_STATE_FAILED, str(e))
            # 配置错误和 lb 不存在重试也无用，等待相关对象变更
            if isinstance(e, PortPoolConfigError) or is_lb_id_not_found_error(e):
                return Result()
            raise
        return Result()

    def ensure_unbound(self, bd):
        for binding in bd.get_status().port_bindings:
            if not binding.listener_id:
                continue
            try:
                self.clb.deregister_all_targets(binding.region, binding.lb_id, binding.listener_id)
            except Exception as e:
                if is_load_balancer_not_exists_error(e):
                    continue
                raise

    def ensure_clb_binding(self, bd):
        """分配端口并同步后端绑定，返回 True 表示有端口被移除需要重新对账"""
        self.ensure_port_allocated(bd)
        if bd.get_status().port_bindings:
            return self.ensure_backend_bindings(bd)
        return False

    def get_cert_id(self, namespace, secret_name):
        try:
            secret = self.api_client.get("Secret", secret_name, namespace)
        except NotFoundError:
            raise CertIdNotFoundError(f"{namespace}/{secret_name}")
        value = (secret.get("data") or {}).get(CERT_ID_SECRET_KEY)
        if not value:
            raise CertIdNotFoundError(f"{namespace}/{secret_name}")
        return base64.b64decode(value).decode("utf-8").strip()

    def ensure_port_allocated(self, bd):
        """
        为 spec 中还没有分配结果的端口分配端口，并持久化到 status
        spec 中已经去掉的端口先清理监听器，再从 status 中移除并释放
        """
        spec = bd.get_spec()
        status = bd.get_status()
        spec_keys = {key for port in spec.ports for key in port.keys()}
        bindings = []
        removed = []
        for b in status.port_bindings:
            if b.key() in spec_keys:
                bindings.append(b.copy())
            else:
                removed.append(b)
        for b in removed:
            pool = self.allocator.get_pool(b.pool)
            precreated = pool is not None and pool.is_precreate_listener_enabled()
            self.cleanup_port_binding(b, precreated)
        existing = {b.key() for b in bindings}
        allocated = PortAllocations()

        for port in spec.ports:
            if any(key in existing for key in port.keys()):
                continue
            try:
                cert_id = None
                if port.cert_secret_name:
                    cert_id = self.get_cert_id(bd.get_namespace(), port.cert_secret_name)
                result = self.allocator.allocate(
                    port.pools, port.protocol, port.use_same_port(), cancel_event=self.cancel_event)
            except Exception:
                allocated.release()
                raise
            for allocation in result:
                binding = PortBindingStatus({
                    "port": port.port,
                    "protocol": allocation.protocol,
                    "pool": allocation.pool_name,
                    "region": allocation.region,
                    "loadbalancerId": allocation.lb_id,
                    "loadbalancerPort": allocation.port,
                    "loadbalancerEndPort": allocation.end_port,
                })
                binding.cert_id = cert_id
                bindings.append(binding)
            allocated.extend(result)

        if not allocated and not removed:
            return
        sort_port_bindings(bindings)
        old_bindings, old_state, old_message = status.port_bindings, status.state, status.message
        status.port_bindings = bindings
        if allocated:
            status.state = BINDING_STATE_ALLOCATED
            status.message = ""
        try:
            self._update_status(bd)
        except Exception:
            # 没有持久化的分配必须回滚，否则端口会一直被占用
            allocated.release()
            status.port_bindings, status.state, status.message = old_bindings, old_state, old_message
            raise

        pools = list(allocated.pools())
        if allocated:
            self.logger.info(f"{self.kind} {bd.key()} 分配端口 {allocated}")
        for b in removed:
            if self.allocator.release_binding(b) and b.pool not in pools:
                pools.append(b.pool)
        if removed:
            self.logger.info(f"{self.kind} {bd.key()} 移除端口 {[str(b) for b in removed]}")
        for pool in pools:
            self._notify_pool(pool)

    def ensure_backend_bindings(self, bd):
        start = time.time()
        try:
            backend = bd.get_associated_object(self.api_client, self.router)
        except NotFoundError:
            # 后端已不存在，之前绑定的 IP 可能被别的对象复用
            self.ensure_unbound(bd)
            self.ensure_state(bd, BINDING_STATE_NO_BACKEND)
            return False

        need_bind = True
        try:
            node = backend.get_node()
        except NodeNameIsEmptyError:
            self.ensure_state(bd, BINDING_STATE_WAIT_BACKEND)
            return False
        if not is_node_type_supported(node):
            name = node.get("metadata", {}).get("name")
            self.ensure_state(
                bd, BINDING_STATE_NODE_TYPE_NOT_SUPPORTED, f"node {name} is not a serverless or native node")
            need_bind = False
        if not backend.get_ip():
            self.ensure_unbound(bd)
            self.ensure_state(bd, BINDING_STATE_WAIT_BACKEND)
            need_bind = False

        old_bindings = bd.get_status().port_bindings
        results = [None] * len(old_bindings)
        errors = []

        def sync_one(index, binding):
            try:
                binding = self.ensure_listener(bd, binding)
                if binding is not None and need_bind:
                    self.ensure_port_bound(bd, backend, binding)
                results[index] = binding
            except BindingSyncError as e:
                results[index] = e.binding
                errors.append(e.cause)
            except Exception as e:
                results[index] = binding
                errors.append(e)

        if old_bindings:
            with ThreadPoolExecutor(max_workers=len(old_bindings)) as executor:
                for i, binding in enumerate(old_bindings):
                    executor.submit(sync_one, i, binding.copy())

        bindings = [b for b in results if b is not None]
        removed = len(bindings) < len(old_bindings)
        sort_port_bindings(bindings)
        if bindings != old_bindings:
            def update_bindings():
                bd.fetch_object(self.api_client)
                bd.get_status().port_bindings = bindings
                self._update_status(bd)
            retry_on_conflict(update_bindings)

        if errors:
            for err in errors[1:]:
                self.logger.error(f"{self.kind} {bd.key()} 端口绑定失败: {err}")
            raise errors[0]

        if removed:
            # 被移除的端口需要重新分配
            return True
        if not need_bind:
            return False

        if bd.get_status().state != BINDING_STATE_BOUND:
            def update_state():
                bd.fetch_object(self.api_client)
                status = bd.get_status()
                status.state = BINDING_STATE_BOUND
                status.message = ""
                self._update_status(bd)
            retry_on_conflict(update_state)
            self.logger.info(f"{self.kind} {bd.key()} 绑定完成，耗时 {time.time() - start:.2f}s")

        self.ensure_backend_status_annotation(bd, backend)
        return False

    def ensure_listener(self, bd, binding):
        """确保端口绑定对应的监听器存在且符合预期，返回更新后的 binding，None 表示移除该绑定"""
        state = bd.get_status().state
        pool = self.allocator.get_pool(binding.pool)
        reason = None
        if pool is None:
            if state != BINDING_STATE_BOUND:
                reason = "port pool has been deleted"
        elif state != BINDING_STATE_BOUND and not pool.is_lb_exists(LBKey.from_binding(binding)):
            reason = "clb has been removed from port pool"
        if reason:
            self.logger.info(f"{self.kind} {bd.key()} 移除端口绑定 {binding}: {reason}")
            precreated = pool is not None and pool.is_precreate_listener_enabled()
            self.cleanup_port_binding(binding, precreated)
            if self.allocator.release_binding(binding):
                self._notify_pool(binding.pool)
            return None

        if not binding.listener_id:
            listener = self.clb.get_listener_by_port(
                binding.region, binding.lb_id, binding.lb_port, binding.protocol)
            if listener is not None:
                return self.ensure_listener_expected(binding, listener)
            return self.create_listener(binding)

        try:
            listener = self.clb.get_listener_by_id(binding.region, binding.lb_id, binding.listener_id)
        except Exception as e:
            if is_load_balancer_not_exists_error(e):
                self._notify_pool(binding.pool)
                raise BindingSyncError(None, e)
            raise
        if listener is None:
            listener = self.clb.get_listener_by_port(
                binding.region, binding.lb_id, binding.lb_port, binding.protocol)
            if listener is None:
                return self.create_listener(binding)
        return self.ensure_listener_expected(binding, listener)

    def ensure_listener_expected(self, binding, listener):
        end_port = binding.lb_end_port or 0
        if (listener.port != binding.lb_port or listener.end_port != end_port
                or listener.protocol != binding.protocol):
            self.logger.warning(
                f"监听器 {listener.listener_id} 与端口绑定 {binding} 不一致 "
                f"({listener.port}-{listener.end_port}/{listener.protocol})，删除")
            try:
                self.clb.delete_listener_by_id(binding.region, binding.lb_id, listener.listener_id)
            except ListenerNotFoundError:
                pass
            except Exception as e:
                if not is_load_balancer_not_exists_error(e):
                    raise
            raise BindingSyncError(binding, ListenerNotExpectedError(binding, listener))
        if binding.listener_id != listener.listener_id:
            binding.listener_id = listener.listener_id
        return binding

    def create_listener(self, binding):
        end_port = binding.lb_end_port or 0
        try:
            listener_id = self.clb.create_listener(
                binding.region, binding.lb_id, binding.lb_port, end_port, binding.protocol, binding.cert_id)
        except Exception as e:
            if is_load_balancer_not_exists_error(e):
                self._notify_pool(binding.pool)
                raise BindingSyncError(None, e)
            if not is_port_check_failed_error(e):
                raise
            # 端口已被占用，说明监听器已存在，直接接管
            listener = self.clb.get_listener_by_port(
                binding.region, binding.lb_id, binding.lb_port, binding.protocol)
            if listener is None:
                raise
            return self.ensure_listener_expected(binding, listener)
        binding.listener_id = listener_id
        return binding

    def ensure_port_bound(self, bd, backend, binding):
        targets = self.clb.describe_targets(binding.region, binding.lb_id, binding.listener_id)
        expected = Target(backend.get_ip(), binding.port)
        to_delete = [t for t in targets if t != expected]
        if to_delete:
            for target in to_delete:
                other = bd.get_associated_object_by_ip(self.api_client, target.ip)
                if other is None or other.key() == backend.key():
                    continue
                self.logger.warning(
                    f"OtherTargetBound: {binding.lb_id}:{binding.lb_port}/{binding.protocol} "
                    f"已绑定到 {other.key()}，跳过 {backend.key()}")
                return
            self.clb.deregister_targets(binding.region, binding.lb_id, binding.listener_id, to_delete)
        if expected not in targets:
            self.clb.register_target(binding.region, binding.lb_id, binding.listener_id, expected)

    def _lb_status(self, pools, binding):
        pool = pools.get(binding.pool)
        if pool is None:
            pool = CLBPortPoolConfig(self.api_client.get(KIND_CLB_PORT_POOL, binding.pool))
            pools[binding.pool] = pool
        lb_status = pool.get_lb_status(binding.lb_id)
        if lb_status is None:
            raise LBNotFoundInPoolError(binding.pool, binding.lb_id)
        return lb_status

    def ensure_backend_status_annotation(self, bd, backend):
        """把每个端口映射到的外部地址写到后端对象的注解中"""
        pools = {}
        items = []
        for binding in bd.get_status().port_bindings:
            lb_status = self._lb_status(pools, binding)
            item = binding.to_dict()
            if binding.lb_end_port:
                item["endPort"] = binding.port + (binding.lb_end_port - binding.lb_port)
            if lb_status.hostname:
                item["hostname"] = lb_status.hostname
            if lb_status.ips:
                item["ips"] = list(lb_status.ips)
            address = lb_status.address()
            item["address"] = f"{address}:{binding.lb_port}" if address else ""
            items.append(item)
        result = json.dumps(items)
        if backend.get_annotations().get(CLB_PORT_MAPPING_RESULT_KEY) == result:
            return
        patch = {"metadata": {"annotations": {
            CLB_PORT_MAPPING_RESULT_KEY: result,
            CLB_PORT_MAPPING_STATUS_KEY: "Ready",
        }}}
        self.api_client.patch(backend.kind, backend.get_name(), patch, backend.get_namespace())

    # 清理

    def cleanup(self, bd):
        annotations = bd.get_annotations()
        if annotations.get(FINALIZED_KEY) == "true":
            return Result()
        self.ensure_state(bd, BINDING_STATE_DELETING)

        port_bindings = bd.get_status().port_bindings
        errors = []

        def cleanup_one(binding):
            pool = self.allocator.get_pool(binding.pool)
            precreated = pool is not None and pool.is_precreate_listener_enabled()
            try:
                self.cleanup_port_binding(binding, precreated)
            except Exception as e:
                errors.append(e)

        if port_bindings:
            with ThreadPoolExecutor(max_workers=len(port_bindings)) as executor:
                for binding in port_bindings:
                    executor.submit(cleanup_one, binding)
        if errors:
            for err in errors[1:]:
                self.logger.error(f"清理 {self.kind} {bd.key()} 失败: {err}")
            raise errors[0]

        annotations[FINALIZED_KEY] = "true"
        update_object(self.api_client, self.kind, bd.config)

        released = {b.pool for b in port_bindings if self.allocator.release_binding(b)}
        for pool in sorted(released):
            self._notify_pool(pool)
        self.logger.info(f"{self.kind} {bd.key()} 已释放端口 {len(port_bindings)} 个")

        # 同名后端被重建时需要为其重新生成 binding
        try:
            backend = bd.get_associated_object(self.api_client, self.router)
        except NotFoundError:
            return Result()
        if not backend.is_deleting():
            backend.trigger_reconcile()
        return Result()

    def cleanup_port_binding(self, binding, precreated=False):
        if precreated:
            # 预创建的监听器保留，只解绑后端
            if binding.listener_id:
                try:
                    self.clb.deregister_all_targets(binding.region, binding.lb_id, binding.listener_id)
                except Exception as e:
                    if not is_load_balancer_not_exists_error(e):
                        raise
            return
        try:
            self.clb.delete_listener_by_id_or_port(
                binding.region, binding.lb_id, binding.listener_id, binding.lb_port, binding.protocol)
        except ListenerNotFoundError:
            self.logger.debug(f"监听器不存在，忽略 {binding}")
        except Exception as e:
            if is_load_balancer_not_exists_error(e) or is_lb_id_not_found_error(e):
                self.logger.debug(f"clb {binding.lb_id} 不存在，忽略 {binding}")
                return
            raise

    # 由 Pod / Node 注解生成 binding

    def sync_clb_binding(self, obj, obj_kind):
        """
        根据后端对象的注解创建、更新或删除同名的 binding
        enable 注解为 true/false 时生成 binding（false 时 binding 为 disabled），否则删除
        """
        metadata = obj.get("metadata", {})
        if metadata.get("deletionTimestamp"):
            return Result()
        name, namespace = metadata.get("name"), metadata.get("namespace")
        annotations = metadata.get("annotations") or {}
        enable = annotations.get(ENABLE_CLB_PORT_MAPPING_KEY)

        try:
            data = self.api_client.get(self.kind, name, namespace)
        except NotFoundError:
            data = None

        if enable not in ("true", "false"):
            if data is not None:
                self.logger.info(f"{obj_kind} {name} 不再需要端口映射，删除 {self.kind}")
                try:
                    self.api_client.delete(self.kind, name, namespace)
                except NotFoundError:
                    pass
            return Result()

        try:
            spec = generate_binding_spec(annotations.get(CLB_PORT_MAPPING_KEY, ""), enable)
        except ValueError as e:
            # 注解格式错误，等待用户修改注解后重新触发
            self.logger.warning(f"{obj_kind} {name} 端口映射注解无效: {e}")
            return Result()

        if data is None:
            body = {
                "apiVersion": API_VERSION,
                "kind": self.kind,
                "metadata": {"name": name},
                "spec": spec,
            }
            if namespace:
                body["metadata"]["namespace"] = namespace
            if annotations.get(RETAIN_KEY) != "true":
                body["metadata"]["ownerReferences"] = [{
                    "apiVersion": obj.get("apiVersion", "v1"),
                    "kind": obj_kind,
                    "name": name,
                    "uid": metadata.get("uid"),
                    "controller": True,
                    "blockOwnerDeletion": True,
                }]
            try:
                self.api_client.create(self.kind, body)
                self.logger.info(f"为 {obj_kind} {name} 创建 {self.kind}")
            except AlreadyExistsError:
                pass
            return Result()

        binding = CLBBindingConfig(data, self.kind)
        if binding.is_deleting():
            # 旧的 binding 删除后再重建
            return Result(1)
        for ref in binding.owner_references:
            if ref.get("kind") == obj_kind and ref.get("name") == name:
                if ref.get("uid") != metadata.get("uid"):
                    # 同名后端被重建，等待旧 binding 被垃圾回收
                    return Result(3)
                break
        if spec != binding.spec_dict():
            data["spec"] = spec
            self.api_client.update(self.kind, data)
            self.logger.info(f"{obj_kind} {name} 端口映射变更，更新 {self.kind}")
        return Result()
