import logging

from clbnet.config.constants import FINALIZER
from clbnet.controller.workQueue import Result

logger = logging.getLogger(__name__)


def update_object(api_client, kind, obj):
    """整体更新对象，并把返回的 resourceVersion 写回 obj，方便后续继续更新"""
    data = api_client.update(kind, obj.to_dict()) or {}
    resource_version = data.get("metadata", {}).get("resourceVersion")
    if resource_version:
        obj.resource_version = resource_version
    return data


def update_object_status(api_client, kind, obj):
    data = api_client.update_status(kind, obj.to_dict()) or {}
    resource_version = data.get("metadata", {}).get("resourceVersion")
    if resource_version:
        obj.resource_version = resource_version
    return data


def reconcile_with_finalizer(api_client, kind, obj, sync, cleanup, finalizer=FINALIZER):
    """
    对象存活时确保带有 finalizer 并执行 sync；
    对象删除中且带有 finalizer 时执行 cleanup，成功后移除 finalizer
    obj 为 CLBBindingConfig / CLBPortPoolConfig 这类带 finalizers 字段的对象
    """
    if not obj.is_deleting():
        if finalizer not in obj.finalizers:
            obj.finalizers.append(finalizer)
            update_object(api_client, kind, obj)
            logger.debug(f"{kind} {obj.name} 添加 finalizer")
        return sync() or Result()

    if finalizer not in obj.finalizers:
        return Result()
    result = cleanup() or Result()
    if result.requeue_after > 0 or result.requeue:
        return result
    obj.finalizers = [f for f in obj.finalizers if f != finalizer]
    update_object(api_client, kind, obj)
    logger.info(f"{kind} {obj.name} 清理完成，已移除 finalizer")
    return result
