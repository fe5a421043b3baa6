from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Listener:
    listener_id: str
    protocol: str
    port: int
    end_port: int = 0
    name: str = ""


@dataclass(frozen=True)
class Target:
    ip: str
    port: int

    def __str__(self):
        return f"{self.ip}:{self.port}"


@dataclass
class CLBInfo:
    lb_id: str
    lb_name: str = ""
    ips: List[str] = field(default_factory=list)
    hostname: Optional[str] = None
    status: int = 1  # 0 创建中，1 正常运行


@dataclass
class TaskStatus:
    status: int  # 0 成功，1 失败，2 进行中
    message: Optional[str] = None
    lb_ids: List[str] = field(default_factory=list)


class CloudApi(ABC):
    """
    CLB 云 API 接口
    每个方法对应一次云 API 请求，出错时抛出 CloudApiError；
    异步接口返回 request id，需要用 wait_task 等待任务完成
    """

    @abstractmethod
    def create_listener(self, region, lb_id, protocol, ports, end_port=None, cert_id=None,
                        extensive_parameters=None, listener_name=""):
        """批量创建同协议的监听器，返回 (request_id, listener_ids)，listener_ids 与 ports 一一对应"""
        pass

    @abstractmethod
    def describe_listeners(self, region, lb_id, listener_ids=None, port=None, protocol=None):
        """返回 Listener 列表"""
        pass

    @abstractmethod
    def delete_listeners(self, region, lb_id, listener_ids):
        """批量删除监听器，返回 request_id"""
        pass

    @abstractmethod
    def batch_register_targets(self, region, lb_id, targets):
        """
        批量绑定后端

        Args:
            targets: [(listener_id, Target)]

        Returns:
            request_id
        """
        pass

    @abstractmethod
    def batch_deregister_targets(self, region, lb_id, targets):
        """批量解绑后端，返回解绑失败的监听器 ID 列表"""
        pass

    @abstractmethod
    def describe_targets(self, region, lb_id, listener_ids):
        """返回 {listener_id: [Target]}，未返回的监听器表示不存在"""
        pass

    @abstractmethod
    def describe_task_status(self, region, task_id):
        """返回 TaskStatus"""
        pass

    @abstractmethod
    def describe_quota(self, region):
        """返回 {quota_id: quota_limit}"""
        pass

    @abstractmethod
    def describe_load_balancers(self, region, lb_ids):
        """返回存在的 CLBInfo 列表"""
        pass

    @abstractmethod
    def create_load_balancer(self, region, params):
        """返回 (request_id, lb_ids)"""
        pass

    @abstractmethod
    def delete_load_balancers(self, region, lb_ids):
        """返回 request_id"""
        pass
