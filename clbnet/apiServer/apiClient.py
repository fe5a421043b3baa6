import logging
import time

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from clbnet.config.uriConfig import URIConfig


class ApiError(Exception):
    """Kubernetes API 返回的错误"""

    def __init__(self, status, reason="", message=""):
        self.status = status
        self.reason = reason
        self.message = message
        super().__init__(f"{status} {reason}: {message}")


class NotFoundError(ApiError):
    pass


class ConflictError(ApiError):
    pass


class AlreadyExistsError(ConflictError):
    pass


def is_not_found(err):
    return isinstance(err, NotFoundError)


def is_conflict(err):
    return isinstance(err, ConflictError) and not isinstance(err, AlreadyExistsError)


def _api_error(resp):
    try:
        body = resp.json()
    except ValueError:
        body = {}
    reason = body.get("reason", resp.reason or "")
    message = body.get("message", resp.text)
    if resp.status_code == 404:
        return NotFoundError(404, reason or "NotFound", message)
    if resp.status_code == 409:
        if reason == "AlreadyExists":
            return AlreadyExistsError(409, reason, message)
        return ConflictError(409, reason or "Conflict", message)
    return ApiError(resp.status_code, reason, message)


class ApiClient:
    """
    Kubernetes REST API 客户端
    对象均以 dict 形式收发，路径由 URIConfig 按 kind 生成
    """

    MERGE_PATCH = "application/merge-patch+json"

    def __init__(self, apiserver, token=None, verify=True, timeout=30):
        self.logger = logging.getLogger(__name__)
        self.base_url = apiserver.rstrip("/")
        self.timeout = timeout
        self.session = self._create_session(token, verify)

    def _create_session(self, token, verify):
        session = requests.Session()
        # 只对网关类错误重试，写请求可能已在服务端执行
        retry_strategy = Retry(
            total=3,
            backoff_factor=0.3,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=20, pool_maxsize=50)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.verify = verify
        if token:
            session.headers.update({"Authorization": f"Bearer {token}"})
        return session

    def _request(self, method, path, json=None, params=None, headers=None):
        url = self.base_url + path
        resp = self.session.request(method, url, json=json, params=params, headers=headers, timeout=self.timeout)
        if resp.status_code >= 400:
            err = _api_error(resp)
            self.logger.debug(f"{method} {path} failed: {err}")
            raise err
        if not resp.content:
            return {}
        return resp.json()

    @staticmethod
    def _meta(obj):
        metadata = obj.get("metadata", {})
        return metadata.get("name"), metadata.get("namespace")

    def get(self, kind, name, namespace=None):
        return self._request("GET", URIConfig.object_url(kind, name, namespace))

    def list(self, kind, namespace=None, label_selector=None, field_selector=None):
        params = {}
        if label_selector:
            params["labelSelector"] = label_selector
        if field_selector:
            params["fieldSelector"] = field_selector
        data = self._request("GET", URIConfig.collection_url(kind, namespace), params=params or None)
        return data.get("items", [])

    def create(self, kind, obj):
        _, namespace = self._meta(obj)
        return self._request("POST", URIConfig.collection_url(kind, namespace), json=obj)

    def update(self, kind, obj):
        """整体更新对象，resourceVersion 不一致时抛出 ConflictError"""
        name, namespace = self._meta(obj)
        return self._request("PUT", URIConfig.object_url(kind, name, namespace), json=obj)

    def update_status(self, kind, obj):
        name, namespace = self._meta(obj)
        path = URIConfig.object_url(kind, name, namespace) + URIConfig.STATUS_SUFFIX
        return self._request("PUT", path, json=obj)

    def patch(self, kind, name, patch, namespace=None):
        return self._request(
            "PATCH",
            URIConfig.object_url(kind, name, namespace),
            json=patch,
            headers={"Content-Type": self.MERGE_PATCH},
        )

    def delete(self, kind, name, namespace=None):
        return self._request("DELETE", URIConfig.object_url(kind, name, namespace))


def retry_on_conflict(fn, steps=5, interval=0.01):
    """fn 抛出 ConflictError 时重试，fn 内部需要重新获取最新对象"""
    for i in range(steps):
        try:
            return fn()
        except ConflictError as e:
            if isinstance(e, AlreadyExistsError) or i == steps - 1:
                raise
            time.sleep(interval * (2 ** i))
