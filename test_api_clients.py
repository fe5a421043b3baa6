#!/usr/bin/env python3
"""
HTTP 客户端测试：Kubernetes ApiClient 和腾讯云 TencentCloudApi
requests.Session 的请求方法被替换，不访问网络
"""

import json
import unittest
from unittest import mock

from clbnet.apiServer.apiClient import (
    AlreadyExistsError,
    ApiClient,
    ApiError,
    ConflictError,
    NotFoundError,
    is_conflict,
    retry_on_conflict,
)
from clbnet.clb.cloudApi import Target
from clbnet.clb.errors import CloudApiError
from clbnet.clb.tencentCloudApi import TencentCloudApi
from clbnet.config.uriConfig import URIConfig


def response(status_code=200, body=None, reason="OK"):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.reason = reason
    resp.content = json.dumps(body).encode("utf-8") if body is not None else b""
    resp.text = resp.content.decode("utf-8")
    resp.json.return_value = body if body is not None else {}
    return resp


class TestURIConfig(unittest.TestCase):

    def test_urls(self):
        self.assertEqual(URIConfig.object_url("Pod", "pod-1", "default"), "/api/v1/namespaces/default/pods/pod-1")
        self.assertEqual(URIConfig.object_url("Node", "node-1"), "/api/v1/nodes/node-1")
        self.assertEqual(
            URIConfig.collection_url("CLBPodBinding", "default"),
            "/apis/networking.cloud.tencent.com/v1alpha1/namespaces/default/clbpodbindings")
        self.assertEqual(
            URIConfig.collection_url("CLBPodBinding"),
            "/apis/networking.cloud.tencent.com/v1alpha1/clbpodbindings")
        self.assertEqual(
            URIConfig.object_url("CLBPortPool", "pool-a"),
            "/apis/networking.cloud.tencent.com/v1alpha1/clbportpools/pool-a")

    def test_invalid(self):
        with self.assertRaises(ValueError):
            URIConfig.object_url("Service", "svc")
        with self.assertRaises(ValueError):
            URIConfig.collection_url("Secret")


class TestApiClient(unittest.TestCase):

    def setUp(self):
        self.client = ApiClient("https://k8s:6443/", token="abc")
        patcher = mock.patch.object(self.client.session, "request")
        self.request = patcher.start()
        self.addCleanup(patcher.stop)

    def test_session(self):
        self.assertEqual(self.client.base_url, "https://k8s:6443")
        self.assertEqual(self.client.session.headers["Authorization"], "Bearer abc")

    def test_get(self):
        self.request.return_value = response(body={"metadata": {"name": "pod-1"}})

        data = self.client.get("Pod", "pod-1", "default")

        self.assertEqual(data["metadata"]["name"], "pod-1")
        method, url = self.request.call_args[0]
        self.assertEqual((method, url), ("GET", "https://k8s:6443/api/v1/namespaces/default/pods/pod-1"))

    def test_list_with_selector(self):
        self.request.return_value = response(body={"items": [{"metadata": {"name": "pod-1"}}]})

        items = self.client.list("Pod", field_selector="spec.nodeName=node-1")

        self.assertEqual(len(items), 1)
        self.assertEqual(self.request.call_args[1]["params"], {"fieldSelector": "spec.nodeName=node-1"})

    def test_update_status(self):
        self.request.return_value = response(body={"metadata": {"resourceVersion": "2"}})
        obj = {"metadata": {"name": "pool-a", "resourceVersion": "1"}, "status": {"state": "Active"}}

        self.client.update_status("CLBPortPool", obj)

        method, url = self.request.call_args[0]
        self.assertEqual(method, "PUT")
        self.assertTrue(url.endswith("/clbportpools/pool-a/status"))
        self.assertEqual(self.request.call_args[1]["json"], obj)

    def test_patch(self):
        self.request.return_value = response(body={})

        self.client.patch("Pod", "pod-1", {"metadata": {"annotations": {"a": "b"}}}, "default")

        self.assertEqual(self.request.call_args[0][0], "PATCH")
        self.assertEqual(self.request.call_args[1]["headers"], {"Content-Type": ApiClient.MERGE_PATCH})

    def test_empty_body(self):
        self.request.return_value = response(body=None)

        self.assertEqual(self.client.delete("Node", "node-1"), {})

    def test_errors(self):
        cases = [
            (response(404, {"reason": "NotFound", "message": "not found"}, "Not Found"), NotFoundError),
            (response(409, {"reason": "Conflict", "message": "modified"}, "Conflict"), ConflictError),
            (response(409, {"reason": "AlreadyExists", "message": "exists"}, "Conflict"), AlreadyExistsError),
            (response(500, {"message": "boom"}, "Internal Server Error"), ApiError),
        ]
        for resp, error_cls in cases:
            with self.subTest(status=resp.status_code, error=error_cls.__name__):
                self.request.return_value = resp
                with self.assertRaises(error_cls) as ctx:
                    self.client.get("Node", "node-1")
                self.assertEqual(ctx.exception.status, resp.status_code)

    def test_is_conflict(self):
        self.assertTrue(is_conflict(ConflictError(409, "Conflict")))
        self.assertFalse(is_conflict(AlreadyExistsError(409, "AlreadyExists")))
        self.assertFalse(is_conflict(NotFoundError(404)))


class TestRetryOnConflict(unittest.TestCase):

    def test_retry_until_success(self):
        fn = mock.Mock(side_effect=[ConflictError(409, "Conflict"), ConflictError(409, "Conflict"), "ok"])

        self.assertEqual(retry_on_conflict(fn, interval=0), "ok")
        self.assertEqual(fn.call_count, 3)

    def test_give_up(self):
        fn = mock.Mock(side_effect=ConflictError(409, "Conflict"))

        with self.assertRaises(ConflictError):
            retry_on_conflict(fn, steps=3, interval=0)
        self.assertEqual(fn.call_count, 3)

    def test_already_exists_not_retried(self):
        fn = mock.Mock(side_effect=AlreadyExistsError(409, "AlreadyExists"))

        with self.assertRaises(AlreadyExistsError):
            retry_on_conflict(fn, interval=0)
        self.assertEqual(fn.call_count, 1)


class TestTencentCloudApi(unittest.TestCase):

    def setUp(self):
        self.api = TencentCloudApi("AKID", "secret")
        patcher = mock.patch.object(self.api.session, "post")
        self.post = patcher.start()
        self.addCleanup(patcher.stop)

    def sent(self):
        kwargs = self.post.call_args[1]
        return kwargs["headers"], json.loads(kwargs["data"])

    def test_credentials_required(self):
        with mock.patch.dict("os.environ", {}, clear=True):
            with self.assertRaises(ValueError):
                TencentCloudApi()

    def test_credentials_from_env(self):
        env = {"TENCENTCLOUD_SECRET_ID": "id", "TENCENTCLOUD_SECRET_KEY": "key"}
        with mock.patch.dict("os.environ", env, clear=True):
            api = TencentCloudApi()
        self.assertEqual((api.secret_id, api.secret_key), ("id", "key"))

    def test_sign(self):
        auth = self.api._sign("DescribeQuota", "{}", 1700000000)

        self.assertTrue(auth.startswith("TC3-HMAC-SHA256 Credential=AKID/2023-11-14/clb/tc3_request, "))
        self.assertIn("SignedHeaders=content-type;host;x-tc-action", auth)
        # 相同输入签名稳定，不同 action 签名不同
        self.assertEqual(auth, self.api._sign("DescribeQuota", "{}", 1700000000))
        self.assertNotEqual(auth, self.api._sign("DescribeListeners", "{}", 1700000000))

    def test_request_headers(self):
        self.post.return_value = response(body={"Response": {"RequestId": "req-1", "QuotaSet": [
            {"QuotaId": "TOTAL_LISTENER_QUOTA", "QuotaLimit": 50},
            {"QuotaId": "TOTAL_OPEN_CLB_QUOTA", "QuotaLimit": 100},
        ]}})

        quota = self.api.describe_quota("ap-guangzhou")

        self.assertEqual(quota, {"TOTAL_LISTENER_QUOTA": 50, "TOTAL_OPEN_CLB_QUOTA": 100})
        self.assertEqual(self.post.call_args[0][0], "https://clb.tencentcloudapi.com")
        headers, _ = self.sent()
        self.assertEqual(headers["X-TC-Action"], "DescribeQuota")
        self.assertEqual(headers["X-TC-Region"], "ap-guangzhou")
        self.assertEqual(headers["X-TC-Version"], TencentCloudApi.VERSION)

    def test_error_response(self):
        self.post.return_value = response(body={"Response": {
            "RequestId": "req-2",
            "Error": {"Code": "RequestLimitExceeded", "Message": "too many requests"},
        }})

        with self.assertRaises(CloudApiError) as ctx:
            self.api.describe_quota("ap-guangzhou")

        self.assertEqual(ctx.exception.code, "RequestLimitExceeded")
        self.assertEqual(ctx.exception.request_id, "req-2")

    def test_create_listener(self):
        self.post.return_value = response(body={"Response": {"RequestId": "req-3", "ListenerIds": ["lbl-1"]}})

        request_id, ids = self.api.create_listener(
            "ap-guangzhou", "lb-1", "TCP_SSL", [30000], end_port=30009, cert_id="cert-1",
            extensive_parameters='{"SessionExpireTime": 30}', listener_name="clb-port-mapping")

        self.assertEqual((request_id, ids), ("req-3", ["lbl-1"]))
        _, params = self.sent()
        self.assertEqual(params["Ports"], [30000])
        self.assertEqual(params["EndPort"], 30009)
        self.assertEqual(params["Certificate"]["CertId"], "cert-1")
        self.assertEqual(params["SessionExpireTime"], 30)
        self.assertEqual(params["ListenerNames"], ["clb-port-mapping"])

    def test_describe_targets(self):
        self.post.return_value = response(body={"Response": {"Listeners": [
            {"ListenerId": "lbl-1", "Targets": [{"Port": 80, "PrivateIpAddresses": ["10.0.0.1"]}]},
            {"ListenerId": "lbl-2", "Targets": []},
        ]}})

        targets = self.api.describe_targets("ap-guangzhou", "lb-1", ["lbl-1", "lbl-2"])

        self.assertEqual(targets, {"lbl-1": [Target("10.0.0.1", 80)], "lbl-2": []})

    def test_describe_load_balancers(self):
        self.post.return_value = response(body={"Response": {"LoadBalancerSet": [
            {"LoadBalancerId": "lb-1", "LoadBalancerName": "a", "LoadBalancerVips": ["1.1.1.1"], "Status": 1},
            {"LoadBalancerId": "lb-2", "LoadBalancerDomain": "lb-2.clb.example.com", "Status": 0},
        ]}})

        infos = self.api.describe_load_balancers("ap-guangzhou", ["lb-1", "lb-2"])

        self.assertEqual(infos[0].ips, ["1.1.1.1"])
        self.assertIsNone(infos[0].hostname)
        self.assertEqual(infos[1].hostname, "lb-2.clb.example.com")
        self.assertEqual(infos[1].status, 0)


if __name__ == "__main__":
    unittest.main()
