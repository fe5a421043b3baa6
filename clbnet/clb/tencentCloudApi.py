import hashlib
import hmac
import json
import logging
import os
import time
from datetime import datetime, timezone

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from clbnet.clb.cloudApi import CLBInfo, CloudApi, Listener, Target, TaskStatus
from clbnet.clb.errors import CloudApiError


def _sha256_hex(data):
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _hmac_sha256(key, msg):
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


class TencentCloudApi(CloudApi):
    """
    基于 requests 的腾讯云 CLB API 3.0 客户端
    使用 TC3-HMAC-SHA256 签名，请求和响应均为 JSON
    """

    SERVICE = "clb"
    VERSION = "2018-03-17"
    CONTENT_TYPE = "application/json; charset=utf-8"

    def __init__(self, secret_id=None, secret_key=None, endpoint="clb.tencentcloudapi.com", timeout=30):
        self.logger = logging.getLogger(__name__)
        self.secret_id = secret_id or os.environ.get("TENCENTCLOUD_SECRET_ID", "")
        self.secret_key = secret_key or os.environ.get("TENCENTCLOUD_SECRET_KEY", "")
        if not self.secret_id or not self.secret_key:
            raise ValueError("tencent cloud secret id and secret key are required")
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = requests.Session()
        # 云 API 请求不是幂等的，只在连接失败时重试
        retry_strategy = Retry(total=3, connect=3, read=0, status=0, backoff_factor=0.5)
        self.session.mount("https://", HTTPAdapter(max_retries=retry_strategy))

    def _sign(self, action, payload, timestamp):
        date = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
        signed_headers = "content-type;host;x-tc-action"
        canonical_headers = (
            f"content-type:{self.CONTENT_TYPE}\n"
            f"host:{self.endpoint}\n"
            f"x-tc-action:{action.lower()}\n"
        )
        canonical_request = f"POST\n/\n\n{canonical_headers}\n{signed_headers}\n{_sha256_hex(payload)}"
        credential_scope = f"{date}/{self.SERVICE}/tc3_request"
        string_to_sign = f"TC3-HMAC-SHA256\n{timestamp}\n{credential_scope}\n{_sha256_hex(canonical_request)}"
        secret_date = _hmac_sha256(("TC3" + self.secret_key).encode("utf-8"), date)
        secret_service = _hmac_sha256(secret_date, self.SERVICE)
        secret_signing = _hmac_sha256(secret_service, "tc3_request")
        signature = hmac.new(secret_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
        return (
            f"TC3-HMAC-SHA256 Credential={self.secret_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

    def request(self, region, action, params):
        """发送请求，返回 Response 字段，云 API 返回错误时抛出 CloudApiError"""
        payload = json.dumps(params)
        timestamp = int(time.time())
        headers = {
            "Authorization": self._sign(action, payload, timestamp),
            "Content-Type": self.CONTENT_TYPE,
            "Host": self.endpoint,
            "X-TC-Action": action,
            "X-TC-Timestamp": str(timestamp),
            "X-TC-Version": self.VERSION,
            "X-TC-Region": region,
        }
        resp = self.session.post(f"https://{self.endpoint}", data=payload, headers=headers, timeout=self.timeout)
        resp.raise_for_status()
        body = resp.json().get("Response", {})
        self.logger.debug(f"CLB API {action} region={region} request={payload} response={body}")
        error = body.get("Error")
        if error:
            raise CloudApiError(error.get("Code", ""), error.get("Message", ""), body.get("RequestId", ""))
        return body

    def create_listener(self, region, lb_id, protocol, ports, end_port=None, cert_id=None,
                        extensive_parameters=None, listener_name=""):
        params = {
            "HealthCheck": {"HealthSwitch": 0, "SourceIpType": 1},
        }
        if cert_id:
            params["Certificate"] = {"SSLMode": "UNIDIRECTIONAL", "CertId": cert_id}
        if extensive_parameters:
            params.update(json.loads(extensive_parameters))
        params["LoadBalancerId"] = lb_id
        params["Protocol"] = protocol
        params["Ports"] = list(ports)
        params["ListenerNames"] = [listener_name] * len(ports)
        if end_port:
            params["EndPort"] = end_port
        body = self.request(region, "CreateListener", params)
        return body.get("RequestId", ""), list(body.get("ListenerIds") or [])

    def describe_listeners(self, region, lb_id, listener_ids=None, port=None, protocol=None):
        params = {"LoadBalancerId": lb_id}
        if listener_ids:
            params["ListenerIds"] = list(listener_ids)
        if port is not None:
            params["Port"] = port
        if protocol:
            params["Protocol"] = protocol
        body = self.request(region, "DescribeListeners", params)
        return [
            Listener(
                listener_id=lis["ListenerId"],
                protocol=lis.get("Protocol", ""),
                port=lis.get("Port", 0),
                end_port=lis.get("EndPort") or 0,
                name=lis.get("ListenerName") or "",
            )
            for lis in body.get("Listeners") or []
        ]

    def delete_listeners(self, region, lb_id, listener_ids):
        body = self.request(region, "DeleteLoadBalancerListeners", {
            "LoadBalancerId": lb_id,
            "ListenerIds": list(listener_ids),
        })
        return body.get("RequestId", "")

    @staticmethod
    def _batch_targets(targets):
        return [{"ListenerId": listener_id, "Port": t.port, "EniIp": t.ip} for listener_id, t in targets]

    def batch_register_targets(self, region, lb_id, targets):
        body = self.request(region, "BatchRegisterTargets", {
            "LoadBalancerId": lb_id,
            "Targets": self._batch_targets(targets),
        })
        return body.get("RequestId", "")

    def batch_deregister_targets(self, region, lb_id, targets):
        body = self.request(region, "BatchDeregisterTargets", {
            "LoadBalancerId": lb_id,
            "Targets": self._batch_targets(targets),
        })
        return list(body.get("FailListenerIdSet") or [])

    def describe_targets(self, region, lb_id, listener_ids):
        body = self.request(region, "DescribeTargets", {
            "LoadBalancerId": lb_id,
            "ListenerIds": list(listener_ids),
        })
        result = {}
        for lis in body.get("Listeners") or []:
            targets = []
            for rs in lis.get("Targets") or []:
                for ip in rs.get("PrivateIpAddresses") or []:
                    targets.append(Target(ip, rs.get("Port", 0)))
            result[lis["ListenerId"]] = targets
        return result

    def describe_task_status(self, region, task_id):
        body = self.request(region, "DescribeTaskStatus", {"TaskId": task_id})
        return TaskStatus(
            status=body.get("Status", 2),
            message=body.get("Message"),
            lb_ids=list(body.get("LoadBalancerIds") or []),
        )

    def describe_quota(self, region):
        body = self.request(region, "DescribeQuota", {})
        return {q["QuotaId"]: q.get("QuotaLimit", 0) for q in body.get("QuotaSet") or []}

    def describe_load_balancers(self, region, lb_ids):
        body = self.request(region, "DescribeLoadBalancers", {"LoadBalancerIds": list(lb_ids)})
        return [
            CLBInfo(
                lb_id=lb["LoadBalancerId"],
                lb_name=lb.get("LoadBalancerName", ""),
                ips=list(lb.get("LoadBalancerVips") or []),
                hostname=lb.get("LoadBalancerDomain") or lb.get("Domain") or None,
                status=lb.get("Status", 1),
            )
            for lb in body.get("LoadBalancerSet") or []
        ]

    def create_load_balancer(self, region, params):
        body = self.request(region, "CreateLoadBalancer", dict(params))
        return body.get("RequestId", ""), list(body.get("LoadBalancerIds") or [])

    def delete_load_balancers(self, region, lb_ids):
        body = self.request(region, "DeleteLoadBalancer", {"LoadBalancerIds": list(lb_ids)})
        return body.get("RequestId", "")
