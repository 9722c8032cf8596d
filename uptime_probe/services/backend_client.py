"""后端HTTP客户端

负责节点目录拉取和状态上报两个接口的请求/响应映射，不做任何重试。
"""

import asyncio
import json
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple, Union
from urllib.parse import urlparse

import aiohttp

from ..models.peer import Peer, SelfStatusPayload, PeerStatusPayload
from ..utils.exceptions import (
    ConfigError, ErrorCode, BackendUnreachable, BackendAuthError, BackendProtocolError
)
from ..utils.log_manager import get_logger

StatusPayload = Union[SelfStatusPayload, PeerStatusPayload]

DEFAULT_REQUEST_TIMEOUT = 10


class AuthScheme(Enum):
    """认证方式，配置时固定选择，不在请求时协商"""
    API_KEY = "api_key"
    BEARER = "bearer"
    NODE_TOKEN = "node_token"

    def headers(self, credential: str) -> Dict[str, str]:
        """
        生成该认证方式对应的请求头

        Args:
            credential: 凭据

        Returns:
            Dict[str, str]: 认证请求头
        """
        if self is AuthScheme.API_KEY:
            return {'x-api-key': credential}
        if self is AuthScheme.BEARER:
            return {'Authorization': f'Bearer {credential}'}
        return {'x-node-token': credential}

    @classmethod
    def parse(cls, value: Union[str, 'AuthScheme']) -> 'AuthScheme':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigError(
                f"不支持的认证方式: {value}，支持的方式: {[s.value for s in cls]}")


def is_success_code(code: Any) -> bool:
    """信封中的业务码 0 或 200-299 视为成功"""
    if isinstance(code, bool) or not isinstance(code, int):
        return False
    return code == 0 or 200 <= code < 300


class BackendClient:
    """后端API客户端

    每次调用都使用独立的会话，除超时和认证配置外不共享任何状态，
    可以被多个任务并发使用。
    """

    def __init__(self, base_url: str,
                 discovery_scheme: AuthScheme, discovery_credential: str,
                 report_scheme: AuthScheme, report_credential: str,
                 request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
                 peers_path: str = '/peers',
                 status_path: str = '/status',
                 status_method: str = 'POST',
                 user_agent: str = 'uptime-probe'):
        """
        初始化后端客户端

        Args:
            base_url: 后端基础地址
            discovery_scheme: 节点目录接口的认证方式
            discovery_credential: 节点目录接口的凭据
            report_scheme: 状态上报接口的认证方式
            report_credential: 状态上报接口的凭据（节点令牌）
            request_timeout: 单次请求超时时间（秒）
            peers_path: 节点目录接口路径
            status_path: 状态上报接口路径
            status_method: 状态上报使用的HTTP方法（PUT/POST）
            user_agent: User-Agent 请求头

        Raises:
            ConfigError: 配置无效
        """
        self.base_url = (base_url or '').rstrip('/')
        self.discovery_scheme = AuthScheme.parse(discovery_scheme)
        self.discovery_credential = discovery_credential
        self.report_scheme = AuthScheme.parse(report_scheme)
        self.report_credential = report_credential
        self.request_timeout = request_timeout
        self.peers_path = peers_path
        self.status_path = status_path
        self.status_method = (status_method or 'POST').upper()
        self.user_agent = user_agent
        self.logger = get_logger('backend_client')

        self._validate()

    @classmethod
    def from_config(cls, backend_config: Dict[str, Any], version: str) -> 'BackendClient':
        """
        根据 backend 配置段创建客户端

        Args:
            backend_config: backend 配置字典
            version: 代理版本，用于 User-Agent

        Returns:
            BackendClient: 客户端实例
        """
        discovery_auth = backend_config.get('discovery_auth', {})
        report_auth = backend_config.get('report_auth', {})
        return cls(
            base_url=backend_config.get('base_url', ''),
            discovery_scheme=discovery_auth.get('scheme', 'api_key'),
            discovery_credential=discovery_auth.get('credential', ''),
            report_scheme=report_auth.get('scheme', 'node_token'),
            report_credential=report_auth.get('credential', ''),
            request_timeout=backend_config.get('request_timeout', DEFAULT_REQUEST_TIMEOUT),
            peers_path=backend_config.get('peers_path', '/peers'),
            status_path=backend_config.get('status_path', '/status'),
            status_method=backend_config.get('status_method', 'POST'),
            user_agent=f'uptime-probe/{version}',
        )

    def _validate(self):
        parsed_url = urlparse(self.base_url)
        if parsed_url.scheme not in ('http', 'https') or not parsed_url.netloc:
            raise ConfigError(f"后端地址格式无效: {self.base_url!r}",
                              error_code=ErrorCode.CONFIG_VALIDATION_ERROR)

        if not self.discovery_credential:
            raise ConfigError("缺少节点目录接口的认证凭据",
                              error_code=ErrorCode.MISSING_CREDENTIAL)

        if not self.report_credential:
            raise ConfigError("缺少状态上报接口的认证凭据",
                              error_code=ErrorCode.MISSING_CREDENTIAL)

        if self.status_method not in ('PUT', 'POST'):
            raise ConfigError(f"状态上报只支持 PUT 或 POST 方法: {self.status_method}")

        if not isinstance(self.request_timeout, (int, float)) or self.request_timeout <= 0:
            raise ConfigError("request_timeout 必须是正数")

    @property
    def peers_url(self) -> str:
        return f"{self.base_url}{self.peers_path}"

    @property
    def status_url(self) -> str:
        return f"{self.base_url}{self.status_path}"

    def _build_headers(self, scheme: AuthScheme, credential: str) -> Dict[str, str]:
        headers = {
            'User-Agent': self.user_agent,
            'Accept': 'application/json',
        }
        headers.update(scheme.headers(credential))
        return headers

    async def fetch_peers(self, region: Optional[str] = None) -> Tuple[List[Peer], bool]:
        """
        拉取节点目录

        Args:
            region: 区域过滤条件，为None时拉取全部

        Returns:
            Tuple[List[Peer], bool]: (节点列表, 后端是否还有更多批次)

        Raises:
            BackendUnreachable: 连接失败或超时
            BackendAuthError: 401/403
            BackendProtocolError: 其他非2xx状态码或响应体无法解析
        """
        params = {'region': region} if region else {}
        headers = self._build_headers(self.discovery_scheme, self.discovery_credential)

        self.logger.debug(f"从后端拉取节点目录: {self.peers_url}, 区域={region}")
        body = await self._request('GET', self.peers_url, headers=headers, params=params)

        data = self._unwrap_envelope(body, self.peers_url)
        if not isinstance(data, dict) or not isinstance(data.get('peers'), list):
            raise BackendProtocolError("节点目录响应缺少 peers 列表", url=self.peers_url)

        peers = []
        for entry in data['peers']:
            try:
                peers.append(Peer.from_catalog(entry))
            except (KeyError, TypeError, ValueError) as e:
                raise BackendProtocolError(
                    f"节点目录中的记录格式无效: {entry!r}",
                    url=self.peers_url, cause=e
                )

        more_available = bool(data.get('next_batch_available', False))
        self.logger.debug(
            f"节点目录拉取完成: {len(peers)} 个节点, "
            f"total_available={data.get('total_available')}, "
            f"next_batch_available={more_available}"
        )
        return peers, more_available

    async def report_status(self, payload: StatusPayload) -> None:
        """
        上报状态

        Args:
            payload: 自身状态或单个节点状态负载

        Raises:
            BackendUnreachable: 连接失败或超时
            BackendAuthError: 401/403
            BackendProtocolError: 其他非2xx状态码或响应体无法解析
        """
        headers = self._build_headers(self.report_scheme, self.report_credential)
        headers['Content-Type'] = 'application/json'

        body = await self._request(self.status_method, self.status_url,
                                   headers=headers, json=payload.to_dict())
        if body is not None:
            self._unwrap_envelope(body, self.status_url)

    async def test_connection(self) -> bool:
        """
        测试后端连通性和节点目录认证

        Returns:
            bool: 连接是否成功
        """
        try:
            peers, _ = await self.fetch_peers()
            self.logger.info(f"后端连接测试成功，目录中有 {len(peers)} 个节点")
            return True
        except BackendAuthError as e:
            self.logger.error(f"后端连接测试失败，认证被拒绝: {e.format_error()}")
        except (BackendUnreachable, BackendProtocolError) as e:
            self.logger.error(f"后端连接测试失败: {e.format_error()}")
        return False

    async def _request(self, method: str, url: str, **kwargs) -> Optional[Any]:
        """
        发送HTTP请求并把所有失败映射到后端异常分类

        Returns:
            解析后的JSON响应体，响应体为空时返回None
        """
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    status = response.status
                    if status in (401, 403):
                        text = await response.text()
                        raise BackendAuthError(
                            f"后端拒绝认证 (状态码: {status}, 响应: {text[:200]})",
                            url=url, status_code=status
                        )

                    if not 200 <= status < 300:
                        text = await response.text()
                        raise BackendProtocolError(
                            f"后端返回错误状态码 (状态码: {status}, 响应: {text[:200]})",
                            url=url, status_code=status
                        )

                    text = await response.text()
                    if not text.strip():
                        return None
                    try:
                        return json.loads(text)
                    except json.JSONDecodeError as e:
                        raise BackendProtocolError(
                            f"后端响应不是有效的JSON: {text[:200]}",
                            url=url, status_code=status, cause=e
                        )

        except asyncio.TimeoutError as e:
            raise BackendUnreachable(
                f"请求后端超时 ({self.request_timeout}s)",
                error_code=ErrorCode.BACKEND_TIMEOUT, url=url, cause=e
            )
        except aiohttp.ClientError as e:
            raise BackendUnreachable(f"请求后端失败: {e}", url=url, cause=e)

    @staticmethod
    def _unwrap_envelope(body: Any, url: str) -> Any:
        """
        解析 {code, message, data} 信封

        不带 code 的对象视为裸数据直接返回。
        """
        if not isinstance(body, dict):
            raise BackendProtocolError("后端响应体必须是JSON对象", url=url)

        if 'code' not in body:
            return body

        code = body.get('code')
        if not is_success_code(code):
            raise BackendProtocolError(
                f"后端返回业务错误: code={code}, message={body.get('message')}",
                url=url, details={'code': code}
            )
        return body.get('data')

    def get_config_summary(self) -> Dict[str, Any]:
        """
        获取配置摘要（不包含凭据）

        Returns:
            Dict[str, Any]: 配置摘要
        """
        return {
            'base_url': self.base_url,
            'peers_url': self.peers_url,
            'status_url': self.status_url,
            'status_method': self.status_method,
            'request_timeout': self.request_timeout,
            'discovery_scheme': self.discovery_scheme.value,
            'report_scheme': self.report_scheme.value,
        }
