"""
HTTP 传输客户端
基于 aiohttp 的异步 HTTP 客户端，数据获取层通过它发起 HTTP 数据项请求
"""

import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from widget_data_service.config import settings

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """HTTP 请求失败（连接错误 / 超时 / 非 2xx 状态码）"""


def _stringify_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """aiohttp 只接受 str / int / float 作为查询参数"""
    if not params:
        return None
    result: Dict[str, str] = {}
    for key, value in params.items():
        if isinstance(value, bool):
            result[key] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            result[key] = json.dumps(value, ensure_ascii=False)
        else:
            result[key] = str(value)
    return result


class HttpTransport:
    """HTTP 传输层：GET / POST / PUT / PATCH / DELETE，返回解析后的响应体"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        default_timeout_ms: Optional[int] = None,
        max_connections: Optional[int] = None,
    ):
        self._base_url = (base_url if base_url is not None else settings.HTTP_BASE_URL).rstrip("/")
        self._default_timeout_ms = default_timeout_ms or settings.HTTP_TIMEOUT_MS
        self._max_connections = max_connections or settings.HTTP_MAX_CONNECTIONS
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """获取或创建会话"""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self._max_connections)
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
            logger.info("HTTP 会话已关闭")

    def resolve_url(self, url: str) -> str:
        """相对地址拼接内部 API 前缀"""
        if url.startswith(("http://", "https://")):
            return url
        if not self._base_url:
            return url
        return f"{self._base_url}/{url.lstrip('/')}"

    async def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
    ) -> Any:
        """
        发起请求并返回响应体（JSON 自动解析，否则返回文本）

        Raises:
            TransportError: 网络错误、超时或非 2xx 响应
        """
        session = await self._get_session()
        timeout_s = (timeout or self._default_timeout_ms) / 1000
        kwargs: Dict[str, Any] = {
            "headers": headers or None,
            "params": _stringify_params(params),
            "timeout": aiohttp.ClientTimeout(total=timeout_s),
        }
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = body

        full_url = self.resolve_url(url)
        try:
            async with session.request(method.upper(), full_url, **kwargs) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise TransportError(f"{method.upper()} {full_url} 返回 {resp.status}: {text[:200]}")
                raw = await resp.text()
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"{method.upper()} {full_url} 请求失败: {exc}") from exc

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    async def get(self, url: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request("GET", url, None, **kwargs)

    async def post(self, url: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request("POST", url, body, **kwargs)

    async def put(self, url: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request("PUT", url, body, **kwargs)

    async def patch(self, url: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request("PATCH", url, body, **kwargs)

    async def delete(self, url: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request("DELETE", url, body, **kwargs)


# ── 全局传输实例 ─────────────────────────────────────────
_transport: Optional[HttpTransport] = None


def get_http_transport() -> HttpTransport:
    global _transport
    if _transport is None:
        _transport = HttpTransport()
    return _transport

