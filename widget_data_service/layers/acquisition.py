"""
Layer 1 – 数据获取层
按数据项类型（json / http / websocket / script）拉取原始数据：
  - HTTP 参数支持动态绑定路径（componentId.layer.property），从配置存储读取组件属性
  - 相同签名的并发 HTTP 请求在去重窗口内共享同一次传输调用
  - 任何内部错误都转换为空对象 {}，不向上抛出
"""

import asyncio
import hashlib
import json
import logging
import math
import re
from contextvars import ContextVar
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, TypeAdapter

from widget_data_service.clients import HttpTransport, get_http_transport
from widget_data_service.config import settings
from widget_data_service.models.configuration import (
    DataItem,
    HttpDataItemConfig,
    HttpParameter,
    JsonDataItemConfig,
    ScriptDataItemConfig,
    WebSocketDataItemConfig,
)
from widget_data_service.services.script_engine import ScriptEngine, get_script_engine

logger = logging.getLogger(__name__)

CURRENT_COMPONENT_PLACEHOLDER = "__CURRENT_COMPONENT__"
BINDING_TEMPLATE = "component-property-binding"

_BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")
_PLACEHOLDER_RE = re.compile(r"\{([^}]+)\}")
_SHORT_NUMBER_RE = re.compile(r"^\d{1,4}$")

# 属性路径前缀 -> 查找层顺序
_LAYER_ORDER: Tuple[Tuple[str, Tuple[str, str]], ...] = (
    ("customize.", ("component", "base")),
    ("base.", ("base", "component")),
    ("component.", ("component", "base")),
)

_DATA_ITEM_ADAPTER: TypeAdapter = TypeAdapter(DataItem)

# 当前执行的组件，按任务隔离
_current_component: ContextVar[Optional[str]] = ContextVar("current_component_id", default=None)


def convert_value(value: Any, data_type: str) -> Any:
    """按参数声明的 dataType 转换取值"""
    if value is None:
        return None
    if data_type == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)
    if data_type == "number":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        try:
            num = float(str(value).strip())
        except ValueError:
            return 0
        if math.isnan(num):
            return 0
        return int(num) if num.is_integer() else num
    if data_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)
    if data_type == "json":
        if isinstance(value, (dict, list)):
            return value
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return {}
        return value
    return value


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _get_nested(obj: Any, path: str) -> Any:
    if not isinstance(obj, dict) or not path:
        return None
    current = obj
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


class ResolvedRequest(BaseModel):
    """参数解析完成后的请求"""

    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    timeout: int


class DataItemFetcher:
    """数据获取层：按类型分发，统一返回原始数据"""

    def __init__(
        self,
        transport: Optional[HttpTransport] = None,
        property_store: Any = None,
        script_engine: Optional[ScriptEngine] = None,
        dedup_ttl: Optional[float] = None,
    ):
        """
        Args:
            transport: HTTP 传输，默认使用全局实例
            property_store: 提供 async get_configuration(component_id) 的配置存储
            script_engine: 脚本沙箱，默认使用全局实例
            dedup_ttl: 请求去重窗口（秒）
        """
        self._transport = transport
        self._property_store = property_store
        self._script_engine = script_engine or get_script_engine()
        self._dedup_ttl = dedup_ttl if dedup_ttl is not None else settings.REQUEST_DEDUP_TTL
        self._inflight: Dict[str, asyncio.Future] = {}

    @property
    def transport(self) -> HttpTransport:
        if self._transport is None:
            self._transport = get_http_transport()
        return self._transport

    # ── 执行上下文 ────────────────────────────────────────

    def set_current_component_id(self, component_id: Optional[str]) -> None:
        """设置当前执行的组件（用于 __CURRENT_COMPONENT__ 绑定）"""
        _current_component.set(component_id)

    @property
    def current_component_id(self) -> Optional[str]:
        return _current_component.get()

    # ── 入口 ──────────────────────────────────────────────

    async def fetch_data(self, item: Any) -> Any:
        """根据数据项配置获取原始数据，出错返回 {}"""
        item_type = getattr(item, "type", None) or (item.get("type") if isinstance(item, dict) else None)
        try:
            if isinstance(item, dict):
                item = _DATA_ITEM_ADAPTER.validate_python(item)
            if item.type == "json":
                return await self._fetch_json(item.config)
            if item.type == "http":
                return await self._fetch_http(item.config)
            if item.type == "websocket":
                return await self._fetch_websocket(item.config)
            if item.type == "script":
                return await self._fetch_script(item.config)
            return {}
        except Exception as exc:
            logger.warning(f"数据项获取失败（类型：{item_type}）: {exc}")
            return {}

    # ── JSON ──────────────────────────────────────────────

    async def _fetch_json(self, config: JsonDataItemConfig) -> Any:
        try:
            return json.loads(config.json_string)
        except (TypeError, ValueError) as exc:
            logger.debug(f"JSON 数据项解析失败: {exc}")
            return {}

    # ── WebSocket（占位） ─────────────────────────────────

    async def _fetch_websocket(self, config: WebSocketDataItemConfig) -> Any:
        return {}

    # ── 脚本 ──────────────────────────────────────────────

    async def _fetch_script(self, config: ScriptDataItemConfig) -> Any:
        context = dict(config.context)
        context.setdefault("data", {})
        result = await self._script_engine.execute(config.script, context)
        if not result.success:
            logger.debug(f"脚本数据项执行失败: {result.error}")
            return {}
        return result.data if result.data is not None else {}

    # ── HTTP ──────────────────────────────────────────────

    async def _fetch_http(self, config: HttpDataItemConfig) -> Any:
        self._check_binding_paths(config)
        resolved = await self._resolve_request(config)
        key = self._make_request_key(resolved)

        # 查找与登记之间没有 await，同一轮调度内的并发请求一定能命中
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._execute_http_request(config, resolved))
            self._inflight[key] = task
            asyncio.get_running_loop().call_later(self._dedup_ttl, self._evict_request, key, task)
        else:
            logger.debug(f"复用进行中的 HTTP 请求: {resolved.method} {resolved.url}")
        return await asyncio.shield(task)

    def _evict_request(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    @staticmethod
    def _make_request_key(resolved: ResolvedRequest) -> str:
        """请求签名：方法 + URL（含路径参数）+ 查询参数 + 请求体"""
        raw = json.dumps(
            {
                "method": resolved.method,
                "url": resolved.url,
                "query": sorted((k, str(v)) for k, v in resolved.query.items()),
                "body": resolved.body,
            },
            ensure_ascii=False,
            sort_keys=True,
            default=str,
        )
        return "http:" + hashlib.md5(raw.encode()).hexdigest()

    async def _execute_http_request(self, config: HttpDataItemConfig, resolved: ResolvedRequest) -> Any:
        try:
            if config.pre_request_script:
                config, resolved = await self._apply_pre_request_script(config, resolved)

            sender = getattr(self.transport, resolved.method.lower(), None)
            if sender is None:
                raise ValueError(f"不支持的 HTTP 方法: {resolved.method}")
            response = await sender(
                resolved.url,
                resolved.body,
                headers=resolved.headers or None,
                params=resolved.query or None,
                timeout=resolved.timeout,
            )

            if config.post_response_script:
                result = await self._script_engine.execute(
                    config.post_response_script, {"response": response}
                )
                if result.success and result.data is not None:
                    response = result.data
                elif not result.success:
                    logger.warning(f"响应后脚本执行失败: {result.error}")
            return response
        except Exception as exc:
            logger.warning(f"HTTP 数据项请求失败 {config.method} {config.url}: {exc}")
            return {}

    async def _apply_pre_request_script(
        self, config: HttpDataItemConfig, resolved: ResolvedRequest
    ) -> Tuple[HttpDataItemConfig, ResolvedRequest]:
        dumped = config.model_dump(by_alias=True)
        result = await self._script_engine.execute(config.pre_request_script, {"config": dumped})
        if not result.success:
            logger.warning(f"请求前脚本执行失败: {result.error}")
            return config, resolved
        if not isinstance(result.data, dict):
            return config, resolved
        try:
            patched = HttpDataItemConfig.model_validate({**dumped, **result.data})
        except Exception as exc:
            logger.warning(f"请求前脚本返回的配置无效: {exc}")
            return config, resolved
        return patched, await self._resolve_request(patched)

    async def _resolve_request(self, config: HttpDataItemConfig) -> ResolvedRequest:
        url = config.url
        if config.address_type == "internal" and config.selected_internal_address and not url:
            url = config.selected_internal_address

        headers: Dict[str, str] = {}
        if isinstance(config.headers, dict):
            headers.update(config.headers)
        else:
            for p in config.headers:
                if not (p.enabled and p.key):
                    continue
                value = await self.resolve_parameter_value(p)
                if value is not None:
                    headers[p.key] = str(value)

        # 路径参数：新格式 path_params 优先，旧格式 path_parameter 兜底
        if config.path_params:
            for p in config.path_params:
                if not p.enabled:
                    continue
                value = await self.resolve_parameter_value(p)
                if value is not None:
                    url = self._substitute_path(url, p.key, value)
        elif config.path_parameter is not None:
            value = await self.resolve_parameter_value(config.path_parameter)
            if value is not None and str(value).strip():
                url = self._substitute_path(url, config.path_parameter.key, value)

        query: Dict[str, Any] = {}
        if config.params:
            for p in config.params:
                if not (p.enabled and p.key):
                    continue
                value = await self.resolve_parameter_value(p)
                if value is not None:
                    query[p.key] = value
        elif config.parameters:
            for p in config.parameters:
                if not (p.enabled and p.key):
                    continue
                value = await self.resolve_parameter_value(p)
                if value is None:
                    continue
                if p.param_type == "path":
                    if str(value).strip():
                        url = self._append_path(url, value)
                elif p.param_type == "header":
                    headers[p.key] = str(value)
                else:
                    query[p.key] = value

        body = None
        if config.method in _BODY_METHODS and config.body not in (None, ""):
            body = config.body
            if isinstance(body, str):
                try:
                    body = json.loads(body)
                except ValueError:
                    pass

        return ResolvedRequest(
            method=config.method,
            url=url,
            headers=headers,
            query=query,
            body=body,
            timeout=config.timeout or settings.HTTP_TIMEOUT_MS,
        )

    @staticmethod
    def _substitute_path(url: str, key: str, value: Any) -> str:
        """替换 {key} 占位符；key 为空时替换第一个占位符；没有占位符则追加到末尾"""
        placeholder = f"{{{key}}}" if key else None
        if not placeholder or placeholder not in url:
            match = _PLACEHOLDER_RE.search(url)
            placeholder = match.group(0) if match else None
        if placeholder:
            return url.replace(placeholder, str(value), 1)
        return DataItemFetcher._append_path(url, value)

    @staticmethod
    def _append_path(url: str, value: Any) -> str:
        separator = "" if url.endswith("/") else "/"
        return f"{url}{separator}{value}"

    # ── 动态参数解析 ──────────────────────────────────────

    async def resolve_parameter_value(self, param: HttpParameter) -> Any:
        """
        解析参数取值

        绑定参数从配置存储读取；空值回退到默认值，仍为空返回 None（表示不发送该参数）。
        最终按 data_type 转换类型。
        """
        resolved = param.value
        explicit = self._is_explicit_binding(param)

        if explicit or self._looks_like_binding_path(param.value):
            binding_path = param.value
            if self._is_truncated_binding_path(param):
                repaired = self._repair_binding_path(param.variable_name)
                if repaired:
                    logger.warning(
                        f"检测到被截断的绑定路径 {param.value!r}（参数 {param.key}），"
                        f"按变量名 {param.variable_name!r} 修复为 {repaired!r}"
                    )
                    binding_path = repaired

            if isinstance(binding_path, str) and "." in binding_path:
                value = await self._get_component_property_value(binding_path)
                if not _is_empty(value):
                    resolved = value
                elif explicit:
                    resolved = None
                # 仅凭取值形态判断出的绑定，找不到时保留字面值
            else:
                logger.warning(f"参数 {param.key} 的绑定路径无效: {binding_path!r}")
                resolved = None

        if _is_empty(resolved):
            if _is_empty(param.default_value):
                return None
            resolved = param.default_value

        return convert_value(resolved, param.data_type)

    @staticmethod
    def _is_explicit_binding(param: HttpParameter) -> bool:
        return (
            param.is_dynamic
            or param.value_mode == "component"
            or param.selected_template == BINDING_TEMPLATE
        )

    @staticmethod
    def _looks_like_binding_path(value: Any) -> bool:
        return (
            isinstance(value, str)
            and "." in value
            and len(value.split(".")) >= 3
            and len(value) > 10
            and not _SHORT_NUMBER_RE.match(value)
        )

    @staticmethod
    def _is_truncated_binding_path(param: HttpParameter) -> bool:
        value = param.value
        return (
            isinstance(value, str)
            and bool(value)
            and "." not in value
            and len(value) < 10
            and "_" in (param.variable_name or "")
        )

    @staticmethod
    def _repair_binding_path(variable_name: str) -> Optional[str]:
        """按最后一个下划线拆分变量名：<componentId>_<property> -> componentId.base.property"""
        idx = variable_name.rfind("_")
        if idx <= 0 or idx == len(variable_name) - 1:
            return None
        return f"{variable_name[:idx]}.base.{variable_name[idx + 1:]}"

    def _check_binding_paths(self, config: HttpDataItemConfig) -> None:
        """发送前检查绑定参数，记录无法修复的绑定路径"""
        for param in config.iter_parameters():
            if not self._is_explicit_binding(param):
                continue
            path = param.value
            if self._is_truncated_binding_path(param):
                path = self._repair_binding_path(param.variable_name)
            if not (isinstance(path, str) and "." in path):
                logger.error(f"参数 {param.key!r} 的绑定路径已损坏: {param.value!r}")

    async def _get_component_property_value(self, binding_path: str) -> Any:
        """读取 componentId.property.path 对应的组件属性值"""
        try:
            component_id, _, property_path = binding_path.partition(".")
            current = self.current_component_id
            if component_id == CURRENT_COMPONENT_PLACEHOLDER:
                if not current:
                    return None
                component_id = current
            if self._property_store is None or not property_path:
                return None

            config = await self._property_store.get_configuration(component_id)
            if not config and current and current != component_id:
                config = await self._property_store.get_configuration(current)
            if not config:
                return None

            layers = {"base": config.get("base") or {}, "component": config.get("component") or {}}
            order: Tuple[str, str] = ("base", "component")
            path = property_path
            for prefix, prefix_order in _LAYER_ORDER:
                if property_path.startswith(prefix):
                    path = property_path[len(prefix):]
                    order = prefix_order
                    break

            for layer in order:
                value = _get_nested(layers[layer], path)
                if value is not None:
                    return value
            return None
        except Exception as exc:
            logger.warning(f"组件属性绑定读取失败 {binding_path!r}: {exc}")
            return None
