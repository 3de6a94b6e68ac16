"""
执行链与数据获取层单元测试

覆盖范围：
  - 数据获取层（JSON / HTTP / 脚本 / WebSocket、参数绑定、请求去重）
  - 配置存储（属性读写、失效钩子）
  - 多层执行链（端到端场景、故障隔离、调试轨迹、写入仓库）
  - 组件数据服务（缓存优先读取、属性变更后重新执行）
"""

import asyncio
import logging
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


# ─────────────────────────────────────────────────────────
# 辅助函数
# ─────────────────────────────────────────────────────────

def _fake_transport(response=None) -> MagicMock:
    """所有 HTTP 方法都返回固定响应的传输"""
    transport = MagicMock()
    for method in ("get", "post", "put", "patch", "delete"):
        setattr(transport, method, AsyncMock(return_value=response if response is not None else {"ok": True}))
    transport.close = AsyncMock()
    return transport


def _property_store():
    from widget_data_service.services.configuration_store import ConfigurationStore
    store = ConfigurationStore()
    store.set_properties("comp-a", base={"deviceId": "dev-1", "title": "base-title"},
                         component={"limit": 10, "title": "component-title"})
    return store


def _fetcher(transport=None, store=None, dedup_ttl=2.0):
    from widget_data_service.layers.acquisition import DataItemFetcher
    return DataItemFetcher(
        transport=transport or _fake_transport(),
        property_store=store if store is not None else _property_store(),
        dedup_ttl=dedup_ttl,
    )


def _http_item(**config) -> dict:
    config.setdefault("url", "https://api.example.com/items")
    return {"type": "http", "config": config}


def _source(source_id: str, items: list, strategy: dict = None) -> dict:
    return {
        "sourceId": source_id,
        "dataItems": items,
        "mergeStrategy": strategy or {"type": "object"},
    }


def _json_entry(payload: str, filter_path: str = "$") -> dict:
    return {
        "item": {"type": "json", "config": {"jsonString": payload}},
        "processing": {"filterPath": filter_path},
    }


# ─────────────────────────────────────────────────────────
# 1. 数据获取层：基础类型
# ─────────────────────────────────────────────────────────

class TestFetchBasicTypes:
    @pytest.mark.asyncio
    async def test_json_item(self):
        f = _fetcher()
        assert await f.fetch_data({"type": "json", "config": {"jsonString": '{"a": 1}'}}) == {"a": 1}

    @pytest.mark.asyncio
    async def test_invalid_json_returns_empty(self):
        f = _fetcher()
        assert await f.fetch_data({"type": "json", "config": {"jsonString": "{not json"}}) == {}

    @pytest.mark.asyncio
    async def test_websocket_placeholder(self):
        f = _fetcher()
        assert await f.fetch_data({"type": "websocket", "config": {"url": "ws://x"}}) == {}

    @pytest.mark.asyncio
    async def test_script_item(self):
        f = _fetcher()
        item = {"type": "script", "config": {"script": "return {'n': base * 2}", "context": {"base": 21}}}
        assert await f.fetch_data(item) == {"n": 42}

    @pytest.mark.asyncio
    async def test_failed_script_returns_empty(self):
        f = _fetcher()
        assert await f.fetch_data({"type": "script", "config": {"script": "return missing"}}) == {}

    @pytest.mark.asyncio
    async def test_unknown_type_returns_empty(self):
        f = _fetcher()
        assert await f.fetch_data({"type": "ftp", "config": {}}) == {}

    @pytest.mark.asyncio
    async def test_accepts_model_instances(self):
        from widget_data_service.models.configuration import JsonDataItem, JsonDataItemConfig
        item = JsonDataItem(config=JsonDataItemConfig(json_string="[1, 2]"))
        assert await _fetcher().fetch_data(item) == [1, 2]


# ─────────────────────────────────────────────────────────
# 2. 数据获取层：HTTP 请求组装
# ─────────────────────────────────────────────────────────

class TestFetchHttp:
    @pytest.mark.asyncio
    async def test_static_query_params(self):
        t = _fake_transport({"rows": []})
        f = _fetcher(t)
        result = await f.fetch_data(_http_item(params=[
            {"key": "page", "value": "2", "dataType": "number"},
            {"key": "skip", "value": "x", "enabled": False},
        ]))
        assert result == {"rows": []}
        call = t.get.await_args
        assert call.args[0] == "https://api.example.com/items"
        assert call.kwargs["params"] == {"page": 2}
        assert call.kwargs["headers"] is None

    @pytest.mark.asyncio
    async def test_bound_path_and_query_params(self):
        t = _fake_transport()
        f = _fetcher(t)
        f.set_current_component_id("comp-a")
        await f.fetch_data(_http_item(
            url="https://api.example.com/devices/{deviceId}",
            pathParams=[{"key": "deviceId", "value": "comp-a.base.deviceId", "isDynamic": True}],
            params=[{
                "key": "limit",
                "value": "__CURRENT_COMPONENT__.component.limit",
                "selectedTemplate": "component-property-binding",
                "dataType": "number",
            }],
        ))
        call = t.get.await_args
        assert call.args[0] == "https://api.example.com/devices/dev-1"
        assert call.kwargs["params"] == {"limit": 10}

    @pytest.mark.asyncio
    async def test_path_param_without_placeholder_is_appended(self):
        t = _fake_transport()
        await _fetcher(t).fetch_data(_http_item(
            url="https://api.example.com/devices",
            pathParams=[{"key": "id", "value": "42"}],
        ))
        assert t.get.await_args.args[0] == "https://api.example.com/devices/42"

    @pytest.mark.asyncio
    async def test_legacy_parameters(self):
        t = _fake_transport()
        await _fetcher(t).fetch_data(_http_item(
            url="https://api.example.com/devices",
            parameters=[
                {"key": "id", "value": "7", "paramType": "path"},
                {"key": "X-Token", "value": "abc", "paramType": "header"},
                {"key": "q", "value": "temp", "paramType": "query"},
            ],
        ))
        call = t.get.await_args
        assert call.args[0] == "https://api.example.com/devices/7"
        assert call.kwargs["headers"] == {"X-Token": "abc"}
        assert call.kwargs["params"] == {"q": "temp"}

    @pytest.mark.asyncio
    async def test_post_body_parsed(self):
        t = _fake_transport()
        await _fetcher(t).fetch_data(_http_item(method="POST", body='{"q": 1}'))
        assert t.post.await_args.args[1] == {"q": 1}

    @pytest.mark.asyncio
    async def test_get_ignores_body(self):
        t = _fake_transport()
        await _fetcher(t).fetch_data(_http_item(body='{"q": 1}'))
        assert t.get.await_args.args[1] is None

    @pytest.mark.asyncio
    async def test_transport_error_returns_empty(self):
        from widget_data_service.clients import TransportError
        t = _fake_transport()
        t.get.side_effect = TransportError("boom")
        assert await _fetcher(t).fetch_data(_http_item()) == {}

    @pytest.mark.asyncio
    async def test_post_response_script(self):
        t = _fake_transport({"code": 0, "data": {"v": 5}})
        result = await _fetcher(t).fetch_data(_http_item(postResponseScript="return response['data']"))
        assert result == {"v": 5}

    @pytest.mark.asyncio
    async def test_pre_request_script_patches_config(self):
        t = _fake_transport()
        await _fetcher(t).fetch_data(_http_item(
            preRequestScript="return {'url': config['url'] + '/patched'}"
        ))
        assert t.get.await_args.args[0] == "https://api.example.com/items/patched"

    @pytest.mark.asyncio
    async def test_header_parameter_list(self):
        t = _fake_transport()
        f = _fetcher(t)
        await f.fetch_data(_http_item(headers=[
            {"key": "X-Device", "value": "comp-a.base.deviceId", "valueMode": "component"},
        ]))
        assert t.get.await_args.kwargs["headers"] == {"X-Device": "dev-1"}


# ─────────────────────────────────────────────────────────
# 3. 数据获取层：参数绑定解析
# ─────────────────────────────────────────────────────────

class TestParameterResolution:
    def _param(self, **kwargs):
        from widget_data_service.models.configuration import HttpParameter
        return HttpParameter(**kwargs)

    @pytest.mark.asyncio
    async def test_static_value(self):
        f = _fetcher()
        assert await f.resolve_parameter_value(self._param(key="k", value="abc")) == "abc"

    @pytest.mark.asyncio
    async def test_unresolved_binding_uses_default(self):
        f = _fetcher()
        param = self._param(key="k", value="comp-a.base.unknown", is_dynamic=True, default_value="fallback")
        assert await f.resolve_parameter_value(param) == "fallback"

    @pytest.mark.asyncio
    async def test_unresolved_binding_without_default_is_omitted(self):
        f = _fetcher()
        param = self._param(key="k", value="comp-a.base.unknown", is_dynamic=True)
        assert await f.resolve_parameter_value(param) is None

    @pytest.mark.asyncio
    async def test_empty_static_value_is_omitted(self):
        f = _fetcher()
        assert await f.resolve_parameter_value(self._param(key="k", value="  ")) is None
        assert await f.resolve_parameter_value(self._param(key="k", value="", default_value="d")) == "d"

    @pytest.mark.asyncio
    async def test_path_shaped_literal_is_kept(self):
        """看起来像绑定路径但找不到组件时，保留字面值"""
        f = _fetcher()
        param = self._param(key="host", value="www.example.com")
        assert await f.resolve_parameter_value(param) == "www.example.com"

    @pytest.mark.asyncio
    async def test_path_shaped_value_resolves(self):
        f = _fetcher()
        param = self._param(key="device", value="comp-a.base.deviceId")
        assert await f.resolve_parameter_value(param) == "dev-1"

    @pytest.mark.asyncio
    async def test_layer_order_by_prefix(self):
        f = _fetcher()
        base = self._param(key="t", value="comp-a.base.title", is_dynamic=True)
        customize = self._param(key="t", value="comp-a.customize.title", is_dynamic=True)
        component = self._param(key="t", value="comp-a.component.title", is_dynamic=True)
        assert await f.resolve_parameter_value(base) == "base-title"
        assert await f.resolve_parameter_value(customize) == "component-title"
        assert await f.resolve_parameter_value(component) == "component-title"

    @pytest.mark.asyncio
    async def test_missing_layer_falls_back_to_other_layer(self):
        f = _fetcher()
        param = self._param(key="limit", value="comp-a.base.limit", is_dynamic=True, data_type="number")
        assert await f.resolve_parameter_value(param) == 10

    @pytest.mark.asyncio
    async def test_falls_back_to_current_component(self):
        f = _fetcher()
        f.set_current_component_id("comp-a")
        param = self._param(key="d", value="ghost-comp.base.deviceId", is_dynamic=True)
        assert await f.resolve_parameter_value(param) == "dev-1"

    @pytest.mark.asyncio
    async def test_placeholder_without_current_component(self):
        f = _fetcher()
        f.set_current_component_id(None)
        param = self._param(key="d", value="__CURRENT_COMPONENT__.base.deviceId", is_dynamic=True)
        assert await f.resolve_parameter_value(param) is None

    @pytest.mark.asyncio
    async def test_truncated_binding_path_is_repaired(self, caplog):
        f = _fetcher()
        param = self._param(key="deviceId", value="deviceId", is_dynamic=True, variable_name="comp-a_deviceId")
        with caplog.at_level(logging.WARNING):
            assert await f.resolve_parameter_value(param) == "dev-1"
        assert "截断" in caplog.text

    @pytest.mark.asyncio
    async def test_current_component_is_task_local(self):
        from widget_data_service.services.configuration_store import ConfigurationStore
        store = ConfigurationStore()
        store.set_properties("comp-x", base={"name": "X"})
        store.set_properties("comp-y", base={"name": "Y"})
        f = _fetcher(store=store)
        param = self._param(key="n", value="__CURRENT_COMPONENT__.base.name", is_dynamic=True)

        async def _resolve_as(component_id):
            f.set_current_component_id(component_id)
            await asyncio.sleep(0.01)
            return await f.resolve_parameter_value(param)

        assert await asyncio.gather(_resolve_as("comp-x"), _resolve_as("comp-y")) == ["X", "Y"]

    def test_convert_value(self):
        from widget_data_service.layers.acquisition import convert_value
        assert convert_value("12", "number") == 12
        assert convert_value("1.5", "number") == 1.5
        assert convert_value("abc", "number") == 0
        assert convert_value("TRUE", "boolean") is True
        assert convert_value("no", "boolean") is False
        assert convert_value(True, "string") == "true"
        assert convert_value({"a": 1}, "string") == '{"a": 1}'
        assert convert_value('{"a": 1}', "json") == {"a": 1}
        assert convert_value("{bad", "json") == {}
        assert convert_value(None, "number") is None


# ─────────────────────────────────────────────────────────
# 4. 数据获取层：请求去重
# ─────────────────────────────────────────────────────────

class TestRequestDedup:
    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_share_one_call(self):
        t = _fake_transport()

        async def _slow_get(*args, **kwargs):
            await asyncio.sleep(0.02)
            return {"v": 1}

        t.get.side_effect = _slow_get
        f = _fetcher(t)
        item = _http_item(params=[{"key": "page", "value": "1"}])
        first, second = await asyncio.gather(f.fetch_data(item), f.fetch_data(item))
        assert first == second == {"v": 1}
        assert t.get.await_count == 1

    @pytest.mark.asyncio
    async def test_different_signatures_are_not_shared(self):
        t = _fake_transport()
        f = _fetcher(t)
        await asyncio.gather(
            f.fetch_data(_http_item(params=[{"key": "page", "value": "1"}])),
            f.fetch_data(_http_item(params=[{"key": "page", "value": "2"}])),
        )
        assert t.get.await_count == 2

    @pytest.mark.asyncio
    async def test_request_after_window_calls_again(self):
        t = _fake_transport()
        f = _fetcher(t, dedup_ttl=0)
        await f.fetch_data(_http_item())
        await asyncio.sleep(0.01)
        await f.fetch_data(_http_item())
        assert t.get.await_count == 2


# ─────────────────────────────────────────────────────────
# 5. 配置存储测试
# ─────────────────────────────────────────────────────────

class TestConfigurationStore:
    @pytest.mark.asyncio
    async def test_properties_merge_and_replace(self):
        from widget_data_service.services.configuration_store import ConfigurationStore
        store = ConfigurationStore()
        assert await store.get_configuration("c1") is None
        store.set_properties("c1", base={"a": 1})
        store.set_properties("c1", base={"b": 2})
        assert (await store.get_configuration("c1"))["base"] == {"a": 1, "b": 2}
        store.set_properties("c1", base={"c": 3}, replace=True)
        assert (await store.get_configuration("c1"))["base"] == {"c": 3}

    @pytest.mark.asyncio
    async def test_returned_configuration_is_a_copy(self):
        from widget_data_service.services.configuration_store import ConfigurationStore
        store = ConfigurationStore()
        store.set_properties("c1", base={"a": {"x": 1}})
        snapshot = await store.get_configuration("c1")
        snapshot["base"]["a"]["x"] = 99
        assert (await store.get_configuration("c1"))["base"]["a"]["x"] == 1

    def test_changes_invalidate_warehouse(self):
        from widget_data_service.services.configuration_store import ConfigurationStore
        warehouse = MagicMock()
        store = ConfigurationStore(warehouse)
        store.set_properties("c1", base={"a": 1})
        store.set_data_source_configuration("c1", {"dataSources": []})
        store.remove_component("c1")
        assert warehouse.clear_component_cache.call_count == 3

    def test_data_source_configuration(self):
        from widget_data_service.services.configuration_store import ConfigurationStore
        store = ConfigurationStore()
        first = store.set_data_source_configuration("c1", {"componentId": "other", "dataSources": []})
        assert first.component_id == "c1"
        assert first.created_at > 0
        second = store.set_data_source_configuration("c1", {"dataSources": []})
        assert second.created_at == first.created_at
        assert store.get_data_source_configuration("c1") is second
        assert store.list_components() == ["c1"]
        store.remove_component("c1")
        assert store.list_components() == []


# ─────────────────────────────────────────────────────────
# 6. 多层执行链测试
# ─────────────────────────────────────────────────────────

class TestMultiLayerExecutorChain:
    def _chain(self, warehouse=None):
        from widget_data_service.services.executor_chain import MultiLayerExecutorChain
        return MultiLayerExecutorChain(fetcher=_fetcher(), warehouse=warehouse)

    @pytest.mark.asyncio
    async def test_json_filter_object_merge(self):
        """单个 JSON 数据源 + 路径过滤 + object 合并"""
        config = {
            "componentId": "c1",
            "dataSources": [_source("s1", [_json_entry('{"user": {"name": "A"}}', "$.user.name")])],
        }
        result = await self._chain().execute_data_processing_chain(config)
        assert result.success is True
        assert result.component_data["s1"]["data"] == "A"
        assert result.is_empty is False

    @pytest.mark.asyncio
    async def test_two_items_array_merge(self):
        """两个 JSON 数据项过滤后按 array 合并"""
        config = {
            "componentId": "c1",
            "dataSources": [_source(
                "s1",
                [_json_entry('[{"x": 1}]', "$[0]"), _json_entry('[{"x": 2}]', "$[0]")],
                {"type": "array"},
            )],
        }
        result = await self._chain().execute_data_processing_chain(config)
        assert result.component_data["s1"]["data"] == [{"x": 1}, {"x": 2}]

    @pytest.mark.asyncio
    async def test_item_failure_is_isolated(self):
        """一个数据项获取抛异常，不影响其他数据源"""
        chain = self._chain()
        original = chain.fetcher.fetch_data

        async def _fetch(item):
            if item.type == "http":
                raise RuntimeError("network down")
            return await original(item)

        config = {
            "componentId": "c1",
            "dataSources": [
                _source("good", [_json_entry('{"a": 1}')]),
                _source("bad", [{"item": _http_item()}]),
            ],
        }
        with patch.object(chain.fetcher, "fetch_data", side_effect=_fetch):
            result = await chain.execute_data_processing_chain(config)
        assert result.success is True
        assert result.component_data["good"]["data"] == {"a": 1}
        assert result.component_data["bad"]["data"] == {}

    @pytest.mark.asyncio
    async def test_source_failure_is_isolated(self):
        chain = self._chain()
        original = chain.merger.merge_data_items

        async def _merge(items, strategy=None):
            if items == [{"broken": True}]:
                raise RuntimeError("merge failed")
            return await original(items, strategy)

        config = {
            "componentId": "c1",
            "dataSources": [
                _source("ok", [_json_entry('{"a": 1}')]),
                _source("broken", [_json_entry('{"broken": true}')]),
            ],
        }
        with patch.object(chain.merger, "merge_data_items", side_effect=_merge):
            result = await chain.execute_data_processing_chain(config)
        assert result.success is True
        assert result.component_data["ok"]["data"] == {"a": 1}
        broken = result.component_data["broken"]
        assert broken["data"] == {}
        assert broken["metadata"]["success"] is False
        assert broken["metadata"]["error"] == "merge failed"

    @pytest.mark.asyncio
    async def test_invalid_configuration_fails(self):
        result = await self._chain().execute_data_processing_chain({"componentId": "c1", "dataSources": "nope"})
        assert result.success is False
        assert result.error

    @pytest.mark.asyncio
    async def test_empty_result(self):
        result = await self._chain().execute_data_processing_chain({"componentId": "c1", "dataSources": []})
        assert result.success is True
        assert result.is_empty is True
        assert result.component_data == {}

    @pytest.mark.asyncio
    async def test_source_without_items_yields_empty_data(self):
        config = {"componentId": "c1", "dataSources": [_source("s1", [])]}
        result = await self._chain().execute_data_processing_chain(config)
        assert result.success is True
        source = result.component_data["s1"]
        assert source["data"] == {}
        assert source["metadata"]["success"] is True

    @pytest.mark.asyncio
    async def test_debug_state(self):
        config = {
            "componentId": "c1",
            "dataSources": [_source("s1", [_json_entry('{"a": {"b": 1}}', "a")])],
        }
        result = await self._chain().execute_data_processing_chain(config, debug_mode=True)
        stages = result.execution_state.stages
        assert stages.raw_data["s1_item_0"].data == {"a": {"b": 1}}
        assert stages.processed_data["s1_item_0"].data == {"b": 1}
        assert stages.merged_data["s1"].data == {"b": 1}
        assert stages.final_data.success is True
        plain = await self._chain().execute_data_processing_chain(config)
        assert plain.execution_state is None

    @pytest.mark.asyncio
    async def test_results_stored_in_warehouse(self):
        from widget_data_service.layers.cache import EnhancedDataWarehouse
        warehouse = EnhancedDataWarehouse()
        chain = self._chain(warehouse)
        config = {
            "componentId": "c1",
            "dataSources": [_source("s1", [_json_entry('{"a": 1}')])],
        }
        result = await chain.execute_data_processing_chain(config)
        assert warehouse.get_data_source_data("c1", "s1") == {"a": 1}
        assert warehouse.get_latest_version("c1").startswith(f"{result.started_at}-")

    @pytest.mark.asyncio
    async def test_failed_source_not_stored(self):
        from widget_data_service.layers.cache import EnhancedDataWarehouse
        warehouse = EnhancedDataWarehouse()
        chain = self._chain(warehouse)
        config = {
            "componentId": "c1",
            "dataSources": [_source("s1", [_json_entry('{"a": 1}')])],
        }
        with patch.object(chain.merger, "merge_data_items", side_effect=RuntimeError("boom")):
            await chain.execute_data_processing_chain(config)
        assert warehouse.get_data_source_data("c1", "s1") is None

    @pytest.mark.asyncio
    async def test_older_execution_does_not_overwrite(self):
        from widget_data_service.layers.cache import EnhancedDataWarehouse
        warehouse = EnhancedDataWarehouse()
        warehouse.store_component_data("c1", "s1", "newer", version_timestamp=10 ** 15)
        config = {
            "componentId": "c1",
            "dataSources": [_source("s1", [_json_entry('"older"')])],
        }
        await self._chain(warehouse).execute_data_processing_chain(config)
        assert warehouse.get_data_source_data("c1", "s1") == "newer"

    def test_validate_configuration(self):
        from widget_data_service.models.configuration import DataSourceConfiguration
        from widget_data_service.services.executor_chain import MultiLayerExecutorChain
        validate = MultiLayerExecutorChain.validate_configuration
        valid = {"componentId": "c1", "dataSources": [_source("s1", [])]}
        assert validate(valid)
        assert validate(DataSourceConfiguration.model_validate(valid))
        assert not validate({"dataSources": []})
        assert not validate({"componentId": "c1", "dataSources": [{"sourceId": "s1", "dataItems": []}]})
        assert not validate({"componentId": "c1", "dataSources": [{"sourceId": "s1", "dataItems": {},
                                                                   "mergeStrategy": {"type": "object"}}]})
        assert not validate("c1")

    def test_chain_statistics(self):
        from widget_data_service.services.executor_chain import MultiLayerExecutorChain
        stats = MultiLayerExecutorChain.get_chain_statistics()
        assert "http" in stats["supportedDataTypes"]
        assert "select" in stats["supportedMergeStrategies"]


# ─────────────────────────────────────────────────────────
# 7. 组件数据服务测试
# ─────────────────────────────────────────────────────────

class TestComponentDataService:
    def _service(self, response=None):
        from widget_data_service.services.component_data_service import build_component_data_service
        transport = _fake_transport(response or {"temp": 21})
        return build_component_data_service(transport=transport, dedup_ttl=0), transport

    def _register(self, svc):
        svc.config_store.set_properties("panel", base={"deviceId": "d-1"})
        svc.config_store.set_data_source_configuration("panel", {
            "dataSources": [_source("s1", [{"item": _http_item(
                url="https://api.example.com/devices/{deviceId}",
                pathParams=[{"key": "deviceId", "value": "panel.base.deviceId", "isDynamic": True}],
            )}])],
        })

    @pytest.mark.asyncio
    async def test_cache_aside(self):
        svc, transport = self._service()
        self._register(svc)
        assert await svc.get_component_data("panel") == {"s1": {"temp": 21}}
        assert await svc.get_component_data("panel") == {"s1": {"temp": 21}}
        assert transport.get.await_count == 1
        await svc.get_component_data("panel", force_refresh=True)
        assert transport.get.await_count == 2

    @pytest.mark.asyncio
    async def test_property_change_triggers_fresh_request(self):
        svc, transport = self._service()
        self._register(svc)
        await svc.get_component_data("panel")
        svc.config_store.set_properties("panel", base={"deviceId": "d-2"})
        await svc.get_component_data("panel")
        assert transport.get.await_args.args[0] == "https://api.example.com/devices/d-2"

    @pytest.mark.asyncio
    async def test_legacy_format(self):
        svc, _ = self._service()
        self._register(svc)
        data = await svc.get_component_data("panel", data_format="legacy")
        assert data["rawDataSources"]["dataSourceBindings"]["s1"]["rawData"] == '{"temp": 21}'

    @pytest.mark.asyncio
    async def test_unknown_component_and_format(self):
        svc, _ = self._service()
        assert await svc.get_component_data("nobody") is None
        with pytest.raises(ValueError):
            await svc.get_component_data("panel", data_format="xml")

    @pytest.mark.asyncio
    async def test_chain_failure_raises(self):
        from widget_data_service.models.results import ExecutionResult
        from widget_data_service.services.component_data_service import ComponentExecutionError
        svc, _ = self._service()
        self._register(svc)
        failed = ExecutionResult(success=False, error="crashed")
        with patch.object(svc.chain, "execute_data_processing_chain", AsyncMock(return_value=failed)):
            with pytest.raises(ComponentExecutionError):
                await svc.get_component_data("panel")

    @pytest.mark.asyncio
    async def test_subscribers_notified_on_execution(self):
        svc, _ = self._service()
        self._register(svc)
        seen = []
        svc.subscribe("panel", lambda cid, version: seen.append(cid))
        await svc.get_component_data("panel")
        assert seen == ["panel"]

    @pytest.mark.asyncio
    async def test_close(self):
        svc, transport = self._service()
        await svc.close()
        transport.close.assert_awaited_once()
