"""
配置存储服务
  - 组件属性（base 层 / component 层），供 HTTP 参数绑定路径解析时只读查询
  - 组件数据源配置登记；配置变化时调用数据仓库的失效钩子，保证不会返回旧配置的合并结果
"""

import copy
import logging
import time
from typing import Any, Dict, List, Optional, Union

from widget_data_service.layers.cache import EnhancedDataWarehouse
from widget_data_service.models.configuration import DataSourceConfiguration

logger = logging.getLogger(__name__)


class ConfigurationStore:
    """内存配置存储"""

    def __init__(self, warehouse: Optional[EnhancedDataWarehouse] = None):
        self._warehouse = warehouse
        self._properties: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._data_source_configs: Dict[str, DataSourceConfiguration] = {}

    # ── 属性（参数绑定读取） ──────────────────────────────

    async def get_configuration(self, component_id: str) -> Optional[Dict[str, Dict[str, Any]]]:
        """返回 {"base": {...}, "component": {...}}，组件不存在返回 None"""
        entry = self._properties.get(component_id)
        if entry is None:
            return None
        return copy.deepcopy(entry)

    def set_properties(
        self,
        component_id: str,
        base: Optional[Dict[str, Any]] = None,
        component: Optional[Dict[str, Any]] = None,
        replace: bool = False,
    ) -> Dict[str, Dict[str, Any]]:
        """
        更新组件属性

        Args:
            replace: True 时整体替换对应层，否则浅合并
        """
        entry = self._properties.setdefault(component_id, {"base": {}, "component": {}})
        for layer, values in (("base", base), ("component", component)):
            if values is None:
                continue
            if replace:
                entry[layer] = dict(values)
            else:
                entry[layer].update(values)

        # 属性可能被本组件的动态参数引用，已缓存的数据不再可信
        self._invalidate(component_id, reason="属性变更")
        return copy.deepcopy(entry)

    # ── 数据源配置 ────────────────────────────────────────

    def set_data_source_configuration(
        self,
        component_id: str,
        config: Union[DataSourceConfiguration, Dict[str, Any]],
    ) -> DataSourceConfiguration:
        if not isinstance(config, DataSourceConfiguration):
            config = DataSourceConfiguration.model_validate(config)
        now = int(time.time() * 1000)
        previous = self._data_source_configs.get(component_id)
        config = config.model_copy(update={
            "component_id": component_id,
            "created_at": config.created_at or (previous.created_at if previous else now),
            "updated_at": now,
        })
        self._data_source_configs[component_id] = config
        self._invalidate(component_id, reason="数据源配置变更")
        return config

    def get_data_source_configuration(self, component_id: str) -> Optional[DataSourceConfiguration]:
        return self._data_source_configs.get(component_id)

    def remove_component(self, component_id: str) -> None:
        self._properties.pop(component_id, None)
        self._data_source_configs.pop(component_id, None)
        self._invalidate(component_id, reason="组件移除")

    def list_components(self) -> List[str]:
        return sorted(set(self._properties) | set(self._data_source_configs))

    def _invalidate(self, component_id: str, reason: str) -> None:
        if self._warehouse is not None:
            self._warehouse.clear_component_cache(component_id)
            logger.debug(f"组件 {component_id} 缓存已失效（{reason}）")
