"""
Layer 4 – 多数据源整合层
把各数据源的合并结果整合为组件数据 ComponentData，并提供格式转换与统计。
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from widget_data_service.models.results import ComponentData, DataSourceResult

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class MultiSourceIntegrator:
    """多数据源整合层"""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock

    async def integrate_data_sources(
        self,
        sources: List[Union[DataSourceResult, Dict[str, Any]]],
        component_id: str,
    ) -> ComponentData:
        """
        整合数据源结果

        每个带 sourceId 的数据源生成一条记录；失败的数据源 data 为 {}，
        metadata 中记录 success / error。没有任何数据源时返回 {}。
        """
        try:
            result: ComponentData = {}
            timestamp = self._clock()
            processed_at = datetime.now(timezone.utc).isoformat()

            for source in sources:
                if isinstance(source, dict):
                    source = DataSourceResult.model_validate(source)
                if not source.source_id:
                    continue
                result[source.source_id] = {
                    "type": source.type or "unknown",
                    "data": source.data if source.success else {},
                    "lastUpdated": timestamp,
                    "metadata": {
                        "componentId": component_id,
                        "success": source.success,
                        "error": source.error,
                        "processedAt": processed_at,
                    },
                }
            return result
        except Exception as exc:
            logger.warning(f"组件 {component_id} 数据源整合失败: {exc}")
            return {}

    @staticmethod
    def validate_data_source_result(source: Any) -> bool:
        if isinstance(source, DataSourceResult):
            return bool(source.source_id)
        return isinstance(source, dict) and bool(source.get("sourceId")) and "type" in source

    @staticmethod
    def get_data_statistics(component_data: ComponentData) -> Dict[str, int]:
        entries = list(component_data.values())
        failed = [e for e in entries if (e.get("metadata") or {}).get("success") is False]
        return {
            "totalSources": len(entries),
            "successfulSources": len(entries) - len(failed),
            "failedSources": len(failed),
            "lastUpdated": max([e.get("lastUpdated", 0) for e in entries] + [0]),
        }

    @staticmethod
    def is_valid_component_data(component_data: Any) -> bool:
        if not isinstance(component_data, dict) or not component_data:
            return False
        for entry in component_data.values():
            if not isinstance(entry, dict):
                return False
            if not isinstance(entry.get("type"), str):
                return False
            last_updated = entry.get("lastUpdated")
            if not isinstance(last_updated, (int, float)) or isinstance(last_updated, bool):
                return False
            if "data" not in entry:
                return False
        return True

    @staticmethod
    def merge_component_data(existing: ComponentData, updates: ComponentData) -> ComponentData:
        """按 lastUpdated 合并，较新的记录覆盖较旧的"""
        result = dict(existing)
        for source_id, entry in updates.items():
            current = result.get(source_id)
            if current is None or current.get("lastUpdated", 0) < entry.get("lastUpdated", 0):
                result[source_id] = entry
        return result

    def cleanup_expired_data(self, component_data: ComponentData, max_age: float = 300.0) -> ComponentData:
        """丢弃超过 max_age 秒未更新的数据源"""
        now = self._clock()
        max_age_ms = max_age * 1000
        return {
            source_id: entry
            for source_id, entry in component_data.items()
            if now - entry.get("lastUpdated", 0) <= max_age_ms
        }

    @staticmethod
    def to_flat_format(component_data: ComponentData) -> Dict[str, Any]:
        """sourceId -> data"""
        return {source_id: entry.get("data") for source_id, entry in component_data.items()}

    @staticmethod
    def to_legacy_envelope_format(component_data: ComponentData) -> Dict[str, Any]:
        """旧版组件使用的字符串信封格式"""
        return {
            "rawDataSources": {
                "dataSourceBindings": {
                    source_id: {"rawData": json.dumps(entry.get("data"), ensure_ascii=False, default=str)}
                    for source_id, entry in component_data.items()
                }
            }
        }


_integrator: Optional[MultiSourceIntegrator] = None


def get_multi_source_integrator() -> MultiSourceIntegrator:
    global _integrator
    if _integrator is None:
        _integrator = MultiSourceIntegrator()
    return _integrator
