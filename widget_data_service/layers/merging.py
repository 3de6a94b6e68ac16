"""
Layer 3 – 数据源合并层
把一个数据源下多个数据项的处理结果合并为该数据源的最终值。
策略：object（浅合并）/ array（拼接）/ select（按下标选择）/ script（自定义脚本）
"""

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import TypeAdapter

from widget_data_service.models.configuration import (
    ArrayMergeStrategy,
    MergeStrategy,
    ObjectMergeStrategy,
    ScriptMergeStrategy,
    SelectMergeStrategy,
)
from widget_data_service.services.script_engine import ScriptEngine, get_script_engine

logger = logging.getLogger(__name__)

_STRATEGY_ADAPTER: TypeAdapter = TypeAdapter(MergeStrategy)


class DataSourceMerger:
    """数据源合并层"""

    def __init__(self, script_engine: Optional[ScriptEngine] = None):
        self._script_engine = script_engine or get_script_engine()

    async def merge_data_items(
        self,
        items: List[Any],
        strategy: Union[MergeStrategy, Dict[str, Any], None] = None,
    ) -> Any:
        """按策略合并数据项，永不抛出；空列表返回 {}，未给策略按 object 处理"""
        if not items:
            return {}
        try:
            if strategy is None:
                strategy = ObjectMergeStrategy()
            elif isinstance(strategy, dict):
                strategy = _STRATEGY_ADAPTER.validate_python(strategy)

            if strategy.type == "object":
                return self._merge_as_object(items)
            if strategy.type == "array":
                return self._merge_as_array(items)
            if strategy.type == "select":
                return self._select(items, strategy.selected_index)
            if strategy.type == "script":
                return await self._merge_by_script(items, strategy.script)
            return {}
        except Exception as exc:
            logger.warning(f"数据项合并失败: {exc}")
            return {}

    @staticmethod
    def _merge_as_object(items: List[Any]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for index, item in enumerate(items):
            if item is None:
                continue
            if isinstance(item, dict):
                merged.update(item)
            else:
                merged[f"item_{index}"] = item
        return merged

    @staticmethod
    def _merge_as_array(items: List[Any]) -> List[Any]:
        merged: List[Any] = []
        for item in items:
            if item is None:
                continue
            if isinstance(item, list):
                merged.extend(item)
            else:
                merged.append(item)
        return merged

    @staticmethod
    def _select(items: List[Any], selected_index: Optional[int]) -> Any:
        index = selected_index if selected_index is not None else 0
        if 0 <= index < len(items):
            return items[index]
        first = items[0]
        return first if first is not None else {}

    async def _merge_by_script(self, items: List[Any], script: str) -> Any:
        result = await self._script_engine.execute(script, {"items": items})
        if not result.success:
            logger.warning(f"合并脚本执行失败: {result.error}")
            return {}
        return result.data if result.data is not None else {}

    # ── 辅助 ──────────────────────────────────────────────

    @staticmethod
    def validate_merge_strategy(strategy: Any) -> bool:
        """策略结构检查"""
        if strategy is None:
            return False
        try:
            parsed = strategy if not isinstance(strategy, dict) else _STRATEGY_ADAPTER.validate_python(strategy)
        except Exception:
            return False
        if isinstance(parsed, SelectMergeStrategy):
            return parsed.selected_index is None or parsed.selected_index >= 0
        if isinstance(parsed, ScriptMergeStrategy):
            return bool(parsed.script and parsed.script.strip())
        return isinstance(parsed, (ObjectMergeStrategy, ArrayMergeStrategy))

    @staticmethod
    def get_recommended_strategy(items: List[Any]) -> MergeStrategy:
        """根据数据项形态推荐策略：全是列表 → array，全是对象 → object，其余选第一个"""
        present = [item for item in items if item is not None]
        if len(present) <= 1:
            return SelectMergeStrategy(selected_index=0)
        if all(isinstance(item, list) for item in present):
            return ArrayMergeStrategy()
        if all(isinstance(item, dict) for item in present):
            return ObjectMergeStrategy()
        return SelectMergeStrategy(selected_index=0)


_merger: Optional[DataSourceMerger] = None


def get_data_source_merger() -> DataSourceMerger:
    global _merger
    if _merger is None:
        _merger = DataSourceMerger()
    return _merger
