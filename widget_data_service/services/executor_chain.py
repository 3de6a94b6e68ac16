"""
多层执行链
串联四层：数据项获取 → 数据项处理 → 数据源合并 → 多数据源整合，
并可选把每个成功数据源的结果写入数据仓库。
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Union

from widget_data_service import __version__
from widget_data_service.layers.acquisition import DataItemFetcher
from widget_data_service.layers.cache import EnhancedDataWarehouse
from widget_data_service.layers.integration import MultiSourceIntegrator
from widget_data_service.layers.merging import DataSourceMerger
from widget_data_service.layers.processing import DataItemProcessor
from widget_data_service.models.configuration import DataSourceConfiguration, DataSourceSpec
from widget_data_service.models.results import (
    DataSourceResult,
    ExecutionResult,
    ExecutionState,
    StageRecord,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _has_content(data: Any) -> bool:
    if data is None:
        return False
    if isinstance(data, (dict, list, str)):
        return len(data) > 0
    return True


def _stage(data: Any) -> StageRecord:
    return StageRecord(data=data, timestamp=_now_ms(), success=_has_content(data))


class MultiLayerExecutorChain:
    """组件数据执行链"""

    def __init__(
        self,
        fetcher: Optional[DataItemFetcher] = None,
        processor: Optional[DataItemProcessor] = None,
        merger: Optional[DataSourceMerger] = None,
        integrator: Optional[MultiSourceIntegrator] = None,
        warehouse: Optional[EnhancedDataWarehouse] = None,
    ):
        self.fetcher = fetcher or DataItemFetcher()
        self.processor = processor or DataItemProcessor()
        self.merger = merger or DataSourceMerger()
        self.integrator = integrator or MultiSourceIntegrator()
        self.warehouse = warehouse

    async def execute_data_processing_chain(
        self,
        config: Union[DataSourceConfiguration, Dict[str, Any]],
        debug_mode: bool = False,
    ) -> ExecutionResult:
        """
        执行完整的数据处理链

        单个数据项、单个数据源的失败都被隔离，不影响整体 success；
        只有逃逸出所有隔离边界的异常才返回 success=False。
        """
        started_at = _now_ms()
        start = time.perf_counter()
        component_id = config.get("componentId", "") if isinstance(config, dict) else config.component_id

        try:
            if not isinstance(config, DataSourceConfiguration):
                config = DataSourceConfiguration.model_validate(config)
            component_id = config.component_id

            state = ExecutionState(component_id=component_id) if debug_mode else None
            self.fetcher.set_current_component_id(component_id)

            # 数据源按顺序发起，全部结束后再整合
            results: List[DataSourceResult] = await asyncio.gather(
                *(self._process_data_source(spec, state) for spec in config.data_sources)
            )

            component_data = await self.integrator.integrate_data_sources(results, component_id)

            if self.warehouse is not None:
                self._store_results(component_id, results, started_at)

            if state is not None:
                state.stages.final_data = _stage(component_data)
                state.last_executed = _now_ms()

            elapsed = int((time.perf_counter() - start) * 1000)
            logger.debug(f"组件 {component_id} 执行完成: {len(results)} 个数据源, {elapsed}ms")
            return ExecutionResult(
                success=True,
                component_data=component_data,
                execution_time=elapsed,
                timestamp=_now_ms(),
                started_at=started_at,
                execution_state=state,
                is_empty=not component_data,
            )
        except Exception as exc:
            logger.error(f"组件 {component_id} 执行链失败: {exc}")
            return ExecutionResult(
                success=False,
                error=str(exc),
                execution_time=int((time.perf_counter() - start) * 1000),
                timestamp=_now_ms(),
                started_at=started_at,
            )

    async def _process_data_source(
        self,
        spec: DataSourceSpec,
        state: Optional[ExecutionState],
    ) -> DataSourceResult:
        source_type = self._source_type(spec)
        try:
            processed: List[Any] = []
            for index, entry in enumerate(spec.data_items):
                item_key = f"{spec.source_id}_item_{index}"
                try:
                    raw = await self.fetcher.fetch_data(entry.item)
                    if state is not None:
                        state.stages.raw_data[item_key] = _stage(raw)
                    value = await self.processor.process_data(raw, entry.processing)
                    if state is not None:
                        state.stages.processed_data[item_key] = _stage(value)
                except Exception as exc:
                    logger.warning(f"数据项 {item_key} 处理失败: {exc}")
                    value = {}
                processed.append(value)

            merged = await self.merger.merge_data_items(processed, spec.merge_strategy)
            if state is not None:
                state.stages.merged_data[spec.source_id] = _stage(merged)

            return DataSourceResult(source_id=spec.source_id, type=source_type, data=merged, success=True)
        except Exception as exc:
            logger.warning(f"数据源 {spec.source_id} 执行失败: {exc}")
            return DataSourceResult(
                source_id=spec.source_id, type=source_type, data={}, success=False, error=str(exc)
            )

    @staticmethod
    def _source_type(spec: DataSourceSpec) -> str:
        types = {entry.item.type for entry in spec.data_items}
        if len(types) == 1:
            return types.pop()
        return "mixed" if types else "unknown"

    def _store_results(self, component_id: str, results: List[DataSourceResult], started_at: int) -> None:
        for result in results:
            if not (result.success and result.source_id):
                continue
            accepted = self.warehouse.store_component_data(
                component_id,
                result.source_id,
                result.data,
                source_type=result.type,
                version_timestamp=started_at,
            )
            if not accepted:
                logger.debug(f"组件 {component_id} 数据源 {result.source_id} 的结果已过期，未写入仓库")

    # ── 辅助 ──────────────────────────────────────────────

    @staticmethod
    def validate_configuration(config: Any) -> bool:
        """结构检查：组件 ID、数据源列表、每个数据源的 ID / 数据项列表 / 合并策略"""
        if isinstance(config, DataSourceConfiguration):
            if not config.component_id:
                return False
            return all(ds.source_id and ds.merge_strategy is not None for ds in config.data_sources)

        if not isinstance(config, dict):
            return False
        component_id = config.get("componentId", config.get("component_id"))
        data_sources = config.get("dataSources", config.get("data_sources"))
        if not component_id or not isinstance(data_sources, list):
            return False
        for ds in data_sources:
            if not isinstance(ds, dict):
                return False
            source_id = ds.get("sourceId", ds.get("source_id"))
            items = ds.get("dataItems", ds.get("data_items"))
            strategy = ds.get("mergeStrategy", ds.get("merge_strategy"))
            if not source_id or not isinstance(items, list) or not strategy:
                return False
        return True

    @staticmethod
    def get_chain_statistics() -> Dict[str, Any]:
        return {
            "version": __version__,
            "supportedDataTypes": ["json", "http", "websocket", "script"],
            "supportedMergeStrategies": ["object", "array", "select", "script"],
            "features": [
                "JSONPath 数据过滤",
                "自定义脚本处理",
                "多种合并策略",
                "调试模式四阶段追踪",
                "请求去重",
                "数据仓库版本控制",
            ],
        }
