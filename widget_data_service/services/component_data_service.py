"""
组件数据服务
缓存优先的组件数据读取：数据仓库 → 执行链（使用已登记的数据源配置）→ 回填仓库
"""

import logging
from typing import Any, Callable, Dict, Optional, Union

from widget_data_service.clients import HttpTransport
from widget_data_service.config import settings
from widget_data_service.layers.acquisition import DataItemFetcher
from widget_data_service.layers.cache import EnhancedDataWarehouse
from widget_data_service.layers.integration import MultiSourceIntegrator
from widget_data_service.layers.merging import DataSourceMerger
from widget_data_service.layers.processing import DataItemProcessor
from widget_data_service.models.configuration import DataSourceConfiguration
from widget_data_service.models.results import ExecutionResult
from widget_data_service.models.storage import DataWarehouseConfig
from widget_data_service.services.configuration_store import ConfigurationStore
from widget_data_service.services.executor_chain import MultiLayerExecutorChain
from widget_data_service.services.script_engine import ScriptEngine

logger = logging.getLogger(__name__)

DATA_FORMATS = ("flat", "legacy")


class ComponentExecutionError(Exception):
    """执行链整体失败"""


class ComponentDataService:
    """组件数据服务：串联配置存储、执行链和数据仓库"""

    def __init__(
        self,
        chain: MultiLayerExecutorChain,
        warehouse: EnhancedDataWarehouse,
        config_store: ConfigurationStore,
        transport: Optional[HttpTransport] = None,
    ):
        self.chain = chain
        self.warehouse = warehouse
        self.config_store = config_store
        self.transport = transport

    async def execute_component(
        self,
        config: Union[DataSourceConfiguration, Dict[str, Any]],
        debug: bool = False,
    ) -> ExecutionResult:
        """直接执行一份数据源配置（结果写入仓库）"""
        return await self.chain.execute_data_processing_chain(config, debug_mode=debug)

    async def get_component_data(
        self,
        component_id: str,
        data_format: str = "flat",
        force_refresh: bool = False,
    ) -> Optional[Any]:
        """
        获取组件数据

        Args:
            data_format: flat（sourceId -> data）或 legacy（字符串信封格式）
            force_refresh: 跳过缓存，重新执行

        Returns:
            组件数据；组件没有登记数据源配置时返回 None

        Raises:
            ValueError: 不支持的格式
            ComponentExecutionError: 执行链失败
        """
        if data_format not in DATA_FORMATS:
            raise ValueError(f"不支持的数据格式: {data_format}")

        if not force_refresh:
            cached = self._read_cache(component_id, data_format)
            if cached is not None:
                logger.debug(f"缓存命中: {component_id}")
                return cached

        config = self.config_store.get_data_source_configuration(component_id)
        if config is None:
            return None

        result = await self.chain.execute_data_processing_chain(config)
        if not result.success:
            raise ComponentExecutionError(result.error or "执行链失败")

        fresh = self._read_cache(component_id, data_format)
        if fresh is not None:
            return fresh

        # 所有数据源都失败或结果被更新的执行覆盖时，直接返回本次结果
        component_data = result.component_data or {}
        integrator = self.chain.integrator
        if data_format == "legacy":
            return integrator.to_legacy_envelope_format(component_data)
        return integrator.to_flat_format(component_data)

    def _read_cache(self, component_id: str, data_format: str) -> Optional[Any]:
        if data_format == "legacy":
            sources = {}
            for source_id in self.warehouse.list_data_sources(component_id):
                data = self.warehouse.get_data_source_data(component_id, source_id)
                if data is not None:
                    sources[source_id] = {"data": data}
            if not sources:
                return None
            return self.chain.integrator.to_legacy_envelope_format(sources)
        return self.warehouse.get_component_data(component_id)

    def subscribe(self, component_id: str, callback: Callable[[str, int], None]) -> Callable[[], None]:
        return self.warehouse.subscribe(component_id, callback)

    async def close(self) -> None:
        await self.warehouse.destroy()
        if self.transport is not None:
            await self.transport.close()


def build_component_data_service(
    transport: Optional[HttpTransport] = None,
    warehouse: Optional[EnhancedDataWarehouse] = None,
    script_engine: Optional[ScriptEngine] = None,
    dedup_ttl: Optional[float] = None,
) -> ComponentDataService:
    """按当前配置组装服务（仓库、配置存储、传输、执行链）"""
    if warehouse is None:
        warehouse = EnhancedDataWarehouse(
            DataWarehouseConfig(
                default_cache_expiry=settings.WAREHOUSE_DEFAULT_EXPIRY,
                max_memory_usage=settings.WAREHOUSE_MAX_MEMORY_MB,
                cleanup_interval=settings.WAREHOUSE_CLEANUP_INTERVAL,
                max_storage_items=settings.WAREHOUSE_MAX_ITEMS,
                enable_performance_monitoring=settings.WAREHOUSE_ENABLE_METRICS,
            )
        )
    if transport is None:
        transport = HttpTransport()

    config_store = ConfigurationStore(warehouse)
    chain = MultiLayerExecutorChain(
        fetcher=DataItemFetcher(
            transport=transport,
            property_store=config_store,
            script_engine=script_engine,
            dedup_ttl=dedup_ttl,
        ),
        processor=DataItemProcessor(script_engine),
        merger=DataSourceMerger(script_engine),
        integrator=MultiSourceIntegrator(),
        warehouse=warehouse,
    )
    return ComponentDataService(chain, warehouse, config_store, transport)
