"""数据仓库内部存储模型"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class StorageSource(BaseModel):
    source_id: str
    source_type: str = "unknown"
    component_id: str


class DataStorageItem(BaseModel):
    """单个数据源的缓存条目，读取时会更新访问统计"""

    data: Any = None
    timestamp: float
    expires_at: Optional[float] = None
    source: StorageSource
    size: int = 0
    access_count: int = 0
    last_accessed: float = 0.0
    data_version: Optional[str] = None
    execution_id: Optional[str] = None


class ComponentDataStorage(BaseModel):
    component_id: str
    data_sources: Dict[str, DataStorageItem] = Field(default_factory=dict)
    merged_data: Optional[DataStorageItem] = None
    created_at: float
    updated_at: float


class DataWarehouseConfig(BaseModel):
    default_cache_expiry: float = 300.0      # 秒
    max_memory_usage: float = 100.0          # MB
    cleanup_interval: float = 60.0           # 秒
    max_storage_items: int = 1000
    enable_performance_monitoring: bool = True


class PerformanceMetrics(BaseModel):
    memory_usage: float = 0.0                # MB
    item_count: int = 0
    component_count: int = 0
    average_response_time: float = 0.0       # 毫秒
    cache_hit_rate: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    last_cleanup_time: float = 0.0
