"""
Layer 5 – 数据仓库（缓存层）
按 (componentId, sourceId) 隔离存储组件数据：
  - TTL 过期 + 周期清理
  - 单调版本控制：较早开始的执行不会覆盖较晚开始且已落地的结果
  - 合并结果缓存，写入即失效
  - 内存超过上限 80% 时按 (访问次数, 最近访问时间) 升序淘汰
  - 组件级变更订阅，只通知对应组件
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from widget_data_service.models.storage import (
    ComponentDataStorage,
    DataStorageItem,
    DataWarehouseConfig,
    PerformanceMetrics,
    StorageSource,
)

logger = logging.getLogger(__name__)

_MERGED_SOURCE_ID = "*merged*"
_PRESSURE_RATIO = 0.8

ChangeCallback = Callable[[str, int], None]


class UnwrapRule(BaseModel):
    """历史数据源键的解包规则：命中 source_key 时返回 inner_path 处的数据，找不到则返回该源数据本身"""

    source_key: str
    inner_path: Tuple[str, ...] = ()


DEFAULT_UNWRAP_RULES: Tuple[UnwrapRule, ...] = (
    UnwrapRule(source_key="complete", inner_path=("deviceData", "data")),
)


def rolling_hash(text: str) -> str:
    """32 位滚动哈希（h * 31 + c），返回 36 进制字符串"""
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def _to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def _version_timestamp(version: str) -> int:
    head = version.split("-", 1)[0]
    try:
        return int(head)
    except ValueError:
        return 0


class EnhancedDataWarehouse:
    """组件数据仓库"""

    def __init__(
        self,
        config: Optional[DataWarehouseConfig] = None,
        unwrap_rules: Sequence[UnwrapRule] = DEFAULT_UNWRAP_RULES,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or DataWarehouseConfig()
        self._unwrap_rules = tuple(unwrap_rules)
        self._clock = clock

        self._storage: Dict[str, ComponentDataStorage] = {}
        self._latest_versions: Dict[str, str] = {}
        self._change_versions: Dict[str, int] = {}
        self._subscribers: Dict[str, List[ChangeCallback]] = {}

        self._metrics = PerformanceMetrics(last_cleanup_time=self._clock())
        self._cleanup_task: Optional[asyncio.Task] = None

    # ── 写入 ──────────────────────────────────────────────

    def store_component_data(
        self,
        component_id: str,
        source_id: str,
        data: Any,
        source_type: str = "unknown",
        custom_expiry: Optional[float] = None,
        version_timestamp: Optional[int] = None,
    ) -> bool:
        """
        存储某个数据源的数据

        Args:
            custom_expiry: 自定义过期时长（秒），默认使用配置
            version_timestamp: 版本时间戳（毫秒），通常为执行开始时间；默认当前时间

        Returns:
            是否被接受（版本过旧或超出容量时返回 False）
        """
        start = time.perf_counter()
        now = self._clock()
        ts = version_timestamp if version_timestamp is not None else int(now * 1000)
        version = f"{ts}-{self._content_hash(data)}"

        # 版本检查与写入之间不能有 await
        if not self._should_accept(component_id, ts):
            logger.debug(
                f"丢弃过期写入: {component_id}/{source_id} 版本 {version} "
                f"早于 {self._latest_versions.get(component_id)}"
            )
            return False

        size = self._calculate_size(data)
        if size / (1024 * 1024) > self.config.max_memory_usage:
            logger.warning(f"数据过大，拒绝写入: {component_id}/{source_id} ({size} bytes)")
            return False

        existing = self._storage.get(component_id)
        is_new_entry = existing is None or source_id not in existing.data_sources
        if is_new_entry and self._total_item_count() >= self.config.max_storage_items:
            self._evict_least_accessed(count=1)

        storage = self._storage.get(component_id)
        if storage is None:
            storage = ComponentDataStorage(component_id=component_id, created_at=now, updated_at=now)
            self._storage[component_id] = storage

        expiry = custom_expiry if custom_expiry is not None else self.config.default_cache_expiry
        storage.data_sources[source_id] = DataStorageItem(
            data=data,
            timestamp=now,
            expires_at=now + expiry,
            source=StorageSource(source_id=source_id, source_type=source_type, component_id=component_id),
            size=size,
            access_count=0,
            last_accessed=now,
            data_version=version,
            execution_id=f"{component_id}-{ts}-{uuid.uuid4().hex[:9]}",
        )
        storage.updated_at = now
        storage.merged_data = None
        self._latest_versions[component_id] = version

        if self._current_memory_mb() > self.config.max_memory_usage * _PRESSURE_RATIO:
            self._relieve_memory_pressure()

        self._notify(component_id)
        self._record_response((time.perf_counter() - start) * 1000)
        return True

    # ── 读取 ──────────────────────────────────────────────

    def get_component_data(self, component_id: str) -> Optional[Any]:
        """返回组件合并后的数据（sourceId -> data），无有效数据返回 None"""
        start = time.perf_counter()
        now = self._clock()
        storage = self._storage.get(component_id)
        if storage is None:
            self._record_response((time.perf_counter() - start) * 1000, cache_hit=False)
            return None

        merged = storage.merged_data
        if merged is not None and not self._is_expired(merged, now):
            merged.access_count += 1
            merged.last_accessed = now
            self._record_response((time.perf_counter() - start) * 1000, cache_hit=True)
            return merged.data

        component_data: Dict[str, Any] = {}
        earliest_expiry: Optional[float] = None
        for source_id, item in list(storage.data_sources.items()):
            if self._is_expired(item, now):
                del storage.data_sources[source_id]
                continue
            component_data[source_id] = item.data
            item.access_count += 1
            item.last_accessed = now
            if item.expires_at is not None:
                earliest_expiry = item.expires_at if earliest_expiry is None else min(earliest_expiry, item.expires_at)

        if not component_data:
            storage.merged_data = None
            self._record_response((time.perf_counter() - start) * 1000, cache_hit=False)
            return None

        final_data = self._apply_unwrap_rules(component_data)
        expires_at = now + self.config.default_cache_expiry
        if earliest_expiry is not None:
            expires_at = min(expires_at, earliest_expiry)
        storage.merged_data = DataStorageItem(
            data=final_data,
            timestamp=now,
            expires_at=expires_at,
            source=StorageSource(source_id=_MERGED_SOURCE_ID, source_type="merged", component_id=component_id),
            size=self._calculate_size(final_data),
            access_count=1,
            last_accessed=now,
        )
        self._record_response((time.perf_counter() - start) * 1000, cache_hit=True)
        return final_data

    def get_data_source_data(self, component_id: str, source_id: str) -> Optional[Any]:
        storage = self._storage.get(component_id)
        if storage is None:
            return None
        item = storage.data_sources.get(source_id)
        now = self._clock()
        if item is None or self._is_expired(item, now):
            if item is not None:
                del storage.data_sources[source_id]
                storage.merged_data = None
            return None
        item.access_count += 1
        item.last_accessed = now
        return item.data

    def list_data_sources(self, component_id: str) -> List[str]:
        storage = self._storage.get(component_id)
        return list(storage.data_sources) if storage else []

    def get_latest_version(self, component_id: str) -> Optional[str]:
        return self._latest_versions.get(component_id)

    # ── 失效 ──────────────────────────────────────────────

    def clear_component_cache(self, component_id: str) -> None:
        """
        清空组件全部缓存（配置变更时调用）

        同时把版本下限推进到当前时刻，变更前已开始的执行结果会被拒绝。
        """
        self._storage.pop(component_id, None)
        self._latest_versions[component_id] = f"{int(self._clock() * 1000)}-invalidated"
        self._notify(component_id)

    def clear_component_merged_cache(self, component_id: str) -> None:
        """只清合并结果缓存，不论是否存在都通知订阅者重新读取"""
        storage = self._storage.get(component_id)
        if storage is not None:
            storage.merged_data = None
        self._notify(component_id)

    def clear_data_source_cache(self, component_id: str, source_id: str) -> None:
        storage = self._storage.get(component_id)
        if storage is None:
            return
        if storage.data_sources.pop(source_id, None) is not None:
            storage.merged_data = None
            self._notify(component_id)

    def clear_all_cache(self) -> None:
        component_ids = list(self._storage)
        self._storage.clear()
        self._latest_versions.clear()
        for component_id in component_ids:
            self._notify(component_id)
        logger.info(f"数据仓库已清空（{len(component_ids)} 个组件）")

    def set_cache_expiry(self, seconds: float) -> None:
        self.config.default_cache_expiry = seconds

    # ── 订阅 ──────────────────────────────────────────────

    def subscribe(self, component_id: str, callback: ChangeCallback) -> Callable[[], None]:
        """
        订阅组件数据变化，回调参数为 (component_id, change_version)

        Returns:
            取消订阅函数
        """
        self._subscribers.setdefault(component_id, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(component_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[component_id]

        return _unsubscribe

    def get_change_version(self, component_id: str) -> int:
        return self._change_versions.get(component_id, 0)

    def _notify(self, component_id: str) -> None:
        version = self._change_versions.get(component_id, 0) + 1
        self._change_versions[component_id] = version
        for callback in list(self._subscribers.get(component_id, ())):
            try:
                callback(component_id, version)
            except Exception as exc:
                logger.warning(f"组件 {component_id} 变更回调失败: {exc}")

    # ── 清理 ──────────────────────────────────────────────

    def start_cleanup(self) -> None:
        """启动周期清理任务（需在事件循环内调用）"""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.perform_cleanup()
            except Exception as exc:
                logger.warning(f"数据仓库清理失败: {exc}")

    def perform_cleanup(self) -> Dict[str, int]:
        """执行一次清理：过期条目 + 内存压力淘汰"""
        now = self._clock()
        removed_items = 0
        removed_components = 0

        for component_id, storage in list(self._storage.items()):
            for source_id, item in list(storage.data_sources.items()):
                if self._is_expired(item, now):
                    del storage.data_sources[source_id]
                    storage.merged_data = None
                    removed_items += 1
            if storage.merged_data is not None and self._is_expired(storage.merged_data, now):
                storage.merged_data = None
                removed_items += 1
            if not storage.data_sources and storage.merged_data is None:
                del self._storage[component_id]
                removed_components += 1

        if self._current_memory_mb() > self.config.max_memory_usage * _PRESSURE_RATIO:
            removed_items += self._relieve_memory_pressure()

        self._metrics.last_cleanup_time = now
        if removed_items or removed_components:
            logger.debug(f"数据仓库清理完成: 移除 {removed_items} 条目, {removed_components} 个组件")
        return {"removed_items": removed_items, "removed_components": removed_components}

    async def destroy(self) -> None:
        """停止清理任务并清空数据"""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        self.clear_all_cache()
        self._subscribers.clear()

    def _relieve_memory_pressure(self) -> int:
        """淘汰访问最少的条目直到内存低于阈值"""
        removed = 0
        threshold = self.config.max_memory_usage * _PRESSURE_RATIO
        while self._current_memory_mb() > threshold:
            if not self._evict_least_accessed(count=1):
                break
            removed += 1
        if removed:
            logger.info(f"内存压力淘汰 {removed} 个数据源条目")
        return removed

    def _evict_least_accessed(self, count: int) -> int:
        candidates = self._least_accessed_items(count)
        for component_id, source_id in candidates:
            storage = self._storage.get(component_id)
            if storage is None:
                continue
            storage.data_sources.pop(source_id, None)
            storage.merged_data = None
            if not storage.data_sources:
                del self._storage[component_id]
            self._notify(component_id)
        return len(candidates)

    def _least_accessed_items(self, count: int) -> List[Tuple[str, str]]:
        entries = [
            (item.access_count, item.last_accessed, component_id, source_id)
            for component_id, storage in self._storage.items()
            for source_id, item in storage.data_sources.items()
        ]
        entries.sort(key=lambda e: (e[0], e[1]))
        return [(component_id, source_id) for _, _, component_id, source_id in entries[:count]]

    # ── 监控 ──────────────────────────────────────────────

    def get_performance_metrics(self) -> PerformanceMetrics:
        self._metrics.memory_usage = self._current_memory_mb()
        self._metrics.item_count = self._total_item_count()
        self._metrics.component_count = len(self._storage)
        return self._metrics.model_copy()

    def reset_performance_metrics(self) -> None:
        self._metrics = PerformanceMetrics(last_cleanup_time=self._clock())

    def get_storage_stats(self) -> Dict[str, Any]:
        total_items = 0
        total_size = 0
        component_stats: Dict[str, Any] = {}
        for component_id, storage in self._storage.items():
            size = sum(item.size for item in storage.data_sources.values())
            component_stats[component_id] = {
                "dataSourceCount": len(storage.data_sources),
                "totalSize": size,
                "createdAt": storage.created_at,
                "updatedAt": storage.updated_at,
            }
            total_items += len(storage.data_sources)
            total_size += size
        return {
            "totalComponents": len(self._storage),
            "totalDataSources": total_items,
            "totalSize": total_size,
            "memoryUsageMB": total_size / (1024 * 1024),
            "componentStats": component_stats,
            "config": self.config.model_dump(),
        }

    def _record_response(self, elapsed_ms: float, cache_hit: Optional[bool] = None) -> None:
        if not self.config.enable_performance_monitoring:
            return
        m = self._metrics
        m.average_response_time = (m.average_response_time + elapsed_ms) / 2
        if cache_hit is not None:
            if cache_hit:
                m.cache_hits += 1
            else:
                m.cache_misses += 1
            m.cache_hit_rate = m.cache_hits / (m.cache_hits + m.cache_misses)

    # ── 内部工具 ──────────────────────────────────────────

    def _should_accept(self, component_id: str, ts: int) -> bool:
        latest = self._latest_versions.get(component_id)
        if latest is None:
            return True
        return ts >= _version_timestamp(latest)

    def _apply_unwrap_rules(self, component_data: Dict[str, Any]) -> Any:
        for rule in self._unwrap_rules:
            payload = component_data.get(rule.source_key)
            if not payload:
                continue
            current: Any = payload
            for key in rule.inner_path:
                if isinstance(current, dict) and current.get(key) is not None:
                    current = current[key]
                else:
                    current = None
                    break
            return current if current is not None else payload
        return component_data

    @staticmethod
    def _is_expired(item: DataStorageItem, now: float) -> bool:
        return item.expires_at is not None and now > item.expires_at

    @staticmethod
    def _content_hash(data: Any) -> str:
        try:
            return rolling_hash(json.dumps(data, ensure_ascii=False, sort_keys=True, default=str))
        except (TypeError, ValueError):
            return uuid.uuid4().hex[:9]

    @staticmethod
    def _calculate_size(data: Any) -> int:
        """估算占用字节数（按 UTF-16 粗略计算）"""
        try:
            return len(json.dumps(data, ensure_ascii=False, default=str)) * 2
        except (TypeError, ValueError):
            return 1024

    def _current_memory_mb(self) -> float:
        total = 0
        for storage in self._storage.values():
            total += sum(item.size for item in storage.data_sources.values())
            if storage.merged_data is not None:
                total += storage.merged_data.size
        return total / (1024 * 1024)

    def _total_item_count(self) -> int:
        count = 0
        for storage in self._storage.values():
            count += len(storage.data_sources)
            if storage.merged_data is not None:
                count += 1
        return count
