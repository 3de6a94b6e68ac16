"""执行结果与调试状态模型"""

from typing import Any, Dict, Optional

from pydantic import Field

from widget_data_service.models.configuration import CamelModel

# sourceId -> {type, data, lastUpdated, metadata}
ComponentData = Dict[str, Dict[str, Any]]


class DataSourceResult(CamelModel):
    """单个数据源合并后的结果"""

    source_id: str = ""
    type: str = "unknown"
    data: Any = None
    success: bool = True
    error: Optional[str] = None


class StageRecord(CamelModel):
    data: Any = None
    timestamp: int = 0
    success: bool = False


class ExecutionStages(CamelModel):
    # 第一层：原始数据（按 itemId）
    raw_data: Dict[str, StageRecord] = Field(default_factory=dict)
    # 第二层：处理后数据（按 itemId）
    processed_data: Dict[str, StageRecord] = Field(default_factory=dict)
    # 第三层：数据源合并结果（按 sourceId）
    merged_data: Dict[str, StageRecord] = Field(default_factory=dict)
    # 第四层：组件最终数据
    final_data: Optional[StageRecord] = None


class ExecutionState(CamelModel):
    """调试模式下的四阶段执行轨迹"""

    component_id: str
    stages: ExecutionStages = Field(default_factory=ExecutionStages)
    debug_mode: bool = True
    last_executed: int = 0


class ExecutionResult(CamelModel):
    success: bool
    component_data: Optional[ComponentData] = None
    error: Optional[str] = None
    execution_time: int = 0   # 毫秒
    timestamp: int = 0
    started_at: int = 0       # 本次执行开始时间，作为仓库写入版本
    execution_state: Optional[ExecutionState] = None
    is_empty: Optional[bool] = None
