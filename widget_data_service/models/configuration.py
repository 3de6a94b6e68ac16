"""
数据源配置模型
由外部配置管理器提供，JSON 字段采用 camelCase，Python 侧使用 snake_case
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """camelCase 别名基类，两种字段名都可用于构造"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ── HTTP 参数 ─────────────────────────────────────────────

class HttpParameter(CamelModel):
    """HTTP 参数（路径 / 查询 / 请求头统一结构）"""

    key: str = ""
    value: Any = None
    default_value: Any = None
    enabled: bool = True
    is_dynamic: bool = False
    data_type: Literal["string", "number", "boolean", "json"] = "string"
    variable_name: str = ""
    description: str = ""
    param_type: Literal["path", "query", "header"] = "query"
    value_mode: Optional[str] = None
    selected_template: Optional[str] = None


# ── 数据项配置 ────────────────────────────────────────────

class JsonDataItemConfig(CamelModel):
    json_string: str = ""


class HttpDataItemConfig(CamelModel):
    url: str = ""
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers: Union[Dict[str, str], List[HttpParameter]] = Field(default_factory=dict)
    body: Any = None
    timeout: Optional[int] = None  # 毫秒

    # 地址类型：internal 使用内部 API 前缀
    address_type: Literal["internal", "external"] = "external"
    selected_internal_address: Optional[str] = None
    enable_params: bool = False

    path_params: List[HttpParameter] = Field(default_factory=list)
    path_parameter: Optional[HttpParameter] = None
    params: List[HttpParameter] = Field(default_factory=list)
    # 旧版统一参数体系，按 param_type 分发
    parameters: List[HttpParameter] = Field(default_factory=list)

    pre_request_script: Optional[str] = None
    post_response_script: Optional[str] = None

    def iter_parameters(self) -> List[HttpParameter]:
        """收集所有参数（用于绑定路径校验）"""
        collected = list(self.path_params)
        if self.path_parameter is not None:
            collected.append(self.path_parameter)
        collected.extend(self.params)
        collected.extend(self.parameters)
        if isinstance(self.headers, list):
            collected.extend(self.headers)
        return collected


class WebSocketDataItemConfig(CamelModel):
    url: str = ""
    protocols: List[str] = Field(default_factory=list)
    reconnect_interval: Optional[int] = None


class ScriptDataItemConfig(CamelModel):
    script: str = ""
    context: Dict[str, Any] = Field(default_factory=dict)


class JsonDataItem(CamelModel):
    type: Literal["json"] = "json"
    config: JsonDataItemConfig


class HttpDataItem(CamelModel):
    type: Literal["http"] = "http"
    config: HttpDataItemConfig


class WebSocketDataItem(CamelModel):
    type: Literal["websocket"] = "websocket"
    config: WebSocketDataItemConfig


class ScriptDataItem(CamelModel):
    type: Literal["script"] = "script"
    config: ScriptDataItemConfig


DataItem = Annotated[
    Union[JsonDataItem, HttpDataItem, WebSocketDataItem, ScriptDataItem],
    Field(discriminator="type"),
]


# ── 处理与合并 ────────────────────────────────────────────

class ProcessingConfig(CamelModel):
    """数据项处理配置：JSONPath 过滤 + 自定义脚本 + 默认值"""

    filter_path: str = "$"
    custom_script: Optional[str] = None
    default_value: Any = None


class ObjectMergeStrategy(CamelModel):
    type: Literal["object"] = "object"


class ArrayMergeStrategy(CamelModel):
    type: Literal["array"] = "array"


class SelectMergeStrategy(CamelModel):
    type: Literal["select"] = "select"
    selected_index: Optional[int] = None


class ScriptMergeStrategy(CamelModel):
    type: Literal["script"] = "script"
    script: str = ""


MergeStrategy = Annotated[
    Union[ObjectMergeStrategy, ArrayMergeStrategy, SelectMergeStrategy, ScriptMergeStrategy],
    Field(discriminator="type"),
]


# ── 数据源配置 ────────────────────────────────────────────

class DataItemEntry(CamelModel):
    item: DataItem
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)


class DataSourceSpec(CamelModel):
    source_id: str = ""
    data_items: List[DataItemEntry] = Field(default_factory=list)
    merge_strategy: Optional[MergeStrategy] = None


class DataSourceConfiguration(CamelModel):
    """一次执行的输入单元"""

    component_id: str = ""
    data_sources: List[DataSourceSpec] = Field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0
