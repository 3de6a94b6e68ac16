"""
Layer 2 – 数据处理层
对单个数据项的原始数据做路径过滤、自定义脚本处理和默认值兜底。
"""

import logging
import re
from typing import Any, Dict, List, Optional, Union

from widget_data_service.models.configuration import ProcessingConfig
from widget_data_service.services.script_engine import ScriptEngine, get_script_engine

logger = logging.getLogger(__name__)

# $.a.b[0] / a.b / a[0][1]
_FILTER_PATH_RE = re.compile(
    r"^\$?(?:\.?[\w-]+|\[\d+\])*$"
)
_TOKEN_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")

_MISSING = object()


def _tokenize(path: str) -> List[Union[str, int]]:
    """$.list[0].name -> ["list", 0, "name"]"""
    trimmed = path.strip()
    if trimmed.startswith("$"):
        trimmed = trimmed[1:]
    tokens: List[Union[str, int]] = []
    for name, index in _TOKEN_RE.findall(trimmed):
        tokens.append(int(index) if index else name)
    return tokens


def _is_blank(data: Any) -> bool:
    return data is None or (isinstance(data, dict) and not data)


class DataItemProcessor:
    """数据处理层：路径过滤 + 自定义脚本 + 默认值"""

    def __init__(self, script_engine: Optional[ScriptEngine] = None):
        self._script_engine = script_engine or get_script_engine()

    async def process_data(
        self,
        raw_data: Any,
        config: Union[ProcessingConfig, Dict[str, Any], None] = None,
    ) -> Any:
        """
        处理单个数据项的原始数据

        Args:
            raw_data: 获取层返回的原始数据
            config: 过滤路径 / 自定义脚本 / 默认值

        Returns:
            处理后的数据；结果为 None 时返回 default_value（未配置时为 {}）
        """
        if config is None:
            config = ProcessingConfig()
        elif not isinstance(config, ProcessingConfig):
            config = ProcessingConfig.model_validate(config)
        fallback = config.default_value if config.default_value is not None else {}

        if _is_blank(raw_data):
            return fallback

        try:
            processed = self.apply_filter_path(raw_data, config.filter_path)

            if config.custom_script:
                result = await self._script_engine.execute(config.custom_script, {"data": processed})
                if result.success and result.data is not None:
                    processed = result.data
                elif not result.success:
                    logger.warning(f"处理脚本执行失败，保留过滤结果: {result.error}")
        except Exception as exc:
            logger.warning(f"数据处理失败: {exc}")
            return fallback

        return fallback if processed is None else processed

    @staticmethod
    def apply_filter_path(data: Any, path: Optional[str]) -> Any:
        """按 JSONPath 风格路径取值；空路径或 $ 原样返回，找不到返回 None"""
        if not path or not path.strip() or path.strip() == "$":
            return data

        current = data
        for token in _tokenize(path):
            current = DataItemProcessor._step(current, token)
            if current is _MISSING:
                return None
        return current

    @staticmethod
    def _step(current: Any, token: Union[str, int]) -> Any:
        # $.list.0.name 与 $.list[0].name 等价
        if isinstance(token, str) and token.isdigit() and isinstance(current, list):
            token = int(token)
        if isinstance(token, int):
            if isinstance(current, list) and 0 <= token < len(current):
                return current[token]
            return _MISSING
        if isinstance(current, dict) and token in current:
            return current[token]
        return _MISSING

    @staticmethod
    def validate_filter_path(path: Optional[str]) -> bool:
        """过滤路径语法检查（空路径视为有效）"""
        if path is None or not path.strip():
            return True
        return bool(_FILTER_PATH_RE.match(path.strip()))


_processor: Optional[DataItemProcessor] = None


def get_data_item_processor() -> DataItemProcessor:
    global _processor
    if _processor is None:
        _processor = DataItemProcessor()
    return _processor
