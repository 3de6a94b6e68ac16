"""统一 API 响应模型"""

from typing import Any, Optional

from pydantic import BaseModel

from widget_data_service.models.results import ExecutionResult


class ApiResponse(BaseModel):
    """标准 API 响应封装"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)

    @classmethod
    def from_execution(cls, result: ExecutionResult) -> "ApiResponse":
        """执行链结果转为响应：链路崩溃才算失败，空数据仍然是成功"""
        payload = result.model_dump(by_alias=True, exclude_none=True)
        if result.success:
            message = "执行完成（无数据）" if result.is_empty else "执行完成"
            return cls(success=True, data=payload, message=message)
        return cls(success=False, data=payload, error=result.error, message="执行链失败")
