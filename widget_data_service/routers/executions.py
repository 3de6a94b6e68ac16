"""
执行路由
POST /api/executions  - 执行一份数据源配置（?debug=true 返回四阶段执行轨迹）
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from widget_data_service.models.response import ApiResponse
from widget_data_service.routers.components import get_component_data_service
from widget_data_service.services.component_data_service import ComponentDataService

router = APIRouter(prefix="/api/executions", tags=["执行链"])


@router.post("", response_model=ApiResponse)
async def execute_configuration(
    payload: Dict[str, Any] = Body(...),
    debug: bool = Query(default=False, description="记录调试轨迹"),
    svc: ComponentDataService = Depends(get_component_data_service),
):
    """执行数据源配置并返回组件数据"""
    if not svc.chain.validate_configuration(payload):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="数据源配置无效")
    result = await svc.execute_component(payload, debug=debug)
    return ApiResponse.from_execution(result)
