"""
组件路由
PUT /api/components/{component_id}/configuration  - 登记数据源配置
PUT /api/components/{component_id}/properties     - 更新组件属性（base / component 层）
GET /api/components/{component_id}/data           - 获取组件数据（缓存优先）
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from widget_data_service.models.response import ApiResponse
from widget_data_service.services.component_data_service import (
    ComponentDataService,
    ComponentExecutionError,
)

router = APIRouter(prefix="/api/components", tags=["组件数据"])


def get_component_data_service(request: Request) -> ComponentDataService:
    """从应用状态中取组件数据服务"""
    return request.app.state.component_data_service


class PropertiesUpdate(BaseModel):
    base: Optional[Dict[str, Any]] = None
    component: Optional[Dict[str, Any]] = None
    replace: bool = False


@router.put("/{component_id}/configuration", response_model=ApiResponse)
async def register_configuration(
    component_id: str,
    payload: Dict[str, Any] = Body(...),
    svc: ComponentDataService = Depends(get_component_data_service),
):
    """登记组件的数据源配置，已缓存的数据随之失效"""
    payload = {**payload, "componentId": component_id}
    if not svc.chain.validate_configuration(payload):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="数据源配置无效")
    try:
        config = svc.config_store.set_data_source_configuration(component_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return ApiResponse.ok(
        data=config.model_dump(by_alias=True),
        message=f"组件 {component_id} 数据源配置已更新",
    )


@router.put("/{component_id}/properties", response_model=ApiResponse)
async def update_properties(
    component_id: str,
    body: PropertiesUpdate,
    svc: ComponentDataService = Depends(get_component_data_service),
):
    """更新组件属性，供 HTTP 参数绑定读取"""
    properties = svc.config_store.set_properties(
        component_id, base=body.base, component=body.component, replace=body.replace
    )
    return ApiResponse.ok(data=properties, message=f"组件 {component_id} 属性已更新")


@router.get("/{component_id}/data", response_model=ApiResponse)
async def get_component_data(
    component_id: str,
    format: str = Query(default="flat", pattern="^(flat|legacy)$", description="flat / legacy"),
    force_refresh: bool = Query(default=False),
    svc: ComponentDataService = Depends(get_component_data_service),
):
    """获取组件数据：缓存命中直接返回，否则按已登记的配置执行"""
    try:
        data = await svc.get_component_data(component_id, data_format=format, force_refresh=force_refresh)
    except ComponentExecutionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))

    if data is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"组件 {component_id} 未登记数据源配置",
        )
    return ApiResponse.ok(data=data)
