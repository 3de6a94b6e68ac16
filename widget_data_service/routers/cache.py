"""
缓存管理路由
GET  /api/cache/stats     - 数据仓库统计
POST /api/cache/clear     - 清理缓存（全部 / 组件 / 单个数据源）
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from widget_data_service.models.response import ApiResponse
from widget_data_service.routers.components import get_component_data_service
from widget_data_service.services.component_data_service import ComponentDataService

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(BaseModel):
    component_id: Optional[str] = None
    source_id: Optional[str] = None


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(svc: ComponentDataService = Depends(get_component_data_service)):
    """获取数据仓库存储统计与性能指标"""
    warehouse = svc.warehouse
    return ApiResponse.ok(
        data={
            "storage": warehouse.get_storage_stats(),
            "metrics": warehouse.get_performance_metrics().model_dump(),
        }
    )


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(
    body: Optional[ClearRequest] = None,
    svc: ComponentDataService = Depends(get_component_data_service),
):
    """不带参数清理全部；只给 component_id 清理组件；同时给 source_id 只清理该数据源"""
    body = body or ClearRequest()
    warehouse = svc.warehouse
    if body.source_id and not body.component_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="清理数据源缓存需要同时提供 component_id",
        )
    if body.component_id and body.source_id:
        warehouse.clear_data_source_cache(body.component_id, body.source_id)
        return ApiResponse.ok(message=f"缓存已清理: {body.component_id}:{body.source_id}")
    if body.component_id:
        warehouse.clear_component_cache(body.component_id)
        return ApiResponse.ok(message=f"缓存已清理: {body.component_id}")
    warehouse.clear_all_cache()
    return ApiResponse.ok(message="缓存已全部清理")
