"""健康检查路由"""

import time
from pathlib import Path

from fastapi import APIRouter, Request

from widget_data_service import __version__

router = APIRouter(tags=["健康检查"])


def _read_version() -> str:
    try:
        vf = Path(__file__).parent.parent.parent / "VERSION"
        if vf.exists():
            return vf.read_text(encoding="utf-8").strip()
    except OSError:
        pass
    return __version__


@router.get("/health")
async def health(request: Request):
    """服务健康检查"""
    svc = getattr(request.app.state, "component_data_service", None)
    warehouse = None
    if svc is not None:
        metrics = svc.warehouse.get_performance_metrics()
        warehouse = {
            "components": metrics.component_count,
            "items": metrics.item_count,
            "memoryUsageMB": round(metrics.memory_usage, 3),
        }
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": _read_version(),
            "timestamp": int(time.time()),
            "service": "Widget DataService",
            "warehouse": warehouse,
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request):
    """Kubernetes readiness probe"""
    return {"ready": getattr(request.app.state, "component_data_service", None) is not None}
