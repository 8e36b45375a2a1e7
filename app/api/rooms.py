"""
app.api.rooms
~~~~~~~~~~~~~

房间查询 REST 接口（只读）。

路由前缀 ``/api``，房间的创建与加入只能通过信令 WebSocket 完成。

端点:
  - ``GET  /rooms``               → 获取当前所有房间
  - ``GET  /rooms/{room_code}``   → 获取房间详情（房间码大小写不敏感）
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_registry
from app.core.exceptions import RoomNotFoundError
from app.core.rate_limit import limiter
from app.schemas.api_response import ApiResponse
from app.schemas.signaling import RoomInfoData
from app.services.registry import RoomRegistry

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, registry: RoomRegistry = Depends(get_registry)):
    """返回注册表中所有房间（含保留期内的无人房间）的摘要。"""
    return ApiResponse.ok(data=registry.list_rooms())


@router.get("/rooms/{room_code}", summary="获取房间详情", response_model=ApiResponse[RoomInfoData])
@limiter.limit("5/second")
async def room_info(request: Request, room_code: str, registry: RoomRegistry = Depends(get_registry)):
    """返回指定房间的详细信息。

    Args:
        room_code: 房间码。
    """
    try:
        room = registry.require_room(room_code)
    except RoomNotFoundError as e:
        return JSONResponse(
            status_code=404,
            content=ApiResponse.fail(msg=str(e), code=404).model_dump(),
        )
    return ApiResponse.ok(data=room.info())
