from fastapi import Request

from app.services.registry import RoomRegistry


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry
