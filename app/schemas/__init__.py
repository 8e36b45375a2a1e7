"""
app.schemas
~~~~~~~~~~~
Pydantic schemas for the REST API and the signaling wire protocol.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.signaling import (
    ListenerInfo,
    OutboundMessage,
    RoomInfoData,
    SignalingEnvelope,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
