from .dynamodb_broadcast_service import DynamoDbBroadcastService
from .in_memory_broadcast_service import (
    InMemoryBroadcastConnection,
    InMemoryBroadcastHub,
)

__all__ = [
    "DynamoDbBroadcastService",
    "InMemoryBroadcastConnection",
    "InMemoryBroadcastHub",
]
