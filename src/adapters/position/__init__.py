from .push_position_source import PushPositionSource
from .replay_position_source import ReplayPositionSource

__all__ = ["PushPositionSource", "ReplayPositionSource"]
