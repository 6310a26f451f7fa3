from .client import UpstreamClient, UpstreamStream
from .metrics import RelayMetrics
from .relay import StreamRelay
from .server import RelayState, create_app

__all__ = [
    "create_app",
    "RelayState",
    "RelayMetrics",
    "StreamRelay",
    "UpstreamClient",
    "UpstreamStream",
]
