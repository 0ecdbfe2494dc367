from .connectivity import (
    ConnectivityMonitor,
    ConnectivityStatus,
    ReachabilityProbe,
    TransportKind,
)

__all__ = [
    'ConnectivityMonitor',
    'ConnectivityStatus',
    'ReachabilityProbe',
    'TransportKind',
]
