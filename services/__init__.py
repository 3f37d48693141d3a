# Services package (channel, reconciliation, assignment, metrics, client facade)

from .assignment import AssignmentCoordinator, AssignmentResult
from .backend import Credentials, InMemoryBackend, OrderBackend, PullResult
from .metrics import DashboardMetrics, MetricsAggregator
from .overlays import Overlay, OverlayRegistry
from .reconciler import ReconcileReport, ReconciliationEngine
from .sync_channel import ChannelHub, SyncChannel
from .sync_client import EffectiveView, OrderSyncClient

__all__ = [
    'AssignmentCoordinator',
    'AssignmentResult',
    'ChannelHub',
    'Credentials',
    'DashboardMetrics',
    'EffectiveView',
    'InMemoryBackend',
    'MetricsAggregator',
    'OrderBackend',
    'OrderSyncClient',
    'Overlay',
    'OverlayRegistry',
    'PullResult',
    'ReconcileReport',
    'ReconciliationEngine',
    'SyncChannel',
]
