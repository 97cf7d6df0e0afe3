"""
Core Pipeline Components

Graph store, bridge analysis, ranking, source management and the run
lifecycle for the TargetGraph evidence pipeline. Heavier components are
imported from their modules (``core.orchestrator``, ``core.run_context``,
``core.source_manager``) so the resolver and source clients can depend on
``core`` without import cycles.
"""

from .config import Config, get_config
from .exceptions import TargetGraphException
from .graph_store import GraphStore, make_edge_id, make_node_id, sankey_rows

__all__ = [
    'Config',
    'get_config',
    'TargetGraphException',
    'GraphStore',
    'make_edge_id',
    'make_node_id',
    'sankey_rows',
]
