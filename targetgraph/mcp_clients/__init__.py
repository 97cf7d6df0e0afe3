"""
MCP Client Layer

Source clients speaking MCP JSON-RPC over HTTP with REST fallbacks.
"""

from .base import MCPHttpClient, SourceClient, parse_possible_json
from .opentargets_client import OpenTargetsClient
from .reactome_client import ReactomeClient
from .string_client import STRINGClient
from .chembl_client import ChEMBLClient
from .biomcp_client import BioMCPClient

__all__ = [
    'MCPHttpClient',
    'SourceClient',
    'parse_possible_json',
    'OpenTargetsClient',
    'ReactomeClient',
    'STRINGClient',
    'ChEMBLClient',
    'BioMCPClient',
]
