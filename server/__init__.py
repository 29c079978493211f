"""
ZIM Cache Server Module

HTTP surface, shared state and the ingestion pipeline for the archive cache.
"""

from .zim_server import router
from .local_config import get_local_config, LocalConfig
from .state import ServerState

__all__ = ['router', 'get_local_config', 'LocalConfig', 'ServerState']
