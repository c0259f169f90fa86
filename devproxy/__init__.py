"""
A development front door: static single-page app plus backend proxy with mock fallback.
"""

from .server import ProxyServer
from .handler import RequestHandler
from .proxy import BackendProxy, BackendTransport, ProxyState
from .health import HealthMonitor, LivenessState
from .mock import MockResponseGenerator
from .router import RequestRouter, Route
from .files import FileStore
from .models import HTTPRequest, HTTPResponse
from .config import ProxyConfig

__version__ = "0.1.0"

__all__ = [
    'ProxyServer', 'RequestHandler', 'BackendProxy', 'BackendTransport', 'ProxyState',
    'HealthMonitor', 'LivenessState', 'MockResponseGenerator', 'RequestRouter', 'Route',
    'FileStore', 'HTTPRequest', 'HTTPResponse', 'ProxyConfig'
]
