"""探测引擎模块"""

from .base import BaseProbeEngine
from .factory import ProbeEngineFactory, probe_engine_factory, register_probe_engine
from .http_probe import HttpProbeEngine
from .tcp_probe import TcpProbeEngine

__all__ = ['BaseProbeEngine', 'ProbeEngineFactory', 'probe_engine_factory',
           'register_probe_engine', 'TcpProbeEngine', 'HttpProbeEngine']
