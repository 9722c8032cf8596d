"""分布式健康探测代理"""

__version__ = "1.0.0"
