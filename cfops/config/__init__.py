from .schema import (
    CfopsConfig,
    HostingConfig,
    LoggingConfig,
    PluginsConfig,
    load_config,
)

__all__ = [
    "CfopsConfig",
    "HostingConfig",
    "LoggingConfig",
    "PluginsConfig",
    "load_config",
]
