from tandem.plugins.api import (
    Plugin,
    PluginFunction,
    PluginFunctionDescriptor,
    PluginRunResult,
    choose_data_sources,
    run_plugin_functions,
)
from tandem.plugins.catalog import PluginCatalog

__all__ = [
    "Plugin",
    "PluginCatalog",
    "PluginFunction",
    "PluginFunctionDescriptor",
    "PluginRunResult",
    "choose_data_sources",
    "run_plugin_functions",
]
