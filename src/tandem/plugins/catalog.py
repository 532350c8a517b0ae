from typing import Iterable

from tandem.plugins.api import Plugin
from tandem.services.storage import LocalStorage


class PluginCatalog:
    def __init__(self, storage: LocalStorage, plugins: Iterable[Plugin] = ()):
        self.storage = storage
        self.plugins: dict[str, Plugin] = {}
        for plugin in plugins:
            self.register(plugin)

    def register(self, plugin: Plugin) -> None:
        self.plugins[plugin.name] = plugin

    def list_names(self) -> list[str]:
        return sorted(self.plugins.keys())

    def enabled_names(self) -> list[str]:
        return self.storage.get_enabled_plugins() or []

    def enabled_plugins(self) -> list[Plugin]:
        enabled = set(self.enabled_names())
        return [plugin for name, plugin in self.plugins.items() if name in enabled]

    async def set_enabled(self, names: Iterable[str]) -> list[str]:
        names = list(names)
        unknown = [name for name in names if name not in self.plugins]
        if unknown:
            raise ValueError(f"Unknown plugins: {', '.join(sorted(unknown))}")
        enabled = sorted(set(names))
        await self.storage.set_enabled_plugins(enabled)
        return enabled
