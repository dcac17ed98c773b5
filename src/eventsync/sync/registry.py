"""Provider registry: ``ProviderType`` to adapter factory."""

from __future__ import annotations

import importlib
import inspect
import logging
import pkgutil
from collections.abc import Callable

import eventsync.providers
from eventsync.providers.base import ProviderContext, SyncProvider
from eventsync.sync.errors import UnknownProviderError
from eventsync.sync.types import ProviderType

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderContext], SyncProvider]


def default_registry() -> ProviderRegistry:
    """Create a ProviderRegistry pre-populated with all built-in adapters.

    Discovers every concrete ``SyncProvider`` subclass in the
    ``eventsync.providers`` package by walking its modules and inspecting
    their members.
    """
    registry = ProviderRegistry()
    package = eventsync.providers
    for _importer, modname, _ispkg in pkgutil.walk_packages(
        package.__path__, prefix=package.__name__ + "."
    ):
        mod = importlib.import_module(modname)
        for _name, obj in inspect.getmembers(mod, inspect.isclass):
            if (
                issubclass(obj, SyncProvider)
                and obj is not SyncProvider
                and not inspect.isabstract(obj)
                and obj.__module__ == mod.__name__
            ):
                registry.register(obj)
    return registry


class ProviderRegistry:
    """Maps provider types to factories building a fresh adapter per pass."""

    def __init__(self) -> None:
        self._factories: dict[ProviderType, ProviderFactory] = {}

    def register(
        self,
        factory: type[SyncProvider] | ProviderFactory,
        *,
        provider_type: ProviderType | str | None = None,
        replace: bool = False,
    ) -> None:
        """Register *factory* for *provider_type*.

        ``provider_type`` defaults to the class attribute of a ``SyncProvider``
        subclass.  Raises ``ValueError`` when the type is already registered
        and *replace* is false.
        """
        if provider_type is None:
            provider_type = getattr(factory, "provider_type", None)
            if provider_type is None:
                raise ValueError(f"Cannot infer provider type for {factory!r}")
        key = ProviderType(provider_type)
        if key in self._factories and not replace:
            raise ValueError(f"Provider '{key}' is already registered")
        self._factories[key] = factory

    @property
    def available_types(self) -> list[str]:
        return sorted(str(key) for key in self._factories)

    def is_registered(self, provider_type: ProviderType | str) -> bool:
        try:
            return ProviderType(provider_type) in self._factories
        except ValueError:
            return False

    def create(self, provider_type: ProviderType | str, context: ProviderContext) -> SyncProvider:
        """Build a new adapter for *provider_type*.

        Raises
        ------
        UnknownProviderError
            If nothing is registered for the type.
        """
        try:
            factory = self._factories[ProviderType(provider_type)]
        except (ValueError, KeyError):
            raise UnknownProviderError(str(provider_type)) from None
        return factory(context)
