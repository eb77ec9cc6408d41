"""
Destination registry.

Resolves a destination id to a freshly built Destination. Destinations are
rebuilt from stored settings on every resolve, so no mutable provider state
is shared between callers. A resolved destination is a context manager;
leaving it closes the HTTP client its provider opened.

Override hooks run after the built-in factory, in registration order:

    hook(provided, destination_id) -> Destination | None

Each hook receives what the previous step produced and returns the
destination to use; returning None disables the id. Tests use hooks to
inject fakes.
"""

import logging
from typing import Callable, Dict, List, Optional

from .engine import Destination
from .errors import NotFound
from .providers import PROVIDERS
from .settings import DestinationSettingsStore
from .transport import DEFAULT_TIMEOUT


logger = logging.getLogger(__name__)

Factory = Callable[[], Destination]
OverrideHook = Callable[[Optional[Destination], str], Optional[Destination]]


def build_destination(destination_id: str, settings: Dict, clock: Optional[Callable[[], float]] = None,
                      transport=None, timeout: float = DEFAULT_TIMEOUT,
                      max_chunk_retries: int = 3) -> Destination:
    """
    Build a Destination for a known provider id.

    Raises:
        NotFound: If the id is not a known provider
    """
    provider_factory = PROVIDERS.get(destination_id)
    if provider_factory is None:
        raise NotFound(f"Unknown destination: {destination_id}")

    settings = dict(settings or {})
    settings.setdefault('timeout', timeout)
    provider = provider_factory(settings, transport=transport, clock=clock)
    name = settings.get('name') or provider.label or destination_id
    return Destination(destination_id, name, provider, clock=clock, max_chunk_retries=max_chunk_retries)


class DestinationRegistry:
    """Maps destination ids to factories, with override hooks."""

    def __init__(self):
        self._factories: Dict[str, Factory] = {}
        self._overrides: List[OverrideHook] = []

    @classmethod
    def from_settings(cls, settings_store: DestinationSettingsStore, clock=None,
                      timeout: float = DEFAULT_TIMEOUT, max_chunk_retries: int = 3,
                      enabled_ids: Optional[List[str]] = None) -> 'DestinationRegistry':
        """Registry with one factory per provider, built from stored settings."""
        registry = cls()
        for destination_id in enabled_ids or list(PROVIDERS):
            if destination_id not in PROVIDERS:
                logger.warning(f"Ignoring unknown destination id in configuration: {destination_id}")
                continue

            def factory(destination_id=destination_id):
                return build_destination(
                    destination_id,
                    settings_store.get(destination_id),
                    clock=clock,
                    timeout=timeout,
                    max_chunk_retries=max_chunk_retries,
                )

            registry.register(destination_id, factory)
        return registry

    def register(self, destination_id: str, factory: Factory):
        self._factories[destination_id] = factory

    def add_override(self, hook: OverrideHook):
        self._overrides.append(hook)

    def remove_override(self, hook: OverrideHook):
        if hook in self._overrides:
            self._overrides.remove(hook)

    @property
    def known_ids(self) -> List[str]:
        return list(self._factories)

    def resolve(self, destination_id: str) -> Destination:
        """
        Resolve a destination id.

        Raises:
            NotFound: If no factory or override provides the destination
        """
        factory = self._factories.get(destination_id)
        provided = factory() if factory else None

        for hook in self._overrides:
            provided = hook(provided, destination_id)

        if provided is None:
            raise NotFound(f"Destination not available: {destination_id}")
        return provided

    def connected(self) -> List[Destination]:
        """
        Every registered destination whose credentials are present.

        The caller owns the returned destinations and closes them.
        """
        destinations = []
        for destination_id in self.known_ids:
            try:
                destination = self.resolve(destination_id)
            except NotFound:
                continue
            if destination.connected:
                destinations.append(destination)
            else:
                destination.close()
        return destinations
