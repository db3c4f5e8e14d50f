"""Provider registry for runtime control plane selection.

Provides decorator-based registration and factory function for providers.
"""

from typing import TYPE_CHECKING, Any, Optional

from sitestack.core.exceptions import ConfigurationError

if TYPE_CHECKING:
    from sitestack.providers.base import Provider


_providers: dict[str, type["Provider"]] = {}


def register_provider(name: str):
    """Decorator to register a provider class.

    Args:
        name: Value of ``provider.name`` in documents.

    Returns:
        Decorator function that registers the class.

    Example:
        @register_provider("memory")
        class MemoryProvider(Provider):
            ...
    """

    def decorator(cls: type["Provider"]):
        cls.name = name
        _providers[name] = cls
        return cls

    return decorator


def get_provider(name: str, config: Optional[dict[str, Any]] = None) -> "Provider":
    """Factory function to get a provider instance.

    Args:
        name: Registered provider name.
        config: Provider options.

    Returns:
        Instantiated provider.

    Raises:
        ConfigurationError: If the provider is not registered.
    """
    _load_builtin_providers()
    if name not in _providers:
        raise ConfigurationError(f"Unknown provider: {name}", "provider.name")
    return _providers[name](config)


def list_providers() -> list[str]:
    """List all registered provider names."""
    _load_builtin_providers()
    return sorted(_providers)


def _load_builtin_providers() -> None:
    # Importing registers them
    import sitestack.providers.aws  # noqa: F401
    import sitestack.providers.memory  # noqa: F401
