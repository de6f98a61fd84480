from samlflow.providers.registry import ProviderRegistry

__all__ = ["ProviderRegistry"]
