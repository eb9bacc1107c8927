from .registry import ProviderSet, load_providers

__all__ = ["ProviderSet", "load_providers"]
