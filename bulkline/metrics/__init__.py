from .registry import REGISTRY_METRICS

__all__ = ["REGISTRY_METRICS"]
