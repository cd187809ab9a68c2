from .cache import ReadThroughCache, build_cache_backend, build_cache_key

__all__ = [
    "ReadThroughCache",
    "build_cache_backend",
    "build_cache_key",
]
