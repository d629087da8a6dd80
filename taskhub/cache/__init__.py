from taskhub.cache.layer import CacheLayer

__all__ = ["CacheLayer"]
