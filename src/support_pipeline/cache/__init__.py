"""In-process caches."""

from support_pipeline.cache.image_cache import ImageCache, get_image_cache

__all__ = ["ImageCache", "get_image_cache"]
