from functools import wraps
from typing import Callable


def async_cached(key_builder: Callable[..., str], model, ttl: int | None = None):
    """
    Cache-aside decorator for async service methods.

    The service instance must expose ``self.cache`` (a CacheLayer).
    key_builder receives the method's args/kwargs without ``self``.
    The wrapped method returns a pydantic model (or None); the cached JSON
    is validated back into ``model`` on the way out.

    Example:
      @async_cached(lambda task_id: f"task:{task_id}", TaskResponse, ttl=3600)
      async def get_task(self, task_id): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            key = key_builder(*args, **kwargs)

            # loader closure calls the original function
            async def loader():
                value = await fn(self, *args, **kwargs)
                if value is None:
                    return None
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json")
                return value

            data = await self.cache.get_or_load(key, loader, ttl=ttl)
            if data is None:
                return None
            return model.model_validate(data)

        return wrapper

    return decorator


def async_cached_expire(*key_builders: Callable[..., str]):
    """Delete the built keys once the wrapped write has returned."""

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            result = await fn(self, *args, **kwargs)
            for key_builder in key_builders:
                await self.cache.delete(key_builder(*args, **kwargs))
            return result

        return wrapper

    return decorator
