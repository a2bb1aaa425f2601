from typing import Tuple, Type, Callable, Optional
from functools import wraps
import asyncio
import logging

logger = logging.getLogger(__name__)


def retry_async(
        attempts: Optional[Callable[..., int]] = None,
        delay: Optional[Callable[..., float]] = None,
        exceptions: Tuple[Type[BaseException], ...] = (Exception,)
):
    """
    Décorateur de retry pour les coroutines de méthodes.

    attempts / delay sont des callables évalués sur l'instance (self) à chaque appel,
    pour que la politique suive la configuration du composant. Seules les exceptions
    dont l'attribut `retryable` n'est pas False sont rejouées.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            max_attempts = max(1, attempts(self) if attempts else 1)
            wait = delay(self) if delay else 0.0

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(self, *args, **kwargs)
                except exceptions as e:
                    if not getattr(e, "retryable", True) or attempt == max_attempts:
                        raise
                    logger.warning(
                        f"{func.__qualname__}: tentative {attempt}/{max_attempts} échouée ({e}), "
                        f"nouvel essai dans {wait}s"
                    )
                    await asyncio.sleep(wait)

        return wrapper

    return decorator
