"""
Llamadas con timeout acotado
============================

Embedder e índice vectorial se invocan a través de este helper para que
ninguna operación bloquee el motor indefinidamente.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional, TypeVar

from tempera.errors import StoreUnavailable, TemperaError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="tempera-io")


def call_with_timeout(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    what: str = "operación",
    on_late: Optional[Callable[[], None]] = None,
    **kwargs: Any
) -> T:
    """
    Ejecutar `func` con un timeout.

    El hilo de trabajo no puede interrumpirse: si se excede el timeout la
    llamada sigue en curso. `on_late` se ejecuta cuando esa llamada
    abandonada termina (o enseguida, si se canceló antes de empezar), para
    que quien llama pueda compensar sus efectos.

    Raises:
        StoreUnavailable: si se excede el timeout o falla la dependencia
        TemperaError: los errores propios del motor se propagan tal cual
    """
    future = _executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        if on_late is not None:
            future.add_done_callback(lambda _: _run_late(on_late, what))
        logger.warning(f"Timeout de {timeout:.1f}s en {what}")
        raise StoreUnavailable(f"Timeout de {timeout:.1f}s en {what}") from None
    except TemperaError:
        raise
    except Exception as e:
        logger.error(f"Error en {what}: {e}")
        raise StoreUnavailable(f"{what} falló: {e}") from e


def _run_late(callback: Callable[[], None], what: str) -> None:
    try:
        callback()
    except Exception as e:
        logger.error(f"No se pudo compensar {what} tras el timeout: {e}")
