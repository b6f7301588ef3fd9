"""
Observabilidad con Langfuse v3
==============================

Una traza por operación del motor:
1. 📥 Capturar Episodio
2. 🔍 Recuperar Episodios
3. 🔄 Mantenimiento (feedback, propagación, revisión)

Configuración via .env:
  - LANGFUSE_PUBLIC_KEY
  - LANGFUSE_SECRET_KEY
  - LANGFUSE_HOST (opcional)
"""

import logging
import os
import sys
from functools import wraps

from langfuse import Langfuse

# Importar config primero para cargar .env
from tempera.config import get_settings  # noqa: F401 - asegura que .env esté cargado

# Silenciar warnings molestos de Langfuse ("Calling end() on an ended span")
logging.getLogger("langfuse").setLevel(logging.ERROR)

logger = logging.getLogger(__name__)

__all__ = ["traced", "flush_traces"]

# Cliente Langfuse singleton
_langfuse_client = None


def _is_disabled() -> bool:
    """Verificar si Langfuse está deshabilitado (tests o credenciales vacías)."""
    if "pytest" in sys.modules:
        return True
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return True
    if not os.environ.get("LANGFUSE_PUBLIC_KEY"):
        return True
    return False


def _get_langfuse():
    """Obtener cliente Langfuse singleton."""
    global _langfuse_client
    if _langfuse_client is None and not _is_disabled():
        try:
            _langfuse_client = Langfuse()
        except Exception as e:
            logger.warning(f"Langfuse no disponible, trazas desactivadas: {e}")
    return _langfuse_client


def flush_traces():
    """Forzar envío de trazas pendientes."""
    client = _get_langfuse()
    if client:
        try:
            client.flush()
        except Exception as e:
            logger.warning(f"No se pudieron enviar trazas: {e}")


def _summarize(result) -> dict:
    """Salida compacta para la traza."""
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json", exclude={"embedding"})
    if isinstance(result, list):
        return {"count": len(result), "ids": [getattr(r, "id", None) for r in result[:10]]}
    if isinstance(result, dict):
        return {k: str(v) for k, v in result.items()}
    return {"result": str(result)[:500]}


def traced(name: str):
    """
    Decorador para trazar una operación del motor.
    Captura: kwargs de entrada → salida resumida (o el error).
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if _is_disabled():
                return func(*args, **kwargs)

            client = _get_langfuse()
            if not client:
                return func(*args, **kwargs)

            span_input = {k: str(v)[:500] for k, v in kwargs.items()}
            project = kwargs.get("project") or "all"

            try:
                with client.start_as_current_span(
                    name=name,
                    input=span_input,
                    metadata={"project": project, "operation": func.__name__}
                ) as span:
                    result = func(*args, **kwargs)
                    span.update(output=_summarize(result))
                    return result
            except Exception as e:
                with client.start_as_current_span(
                    name=f"{name} - ERROR",
                    input=span_input,
                    level="ERROR"
                ) as span:
                    span.update(output={"error": str(e)}, status_message=str(e))
                raise
            finally:
                client.flush()

        return wrapper
    return decorator
