"""
Servidor MCP para Tempera
=========================

Implementa el Model Context Protocol para exponer las siete
operaciones del motor de memoria a agentes compatibles.
"""

import asyncio
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
    CallToolResult,
)

from tempera.engine import MemoryEngine
from tempera.errors import TemperaError
from tempera.models import Episode, Outcome, TaskType
from tempera.observability import flush_traces

# Configurar logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("tempera.mcp")

# Tiempo máximo para pasadas batch antes de cancelarlas
BATCH_TIMEOUT_SECONDS = 120.0


def _detect_project_name() -> Optional[str]:
    """
    Detecta automáticamente el nombre del proyecto basándose en el CWD.

    Estrategia:
    1. Obtener el directorio de trabajo actual (CWD)
    2. Usar el nombre de la carpeta como nombre del proyecto
    3. Evitar nombres genéricos como 'home', 'Users', etc.

    Returns:
        Nombre del proyecto detectado, o None (episodio global) si no se puede determinar.
    """
    try:
        cwd = Path(os.getcwd())
        project_name = cwd.name

        # Lista de nombres a ignorar (demasiado genéricos)
        generic_names = {
            'home', 'users', 'user', 'desktop', 'documents',
            'downloads', 'tmp', 'temp', 'root', 'var', 'opt',
            'src', 'source', 'code', 'projects', 'repos', 'git',
            'c:', 'd:', 'e:'  # Raíces de Windows
        }

        if project_name.lower() in generic_names:
            # Intentar subir un nivel si el nombre es genérico
            parent_name = cwd.parent.name
            if parent_name and parent_name.lower() not in generic_names:
                project_name = parent_name
            else:
                return None

        # Limpiar el nombre (remover caracteres problemáticos)
        project_name = project_name.strip().replace(' ', '_')

        if not project_name:
            return None

        logger.debug(f"Proyecto detectado automáticamente: {project_name}")
        return project_name

    except OSError as e:
        logger.warning(f"No se pudo detectar el proyecto: {e}")
        return None


def _format_episode(episode: Episode) -> dict:
    """Serializar episodio para la respuesta (sin embedding)."""
    return episode.model_dump(mode="json", exclude={"embedding"})


def _json_result(payload: Any) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(
            type="text",
            text=json.dumps(payload, indent=2, ensure_ascii=False, default=_json_default)
        )]
    )


def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _error_result(message: str) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        isError=True
    )


def tool_definitions() -> list[Tool]:
    """Definiciones de las herramientas MCP de Tempera."""
    return [
        Tool(
            name="tempera_retrieve",
            description=(
                "Busca en la memoria episódica insights reutilizables de sesiones anteriores. "
                "Usar al inicio de tareas no triviales: estrategias de depuración que funcionaron, "
                "errores a evitar y patrones transferibles. Importa el *cómo* se resolvió, "
                "no el *qué* se cambió."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": (
                            "Describe el problema o patrón, no solo el tema. Un ID de "
                            "episodio también sirve para ver el detalle completo."
                        )
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Máximo de episodios a devolver",
                        "default": 5
                    },
                    "project": {
                        "type": "string",
                        "description": "Filtrar por proyecto (opcional)"
                    },
                    "all": {
                        "type": "boolean",
                        "description": "Listar episodios por recencia en lugar de buscar (ignora query)",
                        "default": False
                    }
                },
                "required": []
            }
        ),
        Tool(
            name="tempera_capture",
            description=(
                "Captura conocimiento transferible tras completar una tarea: estrategias de "
                "depuración, soluciones creativas, comportamientos sorprendentes. Prueba: "
                "¿ayudaría a un modelo sin contexto del proyecto? Si parece un mensaje de "
                "commit, reescríbelo."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "summary": {
                        "type": "string",
                        "description": "El INSIGHT aprendido, no el cambio realizado"
                    },
                    "task_type": {
                        "type": "string",
                        "enum": [t.value for t in TaskType],
                        "description": "Tipo de tarea completada"
                    },
                    "outcome": {
                        "type": "string",
                        "enum": [o.value for o in Outcome],
                        "description": "Resultado de la tarea"
                    },
                    "project": {
                        "type": "string",
                        "description": (
                            "Proyecto (por defecto se detecta desde el directorio de trabajo)"
                        )
                    },
                    "files_modified": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Archivos modificados"
                    },
                    "tags": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Tags del dominio del problema, no nombres de proyecto"
                    },
                    "errors_resolved": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "error": {"type": "string"},
                                "resolution": {"type": "string"}
                            }
                        },
                        "description": "Errores encontrados y la ESTRATEGIA usada para resolverlos"
                    }
                },
                "required": ["summary", "task_type", "outcome"]
            }
        ),
        Tool(
            name="tempera_feedback",
            description=(
                "Indica si los episodios recuperados cambiaron realmente tu enfoque. "
                "'Útil' significa que el insight influyó en la solución, no solo que "
                "estaba relacionado."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "episode_ids": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "IDs de los episodios valorados"
                    },
                    "helpful": {
                        "type": "boolean",
                        "description": "Si los episodios fueron útiles"
                    }
                },
                "required": ["episode_ids", "helpful"]
            }
        ),
        Tool(
            name="tempera_stats",
            description="Estadísticas de la memoria episódica.",
            inputSchema={
                "type": "object",
                "properties": {
                    "project": {
                        "type": "string",
                        "description": "Filtrar por proyecto (opcional)"
                    }
                }
            }
        ),
        Tool(
            name="tempera_status",
            description=(
                "Salud de la memoria del proyecto actual: fecha de la última captura, "
                "número de episodios y episodios nunca usados."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "project": {
                        "type": "string",
                        "description": "Proyecto (por defecto se detecta desde el directorio de trabajo)"
                    }
                }
            }
        ),
        Tool(
            name="tempera_propagate",
            description=(
                "Propaga utilidad desde episodios útiles hacia episodios similares. "
                "Ejecutar periódicamente para mejorar la calidad de la memoria."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "temporal": {
                        "type": "boolean",
                        "description": "Incluir crédito temporal (episodios que precedieron a un éxito)",
                        "default": False
                    },
                    "project": {
                        "type": "string",
                        "description": "Limitar la propagación a un proyecto (opcional)"
                    }
                }
            }
        ),
        Tool(
            name="tempera_review",
            description=(
                "Revisa y consolida la memoria tras una serie de tareas relacionadas: "
                "duplicados, episodios obsoletos y oportunidades de limpieza."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "project": {
                        "type": "string",
                        "description": "Proyecto a revisar (por defecto se detecta desde el directorio de trabajo)"
                    },
                    "action": {
                        "type": "string",
                        "enum": ["analyze", "cleanup"],
                        "description": (
                            "analyze: solo recomendaciones. cleanup: elimina duplicados "
                            "sin utilidad"
                        ),
                        "default": "analyze"
                    }
                }
            }
        ),
    ]


class TemperaMCPServer:
    """
    Servidor MCP que expone las herramientas de Tempera.

    Herramientas disponibles:
    - tempera_retrieve: Buscar episodios relevantes
    - tempera_capture: Capturar un insight
    - tempera_feedback: Valorar episodios recuperados
    - tempera_stats / tempera_status: Estado de la memoria
    - tempera_propagate: Propagar utilidad
    - tempera_review: Revisar duplicados y obsoletos
    """

    def __init__(self):
        """Inicializar servidor MCP."""
        self.server = Server("tempera")
        self.engine: Optional[MemoryEngine] = None

        # Registrar herramientas
        self._register_tools()

        logger.info("Tempera MCP Server inicializado")

    def _lazy_init(self):
        """Inicialización lazy del motor (carga modelo e índice)."""
        if self.engine is None:
            self.engine = MemoryEngine()

    def _register_tools(self):
        """Registrar todas las herramientas MCP."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            """Listar herramientas disponibles."""
            return tool_definitions()

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> CallToolResult:
            """Ejecutar una herramienta."""
            return await self.dispatch(name, arguments or {})

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        """Enrutar una llamada a su handler y traducir errores."""
        try:
            self._lazy_init()

            match name:
                case "tempera_retrieve":
                    return await self._retrieve(arguments)
                case "tempera_capture":
                    return await self._capture(arguments)
                case "tempera_feedback":
                    return await self._feedback(arguments)
                case "tempera_stats":
                    return await self._stats(arguments)
                case "tempera_status":
                    return await self._status(arguments)
                case "tempera_propagate":
                    return await self._propagate(arguments)
                case "tempera_review":
                    return await self._review(arguments)
                case _:
                    return _error_result(f"Herramienta desconocida: {name}")
        except TemperaError as e:
            logger.error(f"Error en herramienta {name}: {e}")
            return _error_result(f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Error inesperado en herramienta {name}")
            return _error_result(f"Error ejecutando {name}: {str(e)}")
        finally:
            flush_traces()

    async def _run_batch(self, func, **kwargs):
        """
        Ejecutar una pasada batch en un hilo, con timeout.

        Al vencer el timeout se activa la cancelación: la pasada se
        detiene entre episodios dejando el almacén consistente.
        """
        cancel_event = threading.Event()
        loop = asyncio.get_running_loop()
        task = loop.run_in_executor(None, lambda: func(cancel_event=cancel_event, **kwargs))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=BATCH_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            cancel_event.set()
            logger.warning(f"Pasada batch excedió {BATCH_TIMEOUT_SECONDS:.0f}s, cancelando")
            return await task

    async def _retrieve(self, args: dict) -> CallToolResult:
        """Buscar episodios relevantes."""
        episodes = await asyncio.to_thread(
            self.engine.retrieve,
            query=args.get("query"),
            limit=int(args.get("limit", 5)),
            project=args.get("project"),
            all=bool(args.get("all", False))
        )

        return _json_result({
            "count": len(episodes),
            "episodes": [_format_episode(ep) for ep in episodes]
        })

    async def _capture(self, args: dict) -> CallToolResult:
        """Capturar un insight."""
        missing = [f for f in ("summary", "task_type", "outcome") if not args.get(f)]
        if missing:
            return _error_result(f"Faltan campos requeridos: {', '.join(missing)}")

        # Detectar proyecto automáticamente si no se proporciona
        project = args.get("project") or _detect_project_name()

        episode_id = await asyncio.to_thread(
            self.engine.capture,
            summary=args["summary"],
            task_type=args["task_type"],
            outcome=args["outcome"],
            project=project,
            files_modified=args.get("files_modified"),
            tags=args.get("tags"),
            errors_resolved=args.get("errors_resolved")
        )

        return _json_result({
            "success": True,
            "episode_id": episode_id,
            "project": project  # Proyecto donde se guardó
        })

    async def _feedback(self, args: dict) -> CallToolResult:
        """Registrar feedback."""
        if "episode_ids" not in args or "helpful" not in args:
            return _error_result("Se requieren episode_ids y helpful")

        result = await asyncio.to_thread(
            self.engine.feedback,
            episode_ids=list(args["episode_ids"]),
            helpful=bool(args["helpful"])
        )

        return _json_result({
            "success": True,
            "helpful": result.helpful,
            "updated": len(result.updated),
            "skipped": result.skipped,
            "skipped_ids": result.skipped_ids
        })

    async def _stats(self, args: dict) -> CallToolResult:
        """Obtener estadísticas."""
        stats = await asyncio.to_thread(self.engine.stats, project=args.get("project"))
        return _json_result(stats)

    async def _status(self, args: dict) -> CallToolResult:
        """Salud de la memoria del proyecto."""
        project = args.get("project") or _detect_project_name()
        status = await asyncio.to_thread(self.engine.status, project=project)
        return _json_result(status)

    async def _propagate(self, args: dict) -> CallToolResult:
        """Propagar utilidad."""
        result = await self._run_batch(
            self.engine.propagate,
            temporal=bool(args.get("temporal", False)),
            project=args.get("project")
        )
        return _json_result(result.model_dump())

    async def _review(self, args: dict) -> CallToolResult:
        """Revisar memoria."""
        project = args.get("project") or _detect_project_name()
        report = await self._run_batch(
            self.engine.review,
            project=project,
            action=args.get("action", "analyze")
        )
        payload = report.model_dump(mode="json")
        payload["duplicate_count"] = len(report.duplicate_ids)
        return _json_result(payload)

    async def run(self):
        """Ejecutar el servidor MCP."""
        logger.info("Iniciando Tempera MCP Server...")
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options()
            )


async def _async_main():
    """Punto de entrada asíncrono del servidor MCP."""
    server = TemperaMCPServer()
    await server.run()


def main():
    """Punto de entrada síncrono para console scripts."""
    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
