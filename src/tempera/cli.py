"""
CLI de Tempera - Interfaz de línea de comandos
==============================================

Tareas de mantenimiento sobre la memoria: estadísticas, búsqueda,
propagación, revisión y arranque del servidor MCP.
"""

import argparse
import logging
import sys

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from tempera.errors import TemperaError

console = Console()


def _engine():
    from tempera.engine import MemoryEngine
    return MemoryEngine()


def handle_stats(args):
    """Manejar comando de estadísticas."""
    stats = _engine().stats(args.project)
    last = stats["last_capture_at"]

    console.print(Panel(
        f"[bold]Episodios:[/bold] {stats['episode_count']}\n"
        f"[bold]En índice:[/bold] {stats['index_count']}\n"
        f"[bold]Utilidad media:[/bold] {stats['avg_utility']:.3f}\n"
        f"[bold]Sin usar:[/bold] {stats['unused_count']}\n"
        f"[bold]Última captura:[/bold] {last.strftime('%Y-%m-%d %H:%M') if last else 'nunca'}\n\n"
        f"[bold]Por tipo:[/bold]\n" +
        "\n".join(f"  • {k}: {v}" for k, v in sorted(stats['by_task_type'].items())) +
        "\n\n[bold]Por resultado:[/bold]\n" +
        "\n".join(f"  • {k}: {v}" for k, v in sorted(stats['by_outcome'].items())),
        title="📊 Estadísticas de Memoria",
        border_style="blue"
    ))


def handle_status(args):
    """Manejar comando de estado."""
    status = _engine().status(args.project)
    days = status["days_since_last_capture"]

    console.print(Panel(
        f"[bold]Proyecto:[/bold] {status['project'] or 'todos'}\n"
        f"[bold]Episodios:[/bold] {status['episode_count']}\n"
        f"[bold]Sin usar:[/bold] {status['unused_count']}\n"
        f"[bold]Última captura:[/bold] "
        f"{'nunca' if days is None else f'hace {days} días'}",
        title="🩺 Estado de Memoria",
        border_style="green"
    ))


def handle_retrieve(args):
    """Manejar comando de búsqueda."""
    episodes = _engine().retrieve(
        query=args.query,
        limit=args.limit,
        project=args.project,
        all=args.all
    )

    if not episodes:
        console.print("[yellow]No se encontraron episodios.[/yellow]")
        return

    for i, ep in enumerate(episodes, 1):
        console.print(Panel(
            f"{escape(ep.summary)}\n\n"
            f"[bold]Tipo:[/bold] {ep.task_type.value} | "
            f"[bold]Resultado:[/bold] {ep.outcome.value} | "
            f"[bold]Utilidad:[/bold] {ep.utility:.2f}\n"
            f"[dim]{ep.id} · {ep.project or 'global'} · "
            f"{ep.created_at.strftime('%Y-%m-%d')}[/dim]",
            title=f"Episodio {i}",
            border_style="cyan"
        ))


def handle_propagate(args):
    """Manejar comando de propagación."""
    result = _engine().propagate(temporal=args.temporal, project=args.project)
    console.print(
        f"[green]✓ Propagación completada:[/green] {result.adjusted} episodios ajustados "
        f"({result.sources} fuentes, {result.processed} procesados)"
    )


def handle_review(args):
    """Manejar comando de revisión."""
    report = _engine().review(project=args.project, action=args.action)

    table = Table(title=f"🧹 Revisión ({report.action.value})")
    table.add_column("Representante", style="cyan")
    table.add_column("Duplicados")
    table.add_column("Resumen")
    for cluster in report.clusters:
        table.add_row(
            cluster.representative_id[:8],
            ", ".join(d[:8] for d in cluster.duplicate_ids),
            escape(cluster.summary[:60])
        )
    console.print(table)

    for rec in report.recommendations:
        console.print(f"  • {escape(rec)}")
    if report.deleted_ids:
        console.print(f"[green]✓ {len(report.deleted_ids)} episodios eliminados[/green]")


def handle_serve(args):
    """Arrancar el servidor MCP (stdio)."""
    from tempera.mcp_server.server import main as serve_main
    serve_main()


def build_parser() -> argparse.ArgumentParser:
    """Construir el parser de argumentos."""
    parser = argparse.ArgumentParser(
        prog="tempera",
        description="Tempera - Memoria episódica para agentes de código"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Logging detallado")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stats_parser = subparsers.add_parser("stats", help="Estadísticas de la memoria")
    stats_parser.add_argument("-p", "--project", help="Filtrar por proyecto")
    stats_parser.set_defaults(func=handle_stats)

    status_parser = subparsers.add_parser("status", help="Salud de la memoria de un proyecto")
    status_parser.add_argument("-p", "--project", help="Proyecto")
    status_parser.set_defaults(func=handle_status)

    retrieve_parser = subparsers.add_parser("retrieve", help="Buscar episodios")
    retrieve_parser.add_argument("query", nargs="?", help="Consulta o ID de episodio")
    retrieve_parser.add_argument("-n", "--limit", type=int, default=5, help="Máximo de resultados")
    retrieve_parser.add_argument("-p", "--project", help="Filtrar por proyecto")
    retrieve_parser.add_argument("-a", "--all", action="store_true", help="Listar todos por recencia")
    retrieve_parser.set_defaults(func=handle_retrieve)

    propagate_parser = subparsers.add_parser("propagate", help="Propagar utilidad")
    propagate_parser.add_argument("-t", "--temporal", action="store_true", help="Incluir crédito temporal")
    propagate_parser.add_argument("-p", "--project", help="Limitar a un proyecto")
    propagate_parser.set_defaults(func=handle_propagate)

    review_parser = subparsers.add_parser("review", help="Revisar duplicados y obsoletos")
    review_parser.add_argument("-p", "--project", help="Proyecto a revisar")
    review_parser.add_argument(
        "--action",
        choices=["analyze", "cleanup"],
        default="analyze",
        help="analyze: recomendaciones; cleanup: eliminar duplicados sin utilidad"
    )
    review_parser.set_defaults(func=handle_review)

    serve_parser = subparsers.add_parser("serve", help="Arrancar servidor MCP (stdio)")
    serve_parser.set_defaults(func=handle_serve)

    return parser


def main(argv=None):
    """Punto de entrada principal."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        args.func(args)
    except TemperaError as e:
        console.print(f"[red]{type(e).__name__}: {escape(str(e))}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
