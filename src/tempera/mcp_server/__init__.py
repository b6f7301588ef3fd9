"""
MCP Server - Model Context Protocol para Tempera
================================================

Servidor MCP que expone las herramientas de memoria episódica
a cualquier agente compatible.
"""

# Import lazy para evitar RuntimeWarning al ejecutar como módulo
# El warning ocurre cuando se hace `python -m tempera.mcp_server.server`
# porque el __init__.py se ejecuta antes que server.py

def get_server():
    """Obtener clase del servidor MCP (import lazy)."""
    from tempera.mcp_server.server import TemperaMCPServer
    return TemperaMCPServer

__all__ = ["get_server"]
