"""
Tempera - Memoria Episódica para Agentes de Código
==================================================

Motor de memoria que persiste "lecciones aprendidas" entre sesiones,
las recupera por similitud semántica y refina su utilidad con feedback.
"""

__version__ = "0.1.0"
__author__ = "Tempera Team"
