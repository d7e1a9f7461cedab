"""
Modelos de datos del gateway.

Este módulo contiene:
- session.py: Fases y estado de runtime de la sesión
- messages.py: Bodies de la API y payload del webhook
"""
