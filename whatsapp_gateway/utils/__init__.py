"""
Utilidades y helpers para el sistema.

Este módulo contiene:
- formatters.py: Formateo de JIDs
- qr.py: Codificación del QR de emparejamiento
- logger.py: Configuración de logging
- config.py: Gestión de configuración
"""
