"""
WhatsApp Session Gateway

API HTTP sobre una única sesión persistente de WhatsApp Web, con
recuperación automática ante desconexiones, fallos de autenticación
y cuelgues silenciosos.
"""

__version__ = "1.0.0"
__description__ = "Gateway HTTP para una sesión WhatsApp Web autogestionada"
