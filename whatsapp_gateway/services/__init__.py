"""
Servicios del gateway.

Este módulo contiene:
- WhatsAppWebClient: Adapter sobre whatsapp-web.js (subprocess Node.js)
- SessionController: Máquina de estados y recuperación de la sesión
- Watchdog: Detección de cuelgues silenciosos
- WebhookRelay: Reenvío de mensajes entrantes
"""
