"""
Test suite para el WhatsApp Session Gateway.

Organización de tests:
- test_services/: Controller, watchdog, relay de webhooks y bridge Node.js
- test_utils/: Formateo de JIDs y QR
- test_integration.py: API HTTP end-to-end con adapter falso
"""
