"""
Formateo de direcciones WhatsApp (JIDs).
"""

from typing import Optional

INDIVIDUAL_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"


def format_jid(target: Optional[str]) -> Optional[str]:
    """
    Normaliza un identificador al formato de dirección de WhatsApp.

    - Ya calificado (contiene '@'): se devuelve tal cual.
    - Contiene '-' (id de grupo): se le añade @g.us.
    - Cualquier otro: chat individual, se le añade @c.us.

    Args:
        target: Número o id recibido en la API

    Returns:
        JID completo, o None si el target está vacío
    """
    if not target:
        return None
    if "@" in target:
        return target
    if "-" in target:
        return f"{target}{GROUP_SUFFIX}"
    return f"{target}{INDIVIDUAL_SUFFIX}"


def is_group_jid(jid: Optional[str]) -> bool:
    """Indica si el JID pertenece a un chat de grupo."""
    return bool(jid) and GROUP_SUFFIX in jid
