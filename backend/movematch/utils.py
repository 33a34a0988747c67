import re
from typing import Optional

from .enums import EntityKind

REFERENCE_PREFIXES = {
    EntityKind.client: 'CLI',
    EntityKind.move: 'TRJ',
    EntityKind.match: 'MTH',
}
PREFIX_KINDS = {prefix: kind for kind, prefix in REFERENCE_PREFIXES.items()}

_NON_DIGITS = re.compile(r'\D')


def format_reference(kind: EntityKind, entity_id: int) -> str:
    """Return the display reference, e.g. ``CLI-000042``."""
    return f"{REFERENCE_PREFIXES[EntityKind(kind)]}-{int(entity_id):06d}"


def digits_only(value: Optional[str]) -> str:
    return _NON_DIGITS.sub('', str(value or ''))


def compose_location(postal_code: Optional[str], city: Optional[str], country: Optional[str] = None) -> Optional[str]:
    """Build a geocoder query such as ``'75001 Paris, France'``."""
    head = " ".join(part for part in (str(postal_code or '').strip(), str(city or '').strip()) if part)
    if not head:
        return None
    if country:
        return f"{head}, {country}"
    return head
