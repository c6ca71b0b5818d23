"""
Preset regex validators and domain helpers used by the entity importers.
"""

import re
from typing import Any, Optional, Tuple


PRESET_PATTERNS = {
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "url": r"^https?://[^\s/$.?#].[^\s]*$",
    "domain": r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$",
    "uuid": r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$",
    "sku": r"^[A-Za-z0-9\-_./]+$",
}

PRESET_DESCRIPTIONS = {
    "email": "Standard email format (permissive)",
    "url": "HTTP/HTTPS URL",
    "domain": "Domain name",
    "uuid": "UUID format",
    "sku": "Product SKU (alphanumeric with hyphens/underscores)",
}

_SCHEME = re.compile(r"^https?://", re.IGNORECASE)


def validate_with_preset(
    value: Any,
    preset_name: str,
    allow_null: bool = True
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_null:
            return True, None
        return False, "Value is required"

    pattern = PRESET_PATTERNS.get(preset_name)
    if pattern is None:
        return False, f"Unknown preset validator: {preset_name}"

    str_val = str(value).strip()
    if not re.match(pattern, str_val):
        description = PRESET_DESCRIPTIONS.get(preset_name)
        return False, f"Value '{str_val}' does not match {description or preset_name} format"
    return True, None


def normalize_domain(value: Optional[str]) -> Optional[str]:
    """``https://www.Acme.com/`` -> ``acme.com``; anything after the host is dropped."""
    if value is None:
        return None
    domain = _SCHEME.sub("", value.strip().lower())
    if domain.startswith("www."):
        domain = domain[4:]
    domain = domain.split("/", 1)[0].rstrip(".")
    return domain or None


def is_valid_domain(value: Optional[str]) -> bool:
    valid, _ = validate_with_preset(value, "domain", allow_null=False)
    return valid
