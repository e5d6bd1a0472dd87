"""Shared validation utilities"""

import re
from typing import Optional

HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def validate_hex_color(color: Optional[str]) -> Optional[str]:
    """
    Validate and normalize a #RRGGBB color.

    Returns:
        Lower-cased color, or None when no color was given

    Raises:
        ValueError: If the value is not a #RRGGBB string
    """
    if not color:
        return None
    color = color.strip()
    if not HEX_COLOR_RE.match(color):
        raise ValueError("Color must be in #RRGGBB format")
    return color.lower()
