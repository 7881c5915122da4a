"""Entity name normalization for catalog comparison."""

import re
from typing import Optional

_NON_ALNUM = re.compile(r"[^0-9a-z]+")


def normalize(name: Optional[str]) -> str:
    """Canonicalize a name: lower-case, drop everything but letters and digits.

    "Sales Order", "sales_order" and " SALES-ORDER " all become "salesorder".
    Never raises; None or non-string input yields "".
    """
    if not isinstance(name, str):
        return ""
    return _NON_ALNUM.sub("", name.strip().lower())
