"""
Product code generation and reservation for catalog-bot.

Every product group gets one primary code; its backup sellers use the primary
code plus a fixed suffix (TSEL10, TSEL10B1, TSEL10B2). A reservation claims
all three at once, before the code is ever shown to the operator.
"""

import logging
import re

from .errors import InvalidCode

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9]+$")
MAX_SANITIZED_LENGTH = 25

# Known brands, matched in order against the product and brand names
BRAND_CODES = {
    "telkomsel": "TSEL",
    "tsel": "TSEL",
    "indosat": "ISAT",
    "im3": "ISAT",
    "xl": "XL",
    "axis": "AXIS",
    "tri": "TRI",
    "three": "TRI",
    "smartfren": "SMFR",
    "by.u": "BYU",
    "byu": "BYU",
    "mobile legend": "ML",
    "mobile legends": "ML",
    "mlbb": "ML",
    "free fire": "FF",
    "freefire": "FF",
    "garena": "FF",
    "pubg": "PUBG",
    "valorant": "VALO",
    "genshin": "GI",
    "honkai": "HSR",
    "pln": "PLN",
    "token listrik": "PLN",
    "gopay": "GPAY",
    "ovo": "OVO",
    "dana": "DANA",
    "shopeepay": "SPAY",
    "shopee pay": "SPAY",
    "linkaja": "LINK",
    "google play": "GP",
    "steam": "STEAM",
    "spotify": "SPOT",
    "netflix": "NFLX",
    "vidio": "VID",
    "viu": "VIU",
}


def sanitize_code(text: str | None) -> str:
    """Upper-case and strip everything outside [A-Z0-9]."""
    if not text:
        return ""
    return re.sub(r"[^A-Z0-9]", "", text.upper())[:MAX_SANITIZED_LENGTH]


def validate_code(code: str) -> str:
    """Return the code unchanged, or raise InvalidCode."""
    if not code or not CODE_PATTERN.match(code):
        raise InvalidCode(f"Invalid product code: {code!r}")
    return code


def generate_code(product_name: str, brand_name: str = "", max_length: int = 15) -> str:
    """
    Propose a code from the product and brand names.

    Known brands map to their short code; otherwise the first four letters of
    the product name are used. The first number in the name is appended, with
    thousands collapsed ("Telkomsel 10.000" -> "TSEL10").
    """
    name_lower = product_name.lower()
    brand_lower = brand_name.lower()

    brand = ""
    for key, code in BRAND_CODES.items():
        if key in name_lower or key in brand_lower:
            brand = code
            break
    if not brand:
        first_word = re.sub(r"[^a-zA-Z]", "", product_name.split(" ")[0]) if product_name else ""
        brand = first_word[:4].upper() or "PROD"

    nominal = ""
    for match in re.findall(r"[\d.,]+", product_name):
        digits = re.sub(r"[.,]", "", match)
        if digits:
            number = int(digits)
            nominal = str(number // 1000) if number >= 1000 else str(number)
            break

    return (brand + nominal)[:max_length] or "PROD"


class CodeTracker:
    """
    Run-scoped set of reserved product codes.

    Reservations live for the whole run; there is no release.
    """

    def __init__(self, backup1_suffix: str = "B1", backup2_suffix: str = "B2"):
        self.backup1_suffix = backup1_suffix
        self.backup2_suffix = backup2_suffix
        self._reserved: set[str] = set()

    def variants(self, code: str) -> tuple[str, str, str]:
        """The primary code and its two backup codes."""
        return (code, code + self.backup1_suffix, code + self.backup2_suffix)

    def contains(self, code: str) -> bool:
        """Whether this exact string is reserved (primary or backup)."""
        return code in self._reserved

    def is_available(self, code: str) -> bool:
        """Whether the code and both of its backup codes are free."""
        return not any(v in self._reserved for v in self.variants(code))

    def reserve(self, proposed: str) -> str:
        """
        Reserve the proposed code, or the first free numbered variant of it.

        Collisions are resolved by appending 1, 2, 3, ... to the proposed code,
        so the same history and proposal always give the same result.

        Raises:
            InvalidCode: proposed is empty or not [A-Z0-9]
        """
        validate_code(proposed)

        code = proposed
        counter = 1
        while not self.is_available(code):
            code = f"{proposed}{counter}"
            counter += 1

        if code != proposed:
            logger.info(f"Code {proposed} already reserved, using {code}")

        self._reserved.update(self.variants(code))
        return code

    def base_code(self, code: str) -> str:
        """Strip a trailing backup suffix, if any."""
        base = code.strip()
        for suffix in (self.backup1_suffix, self.backup2_suffix):
            if suffix and base.endswith(suffix):
                return base[: -len(suffix)]
        return base

    def __len__(self) -> int:
        return len(self._reserved)
