"""
Validate and normalize raw email strings submitted to the snowball engine
"""

from typing import Any, Optional
from dataclasses import dataclass
import hashlib
import re
import logging

from core.exceptions import InvalidEmailError

logger = logging.getLogger(__name__)

MAX_EMAIL_LENGTH = 254
MAX_LOCAL_PART_LENGTH = 64

# RFC 5322 dot-atom local part, hostname labels, alphabetic TLD.
# Applied to the lower-cased address.
_EMAIL_RE = re.compile(
    r"^[a-z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[a-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)


@dataclass(frozen=True)
class NormalizedEmail:
    address: str
    local_part: str
    domain: str

    @property
    def hash(self) -> str:
        return email_hash(self.address)


class EmailNormalizer:
    """
    Normalize raw email input into a canonical address.

    Handles:
    - Whitespace trimming and lower-casing
    - Optional mailto: prefixes and angle brackets from pasted lists
    - RFC 5322-ish syntax validation
    - Length limits
    """

    def normalize(self, raw_value: Any, row: Optional[int] = None) -> NormalizedEmail:
        """
        Normalize a raw value.

        Raises:
            InvalidEmailError: when the value is not a syntactically valid address
        """
        candidate = self._clean(raw_value)
        if not candidate or not _EMAIL_RE.match(candidate):
            raise InvalidEmailError(
                "Malformed email address",
                context={"raw_value": str(raw_value)[:100], "row": row}
            )

        local_part, domain = candidate.rsplit("@", 1)
        if len(candidate) > MAX_EMAIL_LENGTH or len(local_part) > MAX_LOCAL_PART_LENGTH:
            raise InvalidEmailError(
                "Email address too long",
                context={"raw_value": candidate[:100], "row": row, "length": len(candidate)}
            )

        return NormalizedEmail(address=candidate, local_part=local_part, domain=domain)

    def try_normalize(self, raw_value: Any) -> Optional[NormalizedEmail]:
        """Normalize or return None, never raises"""
        try:
            return self.normalize(raw_value)
        except InvalidEmailError:
            return None

    @staticmethod
    def _clean(raw_value: Any) -> str:
        if raw_value is None:
            return ""
        value = str(raw_value).strip()
        if value.lower().startswith("mailto:"):
            value = value[len("mailto:"):]
        if value.startswith("<") and value.endswith(">"):
            value = value[1:-1]
        return value.strip().lower()


def normalize_email(raw_value: Any) -> str:
    """Return the canonical address or raise InvalidEmailError"""
    return EmailNormalizer().normalize(raw_value).address


def is_valid_email(raw_value: Any) -> bool:
    return EmailNormalizer().try_normalize(raw_value) is not None


def email_hash(address: str) -> str:
    """SHA-256 of a normalized address, as stored in the dedup ledger"""
    return hashlib.sha256(address.encode("utf-8")).hexdigest()
