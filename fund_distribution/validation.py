"""
Input Validation

Format checks for private keys, addresses and destination weights.
Runs before any account enters the distribution pipeline.
"""

import math
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from web3 import Web3


HEX_KEY_PATTERN = re.compile(r'^[0-9a-fA-F]{64}$')
ADDRESS_PATTERN = re.compile(r'^0x[0-9a-fA-F]{40}$')


class ValidationError(ValueError):
    """Raised when caller input is rejected before pipeline entry."""


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    error: Optional[str] = None

    def raise_for_error(self, label: str = "input"):
        if not self.is_valid:
            raise ValidationError(f"Invalid {label}: {self.error}")


def validate_private_key(key: str) -> ValidationResult:
    """
    Validate a private key

    Accepts 64 hex characters, with or without a 0x prefix.
    """
    if not key or not key.strip():
        return ValidationResult(False, "Private key cannot be empty")

    clean_key = key.strip()
    if clean_key.startswith('0x'):
        clean_key = clean_key[2:]

    if len(clean_key) != 64:
        return ValidationResult(
            False, "Private key must be 64 hexadecimal characters (or 66 with '0x' prefix)"
        )

    if not HEX_KEY_PATTERN.match(clean_key):
        return ValidationResult(
            False, "Private key must contain only hexadecimal characters (0-9, a-f, A-F)"
        )

    return ValidationResult(True)


def validate_address(address: str) -> ValidationResult:
    """
    Validate an account address

    All-lowercase and all-uppercase hex is accepted as-is; mixed case must
    carry a valid EIP-55 checksum.
    """
    if not address or not address.strip():
        return ValidationResult(False, "Address cannot be empty")

    if not address.startswith('0x'):
        return ValidationResult(False, "Address must start with '0x'")

    if len(address) != 42:
        return ValidationResult(False, "Address must be 42 characters long (including '0x' prefix)")

    if not ADDRESS_PATTERN.match(address):
        return ValidationResult(
            False, "Address must contain only hexadecimal characters (0-9, a-f, A-F)"
        )

    body = address[2:]
    if body != body.lower() and body != body.upper() and not Web3.is_checksum_address(address):
        return ValidationResult(False, "Address checksum is invalid")

    return ValidationResult(True)


def validate_weights(weights: Iterable[float], epsilon: float = 0.01) -> ValidationResult:
    """
    Validate destination percentages

    Each weight must lie within 0-100 and the total must be 100 (± epsilon).
    """
    weights = list(weights)
    if not weights:
        return ValidationResult(False, "At least one destination is required")

    for weight in weights:
        if not math.isfinite(weight):
            return ValidationResult(False, f"Percentage {weight} is not a finite number")
        if weight < 0 or weight > 100:
            return ValidationResult(False, f"Percentage {weight} is outside 0-100")

    total = sum(weights)
    if abs(total - 100) > epsilon:
        return ValidationResult(False, f"Percentages must sum to 100 (got {total:g})")

    return ValidationResult(True)
