"""
Wallet Sheet Parser

Reads source keys and weighted destinations from comma-separated text or
from CSV / Excel sheets. Everything is validated here, before any account
enters the distribution pipeline.

Sheet layout:
- keys sheet: one column named `private_key`
- destinations sheet: columns `address` and `percentage`
"""

from pathlib import Path
from typing import List, Optional

import pandas as pd
from loguru import logger

from .accounts import Account
from .allocation_planner import DestinationSpec
from .validation import ValidationError, validate_address, validate_private_key


def split_entries(text: str) -> List[str]:
    """Split comma- or newline-separated input, dropping blanks."""
    entries = []
    for line in (text or '').splitlines():
        entries.extend(part.strip() for part in line.split(','))
    return [entry for entry in entries if entry]


def parse_keys_text(text: str) -> List[str]:
    keys = split_entries(text)
    for index, key in enumerate(keys, start=1):
        result = validate_private_key(key)
        if not result.is_valid:
            raise ValidationError(f"Wallet {index}: {result.error}")
    return keys


def parse_destinations_text(text: str) -> List[DestinationSpec]:
    """
    Parse `address:percentage` pairs

    A bare address (no percentage) gets weight 0, which is only accepted
    by the equal distribution method.
    """
    destinations = []
    for index, entry in enumerate(split_entries(text), start=1):
        address, _, percentage = entry.partition(':')
        destinations.append(_make_destination(index, address.strip(), percentage.strip() or None))
    return destinations


def _make_destination(index: int, address: str, percentage: Optional[object]) -> DestinationSpec:
    result = validate_address(address)
    if not result.is_valid:
        raise ValidationError(f"Destination {index}: {result.error}")

    if percentage is None or (not isinstance(percentage, str) and pd.isna(percentage)):
        weight = 0.0
    else:
        try:
            weight = float(percentage)
        except (TypeError, ValueError):
            raise ValidationError(f"Destination {index}: percentage '{percentage}' is not a number")

    return DestinationSpec(address=address, weight_percentage=weight)


def load_accounts(keys: List[str]) -> List[Account]:
    """
    Create accounts from private keys

    Raises:
        ValidationError: On the first malformed key (reported by position)
    """
    if not keys:
        raise ValidationError("At least one private key is required")

    accounts = []
    for index, key in enumerate(keys, start=1):
        try:
            accounts.append(Account.from_credential(key))
        except ValidationError as e:
            raise ValidationError(f"Wallet {index}: {e}") from e
    return accounts


class WalletSheetParser:
    """
    Parse wallet sheets (CSV or Excel)

    Features:
    - `.csv`, `.xlsx` and `.xls` input
    - Case-insensitive column names
    - Blank rows skipped
    """

    KEY_COLUMN = 'private_key'
    ADDRESS_COLUMN = 'address'
    PERCENTAGE_COLUMN = 'percentage'

    def __init__(self, path: str):
        self.path = Path(path)

    def _read(self) -> pd.DataFrame:
        if not self.path.exists():
            raise ValidationError(f"Wallet sheet not found: {self.path}")

        suffix = self.path.suffix.lower()
        try:
            if suffix == '.csv':
                df = pd.read_csv(self.path, dtype=str)
            elif suffix in ('.xlsx', '.xls'):
                df = pd.read_excel(self.path, dtype=str)
            else:
                raise ValidationError(f"Unsupported wallet sheet format: {suffix or self.path.name}")
        except ValidationError:
            raise
        except Exception as e:
            raise ValidationError(f"Could not read wallet sheet {self.path}: {e}") from e

        df.columns = [str(column).strip().lower() for column in df.columns]
        return df.dropna(how='all')

    def _require_column(self, df: pd.DataFrame, column: str):
        if column not in df.columns:
            raise ValidationError(f"{self.path.name} has no '{column}' column")

    def read_keys(self) -> List[str]:
        """
        Read private keys

        Returns:
            Validated keys in sheet order
        """
        df = self._read()
        self._require_column(df, self.KEY_COLUMN)

        keys = [str(value).strip() for value in df[self.KEY_COLUMN] if pd.notna(value) and str(value).strip()]
        for index, key in enumerate(keys, start=1):
            result = validate_private_key(key)
            if not result.is_valid:
                raise ValidationError(f"Wallet {index}: {result.error}")

        logger.info(f"Loaded {len(keys)} keys from {self.path.name}")
        return keys

    def read_destinations(self) -> List[DestinationSpec]:
        """
        Read destinations

        Returns:
            DestinationSpec list in sheet order; a missing percentage column
            means weight 0 for every row (equal distribution only)
        """
        df = self._read()
        self._require_column(df, self.ADDRESS_COLUMN)
        has_percentage = self.PERCENTAGE_COLUMN in df.columns

        destinations = []
        for index, (_, row) in enumerate(df.iterrows(), start=1):
            address = row[self.ADDRESS_COLUMN]
            if pd.isna(address) or not str(address).strip():
                continue
            percentage = row[self.PERCENTAGE_COLUMN] if has_percentage else None
            destinations.append(_make_destination(index, str(address).strip(), percentage))

        logger.info(f"Loaded {len(destinations)} destinations from {self.path.name}")
        return destinations
