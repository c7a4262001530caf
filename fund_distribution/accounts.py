"""
Source Accounts

Credential handling for source accounts: address derivation and
transaction signing. Credentials live only for the duration of one
distribution call and are never logged.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from eth_account import Account as EthAccount
from web3 import Web3

from .validation import validate_private_key

if TYPE_CHECKING:
    from .transaction_builder import TransferInstruction


def resolve_address(credential: str) -> str:
    """Derive the checksum address for a private key."""
    return EthAccount.from_key(credential).address


def short_address(address: str) -> str:
    return f"{address[:10]}..." if address else "unknown"


@dataclass(frozen=True)
class SignedInstruction:
    """A transfer instruction signed and ready for broadcast"""
    instruction: 'TransferInstruction'
    raw_transaction: bytes
    tx_hash: str


@dataclass(frozen=True)
class Account:
    """Source account: credential plus derived address"""
    credential: str = field(repr=False)
    address: str

    @classmethod
    def from_credential(cls, credential: str) -> 'Account':
        """
        Create account from a private key

        Raises:
            ValidationError: If the key is malformed
        """
        validate_private_key(credential).raise_for_error("private key")
        credential = credential.strip()
        if not credential.startswith('0x'):
            credential = '0x' + credential
        return cls(credential=credential, address=resolve_address(credential))

    @property
    def label(self) -> str:
        return short_address(self.address)

    def sign(self, instruction: 'TransferInstruction') -> SignedInstruction:
        signed = EthAccount.sign_transaction(instruction.to_transaction_dict(), self.credential)
        return SignedInstruction(
            instruction=instruction,
            raw_transaction=bytes(signed.raw_transaction),
            tx_hash=Web3.to_hex(signed.hash),
        )
