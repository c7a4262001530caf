"""
Transaction Submitter

Broadcasts transfer instructions one at a time per account, waits for
confirmation, and retries recoverable failures.

Per-instruction flow:
    built -> broadcast -> confirmed | pending-timeout | failed

Retry rules:
- Broadcast errors and dropped transactions retry with the same nonce at an
  escalated tier (requested -> average -> fast) and a boosted price, always
  strictly above the previous attempt so the replacement is accepted.
- "insufficient funds" retries once with the amount reduced by a fixed
  percentage, unless that falls below the minimal transfer amount.
- A receipt timeout while the transaction is still known to the network is
  reported as a pending success.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Awaitable, Callable, List, Optional, Tuple

from loguru import logger
from web3 import Web3

from .accounts import Account, short_address
from .config import SubmitterSettings, eth_to_wei
from .fee_oracle import FeeOracle, FeeTier, scale_price
from .network import NetworkReader, NetworkWriter, Receipt, is_retryable
from .transaction_builder import TransferInstruction


REPLACEMENT_BUMP = 1.1  # replacement must outbid the pending transfer by 10%


class BroadcastErrorKind(str, Enum):
    INSUFFICIENT_FUNDS = 'insufficient_funds'
    UNDERPRICED = 'underpriced'
    NONCE_TOO_LOW = 'nonce_too_low'
    ALREADY_KNOWN = 'already_known'
    TRANSPORT = 'transport'
    REJECTED = 'rejected'


BROADCAST_ERROR_HINTS = [
    (BroadcastErrorKind.ALREADY_KNOWN, ('already known', 'known transaction')),
    (BroadcastErrorKind.NONCE_TOO_LOW, ('nonce too low',)),
    (BroadcastErrorKind.INSUFFICIENT_FUNDS, ('insufficient funds',)),
    (BroadcastErrorKind.UNDERPRICED, (
        'underpriced', 'replacement transaction', 'fee too low', 'fee cap',
        'less than block base fee', 'max priority', 'intrinsic gas too low',
    )),
]


def classify_broadcast_error(error: BaseException) -> BroadcastErrorKind:
    message = str(error).lower()
    for kind, hints in BROADCAST_ERROR_HINTS:
        if any(hint in message for hint in hints):
            return kind
    if is_retryable(error):
        return BroadcastErrorKind.TRANSPORT
    return BroadcastErrorKind.REJECTED


class ConfirmationState(str, Enum):
    CONFIRMED = 'confirmed'
    REVERTED = 'reverted'
    PENDING = 'pending'
    DROPPED = 'dropped'


@dataclass
class SubmissionOutcome:
    """Result of submitting one instruction"""
    instruction: TransferInstruction
    succeeded: bool
    pending: bool = False
    tx_id: Optional[str] = None
    confirmed_block: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0
    amount_reduced: bool = False
    sequence_consumed: bool = False
    message: Optional[str] = None

    @property
    def destination_address(self) -> str:
        return self.instruction.destination_address

    @property
    def amount(self) -> int:
        return self.instruction.amount

    def to_dict(self) -> dict:
        return {
            'destination': self.destination_address,
            'amount': str(Web3.from_wei(self.amount, 'ether')),
            'succeeded': self.succeeded,
            'pending': self.pending,
            'tx_id': self.tx_id,
            'confirmed_block': self.confirmed_block,
            'error': self.error,
            'attempts': self.attempts,
            'message': self.message,
        }


class Submitter:
    """
    Sequential per-account broadcaster with confirmation polling and retries

    Never submits two instructions from the same account concurrently.
    """

    def __init__(
        self,
        network,
        fee_oracle: FeeOracle,
        settings: SubmitterSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize submitter

        Args:
            network: NetworkReader + NetworkWriter
            fee_oracle: Fee oracle used for escalated retries
            settings: Retry / polling settings
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
        """
        self.network: NetworkReader = network
        self.writer: NetworkWriter = network
        self.fee_oracle = fee_oracle
        self.settings = settings
        self.sleep = sleep
        self.clock = clock

        self.max_attempts = settings.max_attempts
        self.price_boosts = settings.price_boosts
        self.reduction_factor = Fraction(100) - Fraction(str(settings.amount_reduction_percent))
        self.min_transfer = eth_to_wei(settings.min_transfer_eth)

    async def submit(
        self,
        account: Account,
        instructions: List[TransferInstruction],
        tier: FeeTier = FeeTier.AVERAGE,
    ) -> List[SubmissionOutcome]:
        """
        Submit instructions in order

        When an instruction fails without its nonce reaching the network,
        later instructions move down one nonce so the sequence stays gapless.

        Args:
            account: Source account (signs each attempt)
            instructions: Instructions from TransactionBuilder
            tier: Requested fee tier (starting point for escalation)

        Returns:
            One SubmissionOutcome per instruction, same order
        """
        logger.info(f"Sending {len(instructions)} transactions from {account.label}...")

        outcomes = []
        nonce_shift = 0
        for instruction in instructions:
            if nonce_shift:
                instruction = instruction.with_nonce(instruction.nonce - nonce_shift)

            outcome = await self.submit_one(account, instruction, FeeTier(tier))
            outcomes.append(outcome)

            if not outcome.succeeded and not outcome.sequence_consumed:
                nonce_shift += 1

        return outcomes

    def escalation_tier(self, requested: FeeTier, attempt: int) -> FeeTier:
        if attempt == 0:
            return requested
        if attempt == 1:
            return requested.at_least(FeeTier.AVERAGE)
        return FeeTier.FAST

    async def _escalate(self, instruction: TransferInstruction, tier: FeeTier, attempt: int) -> TransferInstruction:
        retry_tier = self.escalation_tier(tier, attempt)
        quote = await self.fee_oracle.resolve(retry_tier)

        price = scale_price(quote.price, self.price_boosts[attempt])
        price = max(price, scale_price(instruction.max_fee_per_gas, REPLACEMENT_BUMP) + 1)

        priority_fee = max(
            self.fee_oracle.priority_fee_for(quote),
            scale_price(instruction.max_priority_fee_per_gas, REPLACEMENT_BUMP) + 1,
        )

        logger.info(
            f"Retry {attempt + 1}/{self.max_attempts} at {retry_tier.value} tier: "
            f"{price / 10 ** 9:.2f} Gwei (nonce {instruction.nonce})"
        )
        return instruction.with_fees(price, priority_fee)

    async def _broadcast(self, account: Account, instruction: TransferInstruction) -> str:
        signed = account.sign(instruction)
        try:
            return await self.writer.broadcast(signed)
        except Exception as e:
            if classify_broadcast_error(e) == BroadcastErrorKind.ALREADY_KNOWN:
                logger.info(f"Transaction {signed.tx_hash} already known to the network")
                return signed.tx_hash
            raise

    async def submit_one(
        self,
        account: Account,
        instruction: TransferInstruction,
        tier: FeeTier = FeeTier.AVERAGE,
    ) -> SubmissionOutcome:
        destination = short_address(instruction.destination_address)
        current = instruction
        attempt = 0
        broadcasts = 0
        reduced = False
        escalate = False
        last_error: Optional[str] = None
        dropped: List[Tuple[str, TransferInstruction]] = []

        while attempt < self.max_attempts:
            if escalate:
                current = await self._escalate(current, tier, attempt)
                escalate = False

            logger.info(
                f"Sending {Web3.from_wei(current.amount, 'ether')} ETH to {destination} (nonce {current.nonce})"
            )
            broadcasts += 1

            try:
                tx_id = await self._broadcast(account, current)
            except Exception as e:
                kind = classify_broadcast_error(e)
                last_error = str(e)
                logger.warning(f"Broadcast to {destination} failed ({kind.value}): {last_error[:200]}")

                if kind == BroadcastErrorKind.INSUFFICIENT_FUNDS:
                    if reduced:
                        return self._failed(
                            current, broadcasts, reduced,
                            f"Insufficient funds even after reducing amount. "
                            f"Gas prices may be too high. Error: {last_error}",
                        )
                    reduced_amount = self._reduce(current.amount)
                    if reduced_amount < self.min_transfer:
                        return self._failed(current, broadcasts, reduced, "Amount too small after reduction")
                    logger.info(f"Retrying with amount: {Web3.from_wei(reduced_amount, 'ether')} ETH")
                    current = current.with_amount(reduced_amount)
                    reduced = True
                    continue

                if kind == BroadcastErrorKind.NONCE_TOO_LOW:
                    landed = await self._find_landed(dropped, broadcasts, reduced)
                    if landed is not None:
                        return landed
                    outcome = self._failed(current, broadcasts, reduced, f"Nonce already used: {last_error}")
                    outcome.sequence_consumed = True
                    return outcome

                attempt += 1
                escalate = True
                if attempt < self.max_attempts:
                    await self.sleep(self.settings.retry_delay_seconds)
                continue

            logger.info(f"Transaction sent: {tx_id}")
            state, receipt = await self.wait_for_confirmation(tx_id)

            if state == ConfirmationState.CONFIRMED:
                logger.info(f"✓ Transaction {tx_id} confirmed in block {receipt.block_number}")
                return SubmissionOutcome(
                    instruction=current, succeeded=True, tx_id=tx_id,
                    confirmed_block=receipt.block_number, attempts=broadcasts,
                    amount_reduced=reduced, sequence_consumed=True,
                    message="Transaction completed with reduced amount due to high gas fees." if reduced else None,
                )

            if state == ConfirmationState.PENDING:
                logger.warning(f"⚠ Transaction {tx_id} sent but not yet confirmed")
                return SubmissionOutcome(
                    instruction=current, succeeded=True, pending=True, tx_id=tx_id,
                    attempts=broadcasts, amount_reduced=reduced, sequence_consumed=True,
                    message="Transaction sent but not yet confirmed. Check your wallet later.",
                )

            if state == ConfirmationState.REVERTED:
                outcome = self._failed(current, broadcasts, reduced, f"Transaction {tx_id} reverted")
                outcome.tx_id = tx_id
                outcome.confirmed_block = receipt.block_number
                outcome.sequence_consumed = True
                return outcome

            dropped.append((tx_id, current))
            last_error = f"Transaction {tx_id} not found after confirmation timeout"
            logger.warning(f"{last_error}, it might have been dropped")
            attempt += 1
            escalate = True
            if attempt < self.max_attempts:
                await self.sleep(self.settings.retry_delay_seconds)

        return self._failed(
            current, broadcasts, reduced,
            f"Failed after {self.max_attempts} attempts. Last error: {last_error}",
        )

    async def wait_for_confirmation(self, tx_id: str) -> Tuple[ConfirmationState, Optional[Receipt]]:
        """
        Poll for a receipt until the confirmation timeout

        Returns:
            (state, receipt) where receipt is set for CONFIRMED / REVERTED
        """
        deadline = self.clock() + self.settings.confirmation_timeout_seconds

        while self.clock() < deadline:
            try:
                receipt = await self.network.get_receipt(tx_id)
            except Exception as e:
                logger.warning(f"Error checking transaction receipt: {e}. Retrying...")
                await self.sleep(self.settings.retry_delay_seconds)
                continue

            if receipt is not None:
                state = ConfirmationState.CONFIRMED if receipt.succeeded else ConfirmationState.REVERTED
                return state, receipt

            logger.debug(f"Waiting for receipt of {tx_id}...")
            await self.sleep(self.settings.poll_interval_seconds)

        try:
            transaction = await self.network.get_transaction(tx_id)
        except Exception as e:
            logger.warning(f"Error looking up transaction {tx_id}: {e}")
            transaction = None

        if transaction is not None:
            return ConfirmationState.PENDING, None
        return ConfirmationState.DROPPED, None

    async def _find_landed(
        self,
        dropped: List[Tuple[str, TransferInstruction]],
        attempts: int,
        reduced: bool,
    ) -> Optional[SubmissionOutcome]:
        """
        Look for a receipt of an attempt previously classified as dropped

        Called when a retry at the same nonce reports "nonce too low": the
        earlier broadcast may have been mined after all.

        Returns:
            Outcome for the landed attempt, or None when none of them landed
        """
        for tx_id, sent in reversed(dropped):
            try:
                receipt = await self.network.get_receipt(tx_id)
            except Exception as e:
                logger.warning(f"Error checking receipt of earlier attempt {tx_id}: {e}")
                continue

            if receipt is None:
                continue

            if receipt.succeeded:
                logger.info(f"✓ Earlier attempt {tx_id} was mined in block {receipt.block_number}")
                return SubmissionOutcome(
                    instruction=sent, succeeded=True, tx_id=tx_id,
                    confirmed_block=receipt.block_number, attempts=attempts,
                    amount_reduced=reduced, sequence_consumed=True,
                )

            outcome = self._failed(sent, attempts, reduced, f"Transaction {tx_id} reverted")
            outcome.tx_id = tx_id
            outcome.confirmed_block = receipt.block_number
            outcome.sequence_consumed = True
            return outcome

        return None

    def _reduce(self, amount: int) -> int:
        reduced = amount * self.reduction_factor / 100
        return reduced.numerator // reduced.denominator

    def _failed(self, instruction: TransferInstruction, attempts: int, reduced: bool, error: str) -> SubmissionOutcome:
        logger.error(f"✗ Transfer to {short_address(instruction.destination_address)} failed: {error[:300]}")
        return SubmissionOutcome(
            instruction=instruction, succeeded=False, error=error,
            attempts=attempts, amount_reduced=reduced,
        )
