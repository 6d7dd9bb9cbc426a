#!/usr/bin/env python3
"""Destination call submission for the Relay Agent.

This module submits attestation, verification and execution calls to the
destination contract and awaits their confirmation, supporting both local
(private key) and production (ROFL) modes.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from web3 import Web3
from web3.contract import AsyncContract
from web3.types import TxParams, TxReceipt, Wei

from .models import DestinationCall

if TYPE_CHECKING:
    from .utils.contract_utility import ContractUtility
    from .utils.rofl_utility import RoflUtility

logger = logging.getLogger(__name__)


class TransactionRevertedError(Exception):
    """Raised when a mined destination transaction has a failed status."""


class DestinationSubmitter:
    """Submits destination calls and waits for durable confirmation."""

    GAS_BUFFER_PERCENT: int = 20
    ROFL_GAS_LIMIT: int = 300000

    def __init__(
        self,
        contract_util: "ContractUtility",
        rofl_util: "RoflUtility | None",
        contract_address: str,
        contract_name: str,
        confirmation_timeout: int = 120
    ) -> None:
        """
        Initialize the DestinationSubmitter.

        Args:
            contract_util: Utility for contract interactions
            rofl_util: ROFL utility for transaction submission (None for local mode)
            contract_address: Address of the destination contract
            contract_name: ABI name of the destination contract
            confirmation_timeout: Seconds to wait for a receipt
        """
        self.contract_util: ContractUtility = contract_util
        self.rofl_util: RoflUtility | None = rofl_util
        self.contract_address: str = Web3.to_checksum_address(contract_address)
        self.confirmation_timeout: int = confirmation_timeout

        self.contract: AsyncContract = self.contract_util.get_contract(
            self.contract_address, contract_name
        )

        mode = "ROFL production" if rofl_util else "local testing"
        logger.info(f"DestinationSubmitter initialized in {mode} mode")
        logger.info(f"  {contract_name} Address: {self.contract_address}")

    async def submit(self, call: DestinationCall) -> str:
        """
        Submit a call and wait until it is confirmed.

        The whole submission is bounded by the confirmation timeout.

        Args:
            call: The destination call to perform

        Returns:
            Transaction hash (0x-prefixed) or "rofl" when submitted via ROFL

        Raises:
            asyncio.TimeoutError: If confirmation takes too long
            TransactionRevertedError: If the transaction was mined but failed
            Exception: Any revert or transport error raised while submitting
        """
        logger.info(f"Submitting {call} to {self.contract_address}")
        return await asyncio.wait_for(
            self._submit(call), timeout=self.confirmation_timeout
        )

    async def _submit(self, call: DestinationCall) -> str:
        function = getattr(self.contract.functions, call.function_name)(*call.args)
        gas_price: Wei = await self.contract_util.w3.eth.gas_price

        match self.rofl_util:
            case None:
                # Local mode: estimating first surfaces a revert with its reason
                estimated_gas: int = await function.estimate_gas()
                gas: int = estimated_gas * (100 + self.GAS_BUFFER_PERCENT) // 100

                tx_hash = await function.transact({
                    'gas': gas,
                    'gasPrice': gas_price,
                })
                tx_hex = Web3.to_hex(tx_hash)
                logger.info(f"Transaction sent: {tx_hex}")

                receipt: TxReceipt = await self.contract_util.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.confirmation_timeout
                )

                if (status := receipt.get('status', 0)) != 1:
                    raise TransactionRevertedError(
                        f"Transaction {tx_hex} failed with status={status}"
                    )

                logger.info(f"✓ Transaction confirmed in block {receipt['blockNumber']}")
                return tx_hex

            case rofl_util:
                # Production mode: submit via ROFL
                tx_params: TxParams = {
                    'from': '0x0000000000000000000000000000000000000000',  # ROFL will override
                    'gas': self.ROFL_GAS_LIMIT,
                    'gasPrice': gas_price,
                    'value': Wei(0)
                }
                tx_data: dict[str, Any] = await function.build_transaction(tx_params)

                logger.debug(f"Submitting transaction to ROFL with gas={self.ROFL_GAS_LIMIT}")
                await rofl_util.submit_tx(tx_data)
                logger.info(f"✓ {call.function_name} submitted successfully via ROFL")
                return "rofl"
