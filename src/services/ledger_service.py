# coding: utf-8
"""
Ledger client for the certificate NFT contract

Mints certificates through web3.py and translates contract failures into
errors the certificate pipeline can tell apart:
- DuplicateCertificateError: number already minted on chain
- LedgerAbiMismatchError: deployed contract does not match the shipped ABI
- LedgerRevertedError: any other revert
- LedgerError: transport / node failures (safe to retry later)
"""
import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import aiohttp
from loguru import logger
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from src.services.certificates.config import LedgerConfig


ABI_PATH = Path(__file__).parent / "abi" / "certificate_nft.json"

# Errors raised by the node, the provider transport or web3 itself
NODE_ERRORS = (Web3Exception, ValueError, TimeoutError, OSError, aiohttp.ClientError)


# ===========================
# ERRORS
# ===========================


class LedgerError(Exception):
    """Ledger call failed. terminal=True means retrying cannot help."""

    terminal = False


class LedgerNotConfiguredError(LedgerError):
    terminal = True


class DuplicateCertificateError(LedgerError):
    terminal = True


class LedgerRevertedError(LedgerError):
    terminal = True


class LedgerAbiMismatchError(LedgerError):
    terminal = True


def translate_ledger_error(error: Exception) -> LedgerError:
    """Map a raw web3 / node error onto the ledger error taxonomy."""
    if isinstance(error, LedgerError):
        return error

    message = str(error)

    if "Certificate number already exists" in message:
        return DuplicateCertificateError("Certificate number already exists on the ledger")

    if "function selector was not recognized" in message:
        return LedgerAbiMismatchError(
            "Contract ABI mismatch or function missing; redeploy the contract and restart the backend"
        )

    if isinstance(error, ContractLogicError) or "revert" in message.lower():
        reason = getattr(error, "message", None) or message
        return LedgerRevertedError(f"Contract execution reverted: {reason}")

    return LedgerError(f"Ledger call failed: {message}")


@dataclass
class MintReceipt:
    """Result of a confirmed mint"""
    tx_hash: str
    block_number: int
    token_id: Optional[str]
    owner_address: str


# ===========================
# CLIENT
# ===========================


class LedgerService:
    """
    Certificate NFT contract client

    Features:
    - Lazy connection (first call connects and loads the ABI)
    - Signed transactions from the configured admin key
    - Gas estimation with headroom and fallback
    - Token id recovery from the CertificateMinted event
    - Optional transfer to the holder wallet after mint
    - Lookup by certificate number (recovers timed-out mints)
    """

    def __init__(self, config: LedgerConfig):
        self.config = config
        self.web3: Optional[AsyncWeb3] = None
        self.contract = None
        self.account = None
        self._connect_lock = asyncio.Lock()

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def connect(self) -> None:
        """Connect to the node and bind the contract"""
        if not self.is_configured:
            raise LedgerNotConfiguredError("Ledger is not configured")

        async with self._connect_lock:
            if self.contract is not None:
                return

            web3 = AsyncWeb3(
                AsyncHTTPProvider(
                    self.config.rpc_url,
                    request_kwargs={"timeout": self.config.receipt_timeout_sec},
                )
            )
            if not await web3.is_connected():
                raise LedgerError(f"Failed to connect to RPC node: {self.config.rpc_url}")

            abi = json.loads(ABI_PATH.read_text(encoding="utf-8"))
            private_key = self.config.private_key.strip()
            if not private_key.startswith("0x"):
                private_key = f"0x{private_key}"

            self.account = web3.eth.account.from_key(private_key)
            self.contract = web3.eth.contract(
                address=AsyncWeb3.to_checksum_address(self.config.contract_address),
                abi=abi,
            )
            self.web3 = web3

            logger.info(
                f"Ledger connected: contract={self.config.contract_address}, signer={self.account.address}"
            )

    async def mint_certificate(
        self,
        certificate_number: str,
        content_uri: str,
        recipient: Optional[str] = None,
    ) -> MintReceipt:
        """
        Mint a certificate token

        Args:
            certificate_number: Unique certificate number (contract rejects duplicates)
            content_uri: Metadata URI (ipfs://...)
            recipient: Wallet that should own the token; None keeps it on the signer

        Returns:
            MintReceipt of the confirmed mint

        Raises:
            LedgerError (or a terminal subclass)
        """
        await self.connect()

        try:
            mint_call = self.contract.functions.mintCertificate(certificate_number, content_uri)
            receipt = await self._send_transaction(mint_call)
        except LedgerError:
            raise
        except NODE_ERRORS as e:
            raise translate_ledger_error(e) from e

        token_id = self._extract_token_id(receipt)
        owner = self.account.address
        tx_hash = AsyncWeb3.to_hex(receipt["transactionHash"])

        logger.info(
            f"Certificate {certificate_number} minted: tx={tx_hash}, "
            f"block={receipt['blockNumber']}, token_id={token_id}"
        )

        if recipient and token_id is not None:
            target = AsyncWeb3.to_checksum_address(recipient)
            if target != owner:
                owner = await self._transfer_to(target, int(token_id), certificate_number)

        return MintReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            token_id=token_id,
            owner_address=owner,
        )

    async def verify_certificate(self, certificate_number: str) -> Optional[MintReceipt]:
        """
        Look a certificate number up on chain

        Returns:
            MintReceipt rebuilt from the CertificateMinted event, or None when
            the number was never minted

        Raises:
            LedgerError: Node failure, or the mint event could not be found
        """
        await self.connect()

        try:
            exists, token_id = await self.contract.functions.verifyCertificate(certificate_number).call()
            if not exists:
                return None

            owner = await self.contract.functions.ownerOf(token_id).call()
            events = await self.contract.events.CertificateMinted().get_logs(
                argument_filters={"tokenId": token_id},
                from_block=0,
            )
        except NODE_ERRORS as e:
            raise translate_ledger_error(e) from e

        if not events:
            raise LedgerError(f"Mint event for certificate {certificate_number} (token {token_id}) not found")

        return MintReceipt(
            tx_hash=AsyncWeb3.to_hex(events[0]["transactionHash"]),
            block_number=events[0]["blockNumber"],
            token_id=str(token_id),
            owner_address=owner,
        )

    async def recover_certificate(
        self,
        certificate_number: str,
        recipient: Optional[str] = None,
    ) -> Optional[MintReceipt]:
        """
        Receipt for a certificate that is already on chain

        A mint whose confirmation timed out can still be mined; its retry then
        fails as a duplicate. The existing token is returned instead and, if
        the signer still holds it, moved to the recipient.
        """
        found = await self.verify_certificate(certificate_number)
        if found is None:
            return None

        logger.warning(
            f"Certificate {certificate_number} already on chain: tx={found.tx_hash}, token_id={found.token_id}"
        )

        if recipient and found.token_id is not None:
            target = AsyncWeb3.to_checksum_address(recipient)
            if found.owner_address == self.account.address and target != found.owner_address:
                found.owner_address = await self._transfer_to(target, int(found.token_id), certificate_number)

        return found

    async def _transfer_to(self, target: str, token_id: int, certificate_number: str) -> str:
        """Move a freshly minted token to the holder; returns the resulting owner."""
        try:
            transfer_call = self.contract.functions.safeTransferFrom(
                self.account.address, target, token_id
            )
            await self._send_transaction(transfer_call)
            logger.info(f"Certificate {certificate_number} transferred to {target}")
            return target
        except (LedgerError, *NODE_ERRORS) as e:
            # Mint is already confirmed at this point
            logger.warning(
                f"Transfer of certificate {certificate_number} to {target} failed, "
                f"token stays with signer: {e}"
            )
            return self.account.address

    async def _send_transaction(self, contract_call) -> Any:
        """Build, sign and send a transaction; wait for a successful receipt."""
        sender = self.account.address
        nonce = await self.web3.eth.get_transaction_count(sender, "pending")

        try:
            estimated_gas = await contract_call.estimate_gas({"from": sender})
            gas_limit = int(estimated_gas * self.config.gas_multiplier)
        except ContractLogicError as e:
            # Reverts surface here first (e.g. duplicate certificate number)
            raise translate_ledger_error(e) from e
        except (Web3Exception, ValueError) as e:
            logger.warning(f"Gas estimation failed: {e}. Using default {self.config.fallback_gas}")
            gas_limit = self.config.fallback_gas

        chain_id = self.config.chain_id or await self.web3.eth.chain_id
        transaction = await contract_call.build_transaction({
            "from": sender,
            "nonce": nonce,
            "gas": gas_limit,
            "gasPrice": await self.web3.eth.gas_price,
            "chainId": chain_id,
        })

        signed = self.account.sign_transaction(transaction)
        tx_hash = await self.web3.eth.send_raw_transaction(signed.raw_transaction)
        logger.debug(f"Transaction sent: {AsyncWeb3.to_hex(tx_hash)}")

        try:
            receipt = await self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout_sec
            )
        except TimeExhausted as e:
            raise LedgerError(f"Transaction {AsyncWeb3.to_hex(tx_hash)} not confirmed in time") from e

        if receipt["status"] == 0:
            raise LedgerRevertedError(
                f"Contract execution reverted: transaction {AsyncWeb3.to_hex(tx_hash)} failed on-chain"
            )

        return receipt

    def _extract_token_id(self, receipt) -> Optional[str]:
        events = self.contract.events.CertificateMinted().process_receipt(receipt, errors=DISCARD)
        if not events:
            logger.warning("CertificateMinted event not found in receipt")
            return None
        return str(events[0]["args"]["tokenId"])
