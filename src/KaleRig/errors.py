"""Error taxonomy for chain-facing and mining operations."""
import re
from enum import IntEnum
from typing import Optional

import requests


class ContractError(IntEnum):
    AlreadyDiscovered = 1
    HomesteadNotFound = 2
    PailAmountTooLow = 3
    AlreadyHasPail = 4
    FarmIsPaused = 5
    HashIsInvalid = 6
    BlockNotFound = 7
    HarvestNotReady = 8
    KaleNotFound = 9
    PailNotFound = 10
    ZeroCountTooLow = 11
    AssetAdminMismatch = 12
    FarmIsNotPaused = 13


_CONTRACT_ERROR_RE = re.compile(r"Error\(Contract, #(\d+)\)")


class LedgerError(Exception):
    """Base class for every failure surfaced by a ledger client."""


class ContractRejection(LedgerError):
    """The contract rejected the call with one of the known error codes."""

    def __init__(self, kind: ContractError, message: str = ""):
        self.kind = kind
        self.code = int(kind)
        super().__init__(message or kind.name)

    def __str__(self):
        return self.kind.name


class TransportError(LedgerError):
    """Network, RPC or relay failure."""


class TransactionFailed(LedgerError):
    def __init__(self, tx_hash: Optional[str], status: str):
        self.tx_hash = tx_hash
        self.status = status
        super().__init__(f"tx Failed: {tx_hash} ({status})")


class MiningError(Exception):
    """The external search process failed to produce a result."""

    def __init__(self, message: str, returncode: Optional[int] = None, killed: bool = False):
        self.returncode = returncode
        self.killed = killed
        super().__init__(message)


def decode_contract_error(text) -> Optional[ContractError]:
    """Extract the contract error kind embedded in an error string, if any."""
    match = _CONTRACT_ERROR_RE.search(str(text))
    if not match:
        return None
    try:
        return ContractError(int(match.group(1)))
    except ValueError:
        return None


def wrap_ledger_error(exc: Exception) -> LedgerError:
    if isinstance(exc, LedgerError):
        return exc
    kind = decode_contract_error(exc)
    if kind is not None:
        return ContractRejection(kind, str(exc))
    if isinstance(exc, (requests.RequestException, ConnectionError, TimeoutError)):
        return TransportError(str(exc))
    return LedgerError(str(exc))


def describe_error(exc: Exception) -> str:
    """Short label for log lines: the contract error name or the raw message."""
    if isinstance(exc, ContractRejection):
        return exc.kind.name
    kind = decode_contract_error(exc)
    if kind is not None:
        return kind.name
    return str(exc) or exc.__class__.__name__
