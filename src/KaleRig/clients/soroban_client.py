"""Soroban RPC implementation of the farm ledger client."""
import base64
import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests
from stellar_sdk import Asset, Keypair, SorobanServer, StrKey, TransactionBuilder, scval
from stellar_sdk import xdr as stellar_xdr
from stellar_sdk.exceptions import SdkError
from stellar_sdk.soroban_rpc import GetTransactionStatus, SendTransactionStatus
from stellar_sdk.soroban_server import Durability

from ..errors import LedgerError, TransactionFailed, TransportError, wrap_ledger_error
from .ledger import SUBMIT_OPS, BlockDetails, ChainHead, LedgerClient, Pail, SubmitResult
from .relay_client import RelayClient

PUBLIC_NETWORK_PASSPHRASE = "Public Global Stellar Network ; September 2015"
DEFAULT_BASE_FEE = 10_000_000
TX_TIMEOUT_SECS = 300
POLL_TIMEOUT_SECS = 60


def _native(value) -> Any:
    return scval.to_native(value)


def _b64(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return base64.b64encode(bytes(value)).decode("ascii")


class SorobanLedgerClient(LedgerClient):
    def __init__(self, cfg: dict, relay: Optional[RelayClient] = None):
        super().__init__()
        stellar = cfg.get("stellar", {})
        self.contract_id = stellar.get("contract")
        self.network_passphrase = stellar.get("network_passphrase") or PUBLIC_NETWORK_PASSPHRASE
        self.base_fee = int(stellar.get("base_fee", DEFAULT_BASE_FEE))
        self.horizon_url = (stellar.get("horizon_url") or "").rstrip("/")
        self.asset_code = stellar.get("asset_code") or ""
        self.asset_issuer = stellar.get("asset_issuer") or ""
        self.timeout = int(stellar.get("request_timeout_secs", 30))
        self.server = SorobanServer(stellar.get("rpc_url"))
        self.relay = relay
        self.log = logging.getLogger("KaleRig.ledger")
        self._signers: Dict[str, Keypair] = {}
        self._trusted: set = set()
        self._lock = threading.Lock()

    def add_signer(self, secret: str) -> str:
        if not StrKey.is_valid_ed25519_secret_seed(secret or ""):
            raise ValueError("Invalid farmer secret key")
        keypair = Keypair.from_secret(secret)
        self._signers[keypair.public_key] = keypair
        return keypair.public_key

    def _contract_data(self, key: stellar_xdr.SCVal, durability: Durability, contract_id: Optional[str] = None):
        try:
            entry = self.server.get_contract_data(contract_id or self.contract_id, key, durability)
        except (SdkError, requests.RequestException) as e:
            raise wrap_ledger_error(e) from e
        if entry is None:
            return None
        return stellar_xdr.LedgerEntryData.from_xdr(entry.xdr).contract_data.val

    def get_current_block(self) -> Optional[ChainHead]:
        key = stellar_xdr.SCVal(stellar_xdr.SCValType.SCV_LEDGER_KEY_CONTRACT_INSTANCE)
        val = self._contract_data(key, Durability.PERSISTENT)
        if val is None or val.instance is None or val.instance.storage is None:
            return None
        head = ChainHead(block=0)
        for item in val.instance.storage.sc_map:
            name = _native(item.key)
            name = name[0] if isinstance(name, list) and name else name
            if name == "FarmIndex":
                head.block = int(_native(item.val))
            elif name == "FarmEntropy":
                head.hash = _b64(_native(item.val))
        return head

    def get_block_details(self, block: int) -> Optional[BlockDetails]:
        key = scval.to_vec([scval.to_symbol("Block"), scval.to_uint32(int(block))])
        val = self._contract_data(key, Durability.TEMPORARY)
        if val is None:
            return None
        data = _native(val)
        entropy = _b64(data.pop("entropy", None))
        return BlockDetails(
            timestamp=int(data.get("timestamp", 0)),
            staked_total=int(data.get("staked_total", data.get("staked", 0)) or 0),
            zero_threshold=int(data.get("min_zeros", data.get("pow_zeros", 0)) or 0),
            reclaimed=int(data.get("reclaimed", 0) or 0),
            entropy=entropy,
            extra={k: v for k, v in data.items() if isinstance(v, (int, str, bool, float))},
        )

    def get_pail(self, farmer: str, block: int) -> Optional[Pail]:
        key = scval.to_vec([scval.to_symbol("Pail"), scval.to_address(farmer), scval.to_uint32(int(block))])
        val = self._contract_data(key, Durability.TEMPORARY)
        if val is None:
            return None
        data = _native(val)
        return Pail(
            sequence=data.get("sequence"),
            zeros=data.get("zeros"),
            stake=data.get("stake"),
            gap=data.get("gap"),
        )

    def _operation(self, op: str, farmer: str, args: dict):
        address = scval.to_address(farmer)
        if op == "plant":
            return self.contract_id, "plant", [address, scval.to_int128(int(args["amount"]))]
        if op == "work":
            return self.contract_id, "work", [
                address,
                scval.to_bytes(bytes.fromhex(args["hash"])),
                scval.to_uint128(int(args["nonce"])),
            ]
        if op == "harvest":
            return self.contract_id, "harvest", [address, scval.to_uint32(int(args["block"]))]
        blocks = scval.to_vec([scval.to_uint32(int(b)) for b in args["blocks"]])
        return args["contract"], "harvest", [address, blocks]

    def submit(self, op: str, farmer: str, **args) -> SubmitResult:
        if op not in SUBMIT_OPS:
            raise ValueError(f"Unknown operation {op}")
        keypair = self._signers.get(farmer)
        if keypair is None:
            raise LedgerError(f"Unauthorized: {farmer}")
        if op in ("harvest", "tractor"):
            self.ensure_trustline(farmer)

        try:
            contract_id, function_name, parameters = self._operation(op, farmer, args)
            source = self.server.load_account(farmer)
            tx = (
                TransactionBuilder(source, self.network_passphrase, base_fee=self.base_fee)
                .append_invoke_contract_function_op(
                    contract_id=contract_id, function_name=function_name, parameters=parameters
                )
                .set_timeout(TX_TIMEOUT_SECS)
                .build()
            )
            tx = self.server.prepare_transaction(tx)
            tx.sign(keypair)
            if self.relay is not None:
                return self._from_relay(self.relay.submit(tx.to_xdr()))
            return self._send_and_wait(tx)
        except LedgerError:
            raise
        except (SdkError, requests.RequestException, ValueError, KeyError, TypeError) as e:
            raise wrap_ledger_error(e) from e

    def _send_and_wait(self, tx) -> SubmitResult:
        sent = self.server.send_transaction(tx)
        if sent.status == SendTransactionStatus.ERROR:
            raise TransactionFailed(sent.hash, f"ERROR {sent.error_result_xdr}")
        if sent.status == SendTransactionStatus.TRY_AGAIN_LATER:
            raise TransportError(f"RPC busy, transaction {sent.hash} not accepted (TRY_AGAIN_LATER)")
        deadline = time.time() + POLL_TIMEOUT_SECS
        while True:
            result = self.server.get_transaction(sent.hash)
            if result.status != GetTransactionStatus.NOT_FOUND:
                break
            if time.time() > deadline:
                raise TransportError(f"Timed out waiting for transaction {sent.hash}")
            time.sleep(1)
        if result.status != GetTransactionStatus.SUCCESS:
            raise TransactionFailed(sent.hash, str(result.status))
        return SubmitResult(
            status="SUCCESS",
            tx_hash=sent.hash,
            fee_charged=self._fee_charged(result.result_xdr),
            return_value=self._return_value(result.result_meta_xdr),
        )

    def _from_relay(self, data: Dict[str, Any]) -> SubmitResult:
        status = str(data.get("status", "")).upper()
        tx_hash = data.get("hash") or data.get("txHash")
        if status != "SUCCESS":
            raise TransactionFailed(tx_hash, status or "UNKNOWN")
        fee = data.get("feeCharged")
        if fee is None and data.get("resultXdr"):
            fee = self._fee_charged(data["resultXdr"])
        return SubmitResult(
            status="SUCCESS",
            tx_hash=tx_hash,
            fee_charged=int(fee or 0),
            return_value=self._return_value(data.get("resultMetaXdr")),
        )

    @staticmethod
    def _fee_charged(result_xdr: Optional[str]) -> int:
        if not result_xdr:
            return 0
        return int(stellar_xdr.TransactionResult.from_xdr(result_xdr).fee_charged.int64)

    @staticmethod
    def _return_value(meta_xdr: Optional[str]):
        if not meta_xdr:
            return None
        meta = stellar_xdr.TransactionMeta.from_xdr(meta_xdr)
        for version in ("v4", "v3"):
            body = getattr(meta, version, None)
            soroban_meta = getattr(body, "soroban_meta", None) if body is not None else None
            if soroban_meta is not None and soroban_meta.return_value is not None:
                return _native(soroban_meta.return_value)
        return None

    def _load_horizon_balances(self, farmer: str) -> List[dict]:
        r = requests.get(f"{self.horizon_url}/accounts/{farmer}", timeout=self.timeout)
        r.raise_for_status()
        return r.json().get("balances", [])

    def ensure_trustline(self, farmer: str) -> None:
        """Create the KALE trustline once and refresh the farmer's balances."""
        if not self.horizon_url or not self.asset_code or not StrKey.is_valid_ed25519_public_key(self.asset_issuer):
            return
        try:
            balances = self._load_horizon_balances(farmer)
            trusted = any(
                b.get("asset_code") == self.asset_code and b.get("asset_issuer") == self.asset_issuer
                for b in balances
            )
            if not trusted and farmer not in self._trusted:
                source = self.server.load_account(farmer)
                tx = (
                    TransactionBuilder(source, self.network_passphrase, base_fee=self.base_fee)
                    .append_change_trust_op(asset=Asset(self.asset_code, self.asset_issuer))
                    .set_timeout(TX_TIMEOUT_SECS)
                    .build()
                )
                tx.sign(self._signers[farmer])
                self.server.send_transaction(tx)
                self.log.info("Trustline set for %s to %s:%s", farmer, self.asset_code, self.asset_issuer)
            with self._lock:
                self._trusted.add(farmer)
                native = next((b.get("balance") for b in balances if b.get("asset_type") == "native"), "0")
                asset = next(
                    (b.get("balance") for b in balances
                     if b.get("asset_code") == self.asset_code and b.get("asset_issuer") == self.asset_issuer),
                    "0",
                )
                self.balances[farmer] = {"XLM": native, self.asset_code: asset}
            self.log.info("Farmer %s balances: %s %s | %s XLM", farmer, asset, self.asset_code, native)
        except (SdkError, requests.RequestException) as e:
            self.log.warning("Farmer %s balance refresh failed: %s", farmer, e)

    def close(self) -> None:
        self.server.close()
        if self.relay is not None:
            self.relay.close()
