"""
Filecoin FEVM client for the storage payments contracts.

Implements ChainReader, CatalogReader and ChainWriter over web3. Works for
Filecoin mainnet and the calibration testnet.
"""

import base64
import logging
import threading
import time
from typing import Dict, List, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from foc_storage_guard.chain.base import CatalogReader, ChainReader, ChainWriter
from foc_storage_guard.core.errors import ChainError, FailureCause
from foc_storage_guard.core.models import (
    Dataset,
    OperatorApproval,
    Piece,
    PriceTable,
    Provider,
    TransactionReceipt,
    WalletState,
)

logger = logging.getLogger(__name__)

NETWORKS = {
    "mainnet": {
        "chain_id": 314,
        "name": "Filecoin Mainnet",
        "rpc_url": "https://api.node.glif.io/rpc/v1",
    },
    "calibration": {
        "chain_id": 314159,
        "name": "Filecoin Calibration",
        "rpc_url": "https://api.calibration.node.glif.io/rpc/v1",
    },
}

RECEIPT_TIMEOUT_SECONDS = 300
PERMIT_TTL_SECONDS = 3600
GAS_MULTIPLIER = 1.2
PAGE_SIZE = 100
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _param(spec):
    if isinstance(spec, dict):
        return spec
    name, type_ = spec
    return {"name": name, "type": type_}


def _fn(name, inputs, outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [_param(p) for p in inputs],
        "outputs": [_param(p) for p in outputs],
    }


def _tuple(name, components, array=False):
    return {
        "name": name,
        "type": "tuple[]" if array else "tuple",
        "components": [_param(c) for c in components],
    }


ERC20_ABI = [
    _fn("balanceOf", [("account", "address")], [("", "uint256")]),
    _fn("nonces", [("owner", "address")], [("", "uint256")]),
    _fn("name", [], [("", "string")]),
    _fn("version", [], [("", "string")]),
]

PAYMENTS_ABI = [
    _fn(
        "accounts",
        [("token", "address"), ("owner", "address")],
        [("funds", "uint256"), ("lockupCurrent", "uint256"),
         ("lockupRate", "uint256"), ("lockupLastSettledAt", "uint256")],
    ),
    _fn(
        "operatorApprovals",
        [("token", "address"), ("client", "address"), ("operator", "address")],
        [("isApproved", "bool"), ("rateAllowance", "uint256"), ("lockupAllowance", "uint256"),
         ("rateUsage", "uint256"), ("lockupUsage", "uint256"), ("maxLockupPeriod", "uint256")],
    ),
    _fn(
        "setOperatorApproval",
        [("token", "address"), ("operator", "address"), ("approved", "bool"),
         ("rateAllowance", "uint256"), ("lockupAllowance", "uint256"), ("maxLockupPeriod", "uint256")],
        mutability="nonpayable",
    ),
    _fn(
        "depositWithPermitAndApproveOperator",
        [("token", "address"), ("to", "address"), ("amount", "uint256"), ("deadline", "uint256"),
         ("v", "uint8"), ("r", "bytes32"), ("s", "bytes32"), ("operator", "address"),
         ("rateAllowance", "uint256"), ("lockupAllowance", "uint256"), ("maxLockupPeriod", "uint256")],
        mutability="nonpayable",
    ),
]

WARM_STORAGE_ABI = [
    _fn("getServicePrice", [], [_tuple("pricing", [
        ("pricePerTiBPerMonthNoCDN", "uint256"),
        ("pricePerTiBPerMonthWithCDN", "uint256"),
        ("tokenAddress", "address"),
        ("epochsPerMonth", "uint256"),
        ("minimumPricePerMonth", "uint256"),
    ])]),
]

_DATASET_INFO = [
    ("pdpRailId", "uint256"),
    ("cacheMissRailId", "uint256"),
    ("cdnRailId", "uint256"),
    ("payer", "address"),
    ("payee", "address"),
    ("serviceProvider", "address"),
    ("commissionBps", "uint256"),
    ("clientDataSetId", "uint256"),
    ("pdpEndEpoch", "uint256"),
    ("providerId", "uint256"),
    ("dataSetId", "uint256"),
]

STORAGE_VIEW_ABI = [
    _fn("getClientDataSets", [("client", "address")], [_tuple("infos", _DATASET_INFO, array=True)]),
    _fn("getDataSet", [("dataSetId", "uint256")], [_tuple("info", _DATASET_INFO)]),
    _fn("getAllDataSetMetadata", [("dataSetId", "uint256")], [("keys", "string[]"), ("values", "string[]")]),
    _fn(
        "getAllPieceMetadata",
        [("dataSetId", "uint256"), ("pieceId", "uint256")],
        [("keys", "string[]"), ("values", "string[]")],
    ),
    _fn("getApprovedProviderIds", [], [("providerIds", "uint256[]")]),
]

PDP_VERIFIER_ABI = [
    _fn(
        "getActivePieces",
        [("setId", "uint256"), ("offset", "uint256"), ("limit", "uint256")],
        [_tuple("pieces", [("data", "bytes")], array=True), ("pieceIds", "uint256[]"), ("hasMore", "bool")],
    ),
]

PROVIDER_REGISTRY_ABI = [
    _fn("getProvider", [("providerId", "uint256")], [_tuple("provider", [
        ("providerId", "uint256"),
        _tuple("info", [
            ("serviceProvider", "address"),
            ("payee", "address"),
            ("name", "string"),
            ("description", "string"),
            ("isActive", "bool"),
        ]),
    ])]),
    _fn(
        "getActiveProviders",
        [("offset", "uint256"), ("limit", "uint256")],
        [("providerIds", "uint256[]"), ("hasMore", "bool")],
    ),
]


def classify_error(error: Exception) -> FailureCause:
    """Map a web3 or node error onto a FailureCause."""
    if isinstance(error, ContractLogicError):
        return FailureCause.TRANSACTION_REVERTED
    message = str(error).lower()
    if "insufficient funds" in message or "insufficient balance" in message:
        return FailureCause.INSUFFICIENT_WALLET_FUNDS
    if "signature" in message or "invalid sender" in message:
        return FailureCause.SIGNATURE_REJECTED
    return FailureCause.RPC_FAILURE


def piece_cid_to_string(data: bytes) -> str:
    """Render raw CID bytes as a base32 multibase string (bafk...)."""
    return "b" + base64.b32encode(data).decode("ascii").lower().rstrip("=")


class FilecoinClient(ChainReader, CatalogReader, ChainWriter):
    """
    Reads and writes the payments and warm storage contracts for one wallet.

    The wallet is derived from the private key. The stable token address is
    taken from the warm storage price table unless given explicitly. Dataset
    and provider queries need the storage view, PDP verifier and provider
    registry addresses.

    Reads may run concurrently; contracts are bound once under a lock.
    """

    def __init__(
        self,
        private_key: str,
        warm_storage_address: str,
        payments_address: str,
        network: str = "calibration",
        rpc_url: Optional[str] = None,
        token_address: Optional[str] = None,
        storage_view_address: Optional[str] = None,
        pdp_verifier_address: Optional[str] = None,
        provider_registry_address: Optional[str] = None,
        w3=None,
    ):
        if network not in NETWORKS:
            raise ValueError(f"Unknown network: {network}. Must be one of {sorted(NETWORKS)}")
        self.network = network
        self.chain_id = NETWORKS[network]["chain_id"]
        self.rpc_url = rpc_url or NETWORKS[network]["rpc_url"]
        self.warm_storage_address = Web3.to_checksum_address(warm_storage_address)
        self.payments_address = Web3.to_checksum_address(payments_address)
        self.storage_view_address = _checksum_or_none(storage_view_address)
        self.pdp_verifier_address = _checksum_or_none(pdp_verifier_address)
        self.provider_registry_address = _checksum_or_none(provider_registry_address)
        self._token_address = _checksum_or_none(token_address)
        self._account = Account.from_key(private_key)
        self._w3 = w3
        self._lock = threading.Lock()
        self._contracts: Dict[str, object] = {}
        self._token_contract = None

    @property
    def address(self) -> str:
        return self._account.address

    def _connect(self):
        """Lazy connection to the chain; binds every configured contract at once."""
        with self._lock:
            if self._w3 is None:
                self._w3 = Web3(Web3.HTTPProvider(self.rpc_url))
            if not self._contracts:
                bindings = {
                    "payments": (self.payments_address, PAYMENTS_ABI),
                    "warm_storage": (self.warm_storage_address, WARM_STORAGE_ABI),
                    "storage_view": (self.storage_view_address, STORAGE_VIEW_ABI),
                    "pdp_verifier": (self.pdp_verifier_address, PDP_VERIFIER_ABI),
                    "provider_registry": (self.provider_registry_address, PROVIDER_REGISTRY_ABI),
                }
                self._contracts = {
                    name: self._w3.eth.contract(address=address, abi=abi)
                    for name, (address, abi) in bindings.items()
                    if address is not None
                }
        return self._w3

    def _contract(self, name: str):
        self._connect()
        return self._contracts[name]

    def _token(self):
        w3 = self._connect()
        with self._lock:
            if self._token_contract is None:
                if self._token_address is None:
                    pricing = self._contracts["warm_storage"].functions.getServicePrice().call()
                    self._token_address = Web3.to_checksum_address(pricing[2])
                self._token_contract = w3.eth.contract(address=self._token_address, abi=ERC20_ABI)
            return self._token_contract

    def _require(self, address: Optional[str], env_name: str) -> None:
        if address is None:
            raise ValueError(f"{env_name} is not configured")

    # Reads

    def read_wallet(self) -> WalletState:
        try:
            w3 = self._connect()
            token = self._token()
            native = w3.eth.get_balance(self.address)
            stable = token.functions.balanceOf(self.address).call()
            funds, lockup_current, lockup_rate, last_settled = self._contract("payments").functions.accounts(
                token.address, self.address
            ).call()
            current_epoch = w3.eth.block_number
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read wallet state: {e}", classify_error(e)) from e

        # Lockup accrued since the last settlement is not spendable either
        accrued = lockup_rate * max(0, current_epoch - last_settled)
        available = max(0, funds - lockup_current - accrued)
        return WalletState(native_balance=native, stable_balance=stable, available_funds=available)

    def read_operator_approval(self) -> OperatorApproval:
        try:
            token = self._token()
            approval = self._contract("payments").functions.operatorApprovals(
                token.address, self.address, self.warm_storage_address
            ).call()
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read operator approval: {e}", classify_error(e)) from e

        is_approved, rate_allowance, lockup_allowance, rate_used, lockup_used, max_lockup_period = approval
        return OperatorApproval(
            is_approved=is_approved,
            rate_allowance=rate_allowance,
            lockup_allowance=lockup_allowance,
            rate_used=rate_used,
            lockup_used=lockup_used,
            max_lockup_period=max_lockup_period,
        )

    def read_price_table(self) -> PriceTable:
        try:
            price_no_cdn, price_cdn, token_address, epochs_per_month, minimum = (
                self._contract("warm_storage").functions.getServicePrice().call()
            )
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read service price: {e}", classify_error(e)) from e

        return PriceTable(
            price_per_tib_per_month=price_no_cdn,
            minimum_price_per_month=minimum,
            epochs_per_month=epochs_per_month,
            price_per_tib_per_month_cdn=price_cdn,
            token_address=token_address,
        )

    # Catalog reads

    def list_datasets(self) -> List[Dataset]:
        self._require(self.storage_view_address, "STORAGE_VIEW_ADDRESS")
        self._require(self.pdp_verifier_address, "PDP_VERIFIER_ADDRESS")
        try:
            rows = self._contract("storage_view").functions.getClientDataSets(self.address).call()
            return [self._dataset(row) for row in rows]
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read datasets: {e}", classify_error(e)) from e

    def read_dataset(self, dataset_id: int) -> Optional[Dataset]:
        self._require(self.storage_view_address, "STORAGE_VIEW_ADDRESS")
        self._require(self.pdp_verifier_address, "PDP_VERIFIER_ADDRESS")
        try:
            row = self._contract("storage_view").functions.getDataSet(dataset_id).call()
            # Unknown IDs come back as a zeroed struct
            if row[3] == ZERO_ADDRESS:
                return None
            return self._dataset(row)
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read dataset {dataset_id}: {e}", classify_error(e)) from e

    def list_providers(self, only_approved: bool = True) -> List[Provider]:
        self._require(self.storage_view_address, "STORAGE_VIEW_ADDRESS")
        self._require(self.provider_registry_address, "PROVIDER_REGISTRY_ADDRESS")
        try:
            approved = set(self._contract("storage_view").functions.getApprovedProviderIds().call())
            if only_approved:
                provider_ids = sorted(approved)
            else:
                provider_ids = self._active_provider_ids()
            registry = self._contract("provider_registry")
            providers = [
                self._provider(registry.functions.getProvider(provider_id).call(), approved)
                for provider_id in provider_ids
            ]
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read providers: {e}", classify_error(e)) from e
        return [provider for provider in providers if provider.is_active]

    def read_provider(self, provider_id: int) -> Optional[Provider]:
        self._require(self.storage_view_address, "STORAGE_VIEW_ADDRESS")
        self._require(self.provider_registry_address, "PROVIDER_REGISTRY_ADDRESS")
        try:
            try:
                row = self._contract("provider_registry").functions.getProvider(provider_id).call()
            except ContractLogicError:
                # The registry reverts for IDs it never assigned
                return None
            if row[0] == 0:
                return None
            approved = set(self._contract("storage_view").functions.getApprovedProviderIds().call())
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to read provider {provider_id}: {e}", classify_error(e)) from e
        return self._provider(row, approved)

    def _active_provider_ids(self) -> List[int]:
        registry = self._contract("provider_registry")
        provider_ids: List[int] = []
        while True:
            page, has_more = registry.functions.getActiveProviders(len(provider_ids), PAGE_SIZE).call()
            provider_ids.extend(page)
            if not has_more or not page:
                return provider_ids

    def _dataset(self, row) -> Dataset:
        (_, _, cdn_rail_id, payer, payee, _, _, _, pdp_end_epoch, provider_id, dataset_id) = row
        keys, values = self._contract("storage_view").functions.getAllDataSetMetadata(dataset_id).call()
        return Dataset(
            dataset_id=dataset_id,
            provider_id=provider_id,
            payer=payer,
            payee=payee,
            with_cdn=cdn_rail_id != 0,
            pdp_end_epoch=pdp_end_epoch,
            metadata=dict(zip(keys, values)),
            pieces=tuple(self._pieces(dataset_id)),
        )

    def _pieces(self, dataset_id: int) -> List[Piece]:
        verifier = self._contract("pdp_verifier")
        view = self._contract("storage_view")
        pieces: List[Piece] = []
        while True:
            cids, piece_ids, has_more = verifier.functions.getActivePieces(
                dataset_id, len(pieces), PAGE_SIZE
            ).call()
            for cid, piece_id in zip(cids, piece_ids):
                keys, values = view.functions.getAllPieceMetadata(dataset_id, piece_id).call()
                pieces.append(Piece(
                    piece_id=piece_id,
                    piece_cid=piece_cid_to_string(cid[0]),
                    metadata=dict(zip(keys, values)),
                ))
            if not has_more or not piece_ids:
                return pieces

    @staticmethod
    def _provider(row, approved) -> Provider:
        provider_id, (service_provider, payee, name, description, is_active) = row
        return Provider(
            provider_id=provider_id,
            service_provider=service_provider,
            payee=payee,
            name=name,
            description=description,
            is_active=is_active,
            is_approved=provider_id in approved,
        )

    # Writes

    def deposit_with_permit_and_approve(
        self,
        amount: int,
        rate_allowance: int,
        lockup_allowance: int,
        max_lockup_period: int,
    ) -> str:
        try:
            w3 = self._connect()
            token = self._token()
            deadline = w3.eth.get_block("latest")["timestamp"] + PERMIT_TTL_SECONDS
            v, r, s = self._sign_permit(token, amount, deadline)
            call = self._contract("payments").functions.depositWithPermitAndApproveOperator(
                token.address, self.address, amount, deadline, v, r, s,
                self.warm_storage_address, rate_allowance, lockup_allowance, max_lockup_period,
            )
            return self._send(call)
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Deposit transaction failed: {e}", classify_error(e)) from e

    def approve_service(self, rate_allowance: int, lockup_allowance: int, max_lockup_period: int) -> str:
        try:
            token = self._token()
            call = self._contract("payments").functions.setOperatorApproval(
                token.address, self.warm_storage_address, True,
                rate_allowance, lockup_allowance, max_lockup_period,
            )
            return self._send(call)
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Approval transaction failed: {e}", classify_error(e)) from e

    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> TransactionReceipt:
        w3 = self._connect()
        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS)
            target = receipt["blockNumber"] + confirmations - 1
            while w3.eth.block_number < target:
                time.sleep(1)
        except TimeExhausted as e:
            raise ChainError(f"Timed out waiting for {tx_hash}", FailureCause.RPC_FAILURE, tx_hash) from e
        except (Web3Exception, ValueError, OSError) as e:
            raise ChainError(f"Failed to confirm {tx_hash}: {e}", classify_error(e), tx_hash) from e

        return TransactionReceipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            succeeded=receipt["status"] == 1,
        )

    def _sign_permit(self, token, amount: int, deadline: int):
        """Sign an EIP-2612 permit letting the payments contract pull amount."""
        typed_data = {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "Permit": [
                    {"name": "owner", "type": "address"},
                    {"name": "spender", "type": "address"},
                    {"name": "value", "type": "uint256"},
                    {"name": "nonce", "type": "uint256"},
                    {"name": "deadline", "type": "uint256"},
                ],
            },
            "primaryType": "Permit",
            "domain": {
                "name": token.functions.name().call(),
                "version": token.functions.version().call(),
                "chainId": self.chain_id,
                "verifyingContract": token.address,
            },
            "message": {
                "owner": self.address,
                "spender": self.payments_address,
                "value": amount,
                "nonce": token.functions.nonces(self.address).call(),
                "deadline": deadline,
            },
        }
        signed = self._account.sign_message(encode_typed_data(full_message=typed_data))
        return signed.v, signed.r.to_bytes(32, "big"), signed.s.to_bytes(32, "big")

    def _send(self, call) -> str:
        w3 = self._w3
        tx = call.build_transaction({
            "from": self.address,
            # Pending count includes transactions still in the mempool
            "nonce": w3.eth.get_transaction_count(self.address, "pending"),
            "chainId": self.chain_id,
        })
        tx["gas"] = int(tx["gas"] * GAS_MULTIPLIER)

        signed = self._account.sign_transaction(tx)
        tx_hash = Web3.to_hex(w3.eth.send_raw_transaction(signed.raw_transaction))
        logger.info("Submitted transaction %s", tx_hash)
        return tx_hash


def _checksum_or_none(address: Optional[str]) -> Optional[str]:
    return Web3.to_checksum_address(address) if address else None
