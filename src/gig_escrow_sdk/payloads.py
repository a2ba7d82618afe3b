"""
Wallet payment payloads for gig orders.

Converts an order snapshot (or a gig, before an order exists) into the
instruction a specific wallet understands:

- EVM_DIRECT_CALL: ERC-681 URI calling the escrow contract
  ``ethereum:<contract>@<chainId>/payOrder?uint256=<orderId>&value=<wei>``
- EVM_URI_AMOUNT: ERC-681 plain transfer to the provider
  ``ethereum:<provider>@<chainId>?value=<wei>&data=<hex memo>``
- NATIVE_LEDGER_URI: native wallet deep link with a decimal amount
  ``hedera://pay?to=<address>&amount=<decimal>&memo=<urlEncodedMemo>``

Field names and ordering of the URIs and of ``clipboard_json`` are pasted
into third-party wallets and must not change.

Example:
    >>> builder = PaymentPayloadBuilder(HEDERA_TESTNET, contract_address="0x...")
    >>> payload = builder.build(snapshot, WalletProtocol.EVM_DIRECT_CALL)
    >>> payload.uri
    'ethereum:0x...@296/payOrder?uint256=7&value=1500000000000000000'
"""

import json
import unicodedata
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union
from urllib.parse import quote

from eth_abi import encode
from web3 import Web3

from gig_escrow_sdk.amounts import from_base_units, normalize_amount, to_base_units
from gig_escrow_sdk.models import Gig, OrderSnapshot, PaymentPayload, WalletProtocol
from gig_escrow_sdk.networks import NetworkConfig, is_valid_account_id, is_valid_evm_address

PAY_ORDER_SIGNATURE = "payOrder(uint256)"
ORDER_GIG_SIGNATURE = "orderGig(uint256)"

DEFAULT_QR_OPTIONS: dict[str, Any] = {
    "width": 256,
    "margin": 2,
    "color": {"dark": "#000000", "light": "#FFFFFF"},
}

_ZWJ = "\u200d"


@dataclass(frozen=True)
class ProtocolSpec:
    """Per-protocol denomination and memo limits."""

    decimals: int
    memo_max_chars: int
    memo_max_bytes: Optional[int] = None


class QRRenderer(Protocol):
    """External QR encoder (e.g. a ``qrcode`` or ``segno`` wrapper)."""

    def encode(self, uri: str, options: dict[str, Any]) -> bytes: ...


def _hex(data: bytes) -> str:
    # HexBytes.hex() prefixes 0x in newer hexbytes releases, plain bytes never do
    return "0x" + bytes(data).hex()


def function_selector(signature: str) -> str:
    """4-byte selector of a function signature, e.g. ``payOrder(uint256)``."""
    return _hex(Web3.keccak(text=signature)[:4])


def encode_call(signature: str, record_id: int) -> str:
    """Selector plus ABI-encoded uint256 argument."""
    return function_selector(signature) + encode(["uint256"], [record_id]).hex()


def _is_extending(char: str) -> bool:
    """Characters that attach to the preceding one within a grapheme."""
    if char == _ZWJ or unicodedata.combining(char):
        return True
    code = ord(char)
    return (
        unicodedata.category(char) in ("Mn", "Me", "Mc")
        or 0xFE00 <= code <= 0xFE0F  # variation selectors
        or 0x1F3FB <= code <= 0x1F3FF  # skin tone modifiers
        or 0xE0020 <= code <= 0xE007F  # tag characters
    )


def _is_regional_indicator(char: str) -> bool:
    return 0x1F1E6 <= ord(char) <= 0x1F1FF


def _safe_cut(text: str, index: int) -> int:
    """Move a cut index left until it sits on a grapheme boundary."""
    while 0 < index < len(text):
        if _is_extending(text[index]) or text[index - 1] == _ZWJ:
            index -= 1
            continue
        if _is_regional_indicator(text[index]) and _is_regional_indicator(text[index - 1]):
            run = 0
            while index - run - 1 >= 0 and _is_regional_indicator(text[index - run - 1]):
                run += 1
            if run % 2:
                index -= 1
                continue
        break
    return index


def truncate_memo(memo: str, max_chars: int, max_bytes: Optional[int] = None) -> str:
    """
    Truncate a memo to a protocol's limits without splitting a character.

    Cuts on code-point boundaries, then backs off so that combining marks,
    joiners, modifiers and flag pairs stay with their base character.
    Unencodable code points (lone surrogates) are replaced first, so the
    result always encodes as valid UTF-8.

    Args:
        memo: Memo text
        max_chars: Maximum length in characters (code points)
        max_bytes: Optional maximum UTF-8 byte length

    Returns:
        Truncated memo
    """
    if max_chars < 0 or (max_bytes is not None and max_bytes < 0):
        raise ValueError("Memo limits must be non-negative")
    text = memo.encode("utf-8", "replace").decode("utf-8")

    cut = min(len(text), max_chars)
    if max_bytes is not None:
        while cut > 0 and len(text[:cut].encode("utf-8")) > max_bytes:
            cut -= 1
    if cut >= len(text):
        return text
    return text[:_safe_cut(text, cut)]


class PaymentPayloadBuilder:
    """
    Builds wallet payment payloads for one configured network.

    Args:
        network: Network the escrow contract is deployed on
        contract_address: Escrow (marketplace) contract address
        evm_memo_max_chars: Memo limit for the ``ethereum:`` protocols
    """

    def __init__(
        self,
        network: NetworkConfig,
        contract_address: str,
        *,
        evm_memo_max_chars: int = 256,
    ):
        if not is_valid_evm_address(contract_address):
            raise ValueError(f"Invalid contract address: {contract_address}")
        self.network = network
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.protocols: dict[WalletProtocol, ProtocolSpec] = {
            WalletProtocol.EVM_DIRECT_CALL: ProtocolSpec(
                decimals=network.evm_decimals,
                memo_max_chars=evm_memo_max_chars,
            ),
            WalletProtocol.EVM_URI_AMOUNT: ProtocolSpec(
                decimals=network.evm_decimals,
                memo_max_chars=evm_memo_max_chars,
            ),
            WalletProtocol.NATIVE_LEDGER_URI: ProtocolSpec(
                decimals=network.native_decimals,
                memo_max_chars=network.extra_config.get("memo_max_bytes", 100),
                memo_max_bytes=network.extra_config.get("memo_max_bytes"),
            ),
        }

    def spec(self, protocol: WalletProtocol) -> ProtocolSpec:
        return self.protocols[WalletProtocol(protocol)]

    def to_base_units(self, amount: str, protocol: WalletProtocol) -> str:
        """Display amount -> integer string in the protocol's base units."""
        return str(to_base_units(amount, self.spec(protocol).decimals))

    def to_display(self, base_units: Union[int, str], protocol: WalletProtocol) -> str:
        """Base units -> canonical display amount for the protocol."""
        return from_base_units(base_units, self.spec(protocol).decimals)

    def default_memo(self, source: Union[OrderSnapshot, Gig]) -> str:
        if isinstance(source, OrderSnapshot):
            return f"Order {source.order.id}: {source.gig.title}"
        return f"Gig {source.id}: {source.title}"

    def build(
        self,
        source: Union[OrderSnapshot, Gig],
        protocol: WalletProtocol,
        *,
        memo: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> PaymentPayload:
        """
        Build a payment payload.

        Args:
            source: Order snapshot to pay, or a gig to order directly
            protocol: Target wallet protocol
            memo: Memo text (defaults to "Order <id>: <gig title>")
            recipient: Override the payee (e.g. a resolved ``0.0.x`` account
                for NATIVE_LEDGER_URI); defaults to the provider

        Returns:
            PaymentPayload for the protocol

        Raises:
            PrecisionError: If the amount does not fit the protocol's decimals
            ValueError: For malformed amounts or addresses
        """
        protocol = WalletProtocol(protocol)
        spec = self.spec(protocol)

        if isinstance(source, OrderSnapshot):
            amount = source.order.amount
            provider = source.order.provider
            record_id = source.order.id
            signature = PAY_ORDER_SIGNATURE
        elif isinstance(source, Gig):
            amount = source.price
            provider = source.provider
            record_id = source.id
            signature = ORDER_GIG_SIGNATURE
        else:
            raise TypeError(f"Cannot build a payment payload from {type(source).__name__}")

        base_units = to_base_units(amount, spec.decimals)
        text = truncate_memo(
            self.default_memo(source) if memo is None else memo,
            spec.memo_max_chars,
            spec.memo_max_bytes,
        )
        payee = recipient or provider

        if protocol == WalletProtocol.EVM_DIRECT_CALL:
            function_name = signature.split("(")[0]
            uri = (
                f"ethereum:{self.contract_address}@{self.network.chain_id}/{function_name}"
                f"?uint256={record_id}&value={base_units}"
            )
            return PaymentPayload(
                uri=uri,
                amount_base_units=str(base_units),
                amount=normalize_amount(amount),
                recipient=self.contract_address,
                memo=text,
                protocol=protocol,
                chain_id=self.network.chain_id,
                data=encode_call(signature, record_id),
            )

        if protocol == WalletProtocol.EVM_URI_AMOUNT:
            payee = self._checksum(payee)
            memo_data = _hex(text.encode("utf-8")) if text else None
            uri = f"ethereum:{payee}@{self.network.chain_id}?value={base_units}"
            if memo_data:
                uri += f"&data={memo_data}"
            return PaymentPayload(
                uri=uri,
                amount_base_units=str(base_units),
                amount=normalize_amount(amount),
                recipient=payee,
                memo=text,
                protocol=protocol,
                chain_id=self.network.chain_id,
                data=memo_data,
            )

        if not (is_valid_account_id(payee) or is_valid_evm_address(payee)):
            raise ValueError(f"Invalid native ledger recipient: {payee}")
        display = normalize_amount(amount)
        uri = (
            f"{self.network.native_uri_scheme}://pay"
            f"?to={quote(payee, safe='')}&amount={display}&memo={quote(text, safe='')}"
        )
        return PaymentPayload(
            uri=uri,
            amount_base_units=str(base_units),
            amount=display,
            recipient=payee,
            memo=text,
            protocol=protocol,
            chain_id=self.network.chain_id,
        )

    def build_all(
        self, source: Union[OrderSnapshot, Gig], **kwargs: Any
    ) -> dict[WalletProtocol, PaymentPayload]:
        """Build a payload for every supported protocol."""
        return {protocol: self.build(source, protocol, **kwargs) for protocol in WalletProtocol}

    def clipboard_json(self, payload: PaymentPayload) -> str:
        """
        Copy-paste payment data for wallets without URI support.

        Key names and order are fixed: recipient, amount, currency, memo,
        network.
        """
        data = {
            "recipient": payload.recipient,
            "amount": payload.amount,
            "currency": self.network.currency,
            "memo": payload.memo,
            "network": self.network.display_name,
        }
        return json.dumps(data, indent=2, ensure_ascii=False)

    def render_qr(
        self,
        payload: PaymentPayload,
        renderer: QRRenderer,
        options: Optional[dict[str, Any]] = None,
    ) -> bytes:
        """Encode the payload URI as a QR image through an external renderer."""
        merged = {**DEFAULT_QR_OPTIONS, **(options or {})}
        return renderer.encode(payload.uri, merged)

    def _checksum(self, address: str) -> str:
        if not is_valid_evm_address(address):
            raise ValueError(f"Invalid EVM address: {address}")
        return Web3.to_checksum_address(address)
