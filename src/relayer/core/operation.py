"""
User Operation model.

Represents a single client-submitted operation addressed to the entry point.
"""

import base64
import binascii
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Tuple

from eth_utils import is_address, to_checksum_address

UINT256_MAX = 2**256 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Field order of the entry point's UserOperation struct
USER_OPERATION_FIELDS = (
    "sender",
    "nonce",
    "init_code",
    "call_data",
    "call_gas_limit",
    "verification_gas_limit",
    "pre_verification_gas",
    "max_fee_per_gas",
    "max_priority_fee_per_gas",
    "paymaster",
    "paymaster_data",
    "signature",
)

_INT_FIELDS = (
    "nonce",
    "call_gas_limit",
    "verification_gas_limit",
    "pre_verification_gas",
    "max_fee_per_gas",
    "max_priority_fee_per_gas",
)

_BYTES_FIELDS = ("init_code", "call_data", "paymaster_data", "signature")

# Accepted wire keys for each field: camelCase first, then the
# snake_case names used by the original HTTP front end.
_WIRE_KEYS = {
    "sender": ("sender",),
    "nonce": ("nonce",),
    "init_code": ("initCode", "init_code"),
    "call_data": ("callData", "call_data"),
    "call_gas_limit": ("callGasLimit", "callGas", "call_gas_limit", "call_gas"),
    "verification_gas_limit": (
        "verificationGasLimit",
        "verificationGas",
        "verification_gas_limit",
        "verification_gas",
    ),
    "pre_verification_gas": ("preVerificationGas", "pre_verification_gas"),
    "max_fee_per_gas": ("maxFeePerGas", "max_fee_per_gas"),
    "max_priority_fee_per_gas": ("maxPriorityFeePerGas", "max_priority_fee_per_gas"),
    "paymaster": ("paymaster",),
    "paymaster_data": ("paymasterData", "paymaster_data"),
    "signature": ("signature",),
}

_OPTIONAL_WIRE_FIELDS = ("init_code", "paymaster", "paymaster_data")


class OperationValidationError(ValueError):
    """Raised when an operation's fields are malformed."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.field_name = field_name


@dataclass(frozen=True)
class UserOperation:
    """
    A signed instruction to be executed on behalf of ``sender`` by the entry point.

    Attributes:
        sender: Account the operation acts for
        nonce: Sender-side sequence value (not the relayer's nonce)
        init_code: Deployment code for a not-yet-created sender account
        call_data: The call the account should execute
        call_gas_limit: Gas for the execution step
        verification_gas_limit: Gas for account and paymaster validation
        pre_verification_gas: Gas paid for batch overhead
        max_fee_per_gas: EIP-1559 fee cap the sender agrees to pay
        max_priority_fee_per_gas: EIP-1559 tip the sender agrees to pay
        paymaster: Optional third party paying for gas
        paymaster_data: Data interpreted by the paymaster
        signature: Authorization checked by the account contract
    """

    sender: str
    nonce: int = 0
    init_code: bytes = b""
    call_data: bytes = b""
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    paymaster: Optional[str] = None
    paymaster_data: bytes = b""
    signature: bytes = field(default=b"", repr=False)

    def validate(self) -> "UserOperation":
        """
        Check the shape invariants and return the operation with
        checksummed addresses.

        Raises:
            OperationValidationError: If any field is malformed
        """
        if not isinstance(self.sender, str) or not is_address(self.sender):
            raise OperationValidationError(f"Invalid sender address: {self.sender!r}", "sender")
        if self.paymaster is not None and (
            not isinstance(self.paymaster, str) or not is_address(self.paymaster)
        ):
            raise OperationValidationError(
                f"Invalid paymaster address: {self.paymaster!r}", "paymaster"
            )

        for name in _INT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise OperationValidationError(f"{name} must be an integer", name)
            if value < 0 or value > UINT256_MAX:
                raise OperationValidationError(f"{name} out of uint256 range: {value}", name)

        for name in _BYTES_FIELDS:
            if not isinstance(getattr(self, name), bytes):
                raise OperationValidationError(f"{name} must be bytes", name)

        return replace(
            self,
            sender=to_checksum_address(self.sender),
            paymaster=to_checksum_address(self.paymaster) if self.paymaster else None,
        )

    @property
    def paymaster_address(self) -> str:
        """Paymaster as it is encoded on-chain (zero address when unset)."""
        return self.paymaster or ZERO_ADDRESS

    def to_abi_tuple(self) -> Tuple[Any, ...]:
        """Return the struct values in contract field order."""
        return (
            self.sender,
            self.nonce,
            self.init_code,
            self.call_data,
            self.call_gas_limit,
            self.verification_gas_limit,
            self.pre_verification_gas,
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
            self.paymaster_address,
            self.paymaster_data,
            self.signature,
        )

    @classmethod
    def from_abi_tuple(cls, values: Tuple[Any, ...]) -> "UserOperation":
        """Build an operation from a decoded struct tuple."""
        kwargs = dict(zip(USER_OPERATION_FIELDS, values))
        paymaster = kwargs["paymaster"]
        kwargs["paymaster"] = None if int(paymaster, 16) == 0 else to_checksum_address(paymaster)
        kwargs["sender"] = to_checksum_address(kwargs["sender"])
        return cls(**kwargs)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserOperation":
        """
        Decode an operation from its JSON wire form.

        Integers may be ints, decimal strings or ``0x`` hex strings; byte
        fields may be ``0x`` hex or base64 strings.

        Raises:
            OperationValidationError: If a field is missing or undecodable
        """
        kwargs = {}
        for name in USER_OPERATION_FIELDS:
            raw = _lookup(data, name)
            if raw is None:
                if name in _OPTIONAL_WIRE_FIELDS:
                    continue
                raise OperationValidationError(f"Missing field: {name}", name)

            if name in _INT_FIELDS:
                kwargs[name] = _parse_int(raw, name)
            elif name in _BYTES_FIELDS:
                kwargs[name] = _parse_bytes(raw, name)
            else:
                kwargs[name] = _parse_address(raw, name)

        return cls(**kwargs).validate()

    def to_dict(self) -> dict:
        """Convert to the camelCase JSON wire form."""
        return {
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "initCode": "0x" + self.init_code.hex(),
            "callData": "0x" + self.call_data.hex(),
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "paymaster": self.paymaster,
            "paymasterData": "0x" + self.paymaster_data.hex(),
            "signature": "0x" + self.signature.hex(),
        }


def _lookup(data: Mapping[str, Any], name: str) -> Any:
    for key in _WIRE_KEYS[name]:
        if key in data:
            return data[key]
    return None


def _parse_int(raw: Any, name: str) -> int:
    if isinstance(raw, bool):
        raise OperationValidationError(f"{name} must be an integer", name)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        try:
            if text.lower().startswith("0x"):
                return int(text, 16)
            return int(text, 10)
        except ValueError as exc:
            raise OperationValidationError(f"{name} is not a valid integer: {raw!r}", name) from exc
    raise OperationValidationError(f"{name} must be an integer", name)


def _parse_bytes(raw: Any, name: str) -> bytes:
    if isinstance(raw, bytes):
        return raw
    if not isinstance(raw, str):
        raise OperationValidationError(f"{name} must be a hex or base64 string", name)
    if raw.startswith("0x") or raw.startswith("0X"):
        try:
            return bytes.fromhex(raw[2:])
        except ValueError as exc:
            raise OperationValidationError(f"{name} is not valid hex", name) from exc
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise OperationValidationError(f"{name} is not valid base64", name) from exc


def _parse_address(raw: Any, name: str) -> Optional[str]:
    if not isinstance(raw, str):
        raise OperationValidationError(f"{name} must be an address string", name)
    if name == "paymaster" and raw in ("", "0x"):
        return None
    if not is_address(raw):
        raise OperationValidationError(f"Invalid {name} address: {raw!r}", name)
    if name == "paymaster" and int(raw, 16) == 0:
        return None
    return to_checksum_address(raw)
