"""Value, UUID and address conversion helpers shared by the session components."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from bleak.uuids import normalize_uuid_str

from gattsession.constants import KEY_SEPARATOR

__all__ = [
    "CallbackResponse",
    "HexCodec",
    "ResponseCallback",
    "Utf8Codec",
    "ValueCodec",
    "WriteType",
    "normalize_uuid",
    "operation_key",
    "sanitize_address",
]


@dataclass(frozen=True)
class CallbackResponse:
    """Uniform result envelope delivered to every caller exactly once."""

    success: bool
    value: str


ResponseCallback = Callable[[CallbackResponse], None]


class WriteType(Enum):
    """Characteristic write mode, passed through unchanged to the transport."""

    WITH_RESPONSE = "with_response"
    WITHOUT_RESPONSE = "without_response"

    @property
    def response(self) -> bool:
        """Whether the transport waits for a peer acknowledgment."""
        return self is WriteType.WITH_RESPONSE


class ValueCodec:
    """Translate caller-facing string values to and from characteristic bytes."""

    def encode(self, value: str) -> bytes:
        raise NotImplementedError

    def decode(self, data: bytes) -> str:
        raise NotImplementedError


class Utf8Codec(ValueCodec):
    """UTF-8 text values; undecodable bytes are replaced rather than raising."""

    def encode(self, value: str) -> bytes:
        return value.encode("utf-8")

    def decode(self, data: bytes) -> str:
        return bytes(data).decode("utf-8", errors="replace")


class HexCodec(ValueCodec):
    """Space-separated hex byte values such as ``"0a 1b ff"``."""

    def encode(self, value: str) -> bytes:
        """
        Parse a hex string into bytes.

        Whitespace between bytes is optional and case is ignored.

        Raises:
            ValueError: If `value` is not a valid even-length hex string.
        """
        return bytes.fromhex("".join(value.split()))

    def decode(self, data: bytes) -> str:
        return " ".join(f"{byte:02x}" for byte in bytes(data))


def normalize_uuid(uuid: str) -> str:
    """
    Normalize a GATT UUID to its 128-bit lowercase string form.

    16- and 32-bit Bluetooth SIG short forms are expanded. Strings that are not
    valid UUIDs are only trimmed and lowercased so that lookups against the
    service table simply miss instead of raising.
    """
    try:
        return normalize_uuid_str(uuid.strip())
    except ValueError:
        return uuid.strip().lower()


def operation_key(kind: str, *uuids: str) -> str:
    """Build a correlation key of the form ``kind|service|characteristic[|descriptor]``."""
    return KEY_SEPARATOR.join([kind, *(normalize_uuid(uuid) for uuid in uuids)])


def sanitize_address(address: Optional[str]) -> Optional[str]:
    """
    Normalize a BLE address by removing common separators and converting to lowercase.

    Returns:
        Optional[str]: The address with "-", "_", ":" and spaces removed and lowercased,
            or `None` if `address` is None or contains only whitespace.
    """
    if address is None:
        return None
    stripped = address.strip()
    if not stripped:
        return None
    return (
        stripped.replace("-", "")
        .replace("_", "")
        .replace(":", "")
        .replace(" ", "")
        .lower()
    )
