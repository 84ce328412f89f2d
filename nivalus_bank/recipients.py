"""
Recipient descriptors

A transfer's destination is one of a closed set of variants, tagged by the
transfer method. Direct recipients are local accounts; every other variant
describes an external, unverified destination.
"""

from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from .errors import InvalidFieldError


NOT_AVAILABLE = "N/A"
CARD_MASK = "xxxx-xxxx-xxxx-"


class TransferMethod(Enum):
    """How money leaves the sender's account"""
    DIRECT = "direct"  # To another account in this bank
    WIRE = "wire"      # International wire (SWIFT)
    BANK = "bank"      # Domestic bank transfer (routing number)
    CARD = "card"      # Card push payment
    P2P = "p2p"        # Phone-based P2P platforms
    OTHER = "other"


@dataclass(frozen=True)
class DirectRecipient:
    email: str
    username: str
    memo: str = ""
    method: TransferMethod = TransferMethod.DIRECT


@dataclass(frozen=True)
class WireRecipient:
    swift_code: str = NOT_AVAILABLE
    bank_name: str = NOT_AVAILABLE
    account_number: str = NOT_AVAILABLE
    country: str = NOT_AVAILABLE
    memo: str = ""
    method: TransferMethod = TransferMethod.WIRE


@dataclass(frozen=True)
class BankRecipient:
    routing_number: str = NOT_AVAILABLE
    account_number: str = NOT_AVAILABLE
    bank_name: str = NOT_AVAILABLE
    account_type: str = NOT_AVAILABLE
    memo: str = ""
    method: TransferMethod = TransferMethod.BANK


@dataclass(frozen=True)
class CardRecipient:
    card_last4: Optional[str] = None
    cardholder_name: str = NOT_AVAILABLE
    memo: str = ""
    method: TransferMethod = TransferMethod.CARD

    @property
    def masked_card_number(self) -> str:
        if not self.card_last4:
            return NOT_AVAILABLE
        return CARD_MASK + self.card_last4


@dataclass(frozen=True)
class P2PRecipient:
    phone_number: str = NOT_AVAILABLE
    platform: str = NOT_AVAILABLE
    memo: str = ""
    method: TransferMethod = TransferMethod.P2P


@dataclass(frozen=True)
class OtherRecipient:
    recipient: str = NOT_AVAILABLE
    memo: str = ""
    method: TransferMethod = TransferMethod.OTHER


Recipient = Union[
    DirectRecipient, WireRecipient, BankRecipient,
    CardRecipient, P2PRecipient, OtherRecipient
]

_VARIANTS = {
    TransferMethod.DIRECT: DirectRecipient,
    TransferMethod.WIRE: WireRecipient,
    TransferMethod.BANK: BankRecipient,
    TransferMethod.CARD: CardRecipient,
    TransferMethod.P2P: P2PRecipient,
    TransferMethod.OTHER: OtherRecipient,
}

# Client-facing (camelCase) detail keys per external variant field
_DETAIL_KEYS = {
    "swift_code": "swiftCode",
    "bank_name": "bankName",
    "account_number": "accountNumber",
    "country": "country",
    "routing_number": "routingNumber",
    "account_type": "accountType",
    "cardholder_name": "cardholderName",
    "phone_number": "phoneNumber",
    "platform": "platform",
    "recipient": "recipient",
}


def parse_method(method: Union[TransferMethod, str]) -> TransferMethod:
    try:
        return TransferMethod(method)
    except ValueError:
        raise InvalidFieldError(f"Unsupported transfer method: {method}")


def _detail(details: Mapping[str, Any], field_name: str) -> str:
    value = details.get(_DETAIL_KEYS[field_name], details.get(field_name))
    if value is None or value == "":
        return NOT_AVAILABLE
    return str(value)


def _card_last4(details: Mapping[str, Any]) -> Optional[str]:
    """Last four digits of whichever card field carries any digits"""
    for key in ("cardNumber", "card_number", "card_last4"):
        digits = "".join(ch for ch in str(details.get(key) or "") if ch.isdigit())
        if digits:
            return digits[-4:]
    return None


def build_external_recipient(
    method: Union[TransferMethod, str],
    details: Optional[Mapping[str, Any]] = None,
    memo: str = "",
    recipient: Optional[str] = None
) -> Recipient:
    """
    Build the descriptor for a non-direct transfer.

    Details accept the client's camelCase keys (``swiftCode``) or the
    field names (``swift_code``). Missing values become "N/A". Card numbers
    are reduced to their last four digits before anything is stored.
    """
    method = parse_method(method)
    if method == TransferMethod.DIRECT:
        raise InvalidFieldError("Direct transfers need a resolved account")
    details = dict(details or {})
    if recipient and "recipient" not in details:
        details["recipient"] = recipient
    memo = str(memo) if memo else ""

    if method == TransferMethod.CARD:
        return CardRecipient(
            card_last4=_card_last4(details),
            cardholder_name=_detail(details, "cardholder_name"),
            memo=memo
        )

    variant = _VARIANTS[method]
    values = {
        f.name: _detail(details, f.name)
        for f in fields(variant)
        if f.name not in ("memo", "method")
    }
    return variant(memo=memo, **values)


def recipient_to_dict(recipient: Recipient) -> Dict[str, Any]:
    """Persisted / wire form, always tagged with ``method``"""
    data = asdict(recipient)
    data["method"] = recipient.method.value
    if isinstance(recipient, CardRecipient):
        data["card_number"] = recipient.masked_card_number
    return data


def recipient_from_dict(data: Mapping[str, Any]) -> Recipient:
    """
    Rebuild a descriptor from a dictionary.

    An untagged dictionary is read as an "other" descriptor. External
    variants go through ``build_external_recipient``, so camelCase keys are
    accepted and card fields are cut down to their last four digits.
    """
    method = parse_method(data.get("method") or TransferMethod.OTHER.value)
    if method != TransferMethod.DIRECT:
        return build_external_recipient(method, data, memo=data.get("memo") or "")

    names = {f.name for f in fields(DirectRecipient)} - {"method"}
    try:
        return DirectRecipient(**{k: v for k, v in data.items() if k in names})
    except TypeError:
        raise InvalidFieldError("Incomplete direct recipient info")


def normalize_recipient_info(value: Union[None, str, Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Coerce admin-supplied recipient info into a tagged dictionary.

    Free text is kept as the memo of an "other" descriptor.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return recipient_to_dict(OtherRecipient(memo=value))
    if not isinstance(value, Mapping):
        raise InvalidFieldError("Recipient info must be text or an object")
    return recipient_to_dict(recipient_from_dict(value))
