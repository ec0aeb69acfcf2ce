"""
Inline button tokens for catalog-bot.

Buttons carry short tokens as Telegram callback data: a tag, the delimiter,
then a kind-specific payload.

    mode_<auto|confirm>
    seller_<continue|main|b1|b2|main_b1|main_b2|b1_b2|all>
    autocode_<accept|reject>_<code>
    code_<confirm|reject>_<CODE>

Payloads may contain the delimiter themselves (seller_main_b1), so each kind
is decoded by its own rule rather than one generic split. The code_ token is
fixed-arity: anything other than exactly two payload segments is rejected,
which is why codes may never contain the delimiter (see codes.validate_code).
"""

from dataclasses import dataclass
from enum import Enum

from .codes import validate_code
from .registry import RequestKind

DELIMITER = "_"

TAGS = {
    "mode": RequestKind.MODE_SELECTION,
    "seller": RequestKind.SELLER_CONFIRMATION,
    "code": RequestKind.CODE_CONFIRMATION,
    "autocode": RequestKind.AUTO_CODE_CONFIRMATION,
}


class Mode(str, Enum):
    """How product codes are applied for the run."""

    AUTO = "auto"  # generated codes are used without asking
    CONFIRM = "confirm"  # every generated code is confirmed by the operator


class SellerSubset(str, Enum):
    """Which of the ranked sellers to re-pick."""

    MAIN = "main"
    B1 = "b1"
    B2 = "b2"
    MAIN_B1 = "main_b1"
    MAIN_B2 = "main_b2"
    B1_B2 = "b1_b2"
    ALL = "all"


class SellerAction(str, Enum):
    CONTINUE = "continue"
    CHANGE = "change"


@dataclass(frozen=True)
class SellerDecision:
    """Operator's answer to a seller confirmation."""

    action: SellerAction
    subset: SellerSubset | None = None

    @classmethod
    def keep(cls) -> "SellerDecision":
        return cls(SellerAction.CONTINUE)

    @classmethod
    def change(cls, subset: SellerSubset) -> "SellerDecision":
        return cls(SellerAction.CHANGE, subset)


class CodeAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class CodeAnswer:
    """Operator's answer to an auto-code or manual-code button."""

    action: CodeAction
    code: str


AUTO_CODE_ACTIONS = {CodeAction.ACCEPT, CodeAction.REJECT}
MANUAL_CODE_ACTIONS = {CodeAction.CONFIRM, CodeAction.REJECT}


def encode_mode(mode: Mode) -> str:
    return f"mode{DELIMITER}{mode.value}"


def encode_seller(decision: SellerDecision) -> str:
    if decision.action is SellerAction.CONTINUE:
        return f"seller{DELIMITER}{SellerAction.CONTINUE.value}"
    return f"seller{DELIMITER}{decision.subset.value}"


def encode_auto_code(action: CodeAction, code: str) -> str:
    if action not in AUTO_CODE_ACTIONS:
        raise ValueError(f"Not an auto-code action: {action}")
    return f"autocode{DELIMITER}{action.value}{DELIMITER}{code}"


def encode_code(action: CodeAction, code: str) -> str:
    if action not in MANUAL_CODE_ACTIONS:
        raise ValueError(f"Not a manual code action: {action}")
    validate_code(code)
    return f"code{DELIMITER}{action.value}{DELIMITER}{code}"


def _decode_mode(payload: str) -> Mode | None:
    try:
        return Mode(payload)
    except ValueError:
        return None


def _decode_seller(payload: str) -> SellerDecision | None:
    # Variable arity: the whole remainder is the choice
    if payload == SellerAction.CONTINUE.value:
        return SellerDecision.keep()
    try:
        return SellerDecision.change(SellerSubset(payload))
    except ValueError:
        return None


def _decode_auto_code(payload: str) -> CodeAnswer | None:
    # Split once; the trailing code is kept verbatim
    action, sep, code = payload.partition(DELIMITER)
    if not sep or not code:
        return None
    try:
        parsed = CodeAction(action)
    except ValueError:
        return None
    if parsed not in AUTO_CODE_ACTIONS:
        return None
    return CodeAnswer(parsed, code)


def _decode_code(payload: str) -> CodeAnswer | None:
    # Fixed arity: exactly action and code
    parts = payload.split(DELIMITER)
    if len(parts) != 2 or not parts[1]:
        return None
    try:
        parsed = CodeAction(parts[0])
    except ValueError:
        return None
    if parsed not in MANUAL_CODE_ACTIONS:
        return None
    return CodeAnswer(parsed, parts[1])


_DECODERS = {
    RequestKind.MODE_SELECTION: _decode_mode,
    RequestKind.SELLER_CONFIRMATION: _decode_seller,
    RequestKind.AUTO_CODE_CONFIRMATION: _decode_auto_code,
    RequestKind.CODE_CONFIRMATION: _decode_code,
}


def decode_token(token: str) -> tuple[RequestKind, Mode | SellerDecision | CodeAnswer] | None:
    """
    Decode a callback token into (kind, decision).

    Returns None for anything that is not a well-formed token of a known kind.
    """
    if not token:
        return None
    tag, sep, payload = token.partition(DELIMITER)
    if not sep or tag not in TAGS:
        return None
    kind = TAGS[tag]
    decision = _DECODERS[kind](payload)
    if decision is None:
        return None
    return kind, decision
