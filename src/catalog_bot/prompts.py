"""
Operator prompt text and keyboards for catalog-bot.

Everything the coordinator and router send is rendered here, so the buttons
offered and the tokens the router decodes stay in step.
"""

import html
from dataclasses import dataclass
from typing import Any

from .messaging import InlineButton, Keyboard
from .tokens import (
    CodeAction,
    Mode,
    SellerDecision,
    SellerSubset,
    encode_auto_code,
    encode_code,
    encode_mode,
    encode_seller,
)

SUBSET_LABELS = {
    SellerSubset.MAIN: "Main",
    SellerSubset.B1: "B1",
    SellerSubset.B2: "B2",
    SellerSubset.MAIN_B1: "Main+B1",
    SellerSubset.MAIN_B2: "Main+B2",
    SellerSubset.B1_B2: "B1+B2",
    SellerSubset.ALL: "All",
}

SELLER_ROLES = ("MAIN", "B1", "B2")


@dataclass(frozen=True)
class ApprovalDescriptor:
    """What is being decided. Never mutated after creation."""

    category: str
    brand: str
    product: str
    type: str = ""
    sku_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "brand": self.brand,
            "type": self.type,
            "product": self.product,
            "sku_count": self.sku_count,
        }


@dataclass(frozen=True)
class SellerCandidate:
    """A seller offered for one product, as ranked by the scorer."""

    seller_id: str
    name: str
    price: float = 0.0
    rating: float | None = None
    description: str = ""


def _e(text: Any) -> str:
    return html.escape(str(text))


def offered_subsets(candidate_count: int) -> list[SellerSubset]:
    """Change options that only reference sellers that were offered."""
    if candidate_count >= 3:
        return list(SellerSubset)
    if candidate_count == 2:
        return [SellerSubset.MAIN, SellerSubset.B1, SellerSubset.MAIN_B1, SellerSubset.ALL]
    if candidate_count == 1:
        return [SellerSubset.MAIN]
    return []


def sku_label(sku_count: int) -> str:
    backups = max(sku_count - 1, 0)
    return f"1 Main {backups} Backup"


def describe(descriptor: ApprovalDescriptor) -> str:
    return (
        f"📁 <b>Category:</b> {_e(descriptor.category)}\n"
        f"🏷️ <b>Brand:</b> {_e(descriptor.brand)}\n"
        f"📋 <b>Type:</b> {_e(descriptor.type or 'General')}\n"
        f"📦 <b>Product:</b> {_e(descriptor.product)}\n"
        f"🔢 <b>SKU count:</b> {descriptor.sku_count} ({sku_label(descriptor.sku_count)})"
    )


# Mode selection


def mode_prompt() -> tuple[str, Keyboard]:
    text = (
        "🚀 <b>Run starting</b>\n\n"
        "How should product codes be applied?\n"
        "• <b>Auto</b>: use generated codes without asking\n"
        "• <b>Confirm</b>: confirm every generated code here"
    )
    buttons = [
        [
            InlineButton("⚡ Auto", encode_mode(Mode.AUTO)),
            InlineButton("✋ Confirm", encode_mode(Mode.CONFIRM)),
        ]
    ]
    return text, buttons


def mode_chosen(mode: Mode) -> str:
    return f"✅ Mode selected: <b>{mode.value}</b>"


# Seller confirmation


def seller_prompt(
    descriptor: ApprovalDescriptor,
    candidates: list[SellerCandidate],
    reasoning: str,
) -> tuple[str, Keyboard]:
    lines = ["🤖 <b>Seller Selection</b>", "", describe(descriptor), ""]
    for role, candidate in zip(SELLER_ROLES, candidates):
        rating = f" ⭐{candidate.rating:g}" if candidate.rating else ""
        lines.append(
            f"<b>{role}</b>: {_e(candidate.name)} @ Rp {candidate.price:,.0f}{rating}"
        )
    if reasoning:
        lines += ["", f"💭 <i>{_e(reasoning)}</i>"]
    lines += ["", "Keep these sellers, or pick which ones to change:"]

    change = [
        InlineButton(f"🔄 {SUBSET_LABELS[s]}", encode_seller(SellerDecision.change(s)))
        for s in offered_subsets(len(candidates))
    ]
    rows = [change[i : i + 3] for i in range(0, len(change), 3)]
    rows.append([InlineButton("✅ Continue", encode_seller(SellerDecision.keep()))])
    return "\n".join(lines), rows


def seller_decided(decision: SellerDecision) -> str:
    if decision.subset is None:
        return "✅ Sellers confirmed"
    return f"🔄 Changing sellers: <b>{SUBSET_LABELS[decision.subset]}</b>"


# Auto-generated code


def auto_code_prompt(descriptor: ApprovalDescriptor, code: str) -> tuple[str, Keyboard]:
    text = (
        "🔔 <b>Product Code Confirmation</b>\n\n"
        f"{describe(descriptor)}\n\n"
        f"Generated code: <code>{_e(code)}</code>\n\n"
        "Use this code?"
    )
    buttons = [
        [
            InlineButton("✅ Yes", encode_auto_code(CodeAction.ACCEPT, code)),
            InlineButton("❌ No", encode_auto_code(CodeAction.REJECT, code)),
        ]
    ]
    return text, buttons


def auto_code_accepted(code: str) -> str:
    return f"✅ Product code <code>{_e(code)}</code> confirmed!"


def auto_code_rejected(code: str) -> str:
    return f"❌ Code <code>{_e(code)}</code> rejected. Reply to the next message with a code."


# Manual code entry


def manual_code_prompt(descriptor: ApprovalDescriptor) -> str:
    return (
        "✏️ <b>Product Code Required</b>\n\n"
        f"{describe(descriptor)}\n\n"
        "Reply to this message with the product code to use."
    )


def manual_code_confirm_prompt(code: str) -> tuple[str, Keyboard]:
    text = (
        "✅ <b>Product Code Received</b>\n\n"
        f"The product code is: <code>{_e(code)}</code>\n\n"
        "Is that correct?"
    )
    buttons = [
        [
            InlineButton("✅ Yes", encode_code(CodeAction.CONFIRM, code)),
            InlineButton("❌ No", encode_code(CodeAction.REJECT, code)),
        ]
    ]
    return text, buttons


def manual_code_confirmed(code: str) -> str:
    return f"✅ Product code <code>{_e(code)}</code> confirmed!"


def manual_code_rejected() -> str:
    return "❌ Product code rejected. Reply to the original message with a new code."


def manual_code_superseded(code: str) -> str:
    return f"↩️ <code>{_e(code)}</code> replaced by a newer reply."


def prompt_expired() -> str:
    return "⌛ Expired"


def invalid_code_hint(text: str) -> str:
    return f"⚠️ <code>{_e(text)}</code> is not a usable code. Letters and digits only."


def taken_code_hint(code: str) -> str:
    return (
        f"⚠️ <code>{_e(code)}</code> (or its backup codes) is already in use. "
        "Reply with another code."
    )
