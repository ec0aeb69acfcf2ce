"""Tests for the callback token contract."""

import pytest

from catalog_bot.errors import InvalidCode
from catalog_bot.registry import RequestKind
from catalog_bot.tokens import (
    CodeAction,
    CodeAnswer,
    Mode,
    SellerDecision,
    SellerSubset,
    decode_token,
    encode_auto_code,
    encode_code,
    encode_mode,
    encode_seller,
)


class TestEncode:
    def test_mode(self):
        assert encode_mode(Mode.AUTO) == "mode_auto"
        assert encode_mode(Mode.CONFIRM) == "mode_confirm"

    def test_seller(self):
        assert encode_seller(SellerDecision.keep()) == "seller_continue"
        assert encode_seller(SellerDecision.change(SellerSubset.MAIN_B1)) == "seller_main_b1"

    def test_auto_code(self):
        assert encode_auto_code(CodeAction.ACCEPT, "TSEL10") == "autocode_accept_TSEL10"

    def test_code(self):
        assert encode_code(CodeAction.CONFIRM, "TSEL10") == "code_confirm_TSEL10"

    def test_code_rejects_delimiter(self):
        with pytest.raises(InvalidCode):
            encode_code(CodeAction.CONFIRM, "TS_EL")

    def test_wrong_action_for_kind(self):
        with pytest.raises(ValueError):
            encode_code(CodeAction.ACCEPT, "TSEL10")
        with pytest.raises(ValueError):
            encode_auto_code(CodeAction.CONFIRM, "TSEL10")


class TestDecode:
    def test_mode(self):
        assert decode_token("mode_confirm") == (RequestKind.MODE_SELECTION, Mode.CONFIRM)

    def test_seller_continue(self):
        assert decode_token("seller_continue") == (
            RequestKind.SELLER_CONFIRMATION,
            SellerDecision.keep(),
        )

    @pytest.mark.parametrize("subset", list(SellerSubset))
    def test_seller_every_subset(self, subset):
        """Multi-segment subsets decode whole, not at the second delimiter."""
        kind, decision = decode_token(f"seller_{subset.value}")

        assert kind is RequestKind.SELLER_CONFIRMATION
        assert decision == SellerDecision.change(subset)

    def test_auto_code_keeps_trailing_segment_verbatim(self):
        kind, answer = decode_token("autocode_reject_TSEL10_X")

        assert kind is RequestKind.AUTO_CODE_CONFIRMATION
        assert answer == CodeAnswer(CodeAction.REJECT, "TSEL10_X")

    def test_code(self):
        assert decode_token("code_reject_ISAT5") == (
            RequestKind.CODE_CONFIRMATION,
            CodeAnswer(CodeAction.REJECT, "ISAT5"),
        )

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "mode",
            "mode_",
            "mode_sometimes",
            "seller_",
            "seller_main_b3",
            "seller_b1_main",
            "autocode_accept",
            "autocode_accept_",
            "autocode_confirm_TSEL10",
            "code_confirm",
            "code_confirm_",
            "code_confirm_TS_EL",
            "code_confirm_A_B_C",
            "code_accept_TSEL10",
            "unknown_tag",
            "modeauto",
        ],
    )
    def test_malformed_tokens(self, token):
        assert decode_token(token) is None

    def test_encode_decode_agree_for_rendered_buttons(self):
        """Tokens produced by the encoders are accepted by the decoder."""
        tokens = [
            encode_mode(Mode.AUTO),
            encode_seller(SellerDecision.change(SellerSubset.B1_B2)),
            encode_auto_code(CodeAction.REJECT, "ML86"),
            encode_code(CodeAction.CONFIRM, "ML86"),
        ]

        assert all(decode_token(t) is not None for t in tokens)
