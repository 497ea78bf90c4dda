"""
Receipt Format Tests
"""

import json
from urllib.parse import quote

import pytest

from privacypay.errors import InvalidReceipt
from privacypay.ledger.receipts import ReceiptKind, new_receipt, parse_receipt, receipt_from_dict


def _wire(**overrides):
    data = {
        "ref": "r-1",
        "signature": "5sig",
        "from": "Payer111",
        "to": "Payee111",
        "amount": 1_000_000,
        "encryptedMemo": "",
        "createdAt": 1_700_000_000_000,
        "kind": "plain",
    }
    data.update(overrides)
    return data


class TestReceiptModel:
    """Tests for receipt parsing and serialisation."""

    def test_parse_wire(self):
        r = receipt_from_dict(_wire())
        assert r.from_ == "Payer111"
        assert r.amount == 1_000_000
        assert r.kind == ReceiptKind.PLAIN

    def test_to_wire_uses_aliases(self):
        """Serialised form uses the exchanged field names."""
        out = receipt_from_dict(_wire(kind="shielded")).to_wire()
        assert out["from"] == "Payer111"
        assert out["encryptedMemo"] == ""
        assert out["createdAt"] == 1_700_000_000_000
        assert out["kind"] == "shielded"

    def test_legacy_fields(self):
        """Older receipts used amountLamports and type=public|private."""
        data = _wire()
        del data["amount"], data["kind"], data["ref"]
        data["amountLamports"] = 5
        data["type"] = "private"
        r = receipt_from_dict(data)
        assert r.amount == 5
        assert r.kind == ReceiptKind.SHIELDED
        assert r.ref == "5sig"

    @pytest.mark.parametrize("amount", [0, -1, 1.5, "100"])
    def test_bad_amount(self, amount):
        """Amount must be a positive integer of lamports."""
        with pytest.raises(InvalidReceipt) as exc:
            receipt_from_dict(_wire(amount=amount))
        assert "amount" in exc.value.message

    def test_missing_created_at(self):
        data = _wire()
        del data["createdAt"]
        with pytest.raises(InvalidReceipt):
            receipt_from_dict(data)

    def test_unknown_kind(self):
        with pytest.raises(InvalidReceipt):
            receipt_from_dict(_wire(kind="stealth"))

    def test_new_receipt(self):
        """Payer-side receipt gets a fresh ref and a millisecond timestamp."""
        r = new_receipt("sigX", "A", "B", 42)
        assert r.ref and r.ref != "sigX"
        assert r.created_at > 1_600_000_000_000
        assert r.encrypted_memo == ""


class TestParseReceipt:
    """Tests for pasted receipts and links."""

    def test_json_text(self):
        assert parse_receipt(json.dumps(_wire())).signature == "5sig"

    def test_link_fragment(self):
        link = "https://pay.example/receipt#receipt=" + quote(json.dumps(_wire()))
        assert parse_receipt(link).ref == "r-1"

    def test_link_query(self):
        link = "https://pay.example/verify?receipt=" + quote(json.dumps(_wire()))
        assert parse_receipt(link).ref == "r-1"

    def test_payment_request_link(self):
        """A request link is not a receipt."""
        with pytest.raises(InvalidReceipt) as exc:
            parse_receipt("https://pay.example/pay#to=abc&amount=1")
        assert "Payment Request" in exc.value.message

    @pytest.mark.parametrize("text", ["", "   ", "{nope", "[1]"])
    def test_garbage(self, text):
        with pytest.raises(InvalidReceipt):
            parse_receipt(text)
