"""
Tests for ledger value types: Money, CommissionRate and gateway party references
"""

from decimal import Decimal

import pytest

from utils.exceptions import CurrencyMismatch, InvalidAmount, ValidationError
from utils.money import (
    CommissionRate, EmbeddedParty, Money, PartyId, party_email, party_id, party_ref_from_payload
)


class TestMoney:
    """Integer minor units with a currency"""

    def test_currency_is_normalized(self):
        assert Money(100, "ars").currency == "ARS"

    @pytest.mark.parametrize("bad", ["", "AR", "ARSS", "12$"])
    def test_invalid_currency_rejected(self, bad):
        with pytest.raises(ValidationError):
            Money(100, bad)

    def test_negative_amount_rejected(self):
        with pytest.raises(InvalidAmount):
            Money(-1, "ARS")

    def test_float_and_bool_amounts_rejected(self):
        with pytest.raises(InvalidAmount):
            Money(10.5, "ARS")
        with pytest.raises(InvalidAmount):
            Money(True, "ARS")

    def test_from_major_rounds_half_up(self):
        assert Money.from_major("105.505", "USD").amount == 10551
        assert Money.from_major(Decimal("0.01"), "USD").amount == 1
        assert Money.from_major(12, "USD").amount == 1200

    def test_from_major_rejects_garbage(self):
        with pytest.raises(InvalidAmount):
            Money.from_major("twelve", "USD")

    def test_major_string(self):
        assert Money(10500, "ARS").to_major_string() == "105.00"
        assert str(Money(7, "USD")) == "0.07 USD"

    def test_addition_and_subtraction(self):
        total = Money(10000, "ARS") + Money(500, "ARS")
        assert total == Money(10500, "ARS")
        assert total - Money(500, "ARS") == Money(10000, "ARS")

    def test_subtraction_never_goes_negative(self):
        with pytest.raises(InvalidAmount):
            Money(100, "ARS") - Money(101, "ARS")

    def test_mixed_currencies_rejected(self):
        with pytest.raises(CurrencyMismatch):
            Money(100, "ARS") + Money(100, "USD")
        with pytest.raises(CurrencyMismatch):
            Money(100, "ARS") < Money(100, "USD")

    def test_percentage_rounds_half_up(self):
        # 5% of 1010 = 50.5 -> 51
        assert Money(1010, "ARS").percentage(CommissionRate(Decimal("5"))).amount == 51
        assert Money(10000, "ARS").percentage(CommissionRate(Decimal("0"))).amount == 0


class TestCommissionRate:

    def test_quantized_to_two_places(self):
        assert CommissionRate(Decimal("2.345")).value == Decimal("2.35")

    @pytest.mark.parametrize("bad", ["-0.01", "100.01"])
    def test_out_of_range(self, bad):
        with pytest.raises(ValidationError):
            CommissionRate(Decimal(bad))

    def test_of_accepts_strings_and_none(self):
        assert CommissionRate.of(None) is None
        assert CommissionRate.of("3").value == Decimal("3.00")
        rate = CommissionRate(Decimal("5"))
        assert CommissionRate.of(rate) is rate


class TestPartyReferences:
    """Payer fields arrive either as a bare id or as an embedded object"""

    def test_bare_id(self):
        ref = party_ref_from_payload("PAYER123")
        assert ref == PartyId(id="PAYER123")
        assert party_id(ref) == "PAYER123"
        assert party_email(ref) is None

    def test_numeric_id(self):
        assert party_ref_from_payload(42) == PartyId(id="42")

    def test_embedded_paypal_payer(self):
        ref = party_ref_from_payload({
            "payer_id": "QYR5Z8XDVJNXQ",
            "email_address": "buyer@example.com",
            "name": {"given_name": "Ana", "surname": "Gomez"},
        })
        assert isinstance(ref, EmbeddedParty)
        assert ref.id == "QYR5Z8XDVJNXQ"
        assert party_email(ref) == "buyer@example.com"
        assert ref.name == "Ana Gomez"

    def test_embedded_mercadopago_payer(self):
        ref = party_ref_from_payload({"id": 991, "email": "payer@example.com"})
        assert ref == EmbeddedParty(id="991", email="payer@example.com")

    def test_embedded_without_id_rejected(self):
        with pytest.raises(ValidationError):
            party_ref_from_payload({"email": "x@example.com"})

    def test_missing_party(self):
        assert party_ref_from_payload(None) is None
        assert party_id(None) is None
