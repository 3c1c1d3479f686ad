"""Tests for ledger data models."""

from decimal import Decimal

from scrapledger.models import (
    DEFAULT_CUSTOMER_NAME,
    Bill,
    BillHeader,
    BillLine,
    CountLine,
    Item,
    WeightEntry,
    WeightLine,
    to_decimal,
)


class TestToDecimal:
    """Tests for numeric coercion."""

    def test_none_and_empty_are_zero(self):
        """Test that missing values become zero."""
        assert to_decimal(None) == Decimal('0')
        assert to_decimal("") == Decimal('0')

    def test_float_goes_through_str(self):
        """Test that floats keep their printed value."""
        assert to_decimal(0.1) == Decimal('0.1')
        assert to_decimal(111.39) == Decimal('111.39')


class TestItem:
    """Tests for Item model."""

    def test_prices_are_converted(self):
        """Test that stored REAL prices become Decimals."""
        item = Item(id=1, name="Copper", last_price_per_kg=50.5, last_price_per_unit=None)

        assert item.last_price_per_kg == Decimal('50.5')
        assert item.last_price_per_unit == Decimal('0')
        assert item.unit_type == "weight"

    def test_to_dict(self):
        """Test dictionary conversion."""
        item = Item(id=3, name="Brass", last_price_per_kg="320")

        result = item.to_dict()

        assert result['name'] == "Brass"
        assert result['last_price_per_kg'] == 320.0


class TestLines:
    """Tests for caller line variants."""

    def test_weight_line_converts_entries(self):
        """Test that scale readings and the price become Decimals."""
        line = WeightLine(item_id=1, price_per_kg="50", entries=[
            WeightEntry("4.5", "L"),
            WeightEntry(4.5, "L"),
        ])

        assert line.price_per_kg == Decimal('50')
        assert [entry.weight for entry in line.entries] == [Decimal('4.5'), Decimal('4.5')]

    def test_weight_line_defaults_to_no_entries(self):
        """Test an empty weight line."""
        line = WeightLine(item_id=1, price_per_kg=10)

        assert line.entries == []

    def test_count_line_price_conversion(self):
        """Test that count prices are converted to Decimal."""
        line = CountLine(item_id=2, quantity=5, price_per_unit=20)

        assert line.price_per_unit == Decimal('20')


class TestBillHeader:
    """Tests for BillHeader defaults."""

    def test_blank_customer_gets_default(self):
        """Test the walk-in default for a blank name."""
        header = BillHeader(customer_name="   ", customer_phone=None)

        assert header.customer_name == DEFAULT_CUSTOMER_NAME
        assert header.customer_phone == ""
        assert header.bill_number is None

    def test_values_are_trimmed(self):
        """Test whitespace trimming."""
        header = BillHeader(customer_name=" Ravi ", customer_phone=" 98765 ")

        assert header.customer_name == "Ravi"
        assert header.customer_phone == "98765"


class TestBill:
    """Tests for Bill model."""

    def test_lines_total_and_billed_weight(self):
        """Test line total and the weight a customer is billed on."""
        lines = [
            BillLine(item_id=1, item_name="Copper", unit_type="weight", amount=450.0,
                     original_weight=10.0, l_weight=9.0, final_weight=10.0, weight_mode="L"),
            BillLine(item_id=2, item_name="Bottle", unit_type="count", amount="100",
                     quantity=5, price_per_unit=20),
        ]
        bill = Bill(id=1, bill_number="FAM02030001", customer_name="Ravi",
                    total_amount=550.0, date="2024-03-02T10:30:00", is_synced=0, lines=lines)

        assert bill.calculate_lines_total() == Decimal('550.0')
        assert lines[0].billed_weight == Decimal('9.0')
        assert lines[1].is_weight is False
        assert bill.is_synced is False

    def test_to_dict_lists_items(self):
        """Test that lines are serialized under 'items'."""
        line = BillLine(item_id=1, item_name="Copper", unit_type="weight", amount=500,
                        original_weight=10, final_weight=10, price_per_kg=50)
        bill = Bill(id=1, bill_number="FAM02030001", customer_name="Ravi",
                    total_amount=500, date="2024-03-02T10:30:00", lines=[line])

        result = bill.to_dict()

        assert result['total_amount'] == 500.0
        assert result['items'][0]['final_weight'] == 10.0
        assert result['items'][0]['item_name'] == "Copper"
