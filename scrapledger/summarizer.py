"""Bill summarization module.

This module aggregates bill listings into the dashboard figures and
the filtered date-range reports shown to the shop owner.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from .models import UNIT_COUNT, BillListing, BottleType, Item
from .weight import round2


def bill_day(listing: BillListing) -> Optional[date]:
    """Calendar day a bill was created on, or None if unparseable."""
    try:
        return date.fromisoformat((listing.date or "")[:10])
    except ValueError:
        return None


@dataclass
class DashboardSummary:
    """Headline figures for the home screen.

    Attributes:
        total_bills: Number of bills in the ledger
        total_amount: Sum of all bill totals
        today_bills: Bills created today
        today_amount: Sum of today's bill totals
        pending_sync: Bills not yet acknowledged by the backend
        weight_items: Items billed by weight
        bottle_types: Configured bottle types
    """
    total_bills: int = 0
    total_amount: Decimal = Decimal('0')
    today_bills: int = 0
    today_amount: Decimal = Decimal('0')
    pending_sync: int = 0
    weight_items: int = 0
    bottle_types: int = 0

    def to_dict(self) -> dict:
        return {
            'total_bills': self.total_bills,
            'total_amount': str(self.total_amount),
            'today_bills': self.today_bills,
            'today_amount': str(self.today_amount),
            'pending_sync': self.pending_sync,
            'weight_items': self.weight_items,
            'bottle_types': self.bottle_types,
        }


@dataclass
class ReportSummary:
    """Aggregates over a filtered set of bills."""
    bill_count: int = 0
    total_amount: Decimal = Decimal('0')
    average_amount: Decimal = Decimal('0')
    first_date: Optional[date] = None
    last_date: Optional[date] = None
    customer: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    bills: list[BillListing] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'bill_count': self.bill_count,
            'total_amount': str(self.total_amount),
            'average_amount': str(self.average_amount),
            'first_date': self.first_date.isoformat() if self.first_date else None,
            'last_date': self.last_date.isoformat() if self.last_date else None,
            'customer': self.customer,
            'date_from': self.date_from.isoformat() if self.date_from else None,
            'date_to': self.date_to.isoformat() if self.date_to else None,
            'bills': [bill.to_dict() for bill in self.bills],
        }


class BillSummarizer:
    """Computes dashboard and report aggregates over bill listings."""

    def dashboard(
        self,
        bills: list[BillListing],
        items: list[Item],
        bottle_types: list[BottleType],
        today: date,
    ) -> DashboardSummary:
        """Headline figures as of ``today``."""
        todays = [bill for bill in bills if bill_day(bill) == today]
        return DashboardSummary(
            total_bills=len(bills),
            total_amount=self._sum(bills),
            today_bills=len(todays),
            today_amount=self._sum(todays),
            pending_sync=sum(1 for bill in bills if not bill.is_synced),
            weight_items=sum(1 for item in items if item.unit_type != UNIT_COUNT),
            bottle_types=len(bottle_types),
        )

    def filter_bills(
        self,
        bills: list[BillListing],
        customer: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[BillListing]:
        """Bills matching a customer search and an inclusive date range.

        The customer search is a case-insensitive substring match on the
        customer name or bill number.
        """
        needle = (customer or "").strip().lower()
        filtered = []
        for bill in bills:
            if needle and needle not in bill.customer_name.lower() \
                    and needle not in bill.bill_number.lower():
                continue
            day = bill_day(bill)
            if date_from and (day is None or day < date_from):
                continue
            if date_to and (day is None or day > date_to):
                continue
            filtered.append(bill)
        return filtered

    def report(
        self,
        bills: list[BillListing],
        customer: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> ReportSummary:
        """Filter bills and aggregate the result.

        Args:
            bills: Bill listings, typically from ``LedgerStore.get_all_bills``.
            customer: Optional customer or bill-number search text.
            date_from: Optional first day to include.
            date_to: Optional last day to include.

        Returns:
            A ReportSummary; the average is zero for an empty selection.
        """
        selected = self.filter_bills(bills, customer, date_from, date_to)
        total = self._sum(selected)
        days = [day for day in (bill_day(bill) for bill in selected) if day]
        return ReportSummary(
            bill_count=len(selected),
            total_amount=total,
            average_amount=round2(total / len(selected)) if selected else Decimal('0.00'),
            first_date=min(days) if days else None,
            last_date=max(days) if days else None,
            customer=customer or None,
            date_from=date_from,
            date_to=date_to,
            bills=selected,
        )

    @staticmethod
    def _sum(bills: list[BillListing]) -> Decimal:
        return round2(sum((bill.total_amount for bill in bills), Decimal('0')))

    def get_formatted_report(self, report: ReportSummary) -> str:
        """Generate a formatted text version of a report.

        Args:
            report: The ReportSummary to render.

        Returns:
            Multi-line text with the filters, the totals and one row per bill.
        """
        lines = [
            "Bills Report",
            f"{'=' * 50}",
            f"Customer: {report.customer or 'All Customers'}",
            f"Date From: {report.date_from.isoformat() if report.date_from else 'Start'}",
            f"Date To: {report.date_to.isoformat() if report.date_to else 'End'}",
            "",
            f"Total Bills: {report.bill_count}",
            f"Total Amount: {report.total_amount:.2f}",
            f"Average Bill Amount: {report.average_amount:.2f}",
            "-" * 50,
        ]

        for bill in report.bills:
            status = "Synced" if bill.is_synced else "Pending"
            lines.append(
                f"  {bill.bill_number}  {bill.customer_name}  "
                f"{bill.total_amount:.2f}  {status}"
            )

        return "\n".join(lines)
