from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from isp_billing.models.account import BillingAccount
from isp_billing.models.invoice import Invoice, StatementOfAccount


def _escape_pdf_text(value: str) -> str:
    escaped = value.replace("\\", "\\\\")
    escaped = escaped.replace("(", "\\(")
    escaped = escaped.replace(")", "\\)")
    return escaped


def _money_line(label: str, amount: Decimal) -> str:
    return f"{label:<32}{amount:>14,.2f}"


def invoice_lines(account: BillingAccount, invoice: Invoice) -> list[str]:
    return [
        f"Invoice No: {invoice.invoice_no}",
        f"Account: {account.account_no} - {account.customer_name}",
        f"Billing period: {invoice.billing_period}",
        f"Invoice date: {invoice.invoice_date.isoformat()}",
        f"Due date: {invoice.due_date.isoformat()}",
        "-" * 46,
        _money_line("Previous balance", invoice.carried_forward),
        _money_line("Monthly service fee", invoice.monthly_service_fee),
        _money_line("Staggered installation", invoice.staggered),
        _money_line("Less: Discounts", invoice.discounts),
        _money_line("Less: Rebate", invoice.rebate),
        _money_line("Service charges", invoice.service_charge),
        _money_line("Less: Advance payment", invoice.advanced_payment),
        _money_line("VAT", invoice.vat),
        "-" * 46,
        _money_line("TOTAL AMOUNT DUE", invoice.total_amount_due),
    ]


def statement_lines(account: BillingAccount, statement: StatementOfAccount) -> list[str]:
    return [
        f"Account: {account.account_no} - {account.customer_name}",
        f"Statement date: {statement.statement_date.isoformat()}",
        f"Due date: {statement.due_date.isoformat()}",
        "-" * 46,
        _money_line("Balance from previous bill", statement.balance_from_previous_bill),
        _money_line("Less: Payments received", statement.payment_received_previous),
        _money_line("Remaining balance", statement.remaining_balance_previous),
        "-" * 46,
        _money_line("Monthly service fee", statement.monthly_service_fee),
        _money_line("Staggered installation", statement.staggered),
        _money_line("Less: Discounts", statement.discounts),
        _money_line("Less: Rebate", statement.rebate),
        _money_line("Service charges", statement.service_charge),
        _money_line("Less: Advance payment", statement.advanced_payment),
        _money_line("VAT", statement.vat),
        _money_line("Amount due this period", statement.amount_due),
        "-" * 46,
        _money_line("TOTAL AMOUNT DUE", statement.total_amount_due),
    ]


def build_text_pdf(
    *,
    title: str,
    lines: list[str],
    generated_at: datetime | None = None,
    max_lines: int = 48,
) -> bytes:
    timestamp = generated_at or datetime.now(timezone.utc)
    content_lines = [title, f"Generated: {timestamp.isoformat()}", ""]
    normalized_lines = [line.rstrip() for line in lines if line and line.strip()]

    if len(normalized_lines) > max_lines:
        normalized_lines = normalized_lines[: max_lines - 1] + ["... (truncated)"]
    content_lines.extend(normalized_lines)

    stream_commands = ["BT", "/F1 10 Tf", "50 770 Td"]
    for index, line in enumerate(content_lines):
        if index:
            stream_commands.append("0 -14 Td")
        stream_commands.append(f"({_escape_pdf_text(line)}) Tj")
    stream_commands.append("ET")

    stream = "\n".join(stream_commands).encode("latin-1", errors="replace")

    objects: list[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        (
            b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            b"/Resources << /Font << /F1 4 0 R >> >> /Contents 5 0 R >>"
        ),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Courier >>",
        b"<< /Length %d >>\nstream\n%s\nendstream" % (len(stream), stream),
    ]

    pdf = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n"
    offsets: list[int] = []
    for number, obj in enumerate(objects, start=1):
        offsets.append(len(pdf))
        pdf += f"{number} 0 obj\n".encode("ascii")
        pdf += obj + b"\nendobj\n"

    xref_offset = len(pdf)
    pdf += f"xref\n0 {len(objects) + 1}\n".encode("ascii")
    pdf += b"0000000000 65535 f \n"
    for offset in offsets:
        pdf += f"{offset:010d} 00000 n \n".encode("ascii")
    pdf += (
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n"
        f"startxref\n{xref_offset}\n%%EOF"
    ).encode("ascii")
    return pdf
