"""Rendering of reminder templates against installment data."""

import string
from datetime import datetime
from typing import Dict

from components.core.exceptions import TemplateRenderError

PLACEHOLDERS = (
    "customer_name",
    "contract_number",
    "due_date",
    "amount",
    "payment_link",
    "support_contact",
)


def format_currency(amount: int, prefix: str = "Rp") -> str:
    """Format minor units with "." thousands groups, e.g. ``Rp 1.066.185``."""
    sign = "-" if amount < 0 else ""
    grouped = f"{abs(int(amount)):,}".replace(",", ".")
    return f"{prefix} {sign}{grouped}"


def format_due_date(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


def payment_link(base_url: str, contract_number: str) -> str:
    return f"{base_url.rstrip('/')}/{contract_number}"


def build_context(
    customer_name: str,
    contract_number: str,
    due_date: datetime,
    amount_due: int,
    payment_link_base: str,
    support_contact: str,
    currency_prefix: str = "Rp",
) -> Dict[str, str]:
    """Placeholder values for one installment."""
    return {
        "customer_name": customer_name,
        "contract_number": contract_number,
        "due_date": format_due_date(due_date),
        "amount": format_currency(amount_due, currency_prefix),
        "payment_link": payment_link(payment_link_base, contract_number),
        "support_contact": support_contact,
    }


def render_template(text: str, context: Dict[str, str]) -> str:
    """
    Substitute ``{placeholder}`` fields in a template text.

    Only plain field names are accepted; an unknown name, attribute or index
    access, or a malformed brace raises TemplateRenderError.
    """
    if not text:
        return ""

    formatter = string.Formatter()
    try:
        for _, field_name, _, _ in formatter.parse(text):
            if field_name is None:
                continue
            if field_name not in context:
                raise TemplateRenderError(f"unknown placeholder {{{field_name}}}")
        return text.format_map(context)
    except ValueError as exc:
        raise TemplateRenderError(f"malformed template: {exc}") from exc
