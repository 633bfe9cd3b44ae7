"""Prompt templates sent to the extraction model."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

CONTENT_PLACEHOLDER = "{content}"

MULTIMODAL_CONTENT = "The invoice PDF is attached: read the data directly from the document."

INVOICE_EXTRACTION_PROMPT = """IMPORTANT: only decide whether the content is a REAL invoice RECEIVED by us.

CONTENT:
{content}

INSTRUCTIONS:
1. If it is only a confirmation, marketing, advertising or notification email WITHOUT the invoice
   itself (e.g. "payment confirmation", "you will receive your invoice", "your invoice is now available"),
   answer: {"isInvoice": false, "rejectionReason": "<short reason>"}

2. If the invoice is ISSUED BY our own company to a customer (not received), answer:
   {"isInvoice": false, "rejectionReason": "issued by us"}

3. If it IS a RECEIVED invoice (from a supplier to us), extract ALL of the information:

{
  "isInvoice": true,
  "provider": "<full name of the supplier issuing the invoice>",
  "invoiceDate": "<YYYY-MM-DD, the invoice date, not the email date>",
  "invoiceNumber": "<complete invoice number>",
  "concept": "<description of the invoiced service or product>",
  "amountExVat": <decimal number without thousands separators, e.g. 100.50>,
  "vatAmount": <decimal number, e.g. 21.00>,
  "totalAmount": <decimal number, e.g. 121.50>
}

AMOUNTS (READ THE WHOLE DOCUMENT, INCLUDING TABLES):
- "amountExVat": look for "Base imponible", "Subtotal", "Sin IVA", "Neto", "Base", "Importe", "Honorarios", "Net"
- "vatAmount": look for "IVA", "Impuesto", "Tax", "VAT", "21%", "10%", "4%"
- "totalAmount": look for "Total", "Total a pagar", "Importe total", "Total factura", "Amount due"
- Convert currency formats (1.234,56 EUR or 1,234.56) into plain decimals (1234.56)
- When there are several lines, use the TOTALS, not partial subtotals
- Never use 0 unless the amount really is 0

RULES:
- Numeric fields that cannot be found: null (never 0)
- Text fields that cannot be found: ""
- Dates ALWAYS as YYYY-MM-DD
- Reply with valid JSON only, no text outside the JSON
"""


def load_prompt(path: Optional[Path]) -> str:
    """Return the template at ``path`` or the built-in one."""
    if path is None:
        return INVOICE_EXTRACTION_PROMPT
    template = path.read_text(encoding="utf-8")
    if CONTENT_PLACEHOLDER not in template:
        raise ValueError(f"Prompt template {path} has no {CONTENT_PLACEHOLDER} placeholder")
    return template


def render_prompt(template: str, content: str) -> str:
    # The template contains literal JSON braces, so str.format is not usable.
    return template.replace(CONTENT_PLACEHOLDER, content, 1)
