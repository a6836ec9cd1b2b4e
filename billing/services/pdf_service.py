"""
PDF Service - renders invoices and quotes to files under PDF_STORAGE_PATH.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from django.conf import settings
from django.template.loader import render_to_string

from ..exceptions import GatewayFailure

if TYPE_CHECKING:
    from ..models import Invoice, Quote

logger = logging.getLogger(__name__)


class PDFRenderer:
    def __init__(self, storage_path: Optional[str] = None, base_url: str = ""):
        self.storage_path = Path(storage_path or settings.PDF_STORAGE_PATH)
        self.base_url = base_url or getattr(settings, "FRONTEND_URL", "")

    def _write(self, template: str, context: dict, filename: str) -> str:
        # WeasyPrint loads system libraries (pango, cairo) on import.
        try:
            from weasyprint import HTML
            from weasyprint.text.fonts import FontConfiguration
        except OSError as exc:
            raise GatewayFailure(
                "PDF generation is currently unavailable due to missing system dependencies."
            ) from exc

        os.makedirs(self.storage_path, exist_ok=True)
        target = self.storage_path / filename
        html_string = render_to_string(template, {
            "company_name": getattr(settings, "COMPANY_NAME", ""),
            **context,
        })
        try:
            HTML(string=html_string, base_url=self.base_url).write_pdf(target=str(target), font_config=FontConfiguration())
        except Exception as exc:
            logger.error(f"PDF generation failed for {filename}: {exc}")
            raise GatewayFailure("PDF generation failed") from exc

        logger.info(f"Generated PDF {target}")
        return str(target)

    def render_invoice(self, invoice: "Invoice") -> str:
        return self._write(
            "billing/pdf/invoice.html",
            {"invoice": invoice, "line_items": list(invoice.line_items.all())},
            f"invoice-{invoice.invoice_number}.pdf",
        )

    def render_quote(self, quote: "Quote") -> str:
        return self._write(
            "billing/pdf/quote.html",
            {"quote": quote, "line_items": list(quote.line_items.all())},
            f"quote-{quote.quote_number}.pdf",
        )
