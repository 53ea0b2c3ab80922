# receipt_app/flatten.py

from typing import List

from .models import ReceiptDocument, ReceiptRow

TOTAL_ROW_NAME = "TOTAL"


def flatten_receipt(document: ReceiptDocument) -> List[ReceiptRow]:
    """
    Turns a nested receipt into the flat name/value rows the spreadsheet
    view edits: items, then taxes, then a single TOTAL row.
    """
    rows = [ReceiptRow(name=item.name, value=item.price) for item in document.items]
    rows.extend(ReceiptRow(name=tax.name, value=tax.price) for tax in document.taxes)
    rows.append(ReceiptRow(name=TOTAL_ROW_NAME, value=document.total))
    return rows
