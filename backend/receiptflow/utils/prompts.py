"""Prompt text sent to the vision service.

Keeping the instruction in one place makes it easier to iterate on its
content; the field list here must stay in step with
``receiptflow.models.schemas.ExtractionOutput``.
"""

from __future__ import annotations

from textwrap import dedent

from receiptflow.models.schemas import RECEIPT_CATEGORIES


def get_receipt_extraction_prompt() -> str:
    """Return the instruction used for extracting receipt details.

    The model is asked for a single JSON object. Replies are still
    parsed tolerantly (see ``receiptflow.utils.json_tools``) because
    models routinely wrap JSON in prose or code fences.
    """
    categories = ", ".join(RECEIPT_CATEGORIES)
    return dedent(
        f"""
        You are a receipt data extraction expert for Malaysian businesses.
        Extract the following information from this receipt image and
        return it as a JSON object:

        {{
          "store_name": "Name of the store/business",
          "total_amount": "Total amount as a number (RM)",
          "date": "Date in YYYY-MM-DD format",
          "items": [
            {{
              "name": "Item name",
              "price": "Item price as number",
              "quantity": "Quantity if visible"
            }}
          ],
          "payment_method": "Cash/Card/Transfer/etc if visible",
          "gst_amount": "GST/SST amount if visible",
          "category": "Best category guess from: {categories}"
        }}

        Rules:
        - Return only valid JSON
        - Use Malaysian Ringgit (RM) amounts as numbers
        - If information is not clearly visible, omit that field
        - Extract all readable items with prices
        - Handle both English and Malay text
        - Focus on accuracy over completeness

        Return only the JSON object, no additional text.
        """
    ).strip()
