"""Layout-aware invoice field extraction.

Turns OCR output of scanned business documents (Taiwanese uniform invoices,
utility bills, labor/health insurance bills) into confidence-scored fields:
geometric chunking, keyword classification, field detection, ROI
re-extraction, and decimal-exact validation of the amounts.
"""

__version__ = "1.0.0"
