"""Document splitting and confidence-gated verification pipeline.

Splits multi-document scanned PDFs into individual records, dispatches
each record to an external extraction workflow, reconciles the
asynchronous outcome and gates manual verification on field confidence.
"""
