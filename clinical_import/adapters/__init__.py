"""Adapters for Clinical Import.

Parsers translate file content into the canonical import model; storage
adapters persist reconciled records.
"""
