"""Clinical Import - multi-format clinical data import and reconciliation.

Parses clinical data files (CSV, JSON, HL7 FHIR/CDA, HTML surveys) into a
canonical patient / visit / observation model and reconciles that model
against a persistent clinical store.
"""

__version__ = "1.0.0"
