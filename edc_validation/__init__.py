"""
Clinical validation rule engine and discrepancy query pipeline.

Decides whether values submitted into clinical case report forms satisfy
their validation rules and raises de-duplicated discrepancy queries for
the failures.
"""

__version__ = "0.1.0"
