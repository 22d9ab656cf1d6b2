"""
medbill - encounter to X12 837P billing engine.

Turns a clinical encounter into a reconciled code set, priced claim lines
and a submittable 837P professional claim.
"""

__version__ = "0.1.0"
