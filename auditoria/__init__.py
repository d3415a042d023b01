"""
Radicado audit engine.

Validates medical-billing claim bundles against payer contracts and
authorizations, applies administrator-authored rules, generates glosas and
computes the final liquidation.
"""

__version__ = "0.1.0"
