"""
Remittance Compliance & Incentive Engine

Decides, for a transfer attempt, whether the customer is within their rolling
monthly cap and whether the transfer earns a milestone bonus, generates
transaction reference identifiers, and tracks MLRO compliance flags through
their review lifecycle under an SLA deadline.
"""

__version__ = "1.0.0"
