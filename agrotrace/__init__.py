"""
AgroTrace: Agricultural Supply-Chain Certification
===================================================

Custody-stage verification, certificate eligibility, satellite-based
organic compliance analysis and anchored certificate issuance for
agricultural export batches.
"""

__version__ = "1.0.0"

__author__ = "AgroTrace Platform Team"
