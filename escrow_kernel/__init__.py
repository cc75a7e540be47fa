"""
Escrow Kernel

The money-safety core of the creator/brand marketplace:
- Contract lifecycle state machine
- Milestone timeline with derived phase
- Escrowed job payments released exactly once
- Creator balance ledger with a single writer
- Withdrawals debited once at creation
"""

__version__ = "0.1.0"
