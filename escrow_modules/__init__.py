"""
escrow_modules -- marketplace operations on top of the escrow kernel.

Each subpackage owns one aggregate's user-facing operations (contracts,
milestones, payments, withdrawals, offers, disputes).  Module services own
the transaction boundary; the flush-only lifecycle components they compose
are shared so multi-aggregate changes commit once.
"""
