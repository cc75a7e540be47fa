"""Well-known actor identities."""

from uuid import UUID

# Actor recorded on rows created by scheduled sweeps and lazy ledger setup.
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000000")
