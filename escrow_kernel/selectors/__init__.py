"""Read-only selectors over the escrow kernel models."""
