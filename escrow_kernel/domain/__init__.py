"""Pure domain layer: clock, money values, workflow tables, ports and DTOs."""
