"""Pure domain types and lifecycle tables for the batch engine."""
